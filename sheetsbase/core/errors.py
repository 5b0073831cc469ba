"""Error types shared by the query engine, cache, allocator and transport.

Every error carries the table, operation and offending field (when known)
so the HTTP layer can render a useful message without re-deriving context.

- ValidationError: malformed request or query (never retried)
- NotFoundError: update/delete target id is absent
- StoreError: any failure of the spreadsheet transport (never retried here)
- CacheUnavailable: cache backend failure, degraded to a miss by the cache
"""

from typing import Any, Dict, Optional


class SheetsBaseError(Exception):
    """Base class for all SheetsBase errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.table = table
        self.operation = operation
        self.field = field

    @property
    def context(self) -> Dict[str, Any]:
        """Non-empty context fields."""
        ctx = {"table": self.table, "operation": self.operation, "field": self.field}
        return {k: v for k, v in ctx.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        """Render as an API error body."""
        return {"success": False, "error": self.message, **self.context}

    def __repr__(self) -> str:
        ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
        return f"{type(self).__name__}({self.message!r}{', ' + ctx if ctx else ''})"


class ValidationError(SheetsBaseError):
    """Request or query is malformed."""

    status_code = 400


class NotFoundError(SheetsBaseError):
    """No record carries the requested id."""

    status_code = 404


class StoreError(SheetsBaseError):
    """The spreadsheet transport failed."""

    status_code = 502


class CacheUnavailable(SheetsBaseError):
    """Cache backend is disabled or erroring."""

    status_code = 503
