"""Table operations over the spreadsheet: cached queries and row mutations.

Read path:  cache key -> cache (hit) | transport.fetch_all -> engine -> cache
Write path: transport write -> invalidate the table's cache entries

Invalidation only happens after the transport call returned successfully,
so a failed write leaves cached reads untouched.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sheetsbase.core.cache import CacheLayer
from sheetsbase.core.config import Settings
from sheetsbase.core.errors import NotFoundError, ValidationError
from sheetsbase.core.logging import get_logger
from sheetsbase.models.query import QuerySpec, Record
from sheetsbase.services.id_allocator import IdAllocator, parse_strategy
from sheetsbase.services.query_engine import QueryEngine, loosely_equal
from sheetsbase.services.sheets import TableTransport, is_blank, row_number_for

logger = get_logger(__name__)

ID_FIELD = "id"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _require_table(table: Optional[str], operation: str) -> str:
    if not table or not isinstance(table, str):
        raise ValidationError('The "table" field is required', field="table", operation=operation)
    return table


def _require_data(data: Any, table: str, operation: str) -> Dict[str, Any]:
    if not isinstance(data, dict) or not data:
        raise ValidationError(
            'The "data" field must be a non-empty object',
            table=table,
            operation=operation,
            field="data",
        )
    return data


def _require_id(record_id: Any, table: str, operation: str) -> Any:
    if record_id is None or record_id == "":
        raise ValidationError('The "id" field is required', table=table, operation=operation, field="id")
    return record_id


class TableService:
    """Query, insert, update and delete records of sheet tables."""

    def __init__(self, settings: Settings, transport: TableTransport, cache: CacheLayer,
                 engine: QueryEngine, id_allocator: IdAllocator):
        self.settings = settings
        self.transport = transport
        self.cache = cache
        self.engine = engine
        self.id_allocator = id_allocator

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def query(self, spec: QuerySpec) -> List[Record]:
        """Execute ``spec`` through the cache.

        Cleared rows (all cells empty) are not part of query results.
        """
        table = _require_table(spec.table, "query")
        key = self.cache.derive_key(table, spec)

        async def load() -> List[Record]:
            records = await self.transport.fetch_all(table)
            return self.engine.execute([r for r in records if not is_blank(r)], spec)

        data = await self.cache.get_or_fill(key, load, table=table)
        logger.info("Query completed", table=table, results=len(data))
        return data

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def insert(self, table: str, data: Dict[str, Any],
                     id_config: Optional[Dict[str, Any]] = None) -> Record:
        """Append a record, allocating an id when ``data`` has none.

        Args:
            table: Sheet name
            data: Field values; ``id`` and ``created_at`` are filled in if absent
            id_config: Optional ``{"type": strategy, "prefix": str}``

        Returns:
            The record as written
        """
        table = _require_table(table, "insert")
        record = dict(_require_data(data, table, "insert"))
        id_config = id_config or {}

        if record.get(ID_FIELD) in (None, ""):
            strategy = parse_strategy(id_config.get("type"), default=self.settings.id_default_strategy)
            prefix = id_config.get("prefix") or self.settings.id_default_prefix
            existing = await self.transport.fetch_all(table)
            existing_ids = {str(r[ID_FIELD]) for r in existing if r.get(ID_FIELD) is not None}
            record[ID_FIELD] = self.id_allocator.generate(strategy, existing_ids, prefix)
            logger.info("Id generated", table=table, id=record[ID_FIELD], strategy=strategy.value)

        if not record.get("created_at"):
            record["created_at"] = utc_now_iso()

        await self.transport.append_record(table, record)
        await self.cache.invalidate(table)
        return record

    async def _locate(self, table: str, record_id: Any, operation: str) -> Tuple[int, Record]:
        """Find the sheet row holding ``record_id`` by linear scan."""
        records = await self.transport.fetch_all(table)
        for index, record in enumerate(records):
            if not is_blank(record) and loosely_equal(record.get(ID_FIELD), record_id):
                return row_number_for(index), record
        raise NotFoundError(
            f"No record found with id={record_id}",
            table=table,
            operation=operation,
            field=ID_FIELD,
        )

    async def update(self, table: str, record_id: Any, data: Dict[str, Any]) -> Tuple[int, Record]:
        """Merge ``data`` into the record with ``record_id``.

        Returns:
            (sheet row number, merged record)

        Raises:
            NotFoundError: If no record has this id
        """
        table = _require_table(table, "update")
        record_id = _require_id(record_id, table, "update")
        changes = _require_data(data, table, "update")

        row_number, existing = await self._locate(table, record_id, "update")
        merged = {**existing, **changes, "updated_at": utc_now_iso()}

        await self.transport.update_record(table, row_number, merged)
        await self.cache.invalidate(table)
        logger.info("Record updated", table=table, id=record_id, row=row_number)
        return row_number, merged

    async def delete(self, table: str, record_id: Any) -> int:
        """Clear the row of the record with ``record_id``; returns its row number."""
        table = _require_table(table, "delete")
        record_id = _require_id(record_id, table, "delete")

        row_number, _ = await self._locate(table, record_id, "delete")

        await self.transport.clear_record(table, row_number)
        await self.cache.invalidate(table)
        logger.info("Record deleted", table=table, id=record_id, row=row_number)
        return row_number

    # =========================================================================
    # CACHE ADMINISTRATION
    # =========================================================================

    async def cache_stats(self) -> Dict[str, Any]:
        return await self.cache.get_stats()

    async def clear_cache(self, table: Optional[str] = None) -> int:
        if table:
            return await self.cache.invalidate(table)
        return await self.cache.invalidate_all()
