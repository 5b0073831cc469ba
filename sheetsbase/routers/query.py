"""Table query, mutation and cache administration routes.

Errors raised by the services (ValidationError, NotFoundError, StoreError)
propagate to the application's exception handlers, which render
``{"success": false, "error": ...}`` with the matching status code.
"""

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from sheetsbase.core.container import container
from sheetsbase.core.logging import get_logger
from sheetsbase.models.query import build_query
from sheetsbase.services.table_service import TableService

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["tables"])


def get_table_service() -> TableService:
    return container.table_service()


class QueryRequest(BaseModel):
    table: Optional[str] = None
    select: Optional[Union[str, List[str]]] = None
    filters: Optional[List[Dict[str, Any]]] = None
    order: Optional[Dict[str, Any]] = None
    limit: Optional[Union[int, str]] = None


class IdConfig(BaseModel):
    type: Optional[str] = None
    prefix: Optional[str] = None


class InsertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    id_config: Optional[IdConfig] = Field(default=None, alias="idConfig")


class UpdateRequest(BaseModel):
    table: Optional[str] = None
    id: Optional[Union[str, int]] = None
    data: Optional[Dict[str, Any]] = None


class DeleteRequest(BaseModel):
    table: Optional[str] = None
    id: Optional[Union[str, int]] = None


class CacheClearRequest(BaseModel):
    table: Optional[str] = None


@router.post("/query")
async def query_table(
    request: QueryRequest,
    service: TableService = Depends(get_table_service)
):
    """Run a filter/projection/order/limit query against one table."""
    spec = build_query(request.model_dump(exclude_unset=True))
    data = await service.query(spec)
    return {"success": True, "data": data, "count": len(data)}


@router.post("/insert")
async def insert_record(
    request: InsertRequest,
    service: TableService = Depends(get_table_service)
):
    """Insert a record, generating its id when missing."""
    id_config = request.id_config.model_dump(exclude_none=True) if request.id_config else None
    record = await service.insert(request.table, request.data, id_config)
    return {
        "success": True,
        "message": "Record inserted",
        "id": record.get("id"),
        "data": record,
    }


@router.put("/update")
async def update_record(
    request: UpdateRequest,
    service: TableService = Depends(get_table_service)
):
    """Merge fields into the record with the given id."""
    row_number, record = await service.update(request.table, request.id, request.data)
    return {
        "success": True,
        "message": "Record updated",
        "rowNumber": row_number,
        "data": record,
    }


@router.delete("/delete")
async def delete_record(
    request: DeleteRequest,
    service: TableService = Depends(get_table_service)
):
    """Clear the row of the record with the given id."""
    row_number = await service.delete(request.table, request.id)
    return {
        "success": True,
        "message": "Record deleted",
        "rowNumber": row_number,
    }


# ============================================================================
# Cache administration
# ============================================================================

@router.get("/cache/stats")
async def cache_stats(service: TableService = Depends(get_table_service)):
    """Hit/miss/set/delete counters."""
    return {"success": True, "stats": await service.cache_stats()}


@router.post("/cache/clear")
async def clear_cache(
    request: Optional[CacheClearRequest] = None,
    service: TableService = Depends(get_table_service)
):
    """Clear one table's cached queries, or everything when no table is given."""
    table = request.table if request else None
    cleared = await service.clear_cache(table)
    message = f"Cache cleared for: {table}" if table else "Cache fully cleared"
    return {"success": True, "message": message, "cleared": cleared}
