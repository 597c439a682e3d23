"""
Dead-letter queue endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from typing import Optional
from api.dependencies import get_dlq_manager
from core.exceptions import DLQEntryNotFoundError, DLQError
from gateway.delivery.dlq import DLQManager
from models.base import DLQStatus
from schemas.api import (
    DLQAbandonRequest,
    DLQBulkRetryRequest,
    DLQBulkRetryResponse,
    DLQEntryResponse,
    DLQListResponse,
    DLQRetryResult
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dlq", tags=["DLQ"])


def _http_error(e: DLQError) -> HTTPException:
    code = status.HTTP_404_NOT_FOUND if isinstance(e, DLQEntryNotFoundError) else status.HTTP_409_CONFLICT
    return HTTPException(status_code=code, detail={"code": e.code, "message": e.message})


@router.get("", response_model=DLQListResponse)
async def list_dlq_entries(
    request: Request,
    org_id: Optional[int] = Query(None, description="Filter by org"),
    status_filter: Optional[DLQStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    dlq: DLQManager = Depends(get_dlq_manager)
):
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] GET /dlq - org_id={org_id}, status={status_filter}, limit={limit}, offset={offset}")

    page = await dlq.list_entries(org_id=org_id, status=status_filter, limit=limit, offset=offset)
    return DLQListResponse(
        total=page["total"],
        limit=limit,
        offset=offset,
        entries=[DLQEntryResponse.model_validate(entry) for entry in page["entries"]]
    )


@router.post("/bulk-retry", response_model=DLQBulkRetryResponse)
async def bulk_retry_dlq_entries(body: DLQBulkRetryRequest, dlq: DLQManager = Depends(get_dlq_manager)):
    return DLQBulkRetryResponse(**await dlq.bulk_retry(body.ids))


@router.post("/{entry_id}/retry", response_model=DLQRetryResult)
async def retry_dlq_entry(entry_id: int, dlq: DLQManager = Depends(get_dlq_manager)):
    try:
        return DLQRetryResult(**await dlq.retry_entry(entry_id))
    except DLQError as e:
        raise _http_error(e)


@router.post("/{entry_id}/abandon", response_model=DLQEntryResponse)
async def abandon_dlq_entry(
    entry_id: int,
    body: Optional[DLQAbandonRequest] = None,
    dlq: DLQManager = Depends(get_dlq_manager)
):
    try:
        entry = await dlq.abandon_entry(entry_id, body.reason if body else None)
    except DLQError as e:
        raise _http_error(e)
    return DLQEntryResponse.model_validate(entry)
