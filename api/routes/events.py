"""
HTTP push ingest endpoint
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from typing import Optional
from api.dependencies import get_push_source
from core.exceptions import SourceAdapterError
from gateway.sources.http_push import HttpPushEventSource
from schemas.api import PushEventResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Events"])


@router.post("/events/{org_id}", response_model=PushEventResponse, status_code=status.HTTP_202_ACCEPTED)
async def push_event(
    org_id: int,
    request: Request,
    x_signature: Optional[str] = Header(None),
    source: HttpPushEventSource = Depends(get_push_source)
):
    """
    Accept a pushed event into the inbox.

    The body is `{"event_type": ..., "org_unit_id": ..., "payload": {...}}`.
    When PUSH_HMAC_SECRET is set, `X-Signature: <unix>,<hex>` must sign
    `"<t>.<raw body>"` with HMAC-SHA256.
    """
    body = await request.body()
    request_id = getattr(request.state, "request_id", None)

    try:
        inbox_id = await source.receive(body, x_signature, org_id)
    except SourceAdapterError as e:
        logger.warning(f"[{request_id}] Rejected pushed event for org {org_id}: {e.message}")
        code = status.HTTP_401_UNAUTHORIZED if e.code == "INVALID_SIGNATURE" else status.HTTP_422_UNPROCESSABLE_ENTITY
        raise HTTPException(status_code=code, detail={"code": e.code, "message": e.message})

    return PushEventResponse(id=inbox_id)
