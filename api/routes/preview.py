"""
Rule preview endpoints for the admin UI
"""

from fastapi import APIRouter, Depends, HTTPException, status
from api.dependencies import get_lookup_resolver
from core.exceptions import GatewayError
from gateway import (
    apply_transform,
    build_auth_headers,
    calculate_next_occurrence,
    execute_scheduling_script,
    validate_target_url
)
from gateway.scheduling.scripts import RecurringConfig
from gateway.transformers.lookups import DatabaseLookupResolver
from schemas.api import (
    AuthPreviewRequest,
    AuthPreviewResponse,
    NextOccurrenceRequest,
    NextOccurrenceResponse,
    SchedulePreviewRequest,
    SchedulePreviewResponse,
    TargetUrlPreviewRequest,
    TargetUrlPreviewResponse,
    TransformPreviewRequest,
    TransformPreviewResponse
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/preview", tags=["Preview"])


def _unprocessable(e: GatewayError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"code": e.code, "message": e.message}
    )


@router.post("/transform", response_model=TransformPreviewResponse)
async def preview_transform(
    body: TransformPreviewRequest,
    lookup_resolver: DatabaseLookupResolver = Depends(get_lookup_resolver)
):
    context = {"event_type": body.event_type, "org_id": body.org_id, "org_unit_id": body.org_unit_id}
    try:
        result = await apply_transform(body.payload, body, context=context, lookup_resolver=lookup_resolver)
    except GatewayError as e:
        logger.info(f"Transform preview failed: {e.code} {e.message}")
        raise _unprocessable(e)
    return TransformPreviewResponse(result=result, skipped=result is None)


@router.post("/auth-headers", response_model=AuthPreviewResponse)
async def preview_auth_headers(body: AuthPreviewRequest):
    try:
        headers = await build_auth_headers(body.auth_type, body.auth_config)
    except GatewayError as e:
        logger.info(f"Auth preview failed: {e.code} {e.message}")
        raise _unprocessable(e)
    return AuthPreviewResponse(headers=headers)


@router.post("/target-url", response_model=TargetUrlPreviewResponse)
async def preview_target_url(body: TargetUrlPreviewRequest):
    result = validate_target_url(body.url, body.enforce_https, body.block_private_networks)
    return TargetUrlPreviewResponse(valid=result.valid, reason=result.reason)


@router.post("/schedule", response_model=SchedulePreviewResponse)
async def preview_schedule(body: SchedulePreviewRequest):
    try:
        result = await execute_scheduling_script(body.script, body.event, body.delivery_mode, context=body.context)
    except GatewayError as e:
        logger.info(f"Schedule preview failed: {e.code} {e.message}")
        raise _unprocessable(e)

    if isinstance(result, RecurringConfig):
        return SchedulePreviewResponse(scheduled_for=result.first_occurrence, recurring=result.to_dict())
    return SchedulePreviewResponse(scheduled_for=result)


@router.post("/next-occurrence", response_model=NextOccurrenceResponse)
async def preview_next_occurrence(body: NextOccurrenceRequest):
    config = body.model_dump(exclude={"occurrence_number"}, exclude_none=True)
    try:
        timestamp = calculate_next_occurrence(config, body.occurrence_number)
    except GatewayError as e:
        raise _unprocessable(e)
    return NextOccurrenceResponse(occurrence_number=body.occurrence_number, timestamp=timestamp)
