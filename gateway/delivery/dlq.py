"""
Dead-letter queue management.

Status lifecycle:
    pending -> retrying -> resolved      (manual retry succeeded)
    pending -> retrying -> pending       (manual retry failed again)
    pending | abandoned -> retrying      (operator retry)
    pending -> abandoned                 (operator gave up)

Resolved entries are final.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.exceptions import DLQEntryNotFoundError, DLQStateError
from models.base import DLQStatus, DeliveryStatus

logger = logging.getLogger(__name__)

# Error categories
TIMEOUT = "TIMEOUT"
NETWORK = "NETWORK"
SERVER_ERROR = "SERVER_ERROR"
RATE_LIMIT = "RATE_LIMIT"
CLIENT_ERROR = "CLIENT_ERROR"
AUTH_ERROR = "AUTH_ERROR"
DATA_ERROR = "DATA_ERROR"
VALIDATION_ERROR = "VALIDATION_ERROR"
REDIRECT = "REDIRECT"
UNKNOWN = "UNKNOWN"

RETRYABLE_STATUSES = (DLQStatus.PENDING, DLQStatus.ABANDONED)


def categorize_error(
    error_code: Optional[str] = None,
    status_code: Optional[int] = None,
    message: Optional[str] = None
) -> str:
    """Bucket a failure for DLQ filtering."""
    code = (error_code or "").upper()
    text = message or ""

    if "TIMEOUT" in code or "ETIMEDOUT" in code:
        return TIMEOUT
    if "NETWORK" in code or "ECONNREFUSED" in code or "ENOTFOUND" in code:
        return NETWORK

    if status_code:
        if status_code >= 500:
            return SERVER_ERROR
        if status_code == 429:
            return RATE_LIMIT
        if status_code in (401, 403):
            return AUTH_ERROR
        if 400 <= status_code < 500:
            return CLIENT_ERROR
        if 300 <= status_code < 400:
            return REDIRECT

    if code.startswith("AUTH") or code.startswith("TOKEN"):
        return AUTH_ERROR
    if code.startswith("SCRIPT") or code in ("UNMAPPED_CODE", "TRANSFORMATION_FAILED"):
        return DATA_ERROR
    if "parse" in text.lower() or "JSON" in text:
        return DATA_ERROR
    if code == "INVALID_TARGET_URL" or "validation" in text.lower() or "invalid" in text.lower():
        return VALIDATION_ERROR

    return UNKNOWN


class DLQManager:
    """
    Creates, lists, retries and abandons DLQ entries.

    ``pipeline`` is the DeliveryPipeline used for manual retries; it owns
    this manager and wires itself in.
    """

    def __init__(self, store, pipeline=None):
        self.store = store
        self.pipeline = pipeline

    async def create_entry(
        self,
        rule_id: int,
        event_id: Optional[str],
        payload: Any,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        response_status: Optional[int] = None,
        org_id: Optional[int] = None,
        org_unit_id: Optional[int] = None,
        event_type: Optional[str] = None,
        delivery_log_id: Optional[int] = None,
        action_index: Optional[int] = None
    ):
        category = categorize_error(error_code, response_status, error_message)
        entry = await self.store.create_dlq_entry(
            org_id=org_id,
            org_unit_id=org_unit_id,
            rule_id=rule_id,
            delivery_log_id=delivery_log_id,
            event_id=event_id,
            event_type=event_type,
            action_index=action_index,
            status=DLQStatus.PENDING,
            error_category=category,
            error_code=error_code,
            error_message=error_message,
            payload=payload,
            retry_count=0,
            failed_at=datetime.utcnow()
        )
        logger.warning(
            f"DLQ entry {entry.id} created for rule {rule_id} event {event_id} "
            f"({category}: {error_code})"
        )
        return entry

    async def get_entry(self, entry_id: int):
        entry = await self.store.get_dlq_entry(entry_id)
        if entry is None:
            raise DLQEntryNotFoundError(
                f"DLQ entry {entry_id} not found",
                context={"dlq_id": entry_id}
            )
        return entry

    async def list_entries(
        self,
        org_id: Optional[int] = None,
        status: Optional[DLQStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        return await self.store.list_dlq_entries(org_id=org_id, status=status, limit=limit, offset=offset)

    async def retry_entry(self, entry_id: int) -> Dict[str, Any]:
        """
        Re-deliver a DLQ entry with a fresh attempt.

        Raises:
            DLQEntryNotFoundError: Unknown id
            DLQStateError: Entry is resolved or already being retried
        """
        entry = await self.get_entry(entry_id)
        if entry.status not in RETRYABLE_STATUSES:
            raise DLQStateError(
                f"DLQ entry {entry_id} cannot be retried in status {entry.status.value}",
                context={"dlq_id": entry_id, "status": entry.status.value}
            )

        retry_count = (entry.retry_count or 0) + 1
        await self.store.update_dlq_entry(entry_id, status=DLQStatus.RETRYING, retry_count=retry_count)

        try:
            rule = await self.store.get_rule(entry.rule_id)
            if rule is None or not rule.is_active:
                message = "Rule is inactive or no longer exists"
                await self.store.update_dlq_entry(entry_id, status=DLQStatus.PENDING, error_message=message)
                logger.warning(f"DLQ retry for entry {entry_id} skipped: {message}")
                return {"id": entry_id, "status": DLQStatus.PENDING.value, "success": False, "error": message}

            outcome = await self.pipeline.deliver_dlq_entry(rule, entry)
        except Exception as e:
            # The entry must not stay RETRYING
            message = f"Retry failed unexpectedly: {e}"
            logger.error(f"DLQ retry for entry {entry_id} failed: {e}", exc_info=True)
            await self.store.update_dlq_entry(
                entry_id,
                status=DLQStatus.PENDING,
                error_code="UNEXPECTED_ERROR",
                error_message=message
            )
            return {"id": entry_id, "status": DLQStatus.PENDING.value, "success": False, "error": message}

        if outcome.status == DeliveryStatus.SUCCESS:
            await self.store.update_dlq_entry(
                entry_id,
                status=DLQStatus.RESOLVED,
                resolved_at=datetime.utcnow(),
                resolution_method="manual_retry"
            )
            logger.info(f"DLQ entry {entry_id} resolved by manual retry")
            return {"id": entry_id, "status": DLQStatus.RESOLVED.value, "success": True, "error": None}

        await self.store.update_dlq_entry(
            entry_id,
            status=DLQStatus.PENDING,
            error_code=outcome.error_code,
            error_message=outcome.error_message,
            error_category=categorize_error(outcome.error_code, outcome.response_status, outcome.error_message)
        )
        logger.warning(f"DLQ retry for entry {entry_id} failed: {outcome.error_message}")
        return {
            "id": entry_id,
            "status": DLQStatus.PENDING.value,
            "success": False,
            "error": outcome.error_message,
        }

    async def bulk_retry(self, entry_ids: List[int]) -> Dict[str, Any]:
        """Retry each entry independently; one failure never stops the rest."""
        results = []
        for entry_id in entry_ids:
            try:
                results.append(await self.retry_entry(entry_id))
            except (DLQEntryNotFoundError, DLQStateError) as e:
                results.append({"id": entry_id, "status": None, "success": False, "error": e.message})

        succeeded = sum(1 for r in results if r["success"])
        return {
            "total": len(results),
            "succeeded": succeeded,
            "failed": len(results) - succeeded,
            "results": results,
        }

    async def abandon_entry(self, entry_id: int, reason: Optional[str] = None):
        entry = await self.get_entry(entry_id)
        if entry.status == DLQStatus.RESOLVED:
            raise DLQStateError(
                f"DLQ entry {entry_id} is already resolved",
                context={"dlq_id": entry_id, "status": entry.status.value}
            )

        await self.store.update_dlq_entry(
            entry_id,
            status=DLQStatus.ABANDONED,
            resolved_at=datetime.utcnow(),
            resolution_method="manual_abandon",
            resolution_note=reason
        )
        logger.warning(f"DLQ entry {entry_id} abandoned: {reason or 'no reason given'}")
        return await self.get_entry(entry_id)
