"""
Scheduled (DELAYED / RECURRING) delivery lifecycle.

- schedule_delivery: run the rule's scheduling script for an event and
  persist a PENDING row
- process_due: send PENDING rows whose time has come through the shared
  delivery pipeline
- cancel_matching: cancel PENDING rows for a patient when a cancellation
  or reschedule event arrives
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from core.config import settings
from core.exceptions import GatewayError, SchedulingError
from gateway.delivery.pipeline import EventContext
from gateway.delivery.retry import compute_retry_delay
from gateway.scheduling.scripts import (
    RecurringConfig,
    calculate_next_occurrence,
    execute_scheduling_script,
    extract_cancellation_info
)
from gateway.transformers.helpers import parse_date
from models.base import DeliveryMode, DeliveryStatus, ScheduledStatus

logger = logging.getLogger(__name__)

CANCELLATION_TOLERANCE = timedelta(hours=1)


def _now_ms() -> int:
    return int(time.time() * 1000)


def datetimes_match(stored: Any, requested: Any, tolerance: timedelta = CANCELLATION_TOLERANCE) -> bool:
    """Compare two appointment times within ``tolerance``; unparseable values compare as strings."""
    stored_dt = parse_date(stored)
    requested_dt = parse_date(requested)
    if stored_dt is None or requested_dt is None:
        return stored is not None and str(stored) == str(requested)
    return abs(stored_dt - requested_dt) <= tolerance


class ScheduledDeliveryService:

    def __init__(self, store, pipeline, batch_size: Optional[int] = None):
        self.store = store
        self.pipeline = pipeline
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_delivery(self, rule, event):
        """
        Compute the send time for ``event`` and persist a PENDING row.

        Raises:
            SchedulingError: Missing script or invalid script result
            ScriptExecutionError: The script failed
        """
        config = rule.scheduling_config or {}
        script = config.get("script")
        if not script:
            raise SchedulingError(
                f"Rule {rule.id} is {rule.delivery_mode.value} but has no scheduling script",
                context={"rule_id": rule.id}
            )

        context = {
            "event_type": event.event_type,
            "org_id": event.org_id,
            "org_unit_id": event.org_unit_id,
            "event_id": event.event_id,
            "rule_id": rule.id,
            "rule_name": rule.name,
        }
        result = await execute_scheduling_script(
            script,
            event.payload,
            rule.delivery_mode,
            context=context,
            timeout_ms=config.get("timeout_ms")
        )

        if rule.delivery_mode == DeliveryMode.RECURRING:
            scheduled_for = result.first_occurrence
            recurring = dict(result.to_dict(), occurrence_number=1)
        else:
            scheduled_for = result
            recurring = None

        cancellation = extract_cancellation_info(event.payload)
        scheduled = await self.store.create_scheduled_delivery(
            rule_id=rule.id,
            org_id=event.org_id,
            org_unit_id=event.org_unit_id,
            original_event_id=event.event_id,
            event_type=event.event_type,
            scheduled_for=scheduled_for,
            payload=dict(event.payload),
            status=ScheduledStatus.PENDING,
            cancellation_info=cancellation,
            patient_id=cancellation["patient_id"] if cancellation else None,
            recurring_config=recurring
        )
        logger.info(
            f"Scheduled delivery {scheduled.id} for rule {rule.id} event {event.event_id} "
            f"at {datetime.utcfromtimestamp(scheduled_for / 1000).isoformat()}Z"
        )
        return scheduled

    # ------------------------------------------------------------------
    # Due deliveries
    # ------------------------------------------------------------------

    async def process_due(self, now_ms: Optional[int] = None) -> Dict[str, int]:
        stats = {"processed": 0, "sent": 0, "rescheduled": 0, "failed": 0}
        now = now_ms if now_ms is not None else _now_ms()

        due = await self.store.get_due_scheduled(now, self.batch_size)
        if not due:
            return stats

        logger.info(f"Processing {len(due)} due scheduled deliveries")

        for scheduled in due:
            stats["processed"] += 1
            try:
                outcome = await self._send(scheduled)
                stats[outcome] += 1
            except GatewayError as e:
                stats["failed"] += 1
                logger.error(
                    f"Scheduled delivery {scheduled.id} failed: {e}",
                    extra={"error_context": e.to_dict()}
                )
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Unexpected error sending scheduled delivery {scheduled.id}: {e}", exc_info=True)

        return stats

    async def _send(self, scheduled) -> str:
        rule = await self.store.get_rule(scheduled.rule_id)
        if rule is None or not rule.is_active:
            await self.store.update_scheduled_delivery(
                scheduled.id,
                status=ScheduledStatus.FAILED,
                error_message="Rule is inactive or no longer exists"
            )
            logger.warning(f"Scheduled delivery {scheduled.id} failed: rule {scheduled.rule_id} inactive or missing")
            return "failed"

        attempt = (scheduled.attempt_count or 0) + 1
        outcomes = await self.pipeline.deliver_event(
            rule,
            EventContext.from_scheduled(scheduled),
            scheduled_delivery_id=scheduled.id,
            schedule_retries=False,
            dead_letter=False
        )
        failures = [o for o in outcomes if o.status == DeliveryStatus.FAILED]

        if not failures:
            changed = await self.store.update_scheduled_delivery(
                scheduled.id,
                status=ScheduledStatus.SENT,
                sent_at=datetime.utcnow(),
                attempt_count=attempt,
                error_message=None
            )
            if changed:
                await self._schedule_next_occurrence(scheduled)
            return "sent"

        error_message = "; ".join(f"[{f.error_code}] {f.error_message}" for f in failures)
        max_retries = rule.retry_count if rule.retry_count is not None else 3

        if any(f.retryable for f in failures) and attempt <= max_retries:
            delay_ms = int(compute_retry_delay(rule.retry_strategy, attempt) * 1000)
            await self.store.update_scheduled_delivery(
                scheduled.id,
                scheduled_for=_now_ms() + delay_ms,
                attempt_count=attempt,
                error_message=error_message
            )
            logger.info(f"Scheduled delivery {scheduled.id} will retry in {delay_ms} ms (attempt {attempt})")
            return "rescheduled"

        changed = await self.store.update_scheduled_delivery(
            scheduled.id,
            status=ScheduledStatus.FAILED,
            attempt_count=attempt,
            error_message=error_message
        )
        if changed:
            first = failures[0]
            await self.pipeline.dlq.create_entry(
                rule_id=rule.id,
                event_id=scheduled.original_event_id,
                payload=scheduled.payload,
                error_code=first.error_code,
                error_message=error_message,
                response_status=first.response_status,
                org_id=scheduled.org_id,
                org_unit_id=scheduled.org_unit_id,
                event_type=scheduled.event_type,
                delivery_log_id=first.log_id,
                action_index=first.action_index
            )
            # A failed occurrence does not end the series
            await self._schedule_next_occurrence(scheduled)
        return "failed"

    async def _schedule_next_occurrence(self, scheduled) -> None:
        recurring = scheduled.recurring_config
        if not recurring:
            return

        config = RecurringConfig.from_dict(recurring, check_future=False)
        next_number = int(recurring.get("occurrence_number") or 1) + 1
        next_at = calculate_next_occurrence(config, next_number)
        if next_at is None:
            logger.info(f"Recurring series of scheduled delivery {scheduled.id} complete")
            return

        created = await self.store.create_scheduled_delivery(
            rule_id=scheduled.rule_id,
            org_id=scheduled.org_id,
            org_unit_id=scheduled.org_unit_id,
            original_event_id=scheduled.original_event_id,
            event_type=scheduled.event_type,
            scheduled_for=next_at,
            payload=scheduled.payload,
            status=ScheduledStatus.PENDING,
            cancellation_info=scheduled.cancellation_info,
            patient_id=scheduled.patient_id,
            recurring_config=dict(config.to_dict(), occurrence_number=next_number)
        )
        logger.info(f"Scheduled occurrence {next_number} as delivery {created.id}")

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_matching(
        self,
        org_id: int,
        patient_id: str,
        scheduled_datetime: Any = None,
        reason: Optional[str] = None
    ) -> int:
        """
        Cancel PENDING deliveries for a patient. When ``scheduled_datetime``
        is given only rows within one hour of it are cancelled.
        """
        if not patient_id:
            return 0

        cancelled = 0
        for scheduled in await self.store.get_pending_for_patient(org_id, patient_id):
            info = scheduled.cancellation_info or {}
            if scheduled_datetime is not None and not datetimes_match(
                info.get("scheduled_datetime"), scheduled_datetime
            ):
                continue
            changed = await self.store.update_scheduled_delivery(
                scheduled.id,
                status=ScheduledStatus.CANCELLED,
                cancelled_at=datetime.utcnow(),
                cancel_reason=reason or "Auto-cancelled by matching event"
            )
            if changed:
                cancelled += 1

        if cancelled:
            logger.info(f"Cancelled {cancelled} scheduled deliveries for patient {patient_id} in org {org_id}")
        return cancelled

    async def handle_cancellation_event(self, event) -> int:
        info = extract_cancellation_info(event.payload)
        if info is None:
            return 0
        return await self.cancel_matching(
            event.org_id,
            info["patient_id"],
            info.get("scheduled_datetime"),
            reason=f"Auto-cancelled by {event.event_type} event {event.event_id}"
        )
