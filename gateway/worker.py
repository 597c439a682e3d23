# ============================================================================
# File: gateway/worker.py
# Description: Checkpointed polling worker
# ============================================================================
"""
Polling worker - turns source events into deliveries.

Each tick:
1. Load the checkpoint (seeded from the source's current max id on first run)
2. Poll a batch of events after it
3. Per event: dedup, cancellation handling, hierarchical rule matching and
   dispatch (immediate deliveries concurrently, scheduled ones persisted)
4. Advance the checkpoint to the last fully dispatched event

The checkpoint only ever covers events whose dispatch finished, so a
crash or shutdown mid-batch re-polls the remainder on the next tick.
"""

import asyncio
import enum
import logging
from typing import Any, Dict, Optional

from core.config import settings
from core.exceptions import GatewayError
from gateway.dedup import DedupCache, event_key
from gateway.delivery.pipeline import EventContext
from gateway.matching import match_rules
from gateway.scheduling.scripts import CANCELLATION_EVENT_TYPES
from models.base import DeliveryMode, DeliveryStatus
from schemas.events import Event

logger = logging.getLogger(__name__)


class WorkerState(str, enum.Enum):
    IDLE = "IDLE"
    POLLING = "POLLING"
    MATCHING = "MATCHING"
    DELIVERING = "DELIVERING"
    CHECKPOINTING = "CHECKPOINTING"


SCHEDULED_MODES = (DeliveryMode.DELAYED, DeliveryMode.RECURRING)
FAILED_STATUSES = (DeliveryStatus.FAILED, DeliveryStatus.RETRYING, DeliveryStatus.ABANDONED)


class PollingWorker:

    def __init__(
        self,
        source,
        store,
        pipeline,
        scheduled_service=None,
        dedup: Optional[DedupCache] = None,
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None
    ):
        self.source = source
        self.store = store
        self.pipeline = pipeline
        self.scheduled_service = scheduled_service
        self.dedup = dedup or DedupCache()
        self.worker_id = worker_id or settings.WORKER_ID
        self.batch_size = batch_size or settings.POLL_BATCH_SIZE
        self._semaphore = asyncio.Semaphore(concurrency or settings.DELIVERY_CONCURRENCY)
        self.state = WorkerState.IDLE
        self.last_stats: Dict[str, Any] = {}

    async def tick(self) -> Dict[str, Any]:
        """
        Run one poll cycle.

        Returns:
            Dictionary with cycle statistics:
            - status: "success", "idle" or "failed"
            - events_polled / events_processed / events_skipped_duplicate
            - deliveries_succeeded / deliveries_failed / scheduled
            - checkpoint: checkpoint after the cycle
        """
        stats: Dict[str, Any] = {
            "status": "success",
            "events_polled": 0,
            "events_processed": 0,
            "events_skipped_duplicate": 0,
            "deliveries_succeeded": 0,
            "deliveries_failed": 0,
            "scheduled": 0,
            "checkpoint": None,
        }

        # --------------------------------------------------
        # PHASE 1: CHECKPOINT + POLL
        # --------------------------------------------------
        self.state = WorkerState.POLLING
        try:
            checkpoint = await self.store.get_checkpoint(self.worker_id)
            if checkpoint is None:
                checkpoint = await self.source.get_initial_checkpoint()
                checkpoint = await self.store.save_checkpoint(self.worker_id, checkpoint)
                logger.info(f"Worker {self.worker_id}: bootstrapped checkpoint at id={checkpoint}")

            events = await self.source.poll(checkpoint, self.batch_size)
        except GatewayError as e:
            self.state = WorkerState.IDLE
            logger.error(
                f"Worker {self.worker_id}: poll failed - {e}",
                extra={"error_context": e.to_dict()}
            )
            stats.update(status="failed", error=e.message)
            self.last_stats = stats
            return stats

        stats["events_polled"] = len(events)
        stats["checkpoint"] = checkpoint
        if not events:
            self.state = WorkerState.IDLE
            stats["status"] = "idle"
            self.last_stats = stats
            return stats

        logger.info(f"Worker {self.worker_id}: polled {len(events)} events after id {checkpoint}")

        # --------------------------------------------------
        # PHASE 2: DISPATCH (in order)
        # --------------------------------------------------
        dispatched_upto = checkpoint
        try:
            for event in events:
                await self._process_event(event, stats)
                dispatched_upto = max(dispatched_upto, event.id)
                stats["events_processed"] += 1
        except asyncio.CancelledError:
            logger.warning(
                f"Worker {self.worker_id}: cancelled mid-batch, saving checkpoint at id={dispatched_upto}"
            )
            await self.store.save_checkpoint(self.worker_id, dispatched_upto, stats["events_processed"])
            self.state = WorkerState.IDLE
            raise
        except GatewayError as e:
            logger.error(
                f"Worker {self.worker_id}: batch stopped at id>{dispatched_upto} - {e}",
                extra={"error_context": e.to_dict()}
            )
            stats.update(status="failed", error=e.message)
        except Exception as e:
            logger.error(f"Worker {self.worker_id}: batch stopped at id>{dispatched_upto} - {e}", exc_info=True)
            stats.update(status="failed", error=str(e))

        # --------------------------------------------------
        # PHASE 3: CHECKPOINT
        # --------------------------------------------------
        self.state = WorkerState.CHECKPOINTING
        try:
            stats["checkpoint"] = await self.store.save_checkpoint(
                self.worker_id, dispatched_upto, stats["events_processed"]
            )
        finally:
            self.state = WorkerState.IDLE

        logger.info(
            f"Worker {self.worker_id}: processed {stats['events_processed']}/{len(events)} events, "
            f"{stats['deliveries_succeeded']} delivered, {stats['deliveries_failed']} failed, "
            f"{stats['scheduled']} scheduled, {stats['events_skipped_duplicate']} duplicates"
        )
        self.last_stats = stats
        return stats

    async def _process_event(self, event: Event, stats: Dict[str, Any]) -> None:
        key = event_key(event.event_type, event.org_id, event.payload)
        if self.dedup.check_and_mark(key):
            logger.info(f"Skipping duplicate event {event.event_id} ({event.event_type})")
            stats["events_skipped_duplicate"] += 1
            await self.source.ack(event)
            return

        try:
            await self._match_and_dispatch(event, stats)
        except BaseException:
            # Not dispatched; the re-polled copy must not be taken for a duplicate
            self.dedup.forget(key)
            raise

    async def _match_and_dispatch(self, event: Event, stats: Dict[str, Any]) -> None:
        self.state = WorkerState.MATCHING
        try:
            if event.event_type in CANCELLATION_EVENT_TYPES and self.scheduled_service is not None:
                await self._cancel_scheduled(event)

            ancestors = await self.store.get_ancestor_ids(event.org_unit_id)
            candidates = await self.store.get_candidate_rules([event.org_unit_id] + ancestors, event.event_type)
            rules = match_rules(candidates, event, ancestors)
        except Exception:
            await self.source.nack(event)
            raise

        if not rules:
            logger.debug(f"No rules matched event {event.event_id} ({event.event_type})")
            await self.source.ack(event)
            return

        self.state = WorkerState.DELIVERING
        await asyncio.gather(*(self._dispatch_rule(rule, event, stats) for rule in rules))
        await self.source.ack(event)

    async def _cancel_scheduled(self, event: Event) -> None:
        try:
            await self.scheduled_service.handle_cancellation_event(event)
        except GatewayError as e:
            logger.error(
                f"Cancellation handling failed for event {event.event_id}: {e}",
                extra={"error_context": e.to_dict()}
            )

    async def _dispatch_rule(self, rule, event: Event, stats: Dict[str, Any]) -> None:
        """Deliver or schedule one rule; failures stay within this rule."""
        async with self._semaphore:
            try:
                if rule.delivery_mode in SCHEDULED_MODES:
                    if self.scheduled_service is None:
                        raise GatewayError(
                            f"Rule {rule.id} requires scheduling but no scheduler is configured",
                            code="SCHEDULER_UNAVAILABLE"
                        )
                    await self.scheduled_service.schedule_delivery(rule, event)
                    stats["scheduled"] += 1
                    return

                outcomes = await self.pipeline.deliver_event(rule, EventContext.from_event(event))
                for outcome in outcomes:
                    if outcome.succeeded:
                        stats["deliveries_succeeded"] += 1
                    elif outcome.status in FAILED_STATUSES:
                        stats["deliveries_failed"] += 1

            except GatewayError as e:
                stats["deliveries_failed"] += 1
                logger.error(
                    f"Rule {rule.id} failed for event {event.event_id}: {e}",
                    extra={"error_context": e.to_dict()}
                )
                await self._record_dispatch_failure(rule, event, e.code, e.message)
            except Exception as e:
                stats["deliveries_failed"] += 1
                logger.error(f"Unexpected error dispatching rule {rule.id} for event {event.event_id}: {e}", exc_info=True)
                await self._record_dispatch_failure(rule, event, "UNEXPECTED_ERROR", str(e))

    async def _record_dispatch_failure(self, rule, event: Event, code: str, message: str) -> None:
        try:
            await self.store.create_delivery_log(
                rule_id=rule.id,
                event_id=event.event_id,
                org_id=event.org_id,
                org_unit_id=event.org_unit_id,
                event_type=event.event_type,
                status=DeliveryStatus.FAILED,
                error_code=code,
                error_message=message,
                attempt_count=1,
                original_payload=dict(event.payload)
            )
        except Exception as e:
            logger.error(f"Could not record failure for rule {rule.id} event {event.event_id}: {e}")
