"""
Persistence gateway for the delivery engine.

Every method opens its own short-lived session from the session factory
and commits before returning, so workers running concurrently under
APScheduler never share a session. Returned rows are detached; the
factory must be created with ``expire_on_commit=False``.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import CheckpointError
from models.base import CircuitState, DeliveryStatus, ScheduledStatus, DLQStatus
from models.checkpoint import WorkerCheckpoint
from models.circuit_breaker import CircuitBreakerState
from models.delivery_log import DeliveryAttemptLog
from models.dlq_entry import DLQEntry
from models.inbound_event import InboundEvent
from models.integration_rule import IntegrationRule
from models.org_unit import OrgUnit
from models.scheduled_delivery import ScheduledDelivery

logger = logging.getLogger(__name__)

MAX_HIERARCHY_DEPTH = 32


class DeliveryStore:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def get_checkpoint(self, worker_id: str) -> Optional[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WorkerCheckpoint).where(WorkerCheckpoint.worker_id == worker_id)
            )
            checkpoint = result.scalar_one_or_none()
            return checkpoint.last_processed_id if checkpoint else None

    async def save_checkpoint(self, worker_id: str, value: int, events_processed: int = 0) -> int:
        """
        Persist a checkpoint; never moves it backwards.

        Returns the stored value (the larger of the current and requested).
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(WorkerCheckpoint).where(WorkerCheckpoint.worker_id == worker_id)
                )
                checkpoint = result.scalar_one_or_none()
                now = datetime.utcnow()

                if checkpoint is None:
                    checkpoint = WorkerCheckpoint(
                        worker_id=worker_id,
                        last_processed_id=value,
                        last_run_at=now,
                        total_events_processed=events_processed
                    )
                    session.add(checkpoint)
                else:
                    if value < checkpoint.last_processed_id:
                        logger.warning(
                            f"Refusing to move checkpoint for {worker_id} backwards "
                            f"({checkpoint.last_processed_id} -> {value})"
                        )
                    else:
                        checkpoint.last_processed_id = value
                    checkpoint.last_run_at = now
                    checkpoint.total_events_processed = (
                        (checkpoint.total_events_processed or 0) + events_processed
                    )

                await session.commit()
                return checkpoint.last_processed_id
        except Exception as e:
            raise CheckpointError(
                "Failed to save worker checkpoint",
                context={"worker_id": worker_id, "checkpoint_value": value},
                original_exception=e
            )

    async def list_checkpoints(self) -> List[WorkerCheckpoint]:
        async with self.session_factory() as session:
            result = await session.execute(select(WorkerCheckpoint).order_by(WorkerCheckpoint.worker_id))
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Rules and hierarchy
    # ------------------------------------------------------------------

    async def get_ancestor_ids(self, org_unit_id: int) -> List[int]:
        """Parent chain of a unit, nearest first. Stops on cycles."""
        ancestors: List[int] = []
        seen = {org_unit_id}
        current = org_unit_id
        async with self.session_factory() as session:
            for _ in range(MAX_HIERARCHY_DEPTH):
                parent_id = (await session.execute(
                    select(OrgUnit.parent_id).where(OrgUnit.id == current)
                )).scalar_one_or_none()
                if parent_id is None or parent_id in seen:
                    break
                ancestors.append(parent_id)
                seen.add(parent_id)
                current = parent_id
        return ancestors

    async def get_candidate_rules(
        self,
        org_unit_ids: Sequence[int],
        event_type: str
    ) -> List[IntegrationRule]:
        """Active rules defined on any of the units for the event type or '*'."""
        if not org_unit_ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(IntegrationRule).where(
                    IntegrationRule.org_unit_id.in_(list(org_unit_ids)),
                    IntegrationRule.is_active.is_(True),
                    or_(IntegrationRule.event_type == event_type, IntegrationRule.event_type == "*")
                ).order_by(IntegrationRule.id)
            )
            return list(result.scalars().all())

    async def get_rule(self, rule_id: int) -> Optional[IntegrationRule]:
        async with self.session_factory() as session:
            return await session.get(IntegrationRule, rule_id)

    # ------------------------------------------------------------------
    # Delivery logs
    # ------------------------------------------------------------------

    async def create_delivery_log(self, **fields: Any) -> DeliveryAttemptLog:
        async with self.session_factory() as session:
            log = DeliveryAttemptLog(**fields)
            session.add(log)
            await session.commit()
            return log

    async def update_delivery_log(self, log_id: int, **fields: Any) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(DeliveryAttemptLog).where(DeliveryAttemptLog.id == log_id).values(**fields)
            )
            await session.commit()

    async def get_delivery_log(self, log_id: int) -> Optional[DeliveryAttemptLog]:
        async with self.session_factory() as session:
            return await session.get(DeliveryAttemptLog, log_id)

    async def get_due_retries(self, now: datetime, limit: int) -> List[DeliveryAttemptLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryAttemptLog).where(
                    DeliveryAttemptLog.status == DeliveryStatus.RETRYING,
                    DeliveryAttemptLog.next_attempt_at <= now
                ).order_by(DeliveryAttemptLog.next_attempt_at).limit(limit)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Scheduled deliveries
    # ------------------------------------------------------------------

    async def create_scheduled_delivery(self, **fields: Any) -> ScheduledDelivery:
        async with self.session_factory() as session:
            scheduled = ScheduledDelivery(**fields)
            session.add(scheduled)
            await session.commit()
            return scheduled

    async def get_scheduled_delivery(self, scheduled_id: int) -> Optional[ScheduledDelivery]:
        async with self.session_factory() as session:
            return await session.get(ScheduledDelivery, scheduled_id)

    async def get_due_scheduled(self, now_ms: int, limit: int) -> List[ScheduledDelivery]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledDelivery).where(
                    ScheduledDelivery.status == ScheduledStatus.PENDING,
                    ScheduledDelivery.scheduled_for <= now_ms
                ).order_by(ScheduledDelivery.scheduled_for).limit(limit)
            )
            return list(result.scalars().all())

    async def update_scheduled_delivery(
        self,
        scheduled_id: int,
        only_if_pending: bool = True,
        **fields: Any
    ) -> bool:
        """
        Update a scheduled delivery. Terminal rows are left untouched unless
        ``only_if_pending`` is False. Returns whether a row changed.
        """
        async with self.session_factory() as session:
            statement = update(ScheduledDelivery).where(ScheduledDelivery.id == scheduled_id)
            if only_if_pending:
                statement = statement.where(ScheduledDelivery.status == ScheduledStatus.PENDING)
            result = await session.execute(statement.values(**fields))
            await session.commit()
            return result.rowcount > 0

    async def get_pending_for_patient(self, org_id: int, patient_id: str) -> List[ScheduledDelivery]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ScheduledDelivery).where(
                    ScheduledDelivery.org_id == org_id,
                    ScheduledDelivery.patient_id == str(patient_id),
                    ScheduledDelivery.status == ScheduledStatus.PENDING
                )
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Dead-letter queue
    # ------------------------------------------------------------------

    async def create_dlq_entry(self, **fields: Any) -> DLQEntry:
        async with self.session_factory() as session:
            entry = DLQEntry(**fields)
            session.add(entry)
            await session.commit()
            return entry

    async def get_dlq_entry(self, entry_id: int) -> Optional[DLQEntry]:
        async with self.session_factory() as session:
            return await session.get(DLQEntry, entry_id)

    async def update_dlq_entry(self, entry_id: int, **fields: Any) -> None:
        async with self.session_factory() as session:
            await session.execute(update(DLQEntry).where(DLQEntry.id == entry_id).values(**fields))
            await session.commit()

    async def list_dlq_entries(
        self,
        org_id: Optional[int] = None,
        status: Optional[DLQStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        filters = []
        if org_id is not None:
            filters.append(DLQEntry.org_id == org_id)
        if status is not None:
            filters.append(DLQEntry.status == status)

        async with self.session_factory() as session:
            total = (await session.execute(
                select(func.count(DLQEntry.id)).where(*filters)
            )).scalar() or 0
            result = await session.execute(
                select(DLQEntry).where(*filters)
                .order_by(DLQEntry.failed_at.desc(), DLQEntry.id.desc())
                .offset(offset).limit(limit)
            )
            return {"total": total, "entries": list(result.scalars().all())}

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    async def get_circuit_state(self, rule_id: int) -> Optional[CircuitBreakerState]:
        async with self.session_factory() as session:
            return await session.get(CircuitBreakerState, rule_id)

    async def save_circuit_state(self, rule_id: int, **fields: Any) -> None:
        async with self.session_factory() as session:
            state = await session.get(CircuitBreakerState, rule_id)
            if state is None:
                state = CircuitBreakerState(rule_id=rule_id, consecutive_failures=0)
                session.add(state)
            for key, value in fields.items():
                setattr(state, key, value)
            await session.commit()

    async def claim_circuit_trial(
        self,
        rule_id: int,
        expected_state: CircuitState,
        opened_before: datetime,
        now: datetime
    ) -> bool:
        """
        Move an expired OPEN (or stale HALF_OPEN) circuit to HALF_OPEN.

        Conditional update: of several concurrent callers only one sees a
        matching row, and only that caller may send the trial attempt.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(CircuitBreakerState)
                .where(
                    CircuitBreakerState.rule_id == rule_id,
                    CircuitBreakerState.state == expected_state,
                    or_(
                        CircuitBreakerState.opened_at.is_(None),
                        CircuitBreakerState.opened_at <= opened_before
                    )
                )
                .values(state=CircuitState.HALF_OPEN, opened_at=now, updated_at=now)
            )
            await session.commit()
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Push inbox
    # ------------------------------------------------------------------

    async def add_inbound_event(self, **fields: Any) -> InboundEvent:
        async with self.session_factory() as session:
            inbound = InboundEvent(**fields)
            session.add(inbound)
            await session.commit()
            return inbound

    async def get_inbound_events(
        self,
        org_id: Optional[int],
        after_id: int,
        limit: int
    ) -> List[InboundEvent]:
        query = select(InboundEvent).where(InboundEvent.id > after_id)
        if org_id is not None:
            query = query.where(InboundEvent.org_id == org_id)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(InboundEvent.id).limit(limit))
            return list(result.scalars().all())
