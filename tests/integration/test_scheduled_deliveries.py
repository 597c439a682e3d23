"""
Tests for DELAYED and RECURRING deliveries
"""

import time
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from sqlalchemy import select

from core.exceptions import SchedulingError
from gateway.delivery.executor import DeliveryResult
from gateway.delivery.pipeline import DeliveryPipeline
from gateway.scheduling.service import ScheduledDeliveryService
from models import DeliveryAttemptLog, DLQEntry, ScheduledDelivery
from models.base import DeliveryMode, DeliveryStatus, ScheduledStatus

HOUR = 3_600_000
DAY = 24 * HOUR


def now_ms():
    return int(time.time() * 1000)


def ok():
    return DeliveryResult(status=DeliveryStatus.SUCCESS, response_status=200, response_body="ok")


def failed(status=500, retryable=True):
    return DeliveryResult(
        status=DeliveryStatus.FAILED,
        response_status=status,
        error_code="SERVER_ERROR" if retryable else "CLIENT_ERROR",
        error_message=f"HTTP {status}",
        retryable=retryable
    )


def event(payload, event_id="evt-1", event_type="APPOINTMENT_CONFIRMATION"):
    return SimpleNamespace(
        event_id=event_id, org_id=1, org_unit_id=100, event_type=event_type, payload=payload
    )


async def fetch_all(session_factory, model):
    async with session_factory() as session:
        result = await session.execute(select(model).order_by(model.id))
        return list(result.scalars().all())


@pytest.fixture
def service(store):
    return ScheduledDeliveryService(store, DeliveryPipeline(store))


@pytest.fixture
def delayed_rule(make_rule):
    async def _delayed_rule(**overrides):
        return await make_rule(
            delivery_mode=DeliveryMode.DELAYED,
            scheduling_config={"script": "return event['sendAt']", "timeout_ms": 10000},
            **overrides
        )
    return _delayed_rule


@pytest.fixture
def recurring_rule(make_rule):
    async def _recurring_rule(**overrides):
        return await make_rule(
            delivery_mode=DeliveryMode.RECURRING,
            scheduling_config={
                "script": "return {'firstOccurrence': event['start'], 'intervalMs': 86400000, 'maxOccurrences': 2}",
                "timeout_ms": 10000,
            },
            **overrides
        )
    return _recurring_rule


@pytest.mark.asyncio
async def test_delayed_delivery_sent_when_due(service, delayed_rule, store, session_factory):
    """
    Test: a DELAYED row is sent once its time comes and linked to its delivery log
    """
    rule = await delayed_rule()
    send_at = now_ms() + 2 * HOUR
    scheduled = await service.schedule_delivery(rule, event({"sendAt": send_at, "patientRid": "P-1"}))

    with patch("gateway.delivery.pipeline.execute_delivery", AsyncMock(return_value=ok())) as send:
        assert (await service.process_due(now_ms=send_at - 1))["processed"] == 0
        stats = await service.process_due(now_ms=send_at)

    assert stats == {"processed": 1, "sent": 1, "rescheduled": 0, "failed": 0}
    assert send.await_args.args[3] == {"sendAt": send_at, "patientRid": "P-1"}

    sent = await store.get_scheduled_delivery(scheduled.id)
    assert sent.status == ScheduledStatus.SENT
    assert sent.sent_at is not None
    [log] = await fetch_all(session_factory, DeliveryAttemptLog)
    assert log.scheduled_delivery_id == scheduled.id
    assert log.event_id == "evt-1"


@pytest.mark.asyncio
async def test_missing_script_rejected(service, make_rule):
    """
    Test: a scheduled rule without a script cannot schedule
    """
    rule = await make_rule(delivery_mode=DeliveryMode.DELAYED, scheduling_config=None)
    with pytest.raises(SchedulingError):
        await service.schedule_delivery(rule, event({}))


@pytest.mark.asyncio
async def test_past_time_rejected(service, delayed_rule, session_factory):
    """
    Test: a script returning a past time persists nothing
    """
    rule = await delayed_rule()
    with pytest.raises(SchedulingError):
        await service.schedule_delivery(rule, event({"sendAt": now_ms() - HOUR}))
    assert await fetch_all(session_factory, ScheduledDelivery) == []


@pytest.mark.asyncio
async def test_recurring_series(service, recurring_rule, store, session_factory):
    """
    Test: each sent occurrence schedules the next until max_occurrences
    """
    rule = await recurring_rule()
    start = now_ms() + HOUR
    first = await service.schedule_delivery(rule, event({"start": start}))
    assert first.scheduled_for == start
    assert first.recurring_config["occurrence_number"] == 1

    with patch("gateway.delivery.pipeline.execute_delivery", AsyncMock(return_value=ok())):
        await service.process_due(now_ms=start)
        rows = await fetch_all(session_factory, ScheduledDelivery)
        assert [r.status for r in rows] == [ScheduledStatus.SENT, ScheduledStatus.PENDING]
        assert rows[1].scheduled_for == start + DAY
        assert rows[1].recurring_config["occurrence_number"] == 2

        await service.process_due(now_ms=start + DAY)

    rows = await fetch_all(session_factory, ScheduledDelivery)
    assert [r.status for r in rows] == [ScheduledStatus.SENT, ScheduledStatus.SENT]


@pytest.mark.asyncio
async def test_permanent_failure_dead_letters_and_continues_series(service, recurring_rule, session_factory):
    """
    Test: a failed occurrence is dead-lettered and the series goes on
    """
    rule = await recurring_rule()
    start = now_ms() + HOUR
    await service.schedule_delivery(rule, event({"start": start}))

    with patch("gateway.delivery.pipeline.execute_delivery", AsyncMock(return_value=failed(400, retryable=False))):
        stats = await service.process_due(now_ms=start)

    assert stats["failed"] == 1
    rows = await fetch_all(session_factory, ScheduledDelivery)
    assert [r.status for r in rows] == [ScheduledStatus.FAILED, ScheduledStatus.PENDING]
    assert rows[0].error_message == "[CLIENT_ERROR] HTTP 400"

    [entry] = await fetch_all(session_factory, DLQEntry)
    assert entry.event_id == "evt-1"
    assert entry.payload == {"start": start}


@pytest.mark.asyncio
async def test_retryable_failure_reschedules(service, delayed_rule, store, session_factory):
    """
    Test: a transient failure pushes scheduled_for back and keeps the row PENDING
    """
    rule = await delayed_rule(retry_count=2)
    send_at = now_ms() + HOUR
    scheduled = await service.schedule_delivery(rule, event({"sendAt": send_at}))

    with patch("gateway.delivery.pipeline.execute_delivery", AsyncMock(return_value=failed(503))):
        stats = await service.process_due(now_ms=send_at)

    assert stats["rescheduled"] == 1
    row = await store.get_scheduled_delivery(scheduled.id)
    assert row.status == ScheduledStatus.PENDING
    assert row.attempt_count == 1
    assert row.scheduled_for > now_ms()
    # Scheduled attempts are retried here, not through delivery log retries
    [log] = await fetch_all(session_factory, DeliveryAttemptLog)
    assert log.status == DeliveryStatus.FAILED
    assert await fetch_all(session_factory, DLQEntry) == []


@pytest.mark.asyncio
async def test_inactive_rule_fails_scheduled(service, delayed_rule, db_session, store):
    """
    Test: a row whose rule was deactivated fails without sending
    """
    rule = await delayed_rule()
    send_at = now_ms() + HOUR
    scheduled = await service.schedule_delivery(rule, event({"sendAt": send_at}))
    rule.is_active = False
    await db_session.commit()

    with patch("gateway.delivery.pipeline.execute_delivery", AsyncMock(return_value=ok())) as send:
        stats = await service.process_due(now_ms=send_at)

    send.assert_not_awaited()
    assert stats["failed"] == 1
    assert (await store.get_scheduled_delivery(scheduled.id)).status == ScheduledStatus.FAILED


@pytest.mark.asyncio
async def test_cancel_matching_respects_time_window(service, delayed_rule, store):
    """
    Test: only the patient's rows within an hour of the cancelled appointment are cancelled
    """
    rule = await delayed_rule()
    send_at = now_ms() + HOUR
    morning = await service.schedule_delivery(
        rule, event({"sendAt": send_at, "patientRid": "P-1", "appointmentDateTime": "2024-01-15T10:00:00Z"})
    )
    evening = await service.schedule_delivery(
        rule, event({"sendAt": send_at, "patientRid": "P-1", "appointmentDateTime": "2024-01-15T18:00:00Z"},
                    event_id="evt-2")
    )

    cancelled = await service.cancel_matching(1, "P-1", "2024-01-15T10:20:00Z", reason="rescheduled")

    assert cancelled == 1
    assert (await store.get_scheduled_delivery(morning.id)).status == ScheduledStatus.CANCELLED
    assert (await store.get_scheduled_delivery(evening.id)).status == ScheduledStatus.PENDING

    # Without a time every pending row for the patient goes
    assert await service.cancel_matching(1, "P-1") == 1
    assert await service.cancel_matching(1, "") == 0


@pytest.mark.asyncio
async def test_cancelled_row_is_never_sent(service, delayed_rule, store):
    """
    Test: terminal rows are ignored by process_due
    """
    rule = await delayed_rule()
    send_at = now_ms() + HOUR
    await service.schedule_delivery(rule, event({"sendAt": send_at, "patientRid": "P-9"}))
    await service.handle_cancellation_event(event({"patientRid": "P-9"}, event_type="APPOINTMENT_CANCELLATION"))

    with patch("gateway.delivery.pipeline.execute_delivery", AsyncMock(return_value=ok())) as send:
        stats = await service.process_due(now_ms=send_at)

    assert stats["processed"] == 0
    send.assert_not_awaited()
