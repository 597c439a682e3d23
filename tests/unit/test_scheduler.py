import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from gateway.scheduler import GatewayScheduler
from gateway.sources.http_push import HttpPushEventSource


@pytest.fixture
def mock_source():
    source = MagicMock()
    source.name = "mock"
    source.close = AsyncMock()
    return source


@pytest.mark.asyncio
async def test_scheduler_initialization(session_factory, mock_source):
    scheduler = GatewayScheduler(session_factory=session_factory, source=mock_source)
    assert scheduler.scheduler is not None
    assert scheduler.engine is None
    assert scheduler.worker.source is mock_source
    assert scheduler.worker.scheduled_service is scheduler.scheduled_service
    assert scheduler.pipeline.circuit_breaker is scheduler.circuit_breaker


@pytest.mark.asyncio
async def test_default_source_from_settings(session_factory):
    scheduler = GatewayScheduler(session_factory=session_factory)
    assert isinstance(scheduler.source, HttpPushEventSource)


@pytest.mark.asyncio
async def test_jobs_registered(session_factory, mock_source):
    scheduler = GatewayScheduler(session_factory=session_factory, source=mock_source)
    scheduler.start()
    try:
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {"poll_job", "scheduled_delivery_job", "retry_job", "dedup_sweep_job"}
    finally:
        await scheduler.stop()
    mock_source.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_poll_job_swallows_errors(session_factory, mock_source):
    scheduler = GatewayScheduler(session_factory=session_factory, source=mock_source)
    scheduler.worker.tick = AsyncMock(side_effect=RuntimeError("boom"))

    await scheduler.run_poll_job()

    assert scheduler.worker.tick.called


@pytest.mark.asyncio
async def test_retry_and_scheduled_jobs(session_factory, mock_source):
    scheduler = GatewayScheduler(session_factory=session_factory, source=mock_source)

    with patch.object(scheduler.retry_manager, "process_due_retries", AsyncMock(return_value={"processed": 0})) as retries, \
            patch.object(scheduler.scheduled_service, "process_due", AsyncMock(return_value={"processed": 2})) as due:
        await scheduler.run_retry_job()
        await scheduler.run_scheduled_job()

    assert retries.called
    assert due.called


@pytest.mark.asyncio
async def test_dedup_sweep_job(session_factory, mock_source):
    scheduler = GatewayScheduler(session_factory=session_factory, source=mock_source)
    scheduler.dedup.sweep = MagicMock(return_value=3)

    await scheduler.run_dedup_sweep()

    scheduler.dedup.sweep.assert_called_once()


@pytest.mark.asyncio
async def test_all_jobs_run_on_event_loop(session_factory, mock_source):
    """Plain functions would be sent to a worker thread by the asyncio executor"""
    scheduler = GatewayScheduler(session_factory=session_factory, source=mock_source)
    scheduler.start()
    try:
        for job in scheduler.scheduler.get_jobs():
            assert asyncio.iscoroutinefunction(job.func), job.id
    finally:
        await scheduler.stop()
