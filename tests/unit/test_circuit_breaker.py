"""
Unit tests for the per-rule circuit breaker
"""

import pytest
from datetime import datetime, timedelta

from gateway.delivery.circuit_breaker import CircuitBreaker
from models.base import CircuitState


@pytest.fixture
def breaker(store):
    return CircuitBreaker(store, threshold=5, recovery_seconds=60)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_unknown_rule_is_closed(self, breaker):
        assert await breaker.is_open(42) is False

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker, store):
        for _ in range(4):
            assert await breaker.record_failure(1) == CircuitState.CLOSED
        assert await breaker.is_open(1) is False

        assert await breaker.record_failure(1) == CircuitState.OPEN
        assert await breaker.is_open(1) is True

        state = await store.get_circuit_state(1)
        assert state.consecutive_failures == 5
        assert state.opened_at is not None

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, breaker, store):
        for _ in range(4):
            await breaker.record_failure(1)
        await breaker.record_success(1)
        await breaker.record_failure(1)

        state = await store.get_circuit_state(1)
        assert state.consecutive_failures == 1
        assert state.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_rule_threshold_overrides_default(self, breaker):
        await breaker.record_failure(7, threshold=2)
        assert await breaker.record_failure(7, threshold=2) == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_after_recovery(self, store):
        breaker = CircuitBreaker(store, threshold=1, recovery_seconds=0)
        await breaker.record_failure(3)

        # Recovery elapsed: one trial attempt is let through
        assert await breaker.is_open(3) is False
        assert (await store.get_circuit_state(3)).state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, store):
        breaker = CircuitBreaker(store, threshold=5, recovery_seconds=0)
        await store.save_circuit_state(3, state=CircuitState.HALF_OPEN, consecutive_failures=5)

        assert await breaker.record_failure(3) == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self, store):
        breaker = CircuitBreaker(store, threshold=1, recovery_seconds=0)
        await breaker.record_failure(3)
        await breaker.is_open(3)
        await breaker.record_success(3)

        state = await store.get_circuit_state(3)
        assert state.state == CircuitState.CLOSED
        assert state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_half_open_lets_only_one_attempt_through(self, breaker, store):
        for _ in range(5):
            await breaker.record_failure(4)
        await store.save_circuit_state(4, opened_at=datetime.utcnow() - timedelta(seconds=120))

        assert await breaker.is_open(4) is False
        # Trial in flight: everyone else is still short-circuited
        assert await breaker.is_open(4) is True
        assert await breaker.is_open(4) is True
        assert (await store.get_circuit_state(4)).state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_stale_trial_frees_slot(self, breaker, store):
        await store.save_circuit_state(
            4,
            state=CircuitState.HALF_OPEN,
            consecutive_failures=5,
            opened_at=datetime.utcnow() - timedelta(seconds=120)
        )

        assert await breaker.is_open(4) is False
        assert await breaker.is_open(4) is True

    @pytest.mark.asyncio
    async def test_open_within_recovery_is_not_claimed(self, breaker, store):
        for _ in range(5):
            await breaker.record_failure(4)

        assert await store.claim_circuit_trial(
            4, CircuitState.OPEN, datetime.utcnow() - timedelta(seconds=60), datetime.utcnow()
        ) is False
        assert (await store.get_circuit_state(4)).state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        for _ in range(5):
            await breaker.record_failure(1)
        await breaker.reset(1)
        assert await breaker.is_open(1) is False
