"""
Per-rule circuit breaker backed by the circuit_breaker_states table.

CLOSED -> OPEN after ``threshold`` consecutive failures. OPEN short-circuits
every attempt until ``recovery_seconds`` have passed, then one attempt is
let through as HALF_OPEN: success closes the circuit, failure reopens it.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from core.config import settings
from models.base import CircuitState

logger = logging.getLogger(__name__)


class CircuitBreaker:

    def __init__(
        self,
        store,
        threshold: Optional[int] = None,
        recovery_seconds: Optional[int] = None
    ):
        self.store = store
        self.threshold = threshold or settings.CIRCUIT_BREAKER_THRESHOLD
        self.recovery_seconds = (
            recovery_seconds if recovery_seconds is not None else settings.CIRCUIT_RECOVERY_SECONDS
        )

    async def is_open(self, rule_id: int) -> bool:
        """True when attempts for this rule must be short-circuited."""
        state = await self.store.get_circuit_state(rule_id)
        if state is None or state.state == CircuitState.CLOSED:
            return False

        # OPEN, or HALF_OPEN with a trial already in flight. A trial that never
        # reported back frees its slot after another recovery period.
        now = datetime.utcnow()
        cutoff = now - timedelta(seconds=self.recovery_seconds)
        if state.opened_at is not None and state.opened_at > cutoff:
            return True

        if await self.store.claim_circuit_trial(rule_id, state.state, cutoff, now):
            logger.info(f"Circuit for rule {rule_id} is half-open, allowing a trial delivery")
            return False
        return True

    async def record_success(self, rule_id: int) -> None:
        state = await self.store.get_circuit_state(rule_id)
        if state is not None and state.state != CircuitState.CLOSED:
            logger.info(f"Circuit for rule {rule_id} closed after successful delivery")
        await self.store.save_circuit_state(
            rule_id,
            consecutive_failures=0,
            state=CircuitState.CLOSED,
            opened_at=None,
            last_success_at=datetime.utcnow()
        )

    async def record_failure(self, rule_id: int, threshold: Optional[int] = None) -> CircuitState:
        """Count one failure; returns the resulting state."""
        limit = threshold or self.threshold
        now = datetime.utcnow()
        state = await self.store.get_circuit_state(rule_id)
        failures = (state.consecutive_failures if state else 0) + 1
        current = state.state if state else CircuitState.CLOSED

        if current == CircuitState.HALF_OPEN or failures >= limit:
            if current != CircuitState.OPEN:
                logger.warning(
                    f"Circuit for rule {rule_id} opened after {failures} consecutive failures"
                )
            await self.store.save_circuit_state(
                rule_id,
                consecutive_failures=failures,
                state=CircuitState.OPEN,
                opened_at=now,
                last_failure_at=now
            )
            return CircuitState.OPEN

        await self.store.save_circuit_state(
            rule_id,
            consecutive_failures=failures,
            state=current,
            last_failure_at=now
        )
        return current

    async def reset(self, rule_id: int) -> None:
        await self.store.save_circuit_state(
            rule_id,
            consecutive_failures=0,
            state=CircuitState.CLOSED,
            opened_at=None
        )
        logger.info(f"Circuit for rule {rule_id} reset")
