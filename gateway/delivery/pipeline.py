# ============================================================================
# File: gateway/delivery/pipeline.py
# Description: Transform -> auth -> validate -> deliver -> record, shared by
#              immediate, scheduled, retried and DLQ deliveries
# ============================================================================
"""
Delivery pipeline.

One call delivers one rule (or one action of a multi-action rule) for one
event and records the outcome on a DeliveryAttemptLog row. Failures are
classified rather than raised:

- transformation, lookup, auth and URL errors fail the action permanently
  and do not count toward the circuit breaker
- HTTP 4xx (except 429) fails permanently
- 5xx, 429, timeouts and network errors are retried with backoff until the
  rule's retry budget is spent, then abandoned to the DLQ
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from core.config import settings
from core.exceptions import AuthError, GatewayError, TransformationError
from gateway.delivery.auth import TokenCache, build_auth_headers
from gateway.delivery.conditions import evaluate_condition
from gateway.delivery.dlq import DLQManager
from gateway.delivery.executor import execute_delivery
from gateway.delivery.retry import compute_retry_delay
from gateway.delivery.url_validator import validate_target_url
from gateway.transformers.engine import apply_transform
from models.base import ActionExecution, DeliveryStatus

logger = logging.getLogger(__name__)

TRANSFORMATION_RETURNED_NULL = "TRANSFORMATION_RETURNED_NULL"
CIRCUIT_OPEN = "CIRCUIT_OPEN"
CONDITION_NOT_MET = "CONDITION_NOT_MET"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

ACTION_OVERRIDES = (
    "target_url", "http_method", "auth_type", "auth_config",
    "transform_mode", "transform_config", "lookups", "timeout_ms",
)


@dataclass
class EventContext:
    """The event fields a delivery needs, whatever it was rebuilt from."""
    event_id: str
    org_id: Optional[int]
    org_unit_id: Optional[int]
    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event) -> "EventContext":
        return cls(event.event_id, event.org_id, event.org_unit_id, event.event_type, dict(event.payload))

    @classmethod
    def from_log(cls, log) -> "EventContext":
        return cls(log.event_id, log.org_id, log.org_unit_id, log.event_type or "", log.original_payload or {})

    @classmethod
    def from_scheduled(cls, scheduled) -> "EventContext":
        return cls(
            scheduled.original_event_id or f"scheduled-{scheduled.id}",
            scheduled.org_id,
            scheduled.org_unit_id,
            scheduled.event_type,
            scheduled.payload or {}
        )

    @classmethod
    def from_dlq_entry(cls, entry) -> "EventContext":
        return cls(
            entry.event_id or f"dlq-{entry.id}",
            entry.org_id,
            entry.org_unit_id,
            entry.event_type or "",
            entry.payload or {}
        )

    def script_context(self, rule) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "org_id": self.org_id,
            "org_unit_id": self.org_unit_id,
            "event_id": self.event_id,
            "rule_id": rule.id,
            "rule_name": rule.name,
        }

    def condition_context(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "org_id": self.org_id,
            "org_unit_id": self.org_unit_id,
            "payload": self.payload,
        }


@dataclass
class ActionTarget:
    """
    Effective delivery settings for a rule or one of its actions.

    Exposes ``transform_mode``/``transform_config``/``lookups`` so it can be
    handed to ``apply_transform`` directly.
    """
    id: int
    name: str
    action_index: Optional[int]
    target_url: str
    http_method: str
    auth_type: Any
    auth_config: Optional[Dict[str, Any]]
    transform_mode: Any
    transform_config: Optional[Dict[str, Any]]
    lookups: Optional[List[Dict[str, Any]]]
    timeout_ms: int
    enforce_https: bool = True
    block_private_networks: bool = True
    condition: Any = None

    @classmethod
    def for_rule(cls, rule, action: Optional[Dict[str, Any]] = None, action_index: Optional[int] = None):
        values = {
            "target_url": rule.target_url,
            "http_method": rule.http_method or "POST",
            "auth_type": rule.auth_type,
            "auth_config": rule.auth_config,
            "transform_mode": rule.transform_mode,
            "transform_config": rule.transform_config,
            "lookups": rule.lookups,
            "timeout_ms": rule.timeout_ms or settings.DEFAULT_DELIVERY_TIMEOUT_MS,
        }
        name = rule.name
        condition = None
        if action:
            for key in ACTION_OVERRIDES:
                if action.get(key) is not None:
                    values[key] = action[key]
            name = action.get("name") or f"{rule.name} - Action {action_index + 1}"
            condition = action.get("condition")

        return cls(
            id=rule.id,
            name=name,
            action_index=action_index,
            enforce_https=rule.enforce_https if rule.enforce_https is not None else True,
            block_private_networks=(
                rule.block_private_networks if rule.block_private_networks is not None else True
            ),
            condition=condition,
            **values
        )


def resolve_actions(rule) -> List[ActionTarget]:
    """One target per action for multi-action rules, else the rule itself."""
    actions = [a for a in (rule.actions or []) if isinstance(a, dict)]
    if not actions:
        return [ActionTarget.for_rule(rule)]
    return [ActionTarget.for_rule(rule, action, index) for index, action in enumerate(actions)]


@dataclass
class DeliveryOutcome:
    rule_id: int
    action_index: Optional[int]
    status: DeliveryStatus
    log_id: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    response_status: Optional[int] = None
    retryable: bool = False
    # Only outbound failures that may be transient count toward the breaker
    counts_toward_circuit: bool = False
    request_payload: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS


class DeliveryPipeline:

    def __init__(
        self,
        store,
        circuit_breaker=None,
        lookup_resolver=None,
        token_cache: Optional[TokenCache] = None
    ):
        self.store = store
        self.circuit_breaker = circuit_breaker
        self.lookup_resolver = lookup_resolver
        self.token_cache = token_cache or TokenCache()
        self.dlq = DLQManager(store, pipeline=self)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def deliver_event(
        self,
        rule,
        ctx: EventContext,
        scheduled_delivery_id: Optional[int] = None,
        schedule_retries: bool = True,
        dead_letter: bool = True
    ) -> List[DeliveryOutcome]:
        """Deliver every action of ``rule`` for one event."""
        if await self._circuit_open(rule):
            return [await self._short_circuit(rule, ctx, scheduled_delivery_id, dead_letter)]

        targets = resolve_actions(rule)
        condition_context = ctx.condition_context()

        runnable = []
        outcomes: List[Optional[DeliveryOutcome]] = [None] * len(targets)
        for position, target in enumerate(targets):
            if target.action_index is not None and not evaluate_condition(target.condition, condition_context):
                logger.info(f"Skipping action {target.name!r} of rule {rule.id}: condition not met")
                outcomes[position] = DeliveryOutcome(
                    rule_id=rule.id,
                    action_index=target.action_index,
                    status=DeliveryStatus.SKIPPED,
                    error_code=CONDITION_NOT_MET
                )
                continue
            runnable.append((position, target))

        async def run(target: ActionTarget) -> DeliveryOutcome:
            return await self._run_action(
                rule, target, ctx,
                attempt=1,
                scheduled_delivery_id=scheduled_delivery_id,
                schedule_retries=schedule_retries,
                dead_letter=dead_letter
            )

        if rule.action_execution == ActionExecution.PARALLEL and len(runnable) > 1:
            results = await asyncio.gather(*(run(target) for _, target in runnable))
            for (position, _), outcome in zip(runnable, results):
                outcomes[position] = outcome
        else:
            for position, target in runnable:
                outcomes[position] = await run(target)

        final = [o for o in outcomes if o is not None]
        await self._record_circuit(rule, final)
        return final

    async def retry_log(self, rule, log) -> DeliveryOutcome:
        """Re-run a RETRYING log in place with the next attempt number."""
        target = self._target_for_index(rule, log.action_index)
        if target is None:
            await self.store.update_delivery_log(
                log.id,
                status=DeliveryStatus.ABANDONED,
                next_attempt_at=None,
                error_message=f"Action {log.action_index} no longer exists on rule {rule.id}"
            )
            return DeliveryOutcome(rule.id, log.action_index, DeliveryStatus.ABANDONED, log_id=log.id)

        if await self._circuit_open(rule):
            delay = compute_retry_delay(rule.retry_strategy, log.attempt_count)
            await self.store.update_delivery_log(
                log.id,
                next_attempt_at=datetime.utcnow() + timedelta(seconds=delay),
                error_code=CIRCUIT_OPEN,
                error_message="Circuit breaker is open; retry postponed"
            )
            return DeliveryOutcome(
                rule.id, log.action_index, DeliveryStatus.RETRYING, log_id=log.id, error_code=CIRCUIT_OPEN
            )

        outcome = await self._run_action(
            rule, target, EventContext.from_log(log),
            attempt=(log.attempt_count or 1) + 1,
            log_id=log.id,
            scheduled_delivery_id=log.scheduled_delivery_id
        )
        await self._record_circuit(rule, [outcome])
        return outcome

    async def deliver_dlq_entry(self, rule, entry) -> DeliveryOutcome:
        """
        Manual DLQ retry: a fresh attempt on a new log row. The original
        log keeps its attempt counter.
        """
        target = self._target_for_index(rule, entry.action_index)
        if target is None:
            return DeliveryOutcome(
                rule.id, entry.action_index, DeliveryStatus.FAILED,
                error_code="ACTION_NOT_FOUND",
                error_message=f"Action {entry.action_index} no longer exists on rule {rule.id}"
            )

        outcome = await self._run_action(
            rule, target, EventContext.from_dlq_entry(entry),
            attempt=1,
            schedule_retries=False,
            dead_letter=False
        )
        await self._record_circuit(rule, [outcome])
        return outcome

    # ------------------------------------------------------------------
    # Single action
    # ------------------------------------------------------------------

    async def _run_action(
        self,
        rule,
        target: ActionTarget,
        ctx: EventContext,
        attempt: int = 1,
        log_id: Optional[int] = None,
        scheduled_delivery_id: Optional[int] = None,
        schedule_retries: bool = True,
        dead_letter: bool = True
    ) -> DeliveryOutcome:
        common = dict(
            rule=rule, target=target, ctx=ctx, attempt=attempt, log_id=log_id,
            scheduled_delivery_id=scheduled_delivery_id,
            schedule_retries=schedule_retries, dead_letter=dead_letter
        )

        try:
            # --------------------------------------------------
            # PHASE 1: TRANSFORM
            # --------------------------------------------------
            try:
                body = await apply_transform(
                    ctx.payload, target, ctx.script_context(rule), self.lookup_resolver
                )
            except TransformationError as e:
                logger.warning(
                    f"Transformation failed for rule {rule.id} event {ctx.event_id}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                return await self._finish(**common, error_code=e.code, error_message=e.message)

            if body is None:
                return await self._finish(
                    **common,
                    status=DeliveryStatus.SKIPPED,
                    error_code=TRANSFORMATION_RETURNED_NULL,
                    error_message="Transformation returned no payload; delivery skipped"
                )

            # --------------------------------------------------
            # PHASE 2: AUTH HEADERS
            # --------------------------------------------------
            try:
                headers = await build_auth_headers(
                    target.auth_type,
                    target.auth_config,
                    token_cache=self.token_cache,
                    cache_key=f"{rule.id}:{target.action_index}"
                )
            except AuthError as e:
                logger.warning(
                    f"Auth header construction failed for rule {rule.id}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                return await self._finish(**common, request_payload=body, error_code=e.code, error_message=e.message)

            # --------------------------------------------------
            # PHASE 3: TARGET URL
            # --------------------------------------------------
            check = validate_target_url(target.target_url, target.enforce_https, target.block_private_networks)
            if not check.valid:
                logger.warning(f"Target URL rejected for rule {rule.id}: {check.reason}")
                return await self._finish(
                    **common,
                    request_payload=body,
                    error_code="INVALID_TARGET_URL",
                    error_message=f"Invalid target URL: {check.reason}"
                )

            # --------------------------------------------------
            # PHASE 4: DELIVER
            # --------------------------------------------------
            result = await execute_delivery(
                target.target_url, target.http_method, headers, body, target.timeout_ms
            )
            return await self._finish(
                **common,
                status=result.status,
                request_payload=body,
                response_status=result.response_status,
                response_body=result.response_body,
                response_time_ms=result.response_time_ms,
                error_code=result.error_code,
                error_message=result.error_message,
                retryable=result.retryable,
                outbound=True
            )

        except GatewayError as e:
            logger.error(
                f"Delivery failed for rule {rule.id} event {ctx.event_id}: {e}",
                extra={"error_context": e.to_dict()}
            )
            return await self._finish(**common, error_code=e.code, error_message=e.message)

    async def _finish(
        self,
        rule,
        target: ActionTarget,
        ctx: EventContext,
        attempt: int,
        log_id: Optional[int],
        scheduled_delivery_id: Optional[int],
        schedule_retries: bool,
        dead_letter: bool,
        status: DeliveryStatus = DeliveryStatus.FAILED,
        request_payload: Any = None,
        response_status: Optional[int] = None,
        response_body: Optional[str] = None,
        response_time_ms: Optional[float] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        retryable: bool = False,
        outbound: bool = False
    ) -> DeliveryOutcome:
        """Decide the final status, write the log row and dead-letter if needed."""
        next_attempt_at = None
        if status == DeliveryStatus.FAILED and retryable and schedule_retries:
            max_retries = rule.retry_count if rule.retry_count is not None else 3
            if attempt > max_retries:
                status = DeliveryStatus.ABANDONED
                error_message = f"{error_message} - max retries ({max_retries}) reached"
            else:
                status = DeliveryStatus.RETRYING
                delay = compute_retry_delay(rule.retry_strategy, attempt)
                next_attempt_at = datetime.utcnow() + timedelta(seconds=delay)

        fields = dict(
            rule_id=rule.id,
            event_id=ctx.event_id,
            org_id=ctx.org_id,
            org_unit_id=ctx.org_unit_id,
            event_type=ctx.event_type,
            action_index=target.action_index,
            scheduled_delivery_id=scheduled_delivery_id,
            status=status,
            response_status=response_status,
            response_time_ms=response_time_ms,
            response_body=response_body,
            error_message=error_message,
            error_code=error_code,
            attempt_count=attempt,
            next_attempt_at=next_attempt_at,
            request_payload=request_payload,
            original_payload=ctx.payload,
        )
        if log_id is None:
            log = await self.store.create_delivery_log(**fields)
            log_id = log.id
        else:
            await self.store.update_delivery_log(log_id, **fields)

        if status == DeliveryStatus.SUCCESS:
            logger.info(
                f"Delivered event {ctx.event_id} via rule {rule.id} "
                f"({response_status}, attempt {attempt})"
            )
        elif status == DeliveryStatus.RETRYING:
            logger.info(
                f"Delivery of event {ctx.event_id} via rule {rule.id} will retry at "
                f"{next_attempt_at.isoformat()} (attempt {attempt}): {error_message}"
            )
        elif status in (DeliveryStatus.FAILED, DeliveryStatus.ABANDONED):
            logger.warning(
                f"Delivery of event {ctx.event_id} via rule {rule.id} {status.value.lower()}: "
                f"[{error_code}] {error_message}"
            )
            if dead_letter:
                await self.dlq.create_entry(
                    rule_id=rule.id,
                    event_id=ctx.event_id,
                    payload=ctx.payload,
                    error_code=error_code,
                    error_message=error_message,
                    response_status=response_status,
                    org_id=ctx.org_id,
                    org_unit_id=ctx.org_unit_id,
                    event_type=ctx.event_type,
                    delivery_log_id=log_id,
                    action_index=target.action_index
                )

        return DeliveryOutcome(
            rule_id=rule.id,
            action_index=target.action_index,
            status=status,
            log_id=log_id,
            error_code=error_code,
            error_message=error_message,
            response_status=response_status,
            retryable=retryable,
            counts_toward_circuit=outbound and retryable,
            request_payload=request_payload
        )

    # ------------------------------------------------------------------
    # Circuit breaker
    # ------------------------------------------------------------------

    async def _circuit_open(self, rule) -> bool:
        if self.circuit_breaker is None:
            return False
        return await self.circuit_breaker.is_open(rule.id)

    async def _short_circuit(self, rule, ctx: EventContext, scheduled_delivery_id, dead_letter) -> DeliveryOutcome:
        logger.warning(f"Circuit open for rule {rule.id}, skipping delivery of event {ctx.event_id}")
        return await self._finish(
            rule=rule,
            target=ActionTarget.for_rule(rule),
            ctx=ctx,
            attempt=1,
            log_id=None,
            scheduled_delivery_id=scheduled_delivery_id,
            schedule_retries=False,
            dead_letter=dead_letter,
            error_code=CIRCUIT_OPEN,
            error_message="Circuit breaker is open for this rule",
            retryable=True
        )

    async def _record_circuit(self, rule, outcomes: List[DeliveryOutcome]) -> None:
        if self.circuit_breaker is None:
            return
        if any(o.counts_toward_circuit for o in outcomes):
            await self.circuit_breaker.record_failure(rule.id, threshold=rule.circuit_breaker_threshold)
        elif any(o.succeeded for o in outcomes):
            await self.circuit_breaker.record_success(rule.id)

    @staticmethod
    def _target_for_index(rule, action_index: Optional[int]) -> Optional[ActionTarget]:
        for target in resolve_actions(rule):
            if target.action_index == action_index:
                return target
        return None
