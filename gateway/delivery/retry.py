"""
Retry backoff and the periodic retry pass over RETRYING delivery logs.
"""

import logging
import random
from datetime import datetime
from typing import Any, Dict, Optional

from core.config import settings
from core.exceptions import GatewayError
from models.base import DeliveryStatus, RetryStrategy

logger = logging.getLogger(__name__)

MAX_JITTER_SECONDS = 2.0


def compute_retry_delay(
    strategy: Any,
    attempt: int,
    base_seconds: Optional[float] = None,
    max_seconds: Optional[float] = None,
    jitter: bool = True
) -> float:
    """
    Seconds to wait before the next attempt.

    ``attempt`` is the number of the attempt that just failed (1-based).
    FIXED waits ``base``, LINEAR ``base * attempt`` and EXPONENTIAL
    ``base * 2 ** (attempt - 1)``; the result is capped at ``max_seconds``
    before up to 2 s of jitter is added.
    """
    base = base_seconds if base_seconds is not None else settings.RETRY_BASE_DELAY_SECONDS
    cap = max_seconds if max_seconds is not None else settings.RETRY_MAX_DELAY_SECONDS
    attempt = max(int(attempt or 1), 1)

    name = strategy.value if isinstance(strategy, RetryStrategy) else str(strategy or "").upper()
    if name == RetryStrategy.FIXED.value:
        delay = base
    elif name == RetryStrategy.LINEAR.value:
        delay = base * attempt
    else:
        delay = base * 2 ** (attempt - 1)

    delay = min(delay, cap)
    if jitter:
        delay += random.uniform(0, MAX_JITTER_SECONDS)
    return delay


class RetryManager:
    """
    Re-runs RETRYING deliveries whose next_attempt_at has passed.

    The retried attempt updates the original log row; the pipeline moves it
    to SUCCESS, back to RETRYING, or to ABANDONED with a DLQ entry once the
    rule's retry budget is spent.
    """

    def __init__(self, store, pipeline, batch_size: Optional[int] = None):
        self.store = store
        self.pipeline = pipeline
        self.batch_size = batch_size or settings.RETRY_BATCH_SIZE

    async def process_due_retries(self) -> Dict[str, int]:
        stats = {"processed": 0, "succeeded": 0, "rescheduled": 0, "abandoned": 0, "failed": 0}

        due = await self.store.get_due_retries(datetime.utcnow(), self.batch_size)
        if not due:
            return stats

        logger.info(f"Processing {len(due)} due retries")

        for log in due:
            stats["processed"] += 1
            try:
                rule = await self.store.get_rule(log.rule_id)
                if rule is None or not rule.is_active:
                    await self.store.update_delivery_log(
                        log.id,
                        status=DeliveryStatus.ABANDONED,
                        next_attempt_at=None,
                        error_message="Rule is inactive or no longer exists"
                    )
                    logger.warning(f"Abandoned retry for log {log.id}: rule {log.rule_id} inactive or missing")
                    stats["abandoned"] += 1
                    continue

                outcome = await self.pipeline.retry_log(rule, log)

                if outcome.status == DeliveryStatus.SUCCESS:
                    stats["succeeded"] += 1
                elif outcome.status == DeliveryStatus.RETRYING:
                    stats["rescheduled"] += 1
                elif outcome.status == DeliveryStatus.ABANDONED:
                    stats["abandoned"] += 1
                else:
                    stats["failed"] += 1

            except GatewayError as e:
                stats["failed"] += 1
                logger.error(
                    f"Retry for log {log.id} failed: {e}",
                    extra={"error_context": e.to_dict()}
                )
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Unexpected error retrying log {log.id}: {e}", exc_info=True)

        logger.info(
            f"Retry pass complete: {stats['succeeded']} succeeded, {stats['rescheduled']} rescheduled, "
            f"{stats['abandoned']} abandoned, {stats['failed']} failed"
        )
        return stats
