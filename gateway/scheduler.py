import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings
from core.exceptions import GatewayError
from gateway.dedup import DedupCache
from gateway.delivery.circuit_breaker import CircuitBreaker
from gateway.delivery.pipeline import DeliveryPipeline
from gateway.delivery.retry import RetryManager
from gateway.scheduling.service import ScheduledDeliveryService
from gateway.sources.factory import create_event_source, source_config_from_settings
from gateway.store import DeliveryStore
from gateway.transformers.lookups import DatabaseLookupResolver
from gateway.worker import PollingWorker

logger = logging.getLogger(__name__)


class GatewayScheduler:
    """
    Owns the background jobs of one gateway process:
    - poll: worker tick against the configured event source
    - scheduled: send due DELAYED / RECURRING deliveries
    - retries: re-attempt RETRYING delivery logs
    - dedup_sweep: evict expired dedup keys
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None, source=None):
        self.scheduler = AsyncIOScheduler()
        self.engine = None
        if session_factory is None:
            self.engine = create_async_engine(settings.DATABASE_URL, echo=False)
            session_factory = async_sessionmaker(
                self.engine, class_=AsyncSession, expire_on_commit=False
            )
        self.SessionLocal = session_factory

        self.store = DeliveryStore(self.SessionLocal)
        self.circuit_breaker = CircuitBreaker(self.store)
        self.pipeline = DeliveryPipeline(
            self.store,
            circuit_breaker=self.circuit_breaker,
            lookup_resolver=DatabaseLookupResolver(self.SessionLocal)
        )
        self.retry_manager = RetryManager(self.store, self.pipeline)
        self.scheduled_service = ScheduledDeliveryService(self.store, self.pipeline)
        self.dedup = DedupCache()
        self.source = source or create_event_source(source_config_from_settings(), store=self.store)
        self.worker = PollingWorker(
            source=self.source,
            store=self.store,
            pipeline=self.pipeline,
            scheduled_service=self.scheduled_service,
            dedup=self.dedup
        )

    async def run_poll_job(self):
        """Job to run one worker tick"""
        try:
            await self.worker.tick()
        except Exception as e:
            logger.error(f"Scheduler: poll job failed - {e}", exc_info=True)

    async def run_scheduled_job(self):
        try:
            stats = await self.scheduled_service.process_due()
            if stats["processed"]:
                logger.info(f"Scheduler: scheduled deliveries {stats}")
        except GatewayError as e:
            logger.error(f"Scheduler: scheduled job failed - {e}", extra={"error_context": e.to_dict()})
        except Exception as e:
            logger.error(f"Scheduler: scheduled job failed - {e}", exc_info=True)

    async def run_retry_job(self):
        try:
            stats = await self.retry_manager.process_due_retries()
            if stats["processed"]:
                logger.info(f"Scheduler: retries {stats}")
        except GatewayError as e:
            logger.error(f"Scheduler: retry job failed - {e}", extra={"error_context": e.to_dict()})
        except Exception as e:
            logger.error(f"Scheduler: retry job failed - {e}", exc_info=True)

    async def run_dedup_sweep(self):
        removed = self.dedup.sweep()
        if removed:
            logger.debug(f"Scheduler: evicted {removed} expired dedup keys")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_poll_job,
            trigger=IntervalTrigger(seconds=settings.POLL_INTERVAL_SECONDS),
            id="poll_job",
            max_instances=1,
            replace_existing=True
        )
        self.scheduler.add_job(
            self.run_scheduled_job,
            trigger=IntervalTrigger(seconds=settings.SCHEDULER_INTERVAL_SECONDS),
            id="scheduled_delivery_job",
            max_instances=1,
            replace_existing=True
        )
        self.scheduler.add_job(
            self.run_retry_job,
            trigger=IntervalTrigger(seconds=settings.RETRY_INTERVAL_SECONDS),
            id="retry_job",
            max_instances=1,
            replace_existing=True
        )
        self.scheduler.add_job(
            self.run_dedup_sweep,
            trigger=IntervalTrigger(seconds=settings.DEDUP_SWEEP_INTERVAL_SECONDS),
            id="dedup_sweep_job",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Gateway scheduler started (worker={self.worker.worker_id}, source={self.source.name})")

    async def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.source.close()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("Gateway scheduler stopped")
