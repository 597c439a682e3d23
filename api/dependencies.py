"""
FastAPI dependencies
"""

from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.database import async_session_maker
from gateway.delivery.circuit_breaker import CircuitBreaker
from gateway.delivery.dlq import DLQManager
from gateway.delivery.pipeline import DeliveryPipeline
from gateway.sources.http_push import HttpPushEventSource
from gateway.store import DeliveryStore
from gateway.transformers.lookups import DatabaseLookupResolver
from core.config import settings


def get_session_factory() -> async_sessionmaker:
    """Session factory; overridden in tests"""
    return async_session_maker


async def get_db(
    session_factory: async_sessionmaker = Depends(get_session_factory)
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


def get_store(session_factory: async_sessionmaker = Depends(get_session_factory)) -> DeliveryStore:
    return DeliveryStore(session_factory)


def get_lookup_resolver(
    session_factory: async_sessionmaker = Depends(get_session_factory)
) -> DatabaseLookupResolver:
    return DatabaseLookupResolver(session_factory)


def get_dlq_manager(
    request: Request,
    store: DeliveryStore = Depends(get_store),
    lookup_resolver: DatabaseLookupResolver = Depends(get_lookup_resolver)
) -> DLQManager:
    """DLQ manager backed by the running scheduler's pipeline when there is one"""
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        return scheduler.pipeline.dlq
    pipeline = DeliveryPipeline(
        store,
        circuit_breaker=CircuitBreaker(store),
        lookup_resolver=lookup_resolver
    )
    return pipeline.dlq


def get_push_source(store: DeliveryStore = Depends(get_store)) -> HttpPushEventSource:
    return HttpPushEventSource(
        store=store,
        secret=settings.PUSH_HMAC_SECRET,
        tolerance_seconds=settings.PUSH_SIGNATURE_TOLERANCE_SECONDS
    )
