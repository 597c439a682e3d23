"""
Event source factory
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import create_async_engine

from core.config import settings
from core.exceptions import ConfigurationError, MissingFieldError
from gateway.sources.base import EventSource
from gateway.sources.http_push import HttpPushEventSource
from gateway.sources.kafka import KafkaEventSource
from gateway.sources.relational import RelationalEventSource

logger = logging.getLogger(__name__)

RELATIONAL_TYPES = ("mysql", "relational")


def create_event_source(config: Dict[str, Any], store=None, engine=None) -> EventSource:
    """
    Build an event source from a configuration dict.

    config:
        {"type": "mysql", "org_id": 12, "url": "mysql+aiomysql://...",
         "table": "events", "column_mapping": {...}, "batch_size": 10}
        {"type": "kafka", "org_id": 12, "brokers": "host:9092", "topic": "..."}
        {"type": "http_push", "org_id": 12, "secret": "..."}

    Raises:
        ConfigurationError: Unknown type or invalid configuration
    """
    source_type = str(config.get("type") or "").lower()

    if source_type in RELATIONAL_TYPES:
        if engine is None:
            url = config.get("url")
            if not url:
                raise MissingFieldError("Relational source requires url", context={"field": "url"})
            engine = create_async_engine(url, echo=False, pool_pre_ping=True)
        return RelationalEventSource(
            engine=engine,
            org_id=config.get("org_id"),
            table=config.get("table"),
            column_mapping=config.get("column_mapping") or {},
            batch_size=config.get("batch_size")
        )

    if source_type == "kafka":
        return KafkaEventSource(
            brokers=config.get("brokers"),
            org_id=config.get("org_id"),
            topic=config.get("topic"),
            group_id=config.get("group_id"),
            from_beginning=bool(config.get("from_beginning", False))
        )

    if source_type == "http_push":
        if store is None:
            raise MissingFieldError("HTTP push source requires a store", context={"field": "store"})
        return HttpPushEventSource(
            store=store,
            org_id=config.get("org_id"),
            secret=config.get("secret"),
            tolerance_seconds=config.get("tolerance_seconds") or settings.PUSH_SIGNATURE_TOLERANCE_SECONDS
        )

    raise ConfigurationError(
        f"Unknown event source type: {config.get('type')!r}",
        context={"type": config.get("type")}
    )


def source_config_from_settings(org_id: Optional[int] = None) -> Dict[str, Any]:
    """Event source configuration for the process-wide worker."""
    source_type = settings.EVENT_SOURCE_TYPE.lower()
    org = org_id if org_id is not None else settings.EVENT_SOURCE_ORG_ID
    config: Dict[str, Any] = {"type": source_type, "org_id": org}

    if source_type in RELATIONAL_TYPES:
        config.update(
            url=settings.EVENT_SOURCE_URL,
            table=settings.EVENT_SOURCE_TABLE,
            column_mapping={
                "id": "id",
                "org_id": "org_id",
                "org_unit_id": "org_unit_id",
                "event_type": "event_type",
                "payload": "payload",
                "created_at": "created_at",
            },
            batch_size=settings.POLL_BATCH_SIZE
        )
    elif source_type == "kafka":
        config.update(brokers=settings.KAFKA_BROKERS, topic=settings.KAFKA_TOPIC)
    elif source_type == "http_push":
        config.update(secret=settings.PUSH_HMAC_SECRET)

    return config
