"""
Event sources: relational table, Kafka topic and HTTP push inbox.
"""

from gateway.sources.base import EventSource
from gateway.sources.factory import create_event_source
from gateway.sources.http_push import HttpPushEventSource
from gateway.sources.kafka import KafkaEventSource
from gateway.sources.relational import RelationalEventSource

__all__ = [
    "EventSource",
    "create_event_source",
    "HttpPushEventSource",
    "KafkaEventSource",
    "RelationalEventSource",
]
