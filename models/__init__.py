"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative base, portable column types and shared enums
    integration_rule: Tenant delivery rules (read-only for the gateway)
    org_unit: Organizational hierarchy used for rule inheritance
    delivery_log: One row per delivery with retry tracking
    checkpoint: Per-worker polling checkpoint
    scheduled_delivery: Delayed and recurring deliveries
    dlq_entry: Dead-letter queue
    circuit_breaker: Per-rule circuit breaker state
    lookup_mapping: Code mappings used by rule lookups
    inbound_event: Inbox for HTTP-pushed events

Database Schema:
    JSON columns use JSONB on PostgreSQL and generic JSON elsewhere, so the
    same models run against SQLite in tests.

Usage:
    from models import IntegrationRule, DeliveryAttemptLog
    from models.base import DeliveryStatus
"""

from models.base import Base
from models.integration_rule import IntegrationRule
from models.org_unit import OrgUnit
from models.delivery_log import DeliveryAttemptLog
from models.checkpoint import WorkerCheckpoint
from models.scheduled_delivery import ScheduledDelivery
from models.dlq_entry import DLQEntry
from models.circuit_breaker import CircuitBreakerState
from models.lookup_mapping import LookupMapping
from models.inbound_event import InboundEvent

__all__ = [
    "Base",
    "IntegrationRule",
    "OrgUnit",
    "DeliveryAttemptLog",
    "WorkerCheckpoint",
    "ScheduledDelivery",
    "DLQEntry",
    "CircuitBreakerState",
    "LookupMapping",
    "InboundEvent",
]
