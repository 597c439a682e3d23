from sqlalchemy import Column, String, Integer, Boolean, Enum, DateTime, Text, Index
from datetime import datetime
from models.base import (
    Base, BigIntegerType, JSONType, RuleScope, AuthType, TransformMode,
    DeliveryMode, RetryStrategy, ActionExecution
)


class IntegrationRule(Base):
    """
    Tenant-owned delivery configuration.

    Written by the external admin API; the gateway only reads it.

    Design:
    - org_unit_id is the unit the rule is defined on. Rules on an ancestor
      unit apply to descendants unless scope is ENTITY_ONLY or the unit is
      listed in excluded_org_unit_ids.
    - event_type "*" matches every event type.
    - auth_config, transform_config, lookups and actions are free-form JSON
      validated when used.
    """
    __tablename__ = "integration_rules"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)

    # Ownership
    org_id = Column(Integer, nullable=False, index=True)
    org_unit_id = Column(Integer, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    scope = Column(Enum(RuleScope), nullable=True)
    excluded_org_unit_ids = Column(JSONType, nullable=True)

    # Target
    target_url = Column(String(2048), nullable=False)
    http_method = Column(String(10), nullable=False, default="POST")
    auth_type = Column(Enum(AuthType), nullable=False, default=AuthType.NONE)
    auth_config = Column(JSONType, nullable=True)
    enforce_https = Column(Boolean, nullable=False, default=True)
    block_private_networks = Column(Boolean, nullable=False, default=True)

    # Payload shaping
    transform_mode = Column(Enum(TransformMode), nullable=False, default=TransformMode.SIMPLE)
    transform_config = Column(JSONType, nullable=True)
    lookups = Column(JSONType, nullable=True)

    # Scheduling
    delivery_mode = Column(Enum(DeliveryMode), nullable=False, default=DeliveryMode.IMMEDIATE)
    scheduling_config = Column(JSONType, nullable=True)  # {"script": "...", "timeout_ms": 5000}

    # Delivery policy
    timeout_ms = Column(Integer, nullable=False, default=30000)
    retry_count = Column(Integer, nullable=False, default=3)
    retry_strategy = Column(Enum(RetryStrategy), nullable=False, default=RetryStrategy.EXPONENTIAL)
    circuit_breaker_threshold = Column(Integer, nullable=True)

    # Multi-action fan-out
    actions = Column(JSONType, nullable=True)
    action_execution = Column(Enum(ActionExecution), nullable=False, default=ActionExecution.SEQUENTIAL)

    is_active = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_rule_unit_event", "org_unit_id", "event_type", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<IntegrationRule id={self.id} name={self.name!r} event_type={self.event_type}>"
