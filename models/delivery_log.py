from sqlalchemy import Column, String, Integer, Enum, DateTime, Text, Float, Index
from datetime import datetime
from models.base import Base, BigIntegerType, JSONType, DeliveryStatus

RESPONSE_BODY_LIMIT = 5000


class DeliveryAttemptLog(Base):
    """
    One row per (rule, event[, action]) delivery.

    Retries update the same row: attempt_count increments and
    next_attempt_at is pushed forward while status is RETRYING.
    """
    __tablename__ = "delivery_attempt_logs"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)

    # What was delivered
    rule_id = Column(BigIntegerType, nullable=False, index=True)
    event_id = Column(String(255), nullable=False, index=True)
    org_id = Column(Integer, nullable=True, index=True)
    org_unit_id = Column(Integer, nullable=True)
    event_type = Column(String(100), nullable=True)
    action_index = Column(Integer, nullable=True)
    scheduled_delivery_id = Column(BigIntegerType, nullable=True, index=True)

    # Outcome
    status = Column(Enum(DeliveryStatus), nullable=False, index=True)
    response_status = Column(Integer, nullable=True)
    response_time_ms = Column(Float, nullable=True)
    response_body = Column(Text, nullable=True)  # truncated to RESPONSE_BODY_LIMIT
    error_message = Column(Text, nullable=True)
    error_code = Column(String(64), nullable=True)

    # Retry tracking
    attempt_count = Column(Integer, nullable=False, default=1)
    next_attempt_at = Column(DateTime, nullable=True)

    # Payloads
    request_payload = Column(JSONType, nullable=True)
    original_payload = Column(JSONType, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_delivery_log_retry", "status", "next_attempt_at"),
        Index("idx_delivery_log_rule_created", "rule_id", "created_at"),
    )
