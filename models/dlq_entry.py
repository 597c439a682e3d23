from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index
from datetime import datetime
from models.base import Base, BigIntegerType, JSONType, DLQStatus


class DLQEntry(Base):
    """
    Delivery that exhausted its retries.

    Created automatically on exhaustion; retried or abandoned only by an
    operator.
    """
    __tablename__ = "dlq_entries"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    org_id = Column(Integer, nullable=True, index=True)
    org_unit_id = Column(Integer, nullable=True)
    rule_id = Column(BigIntegerType, nullable=False, index=True)
    delivery_log_id = Column(BigIntegerType, nullable=True)
    event_id = Column(String(255), nullable=True)
    event_type = Column(String(100), nullable=True)
    action_index = Column(Integer, nullable=True)

    status = Column(Enum(DLQStatus), nullable=False, default=DLQStatus.PENDING, index=True)
    error_category = Column(String(32), nullable=False)
    error_code = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    payload = Column(JSONType, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    failed_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)
    resolution_method = Column(String(32), nullable=True)  # manual_retry, manual_abandon
    resolution_note = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_dlq_org_status", "org_id", "status"),
    )
