from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index, BigInteger
from datetime import datetime
from models.base import Base, BigIntegerType, JSONType, ScheduledStatus


class ScheduledDelivery(Base):
    """
    A delivery computed by a DELAYED or RECURRING rule's scheduling script.

    PENDING -> SENT | CANCELLED | FAILED; terminal states never change.
    Recurring rules create one row per occurrence, the next one being
    inserted when the current one is sent.
    """
    __tablename__ = "scheduled_deliveries"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    rule_id = Column(BigIntegerType, nullable=False, index=True)
    org_id = Column(Integer, nullable=False, index=True)
    org_unit_id = Column(Integer, nullable=True)
    original_event_id = Column(String(255), nullable=True)
    event_type = Column(String(100), nullable=False)

    scheduled_for = Column(BigInteger, nullable=False)  # epoch ms
    payload = Column(JSONType, nullable=False)
    status = Column(Enum(ScheduledStatus), nullable=False, default=ScheduledStatus.PENDING)

    # {"patient_id": "...", "scheduled_datetime": "..."}
    cancellation_info = Column(JSONType, nullable=True)
    patient_id = Column(String(255), nullable=True, index=True)
    # {"first_occurrence", "interval_ms", "max_occurrences"|"end_date", "occurrence_number"}
    recurring_config = Column(JSONType, nullable=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_scheduled_due", "status", "scheduled_for"),
    )
