from sqlalchemy import Column, Integer, String, DateTime, Index
from datetime import datetime
from models.base import Base, BigIntegerType, JSONType


class InboundEvent(Base):
    """
    Durable inbox for events pushed over HTTP.

    The push endpoint only inserts; the push event source polls rows with
    id greater than its checkpoint.
    """
    __tablename__ = "inbound_events"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    org_id = Column(Integer, nullable=False)
    org_unit_id = Column(Integer, nullable=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSONType, nullable=False)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_inbound_org_id", "org_id", "id"),
    )
