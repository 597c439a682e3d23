from sqlalchemy import Column, Integer, String, DateTime, Index, BigInteger
from datetime import datetime
from models.base import Base, BigIntegerType


class WorkerCheckpoint(Base):
    """
    Last dispatched event id per logical poller.

    Design:
    - One row per worker_id
    - last_processed_id never decreases; the store ignores attempts to
      move it backwards
    """
    __tablename__ = "worker_checkpoints"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    worker_id = Column(String(100), nullable=False)
    last_processed_id = Column(BigInteger, nullable=False, default=0)

    # Statistics
    last_run_at = Column(DateTime, nullable=True)
    total_events_processed = Column(BigInteger, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_checkpoint_worker", "worker_id", unique=True),
    )
