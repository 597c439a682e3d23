from sqlalchemy import Column, Integer, Enum, DateTime
from datetime import datetime
from models.base import Base, BigIntegerType, CircuitState


class CircuitBreakerState(Base):
    """Per-rule consecutive failure counter."""
    __tablename__ = "circuit_breaker_states"

    rule_id = Column(BigIntegerType, primary_key=True, autoincrement=False)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    state = Column(Enum(CircuitState), nullable=False, default=CircuitState.CLOSED)
    opened_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
