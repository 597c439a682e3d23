from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from datetime import datetime
from models.base import Base, BigIntegerType, JSONType


class LookupMapping(Base):
    """
    Source code -> target code mapping used by rule lookups.

    org_unit_id NULL means the mapping applies to every unit of the org;
    a unit-specific row takes precedence.
    """
    __tablename__ = "lookup_mappings"

    id = Column(BigIntegerType, primary_key=True, autoincrement=True)
    org_id = Column(Integer, nullable=False)
    org_unit_id = Column(Integer, nullable=True)
    type = Column(String(100), nullable=False)
    source_code = Column(String(255), nullable=False)
    target_code = Column(JSONType, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_lookup_code", "org_id", "type", "source_code"),
    )
