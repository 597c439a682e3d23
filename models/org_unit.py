from sqlalchemy import Column, Integer, String, ForeignKey
from models.base import Base


class OrgUnit(Base):
    """
    Organizational hierarchy node.

    The top-level unit of a tenant has parent_id NULL and id == org_id.
    """
    __tablename__ = "org_units"

    id = Column(Integer, primary_key=True, autoincrement=False)
    org_id = Column(Integer, nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("org_units.id"), nullable=True, index=True)
    name = Column(String(200), nullable=True)
