"""
Canonical event schema shared by every event source
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any
from datetime import datetime


class Event(BaseModel):
    """
    Business event as produced by an event source.

    Ensures:
    - id is the source-scoped monotonic position used for checkpoints
    - event_id is a stable identity used in delivery logs
    - org_unit_id falls back to org_id for events without a unit
    - payload is always a dict
    """

    id: int
    event_id: str = Field(..., min_length=1, max_length=255)
    org_id: int
    org_unit_id: Optional[int] = None
    event_type: str = Field(..., min_length=1, max_length=100)
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    source: str

    @validator("org_unit_id", always=True)
    def default_unit_to_org(cls, v, values):
        """Events without a unit belong to the org's top-level unit"""
        if v is None:
            return values.get("org_id")
        return v

    @validator("payload", pre=True)
    def ensure_payload_dict(cls, v):
        if not isinstance(v, dict):
            return {}
        return v

    class Config:
        frozen = True


class InboundEventCreate(BaseModel):
    """Body accepted by the HTTP push endpoint"""

    event_type: str = Field(..., min_length=1, max_length=100)
    org_unit_id: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
