"""
Pydantic schemas for data validation and serialization.

Schemas:
    events: Canonical Event produced by every event source, and the body
        accepted by the HTTP push endpoint
    api: API endpoint request/response schemas (health, preview, DLQ)

Usage:
    from schemas import Event
    from schemas.api import HealthCheckResponse, TransformPreviewRequest

Example:
    event = Event(
        id=42,
        event_id="push-42",
        org_id=12,
        event_type="APPOINTMENT_CONFIRMATION",
        payload={"patientRid": "P-1"},
        source="http_push"
    )

    # Events without a unit belong to the org's top-level unit
    assert event.org_unit_id == 12
"""

from schemas.events import Event, InboundEventCreate

__all__ = [
    "Event",
    "InboundEventCreate",
]
