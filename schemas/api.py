"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import AuthType, DeliveryMode, DLQStatus, TransformMode


# ============================================================================
# Health Check Schemas
# ============================================================================

class WorkerCheckpointInfo(BaseModel):
    """Polling checkpoint of one worker"""
    worker_id: str
    last_processed_id: int
    last_run_at: Optional[datetime] = None
    total_events_processed: int = 0

    class Config:
        from_attributes = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    worker_state: Optional[str] = None
    last_tick: Optional[Dict[str, Any]] = None
    checkpoints: List[WorkerCheckpointInfo] = Field(default_factory=list)
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        last_tick = values.get("last_tick") or {}
        if last_tick.get("status") == "failed":
            return "degraded"
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "worker_state": "IDLE",
                "last_tick": {"status": "success", "events_polled": 3, "checkpoint": 1042},
                "checkpoints": [
                    {
                        "worker_id": "default-worker",
                        "last_processed_id": 1042,
                        "last_run_at": "2024-01-15T10:29:55Z",
                        "total_events_processed": 15230
                    }
                ]
            }
        }


# ============================================================================
# Push Ingest Schemas
# ============================================================================

class PushEventResponse(BaseModel):
    id: int
    status: str = "accepted"


# ============================================================================
# Preview Schemas
# ============================================================================

class TransformPreviewRequest(BaseModel):
    """Rule fragment and sample payload for a transform dry run"""
    payload: Dict[str, Any] = Field(default_factory=dict)
    transform_mode: TransformMode = TransformMode.SIMPLE
    transform_config: Optional[Dict[str, Any]] = None
    lookups: Optional[List[Dict[str, Any]]] = None
    org_id: Optional[int] = None
    org_unit_id: Optional[int] = None
    event_type: Optional[str] = None


class TransformPreviewResponse(BaseModel):
    result: Optional[Dict[str, Any]] = None
    skipped: bool = False


class AuthPreviewRequest(BaseModel):
    auth_type: AuthType = AuthType.NONE
    auth_config: Optional[Dict[str, Any]] = None


class AuthPreviewResponse(BaseModel):
    headers: Dict[str, str]


class TargetUrlPreviewRequest(BaseModel):
    url: str = ""
    enforce_https: bool = True
    block_private_networks: bool = True


class TargetUrlPreviewResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None


class SchedulePreviewRequest(BaseModel):
    script: str = Field(..., min_length=1)
    delivery_mode: DeliveryMode
    event: Dict[str, Any] = Field(default_factory=dict)
    context: Optional[Dict[str, Any]] = None

    @validator("delivery_mode")
    def require_scheduled_mode(cls, v):
        if v == DeliveryMode.IMMEDIATE:
            raise ValueError("delivery_mode must be DELAYED or RECURRING")
        return v


class SchedulePreviewResponse(BaseModel):
    scheduled_for: Optional[int] = None
    recurring: Optional[Dict[str, Any]] = None


class NextOccurrenceRequest(BaseModel):
    first_occurrence: int
    interval_ms: int
    max_occurrences: Optional[int] = None
    end_date: Optional[int] = None
    occurrence_number: int = Field(..., ge=1)


class NextOccurrenceResponse(BaseModel):
    occurrence_number: int
    timestamp: Optional[int] = None


class ErrorResponse(BaseModel):
    code: str
    message: str


# ============================================================================
# DLQ Schemas
# ============================================================================

class DLQEntryResponse(BaseModel):
    id: int
    org_id: Optional[int] = None
    org_unit_id: Optional[int] = None
    rule_id: int
    delivery_log_id: Optional[int] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    action_index: Optional[int] = None
    status: DLQStatus
    error_category: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    payload: Optional[Any] = None
    retry_count: int = 0
    failed_at: datetime
    resolved_at: Optional[datetime] = None
    resolution_method: Optional[str] = None
    resolution_note: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class DLQListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    entries: List[DLQEntryResponse]


class DLQRetryResult(BaseModel):
    id: int
    status: Optional[str] = None
    success: bool
    error: Optional[str] = None


class DLQBulkRetryRequest(BaseModel):
    ids: List[int] = Field(..., min_length=1, max_length=100)


class DLQBulkRetryResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: List[DLQRetryResult]


class DLQAbandonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)
