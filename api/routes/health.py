"""
Health check endpoint with database and worker status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, WorkerCheckpointInfo
from models.checkpoint import WorkerCheckpoint
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Polling checkpoints for all workers
    - State and last tick of this process's worker (if running)
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Database connection failed: {str(e)}")

    checkpoints = []
    if db_connected:
        try:
            result = await db.execute(select(WorkerCheckpoint).order_by(WorkerCheckpoint.worker_id))
            checkpoints = [WorkerCheckpointInfo.model_validate(row) for row in result.scalars().all()]
        except Exception as e:
            logger.error(f"Failed to fetch worker checkpoints: {str(e)}")

    worker_state = None
    last_tick = None
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        worker_state = scheduler.worker.state.value
        last_tick = scheduler.worker.last_stats or None

    # Status is derived by the validator in HealthCheckResponse
    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        worker_state=worker_state,
        last_tick=last_tick,
        checkpoints=checkpoints
    )
