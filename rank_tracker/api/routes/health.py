"""Health check endpoints."""
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from rank_tracker.api.dependencies import get_supervisor
from rank_tracker.scheduler.supervisor import Supervisor

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "rank-tracker-api"}


@router.get("/health/ready")
async def readiness_check(supervisor: Supervisor = Depends(get_supervisor)):
    """
    Readiness of the rank check subsystem.

    Returns 503 while the supervisor reports it is not actually ready.
    """
    status = supervisor.get_status()
    if not status["actually_ready"]:
        return JSONResponse(status_code=503, content={"status": "not_ready", **status})
    return {"status": "ready", **status}
