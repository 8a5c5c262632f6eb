"""Shared FastAPI dependencies."""
from fastapi import HTTPException, Request, status

from rank_tracker.scheduler.supervisor import Supervisor


def get_supervisor(request: Request) -> Supervisor:
    """Get the process-wide Supervisor created at startup."""
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rank tracker is still starting up"
        )
    return supervisor
