"""Rank check API routes."""
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from slowapi import Limiter
from slowapi.util import get_remote_address
import logging

from rank_tracker.api.dependencies import get_supervisor
from rank_tracker.core.auth import get_current_tenant
from rank_tracker.core.config import settings
from rank_tracker.core.database import get_db
from rank_tracker.scheduler.supervisor import Supervisor
from rank_tracker.services import KeywordService
from rank_tracker.services.errors import (
    AlreadyRunning,
    KeywordCheckInProgress,
    KeywordInactive,
    KeywordNotFound,
    QuotaExhausted,
    QuotaRecordNotFound,
)

router = APIRouter(prefix="/api/rank-tracker", tags=["rank-tracker"])
logger = logging.getLogger(__name__)

# Rate limiter for manual rank checks
limiter = Limiter(key_func=get_remote_address)

# HTTP status for each failed check outcome
OUTCOME_STATUS = {
    "provider_quota_exhausted": status.HTTP_503_SERVICE_UNAVAILABLE,
    "no_integration": status.HTTP_424_FAILED_DEPENDENCY,
    "provider_error": status.HTTP_502_BAD_GATEWAY,
    "persistence_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "internal_error": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

OUTCOME_MESSAGES = {
    "provider_quota_exhausted": "Rank checking is temporarily unavailable. Please try again later.",
    "no_integration": "Rank checking is not configured. Please contact support.",
    "provider_error": "The ranking provider could not complete the check. Please try again later.",
    "persistence_error": "The rank was checked but could not be saved.",
    "internal_error": "Internal server error",
}


class CheckRankRequest(BaseModel):
    """Request to check one keyword now."""
    keyword_id: str


def error_response(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    """Build the JSON error body used by all rank tracker routes."""
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "message": message, **extra}
    )


@router.post("/check-rank")
@limiter.limit(settings.rate_limit_check_rank)
async def check_rank(
    request: Request,
    check_request: CheckRankRequest,
    tenant_id: str = Depends(get_current_tenant),
    supervisor: Supervisor = Depends(get_supervisor)
):
    """
    Check the rank of one of the caller's keywords immediately.

    Consumes one unit of the tenant's daily rank-check quota.
    """
    keyword_id = check_request.keyword_id
    logger.info(f"Manual rank check requested by tenant {tenant_id} for keyword {keyword_id}")

    try:
        outcome = await supervisor.check_keyword(tenant_id, keyword_id)
    except KeywordNotFound:
        return error_response(status.HTTP_404_NOT_FOUND, "keyword_not_found", "Keyword not found")
    except KeywordInactive:
        return error_response(status.HTTP_400_BAD_REQUEST, "keyword_inactive", "Keyword is not active")
    except KeywordCheckInProgress:
        return error_response(
            status.HTTP_409_CONFLICT,
            "check_in_progress",
            "This keyword is already being checked"
        )
    except (QuotaExhausted, QuotaRecordNotFound) as e:
        return error_response(
            status.HTTP_429_TOO_MANY_REQUESTS,
            "tenant_quota_exhausted",
            "Daily rank-check quota exhausted. Upgrade your package for more checks.",
            remaining=getattr(e, "remaining", 0)
        )

    if not outcome.success:
        return error_response(
            OUTCOME_STATUS.get(outcome.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
            outcome.error_code or "internal_error",
            OUTCOME_MESSAGES.get(outcome.error_code, "Internal server error"),
            keyword_id=keyword_id
        )

    return {"success": True, "data": outcome.to_dict()}


@router.post("/trigger-sweep", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sweep(
    tenant_id: str = Depends(get_current_tenant),
    supervisor: Supervisor = Depends(get_supervisor)
):
    """
    Start a sweep over all due keywords in the background.

    Returns 409 with the running sweep's counters if one is in progress.
    """
    before = await supervisor.get_sweep_status()

    try:
        run = supervisor.trigger_sweep()
    except AlreadyRunning:
        logger.info(f"Sweep trigger by tenant {tenant_id} rejected: already running")
        return error_response(
            status.HTTP_409_CONFLICT,
            "already_running",
            "A rank check sweep is already running",
            status=await supervisor.get_sweep_status()
        )

    logger.info(f"Manual sweep triggered by tenant {tenant_id}")
    return {
        "accepted": True,
        "message": "Rank check sweep started",
        "run": run.to_dict(),
        "before_stats": before["processing_stats"],
    }


@router.get("/sweep-status")
async def get_sweep_status(
    tenant_id: str = Depends(get_current_tenant),
    supervisor: Supervisor = Depends(get_supervisor)
):
    """Current sweep state, live counters and next scheduled run."""
    return await supervisor.get_sweep_status()


@router.get("/keywords/{keyword_id}/history")
async def get_keyword_history(
    keyword_id: str,
    limit: int = 30,
    tenant_id: str = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db)
):
    """Recent rank history of one of the caller's keywords, newest first."""
    keyword = await KeywordService.get_keyword_for_tenant(db, tenant_id, keyword_id)
    if keyword is None:
        return error_response(status.HTTP_404_NOT_FOUND, "keyword_not_found", "Keyword not found")

    entries = await KeywordService.get_rank_history(db, keyword_id, max(1, min(limit, 365)))

    return {
        "keyword_id": keyword.id,
        "keyword": keyword.keyword,
        "current_position": keyword.current_position,
        "previous_position": keyword.previous_position,
        "last_checked_at": keyword.last_checked_at.isoformat() if keyword.last_checked_at else None,
        "history": [
            {
                "position": entry.position,
                "url": entry.url,
                "checked_at": entry.checked_at.isoformat(),
                "device_type": entry.device_type,
                "country_code": entry.country_code,
            }
            for entry in entries
        ]
    }
