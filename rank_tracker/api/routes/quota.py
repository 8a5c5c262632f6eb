"""Quota API routes."""
from fastapi import APIRouter, Depends, HTTPException, status

from rank_tracker.api.dependencies import get_supervisor
from rank_tracker.core.auth import get_current_tenant
from rank_tracker.scheduler.supervisor import Supervisor
from rank_tracker.services.errors import QuotaRecordNotFound

router = APIRouter(prefix="/api/quota", tags=["quota"])


@router.get("/provider/health")
async def get_provider_health(
    tenant_id: str = Depends(get_current_tenant),
    supervisor: Supervisor = Depends(get_supervisor)
):
    """Aggregate provider quota status (per-credential details are not exposed)."""
    health = await supervisor.get_provider_health()
    data = health.to_dict()
    data.pop("integrations", None)
    return data


@router.get("/{tenant_id}")
async def get_tenant_quota(
    tenant_id: str,
    current_tenant: str = Depends(get_current_tenant),
    supervisor: Supervisor = Depends(get_supervisor)
):
    """
    Get a tenant's rank-check quota for today.

    Tenants may only read their own quota.
    """
    if tenant_id != current_tenant:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to read another tenant's quota"
        )

    try:
        info = await supervisor.get_quota(tenant_id)
    except QuotaRecordNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No rank-check quota configured for this tenant"
        )

    return {"tenant_id": tenant_id, **info.to_dict()}
