"""Tenant rank-check quota ledger."""
from dataclasses import dataclass
from datetime import date
import logging
from typing import Optional
from sqlalchemy import select, update, func, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession
from rank_tracker.core.config import settings
from rank_tracker.models import QuotaRecord, UNLIMITED
from rank_tracker.services.errors import QuotaRecordNotFound
from rank_tracker.utils.time import reference_today, utc_now

logger = logging.getLogger(__name__)


@dataclass
class QuotaInfo:
    """Snapshot of a tenant's quota for the current day."""
    used: int
    limit: int
    is_unlimited: bool
    exhausted: bool
    remaining: int  # -1 when unlimited
    reset_date: date

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "limit": self.limit,
            "is_unlimited": self.is_unlimited,
            "exhausted": self.exhausted,
            "remaining": self.remaining,
            "reset_date": self.reset_date.isoformat(),
        }


@dataclass
class ConsumeCheck:
    """Advisory answer to "may this tenant run N more checks?"."""
    allowed: bool
    remaining: int  # -1 when unlimited


def _today() -> date:
    return reference_today(settings.quota_reset_timezone)


class QuotaService:
    """Service for the per-tenant daily rank-check quota.

    All counter changes are single conditional UPDATE statements so that
    concurrent consumers never push ``daily_quota_used`` past the limit.
    """

    @staticmethod
    async def _roll_forward(db: AsyncSession, tenant_id: str, today: date) -> bool:
        """Reset a stale record to today's window. Returns True if this call rolled it."""
        result = await db.execute(
            update(QuotaRecord)
            .where(
                QuotaRecord.tenant_id == tenant_id,
                QuotaRecord.quota_reset_date < today
            )
            .values(daily_quota_used=0, quota_reset_date=today, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            logger.info(f"Rolled quota forward for tenant {tenant_id} to {today}")
            return True
        return False

    @staticmethod
    async def _load(db: AsyncSession, tenant_id: str) -> Optional[QuotaRecord]:
        result = await db.execute(
            select(QuotaRecord)
            .where(QuotaRecord.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_quota(db: AsyncSession, tenant_id: str) -> QuotaInfo:
        """
        Get a tenant's quota for today, rolling a stale record forward first.

        Args:
            db: Database session
            tenant_id: Tenant ID

        Returns:
            QuotaInfo for the current reference day

        Raises:
            QuotaRecordNotFound: If the tenant has no quota record
        """
        today = _today()
        await QuotaService._roll_forward(db, tenant_id, today)

        record = await QuotaService._load(db, tenant_id)
        if record is None:
            raise QuotaRecordNotFound(f"No rank-check quota record for tenant {tenant_id}")

        if record.is_unlimited:
            return QuotaInfo(
                used=record.daily_quota_used,
                limit=UNLIMITED,
                is_unlimited=True,
                exhausted=False,
                remaining=UNLIMITED,
                reset_date=record.quota_reset_date
            )

        remaining = max(record.daily_quota_limit - record.daily_quota_used, 0)
        return QuotaInfo(
            used=record.daily_quota_used,
            limit=record.daily_quota_limit,
            is_unlimited=False,
            exhausted=remaining == 0,
            remaining=remaining,
            reset_date=record.quota_reset_date
        )

    @staticmethod
    async def can_consume(db: AsyncSession, tenant_id: str, amount: int = 1) -> ConsumeCheck:
        """
        Check whether a tenant has room for ``amount`` more checks.

        The answer is advisory; only consume() reserves quota.
        """
        info = await QuotaService.get_quota(db, tenant_id)
        if info.is_unlimited:
            return ConsumeCheck(allowed=True, remaining=UNLIMITED)
        return ConsumeCheck(allowed=info.remaining >= amount, remaining=info.remaining)

    @staticmethod
    async def consume(db: AsyncSession, tenant_id: str, amount: int = 1) -> bool:
        """
        Atomically charge ``amount`` checks against today's quota.

        Args:
            db: Database session
            tenant_id: Tenant ID
            amount: Number of checks to charge

        Returns:
            True if charged, False if the quota could not cover the amount

        Raises:
            QuotaRecordNotFound: If the tenant has no quota record
        """
        if amount < 1:
            raise ValueError("amount must be at least 1")

        today = _today()
        await QuotaService._roll_forward(db, tenant_id, today)

        result = await db.execute(
            update(QuotaRecord)
            .where(
                QuotaRecord.tenant_id == tenant_id,
                or_(
                    QuotaRecord.daily_quota_limit == UNLIMITED,
                    QuotaRecord.daily_quota_used + amount <= QuotaRecord.daily_quota_limit
                )
            )
            .values(
                daily_quota_used=QuotaRecord.daily_quota_used + amount,
                updated_at=utc_now()
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.rowcount == 1:
            return True

        if await QuotaService._load(db, tenant_id) is None:
            raise QuotaRecordNotFound(f"No rank-check quota record for tenant {tenant_id}")

        logger.debug(f"Quota denied {amount} check(s) for tenant {tenant_id}")
        return False

    @staticmethod
    async def reset_stale_quotas(db: AsyncSession) -> int:
        """
        Roll every stale quota record forward to today.

        Returns:
            Number of records reset
        """
        today = _today()
        result = await db.execute(
            update(QuotaRecord)
            .where(QuotaRecord.quota_reset_date < today)
            .values(daily_quota_used=0, quota_reset_date=today, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info(f"Reset {result.rowcount} stale rank-check quota record(s)")
        return result.rowcount

    @staticmethod
    async def set_daily_limit(db: AsyncSession, tenant_id: str, daily_limit: int) -> QuotaRecord:
        """
        Create or update a tenant's daily limit from its package configuration.

        Usage already recorded today is clamped into the new limit.

        Args:
            db: Database session
            tenant_id: Tenant ID
            daily_limit: New limit (-1 for unlimited)

        Returns:
            Updated QuotaRecord
        """
        if daily_limit < UNLIMITED:
            raise ValueError("daily_limit must be -1 (unlimited) or non-negative")

        today = _today()
        await QuotaService._roll_forward(db, tenant_id, today)

        record = await QuotaService._load(db, tenant_id)
        if record is None:
            record = QuotaRecord(
                tenant_id=tenant_id,
                daily_quota_used=0,
                daily_quota_limit=daily_limit,
                quota_reset_date=today
            )
            db.add(record)
        else:
            record.daily_quota_limit = daily_limit
            if daily_limit != UNLIMITED and record.daily_quota_used > daily_limit:
                record.daily_quota_used = daily_limit

        await db.commit()
        await db.refresh(record)
        logger.info(f"Set rank-check daily limit for tenant {tenant_id} to {daily_limit}")
        return record

    @staticmethod
    async def get_quota_stats(db: AsyncSession) -> dict:
        """
        Aggregate quota usage across tenants for today.

        Returns:
            Dict with total_tenants, tenants_at_limit, unlimited_tenants, total_used_today
        """
        today = _today()
        current = QuotaRecord.quota_reset_date >= today

        total = await db.scalar(select(func.count()).select_from(QuotaRecord))
        unlimited = await db.scalar(
            select(func.count()).select_from(QuotaRecord)
            .where(QuotaRecord.daily_quota_limit == UNLIMITED)
        )
        at_limit = await db.scalar(
            select(func.count()).select_from(QuotaRecord).where(
                and_(
                    current,
                    QuotaRecord.daily_quota_limit != UNLIMITED,
                    QuotaRecord.daily_quota_used >= QuotaRecord.daily_quota_limit
                )
            )
        )
        used = await db.scalar(
            select(func.coalesce(func.sum(QuotaRecord.daily_quota_used), 0)).where(current)
        )

        return {
            "total_tenants": total or 0,
            "tenants_at_limit": at_limit or 0,
            "unlimited_tenants": unlimited or 0,
            "total_used_today": int(used or 0),
        }
