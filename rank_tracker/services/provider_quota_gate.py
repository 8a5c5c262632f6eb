"""Gate in front of the shared rank lookup provider quota."""
from dataclasses import dataclass, field, asdict
from datetime import date
import logging
import time
from typing import List, Optional, Tuple
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis
from rank_tracker.core.config import settings
from rank_tracker.core.redis import get_redis
from rank_tracker.models import ServiceIntegration
from rank_tracker.providers.models import CreditUsage
from rank_tracker.services.errors import NoIntegration
from rank_tracker.utils.time import reference_today, utc_now

logger = logging.getLogger(__name__)

DAILY_EXHAUSTED = "daily_exhausted"
MINUTE_EXHAUSTED = "minute_exhausted"
INACTIVE = "inactive"

# Utilization thresholds (percent) for provider health
WARNING_THRESHOLD = 75.0
CRITICAL_THRESHOLD = 90.0


def epoch_seconds() -> float:
    """Wall clock used for the minute windows."""
    return time.time()


@dataclass
class Reservation:
    """Result of asking the gate for provider capacity."""
    granted: bool
    reason: Optional[str] = None  # daily_exhausted, minute_exhausted, inactive
    retry_after: Optional[float] = None  # seconds, minute_exhausted only


@dataclass
class ProviderQuotaHealth:
    """Aggregate view of provider quota across integrations."""
    status: str  # healthy, warning, critical, exhausted
    active_integrations: int
    available_integrations: int
    total_daily_limit: int  # limited integrations only
    total_daily_used: int
    utilization_percent: float
    has_unlimited: bool = False
    integrations: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class ProviderQuotaGate:
    """
    Reserves provider request units before every lookup.

    The daily counter lives on the ServiceIntegration row and is charged with a
    conditional UPDATE. The per-minute counter is a fixed one-minute window in
    Redis keyed by integration and epoch minute.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, service_name: Optional[str] = None):
        self._redis = redis_client
        self.service_name = service_name or settings.rank_provider_name

    async def _get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    @staticmethod
    def _today() -> date:
        return reference_today(settings.quota_reset_timezone)

    @staticmethod
    def _minute_key(integration_id: str, window: int) -> str:
        return f"provider_minute:{integration_id}:{window}"

    async def _roll_forward(self, db: AsyncSession, today: date, integration_id: Optional[str] = None) -> int:
        stmt = update(ServiceIntegration).where(ServiceIntegration.quota_reset_date < today)
        if integration_id is not None:
            stmt = stmt.where(ServiceIntegration.id == integration_id)
        result = await db.execute(
            stmt.values(daily_used=0, quota_reset_date=today, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount

    async def _reserve_minute(self, integration: ServiceIntegration, n: int) -> Tuple[str, Optional[Reservation]]:
        """
        Charge the current minute window.

        Returns:
            The charged window key, and a denial or None when granted
        """
        client = await self._get_redis()
        now = epoch_seconds()
        key = self._minute_key(integration.id, int(now // 60))

        async with client.pipeline(transaction=True) as pipe:
            pipe.incrby(key, n)
            pipe.expire(key, 60)
            count, _ = await pipe.execute()

        if count > integration.minute_limit:
            await self._release_minute(key, n)
            return key, Reservation(granted=False, reason=MINUTE_EXHAUSTED, retry_after=60 - (now % 60))
        return key, None

    async def ping(self) -> bool:
        """Return True if the minute-window store answers PING."""
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def _release_minute(self, key: str, n: int):
        client = await self._get_redis()
        # An expired window has nothing left to give back
        if await client.exists(key):
            await client.decrby(key, n)

    async def reserve(self, db: AsyncSession, integration_id: str, n: int = 1) -> Reservation:
        """
        Reserve ``n`` provider request units.

        A denied reservation charges nothing.

        Args:
            db: Database session
            integration_id: ServiceIntegration to charge
            n: Units to reserve

        Returns:
            Reservation; on denial ``reason`` says which limit refused it
        """
        today = self._today()
        await self._roll_forward(db, today, integration_id)

        result = await db.execute(
            select(ServiceIntegration)
            .where(ServiceIntegration.id == integration_id)
            .execution_options(populate_existing=True)
        )
        integration = result.scalar_one_or_none()

        if integration is None or not integration.is_active:
            return Reservation(granted=False, reason=INACTIVE)

        if integration.daily_limit != -1 and integration.daily_used + n > integration.daily_limit:
            return Reservation(granted=False, reason=DAILY_EXHAUSTED)

        minute_key = None
        if integration.minute_limit is not None:
            minute_key, denial = await self._reserve_minute(integration, n)
            if denial is not None:
                logger.debug(f"Integration {integration_id} minute window full, retry in {denial.retry_after:.1f}s")
                return denial

        result = await db.execute(
            update(ServiceIntegration)
            .where(
                ServiceIntegration.id == integration_id,
                ServiceIntegration.is_active.is_(True),
                or_(
                    ServiceIntegration.daily_limit == -1,
                    ServiceIntegration.daily_used + n <= ServiceIntegration.daily_limit
                )
            )
            .values(daily_used=ServiceIntegration.daily_used + n, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.rowcount != 1:
            if minute_key is not None:
                await self._release_minute(minute_key, n)
            logger.info(f"Integration {integration_id} daily quota exhausted")
            return Reservation(granted=False, reason=DAILY_EXHAUSTED)

        return Reservation(granted=True)

    async def resolve_integration(self, db: AsyncSession, tenant_id: Optional[str] = None) -> ServiceIntegration:
        """
        Pick the integration to use for a tenant's lookup.

        Tenant-specific credentials come before the shared one, oldest first.
        The first with daily capacity left wins; when all are spent the first
        candidate is returned and reserve() will deny it.

        Raises:
            NoIntegration: If no active integration exists for the provider
        """
        conditions = [
            ServiceIntegration.service_name == self.service_name,
            ServiceIntegration.is_active.is_(True),
        ]
        if tenant_id is not None:
            conditions.append(
                or_(ServiceIntegration.tenant_id == tenant_id, ServiceIntegration.tenant_id.is_(None))
            )
        else:
            conditions.append(ServiceIntegration.tenant_id.is_(None))

        result = await db.execute(
            select(ServiceIntegration)
            .where(*conditions)
            .order_by(ServiceIntegration.created_at)
            .execution_options(populate_existing=True)
        )
        candidates = sorted(result.scalars().all(), key=lambda i: i.tenant_id is None)

        if not candidates:
            raise NoIntegration(f"No active {self.service_name} integration configured")

        for integration in candidates:
            if self.has_capacity(integration):
                return integration

        logger.warning(f"All {self.service_name} integrations are out of daily quota")
        return candidates[0]

    def has_capacity(self, integration: ServiceIntegration) -> bool:
        """True unless the integration's counter for today is spent."""
        return integration.quota_reset_date < self._today() or integration.has_daily_capacity

    async def record_credit_usage(self, db: AsyncSession, integration_id: str, usage: CreditUsage) -> bool:
        """
        Store the provider account's credit balance on the integration.

        The daily counter is left alone; the balance is reported by check_health.

        Returns:
            True if the integration row was updated
        """
        result = await db.execute(
            update(ServiceIntegration)
            .where(ServiceIntegration.id == integration_id)
            .values(
                credits_remaining=usage.remaining_credits,
                plan_credits=usage.plan_credits,
                credits_synced_at=utc_now(),
                updated_at=utc_now()
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if usage.plan_credits:
            logger.info(
                f"Integration {integration_id}: {usage.remaining_credits}/{usage.plan_credits} provider credits left"
            )
        else:
            logger.info(f"Integration {integration_id}: {usage.remaining_credits} provider credits left")
        return result.rowcount == 1

    async def reset_stale(self, db: AsyncSession) -> int:
        """Roll every integration whose quota day has passed back to zero."""
        count = await self._roll_forward(db, self._today())
        logger.info(f"Reset {count} stale provider quota counter(s)")
        return count

    async def check_health(self, db: AsyncSession) -> ProviderQuotaHealth:
        """
        Summarize provider quota across all active integrations.

        Returns:
            ProviderQuotaHealth with status healthy, warning, critical or exhausted
        """
        today = self._today()
        result = await db.execute(
            select(ServiceIntegration)
            .where(
                ServiceIntegration.service_name == self.service_name,
                ServiceIntegration.is_active.is_(True)
            )
            .order_by(ServiceIntegration.created_at)
            .execution_options(populate_existing=True)
        )
        active = result.scalars().all()

        total_limit = 0
        total_used = 0
        available = 0
        has_unlimited = False
        details = []

        for integration in active:
            used = 0 if integration.quota_reset_date < today else integration.daily_used
            unlimited = integration.daily_limit == -1
            has_capacity = unlimited or used < integration.daily_limit
            if unlimited:
                has_unlimited = True
            else:
                total_limit += integration.daily_limit
                total_used += used
            if has_capacity:
                available += 1
            details.append({
                "id": integration.id,
                "tenant_id": integration.tenant_id,
                "daily_limit": integration.daily_limit,
                "daily_used": used,
                "minute_limit": integration.minute_limit,
                "has_capacity": has_capacity,
                "credits_remaining": integration.credits_remaining,
                "plan_credits": integration.plan_credits,
            })

        utilization = round(total_used / total_limit * 100, 2) if total_limit else 0.0

        if available == 0:
            status = "exhausted"
        elif has_unlimited:
            status = "healthy"
        elif utilization >= CRITICAL_THRESHOLD:
            status = "critical"
        elif utilization >= WARNING_THRESHOLD:
            status = "warning"
        else:
            status = "healthy"

        return ProviderQuotaHealth(
            status=status,
            active_integrations=len(active),
            available_integrations=available,
            total_daily_limit=total_limit,
            total_daily_used=total_used,
            utilization_percent=utilization,
            has_unlimited=has_unlimited,
            integrations=details
        )
