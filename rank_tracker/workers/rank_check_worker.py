"""Rank check worker: one quota-gated provider lookup per keyword."""
import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from rank_tracker.core.config import settings
from rank_tracker.core.database import AsyncSessionLocal
from rank_tracker.models import Keyword, RankHistoryEntry, ServiceIntegration
from rank_tracker.providers import RankLookupProvider, ProviderError
from rank_tracker.providers.firecrawl import FirecrawlProvider
from rank_tracker.providers.models import RankLookupRequest, RankLookupResult
from rank_tracker.services.errors import NoIntegration, PersistenceError, ProviderQuotaExhausted
from rank_tracker.services.provider_quota_gate import ProviderQuotaGate, MINUTE_EXHAUSTED
from rank_tracker.utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass
class RankCheckOutcome:
    """Result of checking one keyword. Failures are reported, never raised."""
    keyword_id: str
    success: bool
    position: Optional[int] = None
    url: Optional[str] = None
    checked_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    integration_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["checked_at"] = self.checked_at.isoformat() if self.checked_at else None
        return data


def default_provider_factory(integration: ServiceIntegration) -> RankLookupProvider:
    """Build the provider client for an integration's credentials."""
    return FirecrawlProvider(api_key=integration.api_key, base_url=integration.api_url)


class RankCheckWorker:
    """Checks single keywords: resolve credential, reserve quota, look up, persist."""

    def __init__(
        self,
        gate: Optional[ProviderQuotaGate] = None,
        session_factory=AsyncSessionLocal,
        provider_factory: Optional[Callable[[ServiceIntegration], RankLookupProvider]] = None,
        minute_wait_attempts: Optional[int] = None
    ):
        self.gate = gate or ProviderQuotaGate()
        self.session_factory = session_factory
        self.provider_factory = provider_factory or default_provider_factory
        self.minute_wait_attempts = (
            minute_wait_attempts if minute_wait_attempts is not None
            else settings.provider_minute_wait_attempts
        )
        self._providers: Dict[Tuple[str, str], RankLookupProvider] = {}

    def _get_provider(self, integration: ServiceIntegration) -> RankLookupProvider:
        """Get the cached provider client for an integration."""
        key = (integration.id, integration.api_key)
        provider = self._providers.get(key)
        if provider is None:
            provider = self.provider_factory(integration)
            self._providers[key] = provider
        return provider

    async def _reserve(self, integration_id: str):
        """
        Reserve one provider unit, waiting out full minute windows a bounded number of times.

        Raises:
            ProviderQuotaExhausted: If the reservation is still denied
        """
        for attempt in range(self.minute_wait_attempts + 1):
            async with self.session_factory() as db:
                reservation = await self.gate.reserve(db, integration_id)

            if reservation.granted:
                return

            if reservation.reason != MINUTE_EXHAUSTED or attempt == self.minute_wait_attempts:
                raise ProviderQuotaExhausted(
                    f"Provider quota denied ({reservation.reason})",
                    reason=reservation.reason,
                    retry_after=reservation.retry_after
                )

            wait = reservation.retry_after or 1.0
            logger.info(f"Provider minute window full, waiting {wait:.1f}s before retrying reservation")
            await asyncio.sleep(wait)

    async def _persist(self, keyword_id: str, lookup: RankLookupResult, checked_at: datetime):
        """
        Append history and move the keyword's position in one transaction.

        Raises:
            PersistenceError: If the write fails or the keyword is gone
        """
        async with self.session_factory() as db:
            try:
                result = await db.execute(
                    select(Keyword).where(Keyword.id == keyword_id).with_for_update()
                )
                keyword = result.scalar_one_or_none()
                if keyword is None:
                    raise PersistenceError(f"Keyword {keyword_id} no longer exists")

                db.add(RankHistoryEntry(
                    keyword_id=keyword_id,
                    position=lookup.position,
                    url=lookup.url,
                    checked_at=checked_at,
                    device_type=keyword.device_type,
                    country_code=keyword.country_code
                ))
                keyword.previous_position = keyword.current_position
                keyword.current_position = lookup.position
                keyword.last_checked_at = checked_at

                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise PersistenceError(f"Failed to store rank for keyword {keyword_id}: {e}") from e

    async def _sync_credits(self, integration_id: str, provider: RankLookupProvider):
        """Refresh the integration's credit balance; failures are only logged."""
        try:
            usage = await provider.get_credit_usage()
            if usage is None:
                return
            async with self.session_factory() as db:
                await self.gate.record_credit_usage(db, integration_id, usage)
        except Exception as e:
            logger.warning(f"Could not sync provider credits for integration {integration_id}: {e}")

    async def check(self, keyword: Keyword) -> RankCheckOutcome:
        """
        Check the current rank of one keyword.

        Tenant quota must already have been consumed by the caller.

        Args:
            keyword: Keyword with its domain loaded

        Returns:
            RankCheckOutcome; ``error_code`` is set when ``success`` is False
        """
        keyword_id = keyword.id
        request = RankLookupRequest(
            keyword=keyword.keyword,
            domain=keyword.domain.domain_name,
            country_code=keyword.country_code,
            device_type=keyword.device_type
        )
        integration_id = None

        try:
            async with self.session_factory() as db:
                integration = await self.gate.resolve_integration(db, keyword.tenant_id)
                integration_id = integration.id
                provider = self._get_provider(integration)

            await self._reserve(integration_id)

            lookup = await provider.lookup(request)

            checked_at = utc_now()
            await self._persist(keyword_id, lookup, checked_at)

        except (NoIntegration, ProviderQuotaExhausted, PersistenceError) as e:
            logger.warning(f"Rank check for keyword {keyword_id} failed: {e}")
            return RankCheckOutcome(
                keyword_id=keyword_id,
                success=False,
                error=str(e),
                error_code=e.error_code,
                integration_id=integration_id
            )
        except ProviderError as e:
            logger.warning(f"Provider lookup for keyword {keyword_id} failed: {e}")
            return RankCheckOutcome(
                keyword_id=keyword_id,
                success=False,
                error=str(e),
                error_code="provider_error",
                integration_id=integration_id
            )
        except Exception as e:
            logger.error(f"Unexpected error checking keyword {keyword_id}: {e}", exc_info=True)
            return RankCheckOutcome(
                keyword_id=keyword_id,
                success=False,
                error=str(e),
                error_code="internal_error",
                integration_id=integration_id
            )

        if lookup.credits_used:
            await self._sync_credits(integration_id, provider)

        logger.info(
            f"Keyword {keyword_id} '{request.keyword}' for {request.domain}: "
            f"position {lookup.position if lookup.found else 'not ranked'} "
            f"of {lookup.total_results} results"
        )
        return RankCheckOutcome(
            keyword_id=keyword_id,
            success=True,
            position=lookup.position,
            url=lookup.url,
            checked_at=checked_at,
            integration_id=integration_id
        )

    async def cleanup(self):
        """Cleanup resources."""
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
