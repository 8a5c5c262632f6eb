"""Sweep worker: periodic batch of due rank checks, single-flight."""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from itertools import zip_longest
from typing import Dict, List, Optional, Set
from rank_tracker.core.config import settings
from rank_tracker.core.database import AsyncSessionLocal
from rank_tracker.models import Keyword
from rank_tracker.services import QuotaService, KeywordService
from rank_tracker.services.errors import (
    AlreadyRunning,
    KeywordCheckInProgress,
    KeywordInactive,
    KeywordNotFound,
    NoIntegration,
    QuotaExhausted,
    QuotaRecordNotFound,
)
from rank_tracker.utils.time import due_cutoff, utc_now
from rank_tracker.workers.rank_check_worker import RankCheckWorker, RankCheckOutcome

logger = logging.getLogger(__name__)

# Outcome that spends the resolved integration for the rest of the sweep
PROVIDER_EXHAUSTED_CODE = "provider_quota_exhausted"


@dataclass
class SweepRun:
    """Counters for one sweep. Counters only ever increase while it runs."""
    trigger: str = "scheduled"  # scheduled, manual
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    total: int = 0
    checked: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_quota: int = 0
    skipped_provider_quota: int = 0
    skipped_in_progress: int = 0
    error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.completed_at is None

    def to_dict(self) -> dict:
        return {
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "running": self.running,
            "total": self.total,
            "checked": self.checked,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped_quota": self.skipped_quota,
            "skipped_provider_quota": self.skipped_provider_quota,
            "skipped_in_progress": self.skipped_in_progress,
            "error": self.error,
        }


def interleave_by_tenant(keywords: List[Keyword]) -> List[Keyword]:
    """Order keywords round-robin across tenants so no tenant starves the others."""
    groups: Dict[str, List[Keyword]] = {}
    for keyword in keywords:
        groups.setdefault(keyword.tenant_id, []).append(keyword)
    return [kw for batch in zip_longest(*groups.values()) for kw in batch if kw is not None]


class SweepWorker:
    """
    Runs sweeps over all due keywords and manual single-keyword checks.

    At most one sweep runs at a time; a second request while one is in flight
    is rejected with AlreadyRunning, never queued.
    """

    def __init__(
        self,
        rank_check_worker: RankCheckWorker,
        session_factory=AsyncSessionLocal,
        concurrency: Optional[int] = None,
        check_interval_hours: Optional[int] = None
    ):
        self.rank_check_worker = rank_check_worker
        self.session_factory = session_factory
        self.concurrency = concurrency or settings.sweep_concurrency
        self.check_interval_hours = (
            check_interval_hours if check_interval_hours is not None
            else settings.rank_check_interval_hours
        )
        self.current_run: Optional[SweepRun] = None
        self.last_run: Optional[SweepRun] = None
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Set[str] = set()

    @property
    def is_running(self) -> bool:
        return self.current_run is not None

    def _claim(self, trigger: str) -> SweepRun:
        # No await between check and set: the event loop cannot interleave here
        if self.current_run is not None:
            raise AlreadyRunning("A rank check sweep is already running")
        run = SweepRun(trigger=trigger)
        self.current_run = run
        self.last_run = run
        return run

    async def run_sweep(self, trigger: str = "scheduled") -> SweepRun:
        """
        Run a sweep to completion.

        Raises:
            AlreadyRunning: If a sweep is in flight
        """
        run = self._claim(trigger)
        await self._execute(run)
        return run

    def start_sweep(self, trigger: str = "manual") -> SweepRun:
        """
        Start a sweep in the background and return its live counters.

        Raises:
            AlreadyRunning: If a sweep is in flight
        """
        run = self._claim(trigger)
        self._task = asyncio.create_task(self._execute(run))
        return run

    async def wait(self):
        """Wait for a background sweep to finish."""
        if self._task is not None:
            await self._task

    async def _execute(self, run: SweepRun):
        logger.info(f"Starting {run.trigger} rank check sweep")
        try:
            try:
                async with self.session_factory() as db:
                    keywords = await KeywordService.get_due_keywords(
                        db, due_cutoff(self.check_interval_hours)
                    )
            except Exception as e:
                run.error = f"Failed to enumerate due keywords: {e}"
                logger.error(run.error, exc_info=True)
                return

            run.total = len(keywords)
            if not keywords:
                logger.info("No keywords due for a rank check")
                return

            queue: asyncio.Queue = asyncio.Queue()
            for keyword in interleave_by_tenant(keywords):
                queue.put_nowait(keyword)

            exhausted_tenants: Set[str] = set()
            blocked_tenants: Set[str] = set()
            blocked_integrations: Set[str] = set()
            pool_size = min(self.concurrency, len(keywords))
            await asyncio.gather(*[
                self._drain(queue, run, exhausted_tenants, blocked_tenants, blocked_integrations)
                for _ in range(pool_size)
            ])
        finally:
            run.completed_at = utc_now()
            self.current_run = None
            logger.info(
                f"Sweep finished: total={run.total} checked={run.checked} "
                f"succeeded={run.succeeded} failed={run.failed} "
                f"skipped_quota={run.skipped_quota} "
                f"skipped_provider_quota={run.skipped_provider_quota} "
                f"skipped_in_progress={run.skipped_in_progress}"
            )

    async def _drain(
        self,
        queue: asyncio.Queue,
        run: SweepRun,
        exhausted_tenants: Set[str],
        blocked_tenants: Set[str],
        blocked_integrations: Set[str]
    ):
        while True:
            try:
                keyword = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._process(keyword, run, exhausted_tenants, blocked_tenants, blocked_integrations)

    async def _admit(self, tenant_id: str) -> bool:
        """Check and consume one unit of tenant quota."""
        async with self.session_factory() as db:
            check = await QuotaService.can_consume(db, tenant_id, 1)
            if not check.allowed:
                return False
            return await QuotaService.consume(db, tenant_id, 1)

    async def _provider_available(
        self,
        tenant_id: str,
        blocked_tenants: Set[str],
        blocked_integrations: Set[str]
    ) -> bool:
        """
        Whether the integration a tenant's lookup would use can still serve it.

        Spent integrations and tenants without one are remembered for the rest
        of the sweep so their keywords are skipped before tenant quota is touched.
        """
        gate = self.rank_check_worker.gate
        async with self.session_factory() as db:
            try:
                integration = await gate.resolve_integration(db, tenant_id)
            except NoIntegration:
                blocked_tenants.add(tenant_id)
                logger.info(f"Tenant {tenant_id} has no provider integration, skipping its keywords")
                return False

        if integration.id in blocked_integrations:
            return False
        if not gate.has_capacity(integration):
            blocked_integrations.add(integration.id)
            logger.info(f"Integration {integration.id} out of provider quota, skipping keywords that need it")
            return False
        return True

    async def _process(
        self,
        keyword: Keyword,
        run: SweepRun,
        exhausted_tenants: Set[str],
        blocked_tenants: Set[str],
        blocked_integrations: Set[str]
    ):
        tenant_id = keyword.tenant_id

        if tenant_id in exhausted_tenants:
            run.skipped_quota += 1
            return
        if tenant_id in blocked_tenants:
            run.skipped_provider_quota += 1
            return
        if keyword.id in self._in_flight:
            run.skipped_in_progress += 1
            return

        self._in_flight.add(keyword.id)
        try:
            try:
                if not await self._provider_available(tenant_id, blocked_tenants, blocked_integrations):
                    run.skipped_provider_quota += 1
                    return
                admitted = await self._admit(tenant_id)
            except QuotaRecordNotFound:
                logger.warning(f"Tenant {tenant_id} has no rank-check quota record, skipping its keywords")
                admitted = False
            except Exception as e:
                logger.error(f"Quota check failed for tenant {tenant_id}: {e}", exc_info=True)
                run.checked += 1
                run.failed += 1
                return

            if not admitted:
                exhausted_tenants.add(tenant_id)
                run.skipped_quota += 1
                logger.info(f"Tenant {tenant_id} out of rank-check quota, skipping remaining keywords")
                return

            outcome = await self.rank_check_worker.check(keyword)
            run.checked += 1
            if outcome.success:
                run.succeeded += 1
            else:
                run.failed += 1
                if outcome.error_code == PROVIDER_EXHAUSTED_CODE and outcome.integration_id:
                    blocked_integrations.add(outcome.integration_id)
                elif outcome.error_code == "no_integration":
                    blocked_tenants.add(tenant_id)
        finally:
            self._in_flight.discard(keyword.id)

    async def check_keyword_now(self, tenant_id: str, keyword_id: str) -> RankCheckOutcome:
        """
        Check one keyword immediately on behalf of its tenant.

        Runs alongside a sweep; the keyword itself is never checked twice at once.

        Raises:
            KeywordNotFound: If the keyword does not exist for the tenant
            KeywordInactive: If the keyword is not active
            KeywordCheckInProgress: If the keyword is being checked right now
            QuotaExhausted: If the tenant has no quota left today
            QuotaRecordNotFound: If the tenant has no quota record
        """
        async with self.session_factory() as db:
            keyword = await KeywordService.get_keyword_for_tenant(db, tenant_id, keyword_id)

        if keyword is None:
            raise KeywordNotFound(f"Keyword {keyword_id} not found")
        if not keyword.is_active:
            raise KeywordInactive(f"Keyword {keyword_id} is not active")
        if keyword.id in self._in_flight:
            raise KeywordCheckInProgress(f"Keyword {keyword_id} is already being checked")

        self._in_flight.add(keyword.id)
        try:
            async with self.session_factory() as db:
                check = await QuotaService.can_consume(db, tenant_id, 1)
                if not check.allowed:
                    raise QuotaExhausted(remaining=check.remaining)
                if not await QuotaService.consume(db, tenant_id, 1):
                    raise QuotaExhausted(remaining=0)

            return await self.rank_check_worker.check(keyword)
        finally:
            self._in_flight.discard(keyword.id)

    def get_status(self, next_scheduled_at: Optional[datetime] = None) -> dict:
        """Sweep state with live counters of the running (or last) sweep."""
        return {
            "is_running": self.is_running,
            "last_run": self.last_run.to_dict() if self.last_run else None,
            "next_scheduled_at": next_scheduled_at.isoformat() if next_scheduled_at else None,
        }

    async def shutdown(self):
        """Cancel a background sweep, if any."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
