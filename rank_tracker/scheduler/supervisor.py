"""Supervisor owning the rank-check components and their schedule."""
import logging
from typing import Callable, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import redis.asyncio as redis
from rank_tracker.core.config import settings
from rank_tracker.core.database import AsyncSessionLocal, check_database
from rank_tracker.models import ServiceIntegration
from rank_tracker.providers import RankLookupProvider
from rank_tracker.services import QuotaService, QuotaInfo, KeywordService, ProviderQuotaGate, ProviderQuotaHealth
from rank_tracker.services.errors import AlreadyRunning
from rank_tracker.utils.time import due_cutoff, reference_today, start_of_reference_day
from rank_tracker.workers import RankCheckWorker, RankCheckOutcome, SweepWorker, SweepRun

logger = logging.getLogger(__name__)


class Supervisor:
    """
    Single owner of the rank-check subsystem.

    Built once at process start; the API and the standalone scheduler only
    talk to the subsystem through this object.
    """

    SWEEP_JOB_ID = "daily_rank_sweep"
    QUOTA_RESET_JOB_ID = "daily_quota_reset"

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        redis_client: Optional[redis.Redis] = None,
        provider_factory: Optional[Callable[[ServiceIntegration], RankLookupProvider]] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
        enable_scheduler: Optional[bool] = None
    ):
        logger.info("Initializing Supervisor...")
        self.session_factory = session_factory
        self.gate = ProviderQuotaGate(redis_client)
        self.rank_check_worker = RankCheckWorker(self.gate, session_factory, provider_factory)
        self.sweep_worker = SweepWorker(self.rank_check_worker, session_factory)
        self.scheduler = scheduler or AsyncIOScheduler(timezone=settings.sweep_timezone)
        self.enable_scheduler = settings.scheduler_enabled if enable_scheduler is None else enable_scheduler

        self.is_initialized = False
        self.actually_ready = False
        self.service_states = {
            "database": False,
            "redis": False,
            "provider": False,
            "scheduler": False,
        }

    @property
    def last_run_status(self) -> str:
        run = self.sweep_worker.last_run
        if run is None:
            return "never"
        if run.running:
            return "running"
        return "failed" if run.error else "completed"

    async def initialize(self) -> dict:
        """
        Check dependencies and start the schedule.

        Never raises: failures leave ``actually_ready`` False and are logged.

        Returns:
            Status dict (see get_status)
        """
        if self.is_initialized:
            return self.get_status()

        logger.info("=" * 60)
        logger.info("Starting rank check supervisor...")
        logger.info(f"Log level: {settings.log_level}")
        logger.info(f"Sweep concurrency: {settings.sweep_concurrency}")
        logger.info(
            f"Daily sweep at {settings.sweep_cron_hour:02d}:{settings.sweep_cron_minute:02d} "
            f"{settings.sweep_timezone}"
        )
        logger.info("=" * 60)

        try:
            self.service_states["database"] = await check_database(self.session_factory)
            self.service_states["redis"] = await self.gate.ping()
            self.service_states["provider"] = await self._check_provider()

            if self.enable_scheduler:
                self._schedule_jobs()
                self.scheduler.start()
                self.service_states["scheduler"] = True
                logger.info("Scheduled jobs registered successfully")
            else:
                logger.info("Scheduler disabled in this process")

            self.is_initialized = True
            self.actually_ready = (
                self.service_states["database"]
                and self.service_states["redis"]
                and self.service_states["provider"]
                and (self.service_states["scheduler"] or not self.enable_scheduler)
            )
        except Exception as e:
            logger.error(f"Supervisor initialization failed: {e}", exc_info=True)
            self.actually_ready = False

        if self.actually_ready:
            logger.info("Supervisor ready")
        else:
            logger.warning(f"Supervisor started degraded: {self.service_states}")
        return self.get_status()

    async def _check_provider(self) -> bool:
        try:
            health = await self.get_provider_health()
        except Exception as e:
            logger.error(f"Provider credential check failed: {e}", exc_info=True)
            return False
        if health.status == "exhausted":
            logger.warning("No rank lookup provider credential with remaining quota")
            return False
        return True

    def _schedule_jobs(self):
        self.scheduler.add_job(
            self._scheduled_sweep,
            trigger=CronTrigger(
                hour=settings.sweep_cron_hour,
                minute=settings.sweep_cron_minute,
                timezone=settings.sweep_timezone
            ),
            id=self.SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600
        )

        self.scheduler.add_job(
            self._scheduled_quota_reset,
            trigger=CronTrigger(hour=0, minute=0, timezone=settings.quota_reset_timezone),
            id=self.QUOTA_RESET_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

    async def _scheduled_sweep(self):
        try:
            await self.run_sweep("scheduled")
        except AlreadyRunning:
            logger.warning("Scheduled sweep skipped: a sweep is already running")
        except Exception as e:
            logger.error(f"Scheduled sweep failed: {e}", exc_info=True)

    async def _scheduled_quota_reset(self):
        try:
            async with self.session_factory() as db:
                await QuotaService.reset_stale_quotas(db)
                await self.gate.reset_stale(db)
        except Exception as e:
            logger.error(f"Daily quota reset failed: {e}", exc_info=True)

    async def run_sweep(self, trigger: str = "scheduled") -> SweepRun:
        """Run a sweep to completion. Raises AlreadyRunning if one is in flight."""
        return await self.sweep_worker.run_sweep(trigger)

    def trigger_sweep(self) -> SweepRun:
        """Start a manual sweep in the background. Raises AlreadyRunning if one is in flight."""
        return self.sweep_worker.start_sweep("manual")

    async def check_keyword(self, tenant_id: str, keyword_id: str) -> RankCheckOutcome:
        """Check one keyword now on behalf of its tenant."""
        return await self.sweep_worker.check_keyword_now(tenant_id, keyword_id)

    def next_sweep_at(self):
        if not self.scheduler.running:
            return None
        job = self.scheduler.get_job(self.SWEEP_JOB_ID)
        return job.next_run_time if job else None

    async def get_sweep_status(self) -> dict:
        """Sweep state plus progress of the current checking day."""
        status = self.sweep_worker.get_status(self.next_sweep_at())
        async with self.session_factory() as db:
            status["processing_stats"] = await KeywordService.get_processing_stats(
                db,
                due_cutoff(settings.rank_check_interval_hours),
                start_of_reference_day(
                    reference_today(settings.quota_reset_timezone),
                    settings.quota_reset_timezone
                )
            )
        return status

    async def get_quota(self, tenant_id: str) -> QuotaInfo:
        async with self.session_factory() as db:
            return await QuotaService.get_quota(db, tenant_id)

    async def get_provider_health(self) -> ProviderQuotaHealth:
        async with self.session_factory() as db:
            return await self.gate.check_health(db)

    def get_status(self) -> dict:
        """Readiness summary."""
        return {
            "is_initialized": self.is_initialized,
            "actually_ready": self.actually_ready,
            "last_run_status": self.last_run_status,
            "sweep_running": self.sweep_worker.is_running,
            "service_states": dict(self.service_states),
        }

    async def shutdown(self):
        """Stop the schedule, cancel a background sweep and close provider clients."""
        logger.info("Shutting down supervisor...")
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.sweep_worker.shutdown()
        await self.rank_check_worker.cleanup()
        self.is_initialized = False
        self.actually_ready = False
