"""Unit tests for SweepWorker.

This module tests batch sweeps (tenant quota admission, provider blocking,
single-flight, live counters) and manual single-keyword checks.
"""
import asyncio
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy import select

from rank_tracker.models import Keyword, QuotaRecord, RankHistoryEntry
from rank_tracker.providers import ProviderError
from rank_tracker.services.errors import (
    AlreadyRunning,
    KeywordCheckInProgress,
    KeywordInactive,
    KeywordNotFound,
    QuotaExhausted,
)
from rank_tracker.services.provider_quota_gate import ProviderQuotaGate
from rank_tracker.workers.rank_check_worker import RankCheckWorker
from rank_tracker.workers.sweep_worker import SweepWorker, interleave_by_tenant


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_provider(make_lookup_result):
    provider = AsyncMock()
    provider.lookup = AsyncMock(return_value=make_lookup_result(5))
    return provider


@pytest.fixture
def rank_check_worker(fake_redis, session_factory, mock_provider):
    return RankCheckWorker(
        gate=ProviderQuotaGate(redis_client=fake_redis, service_name="firecrawl"),
        session_factory=session_factory,
        provider_factory=lambda integration: mock_provider,
        minute_wait_attempts=0
    )


@pytest.fixture
def sweeper(rank_check_worker, session_factory):
    return SweepWorker(
        rank_check_worker=rank_check_worker,
        session_factory=session_factory,
        concurrency=5,
        check_interval_hours=20
    )


async def quota_used(session_factory, tenant_id):
    async with session_factory() as session:
        return await session.scalar(
            select(QuotaRecord.daily_quota_used).where(QuotaRecord.tenant_id == tenant_id)
        )


async def checked_keyword_ids(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(Keyword.id).where(Keyword.last_checked_at.is_not(None)))
        return set(result.scalars().all())


async def history_keyword_ids(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(RankHistoryEntry.keyword_id))
        return list(result.scalars().all())


# ============================================================================
# Tests for tenant quota admission
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestSweepQuota:
    """Test sweeps against tenant quota."""

    @pytest.mark.critical
    async def test_remaining_quota_caps_checks(self, sweeper, seed, session_factory):
        """✅ Limit 5, used 4, 3 due → 1 checked, 2 skipped, used 5."""
        await seed.integration()
        await seed.quota("tenant-1", limit=5, used=4)
        domain = await seed.domain("tenant-1")
        await seed.keywords(domain, 3)

        run = await sweeper.run_sweep()

        assert run.total == 3
        assert run.checked == 1
        assert run.succeeded == 1
        assert run.skipped_quota == 2
        assert await quota_used(session_factory, "tenant-1") == 5
        assert len(await checked_keyword_ids(session_factory)) == 1

    @pytest.mark.critical
    async def test_exhausted_quota_checks_nothing(self, sweeper, seed, session_factory, mock_provider):
        """✅ No quota left → nothing checked, last_checked_at untouched."""
        await seed.integration()
        await seed.quota("tenant-1", limit=3, used=3)
        domain = await seed.domain("tenant-1")
        await seed.keywords(domain, 4)

        run = await sweeper.run_sweep()

        assert run.checked == 0
        assert run.skipped_quota == 4
        assert await checked_keyword_ids(session_factory) == set()
        mock_provider.lookup.assert_not_called()

    async def test_missing_quota_record_skipped(self, sweeper, seed, mock_provider):
        """✅ Tenant without a quota record → skipped, not failed."""
        await seed.integration()
        domain = await seed.domain("tenant-1")
        await seed.keywords(domain, 2)

        run = await sweeper.run_sweep()

        assert run.skipped_quota == 2
        assert run.failed == 0
        mock_provider.lookup.assert_not_called()

    async def test_tenants_independent(self, sweeper, seed, session_factory):
        """✅ One exhausted tenant does not stop another."""
        await seed.integration()
        await seed.quota("tenant-a", limit=0)
        await seed.quota("tenant-b", limit=10)
        await seed.keywords(await seed.domain("tenant-a"), 2)
        await seed.keywords(await seed.domain("tenant-b"), 3)

        run = await sweeper.run_sweep()

        assert run.checked == 3
        assert run.skipped_quota == 2
        assert await quota_used(session_factory, "tenant-b") == 3

    async def test_only_due_keywords(self, sweeper, seed, session_factory, ago):
        """✅ Fresh and inactive keywords are not part of the sweep."""
        await seed.integration()
        await seed.quota("tenant-1", limit=10)
        domain = await seed.domain("tenant-1")
        due = await seed.keyword(domain, term="due", last_checked_at=ago(25))
        await seed.keyword(domain, term="fresh", last_checked_at=ago(1))
        await seed.keyword(domain, term="inactive", is_active=False)

        run = await sweeper.run_sweep()

        assert run.total == 1
        assert await history_keyword_ids(session_factory) == [due.id]
        assert await quota_used(session_factory, "tenant-1") == 1

    async def test_nothing_due(self, sweeper):
        """✅ Empty sweep completes."""
        run = await sweeper.run_sweep()

        assert run.total == 0
        assert run.completed_at is not None
        assert sweeper.is_running is False


# ============================================================================
# Tests for provider failures
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestSweepProviderFailures:
    """Test sweeps when the provider side fails."""

    async def test_no_integration_skips_tenant(self, rank_check_worker, session_factory, seed, mock_provider):
        """✅ No integration → tenant's keywords skipped without spending its quota."""
        sweeper = SweepWorker(rank_check_worker, session_factory=session_factory, concurrency=1)
        await seed.quota("tenant-1", limit=10)
        await seed.keywords(await seed.domain("tenant-1"), 3)

        run = await sweeper.run_sweep()

        assert run.checked == 0
        assert run.skipped_provider_quota == 3
        assert await quota_used(session_factory, "tenant-1") == 0
        mock_provider.lookup.assert_not_called()

    async def test_provider_quota_runs_out_mid_sweep(self, rank_check_worker, session_factory, seed):
        """✅ Provider daily quota runs out mid-sweep → remaining keywords skipped, tenant quota kept."""
        sweeper = SweepWorker(rank_check_worker, session_factory=session_factory, concurrency=1)
        await seed.integration(daily_limit=2)
        await seed.quota("tenant-1", limit=10)
        await seed.keywords(await seed.domain("tenant-1"), 5)

        run = await sweeper.run_sweep()

        assert run.succeeded == 2
        assert run.failed == 0
        assert run.skipped_provider_quota == 3
        assert len(await checked_keyword_ids(session_factory)) == 2
        assert await quota_used(session_factory, "tenant-1") == 2

    @pytest.mark.critical
    async def test_exhausted_shared_integration_spends_no_tenant_quota(
        self, rank_check_worker, session_factory, seed, mock_provider
    ):
        """✅ Shared integration already spent → every tenant skipped, no tenant unit consumed."""
        sweeper = SweepWorker(rank_check_worker, session_factory=session_factory, concurrency=1)
        await seed.integration(daily_limit=3, daily_used=3)
        for tenant_id in ("t-a", "t-b", "t-c"):
            await seed.quota(tenant_id, limit=10)
            await seed.keywords(await seed.domain(tenant_id), 2)

        run = await sweeper.run_sweep()

        assert run.checked == 0
        assert run.failed == 0
        assert run.skipped_provider_quota == 6
        for tenant_id in ("t-a", "t-b", "t-c"):
            assert await quota_used(session_factory, tenant_id) == 0
        mock_provider.lookup.assert_not_called()

    async def test_own_integration_unaffected_by_spent_shared(self, rank_check_worker, session_factory, seed):
        """✅ Tenant with its own credential keeps checking while the shared one is spent."""
        sweeper = SweepWorker(rank_check_worker, session_factory=session_factory, concurrency=1)
        await seed.integration(api_key="shared", daily_limit=1, daily_used=1)
        await seed.integration(api_key="own", tenant_id="t-own", daily_limit=10)
        await seed.quota("t-own", limit=10)
        await seed.quota("t-shared", limit=10)
        await seed.keywords(await seed.domain("t-own"), 2)
        await seed.keywords(await seed.domain("t-shared"), 2)

        run = await sweeper.run_sweep()

        assert run.succeeded == 2
        assert run.skipped_provider_quota == 2
        assert await quota_used(session_factory, "t-own") == 2
        assert await quota_used(session_factory, "t-shared") == 0

    async def test_reservation_denial_blocks_integration(self, rank_check_worker, session_factory, seed):
        """✅ Reservation denied during the check → later keywords on that integration skipped."""
        sweeper = SweepWorker(rank_check_worker, session_factory=session_factory, concurrency=1)
        await seed.integration(daily_limit=5)
        for tenant_id in ("t-a", "t-b"):
            await seed.quota(tenant_id, limit=10)
            await seed.keywords(await seed.domain(tenant_id), 2)
        rank_check_worker.gate.reserve = AsyncMock(
            return_value=SimpleNamespace(granted=False, reason="daily_exhausted", retry_after=None)
        )

        run = await sweeper.run_sweep()

        assert run.checked == 1
        assert run.failed == 1
        assert run.skipped_provider_quota == 3
        assert await quota_used(session_factory, "t-a") == 1
        assert await quota_used(session_factory, "t-b") == 0

    async def test_provider_error_does_not_block(self, sweeper, seed, mock_provider):
        """✅ Ordinary provider errors fail only their own keyword."""
        await seed.integration()
        await seed.quota("tenant-1", limit=10)
        await seed.keywords(await seed.domain("tenant-1"), 3)
        mock_provider.lookup.side_effect = ProviderError("HTTP 500")

        run = await sweeper.run_sweep()

        assert run.checked == 3
        assert run.failed == 3
        assert run.skipped_provider_quota == 0

    async def test_enumeration_failure(self, sweeper):
        """❌ Due-keyword query fails → run records error and completes."""
        with patch(
            "rank_tracker.workers.sweep_worker.KeywordService.get_due_keywords",
            AsyncMock(side_effect=RuntimeError("database unavailable"))
        ):
            run = await sweeper.run_sweep()

        assert "database unavailable" in run.error
        assert run.completed_at is not None
        assert sweeper.is_running is False


# ============================================================================
# Tests for single-flight and live counters
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestSingleFlight:
    """Test that only one sweep runs at a time."""

    @pytest.mark.critical
    async def test_concurrent_run_rejected(self, sweeper, seed):
        """✅ Two simultaneous sweeps → one runs, the other gets AlreadyRunning."""
        await seed.integration()
        await seed.quota("tenant-1", limit=10)
        await seed.keywords(await seed.domain("tenant-1"), 2)

        results = await asyncio.gather(
            sweeper.run_sweep(), sweeper.run_sweep(), return_exceptions=True
        )

        assert sum(isinstance(r, AlreadyRunning) for r in results) == 1
        completed = [r for r in results if not isinstance(r, Exception)]
        assert completed[0].checked == 2

    async def test_background_sweep_blocks_second(self, sweeper, seed):
        """✅ start_sweep in flight → run_sweep rejected; allowed again afterwards."""
        await seed.integration()
        await seed.quota("tenant-1", limit=10)
        await seed.keywords(await seed.domain("tenant-1"), 2)

        run = sweeper.start_sweep()
        assert sweeper.is_running is True
        with pytest.raises(AlreadyRunning):
            await sweeper.run_sweep()

        await sweeper.wait()
        assert run.checked == 2
        assert sweeper.is_running is False

        second = await sweeper.run_sweep()
        assert second.total == 0

    @pytest.mark.critical
    async def test_counters_never_decrease(self, rank_check_worker, session_factory, seed, mock_provider, make_lookup_result):
        """✅ Live counters observed during a sweep only grow."""
        sweeper = SweepWorker(rank_check_worker, session_factory=session_factory, concurrency=2)
        await seed.integration()
        await seed.quota("tenant-1", limit=10)
        await seed.keywords(await seed.domain("tenant-1"), 6)
        snapshots = []

        async def observed_lookup(request):
            snapshots.append((sweeper.current_run.checked, sweeper.current_run.succeeded))
            await asyncio.sleep(0)
            return make_lookup_result(2)

        mock_provider.lookup.side_effect = observed_lookup

        run = await sweeper.run_sweep()
        snapshots.append((run.checked, run.succeeded))

        assert snapshots == sorted(snapshots)
        assert snapshots[-1] == (6, 6)

    async def test_in_flight_keyword_skipped(self, sweeper, seed):
        """✅ Keyword already being checked → skipped_in_progress."""
        await seed.integration()
        await seed.quota("tenant-1", limit=10)
        busy, _ = await seed.keywords(await seed.domain("tenant-1"), 2)
        sweeper._in_flight.add(busy.id)

        run = await sweeper.run_sweep()

        assert run.skipped_in_progress == 1
        assert run.checked == 1

    async def test_status(self, sweeper):
        """✅ Status reports last run and next schedule."""
        assert sweeper.get_status() == {
            "is_running": False,
            "last_run": None,
            "next_scheduled_at": None,
        }

        await sweeper.run_sweep(trigger="manual")
        status = sweeper.get_status()

        assert status["last_run"]["trigger"] == "manual"
        assert status["last_run"]["running"] is False

    async def test_shutdown_cancels_background_sweep(self, sweeper, seed, mock_provider):
        """✅ Shutdown cancels a running background sweep."""
        await seed.integration()
        await seed.quota("tenant-1", limit=10)
        await seed.keywords(await seed.domain("tenant-1"), 1)
        started = asyncio.Event()

        async def slow_lookup(request):
            started.set()
            await asyncio.sleep(60)

        mock_provider.lookup.side_effect = slow_lookup

        sweeper.start_sweep()
        await asyncio.wait_for(started.wait(), timeout=5)
        await sweeper.shutdown()

        assert sweeper.is_running is False


# ============================================================================
# Tests for interleave_by_tenant
# ============================================================================

@pytest.mark.unit
class TestInterleave:
    """Test round-robin ordering."""

    def test_round_robin(self):
        """✅ Tenants alternate; order within a tenant kept."""
        keywords = [
            SimpleNamespace(tenant_id="a", id="a1"),
            SimpleNamespace(tenant_id="a", id="a2"),
            SimpleNamespace(tenant_id="a", id="a3"),
            SimpleNamespace(tenant_id="b", id="b1"),
            SimpleNamespace(tenant_id="c", id="c1"),
            SimpleNamespace(tenant_id="c", id="c2"),
        ]

        ordered = interleave_by_tenant(keywords)

        assert [k.id for k in ordered] == ["a1", "b1", "c1", "a2", "c2", "a3"]

    def test_empty(self):
        assert interleave_by_tenant([]) == []


# ============================================================================
# Tests for check_keyword_now
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
class TestCheckKeywordNow:
    """Test manual single-keyword checks."""

    async def test_success_consumes_quota(self, sweeper, seed, session_factory):
        """✅ Checked immediately; one unit of tenant quota consumed."""
        await seed.integration()
        await seed.quota("tenant-1", limit=5)
        keyword = await seed.keyword(await seed.domain("tenant-1"))

        outcome = await sweeper.check_keyword_now("tenant-1", keyword.id)

        assert outcome.success is True
        assert outcome.position == 5
        assert await quota_used(session_factory, "tenant-1") == 1
        assert keyword.id not in sweeper._in_flight

    async def test_not_found(self, sweeper, seed):
        """❌ Other tenant's keyword → KeywordNotFound."""
        keyword = await seed.keyword(await seed.domain("tenant-1"))

        with pytest.raises(KeywordNotFound):
            await sweeper.check_keyword_now("tenant-2", keyword.id)

    async def test_inactive(self, sweeper, seed):
        """❌ Inactive keyword → KeywordInactive."""
        keyword = await seed.keyword(await seed.domain("tenant-1"), is_active=False)

        with pytest.raises(KeywordInactive):
            await sweeper.check_keyword_now("tenant-1", keyword.id)

    async def test_in_progress(self, sweeper, seed):
        """❌ Already being checked → KeywordCheckInProgress."""
        keyword = await seed.keyword(await seed.domain("tenant-1"))
        sweeper._in_flight.add(keyword.id)

        with pytest.raises(KeywordCheckInProgress):
            await sweeper.check_keyword_now("tenant-1", keyword.id)

    async def test_quota_exhausted(self, sweeper, seed, session_factory, mock_provider):
        """❌ No quota left → QuotaExhausted, nothing checked."""
        await seed.integration()
        await seed.quota("tenant-1", limit=2, used=2)
        keyword = await seed.keyword(await seed.domain("tenant-1"))

        with pytest.raises(QuotaExhausted) as exc_info:
            await sweeper.check_keyword_now("tenant-1", keyword.id)

        assert exc_info.value.remaining == 0
        mock_provider.lookup.assert_not_called()
        assert keyword.id not in sweeper._in_flight

    async def test_runs_during_sweep(self, sweeper, seed):
        """✅ Manual check allowed while a sweep is running."""
        await seed.integration()
        await seed.quota("tenant-1", limit=10)
        domain = await seed.domain("tenant-1")
        keyword = await seed.keyword(domain, term="manual")
        sweeper.current_run = MagicMock()

        outcome = await sweeper.check_keyword_now("tenant-1", keyword.id)

        assert outcome.success is True
