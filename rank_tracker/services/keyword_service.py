"""Keyword lookup and rank history queries."""
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from rank_tracker.models import Keyword, RankHistoryEntry


def _due_clause(cutoff: datetime):
    return (
        Keyword.is_active.is_(True),
        or_(Keyword.last_checked_at.is_(None), Keyword.last_checked_at < cutoff)
    )


class KeywordService:
    """Service for reading tracked keywords."""

    @staticmethod
    async def get_due_keywords(db: AsyncSession, cutoff: datetime) -> List[Keyword]:
        """
        Get active keywords never checked or last checked before ``cutoff``.

        Args:
            db: Database session
            cutoff: Keywords checked at or after this instant are not due

        Returns:
            Keywords with their domain loaded, grouped by tenant
        """
        result = await db.execute(
            select(Keyword)
            .options(selectinload(Keyword.domain))
            .where(*_due_clause(cutoff))
            .order_by(Keyword.tenant_id, Keyword.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_keyword_for_tenant(
        db: AsyncSession,
        tenant_id: str,
        keyword_id: str
    ) -> Optional[Keyword]:
        """Get a keyword only if it belongs to the tenant."""
        result = await db.execute(
            select(Keyword)
            .options(selectinload(Keyword.domain))
            .where(Keyword.id == keyword_id, Keyword.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_processing_stats(
        db: AsyncSession,
        cutoff: datetime,
        day_start: datetime
    ) -> dict:
        """
        Progress of the current checking cycle.

        Args:
            db: Database session
            cutoff: Due cutoff (see get_due_keywords)
            day_start: Start of the current reference day as a UTC instant

        Returns:
            Dict with total_keywords, pending_checks, checked_today, completion_rate
        """
        total = await db.scalar(
            select(func.count()).select_from(Keyword).where(Keyword.is_active.is_(True))
        ) or 0
        pending = await db.scalar(
            select(func.count()).select_from(Keyword).where(*_due_clause(cutoff))
        ) or 0
        checked_today = await db.scalar(
            select(func.count()).select_from(Keyword).where(
                Keyword.is_active.is_(True),
                Keyword.last_checked_at >= day_start
            )
        ) or 0

        completion_rate = round(checked_today / total * 100, 2) if total else 0.0

        return {
            "total_keywords": total,
            "pending_checks": pending,
            "checked_today": checked_today,
            "completion_rate": completion_rate,
        }

    @staticmethod
    async def get_rank_history(
        db: AsyncSession,
        keyword_id: str,
        limit: int = 30
    ) -> List[RankHistoryEntry]:
        """Most recent history entries for a keyword, newest first."""
        result = await db.execute(
            select(RankHistoryEntry)
            .where(RankHistoryEntry.keyword_id == keyword_id)
            .order_by(RankHistoryEntry.checked_at.desc(), RankHistoryEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
