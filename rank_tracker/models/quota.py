"""Per-tenant daily rank-check quota ledger."""
from sqlalchemy import Column, String, Integer, Date, DateTime
from datetime import datetime, timezone
from rank_tracker.core.database import Base


# Sentinel limit meaning the tenant may run any number of checks
UNLIMITED = -1


class QuotaRecord(Base):
    """Daily rank-check allowance of one tenant.

    ``daily_quota_used`` only counts checks made on ``quota_reset_date``; a
    record whose reset date lies before today (reference timezone) is stale and
    is rolled forward before any read or consume.
    """

    __tablename__ = "rank_check_quotas"

    tenant_id = Column(String, primary_key=True)
    daily_quota_used = Column(Integer, default=0, nullable=False)
    daily_quota_limit = Column(Integer, default=0, nullable=False)  # -1 = unlimited
    quota_reset_date = Column(Date, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def is_unlimited(self) -> bool:
        return self.daily_quota_limit == UNLIMITED
