"""External rank-lookup provider credentials and their shared quota."""
from sqlalchemy import Column, String, Integer, Boolean, Date, DateTime, Index
from datetime import datetime, timezone
import uuid
from rank_tracker.core.database import Base


class ServiceIntegration(Base):
    """Credential for the rank-lookup provider plus its daily/minute allowance.

    ``tenant_id`` is None for the shared site-level credential.
    """

    __tablename__ = "service_integrations"
    __table_args__ = (
        Index("ix_service_integrations_lookup", "service_name", "is_active"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    service_name = Column(String, nullable=False)
    tenant_id = Column(String, nullable=True, index=True)
    api_key = Column(String, nullable=False)
    api_url = Column(String, nullable=True)
    daily_limit = Column(Integer, default=-1, nullable=False)  # -1 = unlimited
    daily_used = Column(Integer, default=0, nullable=False)
    minute_limit = Column(Integer, nullable=True)  # None = no per-minute limit
    # Account credit balance last reported by the provider
    credits_remaining = Column(Integer, nullable=True)
    plan_credits = Column(Integer, nullable=True)
    credits_synced_at = Column(DateTime(timezone=True), nullable=True)
    quota_reset_date = Column(Date, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    @property
    def has_daily_capacity(self) -> bool:
        return self.daily_limit == -1 or self.daily_used < self.daily_limit
