"""Tracked domain, keyword and rank history models."""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship, validates
from datetime import datetime, timezone
import uuid
from rank_tracker.core.database import Base


VALID_DEVICE_TYPES = {"desktop", "mobile", "tablet"}


class Domain(Base):
    """A tenant-owned website whose keyword rankings are tracked."""

    __tablename__ = "domains"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String, nullable=False, index=True)
    domain_name = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    keywords = relationship("Keyword", back_populates="domain")


class Keyword(Base):
    """A search term tracked for a domain in one country and device type."""

    __tablename__ = "keywords"
    __table_args__ = (
        Index("ix_keywords_due", "is_active", "last_checked_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String, nullable=False, index=True)
    domain_id = Column(String, ForeignKey("domains.id"), nullable=False, index=True)
    keyword = Column(String, nullable=False)
    country_code = Column(String(2), default="US", nullable=False)
    device_type = Column(String, default="desktop", nullable=False)  # desktop, mobile, tablet
    tags = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    current_position = Column(Integer, nullable=True)
    previous_position = Column(Integer, nullable=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # Relationships
    domain = relationship("Domain", back_populates="keywords")
    history = relationship(
        "RankHistoryEntry",
        back_populates="keyword",
        order_by="RankHistoryEntry.checked_at"
    )

    @validates("device_type")
    def validate_device_type(self, key, value):
        if value not in VALID_DEVICE_TYPES:
            raise ValueError(f"device_type must be one of {sorted(VALID_DEVICE_TYPES)}, got {value!r}")
        return value

    @validates("country_code")
    def validate_country_code(self, key, value):
        if not value or len(value) != 2:
            raise ValueError(f"country_code must be a 2-letter ISO code, got {value!r}")
        return value.upper()


class RankHistoryEntry(Base):
    """Append-only record of one observed rank for a keyword."""

    __tablename__ = "rank_history"
    __table_args__ = (
        Index("ix_rank_history_keyword_checked", "keyword_id", "checked_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    keyword_id = Column(String, ForeignKey("keywords.id"), nullable=False)
    position = Column(Integer, nullable=True)  # None = not found in results
    url = Column(String, nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=False)
    device_type = Column(String, nullable=False)
    country_code = Column(String(2), nullable=False)
    search_volume = Column(Integer, nullable=True)
    difficulty_score = Column(Integer, nullable=True)

    # Relationships
    keyword = relationship("Keyword", back_populates="history")
