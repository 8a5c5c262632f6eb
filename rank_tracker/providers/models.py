"""Data models for rank lookups."""
from dataclasses import dataclass
from typing import Optional


@dataclass
class RankLookupRequest:
    """One keyword lookup for a domain."""
    keyword: str
    domain: str
    country_code: str  # ISO 3166-1 alpha-2
    device_type: str = "desktop"


@dataclass
class SearchResult:
    """Single organic result returned by the provider."""
    url: str
    position: int
    title: Optional[str] = None
    description: Optional[str] = None


@dataclass
class RankLookupResult:
    """Outcome of a lookup: where (if anywhere) the domain ranked."""
    position: Optional[int]
    url: Optional[str]
    total_results: int
    provider: str
    credits_used: Optional[int] = None  # reported by the provider for this call

    @property
    def found(self) -> bool:
        return self.position is not None


@dataclass
class CreditUsage:
    """Credit balance of the provider account behind an API key."""
    remaining_credits: int
    plan_credits: Optional[int] = None
    billing_period_end: Optional[str] = None
