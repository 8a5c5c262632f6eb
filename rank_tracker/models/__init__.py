"""Models package initialization."""
from rank_tracker.models.keyword import Domain, Keyword, RankHistoryEntry
from rank_tracker.models.quota import QuotaRecord, UNLIMITED
from rank_tracker.models.integration import ServiceIntegration

__all__ = [
    "Domain",
    "Keyword",
    "RankHistoryEntry",
    "QuotaRecord",
    "UNLIMITED",
    "ServiceIntegration"
]
