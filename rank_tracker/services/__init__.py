"""Services package initialization."""
from rank_tracker.services.quota_service import QuotaService, QuotaInfo, ConsumeCheck
from rank_tracker.services.provider_quota_gate import ProviderQuotaGate, Reservation, ProviderQuotaHealth
from rank_tracker.services.keyword_service import KeywordService

__all__ = [
    "QuotaService",
    "QuotaInfo",
    "ConsumeCheck",
    "ProviderQuotaGate",
    "Reservation",
    "ProviderQuotaHealth",
    "KeywordService"
]
