"""Error taxonomy for the rank-check subsystem."""
from typing import Optional


class RankTrackerError(Exception):
    """Base class for rank tracking failures."""

    error_code = "internal_error"


class QuotaRecordNotFound(RankTrackerError):
    """Tenant has no rank-check quota record."""

    error_code = "quota_record_not_found"


class QuotaExhausted(RankTrackerError):
    """Tenant's daily rank-check quota is used up."""

    error_code = "tenant_quota_exhausted"

    def __init__(self, message: str = "Daily rank-check quota exhausted", remaining: int = 0,
                 limit: Optional[int] = None):
        super().__init__(message)
        self.remaining = remaining
        self.limit = limit


class ProviderQuotaExhausted(RankTrackerError):
    """Shared provider quota denied the reservation."""

    error_code = "provider_quota_exhausted"

    def __init__(self, message: str = "Rank lookup provider quota exhausted", reason: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.reason = reason
        self.retry_after = retry_after


class NoIntegration(RankTrackerError):
    """No active credential exists for the rank lookup provider."""

    error_code = "no_integration"


class AlreadyRunning(RankTrackerError):
    """A sweep is already in progress."""

    error_code = "already_running"


class PersistenceError(RankTrackerError):
    """Rank result could not be written."""

    error_code = "persistence_error"


class KeywordNotFound(RankTrackerError):
    """Keyword does not exist or belongs to another tenant."""

    error_code = "keyword_not_found"


class KeywordInactive(RankTrackerError):
    """Keyword is not active and cannot be checked."""

    error_code = "keyword_inactive"


class KeywordCheckInProgress(RankTrackerError):
    """Keyword is already being checked."""

    error_code = "check_in_progress"
