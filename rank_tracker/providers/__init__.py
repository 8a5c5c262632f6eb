"""Abstract interface for search rank lookup providers."""
from abc import ABC, abstractmethod
from typing import Optional
from rank_tracker.providers.models import CreditUsage, RankLookupRequest, RankLookupResult


class RankLookupProvider(ABC):
    """Abstract base class for search engine rank lookup providers."""

    @abstractmethod
    async def lookup(self, request: RankLookupRequest) -> RankLookupResult:
        """
        Look up where a domain ranks for a search term.

        Args:
            request: Term, target domain, country and device

        Returns:
            RankLookupResult with the observed position (None if not ranked)

        Raises:
            ProviderError: If the API call fails after retries or the
                response is not structurally valid
        """
        pass

    async def get_credit_usage(self) -> Optional[CreditUsage]:
        """Credit balance of the account, or None if the provider does not report one."""
        return None

    async def close(self):
        """Release any network resources held by the provider."""
        pass


class ProviderError(Exception):
    """Exception raised when provider API fails."""
    pass
