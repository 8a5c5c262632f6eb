"""Firecrawl search API rank lookup provider implementation."""
import httpx
from typing import List, Optional
from urllib.parse import urlsplit
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log
)
import logging
from rank_tracker.providers import RankLookupProvider, ProviderError
from rank_tracker.providers.models import CreditUsage, RankLookupRequest, RankLookupResult, SearchResult
from rank_tracker.core.config import settings


logger = logging.getLogger(__name__)

# Firecrawl expects a country name as the search location
COUNTRY_NAMES = {
    "ID": "Indonesia", "US": "United States", "MY": "Malaysia", "SG": "Singapore",
    "TH": "Thailand", "PH": "Philippines", "VN": "Vietnam", "GB": "United Kingdom",
    "AU": "Australia", "CA": "Canada", "IN": "India", "JP": "Japan",
    "KR": "South Korea", "CN": "China", "HK": "Hong Kong", "TW": "Taiwan",
    "DE": "Germany", "FR": "France", "IT": "Italy", "ES": "Spain",
    "NL": "Netherlands", "BR": "Brazil", "MX": "Mexico", "AR": "Argentina",
    "CL": "Chile", "CO": "Colombia", "PE": "Peru", "ZA": "South Africa",
    "EG": "Egypt", "NG": "Nigeria", "KE": "Kenya", "MA": "Morocco",
    "TR": "Turkey", "SA": "Saudi Arabia", "AE": "United Arab Emirates", "IL": "Israel",
    "RU": "Russia", "UA": "Ukraine", "PL": "Poland", "CZ": "Czech Republic",
    "HU": "Hungary", "RO": "Romania", "BG": "Bulgaria", "HR": "Croatia",
    "RS": "Serbia", "SK": "Slovakia", "SI": "Slovenia", "LT": "Lithuania",
    "LV": "Latvia", "EE": "Estonia", "FI": "Finland", "SE": "Sweden",
    "NO": "Norway", "DK": "Denmark", "IS": "Iceland",
}

RETRYABLE_STATUS_CODES = {502, 503, 504}


def country_name(country_code: str) -> str:
    """Map an ISO-2 code to the location name the search API expects."""
    return COUNTRY_NAMES.get(country_code.upper(), country_code)


def extract_domain(url: str) -> str:
    """Normalize a URL or bare host to a lower-case hostname without ``www.``."""
    candidate = url.strip()
    if not candidate.lower().startswith(("http://", "https://")):
        candidate = f"https://{candidate}"
    try:
        host = urlsplit(candidate).hostname or ""
    except ValueError:
        host = candidate.split("://", 1)[-1].split("/", 1)[0]
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def _is_transient(exc: BaseException) -> bool:
    """Timeouts, connection failures and gateway errors are worth retrying."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return False


class FirecrawlProvider(RankLookupProvider):
    """Firecrawl ``/v2/search`` implementation of the rank lookup provider."""

    DEFAULT_BASE_URL = "https://api.firecrawl.dev"

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        result_limit: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        if not api_key:
            raise ProviderError("Firecrawl API key is required")
        self.api_key = api_key
        self.base_url = (base_url or settings.rank_provider_default_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self.max_attempts = max_attempts or settings.provider_max_attempts
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.provider_retry_backoff_seconds
        self.result_limit = result_limit or settings.provider_result_limit
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    async def _make_request(self, path: str, payload: Optional[dict] = None) -> dict:
        """Make HTTP request with retry logic for transient failures.

        POSTs ``payload`` when given, otherwise GETs ``path``.

        Retries (up to ``max_attempts`` calls in total) with exponential backoff for:
        - Timeout and connection errors
        - 502/503/504 gateway responses

        Does NOT retry for other HTTP errors; those are reported as-is.
        """
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff, max=self.retry_backoff * 4),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        ):
            with attempt:
                if payload is None:
                    response = await self.client.get(url, headers=headers, timeout=self.timeout)
                else:
                    response = await self.client.post(url, json=payload, headers=headers, timeout=self.timeout)
                response.raise_for_status()
                return response.json()

    async def _call(self, path: str, payload: Optional[dict] = None) -> dict:
        """_make_request with transport and HTTP failures mapped to ProviderError."""
        try:
            return await self._make_request(path, payload)
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 401:
                raise ProviderError("Firecrawl API rejected the API key (401)")
            elif status_code == 402:
                raise ProviderError("Firecrawl account is out of credits (402)")
            elif status_code == 429:
                raise ProviderError("Firecrawl API rate limit exceeded (429)")
            raise ProviderError(f"Firecrawl API error: HTTP {status_code}")
        except httpx.TimeoutException as e:
            raise ProviderError(f"Firecrawl API timeout after retries: {str(e)}")
        except httpx.HTTPError as e:
            raise ProviderError(f"Firecrawl API connection error: {str(e)}")
        except ValueError as e:
            raise ProviderError(f"Firecrawl API returned invalid JSON: {str(e)}")

    async def lookup(self, request: RankLookupRequest) -> RankLookupResult:
        """
        Search for the keyword and locate the target domain in the results.

        Includes retry logic for transient network failures.
        """
        payload = {
            "query": request.keyword,
            "sources": ["web"],
            "categories": [],
            "limit": self.result_limit,
            "location": country_name(request.country_code),
        }
        logger.info(
            f"Firecrawl: checking '{request.keyword}' for {request.domain} "
            f"in {payload['location']} ({request.device_type})"
        )

        data = await self._call("/v2/search", payload)
        results = self._parse_results(data)
        return self._locate_domain(results, request.domain, data["data"].get("creditsUsed"))

    async def get_credit_usage(self) -> CreditUsage:
        """
        Fetch the account's credit balance from ``/v2/team/credit-usage``.

        Raises:
            ProviderError: If the call fails or the response has no balance
        """
        data = await self._call("/v2/team/credit-usage")

        body = data.get("data") if isinstance(data, dict) and data.get("success") else None
        if not isinstance(body, dict) or not isinstance(body.get("remainingCredits"), int):
            raise ProviderError("Firecrawl credit usage response is missing remainingCredits")

        plan_credits = body.get("planCredits")
        return CreditUsage(
            remaining_credits=body["remainingCredits"],
            plan_credits=plan_credits if isinstance(plan_credits, int) else None,
            billing_period_end=body.get("billingPeriodEnd")
        )

    def _parse_results(self, data) -> List[SearchResult]:
        """Validate the response structure and convert web results."""
        if not isinstance(data, dict) or not data.get("success"):
            raise ProviderError("Firecrawl API request was not successful")

        body = data.get("data")
        if not isinstance(body, dict) or not isinstance(body.get("web"), list):
            raise ProviderError("Firecrawl API response is missing data.web")

        results = []
        for index, item in enumerate(body["web"], start=1):
            if not isinstance(item, dict) or not item.get("url"):
                continue
            position = item.get("position")
            if not isinstance(position, int) or position < 1:
                position = index
            results.append(SearchResult(
                url=item["url"],
                position=position,
                title=item.get("title"),
                description=item.get("description")
            ))
        return results

    def _locate_domain(
        self,
        results: List[SearchResult],
        domain: str,
        credits_used: Optional[int]
    ) -> RankLookupResult:
        """Find the best-ranked result whose host matches the target domain."""
        target = extract_domain(domain)
        matches = [r for r in results if extract_domain(r.url) == target]

        if matches:
            best = min(matches, key=lambda r: r.position)
            logger.info(f"Firecrawl: found {target} at position {best.position}")
            return RankLookupResult(
                position=best.position,
                url=best.url,
                total_results=len(results),
                provider="firecrawl",
                credits_used=credits_used
            )

        logger.info(f"Firecrawl: {target} not found in {len(results)} results")
        return RankLookupResult(
            position=None,
            url=None,
            total_results=len(results),
            provider="firecrawl",
            credits_used=credits_used
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
