"""Rendering proxy client that executes search strategies."""

import secrets
import time
from datetime import UTC, datetime

import httpx
from pydantic import SecretStr

from sublet_finder.errors import ScrapeError, ScrapeHttpError, ScrapeTransportError
from sublet_finder.filters.detection import DEFAULT_PREVIEW_CHARS, analyze
from sublet_finder.logging import get_logger
from sublet_finder.models import Platform, ProxyTier, ScrapeAttempt, SearchStrategy
from sublet_finder.scrapers.constants import PLATFORM_CONFIG
from sublet_finder.scrapers.quota import CreditBudget, RequestQuota

logger = get_logger(__name__)

DEFAULT_API_URL = "https://app.scrapingbee.com/api/v1/"

ERROR_CIRCUIT_OPEN = "circuit_open"
ERROR_API_KEY_MISSING = "scraping_api_key_missing"
ERROR_RATE_LIMITED = "rate_limited"
ERROR_BUDGET_EXHAUSTED = "budget_exhausted"

# Longest error body kept on a failed attempt
_ERROR_DETAIL_CHARS = 200


class CircuitBreaker:
    """Consecutive-failure breaker for one platform."""

    def __init__(self, platform: Platform, threshold: int, cooldown_seconds: float) -> None:
        self.platform = platform
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self.consecutive_failures = 0
        self._open = False
        self._opened_at: float | None = None

    def record_failure(self) -> None:
        """Record a consecutive failure and open circuit if threshold reached."""
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.threshold and not self._open:
            self._open = True
            self._opened_at = time.monotonic()
            logger.warning(
                "scrape_circuit_breaker_open",
                platform=self.platform.value,
                consecutive_failures=self.consecutive_failures,
            )
        elif self._open:
            # A failed half-open probe restarts the cooldown
            self._opened_at = time.monotonic()

    def record_success(self) -> None:
        """Reset failure counter and close circuit if it was open."""
        if self._open:
            logger.info("scrape_circuit_breaker_closed", platform=self.platform.value)
        self.consecutive_failures = 0
        self._open = False
        self._opened_at = None

    def is_open(self) -> bool:
        """Check if the circuit is open, allowing a probe once the cooldown has passed."""
        if not self._open:
            return False
        elapsed = time.monotonic() - self._opened_at  # type: ignore[operator]
        if elapsed >= self.cooldown_seconds:
            logger.info(
                "scrape_circuit_breaker_half_open",
                platform=self.platform.value,
                cooldown_seconds=self.cooldown_seconds,
                elapsed_seconds=round(elapsed, 1),
            )
            return False
        return True


class ScrapingClient:
    """Executes one strategy at a time through a ScrapingBee-compatible proxy.

    Failures never raise to the caller. Transport errors and non-2xx
    responses produce a costed failed ScrapeAttempt; a missing API key, an
    open circuit, a spent request quota or an exhausted credit budget
    produce one that costs nothing because no request is sent.
    """

    def __init__(
        self,
        api_key: SecretStr | str = "",
        *,
        api_url: str = DEFAULT_API_URL,
        country_code: str = "gb",
        timeout: float = 90.0,
        preview_chars: int = DEFAULT_PREVIEW_CHARS,
        client: httpx.AsyncClient | None = None,
        budget: CreditBudget | None = None,
        quotas: dict[Platform, RequestQuota] | None = None,
    ) -> None:
        """Initialize the scraping client.

        Args:
            api_key: Rendering proxy API key. Without one no request is sent.
            api_url: Proxy endpoint.
            country_code: Proxy exit country.
            timeout: Seconds allowed per rendered fetch.
            preview_chars: Characters of each body inspected by the detector.
            client: Optional shared httpx client (closed by its owner).
            budget: Daily credit budget; unlimited when omitted.
            quotas: Per-platform request quotas; platforms without one are unlimited.
        """
        self._api_key = api_key if isinstance(api_key, SecretStr) else SecretStr(api_key)
        self._api_url = api_url
        self._country_code = country_code
        self._timeout = timeout
        self._preview_chars = preview_chars
        self._client = client
        self._owns_client = client is None
        self.budget = budget
        self._quotas = quotas or {}
        self._breakers = {
            platform: CircuitBreaker(platform, cfg.failure_threshold, cfg.cooldown_seconds)
            for platform, cfg in PLATFORM_CONFIG.items()
        }

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key.get_secret_value())

    def breaker(self, platform: Platform) -> CircuitBreaker:
        return self._breakers[platform]

    def quota(self, platform: Platform) -> RequestQuota | None:
        return self._quotas.get(platform)

    @property
    def budget_exhausted(self) -> bool:
        return self.budget is not None and self.budget.exhausted()

    def restore_usage(
        self,
        spent_today: int,
        requests_today: dict[Platform, int],
        requests_this_hour: dict[Platform, int],
    ) -> None:
        """Carry usage recorded before this process started into the budget and quotas."""
        if self.budget is not None:
            self.budget.restore(spent_today)
        for platform, quota in self._quotas.items():
            quota.restore(
                requests_today.get(platform, 0), requests_this_hour.get(platform, 0)
            )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def build_params(self, strategy: SearchStrategy) -> dict[str, str]:
        """Proxy query parameters for one strategy."""
        cfg = PLATFORM_CONFIG[strategy.platform]
        params = {
            "api_key": self._api_key.get_secret_value(),
            "url": strategy.request_url,
            "render_js": "true",
            "wait": str(cfg.render_wait_ms),
            "country_code": self._country_code,
            "block_ads": "true",
        }
        if cfg.proxy_tier is ProxyTier.STEALTH:
            params["stealth_proxy"] = "true"
        else:
            params["premium_proxy"] = "true"
        if cfg.session_isolation:
            params["session_id"] = str(secrets.randbelow(10_000_000))
        return params

    async def _fetch(self, strategy: SearchStrategy) -> httpx.Response:
        try:
            response = await self._get_client().get(
                self._api_url, params=self.build_params(strategy)
            )
        except httpx.HTTPError as e:
            raise ScrapeTransportError(f"{type(e).__name__}: {e}") from e
        if not response.is_success:
            raise ScrapeHttpError(response.status_code, response.text[:_ERROR_DETAIL_CHARS])
        return response

    def _failed(
        self,
        strategy: SearchStrategy,
        error: str,
        *,
        latency_ms: int = 0,
        cost_units: int = 0,
        status_code: int | None = None,
        attempted_at: datetime | None = None,
    ) -> ScrapeAttempt:
        return ScrapeAttempt(
            strategy=strategy,
            success=False,
            latency_ms=latency_ms,
            html_size=0,
            cost_units=cost_units,
            error=error,
            status_code=status_code,
            attempted_at=attempted_at or datetime.now(UTC),
        )

    async def execute(self, strategy: SearchStrategy, postcode: str) -> tuple[ScrapeAttempt, str]:
        """Fetch one strategy and score the page for ``postcode``.

        Returns:
            The attempt (with its verdict when the fetch succeeded) and the
            response body, which is empty for failed fetches.
        """
        platform = strategy.platform
        breaker = self._breakers[platform]

        if not self.has_api_key:
            logger.warning("scrape_skipped_no_api_key", platform=platform.value)
            return self._failed(strategy, ERROR_API_KEY_MISSING), ""

        if breaker.is_open():
            logger.info("scrape_skipped_circuit_open", platform=platform.value)
            return self._failed(strategy, ERROR_CIRCUIT_OPEN), ""

        cost = PLATFORM_CONFIG[platform].cost_units
        quota = self._quotas.get(platform)
        if quota is not None and not quota.allows():
            daily, hourly = quota.counts
            logger.warning(
                "scrape_skipped_rate_limited",
                platform=platform.value,
                requests_today=daily,
                requests_this_hour=hourly,
            )
            return self._failed(strategy, ERROR_RATE_LIMITED), ""

        if self.budget is not None and self.budget.exhausted():
            logger.warning(
                "scrape_skipped_budget_exhausted",
                platform=platform.value,
                spent=self.budget.spent,
                daily_units=self.budget.daily_units,
            )
            return self._failed(strategy, ERROR_BUDGET_EXHAUSTED), ""

        # Usage is counted before the request is sent
        if quota is not None:
            quota.record()
        if self.budget is not None:
            self.budget.charge(cost)
        attempted_at = datetime.now(UTC)
        start = time.perf_counter()
        try:
            response = await self._fetch(strategy)
        except ScrapeError as e:
            latency_ms = int((time.perf_counter() - start) * 1000)
            breaker.record_failure()
            logger.warning(
                "scrape_failed",
                platform=platform.value,
                ordinal=strategy.ordinal,
                error=str(e),
                latency_ms=latency_ms,
            )
            return (
                self._failed(
                    strategy,
                    str(e),
                    latency_ms=latency_ms,
                    cost_units=cost,
                    status_code=e.status_code if isinstance(e, ScrapeHttpError) else None,
                    attempted_at=attempted_at,
                ),
                "",
            )

        latency_ms = int((time.perf_counter() - start) * 1000)
        body = response.text
        verdict = analyze(body, postcode, platform, preview_chars=self._preview_chars)
        if verdict.blocked:
            breaker.record_failure()
            logger.warning(
                "scrape_blocked",
                platform=platform.value,
                patterns=list(verdict.blocking_patterns),
            )
        else:
            breaker.record_success()

        logger.debug(
            "scrape_complete",
            platform=platform.value,
            ordinal=strategy.ordinal,
            found=verdict.found,
            method=verdict.method.value,
            html_size=len(body),
            latency_ms=latency_ms,
        )
        attempt = ScrapeAttempt(
            strategy=strategy,
            success=True,
            latency_ms=latency_ms,
            html_size=len(body),
            cost_units=cost,
            status_code=response.status_code,
            attempted_at=attempted_at,
            verdict=verdict,
        )
        return attempt, body

    async def close(self) -> None:
        """Close the HTTP client if this scraping client created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
