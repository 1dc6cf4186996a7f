"""Daily credit budget and per-platform request quotas for the rendering proxy.

Both reset on UTC calendar boundaries (the day for credits and daily
request counts, the hour for hourly counts). A limit of zero disables it.
"""

from collections.abc import Callable
from datetime import UTC, datetime

from sublet_finder.logging import get_logger
from sublet_finder.models import Platform
from sublet_finder.scrapers.constants import PLATFORM_CONFIG

logger = get_logger(__name__)

Clock = Callable[[], datetime]

DEFAULT_DAILY_CREDIT_BUDGET = 800
DEFAULT_STOP_RATIO = 0.9


def _utc_now() -> datetime:
    return datetime.now(UTC)


def day_start(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def hour_start(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


class CreditBudget:
    """Proxy credits allowed per UTC day.

    Spending stops once ``stop_ratio`` of the allowance is used, leaving
    headroom for requests already in flight.
    """

    def __init__(
        self,
        daily_units: int = DEFAULT_DAILY_CREDIT_BUDGET,
        *,
        stop_ratio: float = DEFAULT_STOP_RATIO,
        clock: Clock = _utc_now,
    ) -> None:
        self.daily_units = daily_units
        self.stop_ratio = stop_ratio
        self._clock = clock
        self._day = day_start(clock())
        self._spent = 0

    def _roll(self) -> None:
        today = day_start(self._clock())
        if today != self._day:
            logger.info("credit_budget_reset", spent_yesterday=self._spent)
            self._day = today
            self._spent = 0

    @property
    def spent(self) -> int:
        self._roll()
        return self._spent

    @property
    def remaining(self) -> int:
        return max(self.daily_units - self.spent, 0)

    def exhausted(self) -> bool:
        if self.daily_units <= 0:
            return False
        return self.spent >= self.daily_units * self.stop_ratio

    def charge(self, units: int) -> None:
        self._roll()
        self._spent += units

    def restore(self, spent_today: int) -> None:
        """Raise today's spend to at least ``spent_today``, e.g. after a restart."""
        self._roll()
        self._spent = max(self._spent, spent_today)


class RequestQuota:
    """Hourly and daily request limits for one platform."""

    def __init__(
        self,
        platform: Platform,
        *,
        daily_limit: int,
        hourly_limit: int,
        clock: Clock = _utc_now,
    ) -> None:
        self.platform = platform
        self.daily_limit = daily_limit
        self.hourly_limit = hourly_limit
        self._clock = clock
        now = clock()
        self._day = day_start(now)
        self._hour = hour_start(now)
        self._daily = 0
        self._hourly = 0

    def _roll(self) -> None:
        now = self._clock()
        if day_start(now) != self._day:
            self._day = day_start(now)
            self._daily = 0
        if hour_start(now) != self._hour:
            self._hour = hour_start(now)
            self._hourly = 0

    @property
    def counts(self) -> tuple[int, int]:
        """Requests sent today and this hour."""
        self._roll()
        return self._daily, self._hourly

    def allows(self) -> bool:
        daily, hourly = self.counts
        if self.daily_limit > 0 and daily >= self.daily_limit:
            return False
        return not (self.hourly_limit > 0 and hourly >= self.hourly_limit)

    def record(self) -> None:
        self._roll()
        self._daily += 1
        self._hourly += 1

    def restore(self, daily: int, hourly: int) -> None:
        self._roll()
        self._daily = max(self._daily, daily)
        self._hourly = max(self._hourly, hourly)


def platform_quotas(clock: Clock = _utc_now) -> dict[Platform, RequestQuota]:
    """Request quotas for every platform at its configured limits."""
    return {
        platform: RequestQuota(
            platform,
            daily_limit=cfg.daily_request_limit,
            hourly_limit=cfg.hourly_request_limit,
            clock=clock,
        )
        for platform, cfg in PLATFORM_CONFIG.items()
    }
