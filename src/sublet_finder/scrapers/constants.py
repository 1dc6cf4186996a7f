"""Per-platform search templates and rendering proxy parameters."""

from dataclasses import dataclass

from sublet_finder.models import Platform, ProxyTier


@dataclass(frozen=True)
class PlatformConfig:
    """How one platform is searched and fetched through the rendering proxy."""

    render_wait_ms: int
    proxy_tier: ProxyTier
    cost_units: int
    # Consecutive failures before the circuit opens, and seconds until half-open
    failure_threshold: int
    cooldown_seconds: float
    # Requests allowed through the proxy per UTC day and hour
    daily_request_limit: int
    hourly_request_limit: int
    address_search_url: str
    map_search_url: str
    session_isolation: bool = False
    # Markup markers counted as listing cards (informational only)
    listing_markers: tuple[str, ...] = ()


PLATFORM_CONFIG: dict[Platform, PlatformConfig] = {
    Platform.AIRBNB: PlatformConfig(
        render_wait_ms=4000,
        proxy_tier=ProxyTier.STEALTH,
        cost_units=25,
        failure_threshold=3,
        cooldown_seconds=2 * 60 * 60,
        daily_request_limit=200,
        hourly_request_limit=10,
        address_search_url="https://www.airbnb.co.uk/s/{query}/homes",
        map_search_url="https://www.airbnb.co.uk/s/homes",
        session_isolation=True,
        listing_markers=(
            'data-testid="card-container"',
            'data-testid="listing-card"',
            "lxq01kf",
            "t1jojoys",
        ),
    ),
    Platform.SPAREROOM: PlatformConfig(
        render_wait_ms=3500,
        proxy_tier=ProxyTier.PREMIUM,
        cost_units=10,
        failure_threshold=5,
        cooldown_seconds=60 * 60,
        daily_request_limit=150,
        hourly_request_limit=12,
        address_search_url="https://www.spareroom.co.uk/flatshare/?search={query}&mode=list",
        map_search_url="https://www.spareroom.co.uk/flatshare/",
        listing_markers=("listing-result", "flatshare_id="),
    ),
    Platform.GUMTREE: PlatformConfig(
        render_wait_ms=4000,
        proxy_tier=ProxyTier.STEALTH,
        cost_units=20,
        failure_threshold=7,
        cooldown_seconds=30 * 60,
        daily_request_limit=150,
        hourly_request_limit=15,
        address_search_url=(
            "https://www.gumtree.com/search"
            "?search_location={query}&search_category=property-to-rent"
        ),
        map_search_url="https://www.gumtree.com/search",
        listing_markers=('data-q="search-result"', "listing-link"),
    ),
}
assert set(PLATFORM_CONFIG) == set(Platform)
