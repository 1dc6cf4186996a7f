"""Build ordered search strategies for a property on one platform."""

from urllib.parse import quote, urlencode

from sublet_finder.models import Platform, Property, SearchStrategy, StrategyKind
from sublet_finder.scrapers.constants import PLATFORM_CONFIG

# ~20m around the point, tight enough to land on the building
BBOX_DELTA = 0.0002
ZOOM = 18

_MAP_EXTRA_PARAMS: dict[Platform, dict[str, str]] = {
    Platform.AIRBNB: {"search_by_map": "true"},
    Platform.SPAREROOM: {"mode": "list"},
    Platform.GUMTREE: {"search_category": "property-to-rent"},
}


def fallback_query(prop: Property) -> str:
    """Free-text query used when no coordinates are available."""
    if prop.address:
        return prop.address
    if prop.street_name:
        return f"{prop.street_name}, {prop.postcode}"
    return prop.postcode


def build_coordinate_url(platform: Platform, latitude: float, longitude: float) -> str:
    """Map search URL bounded to a small box around the coordinates."""
    params = {
        "ne_lat": f"{latitude + BBOX_DELTA:.6f}",
        "ne_lng": f"{longitude + BBOX_DELTA:.6f}",
        "sw_lat": f"{latitude - BBOX_DELTA:.6f}",
        "sw_lng": f"{longitude - BBOX_DELTA:.6f}",
        "zoom": str(ZOOM),
        **_MAP_EXTRA_PARAMS[platform],
    }
    return f"{PLATFORM_CONFIG[platform].map_search_url}?{urlencode(params)}"


def build_address_url(platform: Platform, query: str) -> str:
    """Text search URL for ``query``."""
    return PLATFORM_CONFIG[platform].address_search_url.format(query=quote(query, safe=""))


def build_strategies(prop: Property, platform: Platform) -> list[SearchStrategy]:
    """Return the strategies for ``prop`` on ``platform`` in trial order.

    A coordinate strategy (ordinal 0) comes first when the property has
    coordinates; the address fallback is always last, at ordinal 1.
    """
    strategies: list[SearchStrategy] = []
    if prop.latitude is not None and prop.longitude is not None:
        strategies.append(
            SearchStrategy(
                platform=platform,
                kind=StrategyKind.COORDINATE,
                request_url=build_coordinate_url(platform, prop.latitude, prop.longitude),
                ordinal=0,
            )
        )
    strategies.append(
        SearchStrategy(
            platform=platform,
            kind=StrategyKind.ADDRESS_FALLBACK,
            request_url=build_address_url(platform, fallback_query(prop)),
            ordinal=1,
        )
    )
    return strategies
