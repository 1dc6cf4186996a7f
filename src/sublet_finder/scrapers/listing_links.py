"""Extract the first listing link from a rendered search results page."""

import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from sublet_finder.models import Platform

_BASE_URLS: dict[Platform, str] = {
    Platform.AIRBNB: "https://www.airbnb.co.uk",
    Platform.SPAREROOM: "https://www.spareroom.co.uk",
    Platform.GUMTREE: "https://www.gumtree.com",
}

LISTING_HREF_PATTERNS: dict[Platform, re.Pattern[str]] = {
    Platform.AIRBNB: re.compile(r"/rooms/(\d+)"),
    Platform.SPAREROOM: re.compile(r"flatshare_id=(\d+)"),
    Platform.GUMTREE: re.compile(r"/(?:ad|p/[^\"'\s]+)/(\d+)"),
}


def extract_listing_id(href: str, platform: Platform) -> str | None:
    """Return the platform's listing id embedded in ``href``, if any."""
    match = LISTING_HREF_PATTERNS[platform].search(href)
    return match.group(1) if match else None


def first_listing_url(html: str, platform: Platform) -> str | None:
    """Return the absolute URL of the first listing link in ``html``."""
    if not html:
        return None
    soup = BeautifulSoup(html, "html.parser")
    for link in soup.find_all("a", href=True):
        href = str(link["href"])
        if extract_listing_id(href, platform):
            return urljoin(_BASE_URLS[platform], href)
    return None
