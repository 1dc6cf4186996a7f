"""Shared pytest fixtures."""

import gc
import os
import sys
from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any

import httpx
import pytest
import pytest_asyncio
import structlog
from hypothesis import HealthCheck, settings

from sublet_finder.config import Settings
from sublet_finder.db import MatchStorage
from sublet_finder.models import Platform, Property
from sublet_finder.scheduler import JobScheduler
from sublet_finder.scrapers.client import DEFAULT_API_URL, ScrapingClient
from sublet_finder.utils.postcode_lookup import Geocoder

POSTCODES_IO = "https://api.postcodes.io"


def pytest_configure(config: pytest.Config) -> None:
    """Force line-buffered stdout when piped."""
    if hasattr(sys.stdout, "reconfigure") and not sys.stdout.isatty():
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure") and not sys.stderr.isatty():
        sys.stderr.reconfigure(line_buffering=True)


# Hypothesis settings profiles for different environments
settings.register_profile("fast", max_examples=10)
settings.register_profile(
    "ci",
    max_examples=200,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(autouse=True)
def _isolate_settings_from_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent the local .env file from leaking into test Settings instances."""
    monkeypatch.setattr(
        Settings,
        "model_config",
        {**Settings.model_config, "env_file": None},
    )


@pytest.fixture(autouse=True)
def _reset_structlog() -> Generator[None, None, None]:
    """Undo any structlog configuration a test applied."""
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def _cleanup_aiosqlite_threads():
    """Safety net: detect and stop leaked aiosqlite worker threads."""
    yield

    from aiosqlite.core import Connection

    leaked = False
    gc.collect()
    for obj in gc.get_objects():
        if isinstance(obj, Connection) and obj._connection is not None:
            leaked = True
            obj.stop()

    if leaked:
        import warnings

        warnings.warn(
            "Test leaked aiosqlite connection(s); add 'await storage.close()' to fixture teardown",
            ResourceWarning,
            stacklevel=1,
        )


@pytest.fixture
def make_property() -> Callable[..., Property]:
    """Factory for Property instances with sensible defaults."""

    def _make(
        postcode: str = "G11 5AW",
        address: str = "23 Banavie Road, Glasgow, G11 5AW",
        **kwargs: Any,
    ) -> Property:
        return Property(postcode=postcode, address=address, **kwargs)

    return _make


@pytest.fixture
def geocoded_property(make_property: Callable[..., Property]) -> Property:
    return make_property(latitude=55.8725, longitude=-4.3094, street_name="Banavie Road")


@pytest_asyncio.fixture
async def storage() -> AsyncGenerator[MatchStorage, None]:
    s = MatchStorage(":memory:")
    await s.initialize()
    yield s
    await s.close()


def _page_with(text: str) -> str:
    return f"<html><body><div class='results'>{text}</div></body></html>"


@pytest.fixture
def page_with() -> Callable[[str], str]:
    """A minimal rendered results page containing the given text."""
    return _page_with


def _proxy_handler(
    pages: dict[str, str], default: str = ""
) -> Callable[[httpx.Request], httpx.Response]:
    def _handler(request: httpx.Request) -> httpx.Response:
        target = request.url.params.get("url", "")
        for fragment, body in pages.items():
            if fragment in target:
                return httpx.Response(200, text=body)
        return httpx.Response(200, text=default or _page_with("No homes found"))

    return _handler


@pytest.fixture
def proxy_handler() -> Callable[..., Callable[[httpx.Request], httpx.Response]]:
    """respx side effect factory serving pages keyed by a substring of the target URL."""
    return _proxy_handler


@pytest_asyncio.fixture
async def make_scheduler(
    storage: MatchStorage,
) -> AsyncGenerator[Callable[..., JobScheduler], None]:
    """Factory for a scheduler that never sleeps between strategies or chunks."""
    created: list[JobScheduler] = []

    def _make(
        *,
        api_key: str = "test-key",
        platforms: tuple[Platform, ...] = tuple(Platform),
        chunk_size: int = 15,
        max_concurrency: int = 5,
    ) -> JobScheduler:
        scheduler = JobScheduler(
            storage,
            ScrapingClient(api_key, api_url=DEFAULT_API_URL),
            Geocoder(base_url=POSTCODES_IO),
            platforms=platforms,
            chunk_size=chunk_size,
            max_concurrency=max_concurrency,
            strategy_delay=0,
            chunk_pacing=0,
        )
        created.append(scheduler)
        return scheduler

    yield _make
    for scheduler in created:
        await scheduler.close()
