"""Per-pair and per-chunk matching: strategies, fetches, detection, outcome."""

import asyncio
from collections.abc import Sequence

from sublet_finder.filters.detection import resolve_pair
from sublet_finder.logging import get_logger
from sublet_finder.models import (
    MatchOutcome,
    Outcome,
    PairResult,
    Platform,
    Property,
    ScrapeAttempt,
)
from sublet_finder.scrapers.client import ScrapingClient
from sublet_finder.scrapers.listing_links import first_listing_url
from sublet_finder.scrapers.strategies import build_strategies
from sublet_finder.utils.postcode_lookup import Geocoder

logger = get_logger(__name__)


def _notes_for(attempts: Sequence[ScrapeAttempt], suggested: Outcome) -> str | None:
    notes: list[str] = []
    blocked = sorted(
        {p for a in attempts if a.verdict and a.verdict.blocked for p in a.verdict.blocking_patterns}
    )
    if blocked:
        notes.append(f"blocked: {', '.join(blocked)}")
    if suggested is Outcome.ERROR:
        errors = [a.error for a in attempts if a.error]
        if errors:
            notes.append(f"all strategies failed: {'; '.join(errors)}")
    return " | ".join(notes) or None


async def search_pair(
    prop: Property,
    platform: Platform,
    client: ScrapingClient,
    *,
    job_id: int,
    contact_id: str,
    strategy_delay: float = 2.0,
) -> PairResult:
    """Try each strategy for one (property, platform) pair in ordinal order.

    Stops at the first attempt whose page contains the postcode. Strategy
    failures are recorded on their attempts and never abort the pair.
    """
    attempts: list[ScrapeAttempt] = []
    found_body = ""
    for i, strategy in enumerate(build_strategies(prop, platform)):
        if i > 0 and strategy_delay > 0:
            await asyncio.sleep(strategy_delay)
        attempt, body = await client.execute(strategy, prop.postcode)
        attempts.append(attempt)
        if attempt.verdict is not None and attempt.verdict.found:
            found_body = body
            break

    resolution = resolve_pair(attempts)
    suggested = resolution.suggested_outcome

    listing_url: str | None = None
    if resolution.attempt is not None and suggested is not Outcome.ERROR:
        listing_url = resolution.attempt.strategy.request_url
        if suggested is Outcome.INVESTIGATE:
            listing_url = first_listing_url(found_body, platform) or listing_url

    outcome = MatchOutcome(
        job_id=job_id,
        contact_id=contact_id,
        property_postcode=prop.postcode,
        address=prop.address,
        platform=platform,
        outcome=Outcome.ERROR if suggested is Outcome.ERROR else Outcome.PENDING,
        suggested_outcome=suggested,
        listing_url=listing_url,
        confidence=resolution.confidence,
        match_method=resolution.method,
        blocked=any(a.verdict is not None and a.verdict.blocked for a in attempts),
        attempt_count=len(attempts),
        cost_units=sum(a.cost_units for a in attempts),
        notes=_notes_for(attempts, suggested),
    )
    logger.info(
        "pair_searched",
        postcode=prop.postcode,
        platform=platform.value,
        suggested_outcome=suggested.value,
        method=resolution.method.value,
        attempts=len(attempts),
    )
    return PairResult(property=prop, platform=platform, attempts=tuple(attempts), outcome=outcome)


async def process_chunk(
    properties: Sequence[Property],
    platforms: Sequence[Platform],
    *,
    client: ScrapingClient,
    geocoder: Geocoder,
    job_id: int,
    contact_id: str,
    max_concurrency: int = 5,
    strategy_delay: float = 2.0,
) -> tuple[list[Property], list[PairResult]]:
    """Geocode a chunk and search every (property, platform) pair.

    Pairs run concurrently under a semaphore; results come back in
    property order then platform order.

    Returns:
        The geocoded properties and one PairResult per pair.
    """
    geocoded = await geocoder.geocode_many(list(properties))
    semaphore = asyncio.Semaphore(max_concurrency)

    async def _bounded(prop: Property, platform: Platform) -> PairResult:
        async with semaphore:
            return await search_pair(
                prop,
                platform,
                client,
                job_id=job_id,
                contact_id=contact_id,
                strategy_delay=strategy_delay,
            )

    results = await asyncio.gather(
        *(_bounded(prop, platform) for prop in geocoded for platform in platforms)
    )
    return geocoded, list(results)
