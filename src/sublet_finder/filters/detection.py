"""Pure detection functions for spotting a postcode in a rendered page."""

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Final
from urllib.parse import quote

from sublet_finder.models import MatchMethod, MatchVerdict, Outcome, Platform, ScrapeAttempt
from sublet_finder.scrapers.constants import PLATFORM_CONFIG

DEFAULT_PREVIEW_CHARS: Final = 2000

BLOCKING_PATTERNS: Final[tuple[str, ...]] = (
    "captcha",
    "unusual traffic",
    "access denied",
    "robot",
    "challenge-platform",
    "blocked",
    "verify you are a human",
)

# Generic markers counted on every platform in addition to the platform's own
_GENERIC_LISTING_MARKERS: Final[tuple[str, ...]] = ("listing", "property")


def _exact(body: str, postcode: str) -> bool:
    return postcode in body


def _case_insensitive(body: str, postcode: str) -> bool:
    return postcode.lower() in body.lower()


def _split_parts(body: str, postcode: str) -> bool:
    parts = postcode.split(" ")
    return len(parts) == 2 and all(parts) and parts[0] in body and parts[1] in body


def _url_encoded(body: str, postcode: str) -> bool:
    return quote(postcode, safe="") in body


def _hyphenated(body: str, postcode: str) -> bool:
    return re.sub(r"\s+", "-", postcode) in body


def _no_spaces(body: str, postcode: str) -> bool:
    return re.sub(r"\s+", "", postcode) in body


DetectionRule = tuple[MatchMethod, float, Callable[[str, str], bool]]

# Evaluated in order; the first rule that holds decides the verdict.
RULES: Final[tuple[DetectionRule, ...]] = (
    (MatchMethod.EXACT, 1.0, _exact),
    (MatchMethod.CASE_INSENSITIVE, 0.9, _case_insensitive),
    (MatchMethod.SPLIT_PARTS, 0.8, _split_parts),
    (MatchMethod.URL_ENCODED, 0.7, _url_encoded),
    (MatchMethod.HYPHENATED, 0.7, _hyphenated),
    (MatchMethod.NO_SPACES, 0.6, _no_spaces),
)


def detect_postcode(body: str, postcode: str) -> tuple[MatchMethod, float]:
    """Return the first detection rule that finds ``postcode`` in ``body``."""
    if not postcode:
        return MatchMethod.NONE, 0.0
    for method, confidence, rule in RULES:
        if rule(body, postcode):
            return method, confidence
    return MatchMethod.NONE, 0.0


def detect_blocking(body: str) -> tuple[bool, float, tuple[str, ...]]:
    """Check for anti-bot pages.

    Returns:
        Tuple of (blocked, fraction of patterns matched, matched patterns).
    """
    lowered = body.lower()
    matched = tuple(p for p in BLOCKING_PATTERNS if p in lowered)
    return bool(matched), len(matched) / len(BLOCKING_PATTERNS), matched


def count_listings(body: str, platform: Platform) -> int:
    """Count occurrences of listing card markers, case-insensitively."""
    lowered = body.lower()
    markers = PLATFORM_CONFIG[platform].listing_markers + _GENERIC_LISTING_MARKERS
    return sum(lowered.count(marker.lower()) for marker in markers)


def analyze(
    body: str,
    postcode: str,
    platform: Platform,
    *,
    preview_chars: int = DEFAULT_PREVIEW_CHARS,
) -> MatchVerdict:
    """Score the preview of a response body for ``postcode``."""
    preview = body[:preview_chars]
    method, confidence = detect_postcode(preview, postcode)
    blocked, blocking_confidence, patterns = detect_blocking(preview)
    return MatchVerdict(
        found=method is not MatchMethod.NONE,
        method=method,
        confidence=confidence,
        blocked=blocked,
        blocking_confidence=blocking_confidence,
        blocking_patterns=patterns,
        listing_count=count_listings(preview, platform),
    )


@dataclass(frozen=True)
class PairResolution:
    """The decisive attempt for one (property, platform) pair."""

    suggested_outcome: Outcome
    attempt: ScrapeAttempt | None
    verdict: MatchVerdict | None

    @property
    def confidence(self) -> float | None:
        return self.verdict.confidence if self.verdict else None

    @property
    def method(self) -> MatchMethod:
        return self.verdict.method if self.verdict else MatchMethod.NONE


def resolve_pair(attempts: Sequence[ScrapeAttempt]) -> PairResolution:
    """Pick the winning attempt among a pair's attempts.

    The first found attempt in ordinal order wins. Otherwise the highest
    confidence successful attempt is kept, with ties going to the earliest
    ordinal. If every attempt failed the pair is an error.
    """
    ordered = sorted(attempts, key=lambda a: a.strategy.ordinal)
    for attempt in ordered:
        if attempt.success and attempt.verdict is not None and attempt.verdict.found:
            return PairResolution(Outcome.INVESTIGATE, attempt, attempt.verdict)

    best: ScrapeAttempt | None = None
    for attempt in ordered:
        if not attempt.success or attempt.verdict is None:
            continue
        if best is None or attempt.verdict.confidence > best.verdict.confidence:  # type: ignore[union-attr]
            best = attempt

    if best is None:
        last = ordered[-1] if ordered else None
        return PairResolution(Outcome.ERROR, last, None)
    return PairResolution(Outcome.NO_MATCH, best, best.verdict)
