"""Pydantic models for properties, search attempts, jobs and outcomes."""

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Final, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Platform(str, Enum):
    """Supported short-term let platforms."""

    AIRBNB = "airbnb"
    SPAREROOM = "spareroom"
    GUMTREE = "gumtree"

    @property
    def display_name(self) -> str:
        """Human-readable display name for this platform."""
        return _PLATFORM_DISPLAY_NAMES[self.value]


_PLATFORM_DISPLAY_NAMES: dict[str, str] = {
    "airbnb": "Airbnb",
    "spareroom": "SpareRoom",
    "gumtree": "Gumtree",
}

PLATFORM_NAMES: Final[dict[str, str]] = {p.value: p.display_name for p in Platform}
assert set(PLATFORM_NAMES) == {p.value for p in Platform}


class StrategyKind(str, Enum):
    """How a search request locates the property."""

    COORDINATE = "coordinate"
    ADDRESS_FALLBACK = "address_fallback"


class ProxyTier(str, Enum):
    """Rendering proxy tier used for a platform."""

    PREMIUM = "premium"
    STEALTH = "stealth"


class MatchMethod(str, Enum):
    """Which detection rule produced a verdict."""

    EXACT = "exact"
    CASE_INSENSITIVE = "case_insensitive"
    SPLIT_PARTS = "split_parts"
    URL_ENCODED = "url_encoded"
    HYPHENATED = "hyphenated"
    NO_SPACES = "no_spaces"
    NONE = "none"


class JobStatus(str, Enum):
    """Lifecycle of a processing job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Outcome(str, Enum):
    """Review state of a (property, platform) pair."""

    PENDING = "pending"
    INVESTIGATE = "investigate"
    NO_MATCH = "no_match"
    ERROR = "error"


REVIEW_DECISIONS: Final[frozenset[Outcome]] = frozenset({Outcome.INVESTIGATE, Outcome.NO_MATCH})


def normalize_postcode(value: str) -> str:
    """Normalize postcode to uppercase with single space."""
    return " ".join(value.upper().split())


class Property(BaseModel):
    """A client-managed property under investigation."""

    model_config = ConfigDict(frozen=True)

    postcode: str = Field(min_length=1)
    address: str = ""
    street_name: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)

    @field_validator("postcode")
    @classmethod
    def _normalize_postcode(cls, v: str) -> str:
        return normalize_postcode(v)

    @model_validator(mode="after")
    def check_coordinates(self) -> Self:
        """Ensure both lat and lon are present or both are absent."""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Both latitude and longitude must be provided, or neither")
        return self

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def compact_postcode(self) -> str:
        """Postcode with all whitespace removed, as used in lookup URLs."""
        return self.postcode.replace(" ", "")


class SearchStrategy(BaseModel):
    """One candidate search request for a property on one platform."""

    model_config = ConfigDict(frozen=True)

    platform: Platform
    kind: StrategyKind
    request_url: str
    ordinal: int = Field(ge=0)


class MatchVerdict(BaseModel):
    """The detector's judgment on one response body."""

    model_config = ConfigDict(frozen=True)

    found: bool
    method: MatchMethod
    confidence: float = Field(ge=0.0, le=1.0)
    blocked: bool = False
    blocking_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    blocking_patterns: tuple[str, ...] = ()
    listing_count: int = Field(default=0, ge=0)


class ScrapeAttempt(BaseModel):
    """One executed fetch for a strategy."""

    model_config = ConfigDict(frozen=True)

    strategy: SearchStrategy
    success: bool
    latency_ms: int = Field(ge=0)
    html_size: int = Field(ge=0)
    cost_units: int = Field(ge=0)
    error: str | None = None
    status_code: int | None = None
    attempted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    verdict: MatchVerdict | None = None

    @property
    def platform(self) -> Platform:
        return self.strategy.platform


class PropertyInput(BaseModel):
    """A postcode/address pair as submitted by a caller."""

    model_config = ConfigDict(frozen=True)

    postcode: str = Field(min_length=1)
    address: str = ""


class JobSubmission(BaseModel):
    """Pipeline input: the properties managed by one contact."""

    model_config = ConfigDict(frozen=True)

    contact_id: str = Field(min_length=1)
    properties: tuple[PropertyInput, ...] = ()


class MatchOutcome(BaseModel):
    """The reviewable decision for one (property, platform) pair."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    job_id: int
    contact_id: str
    property_postcode: str
    address: str = ""
    platform: Platform
    outcome: Outcome = Outcome.PENDING
    suggested_outcome: Outcome
    listing_url: str | None = None
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    match_method: MatchMethod = MatchMethod.NONE
    blocked: bool = False
    attempt_count: int = Field(default=0, ge=0)
    cost_units: int = Field(default=0, ge=0)
    notes: str | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_reviewed(self) -> bool:
        return self.reviewed_at is not None


class PairResult(BaseModel):
    """Everything produced by searching one property on one platform."""

    model_config = ConfigDict(frozen=True)

    property: Property
    platform: Platform
    attempts: tuple[ScrapeAttempt, ...] = ()
    outcome: MatchOutcome


class ProcessingJob(BaseModel):
    """A chunked, resumable matching run over one contact's properties."""

    model_config = ConfigDict(frozen=True)

    id: int
    contact_id: str
    status: JobStatus = JobStatus.PENDING
    postcodes: tuple[Property, ...] = ()
    chunk_size: int = Field(default=15, ge=1)
    total_chunks: int = Field(default=0, ge=0)
    current_chunk: int = Field(default=0, ge=0)
    processed_postcodes: int = Field(default=0, ge=0)
    results: tuple[MatchOutcome, ...] = ()
    version: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_postcodes(self) -> int:
        return len(self.postcodes)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def chunk(self, index: int) -> tuple[Property, ...]:
        """Return the properties belonging to chunk ``index``."""
        start = index * self.chunk_size
        return self.postcodes[start : start + self.chunk_size]


def count_chunks(total: int, chunk_size: int) -> int:
    """Number of chunks needed to cover ``total`` properties."""
    return math.ceil(total / chunk_size) if total else 0


class OutcomeCounts(BaseModel):
    """Per-job aggregate of outcome states consumed by reporting."""

    model_config = ConfigDict(frozen=True)

    investigate: int = 0
    no_match: int = 0
    error: int = 0
    pending: int = 0

    @property
    def total(self) -> int:
        return self.investigate + self.no_match + self.error + self.pending


class JobReport(BaseModel):
    """Outcome counts plus scraping spend for one job."""

    model_config = ConfigDict(frozen=True)

    job_id: int
    contact_id: str
    status: JobStatus
    counts: OutcomeCounts
    total_cost_units: int = 0
    attempt_count: int = 0
    platforms: dict[str, OutcomeCounts] = Field(default_factory=dict)
