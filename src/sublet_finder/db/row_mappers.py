"""Shared row-mapping utilities for database modules."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, TypedDict

import aiosqlite

from sublet_finder.models import (
    JobStatus,
    MatchMethod,
    MatchOutcome,
    Outcome,
    Platform,
    ProcessingJob,
    Property,
    ScrapeAttempt,
)


class AttemptRecord(TypedDict):
    """Shape of dicts returned by list_attempts."""

    id: int
    job_id: int
    chunk_index: int
    postcode: str
    platform: str
    kind: str
    ordinal: int
    request_url: str
    success: bool
    status_code: int | None
    latency_ms: int
    html_size: int
    cost_units: int
    error: str | None
    found: bool | None
    match_method: str | None
    confidence: float | None
    blocked: bool | None
    attempted_at: str


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def properties_to_json(properties: tuple[Property, ...] | list[Property]) -> str:
    """Serialize a job's property list for the postcodes column."""
    return json.dumps([p.model_dump(mode="json", exclude_none=True) for p in properties])


def properties_from_json(raw: str | None) -> tuple[Property, ...]:
    if not raw:
        return ()
    return tuple(Property.model_validate(item) for item in json.loads(raw))


def row_to_job(row: aiosqlite.Row) -> ProcessingJob:
    """Convert a processing_jobs row to a ProcessingJob (without results)."""
    return ProcessingJob(
        id=row["id"],
        contact_id=row["contact_id"],
        status=JobStatus(row["status"]),
        postcodes=properties_from_json(row["postcodes"]),
        chunk_size=row["chunk_size"],
        total_chunks=row["total_chunks"],
        current_chunk=row["current_chunk"],
        processed_postcodes=row["processed_postcodes"],
        version=row["version"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        error_message=row["error_message"],
        created_at=_parse_dt(row["created_at"]) or datetime.now(UTC),
        updated_at=_parse_dt(row["updated_at"]) or datetime.now(UTC),
    )


def row_to_outcome(row: aiosqlite.Row) -> MatchOutcome:
    """Convert a match_outcomes row to a MatchOutcome."""
    return MatchOutcome(
        id=row["id"],
        job_id=row["job_id"],
        contact_id=row["contact_id"],
        property_postcode=row["postcode"],
        address=row["address"] or "",
        platform=Platform(row["platform"]),
        outcome=Outcome(row["outcome"]),
        suggested_outcome=Outcome(row["suggested_outcome"]),
        listing_url=row["matched_listing_url"],
        confidence=row["confidence"],
        match_method=MatchMethod(row["match_method"] or MatchMethod.NONE.value),
        blocked=bool(row["blocked"]),
        attempt_count=row["attempt_count"] or 0,
        cost_units=row["cost_units"] or 0,
        notes=row["notes"],
        reviewed_at=_parse_dt(row["reviewed_at"]),
        reviewed_by=row["reviewed_by"],
        created_at=_parse_dt(row["created_at"]) or datetime.now(UTC),
    )


def row_to_attempt_record(row: aiosqlite.Row) -> AttemptRecord:
    def _opt_bool(value: Any) -> bool | None:
        return None if value is None else bool(value)

    return AttemptRecord(
        id=row["id"],
        job_id=row["job_id"],
        chunk_index=row["chunk_index"],
        postcode=row["postcode"],
        platform=row["platform"],
        kind=row["kind"],
        ordinal=row["ordinal"],
        request_url=row["request_url"],
        success=bool(row["success"]),
        status_code=row["status_code"],
        latency_ms=row["latency_ms"],
        html_size=row["html_size"],
        cost_units=row["cost_units"],
        error=row["error"],
        found=_opt_bool(row["found"]),
        match_method=row["match_method"],
        confidence=row["confidence"],
        blocked=_opt_bool(row["blocked"]),
        attempted_at=row["attempted_at"],
    )


def attempt_params(
    job_id: int, chunk_index: int, postcode: str, attempt: ScrapeAttempt
) -> tuple[Any, ...]:
    """Positional values for an INSERT INTO scrape_attempts."""
    verdict = attempt.verdict
    strategy = attempt.strategy
    return (
        job_id,
        chunk_index,
        postcode,
        strategy.platform.value,
        strategy.kind.value,
        strategy.ordinal,
        strategy.request_url,
        int(attempt.success),
        attempt.status_code,
        attempt.latency_ms,
        attempt.html_size,
        attempt.cost_units,
        attempt.error,
        None if verdict is None else int(verdict.found),
        None if verdict is None else verdict.method.value,
        None if verdict is None else verdict.confidence,
        None if verdict is None else int(verdict.blocked),
        attempt.attempted_at.isoformat(),
    )


def outcome_params(outcome: MatchOutcome, street_name: str | None) -> tuple[Any, ...]:
    """Positional values for the match_outcomes upsert."""
    return (
        outcome.job_id,
        outcome.contact_id,
        outcome.property_postcode,
        outcome.address,
        street_name,
        outcome.platform.value,
        outcome.outcome.value,
        outcome.suggested_outcome.value,
        outcome.listing_url,
        outcome.confidence,
        outcome.match_method.value,
        int(outcome.blocked),
        outcome.attempt_count,
        outcome.cost_units,
        outcome.notes,
        outcome.created_at.isoformat(),
        now_iso(),
    )
