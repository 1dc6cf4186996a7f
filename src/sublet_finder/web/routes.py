"""JSON API routes for jobs, chunk triggers and the review ledger."""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from sublet_finder.db import MatchStorage
from sublet_finder.errors import (
    InvalidReviewDecisionError,
    JobNotFoundError,
    OutcomeAlreadyReviewedError,
    OutcomeNotFoundError,
    StaleJobError,
)
from sublet_finder.logging import get_logger
from sublet_finder.models import JobSubmission, MatchOutcome, Outcome, Platform
from sublet_finder.scheduler import CANCELLED_MESSAGE, JobScheduler

logger = get_logger(__name__)

router = APIRouter()


class ReviewRequest(BaseModel):
    """Reviewer decision for one outcome."""

    decision: str
    reviewed_by: str = Field(min_length=1)
    notes: str | None = None


class CancelRequest(BaseModel):
    reason: str = CANCELLED_MESSAGE


def _get_storage(request: Request) -> MatchStorage:
    return request.app.state.storage  # type: ignore[no-any-return]


def _get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler  # type: ignore[no-any-return]


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _outcomes_payload(outcomes: list[MatchOutcome]) -> list[dict[str, Any]]:
    return [o.model_dump(mode="json") for o in outcomes]


def _parse_filters(
    platform: str | None, outcome: str | None
) -> tuple[Platform | None, Outcome | None] | JSONResponse:
    try:
        return (
            Platform(platform) if platform else None,
            Outcome(outcome) if outcome else None,
        )
    except ValueError as e:
        return _error(str(e), 422)


@router.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse({"status": "ok"})


@router.post("/jobs")
async def submit_job(request: Request, submission: JobSubmission) -> JSONResponse:
    """Create a pending job from postcode/address pairs."""
    job = await _get_scheduler(request).submit(submission)
    return JSONResponse(job.model_dump(mode="json"), status_code=201)


@router.post("/jobs/upload")
async def upload_job(request: Request, contact_id: str) -> JSONResponse:
    """Create a pending job from a raw CSV-like upload body."""
    if not contact_id.strip():
        return _error("contact_id is required", 422)
    content = await request.body()
    job = await _get_scheduler(request).submit_upload(contact_id, content)
    return JSONResponse(job.model_dump(mode="json"), status_code=201)


@router.get("/jobs/{job_id}")
async def get_job(request: Request, job_id: int) -> JSONResponse:
    try:
        job = await _get_storage(request).get_job(job_id)
    except JobNotFoundError as e:
        return _error(str(e), 404)
    return JSONResponse(job.model_dump(mode="json"))


@router.post("/jobs/{job_id}/advance")
async def advance_job(
    request: Request, job_id: int, expected_chunk: int | None = None
) -> JSONResponse:
    """Process the job's next chunk (the external chunk trigger)."""
    try:
        job = await _get_scheduler(request).advance(job_id, expected_chunk=expected_chunk)
    except JobNotFoundError as e:
        return _error(str(e), 404)
    except StaleJobError as e:
        return _error(str(e), 409)
    return JSONResponse(job.model_dump(mode="json"))


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(
    request: Request, job_id: int, body: CancelRequest | None = None
) -> JSONResponse:
    reason = body.reason if body else CANCELLED_MESSAGE
    try:
        job = await _get_scheduler(request).cancel(job_id, reason)
    except JobNotFoundError as e:
        return _error(str(e), 404)
    return JSONResponse(job.model_dump(mode="json"))


@router.get("/jobs/{job_id}/outcomes")
async def job_outcomes(
    request: Request,
    job_id: int,
    platform: str | None = None,
    outcome: str | None = None,
) -> JSONResponse:
    storage = _get_storage(request)
    try:
        await storage.get_job(job_id, with_results=False)
    except JobNotFoundError as e:
        return _error(str(e), 404)
    parsed = _parse_filters(platform, outcome)
    if isinstance(parsed, JSONResponse):
        return parsed
    outcomes = await storage.list_outcomes(job_id=job_id, platform=parsed[0], outcome=parsed[1])
    return JSONResponse(_outcomes_payload(outcomes))


@router.get("/contacts/{contact_id}/outcomes")
async def contact_outcomes(
    request: Request,
    contact_id: str,
    platform: str | None = None,
    outcome: str | None = None,
) -> JSONResponse:
    parsed = _parse_filters(platform, outcome)
    if isinstance(parsed, JSONResponse):
        return parsed
    outcomes = await _get_storage(request).list_outcomes(
        contact_id=contact_id, platform=parsed[0], outcome=parsed[1]
    )
    return JSONResponse(_outcomes_payload(outcomes))


@router.post("/outcomes/{outcome_id}/review")
async def review_outcome(request: Request, outcome_id: int, review: ReviewRequest) -> JSONResponse:
    """Move a pending outcome to investigate or no_match."""
    try:
        outcome = await _get_storage(request).review_outcome(
            outcome_id,
            review.decision,
            reviewed_by=review.reviewed_by,
            notes=review.notes,
        )
    except OutcomeNotFoundError as e:
        return _error(str(e), 404)
    except OutcomeAlreadyReviewedError as e:
        return _error(str(e), 409)
    except InvalidReviewDecisionError as e:
        return _error(str(e), 422)
    return JSONResponse(outcome.model_dump(mode="json"))


@router.get("/jobs/{job_id}/report")
async def job_report(request: Request, job_id: int) -> JSONResponse:
    """Aggregate outcome counts and scraping spend for a job."""
    try:
        report = await _get_storage(request).job_report(job_id)
    except JobNotFoundError as e:
        return _error(str(e), 404)
    return JSONResponse(report.model_dump(mode="json"))
