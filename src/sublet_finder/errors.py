"""Exception types raised across the matching pipeline.

Most of these never escape their layer: scraping and geocoding errors are
turned into values at the client seam, and only persistence and review
errors reach callers.
"""


class InputError(Exception):
    """Raised when an uploaded address file cannot be read as text."""


class GeocodeUnavailable(Exception):
    """Raised when a postcode cannot be resolved to coordinates."""


class ScrapeError(Exception):
    """Base class for a failed rendered fetch."""


class ScrapeTransportError(ScrapeError):
    """Raised when the rendering proxy could not be reached or timed out."""


class ScrapeHttpError(ScrapeError):
    """Raised when the rendering proxy answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class JobNotFoundError(LookupError):
    """Raised when a processing job id does not exist."""


class JobPersistenceError(Exception):
    """Raised when job progress or outcomes could not be written."""


class StaleJobError(JobPersistenceError):
    """Raised when a chunk commit lost an optimistic-concurrency race."""


class OutcomeNotFoundError(LookupError):
    """Raised when a match outcome id does not exist."""


class OutcomeAlreadyReviewedError(Exception):
    """Raised when a reviewer tries to change an outcome that is already terminal."""


class InvalidReviewDecisionError(ValueError):
    """Raised when a review decision is not investigate or no_match."""
