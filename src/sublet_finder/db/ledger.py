"""Review ledger: per-property-per-platform outcomes and reviewer transitions."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any

import aiosqlite

from sublet_finder.db.row_mappers import (
    AttemptRecord,
    now_iso,
    row_to_attempt_record,
    row_to_outcome,
)
from sublet_finder.errors import (
    InvalidReviewDecisionError,
    JobNotFoundError,
    OutcomeAlreadyReviewedError,
    OutcomeNotFoundError,
)
from sublet_finder.logging import get_logger
from sublet_finder.models import (
    REVIEW_DECISIONS,
    JobReport,
    JobStatus,
    MatchOutcome,
    Outcome,
    OutcomeCounts,
    Platform,
)

logger = get_logger(__name__)


def _counts_from_rows(rows: list[aiosqlite.Row]) -> OutcomeCounts:
    totals = {row["outcome"]: row["n"] for row in rows}
    return OutcomeCounts(
        investigate=totals.get(Outcome.INVESTIGATE.value, 0),
        no_match=totals.get(Outcome.NO_MATCH.value, 0),
        error=totals.get(Outcome.ERROR.value, 0),
        pending=totals.get(Outcome.PENDING.value, 0),
    )


class ReviewLedger:
    """Read and review operations over match outcomes.

    Outcomes are written by the job repository's chunk commit; the ledger
    only reads them and applies reviewer decisions.
    """

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
    ) -> None:
        self._get_connection = get_connection

    async def list_outcomes(
        self,
        *,
        job_id: int | None = None,
        contact_id: str | None = None,
        platform: Platform | None = None,
        outcome: Outcome | None = None,
    ) -> list[MatchOutcome]:
        """List outcomes ordered by postcode then platform."""
        conn = await self._get_connection()
        clauses: list[str] = []
        params: list[Any] = []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if contact_id is not None:
            clauses.append("contact_id = ?")
            params.append(contact_id)
        if platform is not None:
            clauses.append("platform = ?")
            params.append(platform.value)
        if outcome is not None:
            clauses.append("outcome = ?")
            params.append(outcome.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await conn.execute(
            f"SELECT * FROM match_outcomes {where} ORDER BY postcode, platform, job_id",
            params,
        )
        return [row_to_outcome(row) for row in await cursor.fetchall()]

    async def get_outcome(self, outcome_id: int) -> MatchOutcome:
        """Load one outcome.

        Raises:
            OutcomeNotFoundError: If no outcome has this id.
        """
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM match_outcomes WHERE id = ?", (outcome_id,))
        row = await cursor.fetchone()
        if row is None:
            raise OutcomeNotFoundError(f"Outcome {outcome_id} not found")
        return row_to_outcome(row)

    async def review_outcome(
        self,
        outcome_id: int,
        decision: Outcome | str,
        *,
        reviewed_by: str,
        notes: str | None = None,
    ) -> MatchOutcome:
        """Apply a reviewer decision to a pending outcome.

        The conditional update lets the first reviewer win; the row is
        terminal afterwards.

        Raises:
            InvalidReviewDecisionError: If ``decision`` is not investigate or no_match.
            OutcomeNotFoundError: If no outcome has this id.
            OutcomeAlreadyReviewedError: If the outcome is no longer pending.
        """
        try:
            target = Outcome(decision)
        except ValueError:
            target = None
        if target not in REVIEW_DECISIONS:
            raise InvalidReviewDecisionError(
                f"Review decision must be investigate or no_match, got {decision!r}"
            )
        assert target is not None

        conn = await self._get_connection()
        now = now_iso()
        cursor = await conn.execute(
            """
            UPDATE match_outcomes
            SET outcome = ?, reviewed_at = ?, reviewed_by = ?,
                notes = COALESCE(?, notes), updated_at = ?
            WHERE id = ? AND outcome = 'pending'
            """,
            (target.value, now, reviewed_by, notes, now, outcome_id),
        )
        await conn.commit()

        if cursor.rowcount == 0:
            current = await self.get_outcome(outcome_id)
            raise OutcomeAlreadyReviewedError(
                f"Outcome {outcome_id} is {current.outcome.value}, not pending"
            )

        logger.info(
            "outcome_reviewed",
            outcome_id=outcome_id,
            decision=target.value,
            reviewed_by=reviewed_by,
        )
        return await self.get_outcome(outcome_id)

    async def outcome_counts(self, job_id: int) -> OutcomeCounts:
        """Aggregate outcome states for one job."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT outcome, COUNT(*) AS n FROM match_outcomes
            WHERE job_id = ? GROUP BY outcome
            """,
            (job_id,),
        )
        return _counts_from_rows(list(await cursor.fetchall()))

    async def job_report(self, job_id: int) -> JobReport:
        """Outcome counts, per-platform counts and scraping spend for one job.

        Raises:
            JobNotFoundError: If no job has this id.
        """
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT contact_id, status FROM processing_jobs WHERE id = ?", (job_id,)
        )
        job_row = await cursor.fetchone()
        if job_row is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        cursor = await conn.execute(
            """
            SELECT platform, outcome, COUNT(*) AS n FROM match_outcomes
            WHERE job_id = ? GROUP BY platform, outcome
            """,
            (job_id,),
        )
        by_platform: dict[str, list[aiosqlite.Row]] = {}
        for row in await cursor.fetchall():
            by_platform.setdefault(row["platform"], []).append(row)

        cursor = await conn.execute(
            """
            SELECT COALESCE(SUM(cost_units), 0) AS cost, COUNT(*) AS attempts
            FROM scrape_attempts WHERE job_id = ?
            """,
            (job_id,),
        )
        spend = await cursor.fetchone()
        assert spend is not None

        return JobReport(
            job_id=job_id,
            contact_id=job_row["contact_id"],
            status=JobStatus(job_row["status"]),
            counts=await self.outcome_counts(job_id),
            total_cost_units=spend["cost"],
            attempt_count=spend["attempts"],
            platforms={name: _counts_from_rows(rows) for name, rows in sorted(by_platform.items())},
        )

    async def list_attempts(self, job_id: int, postcode: str | None = None) -> list[AttemptRecord]:
        """Trial history for a job, optionally for one postcode."""
        conn = await self._get_connection()
        params: list[Any] = [job_id]
        postcode_clause = ""
        if postcode is not None:
            postcode_clause = "AND postcode = ?"
            params.append(" ".join(postcode.upper().split()))
        cursor = await conn.execute(
            f"""
            SELECT * FROM scrape_attempts
            WHERE job_id = ? {postcode_clause}
            ORDER BY chunk_index, postcode, platform, ordinal, id
            """,
            params,
        )
        return [row_to_attempt_record(row) for row in await cursor.fetchall()]

    async def usage_since(self, since: datetime) -> tuple[int, dict[Platform, int]]:
        """Proxy credits spent and requests sent per platform since ``since``.

        Attempts that cost nothing never reached the proxy and are not counted.
        """
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT platform, COUNT(*) AS requests, SUM(cost_units) AS units
            FROM scrape_attempts
            WHERE attempted_at >= ? AND cost_units > 0
            GROUP BY platform
            """,
            (since.isoformat(),),
        )
        rows = await cursor.fetchall()
        spent = sum(row["units"] for row in rows)
        return spent, {Platform(row["platform"]): row["requests"] for row in rows}
