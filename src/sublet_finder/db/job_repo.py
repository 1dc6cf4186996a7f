"""Job repository: processing job lifecycle and transactional chunk commits."""

from __future__ import annotations

from collections.abc import Callable, Coroutine, Sequence
from typing import Any

import aiosqlite

from sublet_finder.db.row_mappers import (
    attempt_params,
    now_iso,
    outcome_params,
    properties_to_json,
    row_to_job,
)
from sublet_finder.errors import JobNotFoundError, JobPersistenceError, StaleJobError
from sublet_finder.logging import get_logger
from sublet_finder.models import JobStatus, PairResult, ProcessingJob, Property, count_chunks

logger = get_logger(__name__)

_RUNNABLE = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)

_INSERT_ATTEMPT = """
    INSERT INTO scrape_attempts (
        job_id, chunk_index, postcode, platform, kind, ordinal, request_url,
        success, status_code, latency_ms, html_size, cost_units, error,
        found, match_method, confidence, blocked, attempted_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

# Reviewed rows are terminal: a re-run only refreshes pending or error evidence.
_UPSERT_OUTCOME = """
    INSERT INTO match_outcomes (
        job_id, contact_id, postcode, address, street_name, platform,
        outcome, suggested_outcome, matched_listing_url, confidence,
        match_method, blocked, attempt_count, cost_units, notes,
        created_at, updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(job_id, postcode, platform) DO UPDATE SET
        address = excluded.address,
        street_name = excluded.street_name,
        outcome = excluded.outcome,
        suggested_outcome = excluded.suggested_outcome,
        matched_listing_url = excluded.matched_listing_url,
        confidence = excluded.confidence,
        match_method = excluded.match_method,
        blocked = excluded.blocked,
        attempt_count = excluded.attempt_count,
        cost_units = excluded.cost_units,
        notes = excluded.notes,
        updated_at = excluded.updated_at
    WHERE match_outcomes.outcome IN ('pending', 'error')
"""


class JobRepository:
    """Database operations for processing jobs."""

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
    ) -> None:
        self._get_connection = get_connection

    async def create_job(
        self,
        contact_id: str,
        properties: Sequence[Property],
        *,
        chunk_size: int,
    ) -> ProcessingJob:
        """Create a pending job over ``properties``.

        Returns:
            The stored job.
        """
        conn = await self._get_connection()
        now = now_iso()
        try:
            cursor = await conn.execute(
                """
                INSERT INTO processing_jobs (
                    contact_id, status, postcodes, chunk_size, total_chunks,
                    current_chunk, total_postcodes, processed_postcodes, version,
                    created_at, updated_at
                ) VALUES (?, 'pending', ?, ?, ?, 0, ?, 0, 0, ?, ?)
                """,
                (
                    contact_id,
                    properties_to_json(list(properties)),
                    chunk_size,
                    count_chunks(len(properties), chunk_size),
                    len(properties),
                    now,
                    now,
                ),
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise JobPersistenceError(f"Could not create job: {e}") from e
        job_id = cursor.lastrowid
        assert job_id is not None
        logger.info(
            "job_created",
            job_id=job_id,
            contact_id=contact_id,
            properties=len(properties),
            chunk_size=chunk_size,
        )
        return await self.get_job(job_id)

    async def get_job(self, job_id: int) -> ProcessingJob:
        """Load a job row.

        Raises:
            JobNotFoundError: If no job has this id.
        """
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM processing_jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        if row is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return row_to_job(row)

    async def list_jobs(
        self,
        *,
        contact_id: str | None = None,
        status: JobStatus | None = None,
    ) -> list[ProcessingJob]:
        conn = await self._get_connection()
        clauses: list[str] = []
        params: list[Any] = []
        if contact_id is not None:
            clauses.append("contact_id = ?")
            params.append(contact_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await conn.execute(
            f"SELECT * FROM processing_jobs {where} ORDER BY created_at, id", params
        )
        return [row_to_job(row) for row in await cursor.fetchall()]

    async def next_runnable_job(self) -> ProcessingJob | None:
        """Return the oldest pending or processing job, if any."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM processing_jobs
            WHERE status IN (?, ?)
            ORDER BY created_at, id LIMIT 1
            """,
            _RUNNABLE,
        )
        row = await cursor.fetchone()
        return row_to_job(row) if row else None

    async def mark_processing(self, job: ProcessingJob) -> ProcessingJob:
        """Move a runnable job to processing, stamping started_at once.

        Raises:
            StaleJobError: If the job changed since ``job`` was read.
        """
        conn = await self._get_connection()
        now = now_iso()
        try:
            cursor = await conn.execute(
                """
                UPDATE processing_jobs
                SET status = 'processing',
                    started_at = COALESCE(started_at, ?),
                    version = version + 1,
                    updated_at = ?
                WHERE id = ? AND version = ? AND status IN (?, ?)
                """,
                (now, now, job.id, job.version, *_RUNNABLE),
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise JobPersistenceError(f"Could not start job {job.id}: {e}") from e
        if cursor.rowcount == 0:
            raise StaleJobError(f"Job {job.id} changed before processing started")
        return await self.get_job(job.id)

    async def commit_chunk(
        self,
        job: ProcessingJob,
        chunk_index: int,
        results: Sequence[PairResult],
        *,
        properties: tuple[Property, ...],
    ) -> ProcessingJob:
        """Atomically record a finished chunk and move the job cursor.

        Writes the attempt history, upserts the outcomes, stores the
        (possibly geocoded) property list and advances ``current_chunk``,
        all in one transaction guarded by the job's version. If the job was
        cancelled while the chunk ran, attempts and outcomes are still
        recorded but the cursor does not move.

        Raises:
            StaleJobError: If another writer committed first. Nothing is written.
            JobPersistenceError: If the database rejected the write.
        """
        conn = await self._get_connection()
        now = now_iso()
        new_chunk = chunk_index + 1
        processed = min(new_chunk * job.chunk_size, len(properties))
        completed = new_chunk >= job.total_chunks
        status = JobStatus.COMPLETED if completed else JobStatus.PROCESSING
        street_names = {p.postcode: p.street_name for p in properties}

        try:
            cursor = await conn.execute(
                """
                UPDATE processing_jobs
                SET current_chunk = ?,
                    processed_postcodes = ?,
                    postcodes = ?,
                    status = ?,
                    completed_at = ?,
                    version = version + 1,
                    updated_at = ?
                WHERE id = ? AND version = ? AND status = 'processing'
                  AND current_chunk = ?
                """,
                (
                    new_chunk,
                    processed,
                    properties_to_json(properties),
                    status.value,
                    now if completed else None,
                    now,
                    job.id,
                    job.version,
                    chunk_index,
                ),
            )
            cursor_moved = cursor.rowcount > 0
            if not cursor_moved:
                current = await conn.execute(
                    "SELECT status FROM processing_jobs WHERE id = ?", (job.id,)
                )
                row = await current.fetchone()
                if row is None or row["status"] != JobStatus.FAILED.value:
                    await conn.rollback()
                    if row is None:
                        raise JobNotFoundError(f"Job {job.id} not found")
                    raise StaleJobError(
                        f"Job {job.id} chunk {chunk_index} was committed by another writer"
                    )

            await conn.executemany(
                _INSERT_ATTEMPT,
                [
                    attempt_params(job.id, chunk_index, r.property.postcode, attempt)
                    for r in results
                    for attempt in r.attempts
                ],
            )
            await conn.executemany(
                _UPSERT_OUTCOME,
                [
                    outcome_params(r.outcome, street_names.get(r.property.postcode))
                    for r in results
                ],
            )
            await conn.commit()
        except aiosqlite.Error as e:
            await conn.rollback()
            raise JobPersistenceError(
                f"Could not commit chunk {chunk_index} of job {job.id}: {e}"
            ) from e

        logger.info(
            "chunk_committed",
            job_id=job.id,
            chunk=chunk_index,
            pairs=len(results),
            cursor_moved=cursor_moved,
            status=status.value if cursor_moved else JobStatus.FAILED.value,
        )
        return await self.get_job(job.id)

    async def complete_empty_job(self, job: ProcessingJob) -> ProcessingJob:
        """Complete a job that has no properties to process."""
        conn = await self._get_connection()
        now = now_iso()
        try:
            cursor = await conn.execute(
                """
                UPDATE processing_jobs
                SET status = 'completed', completed_at = ?, version = version + 1,
                    updated_at = ?
                WHERE id = ? AND version = ? AND total_chunks = 0 AND status IN (?, ?)
                """,
                (now, now, job.id, job.version, *_RUNNABLE),
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise JobPersistenceError(f"Could not complete job {job.id}: {e}") from e
        if cursor.rowcount == 0:
            raise StaleJobError(f"Job {job.id} changed before completion")
        return await self.get_job(job.id)

    async def fail_job(self, job_id: int, error_message: str) -> bool:
        """Mark a non-terminal job as failed.

        Returns:
            True if the job was failed, False if it was already terminal.

        Raises:
            JobNotFoundError: If no job has this id.
            JobPersistenceError: If the database rejected the write.
        """
        conn = await self._get_connection()
        now = now_iso()
        try:
            cursor = await conn.execute(
                """
                UPDATE processing_jobs
                SET status = 'failed', error_message = ?, completed_at = ?,
                    version = version + 1, updated_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (error_message, now, now, job_id, *_RUNNABLE),
            )
            await conn.commit()
        except aiosqlite.Error as e:
            raise JobPersistenceError(f"Could not fail job {job_id}: {e}") from e
        if cursor.rowcount == 0:
            # Distinguish unknown ids from already-terminal jobs
            await self.get_job(job_id)
            return False
        logger.warning("job_failed", job_id=job_id, error_message=error_message)
        return True
