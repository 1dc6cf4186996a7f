"""SQLite storage for processing jobs, match outcomes and scrape attempts."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

import aiosqlite

from sublet_finder.db.job_repo import JobRepository
from sublet_finder.db.ledger import ReviewLedger
from sublet_finder.db.row_mappers import AttemptRecord
from sublet_finder.logging import get_logger
from sublet_finder.models import (
    JobReport,
    JobStatus,
    MatchOutcome,
    Outcome,
    OutcomeCounts,
    PairResult,
    Platform,
    ProcessingJob,
    Property,
)

logger = get_logger(__name__)


class MatchStorage:
    """SQLite-based storage owning the connection and schema.

    Job lifecycle operations are delegated to JobRepository and reviewer
    operations to ReviewLedger; both share this storage's connection.
    Writes hold a storage-wide lock so one writer's commit or rollback never
    lands inside another writer's transaction.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._ensure_directory()
        self._jobs = JobRepository(self._get_connection)
        self._ledger = ReviewLedger(self._get_connection)

    def _ensure_directory(self) -> None:
        """Ensure the directory for the database exists."""
        if self.db_path != ":memory:":
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def initialize(self) -> None:
        """Initialize the database schema."""
        conn = await self._get_connection()
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS processing_jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                postcodes TEXT NOT NULL DEFAULT '[]',
                chunk_size INTEGER NOT NULL,
                total_chunks INTEGER NOT NULL DEFAULT 0,
                current_chunk INTEGER NOT NULL DEFAULT 0,
                total_postcodes INTEGER NOT NULL DEFAULT 0,
                processed_postcodes INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                completed_at TEXT,
                error_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status
            ON processing_jobs(status)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_contact
            ON processing_jobs(contact_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS match_outcomes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER NOT NULL,
                contact_id TEXT NOT NULL,
                postcode TEXT NOT NULL,
                address TEXT,
                street_name TEXT,
                platform TEXT NOT NULL,
                outcome TEXT NOT NULL DEFAULT 'pending',
                suggested_outcome TEXT NOT NULL,
                matched_listing_url TEXT,
                confidence REAL,
                match_method TEXT,
                blocked BOOLEAN DEFAULT 0,
                attempt_count INTEGER DEFAULT 0,
                cost_units INTEGER DEFAULT 0,
                notes TEXT,
                reviewed_at TEXT,
                reviewed_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (job_id) REFERENCES processing_jobs(id),
                UNIQUE(job_id, postcode, platform)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_outcomes_contact
            ON match_outcomes(contact_id)
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_outcomes_outcome
            ON match_outcomes(outcome)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS scrape_attempts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id INTEGER NOT NULL,
                chunk_index INTEGER NOT NULL,
                postcode TEXT NOT NULL,
                platform TEXT NOT NULL,
                kind TEXT NOT NULL,
                ordinal INTEGER NOT NULL,
                request_url TEXT NOT NULL,
                success BOOLEAN NOT NULL,
                status_code INTEGER,
                latency_ms INTEGER NOT NULL,
                html_size INTEGER NOT NULL,
                cost_units INTEGER NOT NULL,
                error TEXT,
                found BOOLEAN,
                match_method TEXT,
                confidence REAL,
                blocked BOOLEAN,
                attempted_at TEXT NOT NULL,
                FOREIGN KEY (job_id) REFERENCES processing_jobs(id)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_attempts_job
            ON scrape_attempts(job_id, postcode)
        """)
        await conn.commit()

        logger.info("database_initialized", db_path=self.db_path)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(
        self, contact_id: str, properties: Sequence[Property], *, chunk_size: int
    ) -> ProcessingJob:
        async with self._write_lock:
            return await self._jobs.create_job(contact_id, properties, chunk_size=chunk_size)

    async def get_job(self, job_id: int, *, with_results: bool = True) -> ProcessingJob:
        """Load a job, materialising its outcomes from the ledger."""
        job = await self._jobs.get_job(job_id)
        if not with_results:
            return job
        results = await self._ledger.list_outcomes(job_id=job_id)
        return job.model_copy(update={"results": tuple(results)})

    async def list_jobs(
        self, *, contact_id: str | None = None, status: JobStatus | None = None
    ) -> list[ProcessingJob]:
        return await self._jobs.list_jobs(contact_id=contact_id, status=status)

    async def next_runnable_job(self) -> ProcessingJob | None:
        return await self._jobs.next_runnable_job()

    async def mark_processing(self, job: ProcessingJob) -> ProcessingJob:
        async with self._write_lock:
            return await self._jobs.mark_processing(job)

    async def commit_chunk(
        self,
        job: ProcessingJob,
        chunk_index: int,
        results: Sequence[PairResult],
        *,
        properties: tuple[Property, ...],
    ) -> ProcessingJob:
        async with self._write_lock:
            committed = await self._jobs.commit_chunk(
                job, chunk_index, results, properties=properties
            )
        return await self.get_job(committed.id)

    async def complete_empty_job(self, job: ProcessingJob) -> ProcessingJob:
        async with self._write_lock:
            return await self._jobs.complete_empty_job(job)

    async def fail_job(self, job_id: int, error_message: str) -> bool:
        async with self._write_lock:
            return await self._jobs.fail_job(job_id, error_message)

    # ------------------------------------------------------------------
    # Review ledger
    # ------------------------------------------------------------------

    async def list_outcomes(
        self,
        *,
        job_id: int | None = None,
        contact_id: str | None = None,
        platform: Platform | None = None,
        outcome: Outcome | None = None,
    ) -> list[MatchOutcome]:
        return await self._ledger.list_outcomes(
            job_id=job_id, contact_id=contact_id, platform=platform, outcome=outcome
        )

    async def get_outcome(self, outcome_id: int) -> MatchOutcome:
        return await self._ledger.get_outcome(outcome_id)

    async def review_outcome(
        self,
        outcome_id: int,
        decision: Outcome | str,
        *,
        reviewed_by: str,
        notes: str | None = None,
    ) -> MatchOutcome:
        async with self._write_lock:
            return await self._ledger.review_outcome(
                outcome_id, decision, reviewed_by=reviewed_by, notes=notes
            )

    async def outcome_counts(self, job_id: int) -> OutcomeCounts:
        return await self._ledger.outcome_counts(job_id)

    async def job_report(self, job_id: int) -> JobReport:
        return await self._ledger.job_report(job_id)

    async def list_attempts(self, job_id: int, postcode: str | None = None) -> list[AttemptRecord]:
        return await self._ledger.list_attempts(job_id, postcode)

    async def usage_since(self, since: datetime) -> tuple[int, dict[Platform, int]]:
        return await self._ledger.usage_since(since)
