"""Job scheduler: chunked, resumable, externally triggered job advancement."""

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime

from sublet_finder.config import Settings
from sublet_finder.db import MatchStorage
from sublet_finder.errors import JobNotFoundError, JobPersistenceError, StaleJobError
from sublet_finder.logging import get_logger, job_context
from sublet_finder.models import (
    JobSubmission,
    Platform,
    ProcessingJob,
    Property,
    PropertyInput,
)
from sublet_finder.pipeline import process_chunk
from sublet_finder.scrapers.client import ScrapingClient
from sublet_finder.scrapers.quota import CreditBudget, day_start, hour_start, platform_quotas
from sublet_finder.utils.address import (
    canonicalize_postcode,
    extract_properties,
    extract_properties_from_bytes,
    extract_street_name,
)
from sublet_finder.utils.postcode_lookup import Geocoder

logger = get_logger(__name__)

CANCELLED_MESSAGE = "cancelled"


def properties_from_inputs(inputs: Sequence[PropertyInput]) -> list[Property]:
    """Canonicalize submitted pairs, keeping the first address per postcode.

    Entries without a recognisable UK postcode are dropped.
    """
    properties: list[Property] = []
    seen: set[str] = set()
    for item in inputs:
        postcode = canonicalize_postcode(item.postcode)
        if postcode is None:
            logger.warning("submission_postcode_invalid", postcode=item.postcode)
            continue
        if postcode in seen:
            continue
        seen.add(postcode)
        address = item.address.strip()
        properties.append(
            Property(
                postcode=postcode,
                address=address,
                street_name=extract_street_name(address) if address else None,
            )
        )
    return properties


class JobScheduler:
    """Creates jobs and advances them one chunk at a time.

    Advancement is triggered from outside (CLI, HTTP, or the serve loop);
    a job never schedules itself. One advancement per job runs at a time in
    this process, and the storage version token rejects writers elsewhere.
    """

    def __init__(
        self,
        storage: MatchStorage,
        client: ScrapingClient,
        geocoder: Geocoder,
        *,
        platforms: Sequence[Platform] = tuple(Platform),
        chunk_size: int = 15,
        max_concurrency: int = 5,
        strategy_delay: float = 2.0,
        chunk_pacing: float = 30.0,
    ) -> None:
        self.storage = storage
        self.client = client
        self.geocoder = geocoder
        self.platforms = tuple(platforms)
        self.chunk_size = chunk_size
        self.max_concurrency = max_concurrency
        self.strategy_delay = strategy_delay
        self.chunk_pacing = chunk_pacing
        self._locks: dict[int, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: Settings, storage: MatchStorage) -> "JobScheduler":
        """Build a scheduler with clients configured from settings."""
        client = ScrapingClient(
            settings.scrapingbee_api_key,
            api_url=settings.scraping_api_url,
            country_code=settings.scraping_country_code,
            timeout=settings.request_timeout_seconds,
            preview_chars=settings.detection_preview_chars,
            budget=(
                CreditBudget(
                    settings.daily_credit_budget,
                    stop_ratio=settings.credit_budget_stop_ratio,
                )
                if settings.daily_credit_budget > 0
                else None
            ),
            quotas=platform_quotas() if settings.enforce_request_quotas else None,
        )
        geocoder = Geocoder(
            base_url=settings.geocoder_base_url,
            timeout=min(settings.request_timeout_seconds, 10.0),
        )
        return cls(
            storage,
            client,
            geocoder,
            platforms=settings.get_platforms(),
            chunk_size=settings.chunk_size,
            max_concurrency=settings.max_concurrency,
            strategy_delay=settings.strategy_delay_seconds,
            chunk_pacing=settings.chunk_pacing_seconds,
        )

    async def close(self) -> None:
        await self.client.close()
        await self.geocoder.close()

    def _lock_for(self, job_id: int) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    def _drop_lock(self, job_id: int, lock: asyncio.Lock) -> None:
        # Terminal and unknown jobs never advance again
        if self._locks.get(job_id) is lock and not lock.locked():
            del self._locks[job_id]

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, submission: JobSubmission) -> ProcessingJob:
        """Create a pending job for a contact's properties."""
        properties = properties_from_inputs(submission.properties)
        return await self.storage.create_job(
            submission.contact_id, properties, chunk_size=self.chunk_size
        )

    async def submit_upload(self, contact_id: str, content: bytes | str) -> ProcessingJob:
        """Create a pending job from an uploaded address file.

        Unreadable uploads create an empty job, which completes on its
        first advance.
        """
        if isinstance(content, bytes):
            properties = extract_properties_from_bytes(content)
        else:
            properties = extract_properties(content)
        return await self.storage.create_job(contact_id, properties, chunk_size=self.chunk_size)

    # ------------------------------------------------------------------
    # Advancement
    # ------------------------------------------------------------------

    async def advance(self, job_id: int, expected_chunk: int | None = None) -> ProcessingJob:
        """Process the job's next chunk and commit it.

        Args:
            job_id: Job to advance.
            expected_chunk: If given, only advance when the job is still at
                this chunk; otherwise return the job unchanged.

        Returns:
            The job after the advancement (with results). A job is returned
            unchanged while the daily credit budget is spent.

        Raises:
            JobNotFoundError: If the job does not exist.
            StaleJobError: If another writer committed this chunk first.
        """
        lock = self._lock_for(job_id)
        try:
            async with lock:
                job = await self._advance_locked(job_id, expected_chunk)
        except JobNotFoundError:
            self._drop_lock(job_id, lock)
            raise
        if job.is_terminal:
            self._drop_lock(job_id, lock)
        return job

    async def _advance_locked(self, job_id: int, expected_chunk: int | None) -> ProcessingJob:
        job = await self.storage.get_job(job_id, with_results=False)
        if job.is_terminal:
            logger.debug("advance_skipped_terminal", job_id=job_id, status=job.status.value)
            return await self.storage.get_job(job_id)
        if expected_chunk is not None and job.current_chunk != expected_chunk:
            logger.info(
                "advance_skipped_chunk_moved",
                job_id=job_id,
                expected_chunk=expected_chunk,
                current_chunk=job.current_chunk,
            )
            return await self.storage.get_job(job_id)

        if job.total_chunks > 0:
            await self._restore_proxy_usage()
            if self.client.budget_exhausted:
                logger.warning(
                    "advance_paused_budget_exhausted",
                    job_id=job_id,
                    current_chunk=job.current_chunk,
                )
                return await self.storage.get_job(job_id)

        try:
            if job.total_chunks == 0:
                await self.storage.complete_empty_job(job)
                logger.info("job_completed", job_id=job_id, properties=0)
                return await self.storage.get_job(job_id)
            await self._advance_chunk(job)
        except StaleJobError:
            raise
        except JobPersistenceError as e:
            logger.error("chunk_persistence_failed", job_id=job_id, error=str(e))
            await self.storage.fail_job(job_id, str(e))
        return await self.storage.get_job(job_id)

    async def _restore_proxy_usage(self) -> None:
        now = datetime.now(UTC)
        spent_today, requests_today = await self.storage.usage_since(day_start(now))
        _, requests_this_hour = await self.storage.usage_since(hour_start(now))
        self.client.restore_usage(spent_today, requests_today, requests_this_hour)

    async def _advance_chunk(self, job: ProcessingJob) -> None:
        job = await self.storage.mark_processing(job)
        chunk_index = job.current_chunk
        chunk = job.chunk(chunk_index)
        logger.info(
            "chunk_started",
            job_id=job.id,
            chunk=chunk_index,
            total_chunks=job.total_chunks,
            properties=len(chunk),
        )

        with job_context(job.id, chunk_index):
            geocoded, results = await process_chunk(
                chunk,
                self.platforms,
                client=self.client,
                geocoder=self.geocoder,
                job_id=job.id,
                contact_id=job.contact_id,
                max_concurrency=self.max_concurrency,
                strategy_delay=self.strategy_delay,
            )

        start = chunk_index * job.chunk_size
        properties = job.postcodes[:start] + tuple(geocoded) + job.postcodes[start + len(chunk) :]
        committed = await self.storage.commit_chunk(
            job, chunk_index, results, properties=properties
        )
        if committed.is_terminal:
            logger.info(
                "job_finished",
                job_id=job.id,
                status=committed.status.value,
                chunks=committed.current_chunk,
            )

    async def run(self, job_id: int) -> ProcessingJob:
        """Advance a job until it is terminal, pausing between chunks.

        Stops early, leaving the job resumable, once the credit budget is spent.
        """
        while True:
            job = await self.advance(job_id)
            if job.is_terminal:
                return job
            if self.client.budget_exhausted:
                logger.warning(
                    "run_paused_budget_exhausted", job_id=job_id, current_chunk=job.current_chunk
                )
                return job
            if self.chunk_pacing > 0:
                await asyncio.sleep(self.chunk_pacing)

    async def run_pending(self) -> ProcessingJob | None:
        """Drive the oldest runnable job to completion, if there is one."""
        job = await self.storage.next_runnable_job()
        if job is None:
            return None
        logger.info("running_pending_job", job_id=job.id, current_chunk=job.current_chunk)
        return await self.run(job.id)

    async def cancel(self, job_id: int, reason: str = CANCELLED_MESSAGE) -> ProcessingJob:
        """Fail a non-terminal job. Any chunk in flight keeps its outcomes only."""
        if await self.storage.fail_job(job_id, reason):
            logger.info("job_cancelled", job_id=job_id, reason=reason)
        lock = self._locks.get(job_id)
        if lock is not None:
            self._drop_lock(job_id, lock)
        return await self.storage.get_job(job_id)
