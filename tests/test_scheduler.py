"""Tests for job submission and chunked, resumable advancement."""

from collections.abc import Callable
from typing import Any
from unittest.mock import patch

import aiosqlite
import httpx
import pytest
import respx

from sublet_finder.config import Settings
from sublet_finder.db import MatchStorage
from sublet_finder.errors import JobNotFoundError, JobPersistenceError, StaleJobError
from sublet_finder.models import (
    JobStatus,
    JobSubmission,
    Outcome,
    Platform,
    PropertyInput,
)
from sublet_finder.pipeline import process_chunk
from sublet_finder.scheduler import CANCELLED_MESSAGE, JobScheduler, properties_from_inputs
from sublet_finder.scrapers.client import DEFAULT_API_URL
from sublet_finder.scrapers.quota import CreditBudget

POSTCODES_IO = "https://api.postcodes.io"


def _submission(n: int, contact_id: str = "contact-1") -> JobSubmission:
    return JobSubmission(
        contact_id=contact_id,
        properties=tuple(
            PropertyInput(postcode=f"G{i} 1AA", address=f"{i} Byres Road, Glasgow")
            for i in range(1, n + 1)
        ),
    )


ProxyHandler = Callable[..., Callable[[httpx.Request], httpx.Response]]


def _mock_network(proxy_handler: ProxyHandler) -> respx.Route:
    respx.get(url__startswith=f"{POSTCODES_IO}/postcodes/").mock(
        return_value=httpx.Response(404, json={"status": 404, "error": "Postcode not found"})
    )
    return respx.get(DEFAULT_API_URL).mock(side_effect=proxy_handler({}))


class TestPropertiesFromInputs:
    def test_canonicalizes_and_dedups(self) -> None:
        props = properties_from_inputs(
            [
                PropertyInput(postcode="g11 5aw", address="23 Banavie Road"),
                PropertyInput(postcode="G11 5AW", address="Flat 1, 23 Banavie Road"),
                PropertyInput(postcode="not a postcode", address="Nowhere"),
                PropertyInput(postcode="G12 8QQ"),
            ]
        )
        assert [p.postcode for p in props] == ["G11 5AW", "G12 8QQ"]
        assert props[0].address == "23 Banavie Road"
        assert props[0].street_name == "Banavie Road"
        assert props[1].street_name is None


class TestSubmit:
    async def test_submit_creates_pending_job(
        self, make_scheduler: Callable[..., JobScheduler]
    ) -> None:
        job = await make_scheduler().submit(_submission(16))
        assert job.status is JobStatus.PENDING
        assert job.total_chunks == 2
        assert job.total_postcodes == 16

    async def test_submit_upload(self, make_scheduler: Callable[..., JobScheduler]) -> None:
        content = b"address,postcode\n23 Banavie Road,G11 5AW\n4 University Gardens,G12 8QQ\n"
        job = await make_scheduler().submit_upload("contact-1", content)
        assert [p.postcode for p in job.postcodes] == ["G11 5AW", "G12 8QQ"]

    async def test_unreadable_upload_creates_empty_job(
        self, make_scheduler: Callable[..., JobScheduler]
    ) -> None:
        job = await make_scheduler().submit_upload("contact-1", b"\xff\xfe\xfa")
        assert job.total_chunks == 0


class TestAdvance:
    @respx.mock
    async def test_one_chunk_per_advance(
        self,
        make_scheduler: Callable[..., JobScheduler],
        storage: MatchStorage,
        proxy_handler: ProxyHandler,
    ) -> None:
        _mock_network(proxy_handler)
        scheduler = make_scheduler(platforms=(Platform.SPAREROOM, Platform.GUMTREE))
        job = await scheduler.submit(_submission(16))

        job = await scheduler.advance(job.id)

        assert job.status is JobStatus.PROCESSING
        assert job.current_chunk == 1
        assert job.processed_postcodes == 15
        assert len(job.results) == 30
        assert {o.property_postcode for o in job.results} == {f"G{i} 1AA" for i in range(1, 16)}
        assert all(o.outcome is Outcome.PENDING for o in job.results)

        job = await scheduler.advance(job.id)

        assert job.status is JobStatus.COMPLETED
        assert job.current_chunk == 2
        assert job.processed_postcodes == 16
        assert len(job.results) == 32
        assert job.completed_at is not None
        assert len(await storage.list_attempts(job.id)) == 32

    @respx.mock
    async def test_expected_chunk_makes_retries_idempotent(
        self,
        make_scheduler: Callable[..., JobScheduler],
        proxy_handler: ProxyHandler,
    ) -> None:
        route = _mock_network(proxy_handler)
        scheduler = make_scheduler(platforms=(Platform.SPAREROOM,), chunk_size=1)
        job = await scheduler.submit(_submission(3))

        first = await scheduler.advance(job.id, expected_chunk=0)
        calls = route.call_count
        retried = await scheduler.advance(job.id, expected_chunk=0)

        assert first.current_chunk == retried.current_chunk == 1
        assert route.call_count == calls
        assert retried.version == first.version

    async def test_empty_job_completes(self, make_scheduler: Callable[..., JobScheduler]) -> None:
        scheduler = make_scheduler()
        job = await scheduler.submit(JobSubmission(contact_id="contact-1"))

        job = await scheduler.advance(job.id)

        assert job.status is JobStatus.COMPLETED
        assert job.total_chunks == 0
        assert job.results == ()

    async def test_terminal_job_is_unchanged(
        self, make_scheduler: Callable[..., JobScheduler]
    ) -> None:
        scheduler = make_scheduler()
        job = await scheduler.submit(_submission(1))
        await scheduler.cancel(job.id)

        job = await scheduler.advance(job.id)

        assert job.status is JobStatus.FAILED
        assert job.current_chunk == 0

    async def test_unknown_job(self, make_scheduler: Callable[..., JobScheduler]) -> None:
        scheduler = make_scheduler()
        with pytest.raises(JobNotFoundError):
            await scheduler.advance(404)
        assert scheduler._locks == {}

    @respx.mock
    async def test_geocoded_coordinates_are_stored(
        self,
        make_scheduler: Callable[..., JobScheduler],
        proxy_handler: ProxyHandler,
    ) -> None:
        respx.get(f"{POSTCODES_IO}/postcodes/G11AA").mock(
            return_value=httpx.Response(
                200, json={"status": 200, "result": {"latitude": 55.86, "longitude": -4.25}}
            )
        )
        respx.get(DEFAULT_API_URL).mock(side_effect=proxy_handler({}))
        scheduler = make_scheduler(platforms=(Platform.SPAREROOM,))
        job = await scheduler.submit(_submission(1))

        job = await scheduler.advance(job.id)

        assert job.postcodes[0].latitude == 55.86
        assert job.postcodes[0].longitude == -4.25

    async def test_missing_api_key_records_errors(
        self, make_scheduler: Callable[..., JobScheduler]
    ) -> None:
        scheduler = make_scheduler(api_key="", platforms=(Platform.AIRBNB,))
        job = await scheduler.submit(_submission(1))
        with respx.mock:
            respx.get(url__startswith=f"{POSTCODES_IO}/postcodes/").mock(
                return_value=httpx.Response(404)
            )
            job = await scheduler.advance(job.id)

        assert job.status is JobStatus.COMPLETED
        [outcome] = job.results
        assert outcome.outcome is Outcome.ERROR
        assert outcome.cost_units == 0


class TestFailureHandling:
    @respx.mock
    async def test_cancel_mid_chunk_keeps_outcomes_not_progress(
        self,
        make_scheduler: Callable[..., JobScheduler],
        proxy_handler: ProxyHandler,
    ) -> None:
        _mock_network(proxy_handler)
        scheduler = make_scheduler(platforms=(Platform.SPAREROOM,), chunk_size=2)
        job = await scheduler.submit(_submission(4))

        async def _cancel_then_process(*args, **kwargs):  # type: ignore[no-untyped-def]
            await scheduler.cancel(job.id, "operator stopped it")
            return await process_chunk(*args, **kwargs)

        with patch("sublet_finder.scheduler.process_chunk", side_effect=_cancel_then_process):
            result = await scheduler.advance(job.id)

        assert result.status is JobStatus.FAILED
        assert result.error_message == "operator stopped it"
        assert result.current_chunk == 0
        assert result.processed_postcodes == 0
        assert len(result.results) == 2

    async def test_persistence_error_fails_job(
        self,
        make_scheduler: Callable[..., JobScheduler],
        storage: MatchStorage,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler = make_scheduler(api_key="", platforms=(Platform.SPAREROOM,))
        job = await scheduler.submit(_submission(1))

        async def _broken_commit(*args, **kwargs):  # type: ignore[no-untyped-def]
            raise JobPersistenceError("disk I/O error")

        monkeypatch.setattr(storage, "commit_chunk", _broken_commit)
        with respx.mock:
            respx.get(url__startswith=f"{POSTCODES_IO}/postcodes/").mock(
                return_value=httpx.Response(404)
            )
            result = await scheduler.advance(job.id)

        assert result.status is JobStatus.FAILED
        assert result.error_message == "disk I/O error"
        assert result.results == ()

    async def test_database_error_on_later_chunk_keeps_earlier_outcomes(
        self,
        make_scheduler: Callable[..., JobScheduler],
        storage: MatchStorage,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler = make_scheduler(api_key="", platforms=(Platform.SPAREROOM,), chunk_size=2)
        job = await scheduler.submit(_submission(4))
        first_chunk = {p.postcode for p in job.chunk(0)}

        with respx.mock:
            respx.get(url__startswith=f"{POSTCODES_IO}/postcodes/").mock(
                return_value=httpx.Response(404)
            )
            after_first = await scheduler.advance(job.id)
            assert after_first.current_chunk == 1

            conn = await storage._get_connection()
            real_executemany = conn.executemany

            async def _executemany(sql: str, params: Any) -> Any:
                if "INSERT INTO match_outcomes" in sql:
                    raise aiosqlite.OperationalError("disk I/O error")
                return await real_executemany(sql, params)

            with monkeypatch.context() as m:
                m.setattr(conn, "executemany", _executemany)
                result = await scheduler.advance(job.id)

        assert result.status is JobStatus.FAILED
        assert result.error_message is not None
        assert "Could not commit chunk 1" in result.error_message
        assert "disk I/O error" in result.error_message
        assert result.current_chunk == 1
        assert {o.property_postcode for o in result.results} == first_chunk
        attempts = await storage.list_attempts(job.id)
        assert attempts
        assert {a["postcode"] for a in attempts} <= first_chunk

    async def test_stale_commit_propagates(
        self,
        make_scheduler: Callable[..., JobScheduler],
        storage: MatchStorage,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler = make_scheduler(api_key="", platforms=(Platform.SPAREROOM,))
        job = await scheduler.submit(_submission(1))

        async def _stale_commit(*args, **kwargs):  # type: ignore[no-untyped-def]
            raise StaleJobError("chunk 0 was committed by another writer")

        monkeypatch.setattr(storage, "commit_chunk", _stale_commit)
        with respx.mock:
            respx.get(url__startswith=f"{POSTCODES_IO}/postcodes/").mock(
                return_value=httpx.Response(404)
            )
            with pytest.raises(StaleJobError):
                await scheduler.advance(job.id)

        assert (await storage.get_job(job.id)).status is JobStatus.PROCESSING


class TestRun:
    @respx.mock
    async def test_run_until_complete(
        self,
        make_scheduler: Callable[..., JobScheduler],
        proxy_handler: ProxyHandler,
    ) -> None:
        _mock_network(proxy_handler)
        scheduler = make_scheduler(platforms=(Platform.SPAREROOM,), chunk_size=1)
        job = await scheduler.submit(_submission(3))

        job = await scheduler.run(job.id)

        assert job.status is JobStatus.COMPLETED
        assert job.current_chunk == job.total_chunks == 3
        assert len(job.results) == 3
        assert scheduler._locks == {}

    async def test_run_pending_without_jobs(
        self, make_scheduler: Callable[..., JobScheduler]
    ) -> None:
        assert await make_scheduler().run_pending() is None

    @respx.mock
    async def test_run_pending_picks_oldest(
        self,
        make_scheduler: Callable[..., JobScheduler],
        proxy_handler: ProxyHandler,
    ) -> None:
        _mock_network(proxy_handler)
        scheduler = make_scheduler(platforms=(Platform.SPAREROOM,))
        first = await scheduler.submit(_submission(1, contact_id="a"))
        await scheduler.submit(_submission(1, contact_id="b"))

        job = await scheduler.run_pending()

        assert job is not None
        assert job.id == first.id
        assert job.status is JobStatus.COMPLETED


class TestCancel:
    async def test_cancel_pending(self, make_scheduler: Callable[..., JobScheduler]) -> None:
        scheduler = make_scheduler()
        job = await scheduler.submit(_submission(2))
        cancelled = await scheduler.cancel(job.id)
        assert cancelled.status is JobStatus.FAILED
        assert cancelled.error_message == CANCELLED_MESSAGE

    async def test_cancel_completed_is_noop(
        self, make_scheduler: Callable[..., JobScheduler]
    ) -> None:
        scheduler = make_scheduler()
        job = await scheduler.submit(JobSubmission(contact_id="contact-1"))
        await scheduler.advance(job.id)
        assert (await scheduler.cancel(job.id)).status is JobStatus.COMPLETED


class TestCreditBudget:
    @respx.mock
    async def test_advance_pauses_when_budget_spent(
        self,
        make_scheduler: Callable[..., JobScheduler],
        proxy_handler: ProxyHandler,
    ) -> None:
        proxy = _mock_network(proxy_handler)
        scheduler = make_scheduler(platforms=(Platform.SPAREROOM,))
        budget = CreditBudget(100)
        budget.charge(90)
        scheduler.client.budget = budget
        job = await scheduler.submit(_submission(2))

        result = await scheduler.advance(job.id)

        assert result.status is JobStatus.PENDING
        assert result.current_chunk == 0
        assert result.results == ()
        assert proxy.call_count == 0

    @respx.mock
    async def test_run_stops_resumable_when_budget_runs_out(
        self,
        make_scheduler: Callable[..., JobScheduler],
        proxy_handler: ProxyHandler,
    ) -> None:
        proxy = _mock_network(proxy_handler)
        scheduler = make_scheduler(platforms=(Platform.SPAREROOM,), chunk_size=1)
        # Spareroom costs 10 per request; two requests reach the 18-unit stop point
        scheduler.client.budget = CreditBudget(20)
        job = await scheduler.submit(_submission(3))

        result = await scheduler.run(job.id)

        assert result.status is JobStatus.PROCESSING
        assert result.current_chunk == 2
        assert len(result.results) == 2
        assert proxy.call_count == 2

    @respx.mock
    async def test_spend_recorded_before_restart_counts(
        self,
        make_scheduler: Callable[..., JobScheduler],
        proxy_handler: ProxyHandler,
    ) -> None:
        proxy = _mock_network(proxy_handler)
        first = make_scheduler(platforms=(Platform.SPAREROOM,), chunk_size=1)
        job = await first.submit(_submission(2))
        await first.advance(job.id)
        assert proxy.call_count == 1

        restarted = make_scheduler(platforms=(Platform.SPAREROOM,), chunk_size=1)
        budget = CreditBudget(10)
        restarted.client.budget = budget
        result = await restarted.advance(job.id)

        assert budget.spent == 10
        assert result.current_chunk == 1
        assert proxy.call_count == 1


class TestFromSettings:
    async def test_uses_settings(self, storage: MatchStorage) -> None:
        settings = Settings(
            scrapingbee_api_key="key",  # type: ignore[arg-type]
            platforms="gumtree,airbnb",
            chunk_size=5,
            max_concurrency=2,
        )
        scheduler = JobScheduler.from_settings(settings, storage)
        try:
            assert scheduler.platforms == (Platform.GUMTREE, Platform.AIRBNB)
            assert scheduler.chunk_size == 5
            assert scheduler.max_concurrency == 2
            assert scheduler.client.has_api_key
            assert scheduler.client.budget is not None
            assert scheduler.client.budget.daily_units == 800
            assert scheduler.client.quota(Platform.AIRBNB) is not None
        finally:
            await scheduler.close()

    async def test_limits_can_be_disabled(self, storage: MatchStorage) -> None:
        settings = Settings(daily_credit_budget=0, enforce_request_quotas=False)
        scheduler = JobScheduler.from_settings(settings, storage)
        try:
            assert scheduler.client.budget is None
            assert scheduler.client.quota(Platform.SPAREROOM) is None
        finally:
            await scheduler.close()
