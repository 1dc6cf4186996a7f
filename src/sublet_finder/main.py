"""Main entry point for the sublet finder."""

import argparse
import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

from sublet_finder.config import Settings
from sublet_finder.db import MatchStorage
from sublet_finder.errors import JobNotFoundError, StaleJobError
from sublet_finder.logging import configure_logging, get_logger
from sublet_finder.models import JobReport, ProcessingJob
from sublet_finder.scheduler import CANCELLED_MESSAGE, JobScheduler

logger = get_logger(__name__)

T = TypeVar("T")


async def _with_scheduler(
    settings: Settings, action: Callable[[JobScheduler], Awaitable[T]]
) -> T:
    """Open storage and clients, run ``action``, and always clean up."""
    storage = MatchStorage(settings.database_path)
    await storage.initialize()
    scheduler = JobScheduler.from_settings(settings, storage)
    try:
        return await action(scheduler)
    finally:
        await scheduler.close()
        await storage.close()


def print_job(job: ProcessingJob) -> None:
    print(f"Job {job.id} [{job.status.value}] contact={job.contact_id}")
    print(
        f"  Chunks: {job.current_chunk}/{job.total_chunks}"
        f" | Properties: {job.processed_postcodes}/{job.total_postcodes}"
    )
    if job.error_message:
        print(f"  Error: {job.error_message}")


def print_report(report: JobReport) -> None:
    counts = report.counts
    print(f"\n{'=' * 60}")
    print(f"Job {report.job_id} report [{report.status.value}] contact={report.contact_id}")
    print(f"{'=' * 60}\n")
    print(f"  Investigate: {counts.investigate}")
    print(f"  No match:    {counts.no_match}")
    print(f"  Error:       {counts.error}")
    print(f"  Pending:     {counts.pending}")
    print(f"  Attempts: {report.attempt_count} | Cost units: {report.total_cost_units}")
    for platform, platform_counts in report.platforms.items():
        print(
            f"  [{platform}] investigate={platform_counts.investigate}"
            f" no_match={platform_counts.no_match} error={platform_counts.error}"
            f" pending={platform_counts.pending}"
        )


async def submit_file(settings: Settings, path: Path, contact_id: str) -> ProcessingJob:
    """Create a job from an address file."""
    content = path.read_bytes()
    return await _with_scheduler(settings, lambda s: s.submit_upload(contact_id, content))


async def advance_job(
    settings: Settings, job_id: int, expected_chunk: int | None = None
) -> ProcessingJob:
    return await _with_scheduler(settings, lambda s: s.advance(job_id, expected_chunk))


async def run_job(settings: Settings, job_id: int) -> ProcessingJob:
    return await _with_scheduler(settings, lambda s: s.run(job_id))


async def run_pending(settings: Settings) -> ProcessingJob | None:
    return await _with_scheduler(settings, lambda s: s.run_pending())


async def cancel_job(settings: Settings, job_id: int, reason: str) -> ProcessingJob:
    return await _with_scheduler(settings, lambda s: s.cancel(job_id, reason))


async def report_job(settings: Settings, job_id: int) -> JobReport:
    return await _with_scheduler(settings, lambda s: s.storage.job_report(job_id))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sublet Finder - match managed UK properties against short-term let listings"
    )
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument(
        "--submit",
        type=Path,
        metavar="FILE",
        help="Create a job from a CSV-like address file (requires --contact-id)",
    )
    action.add_argument(
        "--advance",
        type=int,
        metavar="JOB_ID",
        help="Process the next chunk of a job",
    )
    action.add_argument(
        "--run",
        type=int,
        metavar="JOB_ID",
        help="Process a job chunk by chunk until it finishes",
    )
    action.add_argument(
        "--run-pending",
        action="store_true",
        help="Run the oldest pending or processing job to completion",
    )
    action.add_argument(
        "--cancel",
        type=int,
        metavar="JOB_ID",
        help="Cancel a job (marks it failed)",
    )
    action.add_argument(
        "--report",
        type=int,
        metavar="JOB_ID",
        help="Print outcome counts and scraping spend for a job",
    )
    action.add_argument(
        "--serve",
        action="store_true",
        help="Start the HTTP API with the background chunk scheduler",
    )
    parser.add_argument("--contact-id", help="Contact that owns the submitted properties")
    parser.add_argument(
        "--expected-chunk",
        type=int,
        default=None,
        help="With --advance: only advance if the job is still at this chunk",
    )
    parser.add_argument("--reason", default=CANCELLED_MESSAGE, help="With --cancel: reason")
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="With --serve: start the HTTP API only, skip the background scheduler",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.submit is not None and not args.contact_id:
        parser.error("--submit requires --contact-id")
    if args.submit is not None and not args.submit.is_file():
        parser.error(f"--submit: no such file: {args.submit}")

    # Configure logging
    import logging

    configure_logging(json_output=False, level=logging.DEBUG if args.debug else logging.INFO)

    try:
        settings = Settings()
    except Exception as e:
        logger.error("failed_to_load_settings", error=str(e))
        print(f"Error: Failed to load settings. {e}")
        print("Settings are read from SUBLET_FINDER_* environment variables or a .env file.")
        sys.exit(1)

    if args.serve:
        import uvicorn

        from sublet_finder.web.app import create_app

        app = create_app(settings, run_scheduler=not args.no_scheduler)
        uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
        return

    if not settings.scrapingbee_api_key.get_secret_value() and (
        args.advance is not None or args.run is not None or args.run_pending
    ):
        logger.warning("scraping_api_key_missing", hint="set SUBLET_FINDER_SCRAPINGBEE_API_KEY")

    try:
        if args.submit is not None:
            print_job(asyncio.run(submit_file(settings, args.submit, args.contact_id)))
        elif args.advance is not None:
            print_job(asyncio.run(advance_job(settings, args.advance, args.expected_chunk)))
        elif args.run is not None:
            print_job(asyncio.run(run_job(settings, args.run)))
        elif args.run_pending:
            job = asyncio.run(run_pending(settings))
            if job is None:
                print("No runnable jobs.")
            else:
                print_job(job)
        elif args.cancel is not None:
            print_job(asyncio.run(cancel_job(settings, args.cancel, args.reason)))
        elif args.report is not None:
            print_report(asyncio.run(report_job(settings, args.report)))
    except (JobNotFoundError, StaleJobError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
