"""FastAPI application factory with background chunk scheduler."""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from sublet_finder.config import Settings
from sublet_finder.db import MatchStorage
from sublet_finder.logging import configure_logging, get_logger
from sublet_finder.scheduler import JobScheduler

logger = get_logger(__name__)

SCHEDULER_INITIAL_DELAY_SECONDS = 5


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


async def _scheduler_loop(scheduler: JobScheduler, poll_seconds: float) -> None:
    """Drive runnable jobs to completion, polling when there are none."""
    # Initial delay so the web server can become responsive first
    logger.info("chunk_scheduler_initial_delay", seconds=SCHEDULER_INITIAL_DELAY_SECONDS)
    await asyncio.sleep(SCHEDULER_INITIAL_DELAY_SECONDS)

    while True:
        job = None
        try:
            job = await scheduler.run_pending()
        except Exception:
            logger.error("chunk_scheduler_error", exc_info=True)
        # Idle, or paused on the credit budget
        if job is None or not job.is_terminal:
            await asyncio.sleep(poll_seconds)


def create_app(settings: Settings | None = None, *, run_scheduler: bool = True) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings. Loaded from env if not provided.
        run_scheduler: Whether to start the background chunk scheduler.
    """
    if settings is None:
        settings = Settings()

    configure_logging(json_output=False)

    storage = MatchStorage(settings.database_path)
    scheduler = JobScheduler.from_settings(settings, storage)
    scheduler_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        nonlocal scheduler_task
        await storage.initialize()
        app.state.storage = storage
        app.state.settings = settings
        app.state.scheduler = scheduler

        if run_scheduler:
            scheduler_task = asyncio.create_task(
                _scheduler_loop(scheduler, settings.scheduler_poll_seconds)
            )
            logger.info(
                "web_server_started",
                scheduler_poll_seconds=settings.scheduler_poll_seconds,
            )
        else:
            logger.info("web_server_started", scheduler="disabled")

        yield

        # Shutdown
        if scheduler_task:
            scheduler_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scheduler_task
        await scheduler.close()
        await storage.close()
        logger.info("web_server_stopped")

    app = FastAPI(title="Sublet Finder", lifespan=lifespan)

    # Security headers
    app.add_middleware(SecurityHeadersMiddleware)

    # Register routes
    from sublet_finder.web.routes import router

    app.include_router(router)

    return app
