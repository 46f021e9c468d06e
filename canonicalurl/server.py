"""
HTTP endpoint: GET /?url=<url-encoded target>

Always answers 200 with a JSON body; the outcome is in "error" and "reason".
"""

import asyncio
import os
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import Settings, __version__
from .domains import DomainPolicy
from .fetcher import ContentFetcher, RedirectProbe
from .models import ResolutionRequest, ResolutionResult
from .pipeline import ResolutionPipeline

logger = structlog.get_logger(__name__)

OPT_OUT_VALUES = ("0", "false", "no")


def wants_fetch(value: Optional[str]) -> bool:
    """Only an explicit 0, false or no opts out; anything else keeps fetching."""
    if value is None:
        return True
    return value.strip().lower() not in OPT_OUT_VALUES


def _log_undeliverable(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    if task.exception() is not None:
        logger.error("late_resolution_failed", error=str(task.exception()))
        return
    logger.warning("undeliverable_response", **task.result().to_dict())


def create_app(
    settings: Settings,
    policy: DomainPolicy = None,
    transport: httpx.AsyncBaseTransport = None,
) -> FastAPI:
    """Build the app for one worker; domain lists are loaded here, once."""
    if policy is None:
        policy = DomainPolicy.from_settings(settings)

    pipeline = ResolutionPipeline(
        settings,
        policy,
        probe=RedirectProbe.from_settings(settings, transport=transport),
        fetcher=ContentFetcher.from_settings(settings, transport=transport),
    )
    deadline = settings.server_timeout_ms / 1000.0

    app = FastAPI(title="canonicalurl", version=__version__)
    app.state.settings = settings
    app.state.pipeline = pipeline

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "pid": os.getpid()}

    @app.get("/")
    async def resolve_endpoint(request: Request, url: Optional[str] = None, get: Optional[str] = None):
        resolution = ResolutionRequest(url=url, fetch=wants_fetch(get))
        # drain the (empty) request body so a later disconnect is visible
        await request.body()

        # the pipeline runs to completion even when the reply can no longer be sent
        task = asyncio.ensure_future(pipeline.resolve(resolution))
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("request_timeout", url=url, timeout_ms=settings.server_timeout_ms)
            task.add_done_callback(_log_undeliverable)
            result = ResolutionResult.for_request(resolution).fail("request timeout").finalize()

        if await request.is_disconnected():
            logger.warning("connection_closed_unexpectedly", url=url, elapsed=result.elapsed)

        body = result.to_dict()
        logger.info("response", **body)
        return JSONResponse(body, status_code=200)

    return app
