"""FastAPI HTTP API for the tubepool service."""

import asyncio
import os
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from shared.logging import get_logger

from .cache import ListingCache
from .errors import OperationTimeout, TubePoolError
from .jobs import SummaryRequest, SummaryRequestQueue
from .models import (
    AccountResponse, ListingResponse, InvalidateResponse, SummarySubmitRequest,
    SummaryStatusResponse, SummaryResponse, HealthResponse, RequestStatus,
)
from .scraper import Scraper, Summarizer, YouTubeScraper, YouTubeSummarizer
from .session import BrowserSessionManager
from .workers import WorkerPool

log = get_logger("tubepool", "api")

VERSION = "0.1.0"

# Error code -> HTTP status
HTTP_STATUS = {
    "invalid_request": 400,
    "not_found": 404,
    "internal_error": 500,
    "fetch_failed": 502,
    "account_lookup_failed": 502,
    "summarize_failed": 502,
    "session_establish_failed": 502,
    "connection_unavailable": 503,
    "timeout": 504,
}


class TubePool:
    """
    The tubepool service core.

    Wires the shared browser session, the listing cache and the summary
    queue with its workers. Every public method returns a structured
    response; errors never propagate to the caller.
    """

    def __init__(
        self,
        config: dict,
        sessions: Optional[BrowserSessionManager] = None,
        scraper: Optional[Scraper] = None,
        summarizer: Optional[Summarizer] = None,
    ):
        self.config = config
        self.start_time = time.time()

        self.sessions = sessions or BrowserSessionManager.from_config(config)
        self.scraper = scraper or YouTubeScraper(self.sessions, config)
        self.summarizer = summarizer or YouTubeSummarizer(self.sessions, config)

        self.cache = ListingCache.from_config(self.scraper, config)
        self.queue = SummaryRequestQueue.from_config(config)
        self.workers = WorkerPool.from_config(self.queue, self.summarizer, config)

        self.legacy_timeout = config.get("legacy", {}).get("summary_timeout_seconds", 180.0)

    async def startup(self):
        """Attach to the browser and start the workers."""
        log.info("tubepool.service.lifecycle", action="starting", endpoint=self.sessions.endpoint)

        try:
            await self.sessions.connect()
        except TubePoolError as e:
            # Not fatal: calls report the error and reconnect on demand
            log.warning("tubepool.service.browser_unavailable",
                        error=e.code, message=e.message, will_retry=True)

        await self.workers.start()
        log.info("tubepool.service.lifecycle", action="started", workers=len(self.workers.workers))

    async def shutdown(self):
        """Stop the workers and detach from the browser."""
        log.info("tubepool.service.lifecycle", action="stopping")
        try:
            await self.workers.stop()
        finally:
            await self.sessions.shutdown()
        log.info("tubepool.service.lifecycle", action="stopped")

    # --- listings ---

    async def get_listing(self, tab: str, page: int = 0, force_refresh: bool = False) -> ListingResponse:
        try:
            result = await self.cache.get(tab, page, force_refresh=force_refresh)
        except TubePoolError as e:
            return ListingResponse(success=False, tab=tab, page=page, error=e.code, message=e.message)
        except Exception as e:
            log.exception(e, "tubepool.api.listing_error", {"tab": tab, "page": page})
            return ListingResponse(success=False, tab=tab, page=page,
                                   error="internal_error", message=str(e))

        return ListingResponse(
            success=True,
            tab=result.tab,
            page=result.page,
            videos=result.videos,
            from_cache=result.from_cache,
            stale=result.stale,
            fetched_at=datetime.fromtimestamp(result.fetched_at),
            error=result.error.code if result.error else None,
            message=self._fallback_message(result),
        )

    def invalidate(self, tab: Optional[str] = None) -> InvalidateResponse:
        if tab:
            removed = self.cache.invalidate_tab(tab)
            return InvalidateResponse(success=True, message=f"Cache invalidated for tab: {tab}",
                                      removed=removed)
        removed = self.cache.invalidate_all()
        return InvalidateResponse(success=True, message="All caches invalidated", removed=removed)

    def cache_stats(self) -> dict:
        return self.cache.stats()

    # --- summaries ---

    def submit_summary(
        self,
        video_url: str,
        title: Optional[str] = None,
        force_regenerate: bool = False,
    ) -> SummaryStatusResponse:
        try:
            request = self.queue.submit(video_url, title, force_regenerate=force_regenerate)
        except TubePoolError as e:
            return SummaryStatusResponse(success=False, error=e.code, message=e.message)
        return self._status_response(request)

    def summary_status(self, request_id: str) -> SummaryStatusResponse:
        try:
            request = self.queue.status(request_id)
        except TubePoolError as e:
            return SummaryStatusResponse(success=False, request_id=request_id,
                                         error=e.code, message=e.message)
        return self._status_response(request)

    def queue_stats(self) -> dict:
        stats = self.queue.stats()
        stats["workers"] = len(self.workers.workers)
        return stats

    async def summarize_now(self, video_url: str, title: Optional[str] = None) -> SummaryResponse:
        """Legacy synchronous path: call the Summarizer directly, no queueing."""
        if not video_url or not video_url.strip():
            return SummaryResponse(success=False, error="invalid_request", message="video_url is required")

        start = time.time()
        try:
            summary = await asyncio.wait_for(
                self.summarizer.summarize(video_url.strip(), title), timeout=self.legacy_timeout
            )
        except asyncio.TimeoutError:
            timeout = OperationTimeout("summarization", self.legacy_timeout)
            return SummaryResponse(success=False, error=timeout.code, message=timeout.message)
        except TubePoolError as e:
            return SummaryResponse(success=False, error=e.code, message=e.message)
        except Exception as e:
            log.exception(e, "tubepool.api.summary_error", {"video_url": video_url})
            return SummaryResponse(success=False, error="internal_error", message=str(e))

        return SummaryResponse(success=True, summary=summary,
                               response_time_seconds=round(time.time() - start, 2))

    # --- introspection ---

    async def account(self) -> AccountResponse:
        """The YouTube account the shared browser is signed in to."""
        try:
            info = await self.scraper.account_info()
        except TubePoolError as e:
            return AccountResponse(success=False, error=e.code, message=e.message)
        except Exception as e:
            log.exception(e, "tubepool.api.account_error", {})
            return AccountResponse(success=False, error="internal_error", message=str(e))
        return AccountResponse(success=True, account=info)

    def activity(self, include_history: bool = False, history_limit: int = 5) -> dict:
        return self.workers.activity(include_history, history_limit)

    def health(self) -> HealthResponse:
        return HealthResponse(
            status="ok",
            uptime_seconds=time.time() - self.start_time,
            version=VERSION,
            browser=self.sessions.status(),
            queue=self.queue.stats(),
        )

    @staticmethod
    def _fallback_message(result) -> Optional[str]:
        if result.error is None:
            return None
        kind = "stale" if result.stale else "cached"
        return f"Serving {kind} listing: {result.error.message}"

    @staticmethod
    def _status_response(request: SummaryRequest) -> SummaryStatusResponse:
        response = SummaryStatusResponse(
            success=True,
            request_id=request.request_id,
            status=request.status,
            queue_position=request.queue_position,
        )
        if request.status == RequestStatus.COMPLETED:
            response.summary = request.result
        elif request.status == RequestStatus.FAILED:
            response.error = request.error_code
            response.message = request.error
        return response


def _respond(response, success: bool, error: Optional[str]):
    """Model as-is on success, JSON with the mapped status code otherwise."""
    if success:
        return response
    return JSONResponse(
        status_code=HTTP_STATUS.get(error, 500),
        content=response.model_dump(mode="json"),
    )


def create_app(config: dict, pool: Optional[TubePool] = None) -> FastAPI:
    """Create the FastAPI application."""

    app = FastAPI(
        title="tubepool",
        description="Cached YouTube listings and queued AI summaries from a shared browser session",
        version=VERSION,
    )

    pool = pool or TubePool(config)
    app.state.pool = pool

    @app.on_event("startup")
    async def startup():
        await pool.startup()

    @app.on_event("shutdown")
    async def shutdown():
        await pool.shutdown()

    # ==================== LISTINGS ====================

    @app.get("/api/videos", response_model=ListingResponse)
    async def videos(tab: str = "subscriptions", page: int = 0, force_refresh: bool = False):
        """Videos for a tab page, from cache when fresh."""
        log.info("tubepool.api.videos", tab=tab, page=page, force_refresh=force_refresh)
        response = await pool.get_listing(tab, page, force_refresh)
        return _respond(response, response.success, response.error)

    @app.post("/api/cache/invalidate", response_model=InvalidateResponse)
    async def invalidate_cache(tab: Optional[str] = None):
        """Invalidate one tab, or everything when no tab is given."""
        return pool.invalidate(tab)

    @app.get("/api/cache/stats")
    async def cache_stats():
        return pool.cache_stats()

    # ==================== SUMMARY QUEUE ====================

    @app.post("/api/summary/request", response_model=SummaryStatusResponse)
    async def summary_request(request: SummarySubmitRequest):
        """
        Submit a summary request. Returns immediately.

        Poll /api/summary/status/{request_id} until COMPLETED or FAILED.
        """
        response = pool.submit_summary(request.video_url, request.video_title)
        return _respond(response, response.success, response.error)

    @app.post("/api/summary/regenerate", response_model=SummaryStatusResponse)
    async def summary_regenerate(request: SummarySubmitRequest):
        """Submit ignoring any retained summary for the video."""
        response = pool.submit_summary(request.video_url, request.video_title, force_regenerate=True)
        return _respond(response, response.success, response.error)

    @app.get("/api/summary/status/{request_id}", response_model=SummaryStatusResponse)
    async def summary_status(request_id: str):
        response = pool.summary_status(request_id)
        # A FAILED request is still a successful lookup
        return _respond(response, response.success, response.error)

    @app.get("/api/summary/queue/stats")
    async def queue_stats():
        return pool.queue_stats()

    @app.post("/api/summary", response_model=SummaryResponse)
    async def summary_sync(request: SummarySubmitRequest):
        """Legacy synchronous summary; blocks for the whole browser round-trip."""
        log.info("tubepool.api.summary_sync", video_url=request.video_url)
        response = await pool.summarize_now(request.video_url, request.video_title)
        return _respond(response, response.success, response.error)

    # ==================== SERVICE ====================

    @app.get("/api/account", response_model=AccountResponse)
    async def account():
        log.info("tubepool.api.account")
        response = await pool.account()
        return _respond(response, response.success, response.error)

    @app.get("/api/activity")
    async def activity(include_history: bool = False, history_limit: int = 5):
        """What each worker is currently summarizing."""
        return pool.activity(include_history, history_limit)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return pool.health()

    return app


def load_config() -> dict:
    """Load service configuration (plus .env overrides read by the components)."""
    import yaml
    load_dotenv()
    config_path = Path(__file__).parent.parent / "config.yaml"
    if config_path.exists():
        return yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    return {}


def server_address(config: dict) -> tuple[str, int]:
    """(host, port) to serve on; TUBEPOOL_HOST / TUBEPOOL_PORT override the config."""
    server_config = config.get("server", {})
    host = os.environ.get("TUBEPOOL_HOST", server_config.get("host", "127.0.0.1"))
    port = int(os.environ.get("TUBEPOOL_PORT", server_config.get("port", 8080)))
    return host, port
