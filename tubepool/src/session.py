"""
Browser session management for the tubepool service.

Owns the one connection to the operator's Chrome instance (attached over the
Chrome DevTools Protocol). The browser and its context belong to the operator:
this process attaches to them, serializes its own use of them, and detaches on
shutdown without closing anything it did not open.
"""

import asyncio
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import aiohttp
from playwright.async_api import async_playwright, Browser, BrowserContext, Page
from playwright.async_api import Error as PlaywrightError

from shared.logging import get_logger

from .errors import ConnectionUnavailable, SessionEstablishFailed, TubePoolError
from .models import SessionState, SessionStatus

log = get_logger("tubepool", "session")

DEFAULT_CDP_ENDPOINT = "http://localhost:9222"

# Playwright error fragments that mean the remote side went away
_DISCONNECT_MARKERS = (
    "has been closed",
    "target closed",
    "browser closed",
    "connection closed",
    "websocket",
)


def is_disconnect_error(error: BaseException) -> bool:
    """Whether a Playwright error indicates the browser connection is gone."""
    message = str(error).lower()
    return any(marker in message for marker in _DISCONNECT_MARKERS)


@dataclass
class BrowserSession:
    """The single live connection to the remote browser."""

    endpoint: str
    state: SessionState = SessionState.DISCONNECTED
    last_verified: Optional[float] = None
    browser: Optional[Browser] = None
    context: Optional[BrowserContext] = None
    reused_context: bool = False
    last_error: Optional[str] = None


class BrowserSessionManager:
    """
    Guarantees a single healthy browser session or fails fast.

    - connect() probes the endpoint, then attaches over CDP, reusing the
      browser's existing context when there is one.
    - session() returns the shared session, reconnecting once if it failed.
      Reconnects are serialized: callers that observe a failure while a
      reconnect is in flight wait for it and share its outcome.
    - page() additionally serializes browser use, so only one caller drives
      the browser at a time.
    - shutdown() detaches exactly once and never closes the remote context.
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_CDP_ENDPOINT,
        probe_timeout: float = 5.0,
        verify_interval: float = 60.0,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.probe_timeout = probe_timeout
        self.verify_interval = verify_interval

        self._session = BrowserSession(endpoint=self.endpoint)
        self._playwright = None
        self._connect_lock = asyncio.Lock()
        self._access_lock = asyncio.Lock()
        self._attempts = 0  # finished connection attempts
        self._last_exc: Optional[TubePoolError] = None
        self._shut_down = False

    @classmethod
    def from_config(cls, config: dict) -> "BrowserSessionManager":
        """Build from the `browser` config section (env var wins for the endpoint)."""
        browser_config = config.get("browser", {})
        endpoint = os.environ.get(
            "TUBEPOOL_CDP_ENDPOINT",
            browser_config.get("cdp_endpoint", DEFAULT_CDP_ENDPOINT),
        )
        return cls(
            endpoint=endpoint,
            probe_timeout=browser_config.get("probe_timeout_seconds", 5.0),
            verify_interval=browser_config.get("verify_interval_seconds", 60.0),
        )

    @property
    def state(self) -> SessionState:
        return self._session.state

    async def probe(self) -> bool:
        """Lightweight reachability check against the DevTools HTTP endpoint."""
        try:
            async with aiohttp.ClientSession() as http:
                async with http.get(
                    f"{self.endpoint}/json/version",
                    timeout=aiohttp.ClientTimeout(total=self.probe_timeout),
                ) as resp:
                    return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            log.warning("tubepool.session.probe_failed",
                        endpoint=self.endpoint,
                        error=str(e) or type(e).__name__)
            return False

    async def connect(self) -> BrowserSession:
        """Establish the session (or join an attempt already in flight)."""
        if self._shut_down:
            raise ConnectionUnavailable(self.endpoint, "session manager has been shut down")
        return await self._reconnect(self._attempts)

    async def session(self) -> BrowserSession:
        """Return the live session, attempting one reconnect if it is not connected."""
        if self._shut_down:
            raise ConnectionUnavailable(self.endpoint, "session manager has been shut down")

        if self._session.state == SessionState.CONNECTED and self._verify():
            return self._session

        return await self._reconnect(self._attempts)

    def mark_failed(self, reason: str):
        """Flag the session as failed so the next caller reconnects."""
        if self._session.state == SessionState.FAILED:
            return
        self._session.state = SessionState.FAILED
        self._session.last_error = reason
        log.warning("tubepool.session.failed", endpoint=self.endpoint, reason=reason)

    @asynccontextmanager
    async def page(self):
        """
        Exclusive access to the browser's working tab.

        Reuses the first open tab of the context (the user's own), opening a
        new one only when none exists.
        """
        async with self._access_lock:
            session = await self.session()
            try:
                pages = session.context.pages
                page: Page = pages[0] if pages else await session.context.new_page()
                yield page
            except PlaywrightError as e:
                if is_disconnect_error(e):
                    self.mark_failed(str(e))
                raise

    async def shutdown(self):
        """Detach from the browser. The remote context stays open."""
        if self._shut_down:
            return
        self._shut_down = True
        await self._release()
        self._session.state = SessionState.DISCONNECTED
        log.info("tubepool.session.shutdown", endpoint=self.endpoint, remote_context_closed=False)

    def status(self) -> SessionStatus:
        session = self._session
        page_count = 0
        if session.context is not None and session.state == SessionState.CONNECTED:
            try:
                page_count = len(session.context.pages)
            except PlaywrightError:
                page_count = 0
        return SessionStatus(
            endpoint=self.endpoint,
            state=session.state,
            last_verified=(
                datetime.fromtimestamp(session.last_verified) if session.last_verified else None
            ),
            reused_context=session.reused_context,
            page_count=page_count,
            last_error=session.last_error,
        )

    # --- internals ---

    def _verify(self) -> bool:
        """Periodic liveness re-check of a connected session."""
        session = self._session
        now = time.time()
        if session.last_verified is not None and now - session.last_verified < self.verify_interval:
            return True
        if session.browser is None or not session.browser.is_connected():
            self.mark_failed("browser no longer connected")
            return False
        session.last_verified = now
        return True

    async def _reconnect(self, observed_attempts: int) -> BrowserSession:
        async with self._connect_lock:
            if self._attempts != observed_attempts:
                # An attempt finished while we waited; share its outcome.
                if self._session.state == SessionState.CONNECTED:
                    return self._session
                if self._last_exc is not None:
                    raise self._last_exc
            try:
                return await self._establish()
            finally:
                self._attempts += 1

    async def _establish(self) -> BrowserSession:
        session = self._session
        session.state = SessionState.CONNECTING
        log.info("tubepool.session.connecting", endpoint=self.endpoint, attempt=self._attempts + 1)

        # Drop any previous driver connection before attaching again
        await self._release()

        if not await self.probe():
            return self._fail(ConnectionUnavailable(self.endpoint, "DevTools endpoint unreachable"))

        try:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            browser = await self._playwright.chromium.connect_over_cdp(self.endpoint)
            contexts = browser.contexts
            if contexts:
                context = contexts[0]
                reused = True
            else:
                context = await browser.new_context()
                reused = False
        except Exception as e:
            return self._fail(SessionEstablishFailed(self.endpoint, str(e) or type(e).__name__), e)

        browser.on("disconnected", lambda _: self._on_disconnected(browser))

        session.browser = browser
        session.context = context
        session.reused_context = reused
        session.last_verified = time.time()
        session.last_error = None
        session.state = SessionState.CONNECTED
        self._last_exc = None

        log.info("tubepool.session.connected",
                 endpoint=self.endpoint,
                 browser_version=browser.version,
                 reused_context=reused,
                 pages=len(context.pages))
        return session

    def _on_disconnected(self, browser: Browser):
        # Events from a connection we already replaced are ignored
        if self._session.browser is browser:
            self.mark_failed("browser disconnected")

    def _fail(self, error: TubePoolError, cause: Optional[BaseException] = None):
        self._session.state = SessionState.FAILED
        self._session.last_error = error.message
        self._last_exc = error
        log.error("tubepool.session.connect_failed",
                  endpoint=self.endpoint,
                  error=error.code,
                  reason=str(cause) if cause else error.message)
        if cause is not None:
            raise error from cause
        raise error

    async def _release(self):
        """Stop our Playwright driver. Closes our connection, not the browser."""
        playwright = self._playwright
        self._playwright = None
        self._session.browser = None
        self._session.context = None
        if playwright is None:
            return
        try:
            await playwright.stop()
        except Exception as e:
            log.warning("tubepool.session.release_failed", endpoint=self.endpoint, error=str(e))
