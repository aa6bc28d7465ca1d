"""Shared fixtures for tubepool tests."""

import asyncio
from unittest.mock import MagicMock, AsyncMock

import pytest

from tubepool.src.models import AccountInfo, SessionState, SessionStatus, VideoInfo


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeScraper:
    """Scraper double: records calls, optionally blocks on a gate or raises."""

    def __init__(self, per_page: int = 3):
        self.per_page = per_page
        self.calls: list[tuple[str, int]] = []
        self.error = None
        self.gate = None
        self.account_error = None

    async def account_info(self):
        if self.account_error is not None:
            raise self.account_error
        return AccountInfo(name="Test User", handle="@testuser")

    async def fetch_listing(self, tab, page):
        self.calls.append((tab, page))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return [
            VideoInfo(
                video_url=f"https://www.youtube.com/watch?v={tab}-{page}-{i}",
                video_id=f"{tab}-{page}-{i}",
                title=f"{tab} video {i}",
            )
            for i in range(self.per_page)
        ]


class FakeSummarizer:
    """Summarizer double tracking how many calls run at once."""

    def __init__(self):
        self.calls: list[str] = []
        self.error = None
        self.gate = None
        self.delay = 0.0
        self.running = 0
        self.max_running = 0

    async def summarize(self, video_url, title=None):
        self.calls.append(video_url)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return f"Summary of {video_url}"
        finally:
            self.running -= 1


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_scraper():
    return FakeScraper()


@pytest.fixture
def fake_summarizer():
    return FakeSummarizer()


@pytest.fixture
def sample_config():
    """Sample configuration for tests."""
    return {
        "server": {"host": "127.0.0.1", "port": 8080},
        "browser": {
            "cdp_endpoint": "http://localhost:9222",
            "probe_timeout_seconds": 1,
        },
        "cache": {
            "freshness_seconds": 300,
            "stale_fallback": True,
            "fetch_timeout_seconds": 5,
        },
        "queue": {
            "workers": 1,
            "job_timeout_seconds": 5,
            "reuse_completed": True,
            "retention": {"max_age_seconds": 3600, "max_completed": 100},
        },
        "legacy": {"summary_timeout_seconds": 5},
    }


@pytest.fixture
def mock_sessions():
    """BrowserSessionManager stand-in for facade tests."""
    sessions = MagicMock()
    sessions.endpoint = "http://localhost:9222"
    sessions.connect = AsyncMock()
    sessions.shutdown = AsyncMock()
    sessions.status = MagicMock(return_value=SessionStatus(
        endpoint="http://localhost:9222",
        state=SessionState.CONNECTED,
        reused_context=True,
        page_count=1,
    ))
    return sessions


@pytest.fixture
def mock_browser():
    """Playwright Browser connected over CDP with one existing context and tab."""
    page = MagicMock()
    page.url = "https://www.youtube.com/feed/subscriptions"
    context = MagicMock()
    context.pages = [page]
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()
    browser = MagicMock()
    browser.contexts = [context]
    browser.version = "120.0.6099.109"
    browser.is_connected = MagicMock(return_value=True)
    browser.new_context = AsyncMock()
    browser.close = AsyncMock()
    return browser


@pytest.fixture
def mock_playwright(mock_browser):
    """Result of async_playwright().start()."""
    playwright = MagicMock()
    playwright.chromium.connect_over_cdp = AsyncMock(return_value=mock_browser)
    playwright.stop = AsyncMock()
    return playwright
