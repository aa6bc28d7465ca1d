"""Tests for the browser session manager."""

import asyncio
from unittest.mock import MagicMock, AsyncMock, patch

import aiohttp
import pytest
from playwright.async_api import Error as PlaywrightError

from tubepool.src.errors import ConnectionUnavailable, SessionEstablishFailed
from tubepool.src.models import SessionState
from tubepool.src.session import BrowserSessionManager, is_disconnect_error

ENDPOINT = "http://localhost:9222"


@pytest.fixture
def manager():
    return BrowserSessionManager(ENDPOINT, probe_timeout=1)


@pytest.fixture
def reachable(manager):
    """Make the DevTools probe succeed."""
    with patch.object(manager, "probe", AsyncMock(return_value=True)) as probe:
        yield probe


@pytest.fixture
def playwright_factory(mock_playwright):
    """Patch async_playwright() so start() hands back the mock driver."""
    with patch("tubepool.src.session.async_playwright") as factory:
        factory.return_value.start = AsyncMock(return_value=mock_playwright)
        yield factory


def disconnect_handler(browser):
    """The callback registered for the browser's 'disconnected' event."""
    for call in browser.on.call_args_list:
        if call.args[0] == "disconnected":
            return call.args[1]
    raise AssertionError("no disconnected handler registered")


class TestProbe:
    """Tests for the DevTools reachability probe."""

    @pytest.mark.asyncio
    async def test_probe_true_on_200(self, manager):
        """A 200 from /json/version means reachable."""
        response = MagicMock(status=200)
        http = MagicMock()
        http.get.return_value.__aenter__.return_value = response

        with patch("tubepool.src.session.aiohttp.ClientSession") as session_cls:
            session_cls.return_value.__aenter__.return_value = http
            assert await manager.probe() is True

        assert http.get.call_args.args[0] == f"{ENDPOINT}/json/version"

    @pytest.mark.asyncio
    async def test_probe_false_on_connection_error(self, manager):
        """Connection refused means unreachable."""
        http = MagicMock()
        http.get.side_effect = aiohttp.ClientConnectionError("Connection refused")

        with patch("tubepool.src.session.aiohttp.ClientSession") as session_cls:
            session_cls.return_value.__aenter__.return_value = http
            assert await manager.probe() is False

    @pytest.mark.asyncio
    async def test_probe_false_on_timeout(self, manager):
        """A probe that times out means unreachable."""
        http = MagicMock()
        http.get.side_effect = asyncio.TimeoutError()

        with patch("tubepool.src.session.aiohttp.ClientSession") as session_cls:
            session_cls.return_value.__aenter__.return_value = http
            assert await manager.probe() is False


class TestConnect:
    """Tests for establishing the session."""

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_raises_with_remediation(self, manager):
        """A failed probe raises ConnectionUnavailable naming the endpoint and the fix."""
        with patch.object(manager, "probe", AsyncMock(return_value=False)):
            with pytest.raises(ConnectionUnavailable) as exc_info:
                await manager.connect()

        error = exc_info.value
        assert error.endpoint == ENDPOINT
        assert ENDPOINT in error.message
        assert "--remote-debugging-port=9222" in error.message
        assert "--user-data-dir" in error.remediation
        assert manager.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_reuses_existing_context(self, manager, reachable, playwright_factory,
                                           mock_playwright, mock_browser):
        """The browser's first context is reused, not replaced."""
        session = await manager.connect()

        mock_playwright.chromium.connect_over_cdp.assert_awaited_once_with(ENDPOINT)
        assert session.state == SessionState.CONNECTED
        assert session.context is mock_browser.contexts[0]
        assert session.reused_context is True
        mock_browser.new_context.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_creates_context_when_none_exists(self, manager, reachable, playwright_factory,
                                                    mock_browser):
        """Without an existing context a new one is created."""
        new_context = MagicMock()
        new_context.pages = []
        mock_browser.contexts = []
        mock_browser.new_context = AsyncMock(return_value=new_context)

        session = await manager.connect()

        assert session.context is new_context
        assert session.reused_context is False

    @pytest.mark.asyncio
    async def test_attach_failure_raises_session_establish_failed(self, manager, reachable,
                                                                 playwright_factory, mock_playwright):
        """A reachable endpoint that refuses CDP attach raises SessionEstablishFailed."""
        mock_playwright.chromium.connect_over_cdp.side_effect = PlaywrightError("WebSocket error")

        with pytest.raises(SessionEstablishFailed) as exc_info:
            await manager.connect()

        assert "WebSocket error" in exc_info.value.message
        assert manager.state == SessionState.FAILED

    def test_from_config_env_override(self, monkeypatch):
        """TUBEPOOL_CDP_ENDPOINT wins over the config file."""
        monkeypatch.setenv("TUBEPOOL_CDP_ENDPOINT", "http://127.0.0.1:9333/")
        manager = BrowserSessionManager.from_config({"browser": {"cdp_endpoint": ENDPOINT}})

        assert manager.endpoint == "http://127.0.0.1:9333"

    def test_from_config_defaults(self, monkeypatch):
        """Missing config falls back to the default endpoint and timings."""
        monkeypatch.delenv("TUBEPOOL_CDP_ENDPOINT", raising=False)
        manager = BrowserSessionManager.from_config({})

        assert manager.endpoint == ENDPOINT
        assert manager.probe_timeout == 5.0
        assert manager.verify_interval == 60.0


class TestSession:
    """Tests for sharing and re-establishing the session."""

    @pytest.mark.asyncio
    async def test_returns_same_session_while_connected(self, manager, reachable, playwright_factory,
                                                        mock_playwright):
        """Repeated calls reuse the live session without reconnecting."""
        first = await manager.session()
        second = await manager.session()

        assert first is second
        assert mock_playwright.chromium.connect_over_cdp.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_connect(self, manager, reachable, playwright_factory,
                                                        mock_playwright):
        """Concurrent callers on a disconnected manager trigger one attach."""
        sessions = await asyncio.gather(*(manager.session() for _ in range(5)))

        assert all(s is sessions[0] for s in sessions)
        assert mock_playwright.chromium.connect_over_cdp.await_count == 1
        assert reachable.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_failure(self, manager):
        """Callers waiting on a failing attempt get its error, not a retry each."""
        async def slow_unreachable():
            await asyncio.sleep(0.01)
            return False

        with patch.object(manager, "probe", AsyncMock(side_effect=slow_unreachable)) as probe:
            results = await asyncio.gather(
                *(manager.session() for _ in range(3)), return_exceptions=True
            )

        assert all(isinstance(r, ConnectionUnavailable) for r in results)
        assert probe.await_count == 1

    @pytest.mark.asyncio
    async def test_reconnects_after_mark_failed(self, manager, reachable, playwright_factory,
                                                mock_playwright):
        """A failed session is re-established on the next call."""
        await manager.session()
        manager.mark_failed("target closed")
        assert manager.state == SessionState.FAILED

        session = await manager.session()

        assert session.state == SessionState.CONNECTED
        assert mock_playwright.chromium.connect_over_cdp.await_count == 2
        mock_playwright.stop.assert_awaited()

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, manager, playwright_factory):
        """A later call tries again once the browser becomes reachable."""
        with patch.object(manager, "probe", AsyncMock(return_value=False)):
            with pytest.raises(ConnectionUnavailable):
                await manager.session()

        with patch.object(manager, "probe", AsyncMock(return_value=True)):
            session = await manager.session()

        assert session.state == SessionState.CONNECTED
        assert session.last_error is None

    @pytest.mark.asyncio
    async def test_disconnect_event_marks_failed(self, manager, reachable, playwright_factory,
                                                 mock_browser):
        """The browser's disconnected event flags the session."""
        await manager.connect()

        disconnect_handler(mock_browser)(mock_browser)

        assert manager.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_stale_disconnect_event_is_ignored(self, manager, reachable, playwright_factory,
                                                     mock_playwright, mock_browser):
        """A disconnect from a replaced connection does not fail the new one."""
        replacement = MagicMock()
        replacement.contexts = mock_browser.contexts
        replacement.is_connected = MagicMock(return_value=True)
        mock_playwright.chromium.connect_over_cdp.side_effect = [mock_browser, replacement]

        await manager.connect()
        manager.mark_failed("target closed")
        await manager.session()

        disconnect_handler(mock_browser)(mock_browser)

        assert manager.state == SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_verify_detects_dead_browser(self, playwright_factory, mock_playwright, mock_browser):
        """A periodic liveness check reconnects when the browser is gone."""
        manager = BrowserSessionManager(ENDPOINT, verify_interval=0)
        with patch.object(manager, "probe", AsyncMock(return_value=True)):
            await manager.session()
            mock_browser.is_connected.return_value = False

            await manager.session()

        assert mock_playwright.chromium.connect_over_cdp.await_count == 2


class TestPage:
    """Tests for exclusive page access."""

    @pytest.mark.asyncio
    async def test_yields_users_existing_tab(self, manager, reachable, playwright_factory,
                                             mock_browser):
        """The first open tab of the context is used."""
        async with manager.page() as page:
            assert page is mock_browser.contexts[0].pages[0]

        mock_browser.contexts[0].new_page.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_opens_tab_when_none_exists(self, manager, reachable, playwright_factory,
                                              mock_browser):
        """A new tab is opened only when the context has none."""
        context = mock_browser.contexts[0]
        fresh = MagicMock()
        context.pages = []
        context.new_page = AsyncMock(return_value=fresh)

        async with manager.page() as page:
            assert page is fresh

    @pytest.mark.asyncio
    async def test_disconnect_error_marks_failed(self, manager, reachable, playwright_factory):
        """A closed-target error inside page() flags the session."""
        with pytest.raises(PlaywrightError):
            async with manager.page():
                raise PlaywrightError("Target page, context or browser has been closed")

        assert manager.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_other_errors_keep_session(self, manager, reachable, playwright_factory):
        """Ordinary page errors leave the session connected."""
        with pytest.raises(PlaywrightError):
            async with manager.page():
                raise PlaywrightError("Timeout 10000ms exceeded waiting for selector")

        assert manager.state == SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_serializes_access(self, manager, reachable, playwright_factory):
        """Only one caller holds the page at a time."""
        inside = 0
        peak = 0

        async def use_page():
            nonlocal inside, peak
            async with manager.page():
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(use_page() for _ in range(4)))

        assert peak == 1


class TestShutdown:
    """Tests for detaching from the browser."""

    @pytest.mark.asyncio
    async def test_shutdown_never_closes_remote_context(self, manager, reachable, playwright_factory,
                                                        mock_playwright, mock_browser):
        """Shutdown stops the driver but leaves the user's browser alone."""
        await manager.connect()

        await manager.shutdown()

        mock_playwright.stop.assert_awaited_once()
        mock_browser.contexts[0].close.assert_not_awaited()
        mock_browser.close.assert_not_awaited()
        assert manager.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, manager, reachable, playwright_factory,
                                          mock_playwright):
        """A second shutdown does nothing."""
        await manager.connect()

        await manager.shutdown()
        await manager.shutdown()

        mock_playwright.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_session_after_shutdown_raises(self, manager):
        """No new session is established after shutdown."""
        await manager.shutdown()

        with pytest.raises(ConnectionUnavailable):
            await manager.session()


class TestStatus:
    """Tests for session status reporting."""

    @pytest.mark.asyncio
    async def test_status_when_connected(self, manager, reachable, playwright_factory):
        """status reports the live connection."""
        await manager.connect()

        status = manager.status()

        assert status.endpoint == ENDPOINT
        assert status.state == SessionState.CONNECTED
        assert status.reused_context is True
        assert status.page_count == 1
        assert status.last_verified is not None

    def test_status_before_connect(self, manager):
        """A fresh manager is disconnected with no pages."""
        status = manager.status()

        assert status.state == SessionState.DISCONNECTED
        assert status.page_count == 0


class TestIsDisconnectError:
    """Tests for classifying Playwright errors."""

    def test_recognizes_closed_target(self):
        assert is_disconnect_error(PlaywrightError("Target page, context or browser has been closed"))
        assert is_disconnect_error(PlaywrightError("Browser closed."))

    def test_ignores_ordinary_errors(self):
        assert not is_disconnect_error(PlaywrightError("Timeout 30000ms exceeded."))
