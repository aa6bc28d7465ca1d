"""
Scraper and Summarizer capabilities.

The cache and the summary queue depend only on the two protocols below. The
YouTube implementations drive the shared browser session; their DOM
selectors follow YouTube's current markup and are expected to drift.
"""

import asyncio
import re
from typing import Optional, Protocol

from playwright.async_api import Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from shared.logging import get_logger

from .errors import (
    AccountLookupFailed, FetchFailed, InvalidRequest, OperationTimeout, SummarizeFailed,
)
from .models import AccountInfo, VideoInfo
from .session import BrowserSessionManager

log = get_logger("tubepool", "scraper")

DEFAULT_TABS = {
    "home": "https://www.youtube.com/",
    "subscriptions": "https://www.youtube.com/feed/subscriptions",
}

VIDEO_CARD = "ytd-rich-item-renderer"

EXTRACT_VIDEOS_JS = """
() => Array.from(document.querySelectorAll('ytd-rich-item-renderer')).map(card => {
    const link = card.querySelector('a#video-title-link, a#thumbnail, a[href*="/watch"]');
    const href = link ? link.href : null;
    const match = href ? href.match(/[?&]v=([^&]+)/) : null;
    const title = card.querySelector('#video-title');
    const channel = card.querySelector('ytd-channel-name a, #channel-name a');
    const thumb = card.querySelector('img');
    const duration = card.querySelector(
        'ytd-thumbnail-overlay-time-status-renderer #text, badge-shape .badge-shape-wiz__text'
    );
    const meta = card.querySelectorAll('#metadata-line span');
    const text = el => (el && el.textContent ? el.textContent.trim() : null);
    return {
        video_url: href,
        video_id: match ? match[1] : null,
        title: text(title),
        channel_name: text(channel),
        thumbnail_url: thumb ? thumb.src || null : null,
        duration: text(duration),
        published_at: meta.length > 1 ? text(meta[meta.length - 1]) : null,
    };
})
"""

MORE_ACTIONS = "button[aria-label='More actions'], ytd-menu-renderer button#button"
ASK_OPTION = "ytd-menu-service-item-renderer:has(yt-formatted-string:text('Ask'))"
ASK_OPTION_FALLBACK = "tp-yt-paper-item:has-text('Ask')"
ASK_PANEL = "ytd-engagement-panel-section-list-renderer[target-id='PAyouchat']"
SUMMARIZE_CHIP = ".ytwYouChatChipsDataChip:has-text('Summarize')"
RESPONSE_LAST_PARAGRAPH = "you-chat-item-view-model markdown-div p"
RESPONSE_BLOCKS = "you-chat-item-view-model markdown-div"
PANEL_CLOSE = "ytd-engagement-panel-title-header-renderer button[aria-label='Close']"

# Greeting text the Ask panel shows before the actual answer
PANEL_BOILERPLATE = ("Hello! Curious", "Not sure what to ask")

ACCOUNT_AVATAR = "button#avatar-btn, img.ytd-topbar-menu-button-renderer"
ACCOUNT_AVATAR_IMAGE = "button#avatar-btn img"
ACCOUNT_NAME = "#account-name"
ACCOUNT_HANDLE = "#channel-handle"

PLAYWRIGHT_TIMEOUT_MS = re.compile(r"Timeout (\d+)ms")


def timeout_seconds(error: PlaywrightTimeoutError, default_ms: float) -> float:
    """Deadline named in a Playwright timeout message, else the configured one."""
    match = PLAYWRIGHT_TIMEOUT_MS.search(str(error))
    return int(match.group(1)) / 1000 if match else default_ms / 1000


class Scraper(Protocol):
    async def fetch_listing(self, tab: str, page: int) -> list[VideoInfo]:
        ...

    async def account_info(self) -> AccountInfo:
        ...


class Summarizer(Protocol):
    async def summarize(self, video_url: str, title: Optional[str] = None) -> str:
        ...


class YouTubeScraper:
    """Scrapes video cards from a YouTube feed tab."""

    def __init__(self, sessions: BrowserSessionManager, config: dict):
        youtube = config.get("youtube", {})
        browser = config.get("browser", {})
        self.sessions = sessions
        self.tabs = {k.lower(): v for k, v in youtube.get("tabs", DEFAULT_TABS).items()}
        self.videos_per_page = youtube.get("videos_per_page", 16)
        self.max_scroll_attempts = youtube.get("max_scroll_attempts", 10)
        self.scroll_pause_ms = youtube.get("scroll_pause_ms", 1500)
        self.element_wait_timeout_ms = browser.get("element_wait_timeout_ms", 10000)
        self.navigation_timeout_ms = browser.get("navigation_timeout_ms", 30000)
        self._account: Optional[AccountInfo] = None

    def tab_url(self, tab: str) -> str:
        url = self.tabs.get(tab.lower())
        if url is None:
            raise InvalidRequest(f"Unknown tab '{tab}'. Available: {', '.join(sorted(self.tabs))}")
        return url

    async def fetch_listing(self, tab: str, page: int) -> list[VideoInfo]:
        url = self.tab_url(tab)
        wanted = (page + 1) * self.videos_per_page

        log.info("tubepool.scraper.fetch", tab=tab, page=page, url=url)
        try:
            async with self.sessions.page() as browser_page:
                await browser_page.goto(url, wait_until="domcontentloaded",
                                        timeout=self.navigation_timeout_ms)
                await browser_page.wait_for_selector(VIDEO_CARD, timeout=self.element_wait_timeout_ms)
                await self._scroll_to_load(browser_page, wanted)
                raw = await browser_page.evaluate(EXTRACT_VIDEOS_JS)
        except PlaywrightTimeoutError as e:
            raise OperationTimeout(
                f"listing fetch for '{tab}' page {page}",
                timeout_seconds(e, self.navigation_timeout_ms),
            ) from e
        except PlaywrightError as e:
            raise FetchFailed(tab, page, str(e)) from e

        videos = [VideoInfo(**item) for item in raw if item.get("video_url")]
        start = page * self.videos_per_page
        result = videos[start:start + self.videos_per_page]

        log.info("tubepool.scraper.fetched",
                 tab=tab, page=page, found=len(videos), returned=len(result))
        return result

    async def _scroll_to_load(self, browser_page: Page, target_count: int):
        """Scroll until enough cards are rendered or attempts run out."""
        for _ in range(self.max_scroll_attempts):
            count = await browser_page.locator(VIDEO_CARD).count()
            if count >= target_count:
                return
            await browser_page.evaluate("window.scrollTo(0, document.documentElement.scrollHeight)")
            await browser_page.wait_for_timeout(self.scroll_pause_ms)
        log.debug("tubepool.scraper.scroll_exhausted", target=target_count)

    async def account_info(self) -> AccountInfo:
        """
        The account signed in to the shared browser, read from the avatar menu.

        A successful lookup is kept for the life of the process; failures are
        not cached, so the next call tries again.
        """
        if self._account is not None:
            return self._account

        log.info("tubepool.scraper.account_lookup")
        try:
            async with self.sessions.page() as browser_page:
                if "youtube.com" not in (browser_page.url or ""):
                    await browser_page.goto(self.tabs.get("home", DEFAULT_TABS["home"]),
                                            wait_until="domcontentloaded",
                                            timeout=self.navigation_timeout_ms)

                avatar = browser_page.locator(ACCOUNT_AVATAR).first
                if await avatar.count() == 0:
                    raise AccountLookupFailed("no account avatar on the page; is the browser signed in?")

                image = browser_page.locator(ACCOUNT_AVATAR_IMAGE).first
                image_url = await image.get_attribute("src") if await image.count() > 0 else None

                await avatar.click()
                await browser_page.wait_for_timeout(500)
                name = await self._text_of(browser_page, ACCOUNT_NAME)
                handle = await self._text_of(browser_page, ACCOUNT_HANDLE)
                await browser_page.keyboard.press("Escape")
        except PlaywrightTimeoutError as e:
            raise OperationTimeout("account lookup", timeout_seconds(e, self.navigation_timeout_ms)) from e
        except PlaywrightError as e:
            raise AccountLookupFailed(str(e)) from e

        if not name and not handle:
            raise AccountLookupFailed("the account menu showed no name or handle")

        self._account = AccountInfo(name=name, handle=handle, profile_image_url=image_url)
        log.info("tubepool.scraper.account", name=name, handle=handle)
        return self._account

    async def _text_of(self, browser_page: Page, selector: str) -> Optional[str]:
        element = browser_page.locator(selector).first
        if await element.count() == 0:
            return None
        text = await element.text_content()
        return text.strip() if text and text.strip() else None


class YouTubeSummarizer:
    """Gets a summary from YouTube's built-in "Ask" assistant for a video."""

    def __init__(self, sessions: BrowserSessionManager, config: dict):
        youtube = config.get("youtube", {})
        browser = config.get("browser", {})
        self.sessions = sessions
        self.element_wait_timeout_ms = browser.get("element_wait_timeout_ms", 10000)
        self.navigation_timeout_ms = browser.get("navigation_timeout_ms", 30000)
        self.response_timeout_ms = youtube.get("summary_response_timeout_ms", 60000)

    async def summarize(self, video_url: str, title: Optional[str] = None) -> str:
        log.info("tubepool.summarizer.start", video_url=video_url, title=title)
        try:
            async with self.sessions.page() as page:
                summary = await self._ask_for_summary(page, video_url)
        except PlaywrightTimeoutError as e:
            raise OperationTimeout(
                "summarization", timeout_seconds(e, self.response_timeout_ms)
            ) from e
        except PlaywrightError as e:
            raise SummarizeFailed(video_url, str(e)) from e

        if not summary:
            raise SummarizeFailed(video_url, "no summary text in the response panel")

        log.info("tubepool.summarizer.done", video_url=video_url, length=len(summary))
        return summary

    async def _ask_for_summary(self, page: Page, video_url: str) -> str:
        original_url = page.url
        restore = True
        try:
            await page.goto(video_url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
            await page.wait_for_timeout(2000)

            more = page.locator(MORE_ACTIONS).first
            await more.wait_for(timeout=self.element_wait_timeout_ms)
            await more.click()
            await page.wait_for_timeout(500)

            ask = page.locator(ASK_OPTION).first
            if await ask.count() == 0:
                ask = page.locator(ASK_OPTION_FALLBACK).first
            await ask.wait_for(timeout=self.element_wait_timeout_ms)
            await ask.click()

            await page.locator(ASK_PANEL).wait_for(timeout=self.element_wait_timeout_ms)
            chip = page.locator(SUMMARIZE_CHIP).first
            await chip.wait_for(timeout=self.element_wait_timeout_ms)
            await chip.click()

            await page.locator(RESPONSE_LAST_PARAGRAPH).last.wait_for(timeout=self.response_timeout_ms)
            # The answer streams in; give it a moment to finish
            await page.wait_for_timeout(2000)

            blocks = await page.locator(RESPONSE_BLOCKS).all_text_contents()
            summary = "\n\n".join(
                text.strip() for text in blocks
                if text and text.strip() and not any(b in text for b in PANEL_BOILERPLATE)
            )

            close = page.locator(PANEL_CLOSE).first
            if await close.count() > 0:
                await close.click()
            return summary

        except asyncio.CancelledError:
            restore = False
            raise

        finally:
            if restore and original_url and "/watch" not in original_url:
                try:
                    await page.goto(original_url, wait_until="domcontentloaded",
                                    timeout=self.navigation_timeout_ms)
                except PlaywrightError as e:
                    log.warning("tubepool.summarizer.restore_failed",
                                url=original_url, error=str(e))
