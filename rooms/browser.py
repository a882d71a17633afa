"""Playwright room backend.

One shared Chromium browser and an authenticated storage-state template.
Every session gets a fresh browser context cloned from the template, so
sessions never share cookies, pages or in-page state. All page selectors
live in this module.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from . import (
    ChatEvent,
    HandleActionError,
    HandleLivenessError,
    HandleOpenError,
    RoomTarget,
    TransientIngestionError,
)

log = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-infobars",
    "--disable-dev-shm-usage",
    "--window-size=1920,1080",
]

SYSTEM_AUTHOR = "Free4Talk System"
SEEN_ATTR = "spiritSeen"

SEL_CHAT_INPUT = ".input-send-box textarea"
SEL_SEND_BUTTON = '.input-send-box button[type="button"]'
SEL_APPS_TAB = 'div[role="tabpanel"] div.blind:has-text("Application")'
SEL_MEDIA_BUTTON = "button .youtube-btn"
SEL_MEDIA_SEARCH = 'input.ant-input[type="text"][placeholder="Search"]'
SEL_MEDIA_SEARCH_BUTTON = "span.ant-input-suffix .ant-input-search-icon"
SEL_FIRST_RESULT = "ul.ant-list-items li.ant-list-item:first-child div.content-wrapper"
SEL_MEDIA_STOP = 'button:has-text("Stop")'

# Collects message blocks not yet seen and marks them, in document order
_COLLECT_JS = """
(seenAttr) => {
    const out = [];
    document.querySelectorAll('.system-message').forEach(block => {
        if (block.dataset[seenAttr]) return;
        block.dataset[seenAttr] = '1';
        const author = block.querySelector('.name.primary span');
        const text = block.querySelector('.text.main-content p');
        if (!author || !text) return;
        const isPrivate = block.classList.contains('pm-mode');
        out.push({
            author: author.textContent.trim(),
            text: text.textContent.trim(),
            isPrivate: isPrivate,
            hasQuote: isPrivate && !!block.querySelector('.quote-content'),
            messageId: block.getAttribute('data-message-id'),
        });
    });
    return out;
}
"""

_MARK_SEEN_JS = """
(seenAttr) => {
    const blocks = document.querySelectorAll('.system-message');
    blocks.forEach(block => { block.dataset[seenAttr] = '1'; });
    return blocks.length;
}
"""

_LOGGED_IN_JS = "() => !document.body.innerText.includes('Sign in')"


def _is_closed_error(error: Exception) -> bool:
    return "closed" in str(error).lower()


def _ms(seconds: float) -> float:
    return max(seconds, 0.0) * 1000


class PlaywrightRoomHandle:
    """A single tenant's isolated browser context inside one room."""

    def __init__(self, context: Any, page: Any, target: RoomTarget,
                 action_timeout: float = 10.0, results_settle: float = 2.0):
        self.context = context
        self.page = page
        self.target = target
        self.action_timeout = action_timeout
        self.results_settle = results_settle
        self._closed = False

    def is_closed(self) -> bool:
        return self._closed or self.page.is_closed()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.context.close()

    async def mark_backlog_seen(self) -> int:
        return await self.page.evaluate(_MARK_SEEN_JS, SEEN_ATTR)

    async def poll(self) -> list[ChatEvent]:
        if self.is_closed():
            raise HandleLivenessError("page is closed")
        try:
            raw = await self.page.evaluate(_COLLECT_JS, SEEN_ATTR)
        except PlaywrightError as e:
            if self.is_closed() or _is_closed_error(e):
                raise HandleLivenessError(str(e)) from e
            raise TransientIngestionError(str(e)) from e

        events = []
        for item in raw or []:
            if item.get("author") == SYSTEM_AUTHOR:
                continue
            events.append(ChatEvent(
                author=item["author"],
                text=item["text"],
                is_private=bool(item.get("isPrivate")),
                has_quote=bool(item.get("hasQuote")),
                message_id=item.get("messageId") or None,
            ))
        return events

    async def send(self, text: str) -> None:
        await self._act("send", self._send, text)

    async def _send(self, text: str) -> None:
        timeout = _ms(self.action_timeout)
        await self.page.locator(SEL_CHAT_INPUT).fill(text, timeout=timeout)
        await self.page.locator(SEL_SEND_BUTTON).first.click(timeout=timeout)
        log.debug("[%s] sent: %s", self.target.room_key, text[:50])

    # ─── Media control ───────────────────────────────────────────

    async def reveal_media_control(self, timeout: float) -> None:
        await self._act("reveal media control", self._reveal, timeout)

    async def _reveal(self, timeout: float) -> None:
        media = self.page.locator(SEL_MEDIA_BUTTON)
        if await media.count() and await media.first.is_visible():
            return
        await self.page.locator(SEL_APPS_TAB).first.click(timeout=_ms(timeout))
        await self.page.wait_for_selector(SEL_MEDIA_BUTTON, timeout=_ms(timeout))

    async def open_media_control(self, timeout: float) -> None:
        await self._act("open media control", self._open_media, timeout)

    async def _open_media(self, timeout: float) -> None:
        search = self.page.locator(SEL_MEDIA_SEARCH)
        if await search.count() and await search.first.is_visible():
            return
        await self.page.locator(SEL_MEDIA_BUTTON).first.click(timeout=_ms(timeout))
        await self.page.wait_for_selector(SEL_MEDIA_SEARCH, timeout=_ms(timeout))

    async def submit_media_search(self, query: str, timeout: float) -> None:
        await self._act("submit media search", self._search, query, timeout)

    async def _search(self, query: str, timeout: float) -> None:
        search = self.page.locator(SEL_MEDIA_SEARCH).first
        await search.fill(query, timeout=_ms(timeout))
        button = self.page.locator(SEL_MEDIA_SEARCH_BUTTON)
        if await button.count():
            await button.first.click(timeout=_ms(timeout))
        else:
            await search.press("Enter", timeout=_ms(timeout))

    async def wait_media_results(self, timeout: float) -> None:
        await self._act("wait for media results", self._wait_results, timeout)

    async def _wait_results(self, timeout: float) -> None:
        settle = min(self.results_settle, timeout / 2)
        await self.page.wait_for_selector(SEL_FIRST_RESULT, timeout=_ms(timeout - settle))
        if settle > 0:
            await asyncio.sleep(settle)

    async def play_first_media_result(self, timeout: float) -> None:
        await self._act("play first result", self._click, SEL_FIRST_RESULT, timeout)

    async def stop_media(self, timeout: float) -> None:
        await self._act("stop media", self._click, SEL_MEDIA_STOP, timeout)

    async def _click(self, selector: str, timeout: float) -> None:
        await self.page.locator(selector).first.click(timeout=_ms(timeout))

    async def _act(self, what: str, fn: Callable[..., Awaitable[None]], *args) -> None:
        """Run one UI interaction, mapping Playwright errors to handle errors."""
        if self.is_closed():
            raise HandleLivenessError(f"{what}: page is closed")
        try:
            await fn(*args)
        except PlaywrightTimeoutError as e:
            raise HandleActionError(f"{what} timed out") from e
        except PlaywrightError as e:
            if self.is_closed() or _is_closed_error(e):
                raise HandleLivenessError(f"{what}: {e}") from e
            raise HandleActionError(f"{what} failed: {e}") from e


class BrowserPool:
    """Owns Playwright, the shared browser, and the authenticated template."""

    def __init__(
        self,
        auth_state: Path,
        base_url: str,
        headless: bool = True,
        navigation_timeout: float = 30.0,
        settle_delay: float = 3.0,
        action_timeout: float = 10.0,
        results_settle: float = 2.0,
    ):
        self.auth_state = auth_state
        self.base_url = base_url.rstrip("/")
        self.headless = headless
        self.navigation_timeout = navigation_timeout
        self.settle_delay = settle_delay
        self.action_timeout = action_timeout
        self.results_settle = results_settle
        self._playwright: Any = None
        self._browser: Any = None
        self._template: dict | None = None

    @property
    def running(self) -> bool:
        return self._browser is not None

    async def start(self, verify_login: bool = True) -> None:
        """Launch the browser and load the saved login template."""
        if not self.auth_state.exists():
            raise HandleOpenError(
                f"No saved login at {self.auth_state}. Run: spiritd --setup"
            )
        try:
            self._template = json.loads(self.auth_state.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise HandleOpenError(f"Unreadable login state {self.auth_state}: {e}") from e

        log.info("Starting Chromium (headless=%s)", self.headless)
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless, args=LAUNCH_ARGS,
        )

        if verify_login and not await self._logged_in():
            await self.stop()
            raise HandleOpenError("Saved login has expired. Run: spiritd --setup")
        log.info("Browser ready with saved login")

    async def _logged_in(self) -> bool:
        context = await self._browser.new_context(storage_state=copy.deepcopy(self._template))
        try:
            page = await context.new_page()
            await page.goto(self.base_url, timeout=_ms(self.navigation_timeout))
            await asyncio.sleep(2.0)
            return bool(await page.evaluate(_LOGGED_IN_JS))
        except PlaywrightError as e:
            log.warning("Login check failed: %s", e)
            return False
        finally:
            await context.close()

    async def open_room(self, target: RoomTarget) -> PlaywrightRoomHandle:
        """Open an isolated context in ``target`` and return its handle."""
        if self._browser is None or self._template is None:
            raise HandleOpenError("browser is not running")

        context = await self._browser.new_context(storage_state=copy.deepcopy(self._template))
        try:
            page = await context.new_page()
            log.info("Navigating to %s", target.url)
            await page.goto(target.url, wait_until="networkidle",
                            timeout=_ms(self.navigation_timeout))
            await asyncio.sleep(self.settle_delay)
            try:
                # Welcome screen
                await page.keyboard.press("Enter")
            except PlaywrightError:
                log.debug("No welcome screen in %s", target.room_key)
            await asyncio.sleep(self.settle_delay)

            handle = PlaywrightRoomHandle(
                context, page, target,
                action_timeout=self.action_timeout,
                results_settle=self.results_settle,
            )
            backlog = await handle.mark_backlog_seen()
            log.debug("Room %s: %d backlog message(s) skipped", target.room_key, backlog)
            return handle
        except (PlaywrightError, asyncio.CancelledError) as e:
            try:
                await context.close()
            except PlaywrightError:
                log.debug("context close after failed open", exc_info=True)
            if isinstance(e, asyncio.CancelledError):
                raise
            raise HandleOpenError(f"could not open room {target.room_key}: {e}") from e

    async def stop(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                log.warning("Error closing browser: %s", e)
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


async def setup_login(
    auth_state: Path,
    base_url: str,
    wait_for_user: Callable[[], Awaitable[None]],
) -> None:
    """One-time manual login: headed browser, user signs in, state saved."""
    async with async_playwright() as pw:
        browser = await pw.chromium.launch(headless=False, args=LAUNCH_ARGS)
        try:
            context = await browser.new_context()
            page = await context.new_page()
            await page.goto(base_url)
            await wait_for_user()
            state = await context.storage_state()
        finally:
            await browser.close()

    auth_state.parent.mkdir(parents=True, exist_ok=True)
    auth_state.write_text(json.dumps(state, indent=2), encoding="utf-8")
    log.info("Login state saved to %s", auth_state)
