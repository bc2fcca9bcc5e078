"""
Browser session driver built on Playwright's async API.

One ``Session`` is owned by exactly one request. It launches its own browser,
gives it a realistic identity, exposes the handful of primitives adapters
need, and always releases the browser process in ``close()``.
"""

import asyncio
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from faker import Faker
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Locator, Response
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright
from playwright_stealth import Stealth

from ...errors import ElementNotFound, NavigationFailed, Stage, TimeoutFailure

logger = logging.getLogger(__name__)

VIEWPORTS = [
    {"width": 1366, "height": 768},
    {"width": 1920, "height": 1080},
    {"width": 1280, "height": 720},
    {"width": 1440, "height": 900},
]

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-blink-features=AutomationControlled",
]

CLOSE_TIMEOUT_S = 10
POLL_INTERVAL_S = 0.25


def random_user_agent() -> str:
    faker = Faker(providers=["faker.providers.user_agent"])
    return faker.chrome(version_from=118, version_to=126, build_from=6000, build_to=6400)


@dataclass(frozen=True)
class SessionConfig:
    headless: bool = True
    timeout_ms: int = 60000
    viewport: Optional[Dict[str, int]] = None
    user_agent: Optional[str] = None
    locale: str = "en-US"
    timezone_id: str = "America/New_York"
    extra_headers: Dict[str, str] = field(
        default_factory=lambda: {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
            "DNT": "1",
            "Upgrade-Insecure-Requests": "1",
        }
    )
    stealth: bool = True


class WaitFor:
    """Condition a navigation or explicit wait must reach before returning."""

    DOM_READY = "domcontentloaded"
    NETWORK_IDLE = "networkidle"
    PREDICATE = "predicate"

    def __init__(self, kind: str, expression: Optional[str] = None):
        self.kind = kind
        self.expression = expression

    @classmethod
    def dom_ready(cls) -> "WaitFor":
        return cls(cls.DOM_READY)

    @classmethod
    def network_idle(cls) -> "WaitFor":
        return cls(cls.NETWORK_IDLE)

    @classmethod
    def predicate(cls, expression: str) -> "WaitFor":
        """A JavaScript expression evaluated against the live DOM until truthy."""
        return cls(cls.PREDICATE, expression)

    def __repr__(self):
        return f"WaitFor({self.kind}{', ' + self.expression if self.expression else ''})"


@dataclass(frozen=True)
class ElementQuery:
    """
    Candidate selectors tried in priority order.

    The first selector with a match wins; within it, the first element in
    document order (optionally filtered by visibility and a text pattern) is
    returned.
    """

    selectors: Tuple[str, ...]
    text: Optional[str] = None
    visible: bool = True
    frame: Optional[str] = None

    @classmethod
    def of(
        cls, *selectors: str, text: Optional[str] = None, visible: bool = True, frame: Optional[str] = None
    ) -> "ElementQuery":
        return cls(selectors=tuple(selectors), text=text, visible=visible, frame=frame)

    def describe(self) -> str:
        suffix = f" with text /{self.text}/" if self.text else ""
        scope = f" in frame '{self.frame}'" if self.frame else ""
        return f"{' | '.join(self.selectors)}{suffix}{scope}"


@dataclass(frozen=True)
class Action:
    kind: str
    value: Optional[str] = None
    delay_ms: int = 0

    @classmethod
    def click(cls) -> "Action":
        return cls("click")

    @classmethod
    def fill(cls, value: str) -> "Action":
        return cls("fill", value)

    @classmethod
    def type(cls, value: str, delay_ms: int = 100) -> "Action":
        return cls("type", value, delay_ms)

    @classmethod
    def select(cls, value: str) -> "Action":
        return cls("select", value)

    @classmethod
    def press(cls, key: str) -> "Action":
        return cls("press", key)


ResponseHandler = Callable[[Response], Awaitable[None]]


class Session:
    """An exclusively owned browser context plus its current page."""

    def __init__(self, config: SessionConfig):
        self.config = config
        self.side_effects: List[str] = []
        self.captcha_encountered = False
        self.stage = Stage.CONSENT
        self._playwright = None
        self._browser = None
        self.context = None
        self.page = None
        self._observers: List[Tuple[Callable[[str], bool], ResponseHandler]] = []
        self._tasks = set()
        self._closed = False

    async def start(self) -> "Session":
        """Launch the browser and configure the session identity."""
        viewport = self.config.viewport or random.choice(VIEWPORTS)
        user_agent = self.config.user_agent or random_user_agent()

        logger.info("🚀 Launching browser session")
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless, args=LAUNCH_ARGS
        )
        self.context = await self._browser.new_context(
            viewport=viewport,
            user_agent=user_agent,
            locale=self.config.locale,
            timezone_id=self.config.timezone_id,
            extra_http_headers=self.config.extra_headers,
            accept_downloads=True,
        )
        if self.config.stealth:
            await Stealth().apply_stealth_async(self.context)
        self.context.set_default_timeout(self.config.timeout_ms)
        self.context.on("response", self._dispatch_response)
        self.page = await self.context.new_page()
        logger.info(f"✅ Browser ready ({viewport['width']}x{viewport['height']})")
        return self

    @property
    def current_url(self) -> str:
        return self.page.url if self.page else ""

    async def navigate(self, url: str, wait: Optional[WaitFor] = None, timeout_ms: Optional[int] = None):
        """
        Go to a URL and wait for a condition.

        Args:
            url: Absolute URL to open
            wait: Condition to reach; defaults to DOM-ready
            timeout_ms: Deadline override; defaults to the session timeout

        Raises:
            TimeoutFailure: The condition was not met before the deadline
            NavigationFailed: The browser reported a navigation error
        """
        wait = wait or WaitFor.dom_ready()
        timeout_ms = timeout_ms or self.config.timeout_ms
        logger.info(f"🌐 Navigating to {url}")
        wait_until = WaitFor.DOM_READY if wait.kind == WaitFor.PREDICATE else wait.kind
        try:
            await self.page.goto(url, wait_until=wait_until, timeout=timeout_ms)
            if wait.kind == WaitFor.PREDICATE:
                await self.page.wait_for_function(wait.expression, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise TimeoutFailure(f"Timed out loading {url} ({wait!r})") from e
        except PlaywrightError as e:
            raise NavigationFailed(f"Navigation to {url} failed: {e.message}") from e

    async def wait_for(self, wait: WaitFor, timeout_ms: Optional[int] = None):
        """Wait on the current page without navigating."""
        timeout_ms = timeout_ms or self.config.timeout_ms
        try:
            if wait.kind == WaitFor.PREDICATE:
                await self.page.wait_for_function(wait.expression, timeout=timeout_ms)
            else:
                await self.page.wait_for_load_state(wait.kind, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise TimeoutFailure(f"Timed out waiting for {wait!r} on {self.current_url}") from e
        except PlaywrightError as e:
            raise NavigationFailed(f"Wait for {wait!r} failed: {e.message}") from e

    def _frame(self, name_or_url: str):
        for frame in self.page.frames:
            if frame.name == name_or_url or (frame.url and name_or_url in frame.url):
                return frame
        return None

    async def _first_match(self, query: ElementQuery) -> Optional[Locator]:
        root = self.page
        if query.frame:
            root = self._frame(query.frame)
            if root is None:
                return None
        for selector in query.selectors:
            locator = root.locator(selector)
            if query.text:
                locator = locator.filter(has_text=re.compile(query.text, re.IGNORECASE))
            count = await locator.count()
            for i in range(count):
                candidate = locator.nth(i)
                if not query.visible or await candidate.is_visible():
                    return candidate
        return None

    async def locate(self, query: ElementQuery, timeout_ms: int = 0) -> Optional[Locator]:
        """
        Find the first element matching a query, polling up to ``timeout_ms``.

        Returns:
            Locator or None: The first match in document order, or None
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while True:
            try:
                element = await self._first_match(query)
            except PlaywrightError as e:
                # Page navigated mid-query; treat as not yet present
                logger.debug(f"Locate interrupted: {e.message}")
                element = None
            if element is not None or loop.time() >= deadline:
                return element
            await asyncio.sleep(POLL_INTERVAL_S)

    async def exists(self, query: ElementQuery) -> bool:
        return await self.locate(query) is not None

    async def act(self, element: Optional[Locator], action: Action, description: str = "element"):
        """
        Perform an action on a located element.

        Raises:
            ElementNotFound: ``element`` is None (the query matched nothing)
            TimeoutFailure: The element never became actionable
        """
        if element is None:
            raise ElementNotFound(f"No element matched {description}")
        try:
            if action.kind == "click":
                await element.click()
            elif action.kind == "fill":
                await element.fill(action.value)
            elif action.kind == "type":
                await element.press_sequentially(action.value, delay=action.delay_ms)
            elif action.kind == "select":
                await element.select_option(action.value)
            elif action.kind == "press":
                await element.press(action.value)
            else:
                raise ValueError(f"Unknown action: {action.kind}")
        except PlaywrightTimeoutError as e:
            raise TimeoutFailure(f"Timed out performing {action.kind} on {description}") from e
        except PlaywrightError as e:
            raise NavigationFailed(f"{action.kind} on {description} failed: {e.message}") from e

    async def act_on(self, query: ElementQuery, action: Action, timeout_ms: int = 5000):
        """Locate then act; raises ElementNotFound when nothing matches."""
        element = await self.locate(query, timeout_ms=timeout_ms)
        await self.act(element, action, description=query.describe())

    def on_response(self, url_predicate: Callable[[str], bool], handler: ResponseHandler):
        """Register an observer for every response whose URL satisfies the predicate."""
        self._observers.append((url_predicate, handler))

    def _dispatch_response(self, response: Response):
        for predicate, handler in list(self._observers):
            try:
                matched = predicate(response.url)
            except Exception as e:
                logger.warning(f"Response predicate raised for {response.url}: {e}")
                continue
            if matched:
                task = asyncio.ensure_future(self._run_observer(handler, response))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _run_observer(self, handler: ResponseHandler, response: Response):
        try:
            await handler(response)
        except PlaywrightError as e:
            logger.debug(f"Response body unavailable for {response.url}: {e.message}")
        except Exception:
            logger.exception(f"Response observer failed for {response.url}")

    async def snapshot(self) -> str:
        """Return the current DOM as HTML."""
        try:
            return await self.page.content()
        except PlaywrightError as e:
            raise NavigationFailed(f"Could not read page content: {e.message}") from e

    async def evaluate(self, expression: str, arg=None):
        try:
            return await self.page.evaluate(expression, arg)
        except PlaywrightError as e:
            raise NavigationFailed(f"Script evaluation failed: {e.message}") from e

    async def wait_for_frame_url(self, url_predicate: Callable[[str], bool], timeout_ms: Optional[int] = None) -> str:
        """Poll child frames until one navigates to a matching URL and return that URL."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout_ms or self.config.timeout_ms) / 1000
        while True:
            for frame in self.page.frames:
                if frame.url and frame.url != "about:blank" and url_predicate(frame.url):
                    return frame.url
            if loop.time() >= deadline:
                raise TimeoutFailure(f"No frame reached the expected URL on {self.current_url}")
            await asyncio.sleep(POLL_INTERVAL_S)

    async def follow_popup(self, trigger: ElementQuery, timeout_ms: Optional[int] = None):
        """Click ``trigger`` and make the tab it opens the session's current page."""
        timeout_ms = timeout_ms or self.config.timeout_ms
        try:
            async with self.context.expect_page(timeout=timeout_ms) as popup_info:
                await self.act_on(trigger, Action.click())
            popup = await popup_info.value
            await popup.wait_for_load_state(WaitFor.DOM_READY, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise TimeoutFailure(f"No popup opened after clicking {trigger.describe()}") from e
        logger.info(f"🪟 Switched to popup: {popup.url}")
        self.page = popup

    async def download(self, trigger: ElementQuery, timeout_ms: Optional[int] = None) -> bytes:
        """Click ``trigger`` and return the bytes of the file download it starts."""
        timeout_ms = timeout_ms or self.config.timeout_ms
        try:
            async with self.page.expect_download(timeout=timeout_ms) as download_info:
                await self.act_on(trigger, Action.click())
            download = await download_info.value
            path = await download.path()
        except PlaywrightTimeoutError as e:
            raise TimeoutFailure(f"No download started after clicking {trigger.describe()}") from e
        except PlaywrightError as e:
            raise NavigationFailed(f"Download failed: {e.message}") from e
        with open(path, "rb") as f:
            return f.read()

    async def fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> Tuple[bytes, str]:
        """
        GET a URL inside the browser context so session cookies apply.

        Returns:
            tuple: (body bytes, content type)
        """
        try:
            response = await self.context.request.get(
                url, headers=headers, timeout=self.config.timeout_ms
            )
            body = await response.body()
        except PlaywrightTimeoutError as e:
            raise TimeoutFailure(f"Timed out fetching {url}") from e
        except PlaywrightError as e:
            raise NavigationFailed(f"Fetching {url} failed: {e.message}") from e
        if not response.ok:
            raise NavigationFailed(f"HTTP {response.status} fetching {url}")
        return body, response.headers.get("content-type", "")

    async def cookies(self) -> List[dict]:
        return await self.context.cookies()

    def mark_side_effect(self, reason: str):
        """Record an action with external consequences; disables retries."""
        logger.info(f"💳 Side effect committed: {reason}")
        self.side_effects.append(reason)

    @property
    def side_effect_committed(self) -> bool:
        return bool(self.side_effects)

    async def close(self):
        """Release the browser. Idempotent, bounded, and a no-op if it already died."""
        if self._closed:
            return
        self._closed = True
        for task in list(self._tasks):
            task.cancel()

        connected = self._browser is not None and self._browser.is_connected()
        closers = []
        if connected:
            closers.append(("context", self.context.close if self.context else None))
            closers.append(("browser", self._browser.close))
        closers.append(("playwright", self._playwright.stop if self._playwright else None))

        for name, closer in closers:
            if closer is None:
                continue
            try:
                await asyncio.wait_for(closer(), timeout=CLOSE_TIMEOUT_S)
            except (PlaywrightError, asyncio.TimeoutError) as e:
                logger.warning(f"⚠️ Could not close {name} cleanly: {e!r}")
        logger.info("🔒 Browser session closed")
