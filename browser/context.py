"""Isolated browsing context and its window/viewport size resolution."""

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar
from urllib.parse import urlsplit

from playwright.async_api import BrowserContext as PlaywrightContext
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page as PlaywrightPage

from .config import BrowserContextConfig
from .cookies import load_cookies, save_cookies
from .errors import BrowserError, CancellationError, TeardownError
from .geometry import ResolvedGeometry, SizePlan, plan_sizes
from .page import Page
from .timing import time_execution_async

if TYPE_CHECKING:
    from .browser import Browser

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MEASURE_SCRIPT = """() => ({
    windowWidth: window.outerWidth,
    windowHeight: window.outerHeight,
    viewportWidth: window.innerWidth,
    viewportHeight: window.innerHeight,
})"""
_RESIZE_SCRIPT = "([width, height]) => window.resizeTo(width, height)"
_CANCEL_GRACE_SECONDS = 2.0


def _to_geometry(dims: dict[str, Any]) -> ResolvedGeometry:
    return ResolvedGeometry(
        window_width=int(dims["windowWidth"]),
        window_height=int(dims["windowHeight"]),
        viewport_width=int(dims["viewportWidth"]),
        viewport_height=int(dims["viewportHeight"]),
    )


def _context_options(config: BrowserContextConfig, plan: SizePlan) -> dict[str, Any]:
    """Keyword arguments for Playwright's ``new_context``."""
    options: dict[str, Any] = {
        "java_script_enabled": True,
        "bypass_csp": config.disable_security,
        "ignore_https_errors": config.disable_security,
    }
    if plan.viewport is None:
        options["no_viewport"] = True
    else:
        options["viewport"] = plan.viewport.as_dict()
    if config.user_agent:
        options["user_agent"] = config.user_agent
    if config.locale:
        options["locale"] = config.locale
    if config.timezone_id:
        options["timezone_id"] = config.timezone_id
    if config.http_credentials:
        options["http_credentials"] = config.http_credentials.model_dump()
    return options


class BrowserContext:
    """An isolated browsing session created by ``Browser.new_context``.

    The configured width/height is applied at creation time. With a managed
    viewport (``no_viewport=False``) it becomes the content area and the
    window is enlarged for the browser chrome. With ``no_viewport=True`` it
    becomes the outer window and the viewport is whatever remains inside.
    """

    __slots__ = (
        "__weakref__",
        "_browser",
        "_closed",
        "_context",
        "_current",
        "_geometry",
        "_inflight",
        "_pages",
        "_plan",
        "_teardown_error",
        "config",
        "context_id",
    )

    def __init__(
        self,
        browser: "Browser",
        config: BrowserContextConfig,
        context: PlaywrightContext,
        plan: SizePlan,
    ) -> None:
        self._browser = browser
        self.config = config
        self.context_id = uuid.uuid4().hex
        self._context = context
        self._plan = plan
        self._pages: dict[PlaywrightPage, Page] = {}
        self._current: Page | None = None
        self._geometry: ResolvedGeometry | None = None
        self._inflight: set[asyncio.Task] = set()
        self._closed = False
        self._teardown_error: TeardownError | None = None

    @classmethod
    @time_execution_async("--create (context)")
    async def create(cls, browser: "Browser", config: BrowserContextConfig) -> "BrowserContext":
        """Create the engine-side context, open the first page and size it.

        Playwright errors propagate; ``Browser.new_context`` translates them.
        """
        plan = plan_sizes(config)
        engine_browser = browser.engine.browser
        pw_context = await engine_browser.new_context(**_context_options(config, plan))
        self = cls(browser, config, pw_context, plan)
        try:
            await self._prepare()
        except BaseException:
            try:
                await pw_context.close()
            except PlaywrightError as e:
                logger.debug("Failed to discard half-created context: %s", e)
            raise
        logger.info(
            "Context ready: requested %dx%d (no_viewport=%s), window %dx%d, viewport %dx%d",
            config.window_width, config.window_height, config.no_viewport,
            self._geometry.window_width, self._geometry.window_height,
            self._geometry.viewport_width, self._geometry.viewport_height,
        )
        return self

    async def _prepare(self) -> None:
        config = self.config
        if config.permissions:
            try:
                await self._context.grant_permissions(list(config.permissions))
            except PlaywrightError as e:
                logger.warning("Could not grant permissions %s: %s", config.permissions, e)

        if config.trace_path:
            await self._context.tracing.start(screenshots=True, snapshots=True, sources=True)

        if config.cookies_file:
            try:
                cookies = load_cookies(config.cookies_file)
            except (OSError, ValueError) as e:
                logger.error("Failed to load cookies from %s: %s", config.cookies_file, e)
            else:
                if cookies:
                    await self._context.add_cookies(cookies)

        self._context.on("page", self._adopt_page)

        existing = [p for p in self._context.pages if not p.url.startswith(("chrome://", "chrome-extension://"))]
        pw_page = existing[0] if existing else await self._context.new_page()
        page = self._wrap(pw_page)
        self._current = page
        await self._apply_window_size(pw_page)
        self._geometry = await self._measure(pw_page)

    def _wrap(self, pw_page: PlaywrightPage) -> Page:
        page = self._pages.get(pw_page)
        if page is None:
            page = self._pages[pw_page] = Page(self, pw_page)
            pw_page.on("close", self._drop_page)
        return page

    def _adopt_page(self, pw_page: PlaywrightPage) -> None:
        """Track pages the engine opens on its own, e.g. popups."""
        if not self._closed:
            self._wrap(pw_page)

    def _drop_page(self, pw_page: PlaywrightPage) -> None:
        """Forget pages the engine closed on its own, e.g. a popup calling window.close()."""
        page = self._pages.get(pw_page)
        if page is not None:
            page.mark_closed()
            self.forget_page(page)

    def forget_page(self, page: Page) -> None:
        self._pages.pop(page.playwright_page, None)
        if self._current is page:
            self._current = None

    @property
    def browser(self) -> "Browser":
        return self._browser

    @property
    def plan(self) -> SizePlan:
        return self._plan

    @property
    def geometry(self) -> ResolvedGeometry:
        """Window and viewport size measured right after creation."""
        if self._geometry is None:
            raise BrowserError("Context geometry has not been measured yet")
        return self._geometry

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def teardown_error(self) -> TeardownError | None:
        return self._teardown_error

    @property
    def pages(self) -> list[Page]:
        """Open pages, oldest first."""
        return [page for page in self._pages.values() if not page.is_closed]

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise CancellationError(f"{operation} aborted: browsing context is closed")

    async def track(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func()`` as a task that ``close()`` can cancel.

        Raises:
            CancellationError: If the context is closed before or during the call
        """
        self._ensure_open(operation)
        task = asyncio.ensure_future(func())
        self._inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._closed and (current is None or not current.cancelling()):
                raise CancellationError(f"{operation} aborted: browsing context closed") from None
            raise
        except PlaywrightError as e:
            if self._closed:
                raise CancellationError(f"{operation} aborted: browsing context closed") from e
            raise
        finally:
            self._inflight.discard(task)

    async def _apply_window_size(self, pw_page: PlaywrightPage) -> None:
        """Size the outer window of ``pw_page`` to the plan.

        Uses CDP window bounds on Chromium and falls back to
        ``window.resizeTo``. Engines that refuse both keep their window size.
        """
        window = self._plan.window
        if self._browser.config.browser_class == "chromium":
            try:
                session = await self._context.new_cdp_session(pw_page)
                try:
                    target = await session.send("Browser.getWindowForTarget")
                    await session.send(
                        "Browser.setWindowBounds",
                        {
                            "windowId": target["windowId"],
                            "bounds": {"width": window.width, "height": window.height, "windowState": "normal"},
                        },
                    )
                finally:
                    await session.detach()
                logger.debug("Set window size to %dx%d via CDP", window.width, window.height)
                return
            except PlaywrightError as e:
                logger.debug("CDP window resize failed: %s", e)

        try:
            await pw_page.evaluate(_RESIZE_SCRIPT, [window.width, window.height])
            logger.debug("Used JavaScript to set window size to %dx%d", window.width, window.height)
        except PlaywrightError as e:
            logger.debug("JavaScript window resize failed: %s", e)

    @staticmethod
    async def _measure(pw_page: PlaywrightPage) -> ResolvedGeometry:
        return _to_geometry(await pw_page.evaluate(_MEASURE_SCRIPT))

    async def measure_geometry(self, page: Page | None = None) -> ResolvedGeometry:
        """Measure the current window and viewport size of ``page`` (default: current page)."""
        page = page or await self.get_current_page()
        return _to_geometry(await page.evaluate(_MEASURE_SCRIPT))

    async def get_current_page(self) -> Page:
        """Return the active page, opening a blank one if none is open."""
        self._ensure_open("get_current_page")
        if self._current is not None and not self._current.is_closed:
            return self._current

        open_pages = self.pages
        if open_pages:
            self._current = open_pages[-1]
            logger.debug("Current page was closed, switched to %s", self._current.url)
            return self._current
        return await self.new_page()

    async def new_page(self, url: str | None = None) -> Page:
        """Open a new tab, size its window and make it the current page."""

        async def open_page() -> Page:
            pw_page = await self._context.new_page()
            page = self._wrap(pw_page)
            await self._apply_window_size(pw_page)
            return page

        page = await self.track("new_page", open_page)
        self._current = page
        logger.debug("Opened new page (%d open)", len(self.pages))
        if url:
            await page.goto(url)
        return page

    async def switch_to_page(self, index: int) -> Page:
        """Make the page at ``index`` in ``pages`` current and bring it to front."""
        self._ensure_open("switch_to_page")
        open_pages = self.pages
        if not -len(open_pages) <= index < len(open_pages):
            raise BrowserError(f"No page at index {index} ({len(open_pages)} open)")
        page = open_pages[index]
        await page.bring_to_front()
        self._current = page
        return page

    def is_url_allowed(self, url: str) -> bool:
        """Check ``url`` against ``allowed_domains``.

        Only the hostname counts: credentials, ports, paths and query strings
        never make a URL allowed. Subdomains of an allowed domain are allowed.
        """
        if self.config.allowed_domains is None:
            return True
        if url == "about:blank":
            return True
        try:
            hostname = urlsplit(url).hostname
        except ValueError as e:
            logger.error("Error checking URL allowlist for %s: %s", url, e)
            return False
        if not hostname:
            return False

        domain = hostname.lower()
        return any(
            domain == allowed.lower() or domain.endswith("." + allowed.lower())
            for allowed in self.config.allowed_domains
        )

    async def save_cookies(self) -> None:
        """Write the context's cookies to ``cookies_file``, if configured."""
        if not self.config.cookies_file:
            return
        cookies = await self._context.cookies()
        save_cookies(self.config.cookies_file, [dict(cookie) for cookie in cookies])

    async def close(self) -> None:
        """Cancel in-flight page calls, close every page, release the context.

        Never raises. Failures are logged and kept in ``teardown_error``.
        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        timeout = self._browser.config.terminate_timeout
        failures: list[BaseException] = []

        inflight = list(self._inflight)
        for task in inflight:
            task.cancel()
        if inflight:
            _, pending = await asyncio.wait(inflight, timeout=_CANCEL_GRACE_SECONDS)
            if pending:
                logger.warning("%d page operation(s) did not stop after cancellation", len(pending))

        async def step(label: str, awaitable: Awaitable[Any]) -> None:
            try:
                await asyncio.wait_for(awaitable, timeout=timeout)
            except Exception as e:
                logger.warning("Context teardown: %s failed: %s", label, e)
                failures.append(e)

        try:
            self._context.remove_listener("page", self._adopt_page)
        except (KeyError, ValueError) as e:
            logger.debug("Page listener already removed: %s", e)

        if self.config.cookies_file:
            await step("saving cookies", self.save_cookies())
        if self.config.trace_path:
            trace_file = self.config.trace_path / f"{self.context_id}.zip"
            await step("stopping trace", self._context.tracing.stop(path=trace_file))

        for page in list(self._pages.values()):
            page.mark_closed()
            if not page.playwright_page.is_closed():
                await step(f"closing page {page.url}", page.playwright_page.close())
        self._pages.clear()
        self._current = None

        await step("closing context", self._context.close())
        self._browser.forget_context(self)

        if failures:
            self._teardown_error = TeardownError("Browsing context teardown incomplete", failures)
            logger.warning("%s", self._teardown_error)
        logger.debug("Browsing context closed")

    async def __aenter__(self) -> "BrowserContext":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"{len(self.pages)} page(s)"
        return f"<BrowserContext {self.config.window_width}x{self.config.window_height} {state}>"
