"""Navigable document handle inside a browsing context."""

import asyncio
import base64
import io
import logging
import weakref
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from PIL import Image, ImageDraw, ImageFont
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page as PlaywrightPage

from .errors import CancellationError, EvaluationError, NavigationError, URLNotAllowedError

if TYPE_CHECKING:
    from .context import BrowserContext

logger = logging.getLogger(__name__)

_NETWORK_SCHEMES = ("http", "https")
_LOCAL_SCHEMES = ("about", "data", "file")

_RULER_STEP = 100
_RULER_TICK = 8
_OUTLINE_COLOR = (255, 0, 0, 200)
_LABEL_COLOR = (255, 0, 0, 220)


def validate_url(url: str) -> None:
    """Reject URLs the engine could never load.

    Raises:
        NavigationError: If the URL has no usable scheme or host
    """
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise NavigationError(f"Invalid URL '{url}': {e}") from e

    scheme = parts.scheme.lower()
    if scheme in _LOCAL_SCHEMES:
        return
    if scheme in _NETWORK_SCHEMES and parts.hostname:
        return
    raise NavigationError(f"Invalid URL '{url}'")


def _annotate_size(screenshot_bytes: bytes) -> bytes:
    """Outline the captured area and mark its size with rulers every 100px."""
    img = Image.open(io.BytesIO(screenshot_bytes)).convert("RGBA")
    width, height = img.size
    overlay = Image.new("RGBA", img.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    font = ImageFont.load_default()

    draw.rectangle([(0, 0), (width - 1, height - 1)], outline=_OUTLINE_COLOR, width=2)
    for x in range(_RULER_STEP, width, _RULER_STEP):
        draw.line([(x, 0), (x, _RULER_TICK)], fill=_OUTLINE_COLOR, width=1)
    for y in range(_RULER_STEP, height, _RULER_STEP):
        draw.line([(0, y), (_RULER_TICK, y)], fill=_OUTLINE_COLOR, width=1)
    draw.text((_RULER_TICK + 4, _RULER_TICK + 4), f"{width}x{height}", fill=_LABEL_COLOR, font=font)

    img = Image.alpha_composite(img, overlay)
    buf = io.BytesIO()
    img.convert("RGB").save(buf, format="PNG")
    return buf.getvalue()


class Page:
    """One tab of a ``BrowserContext``.

    Operations on the same page run in call order. A page holds only a weak
    reference to its context and fails with ``CancellationError`` once the
    context (or its browser) is closed.
    """

    __slots__ = ("_closed", "_context_ref", "_lock", "_page")

    def __init__(self, context: "BrowserContext", page: PlaywrightPage) -> None:
        self._context_ref = weakref.ref(context)
        self._page = page
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def context(self) -> "BrowserContext":
        context = self._context_ref()
        if context is None:
            raise CancellationError("Browsing context no longer exists")
        return context

    @property
    def playwright_page(self) -> PlaywrightPage:
        return self._page

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def is_closed(self) -> bool:
        return self._closed or self._page.is_closed()

    def mark_closed(self) -> None:
        self._closed = True

    async def _call(self, operation: str, func):
        """Run ``func()`` serialized with other calls on this page."""
        context = self.context
        if self.is_closed:
            raise CancellationError(f"{operation} aborted: page is closed")
        async with self._lock:
            if self.is_closed:
                raise CancellationError(f"{operation} aborted: page is closed")
            return await context.track(operation, func)

    def _timeout_ms(self) -> float:
        return self.context.config.navigation_timeout * 1000

    async def _restore(self, previous_url: str) -> None:
        """Return to ``previous_url`` if a failed navigation moved the page."""
        if self._page.url == previous_url:
            return
        logger.debug("Restoring %s after failed navigation (page is at %s)", previous_url, self._page.url)
        try:
            await self._page.goto(previous_url or "about:blank", timeout=self._timeout_ms())
        except PlaywrightError as e:
            logger.warning("Could not restore %s after failed navigation: %s", previous_url, e)

    async def goto(self, url: str) -> None:
        """Navigate to ``url`` and wait for the load event.

        Either the navigation commits or the previous document stays current.

        Raises:
            NavigationError: On an invalid or disallowed URL, network failure or timeout
            CancellationError: If the context closes meanwhile
        """
        validate_url(url)
        context = self.context
        if not context.is_url_allowed(url):
            raise URLNotAllowedError(f"Navigation to non-allowed URL: {url}")

        async def navigate() -> None:
            previous_url = self._page.url
            logger.info("Navigating to %s", url)
            try:
                await self._page.goto(url, wait_until="load", timeout=self._timeout_ms())
            except PlaywrightError as e:
                if context.is_closed:
                    raise
                await self._restore(previous_url)
                raise NavigationError(f"Failed to navigate to {url}: {e}") from e

            if not context.is_url_allowed(self._page.url):
                landed = self._page.url
                await self._restore(previous_url)
                raise URLNotAllowedError(f"Navigation to {url} ended on non-allowed URL: {landed}")

        await self._call("goto", navigate)

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        """Run a JavaScript expression or function against the current document.

        Args:
            expression: JS source, e.g. ``"() => window.innerWidth"``
            arg: Optional serializable argument passed to a function expression

        Returns:
            The JSON-serializable result

        Raises:
            EvaluationError: If the script fails or the engine connection is lost
            CancellationError: If the context closes meanwhile
        """
        context = self.context

        async def run() -> Any:
            try:
                return await self._page.evaluate(expression, arg)
            except PlaywrightError as e:
                if context.is_closed:
                    raise
                raise EvaluationError(f"Evaluation failed on {self._page.url}: {e}") from e

        return await self._call("evaluate", run)

    async def title(self) -> str:
        return await self.evaluate("() => document.title")

    async def content(self) -> str:
        """Full HTML of the current document."""
        return await self.evaluate("() => document.documentElement.outerHTML")

    async def reload(self) -> None:
        context = self.context

        async def run() -> None:
            try:
                await self._page.reload(wait_until="load", timeout=self._timeout_ms())
            except PlaywrightError as e:
                if context.is_closed:
                    raise
                raise NavigationError(f"Failed to reload {self._page.url}: {e}") from e

        await self._call("reload", run)

    async def _history(self, operation: str, step) -> bool:
        context = self.context

        async def run() -> bool:
            try:
                response = await step(wait_until="domcontentloaded", timeout=self._timeout_ms())
            except PlaywrightError as e:
                if context.is_closed:
                    raise
                raise NavigationError(f"{operation} failed on {self._page.url}: {e}") from e
            return response is not None

        return await self._call(operation, run)

    async def go_back(self) -> bool:
        """Go back in history. Returns False if there was nothing to go back to."""
        return await self._history("go_back", self._page.go_back)

    async def go_forward(self) -> bool:
        """Go forward in history. Returns False if there was nothing to go forward to."""
        return await self._history("go_forward", self._page.go_forward)

    async def screenshot_base64(self, full_page: bool = False, annotate: bool = False) -> str:
        """Take a screenshot, return as base64 PNG.

        With ``annotate`` the image is outlined and labelled with its size.
        """
        context = self.context

        async def run() -> bytes:
            try:
                return await self._page.screenshot(full_page=full_page, scale="css")
            except PlaywrightError as e:
                if context.is_closed:
                    raise
                raise EvaluationError(f"Screenshot failed on {self._page.url}: {e}") from e

        screenshot_bytes = await self._call("screenshot", run)
        if annotate:
            screenshot_bytes = _annotate_size(screenshot_bytes)
        return base64.b64encode(screenshot_bytes).decode("ascii")

    async def bring_to_front(self) -> None:
        await self._call("bring_to_front", self._page.bring_to_front)

    async def close(self) -> None:
        """Close this tab. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        context = self._context_ref()
        try:
            if not self._page.is_closed():
                await self._page.close()
        finally:
            if context is not None:
                context.forget_page(self)

    def __repr__(self) -> str:
        state = "closed" if self.is_closed else self._page.url
        return f"<Page {state}>"
