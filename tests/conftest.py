"""Pytest fixtures: an in-process stand-in for the Playwright engine, and a real browser for integration tests."""

import asyncio
import io

import pytest
from PIL import Image
from playwright.async_api import Error as PlaywrightError

from browser import Browser, BrowserConfig
from browser.engine import EngineProcessHandle

CHROME_WIDTH = 0
CHROME_HEIGHT = 87
DEFAULT_WINDOW = (1280, 720)


class FakeCdpSession:
    def __init__(self, page: "FakePage") -> None:
        self._page = page
        self.calls: list[tuple[str, dict | None]] = []

    async def send(self, method: str, params: dict | None = None) -> dict:
        self.calls.append((method, params))
        self._page.cdp_calls.append((method, params))
        if self._page.engine.fail_cdp:
            raise PlaywrightError("Browser.getWindowForTarget wasn't found")
        if method == "Browser.getWindowForTarget":
            return {"windowId": 1}
        if method == "Browser.setWindowBounds":
            bounds = params["bounds"]
            self._page.window = (bounds["width"], bounds["height"])
        return {}

    async def detach(self) -> None:
        pass


class FakeTracing:
    def __init__(self) -> None:
        self.started = False
        self.stopped_path = None

    async def start(self, **kwargs) -> None:
        self.started = True

    async def stop(self, path=None) -> None:
        self.stopped_path = path


class FakePage:
    """Minimal Playwright page: navigation, evaluation and window geometry."""

    def __init__(self, context: "FakeContext") -> None:
        self.context = context
        self.engine = context.engine
        self.url = "about:blank"
        self.window: tuple[int, int] | None = None
        self.hang = False
        self.goto_calls: list[str] = []
        self.cdp_calls: list[tuple[str, dict | None]] = []
        self._closed = False
        self._handlers: dict[str, list] = {}

    def on(self, event: str, handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def is_closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed or self.context.closed:
            raise PlaywrightError("Target page, context or browser has been closed")

    def _dimensions(self) -> dict[str, int]:
        viewport = self.context.options.get("viewport")
        if viewport is not None:
            vw, vh = viewport["width"], viewport["height"]
            ww, wh = self.window or (vw + CHROME_WIDTH, vh + CHROME_HEIGHT)
        else:
            ww, wh = self.window or DEFAULT_WINDOW
            vw, vh = ww - CHROME_WIDTH, wh - CHROME_HEIGHT
        return {"windowWidth": ww, "windowHeight": wh, "viewportWidth": vw, "viewportHeight": vh}

    async def goto(self, url: str, wait_until: str | None = None, timeout: float | None = None) -> None:
        self._check_open()
        self.goto_calls.append(url)
        if self.hang:
            await asyncio.Event().wait()
        if url in self.engine.failing_urls:
            self.url = "chrome-error://chromewebdata/"
            raise PlaywrightError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self.url = self.engine.redirects.get(url, url)

    async def evaluate(self, expression: str, arg=None):
        self._check_open()
        if self.hang:
            await asyncio.Event().wait()
        if "outerWidth" in expression:
            return self._dimensions()
        if "resizeTo" in expression:
            self.window = (arg[0], arg[1])
            return None
        if "throw" in expression:
            raise PlaywrightError("Error: boom")
        if "document.title" in expression:
            return "Example Domain"
        return self.engine.eval_results.get(expression)

    async def reload(self, wait_until: str | None = None, timeout: float | None = None) -> None:
        self._check_open()

    async def go_back(self, wait_until: str | None = None, timeout: float | None = None):
        self._check_open()
        return None

    async def go_forward(self, wait_until: str | None = None, timeout: float | None = None):
        self._check_open()
        return None

    async def screenshot(self, full_page: bool = False, scale: str = "css") -> bytes:
        self._check_open()
        dims = self._dimensions()
        buf = io.BytesIO()
        Image.new("RGB", (dims["viewportWidth"], dims["viewportHeight"]), "white").save(buf, format="PNG")
        return buf.getvalue()

    async def bring_to_front(self) -> None:
        self._check_open()

    async def close(self) -> None:
        self.mark_closed()

    def mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for handler in self._handlers.get("close", []):
            handler(self)


class FakeContext:
    def __init__(self, engine: "FakeEngine", options: dict) -> None:
        self.engine = engine
        self.options = options
        self.pages: list[FakePage] = []
        self.closed = False
        self.tracing = FakeTracing()
        self.granted: list[str] = []
        self.added_cookies: list[dict] = []
        self._cookies: list[dict] = [{"name": "session", "value": "abc", "domain": "example.com", "path": "/"}]
        self._handlers: dict[str, list] = {}

    def on(self, event: str, handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler) -> None:
        self._handlers[event].remove(handler)

    async def new_page(self) -> FakePage:
        if self.closed:
            raise PlaywrightError("Target page, context or browser has been closed")
        page = FakePage(self)
        self.pages.append(page)
        for handler in self._handlers.get("page", []):
            handler(page)
        return page

    async def new_cdp_session(self, page: FakePage) -> FakeCdpSession:
        return FakeCdpSession(page)

    async def grant_permissions(self, permissions: list[str]) -> None:
        self.granted.extend(permissions)

    async def add_cookies(self, cookies: list[dict]) -> None:
        self.added_cookies.extend(cookies)

    async def cookies(self) -> list[dict]:
        return list(self._cookies)

    async def close(self) -> None:
        if self.engine.fail_context_close:
            raise PlaywrightError("Context close failed")
        self.closed = True
        for page in self.pages:
            page.mark_closed()


class FakePlaywrightBrowser:
    version = "fake-1.0"

    def __init__(self, engine: "FakeEngine") -> None:
        self.engine = engine
        self.contexts: list[FakeContext] = []
        self.closed = False
        self.close_calls = 0

    def is_connected(self) -> bool:
        return not self.closed

    async def new_context(self, **options) -> FakeContext:
        if self.engine.fail_new_context:
            raise PlaywrightError("Browser has been closed")
        context = FakeContext(self.engine, options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.close_calls += 1
        if self.engine.hang_close:
            await asyncio.Event().wait()
        self.closed = True


class FakeEngine:
    """Knobs and records shared by all fake engine objects in one test."""

    chrome_height = CHROME_HEIGHT

    def __init__(self) -> None:
        self.launches = 0
        self.launch_windows = []
        self.launch_error: Exception | None = None
        self.browsers: list[FakePlaywrightBrowser] = []
        self.failing_urls: set[str] = set()
        self.redirects: dict[str, str] = {}
        self.eval_results: dict[str, object] = {}
        self.fail_cdp = False
        self.fail_new_context = False
        self.fail_context_close = False
        self.hang_close = False

    @property
    def browser(self) -> FakePlaywrightBrowser:
        return self.browsers[-1]


@pytest.fixture
def engine(monkeypatch) -> FakeEngine:
    """Replace engine launch with in-process fakes."""
    fake = FakeEngine()

    async def fake_launch(cls, config, window=None):
        await asyncio.sleep(0)
        fake.launches += 1
        fake.launch_windows.append(window)
        if fake.launch_error is not None:
            raise fake.launch_error
        pw_browser = FakePlaywrightBrowser(fake)
        fake.browsers.append(pw_browser)
        return cls(pw_browser, config)

    monkeypatch.setattr(EngineProcessHandle, "launch", classmethod(fake_launch))
    return fake


@pytest.fixture
async def browser(engine):
    """Provide a Browser backed by the fake engine."""
    browser = Browser(BrowserConfig(headless=True, terminate_timeout=0.2))
    yield browser
    await browser.close()


@pytest.fixture
async def real_browser():
    """Provide a headless Playwright-backed Browser for integration tests."""
    browser = Browser(BrowserConfig(headless=True))
    yield browser
    await browser.close()
