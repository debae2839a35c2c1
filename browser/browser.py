"""Browser: owns one engine process and the contexts created on it."""

import asyncio
import logging

from playwright.async_api import Error as PlaywrightError

from .config import BrowserConfig, BrowserContextConfig
from .context import BrowserContext
from .engine import EngineProcessHandle
from .errors import BrowserError, CancellationError, ContextCreationError, TeardownError
from .geometry import ViewportSize, plan_sizes

logger = logging.getLogger(__name__)


class Browser:
    """Factory for isolated browsing contexts on one engine.

    The engine is launched lazily by the first ``new_context`` call.

    Example:
        async with Browser(BrowserConfig(headless=True)) as browser:
            context = await browser.new_context(BrowserContextConfig(window_width=1440, window_height=900))
            page = await context.get_current_page()
            await page.goto("https://example.com")
    """

    __slots__ = ("_closed", "_config", "_contexts", "_engine", "_launch_lock", "_teardown_error")

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self._config = config or BrowserConfig()
        self._contexts: set[BrowserContext] = set()
        self._engine: EngineProcessHandle | None = None
        self._launch_lock = asyncio.Lock()
        self._closed = False
        self._teardown_error: TeardownError | None = None

    @property
    def config(self) -> BrowserConfig:
        return self._config

    @property
    def engine(self) -> EngineProcessHandle:
        if self._engine is None:
            raise BrowserError("Engine not launched. Call new_context() first.")
        return self._engine

    @property
    def contexts(self) -> list[BrowserContext]:
        return [context for context in self._contexts if not context.is_closed]

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def teardown_error(self) -> TeardownError | None:
        return self._teardown_error

    async def _ensure_engine(self, window: ViewportSize) -> EngineProcessHandle:
        async with self._launch_lock:
            if self._closed:
                raise CancellationError("Browser is closed")
            if self._engine is not None and not self._engine.is_alive:
                logger.warning("Engine is no longer running, relaunching")
                await self._engine.terminate()
                self._engine = None
            if self._engine is None:
                self._engine = await EngineProcessHandle.launch(self._config, window)
            return self._engine

    async def new_context(self, config: BrowserContextConfig | None = None) -> BrowserContext:
        """Create an isolated context sized according to ``config``.

        Args:
            config: Context configuration, defaults to ``BrowserConfig.new_context_config``

        Raises:
            LaunchError: If the engine has to be started and fails to
            ContextCreationError: If the engine cannot create the context in time
            CancellationError: If the browser is closed meanwhile
        """
        config = config or self._config.new_context_config
        engine = await self._ensure_engine(plan_sizes(config).window)
        if not engine.is_alive:
            raise ContextCreationError("Engine is not reachable")

        try:
            context = await asyncio.wait_for(BrowserContext.create(self, config), timeout=config.context_timeout)
        except TimeoutError as e:
            if self._closed:
                raise CancellationError("new_context aborted: browser closed") from e
            raise ContextCreationError(f"Context was not ready within {config.context_timeout:.1f}s") from e
        except PlaywrightError as e:
            if self._closed:
                raise CancellationError("new_context aborted: browser closed") from e
            raise ContextCreationError(f"Failed to create browser context: {e}") from e

        if self._closed:
            await context.close()
            raise CancellationError("new_context aborted: browser closed")
        self._contexts.add(context)
        return context

    def forget_context(self, context: BrowserContext) -> None:
        self._contexts.discard(context)

    async def close(self) -> None:
        """Close every context, then terminate the engine.

        Never raises for failures of individual contexts or the engine;
        they are logged and kept in ``teardown_error``. Safe to call more
        than once.
        """
        if self._closed:
            return
        self._closed = True
        failures: list[BaseException] = []

        contexts = list(self._contexts)
        results = await asyncio.gather(*(context.close() for context in contexts), return_exceptions=True)
        for context, result in zip(contexts, results):
            if isinstance(result, BaseException):
                failures.append(result)
            elif context.teardown_error is not None:
                failures.extend(context.teardown_error.failures)
        self._contexts.clear()

        async with self._launch_lock:
            engine, self._engine = self._engine, None
        if engine is not None:
            try:
                await engine.terminate()
            except Exception as e:
                logger.warning("Engine termination failed: %s", e)
                failures.append(e)

        if failures:
            self._teardown_error = TeardownError("Browser teardown incomplete", failures)
            logger.warning("%s", self._teardown_error)
        logger.info("Browser closed")

    async def __aenter__(self) -> "Browser":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
