"""Lifecycle of the external browser engine process.

One Playwright driver is shared by every handle running on the same event
loop. It starts with the first launch and stops when the last handle is
terminated.

Builtin Chromium runs as a child process of ours so that it can be killed
without stopping the driver other handles still use.
"""

import asyncio
import logging
import shutil
import socket
import tempfile
import weakref
from pathlib import Path

import httpx
from playwright.async_api import Browser as PlaywrightBrowser
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Playwright, async_playwright

from .config import BrowserConfig
from .errors import LaunchError
from .geometry import HEADLESS_SCREEN, ViewportSize, window_position
from .timing import time_execution_async

logger = logging.getLogger(__name__)

CHROME_ARGS = (
    "--disable-field-trial-config",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-back-forward-cache",
    "--disable-breakpad",
    "--disable-client-side-phishing-detection",
    "--disable-component-extensions-with-background-pages",
    "--disable-default-apps",
    "--disable-dev-shm-usage",
    "--disable-hang-monitor",
    "--disable-ipc-flooding-protection",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-renderer-backgrounding",
    "--metrics-recording-only",
    "--no-first-run",
    "--no-default-browser-check",
    "--password-store=basic",
    "--use-mock-keychain",
)
CHROME_DOCKER_ARGS = (
    "--no-sandbox",
    "--disable-gpu-sandbox",
    "--disable-setuid-sandbox",
    "--no-zygote",
)
CHROME_DISABLE_SECURITY_ARGS = (
    "--disable-web-security",
    "--disable-site-isolation-trials",
    "--disable-features=IsolateOrigins,site-per-process",
    "--allow-running-insecure-content",
    "--ignore-certificate-errors",
)
CHROME_DETERMINISTIC_RENDERING_ARGS = (
    "--deterministic-mode",
    "--js-flags=--random-seed=1157259159",
    "--force-device-scale-factor=1",
    "--enable-webgl",
    "--font-render-hinting=none",
    "--force-color-profile=srgb",
)

# Playwright passes these to its own Chromium launches by default
_BUNDLED_CHROMIUM_ARGS = ("--no-sandbox",)
_IN_DOCKER = Path("/.dockerenv").exists()
_READY_POLL_INTERVAL = 0.25
_READY_REQUEST_TIMEOUT = 2.0


class _DriverPool:
    """Reference-counted Playwright driver for one event loop."""

    __slots__ = ("lock", "playwright", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.playwright: Playwright | None = None
        self.refs = 0


_pools: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, _DriverPool]" = weakref.WeakKeyDictionary()


def _current_pool() -> _DriverPool:
    loop = asyncio.get_running_loop()
    pool = _pools.get(loop)
    if pool is None:
        pool = _pools[loop] = _DriverPool()
    return pool


async def acquire_driver() -> Playwright:
    """Start the shared driver if needed and take a reference to it."""
    pool = _current_pool()
    async with pool.lock:
        if pool.playwright is None:
            try:
                pool.playwright = await async_playwright().start()
            except (PlaywrightError, OSError) as e:
                raise LaunchError(f"Failed to start the Playwright driver: {e}") from e
            logger.debug("Playwright driver started")
        pool.refs += 1
        return pool.playwright


async def release_driver() -> None:
    """Drop a reference; the last one stops the driver."""
    pool = _current_pool()
    async with pool.lock:
        if pool.refs == 0:
            return
        pool.refs -= 1
        if pool.refs == 0 and pool.playwright is not None:
            playwright, pool.playwright = pool.playwright, None
            try:
                await playwright.stop()
            except PlaywrightError as e:
                logger.warning("Playwright driver did not stop cleanly: %s", e)
            else:
                logger.debug("Playwright driver stopped")


def driver_refcount() -> int:
    """Number of live references to the current loop's driver."""
    return _current_pool().refs


def is_port_in_use(port: int, host: str = "localhost") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def chromium_launch_args(config: BrowserConfig, window: ViewportSize | None = None) -> list[str]:
    """Command-line arguments for a Chromium engine, deduplicated in order."""
    if window is None:
        if config.headless:
            window = ViewportSize(*HEADLESS_SCREEN)
        else:
            ctx = config.new_context_config
            window = ViewportSize(ctx.window_width, ctx.window_height)
    offset_x, offset_y = (0, 0) if config.headless else window_position()

    args = [f"--remote-debugging-port={config.remote_debugging_port}", *CHROME_ARGS]
    if _IN_DOCKER:
        args.extend(CHROME_DOCKER_ARGS)
    if config.disable_security:
        args.extend(CHROME_DISABLE_SECURITY_ARGS)
    if config.deterministic_rendering:
        args.extend(CHROME_DETERMINISTIC_RENDERING_ARGS)
    args.append(f"--window-position={offset_x},{offset_y}")
    args.append(f"--window-size={window.width},{window.height}")
    args.extend(config.extra_browser_args)
    return list(dict.fromkeys(args))


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]


def _require_binary(executable: str) -> None:
    if shutil.which(executable) is None:
        raise LaunchError(f"Browser binary not found: {executable}")


def _spawns_builtin_chromium(config: BrowserConfig) -> bool:
    """Whether Playwright's bundled Chromium is started as a process we own.

    Proxy credentials can only be handed to Playwright's own launcher, so
    that case stays with ``browser_type.launch``.
    """
    if config.browser_class != "chromium" or config.cdp_url or config.wss_url or config.browser_binary_path:
        return False
    proxy = config.proxy
    return proxy is None or (proxy.username is None and proxy.password is None)


async def _debug_endpoint_ready(port: int) -> bool:
    url = f"http://localhost:{port}/json/version"
    try:
        async with httpx.AsyncClient(timeout=_READY_REQUEST_TIMEOUT) as client:
            response = await client.get(url)
    except httpx.HTTPError:
        return False
    return response.status_code == 200


async def _stop_process(process: asyncio.subprocess.Process, timeout: float) -> None:
    """SIGTERM, then SIGKILL if the process outlives ``timeout``."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("Engine process %d ignored SIGTERM, killing", process.pid)
            process.kill()
            await process.wait()
    except ProcessLookupError:
        pass


class EngineProcessHandle:
    """One running (or attached) browser engine."""

    __slots__ = ("_browser", "_config", "_process", "_terminated", "_user_data_dir")

    def __init__(
        self,
        browser: PlaywrightBrowser,
        config: BrowserConfig,
        process: asyncio.subprocess.Process | None = None,
        user_data_dir: Path | None = None,
    ) -> None:
        self._browser = browser
        self._config = config
        self._process = process
        self._user_data_dir = user_data_dir
        self._terminated = False

    @property
    def browser(self) -> PlaywrightBrowser:
        return self._browser

    @property
    def pid(self) -> int | None:
        """Pid of the engine process we spawned ourselves, if any."""
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        if self._terminated or not self._browser.is_connected():
            return False
        return self._process is None or self._process.returncode is None

    @classmethod
    @time_execution_async("--launch (engine)")
    async def launch(cls, config: BrowserConfig, window: ViewportSize | None = None) -> "EngineProcessHandle":
        """Start or attach to an engine, bounded by ``config.launch_timeout``.

        Builtin Chromium is spawned as a child process and attached over CDP,
        so ``terminate`` can always force it down.

        Args:
            config: Browser configuration
            window: Initial window size for Chromium

        Raises:
            LaunchError: If the driver cannot start, the binary is missing,
                the process dies early or the engine is not ready in time
        """
        acquired = False
        process: asyncio.subprocess.Process | None = None
        user_data_dir: Path | None = None

        async def start() -> PlaywrightBrowser:
            nonlocal acquired, process, user_data_dir
            playwright = await acquire_driver()
            acquired = True

            port = config.remote_debugging_port
            if _spawns_builtin_chromium(config):
                if is_port_in_use(port):
                    port = _free_port()
                user_data_dir = Path(tempfile.mkdtemp(prefix="browser-session-"))
                process = await cls._spawn_binary(
                    config,
                    playwright.chromium.executable_path,
                    port,
                    window,
                    extra_args=(f"--user-data-dir={user_data_dir}", *_BUNDLED_CHROMIUM_ARGS),
                )
            elif config.browser_binary_path and not config.cdp_url and not config.wss_url:
                _require_binary(config.browser_binary_path)
                if await _debug_endpoint_ready(port):
                    logger.info("Reusing browser already running on port %d", port)
                else:
                    process = await cls._spawn_binary(config, config.browser_binary_path, port, window)
            return await cls._connect(playwright, config, window, process, port)

        try:
            browser = await asyncio.wait_for(start(), timeout=config.launch_timeout)
        except BaseException as e:
            if process is not None:
                await _stop_process(process, config.terminate_timeout)
            if user_data_dir is not None:
                shutil.rmtree(user_data_dir, ignore_errors=True)
            if acquired:
                await release_driver()
            if isinstance(e, TimeoutError):
                raise LaunchError(f"Engine was not ready within {config.launch_timeout:.1f}s") from e
            if isinstance(e, (PlaywrightError, OSError)):
                raise LaunchError(f"Failed to launch {config.browser_class}: {e}") from e
            raise

        logger.info(
            "Engine ready (%s, headless=%s, version=%s)",
            config.browser_class, config.headless, browser.version,
        )
        return cls(browser, config, process, user_data_dir)

    @staticmethod
    async def _spawn_binary(
        config: BrowserConfig,
        executable: str,
        port: int,
        window: ViewportSize | None,
        extra_args: tuple[str, ...] = (),
    ) -> asyncio.subprocess.Process:
        """Start a Chromium executable with remote debugging on ``port``."""
        if config.browser_class != "chromium":
            raise LaunchError("Spawning a browser binary only supports chromium browsers")
        _require_binary(executable)

        args = [
            arg for arg in chromium_launch_args(config, window)
            if not arg.startswith("--remote-debugging-port=")
        ]
        args.insert(0, f"--remote-debugging-port={port}")
        args.extend(extra_args)
        if config.proxy is not None:
            args.append(f"--proxy-server={config.proxy.server}")
            if config.proxy.bypass:
                args.append(f"--proxy-bypass-list={config.proxy.bypass}")
        if config.headless:
            args.append("--headless=new")

        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        logger.info("Spawned %s (pid %d)", executable, process.pid)
        return process

    @staticmethod
    async def _connect(
        playwright: Playwright,
        config: BrowserConfig,
        window: ViewportSize | None,
        process: asyncio.subprocess.Process | None,
        port: int,
    ) -> PlaywrightBrowser:
        browser_type = getattr(playwright, config.browser_class)

        if config.cdp_url:
            if config.browser_class == "firefox":
                raise LaunchError("CDP is not supported for Firefox")
            logger.info("Connecting to remote browser via CDP %s", config.cdp_url)
            return await playwright.chromium.connect_over_cdp(config.cdp_url)

        if config.wss_url:
            logger.info("Connecting to remote browser via WSS %s", config.wss_url)
            return await browser_type.connect(config.wss_url)

        if config.headless:
            logger.warning("Headless mode is not recommended. Many sites detect and block headless browsers.")

        if process is not None or config.browser_binary_path:
            while not await _debug_endpoint_ready(port):
                if process is not None and process.returncode is not None:
                    raise LaunchError(f"Engine process exited with code {process.returncode} before becoming ready")
                await asyncio.sleep(_READY_POLL_INTERVAL)
            return await playwright.chromium.connect_over_cdp(f"http://localhost:{port}")

        if config.browser_class == "chromium":
            args = chromium_launch_args(config, window)
            if is_port_in_use(config.remote_debugging_port):
                args.remove(f"--remote-debugging-port={config.remote_debugging_port}")
        elif config.browser_class == "firefox":
            args = ["-no-remote", *config.extra_browser_args]
        else:
            args = ["--no-startup-window", *config.extra_browser_args]

        return await browser_type.launch(
            headless=config.headless,
            args=args,
            proxy=config.proxy.model_dump(exclude_none=True) if config.proxy else None,
            handle_sigint=False,
            handle_sigterm=False,
        )

    async def terminate(self) -> None:
        """Close the engine gracefully, forcing it down after the timeout.

        A process we spawned gets SIGTERM and then SIGKILL, whether or not
        other handles still share the driver. Safe to call any number of times.
        """
        if self._terminated:
            return
        self._terminated = True
        timeout = self._config.terminate_timeout
        try:
            try:
                await asyncio.wait_for(self._browser.close(), timeout=timeout)
            except TimeoutError:
                logger.warning("Engine did not close within %.1fs, forcing termination", timeout)
            except PlaywrightError as e:
                logger.debug("Engine already disconnected: %s", e)
            if self._process is not None:
                await _stop_process(self._process, timeout)
        finally:
            if self._user_data_dir is not None:
                shutil.rmtree(self._user_data_dir, ignore_errors=True)
            await release_driver()
        logger.info("Engine terminated")
