"""Unit tests for the engine process handle and the shared Playwright driver."""

import asyncio
import os
import signal
import socket
import sys
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

from browser import BrowserConfig, LaunchError, ProxySettings, ViewportSize
from browser import engine as engine_module
from browser.engine import (
    EngineProcessHandle,
    _stop_process,
    acquire_driver,
    chromium_launch_args,
    driver_refcount,
    is_port_in_use,
    release_driver,
)


class FakeBrowserType:
    def __init__(self, executable_path: str = "") -> None:
        self.executable_path = executable_path
        self.error: Exception | None = None
        self.hang = False
        self.launch_kwargs: dict | None = None
        self.cdp_urls: list[str] = []

    async def launch(self, **kwargs):
        self.launch_kwargs = kwargs
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return FakeDriverBrowser()

    async def connect_over_cdp(self, endpoint_url: str):
        self.cdp_urls.append(endpoint_url)
        if self.error is not None:
            raise self.error
        return FakeDriverBrowser()


class FakeDriverBrowser:
    version = "fake-1.0"

    def __init__(self) -> None:
        self.connected = True
        self.close_calls = 0
        self.hang = False

    def is_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.close_calls += 1
        if self.hang:
            await asyncio.Event().wait()
        self.connected = False


class FakePlaywright:
    def __init__(self, chromium: FakeBrowserType) -> None:
        self.chromium = chromium
        self.firefox = FakeBrowserType()
        self.webkit = FakeBrowserType()
        self.stopped = 0

    async def stop(self) -> None:
        self.stopped += 1


class FakeDriverManager:
    def __init__(self, playwright: FakePlaywright) -> None:
        self.playwright = playwright
        self.error: Exception | None = None
        self.hang = False
        self.starts = 0
        self.endpoint_ready = True

    async def start(self) -> FakePlaywright:
        self.starts += 1
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.playwright


@pytest.fixture
def chromium_binary(tmp_path) -> Path:
    """A stand-in Chromium executable: records its arguments, then idles."""
    binary = tmp_path / "chrome"
    binary.write_text(f'#!/bin/sh\necho "$@" > "{tmp_path / "args.txt"}"\nexec sleep 60\n')
    binary.chmod(0o755)
    return binary


@pytest.fixture
def driver(monkeypatch, chromium_binary):
    """Replace the Playwright driver with a fake whose bundled Chromium is ``chromium_binary``."""
    manager = FakeDriverManager(FakePlaywright(FakeBrowserType(str(chromium_binary))))

    async def endpoint_ready(port):
        return manager.endpoint_ready

    monkeypatch.setattr(engine_module, "async_playwright", lambda: manager)
    monkeypatch.setattr(engine_module, "is_port_in_use", lambda port, host="localhost": False)
    monkeypatch.setattr(engine_module, "_debug_endpoint_ready", endpoint_ready)
    monkeypatch.setattr(engine_module, "_READY_POLL_INTERVAL", 0.01)
    return manager


async def _spawned_args(args_file: Path) -> list[str]:
    for _ in range(200):
        if args_file.exists() and args_file.read_text().strip():
            return args_file.read_text().split()
        await asyncio.sleep(0.01)
    raise AssertionError("stand-in binary never started")


def _process_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


@pytest.mark.unit
def test_launch_args_headless_defaults():
    args = chromium_launch_args(BrowserConfig(headless=True))

    assert args[0] == "--remote-debugging-port=9222"
    assert "--window-size=1920,1080" in args
    assert "--window-position=0,0" in args
    assert "--disable-web-security" not in args


@pytest.mark.unit
def test_launch_args_use_requested_window():
    args = chromium_launch_args(BrowserConfig(headless=True), ViewportSize(1440, 990))

    assert "--window-size=1440,990" in args
    assert "--window-size=1920,1080" not in args


@pytest.mark.unit
def test_launch_args_optional_groups():
    config = BrowserConfig(headless=True, disable_security=True, deterministic_rendering=True)

    args = chromium_launch_args(config)

    assert "--disable-web-security" in args
    assert "--force-device-scale-factor=1" in args


@pytest.mark.unit
def test_launch_args_are_deduplicated():
    config = BrowserConfig(headless=True, extra_browser_args=["--no-first-run", "--lang=de"])

    args = chromium_launch_args(config)

    assert args.count("--no-first-run") == 1
    assert args[-1] == "--lang=de"


@pytest.mark.unit
def test_is_port_in_use():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        sock.listen()
        port = sock.getsockname()[1]

        assert is_port_in_use(port)


@pytest.mark.unit
async def test_driver_is_shared_and_reference_counted(driver):
    first = await acquire_driver()
    second = await acquire_driver()

    assert first is second
    assert driver.starts == 1
    assert driver_refcount() == 2

    await release_driver()
    assert driver.playwright.stopped == 0

    await release_driver()
    assert driver.playwright.stopped == 1
    assert driver_refcount() == 0

    await release_driver()
    assert driver_refcount() == 0


@pytest.mark.unit
async def test_driver_start_failure(driver):
    driver.error = PlaywrightError("driver crashed")

    with pytest.raises(LaunchError):
        await acquire_driver()

    assert driver_refcount() == 0


@pytest.mark.unit
async def test_driver_start_counts_against_launch_timeout(driver):
    driver.hang = True

    with pytest.raises(LaunchError, match="not ready"):
        await EngineProcessHandle.launch(BrowserConfig(headless=True, launch_timeout=0.05))

    assert driver_refcount() == 0


@pytest.mark.unit
async def test_builtin_chromium_is_an_owned_process(driver, chromium_binary):
    """Bundled Chromium is spawned by us and attached over CDP."""
    config = BrowserConfig(headless=True, terminate_timeout=0.5)

    handle = await EngineProcessHandle.launch(config, ViewportSize(800, 490))

    assert handle.is_alive
    assert handle.pid is not None
    assert driver.playwright.chromium.launch_kwargs is None
    assert driver.playwright.chromium.cdp_urls == ["http://localhost:9222"]
    assert driver_refcount() == 1

    args = await _spawned_args(chromium_binary.parent / "args.txt")
    assert "--remote-debugging-port=9222" in args
    assert "--window-size=800,490" in args
    assert "--headless=new" in args
    assert "--no-sandbox" in args
    user_data_dir = Path(next(arg for arg in args if arg.startswith("--user-data-dir=")).split("=", 1)[1])
    assert user_data_dir.is_dir()

    pid = handle.pid
    await handle.terminate()
    await handle.terminate()

    assert not handle.is_alive
    assert handle.browser.close_calls == 1
    assert _process_gone(pid)
    assert not user_data_dir.exists()
    assert driver_refcount() == 0
    assert driver.playwright.stopped == 1


@pytest.mark.unit
async def test_hung_engine_is_killed_while_driver_is_shared(driver):
    """Terminating one hung engine kills its process even though another handle keeps the driver."""
    config = BrowserConfig(headless=True, terminate_timeout=0.2)
    first = await EngineProcessHandle.launch(config)
    second = await EngineProcessHandle.launch(config)
    first.browser.hang = True
    pid = first.pid

    await asyncio.wait_for(first.terminate(), timeout=5)

    assert _process_gone(pid)
    assert second.is_alive
    assert driver_refcount() == 1
    assert driver.playwright.stopped == 0

    await second.terminate()
    assert driver.playwright.stopped == 1


@pytest.mark.unit
async def test_proxy_credentials_use_playwright_launcher(driver):
    proxy = ProxySettings(server="http://proxy:3128", username="bill", password="pa55w0rd")
    config = BrowserConfig(headless=True, proxy=proxy)

    handle = await EngineProcessHandle.launch(config)

    assert handle.pid is None
    assert driver.playwright.chromium.launch_kwargs["proxy"] == {
        "server": "http://proxy:3128",
        "username": "bill",
        "password": "pa55w0rd",
    }
    assert driver.playwright.chromium.launch_kwargs["handle_sigint"] is False
    await handle.terminate()


@pytest.mark.unit
async def test_launch_failure_is_launch_error(driver):
    driver.playwright.firefox.error = PlaywrightError("Executable doesn't exist at /nowhere/firefox")

    with pytest.raises(LaunchError, match="Executable doesn't exist"):
        await EngineProcessHandle.launch(BrowserConfig(headless=True, browser_class="firefox"))

    assert driver_refcount() == 0


@pytest.mark.unit
async def test_launch_times_out(driver):
    driver.playwright.firefox.hang = True

    with pytest.raises(LaunchError, match="not ready"):
        await EngineProcessHandle.launch(BrowserConfig(headless=True, browser_class="firefox", launch_timeout=0.05))

    assert driver_refcount() == 0


@pytest.mark.unit
async def test_missing_binary(driver):
    with pytest.raises(LaunchError, match="Browser binary not found: /nope/chrome"):
        await EngineProcessHandle.launch(BrowserConfig(headless=True, browser_binary_path="/nope/chrome"))

    assert driver_refcount() == 0


@pytest.mark.unit
async def test_missing_bundled_chromium(driver, tmp_path):
    driver.playwright.chromium.executable_path = str(tmp_path / "not-installed" / "chrome")

    with pytest.raises(LaunchError, match="Browser binary not found"):
        await EngineProcessHandle.launch(BrowserConfig(headless=True))


@pytest.mark.unit
async def test_process_exiting_before_ready(driver):
    driver.endpoint_ready = False
    config = BrowserConfig(headless=True, browser_binary_path="/bin/false", launch_timeout=5)

    with pytest.raises(LaunchError, match="exited with code 1 before becoming ready"):
        await EngineProcessHandle.launch(config)

    assert driver_refcount() == 0


@pytest.mark.unit
async def test_stop_process_escalates_to_sigkill():
    process = await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n",
        stdout=asyncio.subprocess.PIPE,
    )
    await process.stdout.readline()

    await asyncio.wait_for(_stop_process(process, timeout=0.2), timeout=5)

    assert process.returncode == -signal.SIGKILL


@pytest.mark.unit
async def test_stop_process_sigterm_is_enough(chromium_binary):
    process = await asyncio.create_subprocess_exec(str(chromium_binary))

    await _stop_process(process, timeout=2)

    assert process.returncode == -signal.SIGTERM


@pytest.mark.unit
async def test_cdp_not_supported_for_firefox(driver):
    config = BrowserConfig(browser_class="firefox", cdp_url="http://localhost:9222")

    with pytest.raises(LaunchError):
        await EngineProcessHandle.launch(config)


@pytest.mark.unit
async def test_terminate_bounded_when_close_hangs(driver):
    handle = await EngineProcessHandle.launch(BrowserConfig(headless=True, terminate_timeout=0.05))
    handle.browser.hang = True

    await asyncio.wait_for(handle.terminate(), timeout=2)

    assert not handle.is_alive
    assert driver_refcount() == 0
