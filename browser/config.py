"""Validated, immutable configuration for browsers and browsing contexts."""

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .geometry import SizeTolerance

BrowserClass = Literal["chromium", "firefox", "webkit"]

DEFAULT_DEBUG_PORT = 9222

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off", "")


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ProxySettings(_FrozenModel):
    """Proxy settings passed to the engine at launch."""

    server: str
    bypass: str | None = None
    username: str | None = None
    password: str | None = None


class HttpCredentials(_FrozenModel):
    """HTTP basic auth credentials used for every URL in a context."""

    username: str
    password: str


class BrowserContextConfig(_FrozenModel):
    """Configuration of one isolated browsing context.

    ``window_width``/``window_height`` size the viewport when ``no_viewport``
    is False, and the outer window when it is True.
    """

    window_width: int = Field(default=1280, gt=0, description="Requested width in CSS pixels")
    window_height: int = Field(default=1100, gt=0, description="Requested height in CSS pixels")
    no_viewport: bool = Field(default=True, description="Let the window size determine the viewport")

    user_agent: str | None = None
    locale: str | None = None
    timezone_id: str | None = None
    disable_security: bool = False
    permissions: tuple[str, ...] = ("clipboard-read", "clipboard-write")
    http_credentials: HttpCredentials | None = None
    cookies_file: Path | None = None
    trace_path: Path | None = None
    allowed_domains: tuple[str, ...] | None = None

    navigation_timeout: float = Field(default=30.0, gt=0, description="Seconds")
    context_timeout: float = Field(default=30.0, gt=0, description="Seconds")
    chrome_tolerance: SizeTolerance = Field(default_factory=SizeTolerance)


class BrowserConfig(_FrozenModel):
    """Configuration of the engine process behind a ``Browser``."""

    headless: bool = False
    browser_class: BrowserClass = "chromium"
    browser_binary_path: str | None = None
    remote_debugging_port: int = Field(default=DEFAULT_DEBUG_PORT, gt=0, lt=65536)
    cdp_url: str | None = None
    wss_url: str | None = None
    extra_browser_args: tuple[str, ...] = ()
    disable_security: bool = False
    deterministic_rendering: bool = False
    proxy: ProxySettings | None = None

    launch_timeout: float = Field(default=30.0, gt=0, description="Seconds")
    terminate_timeout: float = Field(default=5.0, gt=0, description="Seconds")

    new_context_config: BrowserContextConfig = Field(default_factory=BrowserContextConfig)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name}: '{raw}'")


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: '{raw}'") from None


def context_config_from_env(**overrides: Any) -> BrowserContextConfig:
    """Build a context config from BROWSER_WINDOW_* environment variables.

    Keyword overrides win over the environment.
    """
    values: dict[str, Any] = {}
    width = _env_int("BROWSER_WINDOW_WIDTH")
    height = _env_int("BROWSER_WINDOW_HEIGHT")
    if width is not None:
        values["window_width"] = width
    if height is not None:
        values["window_height"] = height
    if "BROWSER_NO_VIEWPORT" in os.environ:
        values["no_viewport"] = _env_bool("BROWSER_NO_VIEWPORT", True)
    values.update(overrides)
    return BrowserContextConfig(**values)


def browser_config_from_env(**overrides: Any) -> BrowserConfig:
    """Build a browser config from BROWSER_* environment variables.

    Examples:
        # BROWSER_HEADLESS=1 BROWSER_CLASS=firefox
        config = browser_config_from_env()

        # environment, but always headful
        config = browser_config_from_env(headless=False)
    """
    values: dict[str, Any] = {
        "headless": _env_bool("BROWSER_HEADLESS", False),
        "new_context_config": context_config_from_env(),
    }
    for field_name, env_name in (
        ("browser_class", "BROWSER_CLASS"),
        ("browser_binary_path", "BROWSER_BINARY_PATH"),
        ("cdp_url", "BROWSER_CDP_URL"),
        ("wss_url", "BROWSER_WSS_URL"),
    ):
        if os.environ.get(env_name):
            values[field_name] = os.environ[env_name]
    values.update(overrides)
    return BrowserConfig(**values)
