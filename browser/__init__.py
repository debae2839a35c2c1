"""Browser session layer: engine lifecycle, isolated contexts and window sizing."""

from .browser import Browser
from .config import (
    BrowserConfig,
    BrowserContextConfig,
    HttpCredentials,
    ProxySettings,
    browser_config_from_env,
    context_config_from_env,
)
from .context import BrowserContext
from .engine import EngineProcessHandle
from .errors import (
    BrowserError,
    CancellationError,
    ContextCreationError,
    EvaluationError,
    LaunchError,
    NavigationError,
    TeardownError,
    URLNotAllowedError,
)
from .geometry import ResolvedGeometry, SizePlan, SizeTolerance, ViewportSize, plan_sizes
from .page import Page

__all__ = [
    "Browser",
    "BrowserConfig",
    "BrowserContext",
    "BrowserContextConfig",
    "BrowserError",
    "CancellationError",
    "ContextCreationError",
    "EngineProcessHandle",
    "EvaluationError",
    "HttpCredentials",
    "LaunchError",
    "NavigationError",
    "Page",
    "ProxySettings",
    "ResolvedGeometry",
    "SizePlan",
    "SizeTolerance",
    "TeardownError",
    "URLNotAllowedError",
    "ViewportSize",
    "browser_config_from_env",
    "context_config_from_env",
    "plan_sizes",
]
