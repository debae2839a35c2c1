"""Window and viewport size planning.

A context accepts one width/height pair but can apply it to two different
targets. With a managed viewport the pair is the content area and the
window grows by the browser chrome around it. Without one the pair is the
outer window and the engine derives the viewport from whatever is left.
"""

import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import BrowserContextConfig

_NAVBAR_HEIGHT = {
    "win32": 85,
    "darwin": 80,
    "linux": 90,
}
_DEFAULT_NAVBAR_HEIGHT = 85

_WINDOW_POSITION = {
    "darwin": (-4, 24),  # small title bar, no border
    "win32": (-8, 0),  # left border
}

HEADLESS_SCREEN = (1920, 1080)


@dataclass(frozen=True, slots=True)
class ViewportSize:
    """Browser viewport dimensions."""

    width: int = 1280
    height: int = 720

    def as_dict(self) -> dict[str, int]:
        return {"width": self.width, "height": self.height}


@dataclass(frozen=True, slots=True)
class SizePlan:
    """Sizes a context requests from the engine.

    ``viewport`` is None when the engine derives it from the window.
    """

    viewport: ViewportSize | None
    window: ViewportSize

    @property
    def manages_viewport(self) -> bool:
        return self.viewport is not None


@dataclass(frozen=True, slots=True)
class ResolvedGeometry:
    """Window and viewport size observed on the engine."""

    window_width: int
    window_height: int
    viewport_width: int
    viewport_height: int

    @property
    def window(self) -> ViewportSize:
        return ViewportSize(self.window_width, self.window_height)

    @property
    def viewport(self) -> ViewportSize:
        return ViewportSize(self.viewport_width, self.viewport_height)

    @property
    def chrome_width(self) -> int:
        return self.window_width - self.viewport_width

    @property
    def chrome_height(self) -> int:
        return self.window_height - self.viewport_height


@dataclass(frozen=True, slots=True)
class SizeTolerance:
    """How far an observed size may drift from the requested one.

    The allowance is a fraction of the requested size, never below
    ``minimum_px``.
    """

    ratio: float = 0.05
    minimum_px: int = 20

    def allowance(self, requested: int) -> float:
        return max(requested * self.ratio, self.minimum_px)

    def matches(self, requested: ViewportSize, actual: ViewportSize) -> bool:
        """Check both dimensions of ``actual`` against ``requested``."""
        return (
            abs(requested.width - actual.width) <= self.allowance(requested.width)
            and abs(requested.height - actual.height) <= self.allowance(requested.height)
        )


def navbar_height(platform: str | None = None) -> int:
    """Height of the browser chrome above the content area, per platform."""
    platform = platform or sys.platform
    return _NAVBAR_HEIGHT.get(platform, _DEFAULT_NAVBAR_HEIGHT)


def window_position(platform: str | None = None) -> tuple[int, int]:
    """Recommended x, y offsets for placing a headful window."""
    platform = platform or sys.platform
    return _WINDOW_POSITION.get(platform, (0, 0))


def plan_sizes(config: "BrowserContextConfig", platform: str | None = None) -> SizePlan:
    """Assign the configured width/height to the viewport or to the window."""
    width, height = config.window_width, config.window_height
    if config.no_viewport:
        return SizePlan(viewport=None, window=ViewportSize(width, height))
    return SizePlan(
        viewport=ViewportSize(width, height),
        window=ViewportSize(width, height + navbar_height(platform)),
    )
