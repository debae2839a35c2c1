"""Typed errors raised by the browser session layer."""


class BrowserError(Exception):
    """Base class for all browser session errors."""


class LaunchError(BrowserError):
    """The engine process could not be started or attached to."""


class ContextCreationError(BrowserError):
    """A browsing context could not be established on a running engine."""


class NavigationError(BrowserError):
    """A page failed to reach the requested URL."""


class URLNotAllowedError(NavigationError):
    """Navigation target is outside the context's allowed domains."""


class EvaluationError(BrowserError):
    """An in-page query failed or no document is loaded."""


class CancellationError(BrowserError):
    """Operation aborted because its owner was closed."""


class TeardownError(BrowserError):
    """Failures collected while closing a resource.

    Close operations never raise this; they record it and keep releasing
    the remaining resources.
    """

    def __init__(self, message: str, failures: list[BaseException]) -> None:
        super().__init__(f"{message} ({len(failures)} failure(s))")
        self.failures = tuple(failures)
