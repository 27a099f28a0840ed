"""
Error taxonomy for the automation engine
"""


class StopRequested(BaseException):
    """Cooperative stop signal.

    Derives from BaseException (like KeyboardInterrupt) so generic
    ``except Exception`` handlers in actions, retries and recovery never
    intercept it. It unwinds to the main loop, which shuts down cleanly.
    """

    def __init__(self, message="Stop requested"):
        super().__init__(message)


class ConfigError(Exception):
    """Configuration is unreadable or structurally invalid. Fatal to the run."""


class TaskConfigError(ValueError):
    """A task is missing a field its type requires."""


class ElementTimeoutError(TimeoutError):
    """An element or condition did not reach the expected state in time."""


class SessionLostError(RuntimeError):
    """The browser session transport is gone (disconnected browser, closed page)."""


# Transport / browsing-context loss. Substring matching is the only option:
# Playwright and WebDriver report these as plain errors without codes.
RECOVERABLE_SIGNATURES = (
    'failed to write request to stream',
    'failed to read response from stream',
    'browsing context has been discarded',
    'no such window',
    'no such browsing context',
    'target window already closed',
    'target page, context or browser has been closed',
    'target closed',
    'browser has been closed',
    'browser has disconnected',
    'connection closed',
    'disconnected',
    'invalid session id',
    'session is not created',
    'session not created',
    'connection refused',
    'econnreset',
    'connection reset',
    'socket hang up',
)


def is_recoverable_session_error(exc) -> bool:
    """True when ``exc`` means the browser session died rather than the task failing"""
    if isinstance(exc, SessionLostError):
        return True
    if isinstance(exc, (ConfigError, TaskConfigError, ElementTimeoutError)):
        return False
    message = str(exc or '').lower()
    return any(sig in message for sig in RECOVERABLE_SIGNATURES)
