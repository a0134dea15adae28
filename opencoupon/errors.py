"""Exceptions raised by the auto-apply engine.

Per-candidate failures are reported as outcomes on ``AttemptResult``; the
exceptions below are reserved for conditions the caller has to handle.
"""


class AutoApplyError(Exception):
    """Base class for auto-apply errors."""
    pass


class SessionAlreadyRunningError(AutoApplyError):
    """A session is already active on this page."""

    def __init__(self, message: str = "Auto-apply is already running"):
        super().__init__(message)


class SubmitTimeoutError(AutoApplyError):
    """The submit control never became enabled."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Submit button did not re-enable within {timeout_ms}ms")


class FeedbackError(AutoApplyError):
    """Exception for feedback API errors."""
    pass
