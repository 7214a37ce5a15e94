class FallHelpError(Exception):
    """Base class for errors raised by the telemetry core."""


class PersistenceError(FallHelpError):
    """A store read or write failed.

    ``retryable`` tells the router whether re-running the handler may succeed.
    Writes are idempotent, so a retry never produces a second event.
    """

    def __init__(self, message: str, retryable: bool = True, operation: str | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.operation = operation


class MalformedPayloadError(FallHelpError):
    """A telemetry payload could not be decoded or validated."""

    def __init__(self, kind: str, reason: str):
        super().__init__(f"malformed {kind} payload: {reason}")
        self.kind = kind
        self.reason = reason
