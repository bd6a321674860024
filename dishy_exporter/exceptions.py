"""Exception hierarchy for the exporter.

All exporter errors inherit from ExporterError.
Provides structured error types for transport, command, session and encoding failures.
"""

from typing import Optional


class ExporterError(Exception):
    """Base exception for all exporter errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class TransportError(ExporterError):
    """WebSocket transport failures."""

    pass


class ConnectionFailedError(TransportError):
    """Socket could not be opened.

    Common causes: wrong port, renderer not running, target already closed.
    """

    pass


class TransportClosed(TransportError):
    """Socket dropped or was closed.

    Every pending call on the transport is rejected with this error.
    Recovery requires a fresh SessionController.start().
    """

    pass


class CommandError(ExporterError):
    """RPC command failures."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        error_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.method = method
        self.error_code = error_code


class CommandFailedError(CommandError):
    """Remote end answered with an error object.

    Example: Debugger.resume while the page is not paused.
    """

    pass


class CommandTimeoutError(CommandError):
    """No response arrived within the command timeout."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        timeout: Optional[float] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, method=method, details=details)
        self.timeout = timeout

    def __str__(self):
        if self.method and self.timeout:
            return f"Command '{self.method}' timed out after {self.timeout}s"
        return self.message


class StartupError(ExporterError):
    """Renderer or transport unreachable during start(). Fatal to the process."""

    pass


class SessionBusy(ExporterError):
    """A snapshot is already being acquired."""

    pass


class ExtractionTimeout(ExporterError):
    """Mutation target or page read not reached in time. Retryable.

    Attributes:
        timeout: Snapshot timeout in seconds
        mutations: Mutations observed before the deadline
    """

    def __init__(
        self,
        message: str,
        timeout: Optional[float] = None,
        mutations: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.timeout = timeout
        self.mutations = mutations


class MalformedPayload(ExporterError):
    """Page text did not parse as JSON."""

    def __init__(self, message: str, text: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.text = text


class EncodingError(ExporterError):
    """Value cannot be rendered as valid exposition text (non-finite number, cycle, bad name)."""

    pass
