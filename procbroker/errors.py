from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NOT_INSTALLED = "not_installed"
    NOT_AUTHENTICATED = "not_authenticated"
    SPAWN_FAILURE = "spawn_failure"
    RUNTIME_FAILURE = "runtime_failure"
    MALFORMED_OUTPUT = "malformed_output"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ARTIFACT_IO_FAILURE = "artifact_io_failure"


class BrokerError(Exception):
    """Failure on the subprocess path, tagged with the kind the fallback logic keys on."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class PoolClosedError(RuntimeError):
    pass


class InvalidTransitionError(RuntimeError):
    pass


class StreamSubscriptionError(RuntimeError):
    pass


class RemoteApiError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FallbackExhaustedError(RuntimeError):
    """Both the CLI path and the remote API failed for the same request."""

    def __init__(self, cli_error: Optional[str], remote_error: str):
        detail = f"CLI: {cli_error or 'not attempted'}; API: {remote_error}"
        super().__init__(f"All completion paths failed ({detail})")
        self.cli_error = cli_error
        self.remote_error = remote_error
