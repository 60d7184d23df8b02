"""Error codes and exception hierarchy.

Error codes classify a failed request in an ExecutionResult. Exceptions are
reserved for conditions the caller cannot branch on through a result object.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Classification of a failed request."""

    NO_COMMAND = "NO_COMMAND"
    PARSE_ERROR = "PARSE_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    DNS_ERROR = "DNS_ERROR"
    SSL_ERROR = "SSL_ERROR"
    REDIRECT_ERROR = "REDIRECT_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    UNKNOWN = "UNKNOWN"


# Transient failures worth another attempt
RETRYABLE_CODES = frozenset(
    {
        ErrorCode.NETWORK_ERROR,
        ErrorCode.TIMEOUT,
        ErrorCode.DNS_ERROR,
        ErrorCode.SERVER_ERROR,
    }
)


class ProtocolError(Exception):
    """Base exception for protocol errors."""

    def __init__(
        self,
        message: str,
        protocol: str = "",
        code: ErrorCode = ErrorCode.UNKNOWN,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.protocol = protocol
        self.code = code
        self.details = details or {}
        super().__init__(message)


class TransportError(ProtocolError):
    """The transport failed before a response was received."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.NETWORK_ERROR,
        protocol: str = "",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, protocol, code, details)


class RequestTimeoutError(TransportError):
    """Request timed out."""

    def __init__(
        self,
        message: str = "Request timed out",
        protocol: str = "",
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(message, ErrorCode.TIMEOUT, protocol, {"timeout_seconds": timeout_seconds})
        self.timeout_seconds = timeout_seconds


class AuthenticationError(ProtocolError):
    """Authentication failed (bad credentials, rejected token exchange, etc.)."""

    def __init__(self, message: str, protocol: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, protocol, ErrorCode.AUTH_ERROR, details)


class ConfigurationError(ProtocolError):
    """Authentication configuration is missing or malformed."""

    pass


class PlaceholderError(ProtocolError):
    """A placeholder could not be resolved in strict mode."""

    def __init__(self, name: str, kind: str):
        self.name = name
        self.kind = kind
        super().__init__(
            f"Unresolved placeholder: {{{name}}} ({kind})",
            code=ErrorCode.PARSE_ERROR,
            details={"name": name, "kind": kind},
        )


class UnknownProtocolError(ProtocolError):
    """No handler is registered for the requested protocol type."""

    def __init__(self, protocol: str, available: Optional[list] = None):
        message = f"Unknown protocol type: {protocol}"
        if available:
            message += f". Available: {', '.join(available)}"
        super().__init__(message, protocol, ErrorCode.UNKNOWN)


class InvalidTransitionError(ProtocolError):
    """A run was asked to move to a state its current state cannot reach."""

    def __init__(self, run_id: str, current: str, target: str):
        self.run_id = run_id
        self.current = current
        self.target = target
        super().__init__(f"Run {run_id}: cannot transition from {current} to {target}")


class RunNotFoundError(ProtocolError):
    """No active or recorded run has this id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class RequestCancelledError(ProtocolError):
    """The request was cancelled by the caller. Not a failure."""

    def __init__(self, message: str = "Execution cancelled", protocol: str = ""):
        super().__init__(message, protocol)
