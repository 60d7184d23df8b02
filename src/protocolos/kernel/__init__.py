"""Kernel module: handshake models, run lifecycle and the execution engine.

The engine lives in ``protocolos.kernel.executor`` and is imported from there;
it depends on the protocol handlers, which depend on the models below.
"""

from protocolos.kernel.lifecycle import ALLOWED_TRANSITIONS, LifecycleTracker
from protocolos.kernel.models import (
    AuthenticationConfig,
    ContentCategory,
    Credentials,
    ExecutionResult,
    ExecutionRun,
    Handshake,
    HealthStatus,
    LogEntry,
    LogLevel,
    ProtocolType,
    RequestTemplate,
    RetrySettings,
    RunStatus,
    StatusCategory,
)

__all__ = [
    # Models
    "AuthenticationConfig",
    "Credentials",
    "Handshake",
    "ProtocolType",
    "RequestTemplate",
    "RetrySettings",
    # Results
    "ContentCategory",
    "ExecutionResult",
    "LogEntry",
    "LogLevel",
    "StatusCategory",
    # Lifecycle
    "ALLOWED_TRANSITIONS",
    "ExecutionRun",
    "HealthStatus",
    "LifecycleTracker",
    "RunStatus",
]
