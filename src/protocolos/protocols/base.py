"""Protocol handler contract and shared request plumbing.

Defines the foundation every authentication strategy builds on:
- RequestPolicy: timeouts, retry budget, backoff, redirects
- CancelToken: cooperative cancellation shared by engine and transport
- Transport: injected async HTTP capability (no handler owns a client)
- ProtocolHandler: validate / authenticate / execute_request / refresh
- Status, content-type and body classification helpers

A handler's execute_request performs exactly one attempt. Retrying,
overall timeouts and run bookkeeping belong to the execution engine.
"""

import asyncio
import contextlib
import dataclasses
import json
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import (
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Dict,
    FrozenSet,
    List,
    Optional,
    Protocol,
    Tuple,
    Type,
    TypeVar,
    runtime_checkable,
)
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from protocolos.config import ExecutionConfig
from protocolos.config import config as app_config
from protocolos.kernel.models import (
    ContentCategory,
    Credentials,
    ExecutionResult,
    LogEntry,
    LogLevel,
    ProtocolType,
    RequestTemplate,
    StatusCategory,
    utc_now,
)
from protocolos.protocols.errors import (
    RETRYABLE_CODES,
    AuthenticationError,
    ConfigurationError,
    ErrorCode,
    ProtocolError,
    RequestCancelledError,
    TransportError,
)
from protocolos.tools import curl
from protocolos.tools.placeholders import PlaceholderContext, resolve
from protocolos.tools.sanitizer import sanitize_string

logger = logging.getLogger(__name__)

T = TypeVar("T")

# =============================================================================
# Request Policy
# =============================================================================

NON_IDEMPOTENT_METHODS = frozenset({"POST", "PATCH"})


@dataclass
class RequestPolicy:
    """Policy for request execution: timeouts, retries, redirects.

    Used by the execution engine for the retry loop and by the default
    transport for client settings.
    """

    # Timeouts
    timeout_s: float = 30.0  # per attempt

    # Retries
    max_retries: int = 3
    retry_base_delay_s: float = 1.0
    retry_on: FrozenSet[ErrorCode] = RETRYABLE_CODES
    retry_non_idempotent: bool = True

    # Transport
    follow_redirects: bool = True
    max_redirects: int = 5
    verify_ssl: bool = True
    user_agent: str = "Protocol-OS/1.0"
    default_headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, execution: Optional[ExecutionConfig] = None) -> "RequestPolicy":
        """Build a policy from the PO_* environment settings."""
        execution = execution or app_config.execution
        return cls(
            timeout_s=execution.request_timeout_s,
            max_retries=execution.max_retries,
            retry_base_delay_s=execution.retry_base_delay_s,
            retry_non_idempotent=execution.retry_non_idempotent,
            follow_redirects=execution.follow_redirects,
            max_redirects=execution.max_redirects,
            verify_ssl=execution.verify_ssl,
            user_agent=execution.user_agent,
        )

    def with_overrides(
        self,
        max_retries: Optional[int] = None,
        base_delay_s: Optional[float] = None,
        timeout_s: Optional[float] = None,
    ) -> "RequestPolicy":
        """Copy of this policy with any non-None override applied."""
        changes: Dict[str, Any] = {}
        if max_retries is not None:
            changes["max_retries"] = max_retries
        if base_delay_s is not None:
            changes["retry_base_delay_s"] = base_delay_s
        if timeout_s is not None:
            changes["timeout_s"] = timeout_s
        return dataclasses.replace(self, **changes)

    def should_retry(self, result: ExecutionResult, attempt: int) -> bool:
        """Decide whether a failed attempt (0-based) earns another try."""
        if result.success or attempt >= self.max_retries:
            return False
        if result.error_code not in self.retry_on:
            return False
        if (
            not self.retry_non_idempotent
            and result.method.upper() in NON_IDEMPOTENT_METHODS
            and result.error_code in (ErrorCode.SERVER_ERROR, ErrorCode.TIMEOUT)
        ):
            return False
        return True

    def retry_delay(self, attempt: int, rng: random.Random) -> float:
        """Exponential backoff with jitter in [0.5, 1.0) of the full step."""
        return self.retry_base_delay_s * (2**attempt) * (0.5 + rng.uniform(0, 0.5))


# =============================================================================
# Cancellation and transport
# =============================================================================


class CancelToken:
    """Cooperative cancellation flag, awaitable by transports."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, protocol: str = "") -> None:
        if self._event.is_set():
            raise RequestCancelledError(protocol=protocol)


async def run_cancellable(awaitable: Awaitable[T], signal: Optional[CancelToken], protocol: str = "") -> T:
    """Await ``awaitable`` unless ``signal`` fires first.

    Raises:
        RequestCancelledError: If the token fires before the awaitable completes
    """
    if signal is None:
        return await awaitable

    if signal.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RequestCancelledError(protocol=protocol)

    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        watcher.cancel()

    if work in done:
        return work.result()

    work.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await work
    raise RequestCancelledError(protocol=protocol)


@dataclass
class TransportResponse:
    """Response returned by a Transport."""

    status_code: int
    headers: Dict[str, str]
    body: bytes = b""
    elapsed_s: float = 0.0
    url: str = ""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def json(self) -> Any:
        return json.loads(self.body)


@runtime_checkable
class Transport(Protocol):
    """Async HTTP capability injected into handlers.

    Implementations raise TransportError (with a classified code) when no
    response was received, and RequestCancelledError when ``signal`` fires.
    """

    async def __call__(
        self,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        body: Optional[str] = None,
        signal: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> TransportResponse:
        ...


# =============================================================================
# Handler data types
# =============================================================================


@dataclass
class ExecutionOptions:
    """Per-request knobs passed from the engine to a handler."""

    variables: Dict[str, str] = field(default_factory=dict)
    input: Optional[str] = None
    timeout_s: Optional[float] = None
    follow_redirects: Optional[bool] = None
    verify_ssl: Optional[bool] = None
    additional_headers: Dict[str, str] = field(default_factory=dict)
    cancel_token: Optional[CancelToken] = None
    on_log: Optional[Callable[[LogEntry], None]] = None
    strict: bool = False


@dataclass
class AuthResult:
    """Outcome of authenticate() or refresh()."""

    success: bool
    credentials: Optional[Credentials] = None
    error: Optional[str] = None
    authorization_url: Optional[str] = None


@dataclass
class ConfigValidation:
    is_valid: bool = True
    missing_fields: List[str] = field(default_factory=list)
    invalid_fields: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def invalid(self, field_name: str, reason: str) -> None:
        self.invalid_fields.append({"field": field_name, "reason": reason})


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    latency_ms: Optional[float] = None


@dataclass
class OutgoingRequest:
    """A fully-resolved request ready for the transport."""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None


def is_expired(expiry: Optional[datetime], buffer_seconds: float = 0, now: Optional[datetime] = None) -> bool:
    """True when ``now + buffer >= expiry``. A missing expiry never expires."""
    if expiry is None:
        return False
    now = now or utc_now()
    return now + timedelta(seconds=buffer_seconds) >= expiry


# =============================================================================
# Classification helpers
# =============================================================================


def classify_status(status_code: Optional[int]) -> Optional[StatusCategory]:
    if status_code is None:
        return None
    if status_code < 200:
        return StatusCategory.INFORMATIONAL
    if status_code < 300:
        return StatusCategory.SUCCESS
    if status_code < 400:
        return StatusCategory.REDIRECT
    if status_code < 500:
        return StatusCategory.CLIENT_ERROR
    return StatusCategory.SERVER_ERROR


def error_code_for_status(status_code: int) -> Optional[ErrorCode]:
    """Map a non-success HTTP status to an error code (None for 1xx/2xx)."""
    if status_code in (401, 403):
        return ErrorCode.AUTH_ERROR
    if status_code >= 500:
        return ErrorCode.SERVER_ERROR
    if status_code >= 400:
        return ErrorCode.CLIENT_ERROR
    if status_code >= 300:
        return ErrorCode.REDIRECT_ERROR
    return None


def classify_content_type(content_type: str, body: bytes = b"") -> ContentCategory:
    """Bucket a Content-Type header (sniffing the body when it is absent)."""
    value = content_type.split(";", 1)[0].strip().lower()
    if value:
        if value.endswith("json"):
            return ContentCategory.JSON
        if value.endswith("xml"):
            return ContentCategory.XML
        if value == "text/html":
            return ContentCategory.HTML
        if value.startswith("text/"):
            return ContentCategory.TEXT
        if value.startswith("image/"):
            return ContentCategory.IMAGE
        if value.startswith(("application/", "audio/", "video/", "font/")):
            return ContentCategory.BINARY
        return ContentCategory.UNKNOWN

    stripped = body.lstrip()[:1]
    if stripped in (b"{", b"["):
        return ContentCategory.JSON
    if stripped == b"<":
        return ContentCategory.XML
    return ContentCategory.TEXT if body else ContentCategory.UNKNOWN


def parse_body(raw: str, category: ContentCategory) -> Any:
    """Parse JSON bodies; everything else stays text."""
    if category == ContentCategory.JSON and raw.strip():
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def add_query_params(url: str, params: Dict[str, str]) -> str:
    """Append query parameters, replacing any existing values for the same keys."""
    if not params:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def merge_headers(*layers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Merge header dicts left to right; later layers win, case-insensitively."""
    merged: Dict[str, str] = {}
    for layer in layers:
        for key, value in (layer or {}).items():
            for existing in [k for k in merged if k.lower() == key.lower()]:
                del merged[existing]
            merged[key] = value
    return merged


# =============================================================================
# Per-attempt bookkeeping
# =============================================================================


class RequestCall:
    """Logs and timing for one execute_request attempt."""

    def __init__(self, handler: "ProtocolHandler", request: RequestTemplate, options: ExecutionOptions):
        self.handler = handler
        self.request = request
        self.options = options
        self.logs: List[LogEntry] = []
        self.method = "GET"
        self.url = ""
        self.started_at = utc_now()
        self._start = time.monotonic()

    def log(self, level: LogLevel, message: str) -> None:
        entry = LogEntry(level=level, message=sanitize_string(message))
        self.logs.append(entry)
        logger.debug("[%s] %s", self.handler.protocol_type.value, entry.message)
        if self.options.on_log:
            self.options.on_log(entry)

    def _elapsed_ms(self) -> float:
        return (time.monotonic() - self._start) * 1000

    def fail(self, message: str, code: ErrorCode) -> ExecutionResult:
        """Result for an attempt that produced no response."""
        return ExecutionResult(
            request_id=self.request.id,
            title=self.request.title,
            protocol_type=self.handler.protocol_type,
            success=False,
            method=self.method,
            url=sanitize_string(self.url),
            duration_ms=self._elapsed_ms(),
            started_at=self.started_at,
            completed_at=utc_now(),
            logs=list(self.logs),
            error_message=message,
            error_code=code,
        )

    def finish(
        self,
        response: TransportResponse,
        body: Any = None,
        error_message: Optional[str] = None,
        success_status: Tuple[int, int] = (200, 300),
    ) -> ExecutionResult:
        """Result for an attempt that received a response.

        ``error_message`` marks a protocol-level failure inside an otherwise
        successful HTTP exchange (GraphQL errors, SOAP faults).
        """
        content_type = classify_content_type(response.header("content-type"), response.body)
        raw = response.text
        if body is None:
            body = parse_body(raw, content_type)

        low, high = success_status
        status_ok = low <= response.status_code < high
        success = status_ok and error_message is None
        code: Optional[ErrorCode] = None
        if not status_ok:
            code = error_code_for_status(response.status_code) or ErrorCode.UNKNOWN
            error_message = error_message or f"HTTP {response.status_code}"
        elif error_message is not None:
            code = ErrorCode.CLIENT_ERROR

        self.log(
            LogLevel.SUCCESS if success else LogLevel.ERROR,
            f"Status: {response.status_code}" + (f" ({error_message})" if error_message else ""),
        )
        return ExecutionResult(
            request_id=self.request.id,
            title=self.request.title,
            protocol_type=self.handler.protocol_type,
            success=success,
            method=self.method,
            url=sanitize_string(self.url),
            status_code=response.status_code,
            status_category=classify_status(response.status_code),
            headers=dict(response.headers),
            raw_body=raw,
            body=body,
            content_type=content_type,
            duration_ms=self._elapsed_ms(),
            started_at=self.started_at,
            completed_at=utc_now(),
            logs=list(self.logs),
            error_message=None if success else error_message,
            error_code=code,
        )


# =============================================================================
# Protocol handler contract
# =============================================================================


class ProtocolHandler(ABC):
    """Base class for authentication strategies.

    Subclasses declare their metadata as class attributes, list their
    required fields, implement authenticate() and build_request(), and may
    hook into response interpretation via postprocess().
    """

    protocol_type: ClassVar[ProtocolType]
    config_model: ClassVar[Type[Any]]
    display_name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    supports_token_refresh: ClassVar[bool] = False
    requires_user_interaction: ClassVar[bool] = False

    def __init__(self, transport: Optional[Transport] = None, policy: Optional[RequestPolicy] = None):
        self.transport = transport
        self.policy = policy or RequestPolicy.from_config()

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @abstractmethod
    def required_fields(self) -> List[str]:
        """Config fields that must be non-empty."""

    def optional_fields(self) -> List[str]:
        return []

    def validate_configuration(self, config: Any) -> ConfigValidation:
        """Check a config for missing and malformed fields.

        Args:
            config: Authentication config for this protocol

        Returns:
            ConfigValidation; ``is_valid`` is False when any field is missing
            or invalid. Warnings never affect validity.
        """
        validation = ConfigValidation()
        if not isinstance(config, self.config_model):
            validation.invalid("type", f"Expected {self.protocol_type.value} configuration")
            validation.is_valid = False
            return validation

        for name in self.required_fields():
            if not getattr(config, name, None):
                validation.missing_fields.append(name)

        self.check_configuration(config, validation)
        validation.is_valid = not validation.missing_fields and not validation.invalid_fields
        return validation

    def check_configuration(self, config: Any, validation: ConfigValidation) -> None:
        """Protocol-specific checks; add invalid fields or warnings."""

    @staticmethod
    def _check_url(validation: ConfigValidation, name: str, value: Optional[str], schemes=("http", "https")) -> None:
        if value and urlsplit(value).scheme not in schemes:
            validation.invalid(name, f"Must be a {'/'.join(schemes)} URL")

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    @abstractmethod
    async def authenticate(self, config: Any) -> AuthResult:
        """Obtain credentials for ``config``."""

    async def refresh(self, config: Any, credentials: Credentials) -> AuthResult:
        """Renew credentials. Unsupported unless a subclass overrides it."""
        return AuthResult(success=False, error=f"{self.display_name} does not support token refresh")

    async def ensure_fresh(
        self,
        config: Any,
        credentials: Credentials,
        log: Optional[Callable[[LogLevel, str], None]] = None,
    ) -> Credentials:
        """Refresh expired credentials before use.

        Returns the credentials unchanged while they are valid, otherwise the
        renewed ones. Callers keep the returned value for later requests.

        Raises:
            AuthenticationError: If the credentials are expired and cannot be refreshed
        """
        if not is_expired(credentials.expires_at):
            return credentials
        if not self.supports_token_refresh:
            raise AuthenticationError("Credentials expired", self.protocol_type.value)
        if log:
            log(LogLevel.INFO, "Token expired, refreshing...")
        result = await self.refresh(config, credentials)
        if not result.success or result.credentials is None:
            raise AuthenticationError(result.error or "Token refresh failed", self.protocol_type.value)
        if log:
            log(LogLevel.SUCCESS, "Token refreshed")
        return result.credentials

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    @abstractmethod
    async def build_request(
        self,
        call: RequestCall,
        config: Any,
        credentials: Credentials,
    ) -> OutgoingRequest:
        """Turn the call's request template into a transport-ready request.

        Raises:
            ProtocolError: With a classified code when the request cannot be built
        """

    def postprocess(
        self, call: RequestCall, config: Any, response: TransportResponse, body: Any
    ) -> Tuple[Any, Optional[str]]:
        """Inspect a response; return (body, protocol error message or None)."""
        return body, None

    async def execute_request(
        self,
        request: RequestTemplate,
        config: Any,
        credentials: Credentials,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """Execute one attempt of ``request``.

        Transport failures and build errors are classified into the returned
        result.

        Raises:
            RequestCancelledError: If the cancel token fires before or during the call
        """
        options = options or ExecutionOptions()
        call = RequestCall(self, request, options)
        call.log(LogLevel.INFO, f"Executing: {request.title or request.id}")

        try:
            outgoing = await self.build_request(call, config, credentials)
        except RequestCancelledError:
            raise
        except ProtocolError as exc:
            call.log(LogLevel.ERROR, str(exc))
            return call.fail(str(exc), exc.code)

        outgoing.headers = merge_headers(outgoing.headers, options.additional_headers)
        call.method = outgoing.method
        call.url = outgoing.url
        try:
            response = await self.send(outgoing, options)
        except TransportError as exc:
            call.log(LogLevel.ERROR, str(exc))
            return call.fail(str(exc), exc.code)

        content_type = classify_content_type(response.header("content-type"), response.body)
        body, protocol_error = self.postprocess(call, config, response, parse_body(response.text, content_type))
        return call.finish(response, body, protocol_error)

    async def send(self, outgoing: OutgoingRequest, options: Optional[ExecutionOptions] = None) -> TransportResponse:
        """Hand a request to the injected transport.

        Raises:
            ConfigurationError: If no transport was injected
            TransportError: If no response was received
            RequestCancelledError: If cancelled
        """
        if self.transport is None:
            raise ConfigurationError(f"No transport configured for {self.protocol_type.value}", self.protocol_type.value)
        options = options or ExecutionOptions()
        if options.cancel_token is not None:
            options.cancel_token.raise_if_cancelled(self.protocol_type.value)

        logger.debug("%s %s", outgoing.method, sanitize_string(outgoing.url))
        return await self.transport(
            outgoing.method,
            outgoing.url,
            headers=outgoing.headers,
            body=outgoing.body,
            signal=options.cancel_token,
            timeout=options.timeout_s or self.policy.timeout_s,
        )

    def resolve_text(self, call: RequestCall, text: str) -> str:
        """Resolve placeholders against the call's input and variables.

        Raises:
            PlaceholderError: In strict mode, for an unresolved placeholder
        """
        options = call.options
        context = PlaceholderContext(
            input=options.input if options.input is not None else call.request.input_value,
            variables=options.variables,
            strict=options.strict,
        )
        resolved = resolve(text, context)
        if resolved.unresolved_names:
            call.log(LogLevel.WARNING, f"Unresolved placeholders: {', '.join(resolved.unresolved_names)}")
        return resolved.output

    def prepare_command(
        self, call: RequestCall, base_url: Optional[str] = None, require_url: bool = True
    ) -> curl.ParsedCommand:
        """Resolve placeholders in the call's command and parse it.

        Relative paths (``/users``) are joined onto ``base_url``.

        Raises:
            PlaceholderError: In strict mode, for an unresolved placeholder
            ProtocolError: NO_COMMAND for an empty command, PARSE_ERROR without a usable URL
        """
        command = call.request.command.strip()
        if not command:
            raise ProtocolError("No command to execute", self.protocol_type.value, ErrorCode.NO_COMMAND)

        parsed = curl.parse(self.resolve_text(call, command))
        if parsed.url.startswith("/"):
            if not base_url:
                raise ProtocolError(
                    f"Relative URL {parsed.url} requires a base URL", self.protocol_type.value, ErrorCode.PARSE_ERROR
                )
            parsed.url = base_url.rstrip("/") + parsed.url
        if require_url and not parsed.url:
            raise ProtocolError("No URL found in command", self.protocol_type.value, ErrorCode.PARSE_ERROR)
        return parsed

    def with_credentials(self, headers: Dict[str, str], url: str, credentials: Credentials) -> Tuple[Dict[str, str], str]:
        """Inject credential headers and query params."""
        return merge_headers(headers, credentials.headers), add_query_params(url, credentials.query_params)

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    async def test_connection(self, config: Any) -> ConnectionTestResult:
        """Validate and authenticate, reporting latency."""
        start = time.monotonic()
        validation = self.validate_configuration(config)
        if not validation.is_valid:
            problems = validation.missing_fields + [f["field"] for f in validation.invalid_fields]
            return ConnectionTestResult(False, f"Invalid configuration: {', '.join(problems)}")

        result = await self.authenticate(config)
        latency = (time.monotonic() - start) * 1000
        if result.success:
            return ConnectionTestResult(True, "Authentication succeeded", latency)
        return ConnectionTestResult(False, result.error or "Authentication failed", latency)

    async def health_check(self, config: Any) -> bool:
        return (await self.test_connection(config)).success

    def generate_sample_curl(self, config: Any) -> str:
        return curl.stringify(
            curl.ParsedCommand(
                method="GET",
                url="https://api.example.com/resource",
                headers={"Authorization": "Bearer <YOUR_TOKEN>", "Content-Type": "application/json"},
            )
        )
