"""Kernel models for handshakes, execution results and runs.

This module defines:
- ProtocolType and the per-protocol AuthenticationConfig variants
- Handshake / RequestTemplate: what the user wants executed
- Credentials: opaque material produced by an authentication strategy
- ExecutionResult: immutable outcome of one request
- ExecutionRun: lifecycle record of one handshake execution
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from protocolos.protocols.errors import RETRYABLE_CODES, ErrorCode


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Protocol types and authentication configuration
# =============================================================================


class ProtocolType(str, Enum):
    """Supported authentication protocols."""

    CURL_DEFAULT = "curl-default"
    OAUTH_PKCE = "oauth-pkce"
    OAUTH_AUTH_CODE = "oauth-auth-code"
    OAUTH_IMPLICIT = "oauth-implicit"
    CLIENT_CREDENTIALS = "client-credentials"
    REST_API_KEY = "rest-api-key"
    GRAPHQL = "graphql"
    WEBSOCKET = "websocket"
    SOAP_XML = "soap-xml"
    GITHUB_REPO_RUNNER = "github-repo-runner"
    KEYLESS_SCRAPER = "keyless-scraper"


class _AuthConfigBase(BaseModel):
    """Shared behaviour for authentication config variants.

    Required fields default to empty so that handlers can report them as
    missing instead of failing model validation.
    """

    model_config = {"extra": "ignore"}

    @property
    def protocol_type(self) -> ProtocolType:
        return ProtocolType(self.type)  # type: ignore[attr-defined]


class CurlDefaultConfig(_AuthConfigBase):
    type: Literal["curl-default"] = "curl-default"
    base_url: Optional[str] = None
    default_headers: Dict[str, str] = Field(default_factory=dict)


class _OAuthTokenFields(_AuthConfigBase):
    # Tokens obtained out of band (e.g. a completed browser flow)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None


class OAuthPkceConfig(_OAuthTokenFields):
    type: Literal["oauth-pkce"] = "oauth-pkce"
    auth_url: str = ""
    token_url: str = ""
    api_url: Optional[str] = None
    client_id: str = ""
    redirect_uri: str = ""
    scope: Optional[str] = None
    audience: Optional[str] = None
    extra_auth_params: Dict[str, str] = Field(default_factory=dict)
    verifier_length: int = 128


class OAuthAuthCodeConfig(_OAuthTokenFields):
    type: Literal["oauth-auth-code"] = "oauth-auth-code"
    auth_url: str = ""
    token_url: str = ""
    api_url: Optional[str] = None
    client_id: str = ""
    client_secret: str = ""
    client_auth_method: Literal["basic", "body"] = "body"
    redirect_uri: str = ""
    scope: Optional[str] = None
    audience: Optional[str] = None
    extra_auth_params: Dict[str, str] = Field(default_factory=dict)


class OAuthImplicitConfig(_AuthConfigBase):
    type: Literal["oauth-implicit"] = "oauth-implicit"
    auth_url: str = ""
    api_url: Optional[str] = None
    client_id: str = ""
    redirect_uri: str = ""
    scope: Optional[str] = None
    access_token: Optional[str] = None
    token_type: str = "Bearer"


class ClientCredentialsConfig(_AuthConfigBase):
    type: Literal["client-credentials"] = "client-credentials"
    token_url: str = ""
    api_url: Optional[str] = None
    client_id: str = ""
    client_secret: str = ""
    scope: Optional[str] = None
    audience: Optional[str] = None


class RestApiKeyConfig(_AuthConfigBase):
    type: Literal["rest-api-key"] = "rest-api-key"
    api_url: Optional[str] = None
    api_key: str = ""
    key_name: str = "X-API-Key"
    placement: Literal["header", "query"] = "header"
    prefix: Optional[str] = None


class GraphqlConfig(_AuthConfigBase):
    type: Literal["graphql"] = "graphql"
    endpoint: str = ""
    auth_header: str = "Authorization"
    auth_value: Optional[str] = None
    default_headers: Dict[str, str] = Field(default_factory=dict)


class WebsocketConfig(_AuthConfigBase):
    type: Literal["websocket"] = "websocket"
    url: str = ""
    auth_token: Optional[str] = None
    protocols: List[str] = Field(default_factory=list)
    receive_timeout_s: float = 10.0


class SoapXmlConfig(_AuthConfigBase):
    type: Literal["soap-xml"] = "soap-xml"
    endpoint: str = ""
    soap_action: Optional[str] = None
    soap_version: Literal["1.1", "1.2"] = "1.1"
    username: Optional[str] = None
    password: Optional[str] = None
    wsdl_url: Optional[str] = None
    namespace: Optional[str] = None


class GithubRepoRunnerConfig(_AuthConfigBase):
    type: Literal["github-repo-runner"] = "github-repo-runner"
    owner: str = ""
    repo: str = ""
    token: Optional[str] = None
    branch: str = "main"
    path: Optional[str] = None
    workflow_id: Optional[str] = None


class KeylessScraperConfig(_AuthConfigBase):
    type: Literal["keyless-scraper"] = "keyless-scraper"
    user_agent: Optional[str] = None
    default_headers: Dict[str, str] = Field(default_factory=dict)
    follow_redirects: bool = True
    extract_text: bool = True


AuthenticationConfig = Annotated[
    Union[
        CurlDefaultConfig,
        OAuthPkceConfig,
        OAuthAuthCodeConfig,
        OAuthImplicitConfig,
        ClientCredentialsConfig,
        RestApiKeyConfig,
        GraphqlConfig,
        WebsocketConfig,
        SoapXmlConfig,
        GithubRepoRunnerConfig,
        KeylessScraperConfig,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# Handshakes
# =============================================================================


class RequestTemplate(BaseModel):
    """One request in a handshake, written as a cURL command."""

    id: str
    title: str = ""
    command: str = ""
    test_data: Optional[str] = None
    input_value: Optional[str] = None


class RetrySettings(BaseModel):
    """Per-handshake override of the engine's retry policy."""

    max_retries: Optional[int] = Field(default=None, ge=0)
    base_delay_s: Optional[float] = Field(default=None, ge=0)
    timeout_s: Optional[float] = Field(default=None, gt=0)


class Handshake(BaseModel):
    """An authentication config plus an ordered list of requests."""

    id: str
    name: str = ""
    authentication: AuthenticationConfig = Field(default_factory=CurlDefaultConfig)
    requests: List[RequestTemplate] = Field(default_factory=list)
    continue_on_error: bool = False
    retry: Optional[RetrySettings] = None

    @property
    def protocol_type(self) -> ProtocolType:
        return self.authentication.protocol_type


# =============================================================================
# Credentials
# =============================================================================


class Credentials(BaseModel):
    """Material produced by a strategy's authenticate(); opaque to the engine."""

    headers: Dict[str, str] = Field(default_factory=dict)
    query_params: Dict[str, str] = Field(default_factory=dict)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    obtained_at: datetime = Field(default_factory=utc_now)
    extra: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Execution results
# =============================================================================


class LogLevel(str, Enum):
    """Levels of the user-facing execution log."""

    SYSTEM = "SYSTEM"
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


class LogEntry(BaseModel):
    model_config = {"frozen": True}

    timestamp: datetime = Field(default_factory=utc_now)
    level: LogLevel = LogLevel.INFO
    message: str


class StatusCategory(str, Enum):
    INFORMATIONAL = "informational"
    SUCCESS = "success"
    REDIRECT = "redirect"
    CLIENT_ERROR = "client-error"
    SERVER_ERROR = "server-error"


class ContentCategory(str, Enum):
    JSON = "json"
    XML = "xml"
    HTML = "html"
    TEXT = "text"
    BINARY = "binary"
    IMAGE = "image"
    UNKNOWN = "unknown"


class ExecutionResult(BaseModel):
    """Outcome of a single request. Immutable once built."""

    model_config = {"frozen": True}

    request_id: str = ""
    title: str = ""
    protocol_type: Optional[ProtocolType] = None
    success: bool
    method: str = "GET"
    url: str = ""

    status_code: Optional[int] = None
    status_category: Optional[StatusCategory] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    raw_body: str = ""
    body: Any = None
    content_type: ContentCategory = ContentCategory.UNKNOWN

    duration_ms: float = 0.0
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime = Field(default_factory=utc_now)
    logs: List[LogEntry] = Field(default_factory=list)

    error_message: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    attempts: int = 1
    retry_count: int = 0

    @property
    def retryable_failure(self) -> bool:
        return not self.success and self.error_code in RETRYABLE_CODES


# =============================================================================
# Runs
# =============================================================================


class RunStatus(str, Enum):
    """Lifecycle state of an execution run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED)


class HealthStatus(str, Enum):
    """Health indicator derived from a handshake's latest run."""

    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    PROCESSING = "processing"
    HEALTHY = "healthy"
    FAILED = "failed"


class ExecutionRun(BaseModel):
    """Lifecycle record for one execution of a handshake.

    Mutated only through LifecycleTracker, which enforces forward-only
    state transitions.
    """

    id: str
    handshake_id: str
    status: RunStatus = RunStatus.PENDING
    progress: float = 0.0
    logs: List[LogEntry] = Field(default_factory=list)
    results: List[ExecutionResult] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000
