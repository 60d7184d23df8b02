"""Protocol registry and factory.

Binds each ProtocolType to one handler class and builds handler instances
with the injected collaborators (HTTP transport, WebSocket channel factory,
request policy).

Usage:
    registry = ProtocolRegistry(transport=HttpxTransport())
    handler = registry.create_handler(ProtocolType.REST_API_KEY)
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type, Union

from protocolos.kernel.models import ProtocolType
from protocolos.protocols.base import ProtocolHandler, RequestPolicy, Transport
from protocolos.protocols.client_credentials import ClientCredentialsHandler
from protocolos.protocols.curl_default import CurlDefaultHandler
from protocolos.protocols.errors import UnknownProtocolError
from protocolos.protocols.github_runner import GithubRepoRunnerHandler
from protocolos.protocols.graphql import GraphqlHandler
from protocolos.protocols.keyless_scraper import KeylessScraperHandler
from protocolos.protocols.oauth_auth_code import OAuthAuthCodeHandler
from protocolos.protocols.oauth_implicit import OAuthImplicitHandler
from protocolos.protocols.oauth_pkce import OAuthPkceHandler
from protocolos.protocols.rest_api_key import RestApiKeyHandler
from protocolos.protocols.soap_xml import SoapXmlHandler
from protocolos.protocols.websocket import ChannelFactory, WebsocketHandler

__all__ = [
    "PROTOCOL_METADATA",
    "ProtocolMetadata",
    "ProtocolRegistry",
    "ProtocolType",
    "get_metadata",
    "list_by_category",
    "recommend_protocol",
    "search_by_tag",
]

CATEGORIES = ("oauth", "api-key", "specialized", "no-auth")
COMPLEXITIES = ("simple", "moderate", "complex")


@dataclass(frozen=True)
class ProtocolMetadata:
    """Display and discovery information for a protocol."""

    type: ProtocolType
    display_name: str
    description: str
    category: str
    complexity: str
    documentation_url: str = ""
    tags: List[str] = field(default_factory=list)


PROTOCOL_METADATA: Dict[ProtocolType, ProtocolMetadata] = {
    ProtocolType.CURL_DEFAULT: ProtocolMetadata(
        ProtocolType.CURL_DEFAULT,
        "cURL Default",
        "Direct cURL command execution with manual authentication",
        "no-auth",
        "simple",
        "https://curl.se/docs/",
        ["basic", "manual", "flexible"],
    ),
    ProtocolType.OAUTH_PKCE: ProtocolMetadata(
        ProtocolType.OAUTH_PKCE,
        "OAuth 2.0 PKCE",
        "Secure OAuth flow for public clients (SPAs, mobile apps)",
        "oauth",
        "complex",
        "https://oauth.net/2/pkce/",
        ["secure", "spa", "mobile", "no-secret"],
    ),
    ProtocolType.OAUTH_AUTH_CODE: ProtocolMetadata(
        ProtocolType.OAUTH_AUTH_CODE,
        "OAuth 2.0 Auth Code",
        "Standard OAuth flow with client secret for server-side apps",
        "oauth",
        "complex",
        "https://oauth.net/2/grant-types/authorization-code/",
        ["server-side", "confidential", "standard"],
    ),
    ProtocolType.OAUTH_IMPLICIT: ProtocolMetadata(
        ProtocolType.OAUTH_IMPLICIT,
        "OAuth 2.0 Implicit",
        "Legacy OAuth flow (deprecated, use PKCE instead)",
        "oauth",
        "moderate",
        "https://oauth.net/2/grant-types/implicit/",
        ["legacy", "deprecated", "spa"],
    ),
    ProtocolType.CLIENT_CREDENTIALS: ProtocolMetadata(
        ProtocolType.CLIENT_CREDENTIALS,
        "Client Credentials",
        "Machine-to-machine authentication without user context",
        "oauth",
        "moderate",
        "https://oauth.net/2/grant-types/client-credentials/",
        ["m2m", "backend", "service-account"],
    ),
    ProtocolType.REST_API_KEY: ProtocolMetadata(
        ProtocolType.REST_API_KEY,
        "REST API Key",
        "Simple API key authentication in header or query",
        "api-key",
        "simple",
        "",
        ["simple", "api-key", "header"],
    ),
    ProtocolType.GRAPHQL: ProtocolMetadata(
        ProtocolType.GRAPHQL,
        "GraphQL",
        "GraphQL API with query/mutation support",
        "specialized",
        "moderate",
        "https://graphql.org/",
        ["graphql", "query", "mutation"],
    ),
    ProtocolType.WEBSOCKET: ProtocolMetadata(
        ProtocolType.WEBSOCKET,
        "WebSocket",
        "Real-time bidirectional communication",
        "specialized",
        "complex",
        "https://developer.mozilla.org/en-US/docs/Web/API/WebSocket",
        ["realtime", "bidirectional", "streaming"],
    ),
    ProtocolType.SOAP_XML: ProtocolMetadata(
        ProtocolType.SOAP_XML,
        "SOAP/XML",
        "Enterprise SOAP web services with XML",
        "specialized",
        "complex",
        "https://www.w3.org/TR/soap/",
        ["enterprise", "legacy", "xml", "wsdl"],
    ),
    ProtocolType.GITHUB_REPO_RUNNER: ProtocolMetadata(
        ProtocolType.GITHUB_REPO_RUNNER,
        "GitHub Repo Runner",
        "Read files and dispatch workflows in GitHub repositories",
        "specialized",
        "complex",
        "https://docs.github.com/en/rest",
        ["github", "automation", "scripts"],
    ),
    ProtocolType.KEYLESS_SCRAPER: ProtocolMetadata(
        ProtocolType.KEYLESS_SCRAPER,
        "Keyless Scraper",
        "Web scraping without authentication",
        "no-auth",
        "moderate",
        "",
        ["scraping", "public", "no-auth"],
    ),
}

DEFAULT_HANDLERS: Dict[ProtocolType, Type[ProtocolHandler]] = {
    ProtocolType.CURL_DEFAULT: CurlDefaultHandler,
    ProtocolType.OAUTH_PKCE: OAuthPkceHandler,
    ProtocolType.OAUTH_AUTH_CODE: OAuthAuthCodeHandler,
    ProtocolType.OAUTH_IMPLICIT: OAuthImplicitHandler,
    ProtocolType.CLIENT_CREDENTIALS: ClientCredentialsHandler,
    ProtocolType.REST_API_KEY: RestApiKeyHandler,
    ProtocolType.GRAPHQL: GraphqlHandler,
    ProtocolType.WEBSOCKET: WebsocketHandler,
    ProtocolType.SOAP_XML: SoapXmlHandler,
    ProtocolType.GITHUB_REPO_RUNNER: GithubRepoRunnerHandler,
    ProtocolType.KEYLESS_SCRAPER: KeylessScraperHandler,
}


def _coerce_type(protocol_type: Union[ProtocolType, str]) -> ProtocolType:
    """Accept enum members or their string values.

    Raises:
        UnknownProtocolError: If the value names no protocol
    """
    if isinstance(protocol_type, ProtocolType):
        return protocol_type
    try:
        return ProtocolType(protocol_type)
    except ValueError:
        raise UnknownProtocolError(str(protocol_type), [t.value for t in ProtocolType]) from None


class ProtocolRegistry:
    """Maps protocol types to handler classes.

    Each instance owns its own bindings; there is no module-level registry.
    The default bindings cover all eleven protocols.
    """

    def __init__(
        self,
        transport: Optional[Transport] = None,
        ws_connect: Optional[ChannelFactory] = None,
        policy: Optional[RequestPolicy] = None,
        handlers: Optional[Dict[ProtocolType, Type[ProtocolHandler]]] = None,
    ):
        """Initialize the registry.

        Args:
            transport: HTTP transport injected into every handler
            ws_connect: WebSocket channel factory for the websocket handler
            policy: Request policy shared by created handlers
            handlers: Bindings to start from (defaults to all built-in handlers)
        """
        self.transport = transport
        self.ws_connect = ws_connect
        self.policy = policy
        self._handlers: Dict[ProtocolType, Type[ProtocolHandler]] = dict(
            DEFAULT_HANDLERS if handlers is None else handlers
        )
        self._instances: Dict[ProtocolType, ProtocolHandler] = {}

    def register(self, protocol_type: Union[ProtocolType, str], handler_class: Type[ProtocolHandler]) -> None:
        """Bind a handler class, replacing any existing binding."""
        resolved = _coerce_type(protocol_type)
        self._handlers[resolved] = handler_class
        self._instances.pop(resolved, None)

    def unregister(self, protocol_type: Union[ProtocolType, str]) -> None:
        resolved = _coerce_type(protocol_type)
        self._handlers.pop(resolved, None)
        self._instances.pop(resolved, None)

    def is_registered(self, protocol_type: Union[ProtocolType, str]) -> bool:
        try:
            return _coerce_type(protocol_type) in self._handlers
        except UnknownProtocolError:
            return False

    def list_types(self) -> List[ProtocolType]:
        return list(self._handlers)

    def handler_class(self, protocol_type: Union[ProtocolType, str]) -> Type[ProtocolHandler]:
        """Bound handler class.

        Raises:
            UnknownProtocolError: If the type is unknown or unbound
        """
        resolved = _coerce_type(protocol_type)
        handler_class = self._handlers.get(resolved)
        if handler_class is None:
            raise UnknownProtocolError(resolved.value, [t.value for t in self._handlers])
        return handler_class

    def create_handler(self, protocol_type: Union[ProtocolType, str]) -> ProtocolHandler:
        """Build a fresh handler with this registry's collaborators.

        Raises:
            UnknownProtocolError: If the type is unknown or unbound
        """
        handler_class = self.handler_class(protocol_type)
        if issubclass(handler_class, WebsocketHandler):
            return handler_class(transport=self.transport, policy=self.policy, ws_connect=self.ws_connect)
        return handler_class(transport=self.transport, policy=self.policy)

    def get_handler(self, protocol_type: Union[ProtocolType, str]) -> ProtocolHandler:
        """Shared handler for a type, created on first use.

        The instance, and its token cache and pending states, lives until the
        type is registered again or unregistered.

        Raises:
            UnknownProtocolError: If the type is unknown or unbound
        """
        resolved = _coerce_type(protocol_type)
        handler = self._instances.get(resolved)
        if handler is None:
            handler = self.create_handler(resolved)
            self._instances[resolved] = handler
        return handler


# =============================================================================
# Metadata queries
# =============================================================================


def get_metadata(protocol_type: Union[ProtocolType, str]) -> ProtocolMetadata:
    """Metadata for a protocol.

    Raises:
        UnknownProtocolError: If the type is unknown
    """
    return PROTOCOL_METADATA[_coerce_type(protocol_type)]


def search_by_tag(tag: str) -> List[ProtocolType]:
    """Protocols with a tag containing ``tag`` (case-insensitive)."""
    needle = tag.lower()
    return [t for t, meta in PROTOCOL_METADATA.items() if any(needle in candidate.lower() for candidate in meta.tags)]


def list_by_category(category: str) -> List[ProtocolType]:
    return [t for t, meta in PROTOCOL_METADATA.items() if meta.category == category]


def list_by_complexity(complexity: str) -> List[ProtocolType]:
    return [t for t, meta in PROTOCOL_METADATA.items() if meta.complexity == complexity]


def recommend_protocol(
    has_user_context: bool = False,
    is_public_client: bool = False,
    needs_realtime: bool = False,
    is_legacy_enterprise: bool = False,
    has_api_key: bool = False,
) -> ProtocolType:
    """Pick a protocol for a use case; the first matching rule wins."""
    if needs_realtime:
        return ProtocolType.WEBSOCKET
    if is_legacy_enterprise:
        return ProtocolType.SOAP_XML
    if has_api_key:
        return ProtocolType.REST_API_KEY
    if not has_user_context:
        return ProtocolType.CLIENT_CREDENTIALS
    if is_public_client:
        return ProtocolType.OAUTH_PKCE
    return ProtocolType.OAUTH_AUTH_CODE
