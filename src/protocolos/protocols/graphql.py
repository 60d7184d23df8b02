"""GraphQL over HTTP POST.

The query comes from the command's ``-d`` body (a JSON ``{query, variables}``
document or a bare query) or, failing that, from the request's test data.
A response carrying an ``errors`` array fails even with HTTP 200.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from protocolos.kernel.models import Credentials, GraphqlConfig, LogLevel, ProtocolType
from protocolos.protocols.base import (
    AuthResult,
    ConfigValidation,
    ConnectionTestResult,
    OutgoingRequest,
    ProtocolHandler,
    RequestCall,
    TransportResponse,
    merge_headers,
)
from protocolos.protocols.errors import ErrorCode, ProtocolError, TransportError
from protocolos.tools import curl

TYPENAME_QUERY = "{ __typename }"
INTROSPECTION_QUERY = """
query IntrospectionQuery {
  __schema {
    queryType { name }
    mutationType { name }
    types { name kind description }
  }
}
"""


def build_graphql_request(
    query: str,
    variables: Optional[Dict[str, Any]] = None,
    operation_name: Optional[str] = None,
) -> str:
    """Serialize a GraphQL request body."""
    body: Dict[str, Any] = {"query": query}
    if variables:
        body["variables"] = variables
    if operation_name:
        body["operationName"] = operation_name
    return json.dumps(body)


def get_operation_type(query: str) -> Optional[str]:
    """'query', 'mutation' or 'subscription'; None if unrecognizable."""
    trimmed = query.strip()
    if trimmed.startswith(("query", "{")):
        return "query"
    if trimmed.startswith("mutation"):
        return "mutation"
    if trimmed.startswith("subscription"):
        return "subscription"
    return None


def parse_graphql_errors(payload: Any) -> List[str]:
    if not isinstance(payload, dict):
        return []
    errors = payload.get("errors") or []
    return [str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors]


def _split_document(text: str) -> Tuple[str, Dict[str, Any], Optional[str]]:
    """Read ``{query, variables, operationName}`` JSON, or treat text as a bare query.

    Raises:
        ProtocolError: PARSE_ERROR when a JSON document has fields of the wrong type
    """
    try:
        document = json.loads(text)
    except ValueError:
        return text, {}, None
    if not isinstance(document, dict):
        return text, {}, None
    query = document.get("query") or ""
    variables = document.get("variables") or {}
    operation_name = document.get("operationName")
    if not isinstance(query, str):
        raise ProtocolError("GraphQL query must be a string", ProtocolType.GRAPHQL.value, ErrorCode.PARSE_ERROR)
    if not isinstance(variables, dict):
        raise ProtocolError("GraphQL variables must be an object", ProtocolType.GRAPHQL.value, ErrorCode.PARSE_ERROR)
    if operation_name is not None and not isinstance(operation_name, str):
        raise ProtocolError(
            "GraphQL operationName must be a string", ProtocolType.GRAPHQL.value, ErrorCode.PARSE_ERROR
        )
    return query, variables, operation_name


class GraphqlHandler(ProtocolHandler):
    """GraphQL API with query/mutation support."""

    protocol_type = ProtocolType.GRAPHQL
    config_model = GraphqlConfig
    display_name = "GraphQL"
    description = "GraphQL API with query/mutation support"

    def required_fields(self) -> List[str]:
        return ["endpoint"]

    def optional_fields(self) -> List[str]:
        return ["auth_header", "auth_value", "default_headers"]

    def check_configuration(self, config: GraphqlConfig, validation: ConfigValidation) -> None:
        self._check_url(validation, "endpoint", config.endpoint)
        if not config.auth_value:
            validation.warnings.append("No auth value configured - only public queries will succeed")

    async def authenticate(self, config: GraphqlConfig) -> AuthResult:
        headers = {config.auth_header: config.auth_value} if config.auth_header and config.auth_value else {}
        return AuthResult(success=True, credentials=Credentials(headers=headers, token_type=""))

    async def build_request(self, call: RequestCall, config: GraphqlConfig, credentials: Credentials) -> OutgoingRequest:
        url = config.endpoint
        headers: Dict[str, str] = {}
        query, variables, operation_name = "", {}, None

        if call.request.command.strip():
            parsed = self.prepare_command(call, base_url=config.endpoint, require_url=False)
            url = parsed.url or config.endpoint
            headers = parsed.headers
            if parsed.body:
                query, variables, operation_name = _split_document(parsed.body)
        if not query and call.request.test_data:
            query, variables, operation_name = _split_document(self.resolve_text(call, call.request.test_data))
        if not query:
            raise ProtocolError("No GraphQL query found", self.protocol_type.value, ErrorCode.PARSE_ERROR)

        call.log(LogLevel.INFO, f"{get_operation_type(query) or 'operation'}: {query.strip()[:100]}")
        headers = merge_headers({"Content-Type": "application/json"}, config.default_headers, headers)
        headers, url = self.with_credentials(headers, url, credentials)
        return OutgoingRequest("POST", url, headers, build_graphql_request(query, variables, operation_name))

    def postprocess(
        self, call: RequestCall, config: GraphqlConfig, response: TransportResponse, body: Any
    ) -> Tuple[Any, Optional[str]]:
        errors = parse_graphql_errors(body)
        if errors:
            call.log(LogLevel.ERROR, f"GraphQL errors: {'; '.join(errors)}")
            return body, errors[0] or "GraphQL error"
        return body, None

    async def test_connection(self, config: GraphqlConfig) -> ConnectionTestResult:
        """POST ``{ __typename }`` to the endpoint."""
        if not config.endpoint:
            return ConnectionTestResult(False, "GraphQL endpoint not configured")
        auth = await self.authenticate(config)
        headers = merge_headers({"Content-Type": "application/json"}, config.default_headers, auth.credentials.headers)
        try:
            response = await self.send(OutgoingRequest("POST", config.endpoint, headers, build_graphql_request(TYPENAME_QUERY)))
        except TransportError as exc:
            return ConnectionTestResult(False, str(exc))
        ok = 200 <= response.status_code < 300
        return ConnectionTestResult(
            ok,
            "GraphQL endpoint reachable" if ok else f"Status: {response.status_code}",
            response.elapsed_s * 1000,
        )

    def generate_sample_curl(self, config: GraphqlConfig) -> str:
        return curl.stringify(
            curl.ParsedCommand(
                method="POST",
                url=config.endpoint or "https://api.example.com/graphql",
                headers={"Content-Type": "application/json", "Authorization": "Bearer {ACCESS_TOKEN}"},
                body=build_graphql_request("{ users { id name email } }"),
            )
        )
