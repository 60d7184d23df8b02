"""cURL default protocol: commands run as written.

Authentication lives inside the commands themselves; the handler only
applies an optional base URL and default headers.
"""

from typing import List

from protocolos.kernel.models import CurlDefaultConfig, Credentials, ProtocolType
from protocolos.protocols.base import (
    AuthResult,
    ConfigValidation,
    ConnectionTestResult,
    OutgoingRequest,
    ProtocolHandler,
    RequestCall,
    merge_headers,
)
from protocolos.protocols.errors import TransportError
from protocolos.tools import curl


class CurlDefaultHandler(ProtocolHandler):
    """Direct cURL command execution with manual authentication."""

    protocol_type = ProtocolType.CURL_DEFAULT
    config_model = CurlDefaultConfig
    display_name = "cURL Default"
    description = "Direct cURL command execution with manual authentication"

    def required_fields(self) -> List[str]:
        return []

    def optional_fields(self) -> List[str]:
        return ["base_url", "default_headers"]

    def check_configuration(self, config: CurlDefaultConfig, validation: ConfigValidation) -> None:
        self._check_url(validation, "base_url", config.base_url)
        validation.warnings.extend(
            [
                "Authentication must be included directly in cURL commands",
                "Tokens will not be automatically refreshed",
            ]
        )

    async def authenticate(self, config: CurlDefaultConfig) -> AuthResult:
        return AuthResult(success=True, credentials=Credentials(token_type=""))

    async def build_request(
        self, call: RequestCall, config: CurlDefaultConfig, credentials: Credentials
    ) -> OutgoingRequest:
        parsed = self.prepare_command(call, base_url=config.base_url)
        options = curl.to_request_options(parsed)
        return OutgoingRequest(
            method=options.method,
            url=options.url,
            headers=merge_headers(config.default_headers, options.headers),
            body=options.body,
        )

    async def test_connection(self, config: CurlDefaultConfig) -> ConnectionTestResult:
        """HEAD the base URL, when one is configured."""
        if not config.base_url:
            return ConnectionTestResult(False, "No base URL configured for connection test")
        try:
            response = await self.send(OutgoingRequest("HEAD", config.base_url, dict(config.default_headers)))
        except TransportError as exc:
            return ConnectionTestResult(False, str(exc))
        latency = response.elapsed_s * 1000
        if response.status_code < 500:
            return ConnectionTestResult(True, f"Reachable (HTTP {response.status_code})", latency)
        return ConnectionTestResult(False, f"Server error (HTTP {response.status_code})", latency)

    def generate_sample_curl(self, config: CurlDefaultConfig) -> str:
        base = (config.base_url or "https://api.example.com").rstrip("/")
        return curl.stringify(
            curl.ParsedCommand(
                url=f"{base}/resource",
                headers={"Authorization": "Bearer YOUR_TOKEN_HERE", "Content-Type": "application/json"},
            )
        )
