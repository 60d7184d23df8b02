"""REST API key authentication: a static key in a header or query parameter."""

from typing import Dict, List, Optional

from protocolos.kernel.models import Credentials, LogLevel, ProtocolType, RestApiKeyConfig
from protocolos.protocols.base import (
    AuthResult,
    ConfigValidation,
    OutgoingRequest,
    ProtocolHandler,
    RequestCall,
)
from protocolos.tools import curl

COMMON_API_KEY_HEADERS = ["X-API-Key", "Authorization", "Api-Key", "X-Auth-Token", "Access-Token"]
API_KEY_PREFIXES = ["Bearer", "Token", "ApiKey", "Basic"]


def build_api_key_header(key_name: str, api_key: str, prefix: Optional[str] = None) -> Dict[str, str]:
    value = f"{prefix.strip()} {api_key}" if prefix and prefix.strip() else api_key
    return {key_name: value}


def mask_api_key(api_key: str, visible: int = 4) -> str:
    """Keep ``visible`` characters at each end; mask short keys completely."""
    if len(api_key) <= visible * 2:
        return "*" * len(api_key)
    return api_key[:visible] + "*" * (len(api_key) - visible * 2) + api_key[-visible:]


class RestApiKeyHandler(ProtocolHandler):
    """Simple API key authentication in a header or query parameter."""

    protocol_type = ProtocolType.REST_API_KEY
    config_model = RestApiKeyConfig
    display_name = "REST API Key"
    description = "Simple API key authentication in header or query"

    def required_fields(self) -> List[str]:
        return ["api_key", "key_name"]

    def optional_fields(self) -> List[str]:
        return ["placement", "prefix", "api_url"]

    def check_configuration(self, config: RestApiKeyConfig, validation: ConfigValidation) -> None:
        self._check_url(validation, "api_url", config.api_url)
        if config.placement == "query":
            validation.warnings.append("API keys in query params may be logged in server access logs")

    async def authenticate(self, config: RestApiKeyConfig) -> AuthResult:
        if not config.api_key:
            return AuthResult(success=False, error="API key not provided")

        if config.placement == "query":
            credentials = Credentials(query_params={config.key_name: config.api_key}, token_type="")
        else:
            credentials = Credentials(
                headers=build_api_key_header(config.key_name, config.api_key, config.prefix),
                token_type="",
            )
        credentials.extra["masked_key"] = mask_api_key(config.api_key)
        return AuthResult(success=True, credentials=credentials)

    async def build_request(
        self, call: RequestCall, config: RestApiKeyConfig, credentials: Credentials
    ) -> OutgoingRequest:
        parsed = self.prepare_command(call, base_url=config.api_url)
        options = curl.to_request_options(parsed)
        headers, url = self.with_credentials(options.headers, options.url, credentials)
        call.log(LogLevel.INFO, f"API key sent in {config.placement}: {credentials.extra.get('masked_key', '')}")
        return OutgoingRequest(method=options.method, url=url, headers=headers, body=options.body)

    def generate_sample_curl(self, config: RestApiKeyConfig) -> str:
        base = (config.api_url or "https://api.example.com").rstrip("/")
        if config.placement == "query":
            return curl.stringify(curl.ParsedCommand(url=f"{base}/resource?{config.key_name}=YOUR_API_KEY"))
        return curl.stringify(
            curl.ParsedCommand(
                url=f"{base}/resource",
                headers=build_api_key_header(config.key_name, "YOUR_API_KEY", config.prefix),
            )
        )
