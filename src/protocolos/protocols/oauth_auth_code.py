"""OAuth 2.0 authorization code flow for confidential clients."""

from typing import Dict, List

from protocolos.kernel.models import OAuthAuthCodeConfig, ProtocolType
from protocolos.protocols.base import ConfigValidation
from protocolos.protocols.oauth import AuthorizationCodeFlow, basic_client_auth
from protocolos.tools import curl


class OAuthAuthCodeHandler(AuthorizationCodeFlow):
    """Server-side OAuth flow; the client secret authenticates the exchange."""

    protocol_type = ProtocolType.OAUTH_AUTH_CODE
    config_model = OAuthAuthCodeConfig
    display_name = "OAuth 2.0 Authorization Code"
    description = "Standard OAuth flow for server-side applications with a client secret"

    def required_fields(self) -> List[str]:
        return ["client_id", "client_secret", "auth_url", "token_url", "redirect_uri"]

    def optional_fields(self) -> List[str]:
        return ["scope", "audience", "api_url", "extra_auth_params", "client_auth_method"]

    def check_configuration(self, config: OAuthAuthCodeConfig, validation: ConfigValidation) -> None:
        self.check_urls(config, validation, "auth_url", "token_url", "redirect_uri", "api_url")
        self.warn_missing_scope(config, validation)
        validation.warnings.append("Client secret must never be exposed to browsers or mobile apps")

    def _client_auth(self, config: OAuthAuthCodeConfig, form: Dict[str, str]) -> Dict[str, str]:
        if config.client_auth_method == "basic":
            return basic_client_auth(config.client_id, config.client_secret)
        form["client_secret"] = config.client_secret
        return {}

    def generate_sample_curl(self, config: OAuthAuthCodeConfig) -> str:
        token_url = config.token_url or "{TOKEN_URL}"
        return curl.stringify(
            curl.ParsedCommand(
                method="POST",
                url=token_url,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                body=(
                    "grant_type=authorization_code&code={VAR:code}"
                    "&client_id={CLIENT_ID}&client_secret={CLIENT_SECRET}&redirect_uri={REDIRECT_URI}"
                ),
            )
        )
