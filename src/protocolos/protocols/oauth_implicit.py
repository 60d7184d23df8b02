"""OAuth 2.0 implicit flow (deprecated; kept for legacy providers).

The token arrives in the redirect URL fragment. No refresh tokens.
"""

from datetime import timedelta
from typing import Dict, List, Optional

from protocolos.kernel.models import OAuthImplicitConfig, ProtocolType, utc_now
from protocolos.protocols.base import AuthResult, ConfigValidation, add_query_params
from protocolos.protocols.oauth import OAuthHandler, bearer_credentials, callback_error, parse_callback_params
from protocolos.tools import curl
from protocolos.tools.crypto import generate_nonce, generate_oauth_state, validate_state

IMPLICIT_FLOW_WARNINGS = [
    "The implicit flow is deprecated and insecure",
    "Consider using OAuth PKCE instead",
    "Tokens cannot be refreshed with this flow",
]


class OAuthImplicitHandler(OAuthHandler):
    """Legacy OAuth flow - use PKCE instead."""

    protocol_type = ProtocolType.OAUTH_IMPLICIT
    config_model = OAuthImplicitConfig
    display_name = "OAuth 2.0 Implicit (Deprecated)"
    description = "Legacy OAuth flow - use PKCE instead"
    supports_token_refresh = False
    requires_user_interaction = True

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._pending_states: List[str] = []

    def required_fields(self) -> List[str]:
        return ["client_id", "auth_url", "redirect_uri"]

    def optional_fields(self) -> List[str]:
        return ["scope", "api_url", "access_token"]

    def check_configuration(self, config: OAuthImplicitConfig, validation: ConfigValidation) -> None:
        self.check_urls(config, validation, "auth_url", "redirect_uri", "api_url")
        validation.warnings.extend(IMPLICIT_FLOW_WARNINGS)

    def build_authorization_url(self, config: OAuthImplicitConfig, nonce: Optional[str] = None):
        """Build the authorization URL (response_type=token) and register a state.

        Returns:
            (url, state)
        """
        state = generate_oauth_state()
        params: Dict[str, str] = {
            "response_type": "token",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "state": state,
            "nonce": nonce or generate_nonce(),
        }
        if config.scope:
            params["scope"] = config.scope
        self._pending_states.append(state)
        return add_query_params(config.auth_url, params), state

    def parse_callback_fragment(self, callback_url: str, expected_state: Optional[str] = None) -> AuthResult:
        """Extract the access token from a redirect URL fragment.

        The state must match ``expected_state`` or a state this handler issued.
        """
        params = parse_callback_params(callback_url)
        error = callback_error(params)
        if error:
            return AuthResult(success=False, error=error)

        received = params.get("state", "")
        candidates = [expected_state] if expected_state else list(self._pending_states)
        matched = next((s for s in candidates if validate_state(s, received)), None)
        if matched is None:
            return AuthResult(success=False, error="Invalid or expired state parameter")
        if matched in self._pending_states:
            self._pending_states.remove(matched)

        token = params.get("access_token")
        if not token:
            return AuthResult(success=False, error="No access token in callback fragment")

        expires_at = None
        if params.get("expires_in", "").isdigit():
            expires_at = utc_now() + timedelta(seconds=int(params["expires_in"]))
        token_type = params.get("token_type") or "Bearer"
        if token_type.lower() == "bearer":
            token_type = "Bearer"
        return AuthResult(success=True, credentials=bearer_credentials(token, token_type, expires_at=expires_at))

    async def authenticate(self, config: OAuthImplicitConfig) -> AuthResult:
        if config.access_token:
            return AuthResult(success=True, credentials=bearer_credentials(config.access_token, config.token_type))
        url, _state = self.build_authorization_url(config)
        return AuthResult(
            success=False,
            error="User interaction required: complete authorization in a browser",
            authorization_url=url,
        )

    def generate_sample_curl(self, config: OAuthImplicitConfig) -> str:
        base = (config.api_url or "https://api.example.com").rstrip("/")
        return curl.stringify(
            curl.ParsedCommand(url=f"{base}/me", headers={"Authorization": "Bearer {ACCESS_TOKEN}"})
        )
