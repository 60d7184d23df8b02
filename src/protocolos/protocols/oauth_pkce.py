"""OAuth 2.0 authorization code flow with PKCE (RFC 7636)."""

from typing import Dict, List, Tuple

from protocolos.kernel.models import OAuthPkceConfig, ProtocolType
from protocolos.protocols.base import ConfigValidation
from protocolos.protocols.oauth import AuthorizationCodeFlow
from protocolos.tools import curl
from protocolos.tools.crypto import (
    PKCE_VERIFIER_MAX_LENGTH,
    PKCE_VERIFIER_MIN_LENGTH,
    generate_code_challenge,
    generate_pkce_verifier,
)


class OAuthPkceHandler(AuthorizationCodeFlow):
    """Secure OAuth flow for public clients (SPAs, mobile apps)."""

    protocol_type = ProtocolType.OAUTH_PKCE
    config_model = OAuthPkceConfig
    display_name = "OAuth 2.0 PKCE"
    description = "Secure OAuth flow for public clients (SPAs, mobile apps)"

    def required_fields(self) -> List[str]:
        return ["client_id", "auth_url", "token_url", "redirect_uri"]

    def optional_fields(self) -> List[str]:
        return ["scope", "audience", "api_url", "extra_auth_params", "verifier_length"]

    def check_configuration(self, config: OAuthPkceConfig, validation: ConfigValidation) -> None:
        self.check_urls(config, validation, "auth_url", "token_url", "redirect_uri", "api_url")
        if not PKCE_VERIFIER_MIN_LENGTH <= config.verifier_length <= PKCE_VERIFIER_MAX_LENGTH:
            validation.invalid(
                "verifier_length",
                f"Must be between {PKCE_VERIFIER_MIN_LENGTH} and {PKCE_VERIFIER_MAX_LENGTH}",
            )
        self.warn_missing_scope(config, validation)

    def _challenge(self, config: OAuthPkceConfig) -> Tuple[str, Dict[str, str]]:
        verifier = generate_pkce_verifier(config.verifier_length)
        return verifier, {
            "code_challenge": generate_code_challenge(verifier),
            "code_challenge_method": "S256",
        }

    def _exchange_params(self, config: OAuthPkceConfig, kept_secret: str) -> Dict[str, str]:
        return {"code_verifier": kept_secret}

    def code_verifier_for(self, state: str) -> str:
        """Verifier registered for a pending state (empty if unknown)."""
        return self._pending.get(state, "")

    def generate_sample_curl(self, config: OAuthPkceConfig) -> str:
        base = (config.api_url or "https://api.example.com").rstrip("/")
        return curl.stringify(
            curl.ParsedCommand(url=f"{base}/me", headers={"Authorization": "Bearer {ACCESS_TOKEN}"})
        )
