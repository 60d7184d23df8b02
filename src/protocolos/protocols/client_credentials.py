"""OAuth 2.0 client credentials grant (machine-to-machine).

Tokens are cached per handler instance, keyed by the configuration that
owns them, and treated as expired a fixed buffer before their declared
expiry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from protocolos.kernel.models import ClientCredentialsConfig, Credentials, ProtocolType, utc_now
from protocolos.protocols.base import AuthResult, ConfigValidation, ConnectionTestResult, is_expired
from protocolos.protocols.errors import AuthenticationError
from protocolos.protocols.oauth import OAuthHandler
from protocolos.tools import curl

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_SECONDS = 300


@dataclass
class _CacheEntry:
    credentials: Credentials
    expires_at: Optional[datetime]


class TokenCache:
    """Access tokens keyed by ``token_url|client_id|scope|audience``."""

    def __init__(self, buffer_seconds: float = EXPIRY_BUFFER_SECONDS, clock: Callable[[], datetime] = utc_now):
        self.buffer_seconds = buffer_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}

    @staticmethod
    def key_for(config: ClientCredentialsConfig) -> str:
        return "|".join([config.token_url, config.client_id, config.scope or "", config.audience or ""])

    def get(self, key: str) -> Optional[Credentials]:
        """Cached credentials, or None when absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if is_expired(entry.expires_at, now=self._clock()):
            del self._entries[key]
            return None
        return entry.credentials

    def put(self, key: str, credentials: Credentials) -> None:
        """Store credentials; the cache expiry is the declared expiry minus the buffer."""
        expires_at = None
        if credentials.expires_at is not None:
            expires_at = credentials.expires_at - timedelta(seconds=self.buffer_seconds)
        self._entries[key] = _CacheEntry(credentials, expires_at)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ClientCredentialsHandler(OAuthHandler):
    """Machine-to-machine authentication without user context."""

    protocol_type = ProtocolType.CLIENT_CREDENTIALS
    config_model = ClientCredentialsConfig
    display_name = "Client Credentials"
    description = "Machine-to-machine authentication without user context"

    def __init__(self, *args, token_cache: Optional[TokenCache] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.token_cache = token_cache if token_cache is not None else TokenCache()

    def required_fields(self) -> List[str]:
        return ["client_id", "client_secret", "token_url"]

    def optional_fields(self) -> List[str]:
        return ["scope", "audience", "api_url"]

    def check_configuration(self, config: ClientCredentialsConfig, validation: ConfigValidation) -> None:
        self.check_urls(config, validation, "token_url", "api_url")
        validation.warnings.append("Ensure client secret is stored securely")

    async def authenticate(self, config: ClientCredentialsConfig) -> AuthResult:
        """Return a cached token or request a new one."""
        key = TokenCache.key_for(config)
        cached = self.token_cache.get(key)
        if cached is not None:
            logger.debug("Using cached client-credentials token")
            return AuthResult(success=True, credentials=cached)

        form = {
            "grant_type": "client_credentials",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
            "scope": config.scope or "",
            "audience": config.audience or "",
        }
        try:
            credentials = await self.request_token(config.token_url, form)
        except AuthenticationError as exc:
            return AuthResult(success=False, error=str(exc))

        self.token_cache.put(key, credentials)
        return AuthResult(success=True, credentials=credentials)

    async def refresh(self, config: ClientCredentialsConfig, credentials: Credentials) -> AuthResult:
        """Re-authenticate; there is no refresh token in this grant."""
        self.token_cache.invalidate(TokenCache.key_for(config))
        return await self.authenticate(config)

    async def test_connection(self, config: ClientCredentialsConfig) -> ConnectionTestResult:
        result = await super().test_connection(config)
        if result.success:
            result.message = "Successfully obtained access token"
        return result

    def generate_sample_curl(self, config: ClientCredentialsConfig) -> str:
        return curl.stringify(
            curl.ParsedCommand(
                method="POST",
                url=config.token_url or "{TOKEN_URL}",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                body="grant_type=client_credentials&client_id={CLIENT_ID}&client_secret={CLIENT_SECRET}",
            )
        )
