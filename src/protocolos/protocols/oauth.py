"""Shared OAuth 2.0 plumbing.

Used by the PKCE, authorization-code, implicit and client-credentials
handlers:
- Token endpoint requests (form-encoded POST) and response parsing
- Bearer injection into outgoing requests, with refresh on expiry
- Authorization-code flow: authorization URL, callback, code exchange
"""

import base64
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

from protocolos.kernel.models import Credentials, utc_now
from protocolos.protocols.base import (
    AuthResult,
    ConfigValidation,
    OutgoingRequest,
    ProtocolHandler,
    RequestCall,
    add_query_params,
    merge_headers,
)
from protocolos.protocols.errors import AuthenticationError, TransportError
from protocolos.tools import curl
from protocolos.tools.crypto import generate_oauth_state, validate_state
from protocolos.tools.sanitizer import sanitize_string

logger = logging.getLogger(__name__)

TOKEN_REQUEST_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded",
    "Accept": "application/json",
}

# Oldest authorization states are dropped beyond this many
MAX_PENDING_STATES = 20


def credentials_from_token_response(
    payload: Dict[str, Any],
    previous: Optional[Credentials] = None,
    now: Optional[datetime] = None,
) -> Credentials:
    """Build Credentials from a token endpoint JSON payload.

    Args:
        payload: Parsed token response
        previous: Credentials being refreshed; their refresh token and scopes
            carry over when the response omits them
        now: Reference time for ``expires_in``

    Raises:
        AuthenticationError: If the payload has no access_token or malformed fields
    """
    access_token = payload.get("access_token")
    if not access_token:
        raise AuthenticationError("Token response missing access_token")
    if not isinstance(access_token, str):
        raise AuthenticationError("Token response access_token must be a string")

    token_type = str(payload.get("token_type") or "Bearer")
    if token_type.lower() == "bearer":
        token_type = "Bearer"

    expires_at = None
    if payload.get("expires_in"):
        try:
            expires_at = (now or utc_now()) + timedelta(seconds=float(payload["expires_in"]))
        except (TypeError, ValueError, OverflowError):
            raise AuthenticationError(f"Token response expires_in is not a number: {payload['expires_in']!r}") from None

    raw_scope = payload.get("scope") or ""
    if isinstance(raw_scope, list) and all(isinstance(s, str) for s in raw_scope):
        scopes: List[str] = list(raw_scope)
    elif isinstance(raw_scope, str):
        scopes = raw_scope.split()
    else:
        raise AuthenticationError("Token response scope must be a string or a list of strings")
    if not scopes and previous is not None:
        scopes = list(previous.scopes)

    refresh_token = payload.get("refresh_token") or (previous.refresh_token if previous else None)
    if refresh_token is not None and not isinstance(refresh_token, str):
        raise AuthenticationError("Token response refresh_token must be a string")

    return Credentials(
        headers={"Authorization": f"{token_type} {access_token}"},
        access_token=access_token,
        refresh_token=refresh_token,
        token_type=token_type,
        expires_at=expires_at,
        scopes=scopes,
        extra={k: v for k, v in payload.items() if k in ("id_token", "audience")},
    )


def bearer_credentials(
    access_token: str,
    token_type: str = "Bearer",
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> Credentials:
    """Credentials for a token that was obtained out of band."""
    return Credentials(
        headers={"Authorization": f"{token_type} {access_token}"},
        access_token=access_token,
        refresh_token=refresh_token,
        token_type=token_type,
        expires_at=expires_at,
    )


def parse_callback_params(callback_url: str) -> Dict[str, str]:
    """Query and fragment parameters of a redirect URL (fragment wins)."""
    parts = urlsplit(callback_url)
    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    params.update(parse_qsl(parts.fragment, keep_blank_values=True))
    return params


def callback_error(params: Dict[str, str]) -> Optional[str]:
    if "error" not in params:
        return None
    description = params.get("error_description")
    return f"Authorization error: {params['error']}" + (f" ({description})" if description else "")


class OAuthHandler(ProtocolHandler):
    """Base for handlers that authorize requests with an OAuth access token."""

    supports_token_refresh = True

    async def request_token(
        self,
        token_url: str,
        form: Dict[str, str],
        headers: Optional[Dict[str, str]] = None,
        previous: Optional[Credentials] = None,
    ) -> Credentials:
        """POST a form to the token endpoint.

        Raises:
            AuthenticationError: On transport failure, non-2xx status or a bad payload
        """
        outgoing = OutgoingRequest(
            method="POST",
            url=token_url,
            headers=merge_headers(TOKEN_REQUEST_HEADERS, headers),
            body=urlencode({k: v for k, v in form.items() if v}),
        )
        try:
            response = await self.send(outgoing)
        except TransportError as exc:
            raise AuthenticationError(f"Token request failed: {exc}", self.protocol_type.value) from exc

        if not 200 <= response.status_code < 300:
            detail = sanitize_string(response.text[:200])
            raise AuthenticationError(
                f"Token request failed: HTTP {response.status_code}: {detail}",
                self.protocol_type.value,
                {"status_code": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthenticationError("Token response is not valid JSON", self.protocol_type.value) from exc
        if not isinstance(payload, dict):
            raise AuthenticationError("Token response is not a JSON object", self.protocol_type.value)

        logger.info("Obtained token from %s", sanitize_string(token_url))
        return credentials_from_token_response(payload, previous)

    def api_base_url(self, config: Any) -> Optional[str]:
        return getattr(config, "api_url", None)

    async def build_request(self, call: RequestCall, config: Any, credentials: Credentials) -> OutgoingRequest:
        credentials = await self.ensure_fresh(config, credentials, call.log)
        parsed = self.prepare_command(call, base_url=self.api_base_url(config))
        options = curl.to_request_options(parsed)
        headers, url = self.with_credentials(options.headers, options.url, credentials)
        return OutgoingRequest(method=options.method, url=url, headers=headers, body=options.body)

    def check_urls(self, config: Any, validation: ConfigValidation, *names: str) -> None:
        for name in names:
            self._check_url(validation, name, getattr(config, name, None))

    @staticmethod
    def warn_missing_scope(config: Any, validation: ConfigValidation) -> None:
        if not getattr(config, "scope", None):
            validation.warnings.append("No scopes specified - some APIs require specific scopes")


class AuthorizationCodeFlow(OAuthHandler):
    """Authorization-code grant: browser redirect, callback, code exchange.

    Pending states are held per handler instance until the callback arrives;
    at most MAX_PENDING_STATES are kept.
    """

    requires_user_interaction = True

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._pending: Dict[str, str] = {}

    # Hooks for PKCE
    def _challenge(self, config: Any) -> Tuple[str, Dict[str, str]]:
        """Return (secret to keep for the exchange, extra authorization params)."""
        return "", {}

    def _exchange_params(self, config: Any, kept_secret: str) -> Dict[str, str]:
        return {}

    def _client_auth(self, config: Any, form: Dict[str, str]) -> Dict[str, str]:
        """Add client authentication to the token form; return extra headers."""
        return {}

    def build_authorization_url(self, config: Any) -> Tuple[str, str]:
        """Build the authorization URL and register a fresh state.

        Returns:
            (url, state)
        """
        state = generate_oauth_state()
        kept_secret, challenge_params = self._challenge(config)
        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "state": state,
            **challenge_params,
        }
        if config.scope:
            params["scope"] = config.scope
        if config.audience:
            params["audience"] = config.audience
        params.update(config.extra_auth_params)

        self._pending[state] = kept_secret
        while len(self._pending) > MAX_PENDING_STATES:
            self._pending.pop(next(iter(self._pending)))
        return add_query_params(config.auth_url, params), state

    def pending_states(self) -> List[str]:
        return list(self._pending)

    async def handle_callback(self, config: Any, callback_url: str) -> AuthResult:
        """Process the redirect back from the authorization server."""
        params = parse_callback_params(callback_url)
        error = callback_error(params)
        if error:
            return AuthResult(success=False, error=error)

        received = params.get("state", "")
        matched = next((s for s in self._pending if validate_state(s, received)), None)
        if matched is None:
            return AuthResult(success=False, error="Invalid or expired state parameter")
        if not params.get("code"):
            self._pending.pop(matched, None)
            return AuthResult(success=False, error="No authorization code in callback")

        return await self.exchange_code(config, params["code"], matched)

    async def exchange_code(self, config: Any, code: str, state: str) -> AuthResult:
        """Trade an authorization code for tokens. The state is single-use."""
        if state not in self._pending:
            return AuthResult(success=False, error="Invalid or expired state parameter")
        kept_secret = self._pending.pop(state)

        form = {
            "grant_type": "authorization_code",
            "client_id": config.client_id,
            "code": code,
            "redirect_uri": config.redirect_uri,
            **self._exchange_params(config, kept_secret),
        }
        headers = self._client_auth(config, form)
        try:
            credentials = await self.request_token(config.token_url, form, headers)
        except AuthenticationError as exc:
            return AuthResult(success=False, error=str(exc))
        return AuthResult(success=True, credentials=credentials)

    async def authenticate(self, config: Any) -> AuthResult:
        """Use pre-supplied tokens; otherwise user interaction is required."""
        if config.access_token:
            return AuthResult(
                success=True,
                credentials=bearer_credentials(
                    config.access_token, config.token_type, config.refresh_token, config.expires_at
                ),
            )
        url, _state = self.build_authorization_url(config)
        return AuthResult(
            success=False,
            error="User interaction required: complete authorization in a browser",
            authorization_url=url,
        )

    async def refresh(self, config: Any, credentials: Credentials) -> AuthResult:
        if not credentials.refresh_token:
            return AuthResult(success=False, error="No refresh token available")
        form = {
            "grant_type": "refresh_token",
            "client_id": config.client_id,
            "refresh_token": credentials.refresh_token,
        }
        headers = self._client_auth(config, form)
        try:
            renewed = await self.request_token(config.token_url, form, headers, previous=credentials)
        except AuthenticationError as exc:
            return AuthResult(success=False, error=str(exc))
        return AuthResult(success=True, credentials=renewed)


def basic_client_auth(client_id: str, client_secret: str) -> Dict[str, str]:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}
