"""Tests for the OAuth handlers: token parsing, code flows, implicit and client credentials."""

import asyncio
import base64
from datetime import timedelta
from urllib.parse import parse_qs, parse_qsl, urlsplit

import pytest

from protocolos.kernel.models import (
    ClientCredentialsConfig,
    Credentials,
    OAuthAuthCodeConfig,
    OAuthImplicitConfig,
    OAuthPkceConfig,
    RequestTemplate,
    utc_now,
)
from protocolos.protocols.base import ExecutionOptions
from protocolos.protocols.client_credentials import ClientCredentialsHandler, TokenCache
from protocolos.protocols.dummy import DummyResponse, DummyTransport
from protocolos.protocols.errors import AuthenticationError, ErrorCode
from protocolos.protocols.oauth import (
    MAX_PENDING_STATES,
    credentials_from_token_response,
    parse_callback_params,
)
from protocolos.protocols.oauth_auth_code import OAuthAuthCodeHandler
from protocolos.protocols.oauth_implicit import OAuthImplicitHandler
from protocolos.protocols.oauth_pkce import OAuthPkceHandler
from protocolos.tools.crypto import generate_code_challenge

TOKEN = {"access_token": "at-1", "token_type": "bearer", "expires_in": 3600, "refresh_token": "rt-1", "scope": "read write"}


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def form_of(call):
    return dict(parse_qsl(call["body"]))


def pkce_config(**overrides):
    values = dict(
        client_id="spa",
        auth_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
        redirect_uri="https://app.example.com/callback",
        api_url="https://api.example.com",
        scope="openid profile",
    )
    values.update(overrides)
    return OAuthPkceConfig(**values)


def auth_code_config(**overrides):
    values = dict(
        client_id="web",
        client_secret="s3cret",
        auth_url="https://auth.example.com/authorize",
        token_url="https://auth.example.com/token",
        redirect_uri="https://app.example.com/callback",
    )
    values.update(overrides)
    return OAuthAuthCodeConfig(**values)


def client_credentials_config(**overrides):
    values = dict(
        client_id="svc",
        client_secret="svc-secret",
        token_url="https://auth.example.com/token",
        api_url="https://api.example.com",
    )
    values.update(overrides)
    return ClientCredentialsConfig(**values)


class TestTokenResponse:
    """Tests for turning token endpoint payloads into credentials."""

    def test_bearer_normalized(self):
        now = utc_now()
        creds = credentials_from_token_response(TOKEN, now=now)
        assert creds.token_type == "Bearer"
        assert creds.headers == {"Authorization": "Bearer at-1"}
        assert creds.expires_at == now + timedelta(seconds=3600)
        assert creds.scopes == ["read", "write"]
        assert creds.refresh_token == "rt-1"

    def test_refresh_carries_over(self):
        previous = Credentials(access_token="old", refresh_token="rt-old", scopes=["read"])
        creds = credentials_from_token_response({"access_token": "new"}, previous=previous)
        assert creds.refresh_token == "rt-old"
        assert creds.scopes == ["read"]
        assert creds.expires_at is None

    def test_missing_access_token(self):
        with pytest.raises(AuthenticationError):
            credentials_from_token_response({"token_type": "bearer"})

    def test_non_numeric_expires_in(self):
        with pytest.raises(AuthenticationError, match="expires_in is not a number"):
            credentials_from_token_response({"access_token": "a", "expires_in": "soon"})

    def test_scope_list_accepted(self):
        creds = credentials_from_token_response({"access_token": "a", "scope": ["read", "write"]})
        assert creds.scopes == ["read", "write"]

    def test_scope_of_wrong_type(self):
        with pytest.raises(AuthenticationError, match="scope must be a string or a list of strings"):
            credentials_from_token_response({"access_token": "a", "scope": {"read": True}})

    def test_callback_params_fragment_wins(self):
        params = parse_callback_params("https://app/cb?state=a&code=1#state=b")
        assert params == {"state": "b", "code": "1"}


class TestPkceFlow:
    """Tests for the PKCE authorization code flow."""

    def test_authorization_url(self):
        handler = OAuthPkceHandler(transport=DummyTransport())
        url, state = handler.build_authorization_url(pkce_config())
        params = query_of(url)

        assert url.startswith("https://auth.example.com/authorize?")
        assert params["response_type"] == "code"
        assert params["client_id"] == "spa"
        assert params["state"] == state
        assert params["scope"] == "openid profile"
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == generate_code_challenge(handler.code_verifier_for(state))
        assert len(handler.code_verifier_for(state)) == 128

    def test_authenticate_requires_interaction(self):
        result = asyncio.run(OAuthPkceHandler().authenticate(pkce_config()))
        assert not result.success
        assert result.error.startswith("User interaction required")
        assert result.authorization_url.startswith("https://auth.example.com/authorize?")

    def test_authenticate_with_existing_token(self):
        result = asyncio.run(OAuthPkceHandler().authenticate(pkce_config(access_token="at-0")))
        assert result.success
        assert result.credentials.headers["Authorization"] == "Bearer at-0"

    def test_callback_exchanges_code_with_verifier(self):
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        handler = OAuthPkceHandler(transport=transport)
        config = pkce_config()
        _url, state = handler.build_authorization_url(config)
        verifier = handler.code_verifier_for(state)

        result = asyncio.run(handler.handle_callback(config, f"https://app.example.com/callback?code=c0de&state={state}"))

        assert result.success
        assert result.credentials.access_token == "at-1"
        form = form_of(transport.last_call)
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "c0de"
        assert form["code_verifier"] == verifier
        assert "client_secret" not in form
        assert state not in handler.pending_states()

    def test_state_is_single_use(self):
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        handler = OAuthPkceHandler(transport=transport)
        config = pkce_config()
        _url, state = handler.build_authorization_url(config)
        callback = f"https://app.example.com/callback?code=c0de&state={state}"

        assert asyncio.run(handler.handle_callback(config, callback)).success
        replay = asyncio.run(handler.handle_callback(config, callback))
        assert replay.error == "Invalid or expired state parameter"

    def test_callback_errors(self):
        handler = OAuthPkceHandler(transport=DummyTransport())
        config = pkce_config()
        _url, state = handler.build_authorization_url(config)

        denied = asyncio.run(
            handler.handle_callback(config, "https://app/cb?error=access_denied&error_description=User+said+no")
        )
        assert denied.error == "Authorization error: access_denied (User said no)"

        forged = asyncio.run(handler.handle_callback(config, "https://app/cb?code=x&state=forged"))
        assert forged.error == "Invalid or expired state parameter"

        no_code = asyncio.run(handler.handle_callback(config, f"https://app/cb?state={state}"))
        assert no_code.error == "No authorization code in callback"

    def test_token_endpoint_rejection(self):
        transport = DummyTransport([DummyResponse(400, {"error": "invalid_grant"})])
        handler = OAuthPkceHandler(transport=transport)
        config = pkce_config()
        _url, state = handler.build_authorization_url(config)

        result = asyncio.run(handler.exchange_code(config, "bad", state))
        assert not result.success
        assert result.error.startswith("Token request failed: HTTP 400")

    def test_invalid_verifier_length(self):
        validation = OAuthPkceHandler().validate_configuration(pkce_config(verifier_length=20))
        assert not validation.is_valid
        assert validation.invalid_fields[0]["field"] == "verifier_length"

    def test_missing_fields(self):
        validation = OAuthPkceHandler().validate_configuration(OAuthPkceConfig())
        assert validation.missing_fields == ["client_id", "auth_url", "token_url", "redirect_uri"]


class TestTokenRefresh:
    """Tests for refreshing expired tokens before a request."""

    def _expired(self, refresh_token="rt-1"):
        return Credentials(
            headers={"Authorization": "Bearer stale"},
            access_token="stale",
            refresh_token=refresh_token,
            expires_at=utc_now() - timedelta(minutes=1),
        )

    def test_expired_token_refreshed(self):
        transport = (
            DummyTransport()
            .route("/token", DummyResponse(200, {"access_token": "fresh", "expires_in": 3600}))
            .route("api.example.com", DummyResponse(200, {"ok": True}))
        )
        handler = OAuthPkceHandler(transport=transport)
        request = RequestTemplate(id="r1", command="curl /me")

        result = asyncio.run(handler.execute_request(request, pkce_config(), self._expired(), ExecutionOptions()))

        assert result.success
        assert transport.calls[0]["url"] == "https://auth.example.com/token"
        assert form_of(transport.calls[0])["grant_type"] == "refresh_token"
        assert transport.last_call["headers"]["Authorization"] == "Bearer fresh"
        assert any("Token refreshed" in log.message for log in result.logs)

    def test_expired_without_refresh_token(self):
        handler = OAuthPkceHandler(transport=DummyTransport())
        request = RequestTemplate(id="r1", command="curl /me")

        result = asyncio.run(handler.execute_request(request, pkce_config(), self._expired(None)))

        assert not result.success
        assert result.error_code == ErrorCode.AUTH_ERROR
        assert result.error_message == "No refresh token available"

    def test_implicit_cannot_refresh(self):
        result = asyncio.run(OAuthImplicitHandler().refresh(OAuthImplicitConfig(), Credentials()))
        assert not result.success
        assert "does not support token refresh" in result.error


class TestAuthCode:
    """Tests for confidential-client authentication at the token endpoint."""

    def test_secret_in_body(self):
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        handler = OAuthAuthCodeHandler(transport=transport)
        config = auth_code_config()
        _url, state = handler.build_authorization_url(config)

        assert asyncio.run(handler.exchange_code(config, "c", state)).success
        assert form_of(transport.last_call)["client_secret"] == "s3cret"
        assert "Authorization" not in transport.last_call["headers"]

    def test_secret_in_basic_header(self):
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        handler = OAuthAuthCodeHandler(transport=transport)
        config = auth_code_config(client_auth_method="basic")
        _url, state = handler.build_authorization_url(config)

        assert asyncio.run(handler.exchange_code(config, "c", state)).success
        expected = "Basic " + base64.b64encode(b"web:s3cret").decode()
        assert transport.last_call["headers"]["Authorization"] == expected
        assert "client_secret" not in form_of(transport.last_call)

    def test_authorization_url_has_no_challenge(self):
        url, _state = OAuthAuthCodeHandler().build_authorization_url(auth_code_config())
        assert "code_challenge" not in query_of(url)

    def test_refresh_requires_refresh_token(self):
        result = asyncio.run(OAuthAuthCodeHandler().refresh(auth_code_config(), Credentials(access_token="a")))
        assert result.error == "No refresh token available"

    def test_pending_states_capped(self):
        handler = OAuthAuthCodeHandler()
        states = [handler.build_authorization_url(auth_code_config())[1] for _ in range(MAX_PENDING_STATES + 5)]

        assert handler.pending_states() == states[5:]

    def test_evicted_state_rejected(self):
        handler = OAuthAuthCodeHandler(transport=DummyTransport([DummyResponse(200, TOKEN)]))
        config = auth_code_config()
        _url, first = handler.build_authorization_url(config)
        for _ in range(MAX_PENDING_STATES):
            handler.build_authorization_url(config)

        result = asyncio.run(handler.handle_callback(config, f"https://app.example.com/callback?code=c&state={first}"))

        assert result.error == "Invalid or expired state parameter"


class TestImplicit:
    """Tests for the legacy implicit flow."""

    CONFIG = OAuthImplicitConfig(
        client_id="legacy", auth_url="https://auth.example.com/authorize", redirect_uri="https://app.example.com/cb"
    )

    def test_deprecation_warnings(self):
        validation = OAuthImplicitHandler().validate_configuration(self.CONFIG)
        assert validation.is_valid
        assert "The implicit flow is deprecated and insecure" in validation.warnings

    def test_authorization_url(self):
        url, state = OAuthImplicitHandler().build_authorization_url(self.CONFIG, nonce="n-1")
        params = query_of(url)
        assert params["response_type"] == "token"
        assert params["state"] == state
        assert params["nonce"] == "n-1"

    def test_fragment_parsed(self):
        handler = OAuthImplicitHandler()
        _url, state = handler.build_authorization_url(self.CONFIG)
        callback = f"https://app.example.com/cb#access_token=tok&token_type=bearer&expires_in=60&state={state}"

        result = handler.parse_callback_fragment(callback)

        assert result.success
        assert result.credentials.headers == {"Authorization": "Bearer tok"}
        assert result.credentials.expires_at is not None
        assert handler.parse_callback_fragment(callback).error == "Invalid or expired state parameter"

    def test_expected_state(self):
        result = OAuthImplicitHandler().parse_callback_fragment("https://app/cb#access_token=t&state=s1", "s1")
        assert result.success

    def test_missing_token(self):
        result = OAuthImplicitHandler().parse_callback_fragment("https://app/cb#state=s1", "s1")
        assert result.error == "No access token in callback fragment"


class TestClientCredentials:
    """Tests for the machine-to-machine grant and its token cache."""

    def test_token_requested_and_cached(self):
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        handler = ClientCredentialsHandler(transport=transport)
        config = client_credentials_config(scope="read")

        first = asyncio.run(handler.authenticate(config))
        second = asyncio.run(handler.authenticate(config))

        assert first.success and second.success
        assert second.credentials.access_token == "at-1"
        assert transport.call_count == 1
        form = form_of(transport.last_call)
        assert form == {"grant_type": "client_credentials", "client_id": "svc", "client_secret": "svc-secret", "scope": "read"}

    def test_cache_respects_buffer(self):
        later = utc_now() + timedelta(seconds=3400)
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        handler = ClientCredentialsHandler(transport=transport, token_cache=TokenCache(clock=lambda: later))
        config = client_credentials_config()

        asyncio.run(handler.authenticate(config))
        asyncio.run(handler.authenticate(config))

        assert transport.call_count == 2

    def test_injected_empty_cache_kept(self):
        cache = TokenCache()
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        handler = ClientCredentialsHandler(transport=transport, token_cache=cache)

        asyncio.run(handler.authenticate(client_credentials_config()))

        assert handler.token_cache is cache
        assert len(cache) == 1

    def test_cache_key_separates_scopes(self):
        assert TokenCache.key_for(client_credentials_config(scope="a")) != TokenCache.key_for(
            client_credentials_config(scope="b")
        )

    def test_refresh_requests_new_token(self):
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        handler = ClientCredentialsHandler(transport=transport)
        config = client_credentials_config()
        creds = asyncio.run(handler.authenticate(config)).credentials

        result = asyncio.run(handler.refresh(config, creds))

        assert result.success
        assert transport.call_count == 2

    def test_rejected_credentials(self):
        transport = DummyTransport([DummyResponse(401, {"error": "invalid_client"})])
        result = asyncio.run(ClientCredentialsHandler(transport=transport).authenticate(client_credentials_config()))
        assert not result.success
        assert result.error.startswith("Token request failed: HTTP 401")

    def test_request_carries_bearer(self):
        transport = DummyTransport().route("/token", DummyResponse(200, TOKEN)).route("/v1", DummyResponse(200, {}))
        handler = ClientCredentialsHandler(transport=transport)
        config = client_credentials_config()

        async def run():
            creds = (await handler.authenticate(config)).credentials
            return await handler.execute_request(RequestTemplate(id="r1", command="curl /v1/items"), config, creds)

        result = asyncio.run(run())
        assert result.success
        assert transport.last_call["url"] == "https://api.example.com/v1/items"
        assert transport.last_call["headers"]["Authorization"] == "Bearer at-1"

    def test_connection_message(self):
        transport = DummyTransport([DummyResponse(200, TOKEN)])
        result = asyncio.run(ClientCredentialsHandler(transport=transport).test_connection(client_credentials_config()))
        assert result.success
        assert result.message == "Successfully obtained access token"
