"""Tests for the protocol registry and protocol metadata queries."""

import pytest

from protocolos.kernel.models import ProtocolType
from protocolos.protocols.base import RequestPolicy
from protocolos.protocols.curl_default import CurlDefaultHandler
from protocolos.protocols.dummy import DummyTransport
from protocolos.protocols.errors import UnknownProtocolError
from protocolos.protocols.registry import (
    PROTOCOL_METADATA,
    ProtocolRegistry,
    get_metadata,
    list_by_category,
    list_by_complexity,
    recommend_protocol,
    search_by_tag,
)
from protocolos.protocols.rest_api_key import RestApiKeyHandler
from protocolos.protocols.websocket import WebsocketHandler


class TestProtocolRegistry:
    """Tests for binding and creating handlers."""

    def test_all_protocols_bound(self):
        registry = ProtocolRegistry()
        assert set(registry.list_types()) == set(ProtocolType)
        for protocol_type in ProtocolType:
            assert registry.create_handler(protocol_type).protocol_type == protocol_type

    def test_string_types_accepted(self):
        handler = ProtocolRegistry().create_handler("rest-api-key")
        assert isinstance(handler, RestApiKeyHandler)

    def test_unknown_type(self):
        with pytest.raises(UnknownProtocolError) as exc_info:
            ProtocolRegistry().create_handler("carrier-pigeon")
        assert "carrier-pigeon" in str(exc_info.value)

    def test_unregistered_type(self):
        registry = ProtocolRegistry(handlers={})
        assert not registry.is_registered(ProtocolType.GRAPHQL)
        with pytest.raises(UnknownProtocolError):
            registry.create_handler(ProtocolType.GRAPHQL)

    def test_register_replaces(self):
        registry = ProtocolRegistry()
        registry.register(ProtocolType.REST_API_KEY, CurlDefaultHandler)
        assert registry.handler_class("rest-api-key") is CurlDefaultHandler
        registry.unregister("rest-api-key")
        assert not registry.is_registered("rest-api-key")

    def test_registries_are_independent(self):
        first, second = ProtocolRegistry(), ProtocolRegistry()
        first.unregister(ProtocolType.SOAP_XML)
        assert second.is_registered(ProtocolType.SOAP_XML)

    def test_collaborators_injected(self):
        transport = DummyTransport()
        policy = RequestPolicy(max_retries=0)

        async def connect(url, **kwargs):
            raise AssertionError("not called")

        registry = ProtocolRegistry(transport=transport, ws_connect=connect, policy=policy)
        handler = registry.create_handler(ProtocolType.CURL_DEFAULT)
        ws_handler = registry.create_handler(ProtocolType.WEBSOCKET)

        assert handler.transport is transport
        assert handler.policy is policy
        assert isinstance(ws_handler, WebsocketHandler)
        assert ws_handler.ws_connect is connect

    def test_fresh_handler_per_call(self):
        registry = ProtocolRegistry()
        assert registry.create_handler("oauth-pkce") is not registry.create_handler("oauth-pkce")

    def test_shared_handler_reused(self):
        registry = ProtocolRegistry()
        handler = registry.get_handler("client-credentials")

        assert registry.get_handler(ProtocolType.CLIENT_CREDENTIALS) is handler
        assert registry.get_handler("oauth-pkce") is not handler

    def test_register_replaces_shared_handler(self):
        registry = ProtocolRegistry()
        before = registry.get_handler(ProtocolType.REST_API_KEY)

        registry.register(ProtocolType.REST_API_KEY, RestApiKeyHandler)

        assert registry.get_handler(ProtocolType.REST_API_KEY) is not before

    def test_unregister_drops_shared_handler(self):
        registry = ProtocolRegistry()
        registry.get_handler("graphql")
        registry.unregister("graphql")

        with pytest.raises(UnknownProtocolError):
            registry.get_handler("graphql")

    def test_is_registered_with_junk(self):
        assert not ProtocolRegistry().is_registered("nope")


class TestProtocolMetadata:
    """Tests for metadata lookups and recommendations."""

    def test_every_protocol_described(self):
        assert set(PROTOCOL_METADATA) == set(ProtocolType)
        for meta in PROTOCOL_METADATA.values():
            assert meta.category in ("oauth", "api-key", "specialized", "no-auth")
            assert meta.complexity in ("simple", "moderate", "complex")

    def test_get_metadata(self):
        assert get_metadata("graphql").display_name == "GraphQL"
        with pytest.raises(UnknownProtocolError):
            get_metadata("nope")

    def test_search_by_tag(self):
        assert search_by_tag("SPA") == [ProtocolType.OAUTH_PKCE, ProtocolType.OAUTH_IMPLICIT]
        assert search_by_tag("nothing-like-this") == []

    def test_list_by_category(self):
        assert list_by_category("no-auth") == [ProtocolType.CURL_DEFAULT, ProtocolType.KEYLESS_SCRAPER]
        assert list_by_category("api-key") == [ProtocolType.REST_API_KEY]

    def test_list_by_complexity(self):
        assert list_by_complexity("simple") == [ProtocolType.CURL_DEFAULT, ProtocolType.REST_API_KEY]

    @pytest.mark.parametrize(
        "kwargs,expected",
        [
            ({"needs_realtime": True, "has_api_key": True}, ProtocolType.WEBSOCKET),
            ({"is_legacy_enterprise": True}, ProtocolType.SOAP_XML),
            ({"has_api_key": True}, ProtocolType.REST_API_KEY),
            ({}, ProtocolType.CLIENT_CREDENTIALS),
            ({"has_user_context": True, "is_public_client": True}, ProtocolType.OAUTH_PKCE),
            ({"has_user_context": True}, ProtocolType.OAUTH_AUTH_CODE),
        ],
    )
    def test_recommend_protocol(self, kwargs, expected):
        assert recommend_protocol(**kwargs) == expected
