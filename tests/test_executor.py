"""Tests for the execution engine: retries, timeouts, cancellation and run bookkeeping."""

import asyncio
import json
import random
from datetime import timedelta
from urllib.parse import parse_qsl

import pytest

from protocolos.kernel.executor import ExecutionEngine
from protocolos.kernel.lifecycle import LifecycleTracker
from protocolos.kernel.models import (
    ClientCredentialsConfig,
    GraphqlConfig,
    HealthStatus,
    LogLevel,
    OAuthAuthCodeConfig,
    ProtocolType,
    RestApiKeyConfig,
    RetrySettings,
    RunStatus,
    utc_now,
)
from protocolos.protocols.dummy import DummyResponse
from protocolos.protocols.errors import ErrorCode
from protocolos.protocols.registry import ProtocolRegistry
from protocolos.protocols.rest_api_key import RestApiKeyHandler
from protocolos.storage.memory import InMemoryRepository


def run_engine(engine, handshake, **kwargs):
    results = asyncio.run(engine.execute_handshake(handshake, **kwargs))
    return results, engine.tracker.get_by_id(engine.last_run_id)


def messages(run):
    return [entry.message for entry in run.logs]


class ExplodingRequestHandler(RestApiKeyHandler):
    """Fails while building the request with a non-protocol error."""

    async def build_request(self, call, config, credentials):
        raise RuntimeError("boom")


class ExplodingAuthHandler(RestApiKeyHandler):
    async def authenticate(self, config):
        raise RuntimeError("kaput")


class TestHappyPath:
    """Tests for handshakes whose requests all succeed."""

    def test_all_requests_succeed(self, engine, transport, build_handshake):
        transport.queue(DummyResponse(200, {"ok": True}))
        handshake = build_handshake("curl /a", "curl /b")

        results, run = run_engine(engine, handshake)

        assert [r.success for r in results] == [True, True]
        assert [c["url"] for c in transport.calls] == ["https://api.example.com/a", "https://api.example.com/b"]
        assert run.status == RunStatus.SUCCESS
        assert run.progress == 100.0
        assert run.handshake_id == "hs-1"
        assert len(run.results) == 2
        assert run.started_at is not None and run.completed_at is not None

    def test_run_log_narrates(self, engine, build_handshake):
        _results, run = run_engine(engine, build_handshake("curl /a"))
        logs = messages(run)
        assert logs[0] == "Starting handshake: Test handshake"
        assert "Authentication succeeded" in logs
        assert logs[-1] == "Handshake completed: 1 requests succeeded"
        assert run.logs[0].level == LogLevel.SYSTEM

    def test_callbacks(self, engine, build_handshake):
        progress, seen, logged = [], [], []
        run_engine(
            engine,
            build_handshake("curl /a", "curl /b", "curl /c"),
            on_progress=progress.append,
            on_result=seen.append,
            on_log=logged.append,
        )
        assert progress == pytest.approx([100 / 3, 200 / 3, 100.0])
        assert [r.request_id for r in seen] == ["req-1", "req-2", "req-3"]
        assert any(entry.message == "Authentication succeeded" for entry in logged)

    def test_placeholders_resolved(self, engine, transport, build_handshake):
        run_engine(
            engine,
            build_handshake("curl '/users/{INPUT}?page={VAR:page}'"),
            variables={"page": "2"},
            input_value="octocat",
        )
        assert transport.last_call["url"] == "https://api.example.com/users/octocat?page=2"

    def test_explicit_run_id(self, engine, build_handshake):
        asyncio.run(engine.execute_handshake(build_handshake("curl /a"), run_id="run-42"))
        assert engine.tracker.get_by_id("run-42").status == RunStatus.SUCCESS

    def test_concurrent_runs(self, engine, build_handshake):
        async def both():
            return await asyncio.gather(
                engine.execute_handshake(build_handshake("curl /a", handshake_id="one"), run_id="r1"),
                engine.execute_handshake(build_handshake("curl /b", handshake_id="two"), run_id="r2"),
            )

        asyncio.run(both())
        assert engine.tracker.get_by_id("r1").status == RunStatus.SUCCESS
        assert engine.tracker.get_by_id("r2").status == RunStatus.SUCCESS
        assert engine.active_runs() == []


class TestRetry:
    """Tests for backoff and the retry budget."""

    def test_server_errors_exhaust_budget(self, engine, transport, sleep, build_handshake):
        transport.queue(DummyResponse(500, "boom"))

        results, run = run_engine(engine, build_handshake("curl /a"))

        assert transport.call_count == 4
        assert results[0].attempts == 4
        assert results[0].retry_count == 3
        assert results[0].error_code == ErrorCode.SERVER_ERROR
        assert run.status == RunStatus.FAILED
        assert run.error_code == ErrorCode.SERVER_ERROR
        assert len(sleep.delays) == 3
        for attempt, delay in enumerate(sleep.delays):
            assert 0.5 * 2**attempt <= delay <= 2**attempt

    def test_recovers_after_transient_failure(self, engine, transport, sleep, build_handshake):
        transport.queue(DummyResponse(503), DummyResponse(200, {"ok": True}))

        results, run = run_engine(engine, build_handshake("curl /a"))

        assert results[0].success
        assert results[0].attempts == 2
        assert run.status == RunStatus.SUCCESS
        assert any(m.startswith("Attempt 1 failed (SERVER_ERROR); retrying in") for m in messages(run))

    def test_client_errors_not_retried(self, engine, transport, sleep, build_handshake):
        transport.queue(DummyResponse(404))

        results, run = run_engine(engine, build_handshake("curl /a"))

        assert transport.call_count == 1
        assert results[0].attempts == 1
        assert sleep.delays == []
        assert run.error == "HTTP 404"
        assert run.error_code == ErrorCode.CLIENT_ERROR

    def test_handshake_overrides_budget(self, engine, transport, sleep, build_handshake):
        transport.queue(DummyResponse(500))
        handshake = build_handshake("curl /a", retry=RetrySettings(max_retries=1, base_delay_s=0.1))

        results, _run = run_engine(engine, handshake)

        assert results[0].attempts == 2
        assert len(sleep.delays) == 1
        assert 0.05 <= sleep.delays[0] <= 0.1

    def test_attempt_timeout(self, engine, transport, build_handshake):
        transport.queue(DummyResponse(200, delay_seconds=1.0))
        handshake = build_handshake("curl /slow", retry=RetrySettings(max_retries=0, timeout_s=0.05))

        results, run = run_engine(engine, handshake)

        assert results[0].error_code == ErrorCode.TIMEOUT
        assert results[0].error_message == "Request timed out after 0.05s"
        assert run.status == RunStatus.FAILED


class TestFailures:
    """Tests for configuration, authentication and request failures."""

    def test_invalid_configuration(self, engine, transport, build_handshake):
        handshake = build_handshake("curl /a", authentication=RestApiKeyConfig())

        results, run = run_engine(engine, handshake)

        assert results == []
        assert transport.call_count == 0
        assert run.status == RunStatus.FAILED
        assert run.error == "Configuration validation failed: api_key"
        assert run.error_code == ErrorCode.AUTH_ERROR

    def test_authentication_failure(self, engine, transport, build_handshake):
        transport.queue(DummyResponse(401, {"error": "invalid_client"}))
        config = ClientCredentialsConfig(client_id="c", client_secret="s", token_url="https://auth.example.com/token")

        results, run = run_engine(engine, build_handshake("curl https://api.example.com/a", authentication=config))

        assert results == []
        assert transport.call_count == 1
        assert run.status == RunStatus.FAILED
        assert run.error.startswith("Authentication failed: Token request failed: HTTP 401")

    def test_unknown_protocol(self, transport, policy, sleep, build_handshake):
        engine = ExecutionEngine(ProtocolRegistry(transport=transport, handlers={}), policy=policy, sleep=sleep)

        _results, run = run_engine(engine, build_handshake("curl /a"))

        assert run.status == RunStatus.FAILED
        assert run.error_code == ErrorCode.UNKNOWN

    def test_stops_after_failure(self, engine, transport, build_handshake):
        transport.route("/alpha", DummyResponse(404)).route("/beta", DummyResponse(200))

        results, run = run_engine(engine, build_handshake("curl /alpha", "curl /beta"))

        assert len(results) == 1
        assert not transport.was_called("/beta")
        assert "Stopping after failed request: Request 1" in messages(run)

    def test_continue_on_error(self, engine, transport, build_handshake):
        transport.route("/alpha", DummyResponse(404)).route("/beta", DummyResponse(200))

        results, run = run_engine(engine, build_handshake("curl /alpha", "curl /beta", continue_on_error=True))

        assert [r.success for r in results] == [False, True]
        assert run.status == RunStatus.FAILED
        assert run.error == "HTTP 404"
        assert run.progress == 100.0
        assert "Handshake failed: 1 of 2 requests failed" in messages(run)

    def test_strict_placeholders(self, registry, policy, sleep, transport, build_handshake):
        engine = ExecutionEngine(registry, policy=policy, sleep=sleep, strict_placeholders=True)

        results, run = run_engine(engine, build_handshake("curl /users/{VAR:user}"))

        assert results[0].error_code == ErrorCode.PARSE_ERROR
        assert results[0].attempts == 1
        assert transport.call_count == 0
        assert run.status == RunStatus.FAILED

    def test_malformed_graphql_document(self, engine, transport, build_handshake):
        config = GraphqlConfig(endpoint="https://api.example.com/graphql")

        results, run = run_engine(engine, build_handshake("curl -d '{\"query\": 5}'", authentication=config))

        assert results[0].error_code == ErrorCode.PARSE_ERROR
        assert results[0].error_message == "GraphQL query must be a string"
        assert transport.call_count == 0
        assert run.status == RunStatus.FAILED

    def test_unexpected_request_error(self, engine, registry, transport, build_handshake):
        registry.register(ProtocolType.REST_API_KEY, ExplodingRequestHandler)

        results, run = run_engine(engine, build_handshake("curl /a"))

        assert results[0].error_code == ErrorCode.UNKNOWN
        assert results[0].error_message == "Unexpected error: boom"
        assert results[0].attempts == 1
        assert run.status == RunStatus.FAILED
        assert run.error_code == ErrorCode.UNKNOWN

    def test_unexpected_authentication_error(self, engine, registry, transport, build_handshake):
        registry.register(ProtocolType.REST_API_KEY, ExplodingAuthHandler)

        results, run = run_engine(engine, build_handshake("curl /a"))

        assert results == []
        assert run.status == RunStatus.FAILED
        assert run.error == "Authentication failed: kaput"
        assert run.error_code == ErrorCode.AUTH_ERROR

    def test_run_finished_when_callback_raises(self, engine, build_handshake):
        def explode(result):
            raise ValueError("callback failed")

        with pytest.raises(ValueError):
            asyncio.run(engine.execute_handshake(build_handshake("curl /a"), on_result=explode))

        run = engine.tracker.get_by_id(engine.last_run_id)
        assert run.status == RunStatus.FAILED
        assert run.error == "Execution aborted"
        assert engine.active_runs() == []


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_between_requests(self, engine, transport, build_handshake):
        handshake = build_handshake("curl /a", "curl /b", "curl /c")

        results, run = run_engine(engine, handshake, on_result=lambda _r: engine.cancel(engine.last_run_id))

        assert len(results) == 1
        assert transport.call_count == 1
        assert run.status == RunStatus.CANCELLED
        assert "Execution cancelled" in messages(run)

    def test_cancel_during_backoff(self, engine, transport, build_handshake):
        transport.queue(DummyResponse(500))

        async def cancelling_sleep(_seconds):
            engine.cancel(engine.last_run_id)

        engine._sleep = cancelling_sleep
        results, run = run_engine(engine, build_handshake("curl /a"))

        assert results == []
        assert transport.call_count == 1
        assert run.status == RunStatus.CANCELLED

    def test_cancel_in_flight(self, engine, transport, build_handshake):
        transport.queue(DummyResponse(200, delay_seconds=2.0))

        async def scenario():
            task = asyncio.ensure_future(engine.execute_handshake(build_handshake("curl /a"), run_id="inflight"))
            await asyncio.sleep(0.05)
            assert engine.cancel("inflight")
            return await task

        results = asyncio.run(scenario())

        assert results == []
        assert engine.tracker.get_by_id("inflight").status == RunStatus.CANCELLED

    def test_cancel_unknown_run(self, engine):
        assert engine.cancel("missing") is False


class TestHealthAndPersistence:
    """Tests for health indicators and sanitized run storage."""

    def test_health_progression(self, engine, transport, build_handshake):
        handshake = build_handshake("curl /a")
        assert engine.health(handshake) == HealthStatus.CONFIGURED

        run_engine(engine, handshake)
        assert engine.health(handshake) == HealthStatus.HEALTHY

        transport.queue(DummyResponse(404))
        run_engine(engine, handshake)
        assert engine.health(handshake) == HealthStatus.FAILED

    def test_unconfigured(self, engine, build_handshake):
        handshake = build_handshake("curl /a", authentication=RestApiKeyConfig())
        assert engine.health(handshake) == HealthStatus.UNCONFIGURED

    def test_finished_runs_persisted_sanitized(self, registry, policy, sleep, transport, build_handshake):
        repository = InMemoryRepository()
        engine = ExecutionEngine(
            registry,
            tracker=LifecycleTracker(history_size=5),
            policy=policy,
            sleep=sleep,
            rng=random.Random(1),
            repository=repository,
        )
        transport.queue(DummyResponse(200, {"token": "leaked-secret", "name": "ok"}))
        config = RestApiKeyConfig(api_key="sk-test-123456", key_name="api_key", placement="query",
                                  api_url="https://api.example.com")

        run_engine(engine, build_handshake("curl /a", authentication=config))

        stored = repository.get("execution_logs", engine.last_run_id)
        assert stored.success
        assert stored.data["status"] == "success"
        dumped = json.dumps(stored.data)
        assert "leaked-secret" not in dumped
        assert "sk-test-123456" not in dumped
        assert stored.data["results"][0]["body"]["name"] == "ok"


class TestCredentialState:
    """Tests for tokens shared across requests and runs."""

    def test_client_credentials_token_reused_across_runs(self, engine, transport, build_handshake):
        transport.route("/token", DummyResponse(200, {"access_token": "cc-1", "expires_in": 3600}))
        transport.route("/v1", DummyResponse(200, {}))
        config = ClientCredentialsConfig(
            client_id="svc",
            client_secret="svc-secret",
            token_url="https://auth.example.com/token",
            api_url="https://api.example.com",
        )
        handshake = build_handshake("curl /v1/items", authentication=config)

        _first, first_run = run_engine(engine, handshake)
        _second, second_run = run_engine(engine, handshake)

        token_calls = [c for c in transport.calls if c["url"].endswith("/token")]
        assert first_run.status == RunStatus.SUCCESS
        assert second_run.status == RunStatus.SUCCESS
        assert len(token_calls) == 1
        assert transport.last_call["headers"]["Authorization"] == "Bearer cc-1"

    def test_refreshed_token_carried_to_later_requests(self, engine, transport, build_handshake):
        transport.route(
            "/token",
            DummyResponse(200, {"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 3600}),
            DummyResponse(400, {"error": "invalid_grant"}),
        )
        transport.route("/v1", DummyResponse(200, {"ok": True}))
        config = OAuthAuthCodeConfig(
            client_id="web",
            client_secret="s3cret",
            auth_url="https://auth.example.com/authorize",
            token_url="https://auth.example.com/token",
            redirect_uri="https://app.example.com/callback",
            api_url="https://api.example.com",
            access_token="old",
            refresh_token="rt-1",
            expires_at=utc_now() - timedelta(minutes=1),
        )

        results, run = run_engine(engine, build_handshake("curl /v1/one", "curl /v1/two", authentication=config))

        token_calls = [c for c in transport.calls if c["url"].endswith("/token")]
        api_calls = [c for c in transport.calls if "/v1/" in c["url"]]
        assert [r.success for r in results] == [True, True]
        assert run.status == RunStatus.SUCCESS
        assert len(token_calls) == 1
        assert dict(parse_qsl(token_calls[0]["body"]))["refresh_token"] == "rt-1"
        assert [c["headers"]["Authorization"] for c in api_calls] == ["Bearer at-2", "Bearer at-2"]
        assert messages(run).count("Token refreshed") == 1
