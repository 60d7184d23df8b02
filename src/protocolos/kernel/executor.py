"""Execution engine for handshakes.

The engine takes a Handshake and executes it:
1. Resolves the handler for the handshake's protocol
2. Validates the configuration and authenticates once
3. Runs each request in order under the retry policy
4. Records logs, results and state through the LifecycleTracker

Handlers perform single attempts. Backoff, per-attempt timeouts and
cancellation are owned here.
"""

import asyncio
import logging
import random
from typing import Any, Callable, Dict, List, Optional

from protocolos.config import config
from protocolos.kernel.lifecycle import LifecycleTracker
from protocolos.kernel.models import (
    Credentials,
    ExecutionResult,
    ExecutionRun,
    Handshake,
    HealthStatus,
    LogEntry,
    LogLevel,
    RequestTemplate,
    RunStatus,
    utc_now,
)
from protocolos.protocols.base import (
    CancelToken,
    ExecutionOptions,
    ProtocolHandler,
    RequestPolicy,
    run_cancellable,
)
from protocolos.protocols.errors import (
    AuthenticationError,
    ErrorCode,
    ProtocolError,
    RequestCancelledError,
    UnknownProtocolError,
)
from protocolos.protocols.registry import ProtocolRegistry
from protocolos.tools import curl
from protocolos.tools.sanitizer import sanitize_object, sanitize_string

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Any]


class ExecutionEngine:
    """Runs handshakes against live (or scripted) endpoints.

    Distinct runs may proceed concurrently; each gets its own CancelToken.
    Requests within a run are strictly sequential.
    """

    def __init__(
        self,
        registry: ProtocolRegistry,
        tracker: Optional[LifecycleTracker] = None,
        policy: Optional[RequestPolicy] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
        repository: Optional[Any] = None,
        strict_placeholders: Optional[bool] = None,
    ):
        """Initialize the engine.

        Args:
            registry: Source of protocol handlers
            tracker: Run lifecycle tracker (a fresh one by default)
            policy: Retry/timeout policy (from PO_* settings by default)
            sleep: Awaitable sleep used for backoff
            rng: Random source for backoff jitter
            repository: Optional store for sanitized finished runs
            strict_placeholders: Fail requests with unresolved placeholders
        """
        self.registry = registry
        self.tracker = tracker or LifecycleTracker(config.history_size)
        self.policy = policy or registry.policy or RequestPolicy.from_config()
        self.repository = repository
        self.strict_placeholders = (
            config.strict_placeholders if strict_placeholders is None else strict_placeholders
        )
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._tokens: Dict[str, CancelToken] = {}
        self.last_run_id: Optional[str] = None

    # -------------------------------------------------------------------------
    # Run control
    # -------------------------------------------------------------------------

    def cancel(self, run_id: str) -> bool:
        """Signal a running handshake to stop.

        Returns:
            True if the run was active and is now flagged for cancellation
        """
        token = self._tokens.get(run_id)
        if token is None:
            return False
        logger.info("Cancelling run %s", run_id)
        token.cancel()
        return True

    def active_runs(self) -> List[ExecutionRun]:
        return self.tracker.active_runs()

    def health(self, handshake: Handshake) -> HealthStatus:
        """Health indicator for a handshake from its configuration and latest run."""
        try:
            handler = self.registry.get_handler(handshake.protocol_type)
        except UnknownProtocolError:
            return self.tracker.health_indicator(handshake.id, configured=False)
        configured = handler.validate_configuration(handshake.authentication).is_valid
        return self.tracker.health_indicator(handshake.id, configured=configured)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute_handshake(
        self,
        handshake: Handshake,
        variables: Optional[Dict[str, str]] = None,
        *,
        input_value: Optional[str] = None,
        run_id: Optional[str] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        on_log: Optional[Callable[[LogEntry], None]] = None,
        on_result: Optional[Callable[[ExecutionResult], None]] = None,
    ) -> List[ExecutionResult]:
        """Execute every request of a handshake.

        Args:
            handshake: Authentication config plus ordered requests
            variables: Values for ``{VAR:name}`` placeholders
            input_value: Value for ``{INPUT}`` (overrides per-request input)
            run_id: Id for the run; generated when omitted
            on_progress: Called with progress (0-100) after each request
            on_log: Called with every log entry
            on_result: Called with every request result

        Returns:
            Results of the executed requests, in order. The run's final
            state is available from ``tracker.get_by_id(run_id)``.
        """
        run = self.tracker.create_run(handshake.id, run_id)
        token = CancelToken()
        self._tokens[run.id] = token
        self.last_run_id = run.id
        logger.info("Run %s started for handshake %s", run.id, handshake.id)
        try:
            return await self._run(handshake, run.id, token, variables or {}, input_value, on_progress, on_log, on_result)
        finally:
            self._tokens.pop(run.id, None)
            final = self.tracker.get_by_id(run.id)
            if final is not None and not final.status.is_terminal:
                self.tracker.complete(run.id, False, "Execution aborted", ErrorCode.UNKNOWN)
                final = self.tracker.get_by_id(run.id)
            if final is not None:
                logger.info("Run %s finished: %s", run.id, final.status.value)
                self._persist(final)

    async def _run(
        self,
        handshake: Handshake,
        run_id: str,
        token: CancelToken,
        variables: Dict[str, str],
        input_value: Optional[str],
        on_progress: Optional[Callable[[float], None]],
        on_log: Optional[Callable[[LogEntry], None]],
        on_result: Optional[Callable[[ExecutionResult], None]],
    ) -> List[ExecutionResult]:
        def emit(entry: LogEntry) -> None:
            self.tracker.add_log(run_id, entry)
            if on_log:
                on_log(entry)

        def log(level: LogLevel, message: str) -> None:
            emit(LogEntry(level=level, message=sanitize_string(message)))

        def fail(message: str, code: ErrorCode) -> List[ExecutionResult]:
            log(LogLevel.ERROR, message)
            self.tracker.complete(run_id, False, message, code)
            return []

        self.tracker.start(run_id)
        log(LogLevel.SYSTEM, f"Starting handshake: {handshake.name or handshake.id}")

        try:
            handler = self.registry.get_handler(handshake.protocol_type)
        except UnknownProtocolError as exc:
            return fail(str(exc), ErrorCode.UNKNOWN)

        auth_config = handshake.authentication
        validation = handler.validate_configuration(auth_config)
        for warning in validation.warnings:
            log(LogLevel.WARNING, warning)
        if not validation.is_valid:
            problems = validation.missing_fields + [
                f"{item['field']} ({item['reason']})" for item in validation.invalid_fields
            ]
            return fail(f"Configuration validation failed: {', '.join(problems)}", ErrorCode.AUTH_ERROR)

        log(LogLevel.INFO, f"Authenticating with {handler.display_name}")
        try:
            auth = await run_cancellable(handler.authenticate(auth_config), token, handshake.protocol_type.value)
        except RequestCancelledError:
            log(LogLevel.WARNING, "Execution cancelled")
            self.tracker.cancel(run_id)
            return []
        except ProtocolError as exc:
            return fail(f"Authentication failed: {exc}", ErrorCode.AUTH_ERROR)
        except Exception as exc:
            logger.exception("Unexpected error authenticating with %s", handler.display_name)
            return fail(f"Authentication failed: {exc}", ErrorCode.AUTH_ERROR)
        if not auth.success or auth.credentials is None:
            return fail(f"Authentication failed: {auth.error or 'no credentials returned'}", ErrorCode.AUTH_ERROR)
        log(LogLevel.SUCCESS, "Authentication succeeded")

        policy = self.policy
        if handshake.retry is not None:
            policy = policy.with_overrides(
                max_retries=handshake.retry.max_retries,
                base_delay_s=handshake.retry.base_delay_s,
                timeout_s=handshake.retry.timeout_s,
            )
        options = ExecutionOptions(
            variables=dict(variables),
            input=input_value,
            timeout_s=policy.timeout_s,
            cancel_token=token,
            on_log=emit,
            strict=self.strict_placeholders,
        )

        results: List[ExecutionResult] = []
        credentials = auth.credentials
        total = len(handshake.requests)
        for index, request in enumerate(handshake.requests):
            if token.cancelled:
                break
            try:
                credentials = await self._fresh_credentials(handler, auth_config, credentials, token, log)
                result = await self._execute_with_retry(handler, request, auth_config, credentials, options, policy)
            except RequestCancelledError:
                break
            except ProtocolError as exc:
                result = self._failure(handler, request, utc_now(), str(exc), exc.code)

            results.append(result)
            self.tracker.add_result(run_id, result)
            if on_result:
                on_result(result)
            progress = self.tracker.update_progress(run_id, (index + 1) / total * 100)
            if on_progress:
                on_progress(progress)

            if not result.success and not handshake.continue_on_error:
                log(LogLevel.ERROR, f"Stopping after failed request: {request.title or request.id}")
                break

        if token.cancelled:
            log(LogLevel.WARNING, "Execution cancelled")
            self.tracker.cancel(run_id)
            return results

        failures = [r for r in results if not r.success]
        if failures:
            first = failures[0]
            self.tracker.complete(run_id, False, first.error_message, first.error_code)
            log(LogLevel.ERROR, f"Handshake failed: {len(failures)} of {len(results)} requests failed")
        else:
            self.tracker.complete(run_id, True)
            log(LogLevel.SUCCESS, f"Handshake completed: {len(results)} requests succeeded")
        return results

    async def _fresh_credentials(
        self,
        handler: ProtocolHandler,
        auth_config: Any,
        credentials: Credentials,
        token: CancelToken,
        log: Callable[[LogLevel, str], None],
    ) -> Credentials:
        """Refresh expired credentials once for the rest of the run.

        Raises:
            ProtocolError: AUTH_ERROR when the refresh fails
            RequestCancelledError: If the run is cancelled during the refresh
        """
        try:
            return await run_cancellable(
                handler.ensure_fresh(auth_config, credentials, log), token, handler.protocol_type.value
            )
        except ProtocolError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error refreshing %s credentials", handler.protocol_type.value)
            raise AuthenticationError(f"Token refresh failed: {exc}", handler.protocol_type.value) from exc

    async def _execute_with_retry(
        self,
        handler: ProtocolHandler,
        request: RequestTemplate,
        auth_config: Any,
        credentials: Any,
        options: ExecutionOptions,
        policy: RequestPolicy,
    ) -> ExecutionResult:
        """Run attempts until one succeeds, fails for good, or the budget is spent.

        Raises:
            RequestCancelledError: If the run is cancelled between or during attempts
        """
        token = options.cancel_token
        attempt = 0
        while True:
            if token is not None:
                token.raise_if_cancelled(handler.protocol_type.value)

            result = await self._attempt(handler, request, auth_config, credentials, options, policy)
            result = result.model_copy(update={"attempts": attempt + 1, "retry_count": attempt})
            if not policy.should_retry(result, attempt):
                return result

            delay = policy.retry_delay(attempt, self._rng)
            if options.on_log:
                options.on_log(
                    LogEntry(
                        level=LogLevel.WARNING,
                        message=f"Attempt {attempt + 1} failed ({result.error_code.value}); retrying in {delay:.2f}s",
                    )
                )
            await run_cancellable(self._sleep(delay), token, handler.protocol_type.value)
            attempt += 1

    async def _attempt(
        self,
        handler: ProtocolHandler,
        request: RequestTemplate,
        auth_config: Any,
        credentials: Any,
        options: ExecutionOptions,
        policy: RequestPolicy,
    ) -> ExecutionResult:
        started = utc_now()
        try:
            return await asyncio.wait_for(
                run_cancellable(
                    handler.execute_request(request, auth_config, credentials, options),
                    options.cancel_token,
                    handler.protocol_type.value,
                ),
                policy.timeout_s,
            )
        except asyncio.TimeoutError:
            return self._failure(
                handler, request, started, f"Request timed out after {policy.timeout_s}s", ErrorCode.TIMEOUT
            )
        except RequestCancelledError:
            raise
        except ProtocolError as exc:
            return self._failure(handler, request, started, str(exc), exc.code)
        except Exception as exc:
            logger.exception("Unexpected error in %s request", handler.protocol_type.value)
            return self._failure(handler, request, started, f"Unexpected error: {exc}", ErrorCode.UNKNOWN)

    @staticmethod
    def _failure(
        handler: ProtocolHandler,
        request: RequestTemplate,
        started: Any,
        message: str,
        code: ErrorCode,
    ) -> ExecutionResult:
        """Result for an attempt that ended outside the handler's own classification."""
        parsed = curl.parse(request.command) if request.command.strip() else curl.ParsedCommand()
        completed = utc_now()
        return ExecutionResult(
            request_id=request.id,
            title=request.title,
            protocol_type=handler.protocol_type,
            success=False,
            method=parsed.method,
            url=sanitize_string(parsed.url),
            duration_ms=(completed - started).total_seconds() * 1000,
            started_at=started,
            completed_at=completed,
            logs=[LogEntry(level=LogLevel.ERROR, message=sanitize_string(message))],
            error_message=message,
            error_code=code,
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _persist(self, run: ExecutionRun) -> None:
        if self.repository is None or run.status not in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED):
            return
        record = sanitize_object(run.model_dump(mode="json"))
        for result in record.get("results", []):
            result["raw_body"] = sanitize_string(result.get("raw_body") or "")
        saved = self.repository.create("execution_logs", record)
        if not saved.success:
            logger.warning("Could not persist run %s: %s", run.id, saved.error)
