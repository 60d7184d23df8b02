"""WebSocket handshake test: connect, optionally send, await the first message.

The connection goes through an injected channel factory so that tests can
script frames. The default factory uses aiohttp.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import aiohttp

from protocolos.kernel.models import Credentials, ExecutionResult, LogLevel, ProtocolType, RequestTemplate, WebsocketConfig
from protocolos.protocols.base import (
    AuthResult,
    ConfigValidation,
    ConnectionTestResult,
    ExecutionOptions,
    OutgoingRequest,
    ProtocolHandler,
    RequestCall,
    TransportResponse,
    add_query_params,
    run_cancellable,
)
from protocolos.protocols.errors import (
    ErrorCode,
    ProtocolError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
)
from protocolos.tools import curl
from protocolos.tools.sanitizer import sanitize_string

logger = logging.getLogger(__name__)

SWITCHING_PROTOCOLS = 101

CLOSE_CODE_DESCRIPTIONS: Dict[int, str] = {
    1000: "Normal closure",
    1001: "Going away",
    1002: "Protocol error",
    1003: "Unsupported data",
    1005: "No status received",
    1006: "Abnormal closure",
    1007: "Invalid frame payload",
    1008: "Policy violation",
    1009: "Message too big",
    1010: "Missing extension",
    1011: "Internal server error",
    1012: "Service restart",
    1013: "Try again later",
}


def close_code_description(code: int) -> str:
    return CLOSE_CODE_DESCRIPTIONS.get(code, f"Unknown code: {code}")


# =============================================================================
# Channels
# =============================================================================


class WebSocketChannel(Protocol):
    """An open WebSocket connection."""

    async def send(self, data: str) -> None:
        ...

    async def receive(self, timeout: float) -> str:
        """Next text frame.

        Raises:
            RequestTimeoutError: If nothing arrives within ``timeout``
            TransportError: If the connection closes or errors first
        """
        ...

    async def close(self) -> None:
        ...


ChannelFactory = Callable[..., Awaitable[WebSocketChannel]]


class AiohttpChannel:
    """WebSocketChannel over an aiohttp ClientWebSocketResponse."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws

    async def send(self, data: str) -> None:
        await self._ws.send_str(data)

    async def receive(self, timeout: float) -> str:
        try:
            msg = await self._ws.receive(timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(
                f"No message received within {timeout}s", ProtocolType.WEBSOCKET.value, timeout
            ) from exc

        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data.decode("utf-8", errors="replace")
        if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
            code = self._ws.close_code or 1005
            raise TransportError(
                f"Connection closed: {code} {close_code_description(code)}",
                protocol=ProtocolType.WEBSOCKET.value,
                details={"close_code": code},
            )
        raise TransportError(f"WebSocket error: {self._ws.exception()}", protocol=ProtocolType.WEBSOCKET.value)

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            await self._session.close()


async def aiohttp_connect(
    url: str,
    *,
    protocols: Tuple[str, ...] = (),
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 30.0,
    verify_ssl: bool = True,
) -> WebSocketChannel:
    """Open a WebSocket with aiohttp.

    Raises:
        RequestTimeoutError: If the handshake does not finish within ``timeout``
        TransportError: If the connection is refused or the upgrade rejected
    """
    logger.debug("Opening WebSocket %s", sanitize_string(url))
    session = aiohttp.ClientSession()
    connected = False
    try:
        ws = await asyncio.wait_for(
            session.ws_connect(url, protocols=protocols, headers=headers, ssl=verify_ssl),
            timeout,
        )
        connected = True
    except asyncio.TimeoutError as exc:
        raise RequestTimeoutError("Connection timeout", ProtocolType.WEBSOCKET.value, timeout) from exc
    except aiohttp.WSServerHandshakeError as exc:
        code = ErrorCode.AUTH_ERROR if exc.status in (401, 403) else ErrorCode.CLIENT_ERROR
        raise TransportError(
            f"WebSocket upgrade rejected: HTTP {exc.status}", code, ProtocolType.WEBSOCKET.value
        ) from exc
    except aiohttp.ClientError as exc:
        raise TransportError(
            f"WebSocket connection error: {sanitize_string(str(exc))}", protocol=ProtocolType.WEBSOCKET.value
        ) from exc
    finally:
        if not connected:
            await session.close()
    return AiohttpChannel(session, ws)


# =============================================================================
# Handler
# =============================================================================


class WebsocketHandler(ProtocolHandler):
    """Real-time bidirectional communication."""

    protocol_type = ProtocolType.WEBSOCKET
    config_model = WebsocketConfig
    display_name = "WebSocket"
    description = "Real-time bidirectional communication"

    def __init__(self, *args, ws_connect: Optional[ChannelFactory] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.ws_connect = ws_connect or aiohttp_connect

    def required_fields(self) -> List[str]:
        return ["url"]

    def optional_fields(self) -> List[str]:
        return ["protocols", "auth_token", "receive_timeout_s"]

    def check_configuration(self, config: WebsocketConfig, validation: ConfigValidation) -> None:
        self._check_url(validation, "url", config.url, schemes=("ws", "wss"))
        if config.url and not config.url.startswith("wss://"):
            validation.warnings.append("Consider using wss:// for secure WebSocket connections")

    async def authenticate(self, config: WebsocketConfig) -> AuthResult:
        query = {"token": config.auth_token} if config.auth_token else {}
        return AuthResult(success=True, credentials=Credentials(query_params=query, token_type=""))

    async def build_request(self, call: RequestCall, config: WebsocketConfig, credentials: Credentials) -> OutgoingRequest:
        """Connection URL plus the first outgoing message (may be None)."""
        url = config.url
        message: Optional[str] = None
        if call.request.command.strip():
            parsed = self.prepare_command(call, require_url=False)
            if parsed.url.startswith(("ws://", "wss://")):
                url = parsed.url
            message = parsed.body
        if message is None and call.request.test_data:
            message = self.resolve_text(call, call.request.test_data)
        if not url:
            raise ProtocolError("No WebSocket URL configured", self.protocol_type.value, ErrorCode.PARSE_ERROR)
        headers, url = self.with_credentials({}, url, credentials)
        return OutgoingRequest("GET", url, headers, message)

    async def execute_request(
        self,
        request: RequestTemplate,
        config: WebsocketConfig,
        credentials: Credentials,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """Connect, send the message if any, and wait for the first reply.

        Raises:
            RequestCancelledError: If the cancel token fires
        """
        options = options or ExecutionOptions()
        call = RequestCall(self, request, options)
        call.log(LogLevel.INFO, f"WebSocket: {request.title or request.id}")

        try:
            outgoing = await self.build_request(call, config, credentials)
        except ProtocolError as exc:
            call.log(LogLevel.ERROR, str(exc))
            return call.fail(str(exc), exc.code)

        call.method = outgoing.method
        call.url = outgoing.url
        call.log(LogLevel.INFO, f"Connecting to {outgoing.url}")
        start = time.monotonic()
        try:
            reply = await run_cancellable(
                self._exchange(call, config, outgoing, options), options.cancel_token, self.protocol_type.value
            )
        except RequestCancelledError:
            call.log(LogLevel.WARNING, "Connection aborted")
            raise
        except TransportError as exc:
            call.log(LogLevel.ERROR, str(exc))
            return call.fail(str(exc), exc.code)

        response = TransportResponse(
            status_code=SWITCHING_PROTOCOLS,
            headers={},
            body=reply.encode("utf-8"),
            elapsed_s=time.monotonic() - start,
            url=outgoing.url,
        )
        return call.finish(response, success_status=(SWITCHING_PROTOCOLS, SWITCHING_PROTOCOLS + 1))

    async def _exchange(
        self, call: RequestCall, config: WebsocketConfig, outgoing: OutgoingRequest, options: ExecutionOptions
    ) -> str:
        channel = await self.ws_connect(
            outgoing.url,
            protocols=tuple(config.protocols),
            headers=outgoing.headers,
            timeout=options.timeout_s or self.policy.timeout_s,
            verify_ssl=self.policy.verify_ssl if options.verify_ssl is None else options.verify_ssl,
        )
        try:
            call.log(LogLevel.SUCCESS, "WebSocket connected")
            if outgoing.body:
                call.log(LogLevel.INFO, "Sending test message")
                await channel.send(outgoing.body)
            reply = await channel.receive(config.receive_timeout_s)
            call.log(LogLevel.INFO, f"Received: {reply[:100]}")
            return reply
        finally:
            await channel.close()

    async def test_connection(self, config: WebsocketConfig) -> ConnectionTestResult:
        """Open and immediately close a connection."""
        if not config.url:
            return ConnectionTestResult(False, "WebSocket URL not configured")
        url = add_query_params(config.url, {"token": config.auth_token} if config.auth_token else {})
        start = time.monotonic()
        try:
            channel = await self.ws_connect(
                url,
                protocols=tuple(config.protocols),
                headers={},
                timeout=self.policy.timeout_s,
                verify_ssl=self.policy.verify_ssl,
            )
            await channel.close()
        except TransportError as exc:
            return ConnectionTestResult(False, str(exc))
        return ConnectionTestResult(True, "WebSocket connection established", (time.monotonic() - start) * 1000)

    def generate_sample_curl(self, config: WebsocketConfig) -> str:
        url = config.url or "wss://api.example.com/ws"
        return "\n".join(
            [
                "# WebSocket upgrade request",
                curl.stringify(
                    curl.ParsedCommand(
                        url=url.replace("wss://", "https://", 1).replace("ws://", "http://", 1),
                        headers={
                            "Connection": "Upgrade",
                            "Upgrade": "websocket",
                            "Sec-WebSocket-Version": "13",
                            "Sec-WebSocket-Key": "SGVsbG8sIHdvcmxkIQ==",
                        },
                    )
                ),
            ]
        )
