"""Default HTTP transport backed by httpx.

Implements the Transport contract:
- One request per call; retries belong to the execution engine
- Races the request against the caller's CancelToken
- Maps httpx failures onto error codes (TIMEOUT, DNS_ERROR, SSL_ERROR, ...)

Tests inject DummyTransport instead and never reach this module's client.
"""

import logging
import time
from typing import Dict, Optional

import httpx

from protocolos.protocols.base import (
    CancelToken,
    RequestPolicy,
    TransportResponse,
    merge_headers,
    run_cancellable,
)
from protocolos.protocols.errors import (
    ErrorCode,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
)
from protocolos.tools.sanitizer import sanitize_string

logger = logging.getLogger(__name__)

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "no address associated",
    "name resolution",
)
_SSL_MARKERS = ("ssl", "certificate", "tls")


def classify_httpx_error(exc: Exception) -> ErrorCode:
    """Map an httpx exception to an error code."""
    if isinstance(exc, httpx.TimeoutException):
        return ErrorCode.TIMEOUT
    if isinstance(exc, httpx.TooManyRedirects):
        return ErrorCode.REDIRECT_ERROR
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return ErrorCode.PARSE_ERROR

    message = str(exc).lower()
    if any(marker in message for marker in _SSL_MARKERS):
        return ErrorCode.SSL_ERROR
    if isinstance(exc, httpx.ConnectError) and any(marker in message for marker in _DNS_MARKERS):
        return ErrorCode.DNS_ERROR
    return ErrorCode.NETWORK_ERROR


class HttpxTransport:
    """Async transport with RequestPolicy enforcement.

    Each call opens a short-lived ``httpx.AsyncClient`` unless a shared
    client is supplied.
    """

    def __init__(self, policy: Optional[RequestPolicy] = None, client: Optional[httpx.AsyncClient] = None):
        """Initialize the transport.

        Args:
            policy: Request policy (timeouts, redirects, TLS verification)
            client: Optional pre-built client, e.g. with a MockTransport
        """
        self.policy = policy or RequestPolicy.from_config()
        self._client = client

    def _build_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        return merge_headers({"User-Agent": self.policy.user_agent}, self.policy.default_headers, headers)

    async def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[str],
        timeout: float,
    ) -> TransportResponse:
        start_time = time.monotonic()
        content = body.encode("utf-8") if body is not None else None
        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=headers, content=content, timeout=timeout)
            else:
                async with httpx.AsyncClient(
                    timeout=timeout,
                    follow_redirects=self.policy.follow_redirects,
                    max_redirects=self.policy.max_redirects,
                    verify=self.policy.verify_ssl,
                ) as client:
                    response = await client.request(method, url, headers=headers, content=content)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"Request timed out after {timeout}s", timeout_seconds=timeout) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            code = classify_httpx_error(exc)
            raise TransportError(f"{code.value}: {sanitize_string(str(exc)) or type(exc).__name__}", code) from exc

        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.content,
            elapsed_s=time.monotonic() - start_time,
            url=str(response.url),
        )

    async def __call__(
        self,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        body: Optional[str] = None,
        signal: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> TransportResponse:
        """Send one request.

        Raises:
            TransportError: No response was received (classified code)
            RequestCancelledError: ``signal`` fired before the response arrived
        """
        timeout = timeout or self.policy.timeout_s
        send = self._send(method.upper(), url, self._build_headers(headers), body, timeout)
        try:
            return await run_cancellable(send, signal)
        except RequestCancelledError:
            logger.info("Request cancelled: %s %s", method, sanitize_string(url))
            raise
