"""Scripted transports for tests and dry runs.

DummyTransport implements the Transport contract without any network
access. It can be configured to:
- Return canned responses in order, or per URL fragment
- Raise specific transport errors
- Track calls for assertions
"""

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from protocolos.protocols.base import CancelToken, TransportResponse
from protocolos.protocols.errors import ProtocolError, TransportError


@dataclass
class DummyResponse:
    """Canned response for DummyTransport.

    ``body`` may be bytes, text, or a JSON-serializable object (sent as JSON).
    """

    status_code: int = 200
    body: Any = b""
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[ProtocolError] = None
    delay_seconds: float = 0.0

    def to_response(self, url: str) -> TransportResponse:
        headers = dict(self.headers)
        if isinstance(self.body, bytes):
            raw = self.body
        elif isinstance(self.body, str):
            raw = self.body.encode("utf-8")
        else:
            raw = json.dumps(self.body).encode("utf-8")
            headers.setdefault("content-type", "application/json")
        return TransportResponse(
            status_code=self.status_code,
            headers=headers,
            body=raw,
            elapsed_s=self.delay_seconds,
            url=url,
        )


class DummyTransport:
    """Transport returning scripted responses.

    Routed responses (matched by URL substring) take priority over the
    ordered queue. When a route or the queue holds a single remaining
    response, that response repeats.
    """

    def __init__(
        self,
        responses: Optional[List[DummyResponse]] = None,
        default: Optional[DummyResponse] = None,
    ):
        """Initialize dummy transport.

        Args:
            responses: Responses returned in call order
            default: Response used once the queue is empty (200, empty body)
        """
        self._queue: Deque[DummyResponse] = deque(responses or [])
        self._routes: List[Tuple[str, Deque[DummyResponse]]] = []
        self._default = default or DummyResponse()
        self._call_log: List[Dict[str, Any]] = []

    def queue(self, *responses: DummyResponse) -> "DummyTransport":
        self._queue.extend(responses)
        return self

    def route(self, url_contains: str, *responses: DummyResponse) -> "DummyTransport":
        """Serve ``responses`` for URLs containing ``url_contains``."""
        self._routes.append((url_contains, deque(responses)))
        return self

    def fail_with(self, error: TransportError) -> "DummyTransport":
        return self.queue(DummyResponse(error=error))

    def _next(self, url: str) -> DummyResponse:
        for fragment, responses in self._routes:
            if fragment in url and responses:
                return responses.popleft() if len(responses) > 1 else responses[0]
        if self._queue:
            return self._queue.popleft() if len(self._queue) > 1 else self._queue[0]
        return self._default

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
        self._call_log.append(
            {
                "method": method,
                "url": url,
                "headers": dict(headers),
                "body": body,
                "timeout": timeout,
            }
        )
        if signal is not None:
            signal.raise_if_cancelled()

        response = self._next(url)
        if response.delay_seconds > 0:
            await asyncio.sleep(response.delay_seconds)
            if signal is not None:
                signal.raise_if_cancelled()

        if response.error is not None:
            raise response.error
        return response.to_response(url)

    # Assertions

    @property
    def calls(self) -> List[Dict[str, Any]]:
        return list(self._call_log)

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    @property
    def last_call(self) -> Optional[Dict[str, Any]]:
        return self._call_log[-1] if self._call_log else None

    def was_called(self, url_contains: str) -> bool:
        return any(url_contains in call["url"] for call in self._call_log)
