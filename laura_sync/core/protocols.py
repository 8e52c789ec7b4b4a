"""Protocol definitions for the transports the client components consume."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class RealtimeMessage:
    """A broadcast event received on the joined channel."""

    event: str
    payload: Mapping[str, Any]


class HttpRequester(Protocol):
    """Send a request, get a response."""

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        """Perform one request.

        Raises:
            TransportError: If the request could not be completed.
            RequestTimeoutError: If the request exceeded ``timeout``.
        """
        ...

    async def close(self) -> None:
        ...


class LiveTransport(Protocol):
    """Bidirectional push channel (open, join, send, receive, close)."""

    @property
    def connected(self) -> bool:
        ...

    async def connect(self) -> None:
        """Open the socket.

        Raises:
            ChannelError: If the connection cannot be established.
        """
        ...

    async def join(self, channel: str) -> None:
        """Subscribe to ``channel`` and wait for the server to accept.

        Raises:
            ChannelError: If the join is refused or times out.
        """
        ...

    async def broadcast(self, channel: str, event: str, payload: Mapping[str, Any]) -> None:
        ...

    async def receive(self, timeout: float) -> Optional[RealtimeMessage]:
        """Wait up to ``timeout`` seconds for the next broadcast.

        Returns ``None`` when nothing arrived in time.

        Raises:
            ChannelError: If the connection was lost.
        """
        ...

    async def close(self) -> None:
        ...


LiveTransportFactory = Callable[[], LiveTransport]
