"""Realtime channel adapter speaking the Phoenix socket protocol over aiohttp.

The Laura cloud pushes commands through Supabase Realtime broadcast channels.
Frames are JSON objects ``{topic, event, payload, ref}``; a channel is joined
with ``phx_join`` on topic ``realtime:<channel>`` and the socket is kept alive
with ``heartbeat`` frames on the ``phoenix`` topic.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from typing import Any, Deque, Mapping, Optional

import aiohttp

from ..core.errors import ChannelError
from ..core.protocols import RealtimeMessage

LOGGER = logging.getLogger(__name__)

TERMINAL_HANDSHAKE_STATUSES = frozenset({401, 403, 404})


def _topic(channel: str) -> str:
    return f"realtime:{channel}"


class RealtimeSocket:
    """Single-channel Phoenix socket client.

    Only one coroutine may call :meth:`receive` at a time; :meth:`broadcast`
    may be called concurrently from other tasks over the same connection.
    """

    def __init__(
        self,
        url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        heartbeat_interval: float = 25.0,
        connect_timeout: float = 10.0,
        join_timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._session = session
        self._owns_session = session is None
        self._heartbeat_interval = heartbeat_interval
        self._connect_timeout = connect_timeout
        self._join_timeout = join_timeout

        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._ref = 0
        self._join_ref: Optional[str] = None
        self._topic: Optional[str] = None
        self._buffer: Deque[RealtimeMessage] = deque()
        self._last_heartbeat = 0.0

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def joined(self) -> bool:
        return self.connected and self._join_ref is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        if self.connected:
            return

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None)
            )
            self._owns_session = True

        try:
            async with asyncio.timeout(self._connect_timeout):
                self._ws = await self._session.ws_connect(self._url, autoping=True)
        except aiohttp.WSServerHandshakeError as exc:
            raise ChannelError(
                f"Realtime handshake rejected with status {exc.status}",
                terminal=exc.status in TERMINAL_HANDSHAKE_STATUSES,
            ) from exc
        except asyncio.TimeoutError as exc:
            raise ChannelError("Timed out connecting to realtime socket") from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise ChannelError(f"Realtime connection failed: {exc}") from exc

        self._join_ref = None
        self._topic = None
        self._buffer.clear()
        self._last_heartbeat = asyncio.get_running_loop().time()
        LOGGER.info("Connected to realtime socket")

    async def join(self, channel: str) -> None:
        ws = self._require_ws()
        topic = _topic(channel)
        ref = self._next_ref()
        await self._send(
            {
                "topic": topic,
                "event": "phx_join",
                "payload": {
                    "config": {
                        "broadcast": {"self": False, "ack": False},
                        "presence": {"key": ""},
                    }
                },
                "ref": ref,
                "join_ref": ref,
            }
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._join_timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ChannelError(f"Timed out joining channel {channel}")
            try:
                message = await ws.receive(timeout=remaining)
            except asyncio.TimeoutError as exc:
                raise ChannelError(f"Timed out joining channel {channel}") from exc

            frame = self._decode(message)
            if frame is None:
                continue
            if frame.get("event") == "phx_reply" and frame.get("ref") == ref:
                status = (frame.get("payload") or {}).get("status")
                if status != "ok":
                    response = (frame.get("payload") or {}).get("response")
                    raise ChannelError(
                        f"Join of channel {channel} refused: {response!r}",
                        terminal=True,
                    )
                self._join_ref = ref
                self._topic = topic
                LOGGER.info("Joined realtime channel %s", channel)
                return
            self._buffer_broadcast(frame, topic)

    async def broadcast(
        self, channel: str, event: str, payload: Mapping[str, Any]
    ) -> None:
        if not self.joined:
            raise ChannelError("Realtime channel is not joined")
        await self._send(
            {
                "topic": _topic(channel),
                "event": "broadcast",
                "payload": {"type": "broadcast", "event": event, "payload": dict(payload)},
                "ref": self._next_ref(),
                "join_ref": self._join_ref,
            }
        )

    async def receive(self, timeout: float) -> Optional[RealtimeMessage]:
        if self._buffer:
            return self._buffer.popleft()

        ws = self._require_ws()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            now = loop.time()
            if now - self._last_heartbeat >= self._heartbeat_interval:
                await self._send_heartbeat()

            remaining = deadline - now
            if remaining <= 0:
                return None
            wait_for = min(
                remaining,
                max(0.0, self._last_heartbeat + self._heartbeat_interval - now),
            )
            try:
                message = await ws.receive(timeout=wait_for or remaining)
            except asyncio.TimeoutError:
                continue

            frame = self._decode(message)
            if frame is None:
                continue
            if self._topic and frame.get("topic") == self._topic:
                event = frame.get("event")
                if event in ("phx_error", "phx_close"):
                    self._join_ref = None
                    raise ChannelError(f"Server closed channel ({event})")
            self._buffer_broadcast(frame, self._topic)
            if self._buffer:
                return self._buffer.popleft()

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        self._join_ref = None
        self._topic = None
        self._buffer.clear()
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_ws(self) -> aiohttp.ClientWebSocketResponse:
        if self._ws is None or self._ws.closed:
            raise ChannelError("Realtime socket is not connected")
        return self._ws

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    async def _send(self, frame: Mapping[str, Any]) -> None:
        ws = self._require_ws()
        try:
            await ws.send_str(json.dumps(frame))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise ChannelError(f"Realtime send failed: {exc}") from exc

    async def _send_heartbeat(self) -> None:
        self._last_heartbeat = asyncio.get_running_loop().time()
        await self._send(
            {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}
        )

    def _decode(self, message: aiohttp.WSMessage) -> Optional[dict[str, Any]]:
        if message.type == aiohttp.WSMsgType.TEXT:
            try:
                frame = json.loads(message.data)
            except json.JSONDecodeError:
                LOGGER.debug("Discarding non-JSON realtime frame")
                return None
            return frame if isinstance(frame, dict) else None
        if message.type in (
            aiohttp.WSMsgType.CLOSE,
            aiohttp.WSMsgType.CLOSING,
            aiohttp.WSMsgType.CLOSED,
        ):
            self._join_ref = None
            raise ChannelError("Realtime socket closed by server")
        if message.type == aiohttp.WSMsgType.ERROR:
            self._join_ref = None
            ws = self._ws
            exc = ws.exception() if ws is not None else None
            raise ChannelError(f"Realtime socket error: {exc}")
        return None

    def _buffer_broadcast(self, frame: Mapping[str, Any], topic: Optional[str]) -> None:
        if frame.get("event") != "broadcast" or frame.get("topic") != topic:
            return
        envelope = frame.get("payload")
        if not isinstance(envelope, Mapping):
            return
        event = envelope.get("event")
        payload = envelope.get("payload")
        if not isinstance(event, str) or not isinstance(payload, Mapping):
            return
        self._buffer.append(RealtimeMessage(event=event, payload=payload))
