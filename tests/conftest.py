import asyncio
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Optional, Union

import pytest

from laura_sync.config import SyncConfig, load_config
from laura_sync.core.errors import ChannelError
from laura_sync.core.protocols import HttpResponse, RealtimeMessage

API_BASE = "https://laura.test"
STORAGE_BASE = "https://storage.test/storage/v1/object"
REALTIME_URL = "wss://realtime.test/realtime/v1/websocket"


def iso_ago(seconds: float = 0.0) -> str:
    moment = datetime.now(timezone.utc) - timedelta(seconds=seconds)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def json_response(payload: Any, status: int = 200) -> HttpResponse:
    return HttpResponse(status=status, body=json.dumps(payload).encode("utf-8"))


@dataclass
class RecordedRequest:
    method: str
    url: str
    json: Any = None
    data: Optional[bytes] = None
    headers: dict = field(default_factory=dict)


Responder = Union[HttpResponse, Callable[[RecordedRequest], HttpResponse]]


class FakeHttp:
    """In-memory HTTP requester routing on method and URL suffix."""

    def __init__(self) -> None:
        self.requests: list[RecordedRequest] = []
        self._routes: list[tuple[str, str, Responder]] = []
        self.closed = False

    def route(self, method: str, suffix: str, responder: Responder) -> None:
        self._routes.insert(0, (method, suffix, responder))

    def route_json(self, method: str, suffix: str, payload: Any, status: int = 200) -> None:
        self.route(method, suffix, json_response(payload, status))

    def calls(self, method: str, fragment: str) -> list[RecordedRequest]:
        return [
            item
            for item in self.requests
            if item.method == method and fragment in item.url
        ]

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        data: Optional[bytes] = None,
        headers=None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        recorded = RecordedRequest(method, url, json, data, dict(headers or {}))
        self.requests.append(recorded)
        path = url.split("?", 1)[0]
        for route_method, suffix, responder in self._routes:
            if route_method != method:
                continue
            if not (path.endswith(suffix) or (suffix.endswith("*") and suffix[:-1] in path)):
                continue
            if callable(responder):
                return responder(recorded)
            return responder
        return HttpResponse(status=404, body=b"not found")

    async def close(self) -> None:
        self.closed = True


class FakeLive:
    """Scriptable live transport."""

    def __init__(
        self,
        *,
        connect_error: Optional[ChannelError] = None,
        join_error: Optional[ChannelError] = None,
    ) -> None:
        self.connect_error = connect_error
        self.join_error = join_error
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: list[tuple[str, str, dict]] = []
        self.joined_channel: Optional[str] = None
        self.closed = False
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True

    async def join(self, channel: str) -> None:
        if self.join_error is not None:
            raise self.join_error
        self.joined_channel = channel

    async def broadcast(self, channel: str, event: str, payload) -> None:
        if not self._connected:
            raise ChannelError("not connected")
        self.sent.append((channel, event, dict(payload)))

    async def receive(self, timeout: float) -> Optional[RealtimeMessage]:
        try:
            item = await asyncio.wait_for(self.inbox.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if isinstance(item, Exception):
            self._connected = False
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self._connected = False

    def push_command(
        self,
        command_id: str,
        command: str = "take_photo",
        payload: Optional[dict] = None,
        *,
        timestamp: Optional[str] = None,
    ) -> None:
        self.inbox.put_nowait(
            RealtimeMessage(
                event="command",
                payload={
                    "command": command,
                    "command_id": command_id,
                    "timestamp": timestamp or iso_ago(),
                    "payload": payload or {},
                },
            )
        )

    def drop(self) -> None:
        self.inbox.put_nowait(ChannelError("connection dropped"))

    def events(self, event: str) -> list[dict]:
        return [payload for _, name, payload in self.sent if name == event]


class FakeLiveFactory:
    """Hands out scripted :class:`FakeLive` transports in order."""

    def __init__(self) -> None:
        self._plan: Deque[FakeLive] = deque()
        self.created: list[FakeLive] = []

    def queue(self, **kwargs: Any) -> FakeLive:
        live = FakeLive(**kwargs)
        self._plan.append(live)
        return live

    def fail(self, count: int = 1, *, terminal: bool = False) -> None:
        for _ in range(count):
            self.queue(connect_error=ChannelError("unreachable", terminal=terminal))

    def __call__(self) -> FakeLive:
        if self._plan:
            live = self._plan.popleft()
        else:
            live = FakeLive(connect_error=ChannelError("no transport scripted"))
        self.created.append(live)
        return live


def _history_record(
    command_id: str,
    *,
    command_type: str = "take_photo",
    status: str = "pending",
    age: float = 0.0,
) -> dict:
    issued = iso_ago(age)
    return {
        "id": command_id,
        "command_type": command_type,
        "command_payload": {},
        "status": status,
        "sent_at": issued,
        "created_at": issued,
    }


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def live_factory() -> FakeLiveFactory:
    return FakeLiveFactory()


@pytest.fixture
def history_record() -> Callable[..., dict]:
    return _history_record


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[..., SyncConfig]:
    """Write a complete configuration file, applying per-option overrides."""

    def factory(**overrides: dict) -> SyncConfig:
        sections: dict[str, dict[str, str]] = {
            "camera": {"camera_id": "CAM001", "camera_name": "Kitchen"},
            "cloud": {
                "api_base_url": API_BASE,
                "storage_base_url": STORAGE_BASE,
                "storage_bucket": "camera-photos",
                "realtime_url": REALTIME_URL,
                "api_key": "anon-key-0123456789",
            },
            "commands": {
                "command_timeout_seconds": "0.5",
                "poll_interval_seconds": "0.5",
            },
            "resilience": {
                "reconnect_initial_seconds": "0.1",
                "reconnect_max_seconds": "0.1",
                "reconnect_jitter_ratio": "0",
            },
            "logging": {"path": str(tmp_path / "laura-sync.log")},
        }
        for section, values in overrides.items():
            sections.setdefault(section, {}).update(values)

        lines: list[str] = []
        for section, values in sections.items():
            lines.append(f"[{section}]")
            lines.extend(f"{key} = {value}" for key, value in values.items())
            lines.append("")

        path = tmp_path / "laura-sync.cfg"
        path.write_text("\n".join(lines), encoding="utf-8")
        return load_config(path)

    return factory
