"""Health reporting for the sync client.

Components report into a :class:`HealthReporter`; the optional
:class:`HealthServer` exposes the aggregate at ``/healthz`` so a supervisor
(systemd watchdog, container probe) can tell a degraded camera from a
healthy one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from aiohttp import web

from .core.models import utcnow

LOGGER = logging.getLogger(__name__)

COMPONENT_IDENTITY = "identity"
COMPONENT_CHANNEL = "channel"
COMPONENT_HEARTBEAT = "heartbeat"
COMPONENT_UPLOADS = "uploads"


@dataclass(slots=True)
class ComponentHealth:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Latest health per component plus the client lifecycle state."""

    def __init__(self) -> None:
        self._components: Dict[str, ComponentHealth] = {}
        self._client_state: Optional[ComponentHealth] = None
        self._lock = asyncio.Lock()

    async def update(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        async with self._lock:
            self._components[name] = ComponentHealth(name=name, healthy=healthy, detail=detail)

    async def set_client_state(self, state: str, *, healthy: bool) -> None:
        async with self._lock:
            self._client_state = ComponentHealth(name="client", healthy=healthy, detail=state)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components: List[ComponentHealth] = sorted(
                self._components.values(), key=lambda item: item.name
            )
            client_state = self._client_state

        healthy = all(item.healthy for item in components)
        if client_state is not None and not client_state.healthy:
            healthy = False

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": [item.as_dict() for item in components],
        }
        if client_state is not None:
            payload["clientState"] = {
                "state": client_state.detail,
                "healthy": client_state.healthy,
                "updatedAt": client_state.updated_at.isoformat(timespec="seconds"),
            }
        return payload


class HealthServer:
    """Serves ``GET /healthz``: 200 when healthy, 503 when degraded."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        self._runner = runner
        LOGGER.info("Health endpoint listening on http://%s:%s/healthz", self._host, self._port)

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is not None:
            await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
