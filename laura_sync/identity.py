"""Camera registration and durable id resolution."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, Optional

from .core import endpoints
from .core.errors import IdentityError, TransportError
from .core.models import DeviceIdentity
from .core.protocols import HttpRequester

LOGGER = logging.getLogger(__name__)


class IdentityResolver:
    """Maps operator-assigned camera ids to server-assigned durable ids.

    A resolved id is cached for the lifetime of the resolver and never
    changes; a new resolver is built when the client is reconfigured.
    """

    def __init__(
        self,
        http: HttpRequester,
        *,
        api_base_url: str,
        api_key: str,
        camera_name: str,
        device_type: Optional[str] = None,
        firmware_version: Optional[str] = None,
        known_ids: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
    ) -> None:
        self._http = http
        self._api_base_url = api_base_url
        self._api_key = api_key
        self._camera_name = camera_name
        self._device_type = device_type
        self._firmware_version = firmware_version
        self._timeout = timeout
        self._cache: Dict[str, str] = {
            short_id: durable_id
            for short_id, durable_id in (known_ids or {}).items()
            if durable_id
        }
        self._locks: Dict[str, asyncio.Lock] = {}
        self.request_count = 0

    def cached(self, short_id: str) -> Optional[str]:
        return self._cache.get(short_id)

    def identity(self, short_id: str) -> DeviceIdentity:
        return DeviceIdentity(short_id=short_id, durable_id=self._cache.get(short_id))

    async def resolve(self, short_id: str) -> str:
        """Return the durable id for ``short_id``, registering the camera if needed.

        Raises:
            IdentityError: If registration fails; nothing is cached so a
                later call retries.
        """

        if not short_id:
            raise IdentityError("Camera id cannot be empty")

        cached = self._cache.get(short_id)
        if cached:
            return cached

        lock = self._locks.setdefault(short_id, asyncio.Lock())
        async with lock:
            cached = self._cache.get(short_id)
            if cached:
                return cached

            durable_id = await self._register(short_id)
            self._cache[short_id] = durable_id
            LOGGER.info("Camera %s registered with durable id %s", short_id, durable_id)
            return durable_id

    async def _register(self, short_id: str) -> str:
        url = endpoints.registration_url(self._api_base_url)
        body: Dict[str, str] = {"camera_id": short_id, "camera_name": self._camera_name}
        if self._device_type:
            body["device_type"] = self._device_type
        if self._firmware_version:
            body["firmware_version"] = self._firmware_version

        headers = endpoints.auth_headers(self._api_key)
        self.request_count += 1
        try:
            response = await self._http.request(
                "POST", url, json=body, headers=headers, timeout=self._timeout
            )
        except TransportError as exc:
            raise IdentityError(f"Registration request failed: {exc}") from exc

        if response.status == 409:
            raise IdentityError(
                f"Registration conflict for camera {short_id}: {response.text().strip()}"
            )
        if response.status not in (200, 201):
            raise IdentityError(
                f"Unexpected response {response.status} from registration: "
                f"{response.text().strip()}"
            )

        try:
            payload = json.loads(response.body)
            durable_id = payload["camera"]["id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise IdentityError("Registration response missing camera.id") from exc

        if not isinstance(durable_id, str) or not durable_id.strip():
            raise IdentityError("Registration response carried an empty camera id")
        return durable_id.strip()
