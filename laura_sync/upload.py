"""Photo upload pipeline: object storage write, then metadata registration.

The two steps fail independently. A storage failure means nothing exists
remotely and nothing is registered. A registration failure leaves the object
in storage; the raised :class:`NotifyFailedError` carries it so the caller can
retry just the registration instead of uploading the bytes again.

The pipeline does not retry on its own; attempt counts and backoff belong to
the caller.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Optional

from . import constants
from .core import endpoints
from .core.errors import IdentityError, NotifyFailedError, StorageFailedError, TransportError
from .core.models import PhotoReport, StoredPhoto
from .core.protocols import HttpRequester

LOGGER = logging.getLogger(__name__)

DurableIdProvider = Callable[[], Optional[str]]


class StoragePathAllocator:
    """Hands out ``{short_id}/{ms_timestamp}.jpg`` paths.

    Timestamps never repeat within one allocator even if the wall clock stalls
    or steps backwards. Two devices sharing a short id can still collide.
    """

    def __init__(self, short_id: str, *, clock: Callable[[], float] = time.time) -> None:
        self._short_id = short_id
        self._clock = clock
        self._last_ms = 0

    def next_path(self) -> str:
        now_ms = int(self._clock() * 1000)
        if now_ms <= self._last_ms:
            now_ms = self._last_ms + 1
        self._last_ms = now_ms
        return endpoints.storage_path(self._short_id, now_ms)


class UploadPipeline:
    def __init__(
        self,
        http: HttpRequester,
        *,
        short_id: str,
        durable_id: DurableIdProvider,
        api_base_url: str,
        storage_base_url: str,
        storage_bucket: str,
        api_key: str,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._short_id = short_id
        self._durable_id = durable_id
        self._api_base_url = api_base_url
        self._storage_base_url = storage_base_url
        self._storage_bucket = storage_bucket
        self._api_key = api_key
        self._timeout = timeout
        self._paths = StoragePathAllocator(short_id, clock=clock)

    async def capture_and_upload(
        self,
        photo_bytes: bytes,
        related_command_id: Optional[str] = None,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        thumbnail_url: Optional[str] = None,
    ) -> PhotoReport:
        """Store ``photo_bytes`` and register the photo with the Laura API.

        Raises:
            IdentityError: If the camera is not registered; nothing is stored.
            StorageFailedError: If the storage write failed; no registration
                was attempted.
            NotifyFailedError: If registration failed after a successful write.
        """

        if not self._durable_id():
            raise IdentityError("Cannot upload photo before the camera is registered")

        stored = await self.store(photo_bytes)
        return await self.notify(
            stored,
            command_id=related_command_id,
            metadata=metadata,
            thumbnail_url=thumbnail_url,
        )

    async def store(self, photo_bytes: bytes) -> StoredPhoto:
        if not photo_bytes:
            raise ValueError("Photo payload is empty")

        path = self._paths.next_path()
        url = endpoints.storage_upload_url(self._storage_base_url, self._storage_bucket, path)
        headers = endpoints.auth_headers(self._api_key)
        headers["Content-Type"] = constants.PHOTO_CONTENT_TYPE

        LOGGER.debug("Uploading %d bytes to storage path %s", len(photo_bytes), path)
        try:
            response = await self._http.request(
                "POST", url, data=bytes(photo_bytes), headers=headers, timeout=self._timeout
            )
        except TransportError as exc:
            raise StorageFailedError(f"Storage upload failed: {exc}") from exc

        if not response.ok:
            raise StorageFailedError(
                f"Storage upload rejected with status {response.status}: "
                f"{response.text().strip()[:200]}"
            )

        stored = StoredPhoto(
            storage_url=endpoints.public_storage_url(
                self._storage_base_url, self._storage_bucket, path
            ),
            storage_path=path,
            size_bytes=len(photo_bytes),
        )
        LOGGER.info("Photo stored at %s (%d bytes)", stored.storage_url, stored.size_bytes)
        return stored

    async def notify(
        self,
        stored: StoredPhoto,
        *,
        command_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        thumbnail_url: Optional[str] = None,
    ) -> PhotoReport:
        """Register an already stored photo. Safe to call again after a failure."""

        url = endpoints.photos_url(self._api_base_url, self._durable_id())
        report = PhotoReport(
            storage_url=stored.storage_url,
            size_bytes=stored.size_bytes,
            command_id=command_id,
            thumbnail_url=thumbnail_url,
            metadata=dict(metadata or {}),
        )
        headers = endpoints.auth_headers(self._api_key)

        try:
            response = await self._http.request(
                "POST",
                url,
                json=report.to_notify_payload(),
                headers=headers,
                timeout=self._timeout,
            )
        except TransportError as exc:
            raise NotifyFailedError(
                f"Photo registration failed: {exc}", stored=stored, report=report
            ) from exc

        if not response.ok:
            raise NotifyFailedError(
                f"Photo registration rejected with status {response.status}: "
                f"{response.text().strip()[:200]}",
                stored=stored,
                report=report,
            )

        LOGGER.info(
            "Photo %s registered%s",
            stored.storage_path,
            f" for command {command_id}" if command_id else "",
        )
        return report
