"""Error taxonomy shared by the synchronization client components."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import PhotoReport, StoredPhoto


class SyncError(RuntimeError):
    """Base class for all client errors."""


class ConfigError(SyncError):
    """Raised when a required option is missing or malformed."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class IdentityError(SyncError):
    """Raised when the durable camera id cannot be resolved."""


class ChannelError(SyncError):
    """Raised by the live channel transport on subscribe failure or disconnect.

    ``terminal`` marks failures that retrying will not fix (rejected
    credentials, unknown endpoint, join refused by the server).
    """

    def __init__(self, message: str, *, terminal: bool = False) -> None:
        super().__init__(message)
        self.terminal = terminal


class TransportError(SyncError):
    """Raised when an HTTP request cannot be completed."""


class RequestTimeoutError(TransportError):
    """Raised when a single request exceeds its timeout."""


class UploadError(SyncError):
    """Base class for upload pipeline failures."""


class StorageFailedError(UploadError):
    """The photo bytes could not be written to object storage."""


class NotifyFailedError(UploadError):
    """The photo was stored but metadata registration failed.

    ``stored`` describes the object already in storage and ``report`` the
    registration that was attempted, so the caller can retry only the
    registration step with the same command id, thumbnail and metadata.
    """

    def __init__(self, message: str, *, stored: StoredPhoto, report: PhotoReport) -> None:
        super().__init__(message)
        self.stored = stored
        self.report = report

    @property
    def storage_url(self) -> str:
        return self.stored.storage_url
