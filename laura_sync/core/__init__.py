"""Core primitives for laura-sync."""

from .dedup import CommandDedupWindow
from .errors import (
    ChannelError,
    ConfigError,
    IdentityError,
    NotifyFailedError,
    RequestTimeoutError,
    StorageFailedError,
    SyncError,
    TransportError,
    UploadError,
)
from .models import (
    CameraState,
    ChannelState,
    Command,
    CommandKind,
    DeviceIdentity,
    GeoLocation,
    PhotoReport,
    StatusReport,
    StoredPhoto,
)
from .protocols import HttpRequester, HttpResponse, LiveTransport, RealtimeMessage

__all__ = [
    "CameraState",
    "ChannelError",
    "ChannelState",
    "Command",
    "CommandDedupWindow",
    "CommandKind",
    "ConfigError",
    "DeviceIdentity",
    "GeoLocation",
    "HttpRequester",
    "HttpResponse",
    "IdentityError",
    "LiveTransport",
    "NotifyFailedError",
    "PhotoReport",
    "RealtimeMessage",
    "RequestTimeoutError",
    "StatusReport",
    "StorageFailedError",
    "StoredPhoto",
    "SyncError",
    "TransportError",
    "UploadError",
]
