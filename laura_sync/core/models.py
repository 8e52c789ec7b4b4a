"""Domain models for identity, commands and reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CommandKind(str, Enum):
    """Commands the cloud can issue to a camera.

    Values are the wire names used by the Laura API.
    """

    CAPTURE_PHOTO = "take_photo"
    START_VIDEO = "start_video"
    STOP_VIDEO = "stop_video"
    GET_STATUS = "get_status"
    REBOOT = "reboot"
    UPDATE_SETTINGS = "update_settings"
    LED_ON = "led_on"
    LED_OFF = "led_off"
    TOGGLE_LED = "toggle_led"
    PLAY_SOUND = "play_sound"
    SAVE_PHOTO = "save_photo"

    @classmethod
    def parse(cls, value: Any) -> Optional["CommandKind"]:
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        if normalized == "capture_photo":
            return cls.CAPTURE_PHOTO
        try:
            return cls(normalized)
        except ValueError:
            return None


class CameraState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"
    ERROR = "error"


class ChannelState(str, Enum):
    """Lifecycle of the command channel."""

    UNCONFIGURED = "unconfigured"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    DEGRADED_POLLING = "degraded_polling"
    CLOSED = "closed"


TERMINAL_COMMAND_STATUSES = frozenset({"completed", "failed", "timeout"})
ACK_COMMAND_STATUSES = frozenset({"completed", "failed"})


@dataclass(slots=True)
class DeviceIdentity:
    short_id: str
    durable_id: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return bool(self.durable_id)


@dataclass(frozen=True, slots=True)
class Command:
    command_id: str
    kind: CommandKind
    issued_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)
    # History row id; acknowledgements are keyed on it.
    record_id: Optional[str] = None

    @classmethod
    def from_broadcast(cls, message: Mapping[str, Any]) -> Optional["Command"]:
        """Build a command from a live ``command`` broadcast payload.

        Returns ``None`` when the message lacks an id or names an unknown kind.
        """

        command_id = message.get("command_id")
        kind = CommandKind.parse(message.get("command"))
        if not command_id or kind is None:
            return None
        payload = message.get("payload")
        return cls(
            command_id=str(command_id),
            kind=kind,
            issued_at=_parse_timestamp(message.get("timestamp")) or utcnow(),
            payload=dict(payload) if isinstance(payload, Mapping) else {},
        )

    @classmethod
    def from_history(cls, record: Mapping[str, Any]) -> Optional["Command"]:
        """Build a command from a command-history record."""

        command_id = record.get("command_id") or record.get("id")
        kind = CommandKind.parse(record.get("command_type") or record.get("command"))
        if not command_id or kind is None:
            return None
        payload = record.get("command_payload", record.get("payload"))
        issued_at = (
            _parse_timestamp(record.get("sent_at"))
            or _parse_timestamp(record.get("created_at"))
            or utcnow()
        )
        return cls(
            command_id=str(command_id),
            kind=kind,
            issued_at=issued_at,
            payload=dict(payload) if isinstance(payload, Mapping) else {},
            record_id=str(record["id"]) if record.get("id") else None,
        )


@dataclass(frozen=True, slots=True)
class StoredPhoto:
    """An object already written to storage, awaiting registration."""

    storage_url: str
    storage_path: str
    size_bytes: int
    stored_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class PhotoReport:
    storage_url: str
    size_bytes: int
    command_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_notify_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"photo_url": self.storage_url}
        if self.thumbnail_url:
            payload["thumbnail_url"] = self.thumbnail_url
        if self.command_id:
            payload["command_id"] = self.command_id
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    def to_broadcast(self) -> Dict[str, Any]:
        return {
            "type": "photo",
            "command_id": self.command_id,
            "timestamp": _isoformat(self.created_at),
            "data": {
                "photo_url": self.storage_url,
                "thumbnail_url": self.thumbnail_url,
                "size_kb": round(self.size_bytes / 1024),
                "metadata": dict(self.metadata),
            },
        }


@dataclass(frozen=True, slots=True)
class GeoLocation:
    lat: float
    lon: float


@dataclass(frozen=True, slots=True)
class StatusReport:
    battery_percent: int
    wifi_signal: int
    state: CameraState
    free_memory_bytes: int
    location: Optional[GeoLocation] = None
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not 0 <= self.battery_percent <= 100:
            raise ValueError(
                f"battery_percent must be within 0-100, got {self.battery_percent}"
            )
        if self.wifi_signal > 0:
            raise ValueError(f"wifi_signal is in dBm and must be <= 0, got {self.wifi_signal}")
        if self.free_memory_bytes < 0:
            raise ValueError("free_memory_bytes cannot be negative")

    def to_broadcast(self, camera_id: str) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "battery_level": self.battery_percent,
            "wifi_signal": self.wifi_signal,
            "status": self.state.value,
            "free_heap": self.free_memory_bytes,
        }
        if self.location is not None:
            data["location"] = {"lat": self.location.lat, "lon": self.location.lon}
        return {
            "type": "status",
            "camera_id": camera_id,
            "timestamp": _isoformat(self.timestamp),
            "data": data,
        }

    def to_status_payload(self, *, firmware_version: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.state.value,
            "battery_level": self.battery_percent,
            "wifi_signal": self.wifi_signal,
            "metadata": {
                "free_heap": self.free_memory_bytes,
                "reported_at": _isoformat(self.timestamp),
            },
        }
        if self.location is not None:
            payload["location_lat"] = self.location.lat
            payload["location_lon"] = self.location.lon
        if firmware_version:
            payload["firmware_version"] = firmware_version
        return payload
