"""Configuration loader for laura-sync."""

from __future__ import annotations

import dataclasses
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from . import constants
from .core.errors import ConfigError


@dataclass(frozen=True, slots=True)
class CameraConfig:
    camera_id: str = ""
    camera_name: str = constants.DEFAULT_CAMERA_NAME
    durable_id: Optional[str] = None  # Server-assigned id, resolved on first registration when absent
    device_type: str = constants.DEFAULT_DEVICE_TYPE
    firmware_version: str = constants.DEFAULT_FIRMWARE_VERSION
    photo_quality: int = 85
    photo_width: int = 1280
    photo_height: int = 720


@dataclass(frozen=True, slots=True)
class EndpointsConfig:
    api_base_url: str = constants.DEFAULT_API_BASE_URL  # No trailing slash
    storage_base_url: str = ""
    storage_bucket: str = constants.DEFAULT_STORAGE_BUCKET
    realtime_url: str = ""


@dataclass(frozen=True, slots=True)
class CredentialsConfig:
    api_key: str = ""

    def __repr__(self) -> str:
        return f"CredentialsConfig(api_key={mask_secret(self.api_key)!r})"


@dataclass(frozen=True, slots=True)
class CommandConfig:
    command_timeout_seconds: float = 10.0
    subscribe_attempts: int = 3
    poll_interval_seconds: Optional[float] = None  # Defaults to the command timeout
    dedup_capacity: int = 256

    @property
    def effective_poll_interval(self) -> float:
        if self.poll_interval_seconds is not None:
            return self.poll_interval_seconds
        return self.command_timeout_seconds


@dataclass(frozen=True, slots=True)
class HeartbeatConfig:
    status_interval_seconds: float = 30.0


@dataclass(frozen=True, slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 120.0
    reconnect_jitter_ratio: float = 0.5
    resubscribe_interval_seconds: float = 60.0
    realtime_heartbeat_seconds: float = 25.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False
    max_bytes: int = 1_048_576
    backup_count: int = 3


@dataclass(frozen=True, slots=True)
class SyncConfig:
    camera: CameraConfig
    endpoints: EndpointsConfig
    credentials: CredentialsConfig
    commands: CommandConfig
    heartbeat: HeartbeatConfig
    resilience: ResilienceConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_config(path: Optional[Path] = None) -> SyncConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "camera": {
                "camera_id": "",
                "camera_name": constants.DEFAULT_CAMERA_NAME,
                "durable_id": "",
                "device_type": constants.DEFAULT_DEVICE_TYPE,
                "firmware_version": constants.DEFAULT_FIRMWARE_VERSION,
                "photo_quality": "85",
                "photo_width": "1280",
                "photo_height": "720",
            },
            "cloud": {
                "api_base_url": constants.DEFAULT_API_BASE_URL,
                "storage_base_url": "",
                "storage_bucket": constants.DEFAULT_STORAGE_BUCKET,
                "realtime_url": "",
                "api_key": "",
            },
            "commands": {
                "command_timeout_seconds": "10.0",
                "subscribe_attempts": "3",
                "poll_interval_seconds": "",
                "dedup_capacity": "256",
            },
            "heartbeat": {
                "status_interval_seconds": "30.0",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "120.0",
                "reconnect_jitter_ratio": "0.5",
                "resubscribe_interval_seconds": "60.0",
                "realtime_heartbeat_seconds": "25.0",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
                "max_bytes": "1048576",
                "backup_count": "3",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    camera = CameraConfig(
        camera_id=parser.get("camera", "camera_id").strip(),
        camera_name=parser.get("camera", "camera_name").strip(),
        durable_id=_optional(parser.get("camera", "durable_id", fallback=None)),
        device_type=parser.get("camera", "device_type").strip(),
        firmware_version=parser.get("camera", "firmware_version").strip(),
        photo_quality=max(0, min(100, parser.getint("camera", "photo_quality", fallback=85))),
        photo_width=max(1, parser.getint("camera", "photo_width", fallback=1280)),
        photo_height=max(1, parser.getint("camera", "photo_height", fallback=720)),
    )

    endpoints = EndpointsConfig(
        api_base_url=parser.get("cloud", "api_base_url").strip(),
        storage_base_url=parser.get("cloud", "storage_base_url").strip(),
        storage_bucket=parser.get("cloud", "storage_bucket").strip().strip("/"),
        realtime_url=parser.get("cloud", "realtime_url").strip().rstrip("/"),
    )

    credentials = CredentialsConfig(
        api_key=parser.get("cloud", "api_key").strip(),
    )

    command_timeout = max(
        0.5, parser.getfloat("commands", "command_timeout_seconds", fallback=10.0)
    )
    poll_interval_raw = _optional(parser.get("commands", "poll_interval_seconds", fallback=None))
    try:
        poll_interval = max(0.5, float(poll_interval_raw)) if poll_interval_raw else None
    except ValueError:
        poll_interval = None

    commands = CommandConfig(
        command_timeout_seconds=command_timeout,
        subscribe_attempts=max(
            1, parser.getint("commands", "subscribe_attempts", fallback=3)
        ),
        poll_interval_seconds=poll_interval,
        dedup_capacity=max(1, parser.getint("commands", "dedup_capacity", fallback=256)),
    )

    heartbeat = HeartbeatConfig(
        status_interval_seconds=max(
            1.0,
            parser.getfloat("heartbeat", "status_interval_seconds", fallback=30.0),
        ),
    )

    reconnect_initial = max(
        0.1, parser.getfloat("resilience", "reconnect_initial_seconds", fallback=1.0)
    )
    resilience = ResilienceConfig(
        reconnect_initial_seconds=reconnect_initial,
        reconnect_max_seconds=max(
            reconnect_initial,
            parser.getfloat("resilience", "reconnect_max_seconds", fallback=120.0),
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.5),
            ),
        ),
        resubscribe_interval_seconds=max(
            1.0,
            parser.getfloat(
                "resilience", "resubscribe_interval_seconds", fallback=60.0
            ),
        ),
        realtime_heartbeat_seconds=max(
            1.0,
            parser.getfloat("resilience", "realtime_heartbeat_seconds", fallback=25.0),
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ).expanduser(),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
        max_bytes=max(0, parser.getint("logging", "max_bytes", fallback=1_048_576)),
        backup_count=max(0, parser.getint("logging", "backup_count", fallback=3)),
    )

    return SyncConfig(
        camera=camera,
        endpoints=endpoints,
        credentials=credentials,
        commands=commands,
        heartbeat=heartbeat,
        resilience=resilience,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: SyncConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)


def with_durable_id(config: SyncConfig, durable_id: str) -> SyncConfig:
    """Return a copy of ``config`` that carries ``durable_id``."""

    if not config.raw.has_section("camera"):
        config.raw.add_section("camera")
    config.raw.set("camera", "durable_id", durable_id)
    camera = dataclasses.replace(config.camera, durable_id=durable_id)
    return dataclasses.replace(config, camera=camera)


def _is_url(value: str, schemes: tuple[str, ...]) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in schemes and bool(parsed.netloc)


def validate_config(config: SyncConfig) -> List[str]:
    """Return a list of problems preventing the client from starting."""

    problems: List[str] = []
    camera_id = config.camera.camera_id
    if not camera_id:
        problems.append("camera.camera_id is required")
    elif "/" in camera_id or any(char.isspace() for char in camera_id):
        problems.append("camera.camera_id must not contain '/' or whitespace")

    if not config.camera.camera_name:
        problems.append("camera.camera_name is required")

    api_base_url = config.endpoints.api_base_url
    if not api_base_url:
        problems.append("cloud.api_base_url is required")
    elif api_base_url.endswith("/"):
        problems.append("cloud.api_base_url must not end with a trailing slash")
    elif not _is_url(api_base_url, ("http", "https")):
        problems.append("cloud.api_base_url must be an http(s) URL")

    storage_base_url = config.endpoints.storage_base_url
    if not storage_base_url:
        problems.append("cloud.storage_base_url is required")
    elif storage_base_url.endswith("/"):
        problems.append("cloud.storage_base_url must not end with a trailing slash")
    elif not _is_url(storage_base_url, ("http", "https")):
        problems.append("cloud.storage_base_url must be an http(s) URL")

    if not config.endpoints.storage_bucket:
        problems.append("cloud.storage_bucket is required")

    realtime_url = config.endpoints.realtime_url
    if not realtime_url:
        problems.append("cloud.realtime_url is required")
    elif not _is_url(realtime_url, ("ws", "wss")):
        problems.append("cloud.realtime_url must be a ws(s) URL")

    if not config.credentials.api_key:
        problems.append("cloud.api_key is required")

    return problems


def is_configured(config: SyncConfig) -> bool:
    return not validate_config(config)


def require_configured(config: SyncConfig) -> None:
    """Raise :class:`ConfigError` if the configuration cannot be used."""

    problems = validate_config(config)
    if problems:
        raise ConfigError(problems)
