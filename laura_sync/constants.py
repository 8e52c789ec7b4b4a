"""Constants used across the laura-sync package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "laura-sync"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".laura" / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = Path.home() / ".laura" / "logs" / f"{APP_NAME}.log"

DEFAULT_API_BASE_URL = "https://laura.heysalad.app"
DEFAULT_STORAGE_BUCKET = "camera-photos"

DEFAULT_CAMERA_NAME = "Laura Camera"
DEFAULT_DEVICE_TYPE = "esp32-s3-ai"
DEFAULT_FIRMWARE_VERSION = "1.0.0"

REALTIME_PROTOCOL_VERSION = "1.0.0"
CHANNEL_PREFIX = "camera-"
PHOTO_CONTENT_TYPE = "image/jpeg"
