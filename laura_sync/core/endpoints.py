"""Endpoint builders for the Laura API, object storage and the realtime socket.

All helpers are pure: every value they need, the durable camera id included,
is passed in explicitly.
"""

from __future__ import annotations

from typing import Dict, Optional
from urllib.parse import quote, urlencode

from .. import constants
from .errors import IdentityError


def _require_durable_id(durable_id: Optional[str]) -> str:
    if not durable_id:
        raise IdentityError("Camera is not registered; durable id unavailable")
    return durable_id


def registration_url(api_base_url: str) -> str:
    return f"{api_base_url}/api/cameras"


def photos_url(api_base_url: str, durable_id: Optional[str]) -> str:
    camera = quote(_require_durable_id(durable_id), safe="")
    return f"{api_base_url}/api/cameras/{camera}/photos"


def command_history_url(api_base_url: str, durable_id: Optional[str]) -> str:
    camera = quote(_require_durable_id(durable_id), safe="")
    return f"{api_base_url}/api/cameras/{camera}/command"


def command_ack_url(api_base_url: str, durable_id: Optional[str], record_id: str) -> str:
    camera = quote(_require_durable_id(durable_id), safe="")
    return f"{api_base_url}/api/cameras/{camera}/commands/{quote(record_id, safe='')}"


def status_url(api_base_url: str, durable_id: Optional[str]) -> str:
    camera = quote(_require_durable_id(durable_id), safe="")
    return f"{api_base_url}/api/cameras/{camera}/status"


def storage_path(short_id: str, timestamp_ms: int) -> str:
    return f"{short_id}/{timestamp_ms}.jpg"


def storage_upload_url(storage_base_url: str, bucket: str, path: str) -> str:
    return f"{storage_base_url}/{bucket}/{quote(path, safe='/')}"


def public_storage_url(storage_base_url: str, bucket: str, path: str) -> str:
    return f"{storage_base_url}/public/{bucket}/{quote(path, safe='/')}"


def channel_name(short_id: str) -> str:
    return f"{constants.CHANNEL_PREFIX}{short_id}"


def realtime_socket_url(realtime_base_url: str, api_key: str) -> str:
    query = urlencode({"apikey": api_key, "vsn": constants.REALTIME_PROTOCOL_VERSION})
    return f"{realtime_base_url}?{query}"


def auth_headers(api_key: str) -> Dict[str, str]:
    return {"apikey": api_key, "Authorization": f"Bearer {api_key}"}
