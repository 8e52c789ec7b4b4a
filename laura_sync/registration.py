"""One-shot camera registration workflow used by ``laura-sync register``."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .adapters import HttpTransport
from .config import SyncConfig, require_configured, save_config, with_durable_id
from .core.protocols import HttpRequester
from .identity import IdentityResolver

LOGGER = logging.getLogger(__name__)


async def register_camera(config: SyncConfig, *, http: Optional[HttpRequester] = None) -> str:
    """Register the configured camera and return its durable id.

    Raises:
        ConfigError: If the configuration is incomplete.
        IdentityError: If the Laura API rejects or fails the registration.
    """

    require_configured(config)
    owns_http = http is None
    transport: HttpRequester = http or HttpTransport(
        timeout=config.commands.command_timeout_seconds
    )
    resolver = IdentityResolver(
        transport,
        api_base_url=config.endpoints.api_base_url,
        api_key=config.credentials.api_key,
        camera_name=config.camera.camera_name,
        device_type=config.camera.device_type,
        firmware_version=config.camera.firmware_version,
        timeout=config.commands.command_timeout_seconds,
    )
    try:
        return await resolver.resolve(config.camera.camera_id)
    finally:
        if owns_http:
            await transport.close()


def perform_registration(config: SyncConfig, *, save: bool = False) -> SyncConfig:
    """Register the camera; with ``save`` the durable id is written back to disk."""

    LOGGER.info(
        "Registering camera %s with %s",
        config.camera.camera_id,
        config.endpoints.api_base_url,
    )
    durable_id = asyncio.run(register_camera(config))
    updated = with_durable_id(config, durable_id)

    if save:
        save_config(updated)
        LOGGER.info("Saved durable id %s to %s", durable_id, updated.path)
    return updated
