"""Camera sync client: the façade device firmware talks to."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from .adapters import HttpTransport, RealtimeSocket
from .channel import CommandChannel
from .config import SyncConfig, load_config, validate_config
from .connection import BackoffPolicy, wait_or_stop
from .core import endpoints
from .core.errors import (
    ConfigError,
    IdentityError,
    NotifyFailedError,
    TransportError,
    UploadError,
)
from .core.models import CameraState, ChannelState, Command, PhotoReport, StatusReport
from .core.protocols import HttpRequester, LiveTransport, LiveTransportFactory
from .health import (
    COMPONENT_CHANNEL,
    COMPONENT_HEARTBEAT,
    COMPONENT_IDENTITY,
    COMPONENT_UPLOADS,
    HealthReporter,
    HealthServer,
)
from .heartbeat import HeartbeatScheduler, StatusProvider, default_status_provider
from .identity import IdentityResolver
from .logging import configure_logging
from .upload import UploadPipeline

LOGGER = logging.getLogger(__name__)

CommandHandler = Callable[[Command], Union[Awaitable[None], None]]


class ClientState(str, Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"
    REGISTERING = "registering"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class CameraSyncClient:
    """Keeps one camera in sync with the Laura cloud.

    The client resolves the camera's durable id, keeps a command channel open
    (live subscription, falling back to polling), sends a status heartbeat and
    uploads photos on request. Preconditions are ordered: the client must be
    configured before it can register, and registered before the command
    channel opens.

    Firmware either calls :meth:`run` with a command handler and lets the
    client dispatch commands, or drives it step by step with
    :meth:`ensure_registered` and :meth:`process_pending_commands`.
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        *,
        http: Optional[HttpRequester] = None,
        live_factory: Optional[LiveTransportFactory] = None,
        status_provider: Optional[StatusProvider] = None,
        command_handler: Optional[CommandHandler] = None,
        health: Optional[HealthReporter] = None,
    ) -> None:
        self._owns_http = http is None
        self._http: HttpRequester = http or HttpTransport()
        self._live_factory = live_factory
        self._status_provider: StatusProvider = status_provider or default_status_provider
        self._command_handler = command_handler
        self._health = health or HealthReporter()
        self._health_server: Optional[HealthServer] = None

        self._config: Optional[SyncConfig] = None
        self._resolver: Optional[IdentityResolver] = None
        self._uploads: Optional[UploadPipeline] = None
        self._channel: Optional[CommandChannel] = None
        self._heartbeat: Optional[HeartbeatScheduler] = None
        self._backoff = BackoffPolicy()

        self._state = ClientState.UNCONFIGURED
        self._inbox: asyncio.Queue[Command] = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._inflight: Set[asyncio.Task[PhotoReport]] = set()
        self._stop_event: Optional[asyncio.Event] = None

        if config is not None:
            self.configure(config)

    # ------------------------------------------------------------------
    # Configuration and identity
    # ------------------------------------------------------------------
    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def config(self) -> Optional[SyncConfig]:
        return self._config

    @property
    def health(self) -> HealthReporter:
        return self._health

    @property
    def channel_state(self) -> ChannelState:
        channel = self._channel
        return channel.state if channel is not None else ChannelState.UNCONFIGURED

    @property
    def durable_id(self) -> Optional[str]:
        return self._durable_id()

    def configure(self, config: SyncConfig) -> None:
        """Apply ``config``; builds fresh identity, upload and channel components."""

        if self._stop_event is not None:
            raise RuntimeError("Cannot reconfigure a running client")

        self._config = config
        self._backoff = BackoffPolicy.from_config(config.resilience)
        timeout = config.commands.command_timeout_seconds
        camera = config.camera

        known_ids = {camera.camera_id: camera.durable_id} if camera.durable_id else None
        self._resolver = IdentityResolver(
            self._http,
            api_base_url=config.endpoints.api_base_url,
            api_key=config.credentials.api_key,
            camera_name=camera.camera_name,
            device_type=camera.device_type,
            firmware_version=camera.firmware_version,
            known_ids=known_ids,
            timeout=timeout,
        )
        self._uploads = UploadPipeline(
            self._http,
            short_id=camera.camera_id,
            durable_id=self._durable_id,
            api_base_url=config.endpoints.api_base_url,
            storage_base_url=config.endpoints.storage_base_url,
            storage_bucket=config.endpoints.storage_bucket,
            api_key=config.credentials.api_key,
            timeout=timeout,
        )
        self._channel = None
        self._heartbeat = HeartbeatScheduler(
            self._heartbeat_report,
            self._send_heartbeat,
            interval=config.heartbeat.status_interval_seconds,
            identity_ready=lambda: self._durable_id() is not None,
        )
        self._state = ClientState.CONFIGURED if self.is_configured() else ClientState.UNCONFIGURED
        LOGGER.debug("Client configured from %s (state=%s)", config.path, self._state.value)

    def is_configured(self) -> bool:
        return self._config is not None and not validate_config(self._config)

    def _require_config(self) -> SyncConfig:
        if self._config is None:
            raise ConfigError(["client has not been configured"])
        problems = validate_config(self._config)
        if problems:
            raise ConfigError(problems)
        return self._config

    def _durable_id(self) -> Optional[str]:
        if self._config is None or self._resolver is None:
            return None
        return self._resolver.cached(self._config.camera.camera_id)

    async def ensure_registered(self) -> bool:
        """Resolve the durable id once; True when the camera is registered.

        Raises:
            ConfigError: If the client is not configured.
        """

        config = self._require_config()
        assert self._resolver is not None

        try:
            durable_id = await self._resolver.resolve(config.camera.camera_id)
        except IdentityError as exc:
            LOGGER.warning("Camera registration failed: %s", exc)
            await self._health.update(COMPONENT_IDENTITY, False, str(exc))
            return False

        await self._health.update(COMPONENT_IDENTITY, True, durable_id)
        if self._heartbeat is not None:
            await self._heartbeat.flush()
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @classmethod
    def start(cls, config: Optional[SyncConfig] = None) -> None:
        instance = cls(config or load_config())
        assert instance._config is not None
        logging_config = instance._config.logging
        configure_logging(
            logging_config.level,
            log_path=logging_config.path,
            log_network=logging_config.log_network,
            max_bytes=logging_config.max_bytes,
            backup_count=logging_config.backup_count,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("laura-sync received shutdown signal")

    async def run(self, command_handler: Optional[CommandHandler] = None) -> None:
        """Run until :meth:`stop` is called.

        Raises:
            ConfigError: If the client is not configured.
        """

        config = self._require_config()
        if self._stop_event is not None:
            raise RuntimeError("Client is already running")
        handler = command_handler or self._command_handler
        self._stop_event = asyncio.Event()

        LOGGER.info("laura-sync starting for camera %s", config.camera.camera_id)
        tasks: list[asyncio.Task[None]] = []
        try:
            await self._start_health_server()
            assert self._heartbeat is not None
            self._heartbeat.start()
            await self._health.update(COMPONENT_HEARTBEAT, True, "scheduled")

            if not await self._register_with_retry():
                return

            channel = self._ensure_channel()
            await channel.open()
            await self._transition_state(ClientState.ACTIVE, detail="command channel opened")

            self._pump_task = asyncio.create_task(
                self._pump_commands(channel), name="laura-sync-commands"
            )
            tasks.append(self._pump_task)
            if handler is not None:
                tasks.append(
                    asyncio.create_task(self._dispatch_loop(handler), name="laura-sync-dispatch")
                )
            stop_waiter = asyncio.create_task(self._stop_event.wait())
            tasks.append(stop_waiter)

            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task is not stop_waiter and not task.cancelled() and task.exception():
                    raise task.exception()  # type: ignore[misc]
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._pump_task = None
            await self._shutdown()

    async def stop(self) -> None:
        """Stop a running client, or release resources of an idle one."""

        if self._stop_event is not None:
            self._stop_event.set()
            return
        await self._shutdown()

    async def _register_with_retry(self) -> bool:
        assert self._stop_event is not None
        await self._transition_state(ClientState.REGISTERING, detail="resolving durable id")
        attempt = 0
        while not self._stop_event.is_set():
            if await self.ensure_registered():
                return True
            attempt += 1
            delay = self._backoff.jittered(attempt)
            LOGGER.warning("Retrying camera registration in %.1fs (attempt %d)", delay, attempt)
            if await wait_or_stop(self._stop_event, delay):
                break
        return False

    async def _shutdown(self) -> None:
        await self._transition_state(ClientState.STOPPING, detail="shutdown requested")

        if self._heartbeat is not None:
            await self._heartbeat.stop()
            await self._health.update(COMPONENT_HEARTBEAT, False, "stopped")
        if self._channel is not None:
            await self._channel.close()

        await self._await_inflight_uploads()
        await self._stop_health_server()

        if self._owns_http:
            await self._http.close()

        self._stop_event = None
        await self._transition_state(ClientState.STOPPED, detail="shutdown complete")

    async def _await_inflight_uploads(self) -> None:
        pending = set(self._inflight)
        if not pending:
            return
        timeout = self._config.commands.command_timeout_seconds if self._config else 10.0
        LOGGER.info("Waiting for %d in-flight upload(s) before shutdown", len(pending))
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            LOGGER.warning("Abandoning %d upload(s) still running at shutdown", len(still_pending))
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*still_pending, return_exceptions=True)

    async def _start_health_server(self) -> None:
        config = self._config
        if config is None or not config.resilience.health_enabled:
            return
        server = HealthServer(
            self._health, config.resilience.health_host, config.resilience.health_port
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.warning("Failed to start health endpoint: %s", exc)
            return
        self._health_server = server

    async def _stop_health_server(self) -> None:
        server = self._health_server
        self._health_server = None
        if server is not None:
            await server.stop()

    async def _transition_state(self, state: ClientState, *, detail: Optional[str] = None) -> None:
        previous = self._state
        if state is previous:
            return
        self._state = state
        LOGGER.info(
            "Client state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        await self._health.set_client_state(state.value, healthy=state is ClientState.ACTIVE)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def _ensure_channel(self) -> CommandChannel:
        channel = self._channel
        if channel is not None and channel.state is not ChannelState.CLOSED:
            return channel

        config = self._require_config()
        commands = config.commands
        channel = CommandChannel(
            live_factory=self._live_factory or self._build_live_transport,
            http=self._http,
            short_id=config.camera.camera_id,
            durable_id=self._durable_id,
            api_base_url=config.endpoints.api_base_url,
            api_key=config.credentials.api_key,
            command_timeout=commands.command_timeout_seconds,
            poll_interval=commands.effective_poll_interval,
            subscribe_attempts=commands.subscribe_attempts,
            backoff=self._backoff,
            resubscribe_interval=config.resilience.resubscribe_interval_seconds,
            dedup_capacity=commands.dedup_capacity,
            state_listener=self._on_channel_state,
        )
        self._channel = channel
        return channel

    def _build_live_transport(self) -> LiveTransport:
        config = self._require_config()
        timeout = config.commands.command_timeout_seconds
        return RealtimeSocket(
            endpoints.realtime_socket_url(
                config.endpoints.realtime_url, config.credentials.api_key
            ),
            heartbeat_interval=config.resilience.realtime_heartbeat_seconds,
            connect_timeout=timeout,
            join_timeout=timeout,
        )

    async def _on_channel_state(self, state: ChannelState, detail: Optional[str]) -> None:
        await self._health.update(
            COMPONENT_CHANNEL, state is ChannelState.SUBSCRIBED, detail or state.value
        )
        if self._state not in (ClientState.ACTIVE, ClientState.DEGRADED):
            return
        if state is ChannelState.SUBSCRIBED:
            await self._transition_state(ClientState.ACTIVE, detail="live channel subscribed")
        elif state is ChannelState.DEGRADED_POLLING:
            await self._transition_state(ClientState.DEGRADED, detail="polling for commands")

    async def _pump_commands(self, channel: CommandChannel) -> None:
        async for command in channel.next_commands():
            await self._inbox.put(command)

    async def _dispatch_loop(self, handler: CommandHandler) -> None:
        while True:
            command = await self._inbox.get()
            try:
                await self._dispatch(handler, command)
            finally:
                self._inbox.task_done()

    async def _dispatch(self, handler: CommandHandler, command: Command) -> None:
        LOGGER.debug("Dispatching command %s (%s)", command.command_id, command.kind.value)
        status = "completed"
        outcome: Dict[str, Any] = {}
        try:
            result = handler(command)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            LOGGER.exception("Command handler failed for %s", command.command_id)
            status, outcome = "failed", {"error": str(exc)}

        channel = self._channel
        if channel is not None:
            await channel.acknowledge(command, status, outcome)

    async def process_pending_commands(self, handler: Optional[CommandHandler] = None) -> int:
        """Hand every command available now to ``handler``; returns the count.

        While :meth:`run` is active this drains commands the client already
        received. Otherwise it registers if needed and checks the cloud once.
        """

        handler = handler or self._command_handler
        if handler is None:
            raise ValueError("A command handler is required")

        pending: list[Command] = []
        if self._pump_task is not None:
            while True:
                try:
                    pending.append(self._inbox.get_nowait())
                except asyncio.QueueEmpty:
                    break
                self._inbox.task_done()
        else:
            if not await self.ensure_registered():
                return 0
            channel = self._ensure_channel()
            await channel.open()
            pending = await channel.drain()

        for command in pending:
            await self._dispatch(handler, command)
        return len(pending)

    # ------------------------------------------------------------------
    # Photos
    # ------------------------------------------------------------------
    async def capture_and_upload(
        self,
        photo_bytes: bytes,
        related_command_id: Optional[str] = None,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        thumbnail_url: Optional[str] = None,
    ) -> PhotoReport:
        """Upload a captured photo and register it.

        The upload keeps running if the caller is cancelled; shutdown waits
        for it. Errors are those of :meth:`UploadPipeline.capture_and_upload`.
        """

        self._require_config()
        task = asyncio.create_task(
            self._upload(photo_bytes, related_command_id, metadata, thumbnail_url)
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def retry_notify(
        self,
        error: NotifyFailedError,
        related_command_id: Optional[str] = None,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        thumbnail_url: Optional[str] = None,
    ) -> PhotoReport:
        """Register a photo whose storage write already succeeded.

        Omitted arguments default to those of the failed attempt.
        """

        assert self._uploads is not None
        attempted = error.report
        try:
            report = await self._uploads.notify(
                error.stored,
                command_id=related_command_id or attempted.command_id,
                metadata=(
                    self._photo_metadata(metadata)
                    if metadata is not None
                    else attempted.metadata
                ),
                thumbnail_url=thumbnail_url or attempted.thumbnail_url,
            )
        except UploadError as exc:
            await self._health.update(COMPONENT_UPLOADS, False, str(exc))
            raise
        await self._after_upload(report)
        return report

    async def _upload(
        self,
        photo_bytes: bytes,
        related_command_id: Optional[str],
        metadata: Optional[Mapping[str, Any]],
        thumbnail_url: Optional[str],
    ) -> PhotoReport:
        assert self._uploads is not None
        try:
            report = await self._uploads.capture_and_upload(
                photo_bytes,
                related_command_id,
                metadata=self._photo_metadata(metadata),
                thumbnail_url=thumbnail_url,
            )
        except (UploadError, IdentityError) as exc:
            await self._health.update(COMPONENT_UPLOADS, False, str(exc))
            raise
        await self._after_upload(report)
        return report

    async def _after_upload(self, report: PhotoReport) -> None:
        await self._health.update(COMPONENT_UPLOADS, True, report.storage_url)
        channel = self._channel
        if channel is not None and not await channel.publish("photo", report.to_broadcast()):
            LOGGER.debug("Photo broadcast skipped; live channel not subscribed")

    def _photo_metadata(self, extra: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        if self._config is not None:
            camera = self._config.camera
            metadata["quality"] = camera.photo_quality
            metadata["resolution"] = f"{camera.photo_width}x{camera.photo_height}"
        metadata.update(extra or {})
        return metadata

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    async def send_status(self, report: StatusReport) -> bool:
        """Deliver ``report``; True on success.

        Broadcast on the live channel when subscribed, otherwise POST it to
        the status endpoint. Returns False while the camera is unregistered.
        """

        config = self._require_config()
        durable_id = self._durable_id()
        if not durable_id:
            return False

        channel = self._channel
        if channel is not None and channel.state is ChannelState.SUBSCRIBED:
            if await channel.publish("status", report.to_broadcast(config.camera.camera_id)):
                return True

        payload = report.to_status_payload(firmware_version=config.camera.firmware_version)
        try:
            response = await self._http.request(
                "POST",
                endpoints.status_url(config.endpoints.api_base_url, durable_id),
                json=payload,
                headers=endpoints.auth_headers(config.credentials.api_key),
                timeout=config.commands.command_timeout_seconds,
            )
        except TransportError as exc:
            LOGGER.warning("Status update failed: %s", exc)
            return False

        if not response.ok:
            LOGGER.warning("Status update rejected with status %d", response.status)
            return False
        return True

    async def _heartbeat_report(self) -> StatusReport:
        result = self._status_provider()
        report = await result if asyncio.iscoroutine(result) else result
        if self._durable_id() is None and report.state is not CameraState.ERROR:
            report = dataclasses.replace(report, state=CameraState.ERROR)
        return report

    async def _send_heartbeat(self, report: StatusReport) -> bool:
        delivered = await self.send_status(report)
        await self._health.update(
            COMPONENT_HEARTBEAT, delivered, "delivered" if delivered else "held"
        )
        return delivered

    async def __aenter__(self) -> "CameraSyncClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
