"""Command channel: live subscription with polling fallback.

Push and poll are modes of a single state machine so that deduplication and
ordering live in one place::

    unconfigured -> connecting -> subscribed
                    connecting -> degraded_polling -> subscribed
    subscribed | degraded_polling -> connecting   (transport disconnect)
    any -> closed                                  (shutdown)

While polling, resubscription runs as a background task on a slower cadence
so the polling schedule is never paused. History records issued before the
channel opened (less the command timeout), or at or before the newest command
already delivered, are skipped: the API only marks a command terminal once it
is acknowledged, and live broadcasts carry a different id than their row.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, List, Mapping, Optional

from .connection import BackoffPolicy, wait_or_stop
from .core import endpoints
from .core.dedup import DEFAULT_DEDUP_CAPACITY, CommandDedupWindow
from .core.errors import ChannelError, IdentityError, TransportError
from .core.models import (
    ACK_COMMAND_STATUSES,
    TERMINAL_COMMAND_STATUSES,
    ChannelState,
    Command,
    utcnow,
)
from .core.protocols import HttpRequester, LiveTransport, LiveTransportFactory

LOGGER = logging.getLogger(__name__)

StateListener = Callable[[ChannelState, Optional[str]], Awaitable[None] | None]


class CommandChannel:
    """Delivers cloud commands to firmware at most once per session."""

    def __init__(
        self,
        *,
        live_factory: LiveTransportFactory,
        http: HttpRequester,
        short_id: str,
        durable_id: Callable[[], Optional[str]],
        api_base_url: str,
        api_key: str,
        command_timeout: float = 10.0,
        poll_interval: Optional[float] = None,
        subscribe_attempts: int = 3,
        backoff: Optional[BackoffPolicy] = None,
        resubscribe_interval: float = 60.0,
        dedup_capacity: int = DEFAULT_DEDUP_CAPACITY,
        state_listener: Optional[StateListener] = None,
    ) -> None:
        self._live_factory = live_factory
        self._http = http
        self._short_id = short_id
        self._durable_id = durable_id
        self._api_base_url = api_base_url
        self._api_key = api_key
        self._command_timeout = command_timeout
        self._poll_interval = poll_interval if poll_interval is not None else command_timeout
        self._subscribe_attempts = max(1, subscribe_attempts)
        self._backoff = backoff or BackoffPolicy()
        self._resubscribe_backoff = BackoffPolicy(
            initial_seconds=resubscribe_interval,
            max_seconds=max(resubscribe_interval, self._backoff.max_seconds),
            jitter_ratio=self._backoff.jitter_ratio,
        )
        self._state_listener = state_listener

        self._channel_name = endpoints.channel_name(short_id)
        self._state = ChannelState.UNCONFIGURED
        self._dedup = CommandDedupWindow(dedup_capacity)
        self._live: Optional[LiveTransport] = None
        self._stop_event = asyncio.Event()
        self._resubscribe_task: Optional[asyncio.Task[LiveTransport]] = None
        self._resubscribe_failures = 0
        self._next_resubscribe_at = 0.0
        self._next_poll_at = 0.0
        # History records issued at or before this instant are never delivered.
        self._delivered_through: Optional[datetime] = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def channel_name(self) -> str:
        return self._channel_name

    def seen(self, command_id: str) -> bool:
        return command_id in self._dedup

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def open(self) -> None:
        """Leave ``unconfigured``; requires a resolved durable id."""

        if self._state is ChannelState.CLOSED:
            raise ChannelError("Command channel has been closed")
        if self._state is not ChannelState.UNCONFIGURED:
            return
        if not self._durable_id():
            raise IdentityError("Command channel requires a registered camera")
        self._delivered_through = utcnow() - timedelta(seconds=self._command_timeout)
        self._stop_event.clear()
        await self._transition(ChannelState.CONNECTING, "channel opened")

    async def next_commands(self) -> AsyncIterator[Command]:
        """Yield new commands in arrival order until the channel is closed."""

        if self._state is ChannelState.UNCONFIGURED:
            raise ChannelError("Command channel has not been opened")

        while self._state is not ChannelState.CLOSED:
            state = self._state
            if state is ChannelState.CONNECTING:
                await self._establish()
                continue

            if state is ChannelState.SUBSCRIBED:
                batch = await self._receive_live()
            else:
                batch = await self._poll_cycle()

            for command in batch:
                yield command

    async def drain(self, timeout: float = 0.1) -> List[Command]:
        """Return commands available right now without waiting on the schedule.

        Not to be mixed with a concurrent :meth:`next_commands` consumer.
        """

        if self._state is ChannelState.CLOSED:
            return []
        if self._state is ChannelState.SUBSCRIBED and self._live is not None:
            commands: List[Command] = []
            while True:
                batch = await self._receive_live(timeout=timeout)
                if not batch:
                    return commands
                commands.extend(batch)
        return await self._poll_history()

    async def publish(self, event: str, payload: Mapping[str, Any]) -> bool:
        """Broadcast on the device channel; False unless currently subscribed."""

        live = self._live
        if self._state is not ChannelState.SUBSCRIBED or live is None:
            return False
        try:
            await live.broadcast(self._channel_name, event, payload)
        except ChannelError as exc:
            LOGGER.warning("Publishing %s event failed: %s", event, exc)
            return False
        return True

    async def acknowledge(
        self,
        command: Command,
        status: str,
        result: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Mark ``command`` as ``completed`` or ``failed`` in the cloud history.

        Acknowledgements are keyed on the history row id, which live
        broadcasts do not carry; such commands are left to the history
        cutoff and False is returned.
        """

        if status not in ACK_COMMAND_STATUSES:
            raise ValueError(f"Unsupported acknowledgement status: {status!r}")
        if not command.record_id:
            LOGGER.debug("Command %s has no history record to acknowledge", command.command_id)
            return False

        try:
            url = endpoints.command_ack_url(
                self._api_base_url, self._durable_id(), command.record_id
            )
        except IdentityError as exc:
            LOGGER.warning("Skipping acknowledgement of %s: %s", command.command_id, exc)
            return False

        try:
            response = await self._http.request(
                "POST",
                url,
                json={"status": status, "result": dict(result or {})},
                headers=endpoints.auth_headers(self._api_key),
                timeout=self._command_timeout,
            )
        except TransportError as exc:
            LOGGER.warning("Acknowledging command %s failed: %s", command.command_id, exc)
            return False

        if not response.ok:
            LOGGER.warning(
                "Acknowledgement of command %s rejected with status %d",
                command.command_id,
                response.status,
            )
            return False

        LOGGER.debug("Command %s acknowledged as %s", command.command_id, status)
        return True

    async def close(self) -> None:
        if self._state is ChannelState.CLOSED:
            return
        await self._transition(ChannelState.CLOSED, "shutdown requested")
        self._stop_event.set()

        task = self._resubscribe_task
        self._resubscribe_task = None
        if task is not None:
            task.cancel()
            (result,) = await asyncio.gather(task, return_exceptions=True)
            if not isinstance(result, BaseException):
                await _close_quietly(result)

        await self._discard_live()

    # ------------------------------------------------------------------
    # State machine internals
    # ------------------------------------------------------------------
    async def _transition(self, state: ChannelState, detail: Optional[str] = None) -> None:
        previous = self._state
        if previous is state:
            return
        if previous is ChannelState.CLOSED:
            return

        self._state = state
        LOGGER.info(
            "Channel state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )

        listener = self._state_listener
        if listener is None:
            return
        try:
            result = listener(state, detail)
            if asyncio.iscoroutine(result):
                await result
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("Channel state listener failed")

    async def _establish(self) -> None:
        for attempt in range(1, self._subscribe_attempts + 1):
            if self._state is not ChannelState.CONNECTING:
                return
            try:
                live = await self._subscribe()
            except ChannelError as exc:
                LOGGER.warning(
                    "Subscribe attempt %d/%d failed: %s",
                    attempt,
                    self._subscribe_attempts,
                    exc,
                )
                if exc.terminal:
                    await self._enter_polling(f"terminal subscribe failure: {exc}")
                    return
                if attempt < self._subscribe_attempts:
                    if await wait_or_stop(self._stop_event, self._backoff.jittered(attempt)):
                        return
                continue

            if self._state is ChannelState.CLOSED:
                await _close_quietly(live)
                return
            self._live = live
            await self._transition(ChannelState.SUBSCRIBED, f"joined {self._channel_name}")
            return

        await self._enter_polling(f"{self._subscribe_attempts} subscribe attempts failed")

    async def _subscribe(self) -> LiveTransport:
        live = self._live_factory()
        try:
            async with asyncio.timeout(self._command_timeout):
                await live.connect()
                await live.join(self._channel_name)
        except asyncio.TimeoutError as exc:
            await _close_quietly(live)
            raise ChannelError(
                f"Subscribe timed out after {self._command_timeout:.1f}s"
            ) from exc
        except BaseException:
            await _close_quietly(live)
            raise
        return live

    async def _enter_polling(self, detail: str) -> None:
        await self._discard_live()
        now = asyncio.get_running_loop().time()
        self._next_poll_at = now
        self._resubscribe_failures = 0
        self._next_resubscribe_at = now + self._resubscribe_backoff.delay(1)
        await self._transition(ChannelState.DEGRADED_POLLING, detail)

    async def _receive_live(self, timeout: Optional[float] = None) -> List[Command]:
        live = self._live
        if live is None:
            await self._transition(ChannelState.CONNECTING, "live transport missing")
            return []

        try:
            message = await live.receive(
                timeout=self._command_timeout if timeout is None else timeout
            )
        except ChannelError as exc:
            if self._state is not ChannelState.CLOSED:
                LOGGER.warning("Live channel disconnected: %s", exc)
            await self._discard_live()
            await self._transition(ChannelState.CONNECTING, "live channel disconnected")
            return []

        if message is None:
            return []
        if message.event != "command":
            LOGGER.debug("Ignoring %s broadcast on %s", message.event, self._channel_name)
            return []

        command = Command.from_broadcast(message.payload)
        if command is None:
            LOGGER.warning("Discarding malformed or unknown command broadcast")
            return []
        return self._accept([command], source="live")

    async def _poll_cycle(self) -> List[Command]:
        loop = asyncio.get_running_loop()
        if await wait_or_stop(self._stop_event, self._next_poll_at - loop.time()):
            return []

        recovered = self._collect_resubscribe()
        commands = await self._poll_history()
        self._next_poll_at = loop.time() + self._poll_interval

        if recovered is not None:
            if self._state is not ChannelState.DEGRADED_POLLING:
                await _close_quietly(recovered)
                return commands
            self._live = recovered
            await self._transition(ChannelState.SUBSCRIBED, "live channel recovered")
        else:
            self._maybe_start_resubscribe()
        return commands

    def _collect_resubscribe(self) -> Optional[LiveTransport]:
        task = self._resubscribe_task
        if task is None or not task.done():
            return None
        self._resubscribe_task = None
        if task.cancelled():
            return None

        exc = task.exception()
        if exc is None:
            self._resubscribe_failures = 0
            return task.result()

        self._resubscribe_failures += 1
        delay = self._resubscribe_backoff.jittered(self._resubscribe_failures + 1)
        self._next_resubscribe_at = asyncio.get_running_loop().time() + delay
        LOGGER.info("Resubscribe failed (%s); next attempt in %.1fs", exc, delay)
        return None

    def _maybe_start_resubscribe(self) -> None:
        if self._resubscribe_task is not None:
            return
        if asyncio.get_running_loop().time() < self._next_resubscribe_at:
            return
        LOGGER.debug("Attempting to resubscribe to %s while polling", self._channel_name)
        self._resubscribe_task = asyncio.create_task(self._subscribe())

    async def _poll_history(self) -> List[Command]:
        try:
            url = endpoints.command_history_url(self._api_base_url, self._durable_id())
        except IdentityError as exc:
            LOGGER.warning("Skipping command poll: %s", exc)
            return []

        try:
            response = await self._http.request(
                "GET",
                url,
                headers=endpoints.auth_headers(self._api_key),
                timeout=self._command_timeout,
            )
        except TransportError as exc:
            LOGGER.warning("Command poll failed: %s", exc)
            return []

        if not response.ok:
            LOGGER.warning("Command poll returned status %d", response.status)
            return []

        try:
            payload = json.loads(response.body)
        except ValueError:
            LOGGER.warning("Command poll returned a non-JSON body")
            return []

        records = payload.get("commands") if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            return []

        cutoff = self._delivered_through
        commands: List[Command] = []
        # History is returned newest first.
        for record in reversed(records):
            if not isinstance(record, Mapping):
                continue
            status = record.get("status")
            if isinstance(status, str) and status.lower() in TERMINAL_COMMAND_STATUSES:
                continue
            command = Command.from_history(record)
            if command is None:
                continue
            if cutoff is not None and command.issued_at <= cutoff:
                LOGGER.debug(
                    "Skipping command %s issued at %s; already delivered or expired",
                    command.command_id,
                    command.issued_at.isoformat(),
                )
                continue
            commands.append(command)
        commands.sort(key=lambda command: command.issued_at)
        return self._accept(commands, source="poll")

    def _accept(self, commands: List[Command], *, source: str) -> List[Command]:
        accepted: List[Command] = []
        for command in commands:
            if not self._dedup.check_and_record(command.command_id):
                continue
            if self._delivered_through is None or command.issued_at > self._delivered_through:
                self._delivered_through = command.issued_at
            LOGGER.info(
                "Command %s (%s) received via %s",
                command.command_id,
                command.kind.value,
                source,
            )
            accepted.append(command)
        return accepted

    async def _discard_live(self) -> None:
        live = self._live
        self._live = None
        if live is not None:
            await _close_quietly(live)


async def _close_quietly(live: LiveTransport) -> None:
    try:
        await live.close()
    except Exception:  # pragma: no cover - defensive logging
        LOGGER.debug("Closing live transport failed", exc_info=True)
