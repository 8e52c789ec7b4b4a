"""Bounded window of recently seen command ids.

Both command transports can redeliver: the live channel may replay
broadcasts after a reconnect and the history endpoint returns the same
records on every poll. The window keeps the most recent ids so each command
reaches firmware at most once per client session.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from datetime import datetime, timezone

LOGGER = logging.getLogger(__name__)

DEFAULT_DEDUP_CAPACITY = 256


class CommandDedupWindow:
    """
    Insertion-ordered set of command ids with a fixed capacity.

    Once the capacity is exceeded the oldest ids are evicted. Seeing an id
    again moves it to the newest position, so commands the history endpoint
    keeps returning stay inside the window.

    Usage:
        window = CommandDedupWindow(capacity=256)

        if window.check_and_record(command.command_id):
            deliver(command)
    """

    def __init__(self, capacity: int = DEFAULT_DEDUP_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("Dedup capacity must be at least 1")
        self._capacity = capacity
        self._seen: OrderedDict[str, datetime] = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def check_and_record(self, command_id: str) -> bool:
        """
        Record ``command_id`` and report whether it is new.

        Returns True the first time an id is seen inside the window and
        False for every repeat.
        """
        if command_id in self._seen:
            self._seen.move_to_end(command_id)
            LOGGER.debug("Duplicate command suppressed: %s", command_id)
            return False

        self._seen[command_id] = datetime.now(timezone.utc)
        while len(self._seen) > self._capacity:
            evicted, _ = self._seen.popitem(last=False)
            LOGGER.debug("Evicted command %s from dedup window", evicted)
        return True

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def clear(self) -> None:
        self._seen.clear()
