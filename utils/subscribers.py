"""Registry of chats that receive riddle broadcasts."""

from __future__ import annotations

import threading
from typing import Hashable

from utils.logging_config import get_logger

logger = get_logger("subscribers")


class SubscriberRegistry:
    """Grow-only set of chat identities.

    ``all`` returns a tuple snapshot, so a broadcast loop is not affected by
    registrations that happen while it is sending messages.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._members: set[Hashable] = set()
        self._order: list[Hashable] = []

    def register(self, identity: Hashable) -> bool:
        with self._lock:
            if identity in self._members:
                return False
            self._members.add(identity)
            self._order.append(identity)
        logger.info("New subscriber: %s", identity)
        return True

    def all(self) -> tuple[Hashable, ...]:
        with self._lock:
            return tuple(self._order)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._members

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)
