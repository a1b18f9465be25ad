"""In-memory record of messages handled during this process lifetime."""

from __future__ import annotations

import logging
from collections import OrderedDict

LOGGER = logging.getLogger(__name__)

ProcessedMessageId = tuple[str, int]


class DeduplicationTracker:
    """Set of ``(persona_id, uid)`` keys already answered by this process.

    Supplements the durable mailbox marker; it is not persisted. With
    ``max_entries`` set, the least recently touched keys are evicted first.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._entries: OrderedDict[ProcessedMessageId, None] = OrderedDict()

    def seen(self, persona_id: str, uid: int) -> bool:
        key = (persona_id, uid)
        if key in self._entries:
            self._entries.move_to_end(key)
            return True
        return False

    def mark_seen(self, persona_id: str, uid: int) -> None:
        key = (persona_id, uid)
        self._entries[key] = None
        self._entries.move_to_end(key)
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                LOGGER.debug("Evicted processed message id %s", evicted)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


__all__ = ["DeduplicationTracker", "ProcessedMessageId"]
