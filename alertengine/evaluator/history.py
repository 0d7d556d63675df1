"""Bounded history of closed alerts, newest first."""

from __future__ import annotations

from collections import deque

from alertengine.core.types import AlertKey, HistoryEntry


class AlertHistory:
    """Ring buffer of closed alerts.

    Only alerts that were announced (reached FIRING) are recorded; a PENDING
    breach that clears on its own never shows up here.
    """

    def __init__(self, max_entries: int = 500) -> None:
        self._max_entries = max_entries
        self._entries: deque[HistoryEntry] = deque(maxlen=max_entries or None)

    def __len__(self) -> int:
        return len(self._entries)

    def record(self, entry: HistoryEntry) -> None:
        if self._max_entries == 0:
            return
        self._entries.appendleft(entry)

    def entries(
        self,
        limit: int | None = None,
        key: AlertKey | None = None,
    ) -> list[HistoryEntry]:
        """Newest-first copy, optionally filtered to one alert key."""
        items = [e for e in self._entries if key is None or e.key == key]
        if limit is not None:
            items = items[:limit]
        return [e.model_copy() for e in items]

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def restore(self, entries: list[HistoryEntry]) -> None:
        """Replace contents with persisted entries (already newest first)."""
        self._entries.clear()
        for entry in entries[: self._max_entries]:
            self._entries.append(entry)
