"""Per-channel notification policy bookkeeping.

``ChannelPolicyState`` is pure in-memory state with no I/O and no awaits:
the router feeds it events and the current monotonic time, and asks it
which batches are due.  All times are monotonic milliseconds.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from alertengine.core.config import ChannelPolicyConfig
from alertengine.core.types import AlertEvent, AlertEventKind, AlertKey, EntityKey

RATE_WINDOW_MS = 3_600_000


@dataclass
class NotificationEnvelope:
    """An event waiting in a channel batch."""

    event: AlertEvent
    channel: str
    scheduled_at: float
    attempt: int = 0

    @property
    def key(self) -> AlertKey:
        return self.event.key


@dataclass
class PendingBatch:
    """An open batch window for one channel and one event kind."""

    kind: AlertEventKind
    opened_at: float
    due_at: float
    envelopes: dict[AlertKey, NotificationEnvelope] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.envelopes)


class ChannelPolicyState:
    """Debounce/batch windows, cooldown marks and the rolling rate window
    for a single channel.

    ``announced`` holds keys whose ``fired`` went out on this channel and
    whose ``recovered`` has not; only those keys get recovery notices.
    ``retiring`` holds keys of removed entities whose cooldown mark is
    dropped as soon as their recovery is dispatched or discarded.
    """

    def __init__(self, name: str, policy: ChannelPolicyConfig) -> None:
        self.name = name
        self.policy = policy
        self._cooldown_marks: dict[AlertKey, float] = {}
        self._announced: set[AlertKey] = set()
        self._retiring: set[AlertKey] = set()
        self._sent_times: deque[float] = deque()
        self._batches: dict[AlertEventKind, PendingBatch] = {}

    # ── Cooldown ─────────────────────────────────────────────────

    def in_cooldown(self, key: AlertKey, now: float) -> bool:
        last = self._cooldown_marks.get(key)
        if last is None:
            return False
        return now - last < self.policy.cooldown_ms

    def last_notified(self, key: AlertKey) -> float | None:
        return self._cooldown_marks.get(key)

    def is_announced(self, key: AlertKey) -> bool:
        return key in self._announced

    def mark_fired(self, keys: list[AlertKey], now: float) -> dict[AlertKey, float | None]:
        """Stamp keys as notified; returns previous marks for rollback."""
        previous: dict[AlertKey, float | None] = {}
        for key in keys:
            previous[key] = self._cooldown_marks.get(key)
            self._cooldown_marks[key] = now
            self._announced.add(key)
            self._retiring.discard(key)
        return previous

    def rollback_fired(self, previous: dict[AlertKey, float | None], stamped_at: float) -> None:
        """Undo ``mark_fired`` for a batch that was never delivered.

        Marks overwritten by a later send are left alone.
        """
        for key, prev in previous.items():
            if self._cooldown_marks.get(key) != stamped_at:
                continue
            if prev is None:
                self._cooldown_marks.pop(key, None)
                self._announced.discard(key)
                self._retiring.discard(key)
            else:
                self._cooldown_marks[key] = prev

    def mark_recovered(self, keys: list[AlertKey]) -> None:
        for key in keys:
            self._announced.discard(key)
            if key in self._retiring:
                self._retiring.discard(key)
                self._cooldown_marks.pop(key, None)

    def announced_marks(self) -> dict[AlertKey, float]:
        """Cooldown marks for keys still announced (the persisted part)."""
        return {
            key: mark
            for key, mark in self._cooldown_marks.items()
            if key in self._announced
        }

    def restore_marks(self, marks: dict[AlertKey, float]) -> None:
        for key, mark in marks.items():
            self._cooldown_marks[key] = mark
            self._announced.add(key)

    def retire_entity(self, entity: EntityKey) -> int:
        """Drop cooldown marks for every key of a removed *entity*.

        Keys still announced keep their mark until their recovery is
        dispatched or discarded.  Returns the number of marks dropped now.
        """
        dropped = 0
        for key in [k for k in self._cooldown_marks if k.entity == entity]:
            if key in self._announced:
                self._retiring.add(key)
            else:
                del self._cooldown_marks[key]
                dropped += 1
        return dropped

    def tracked_keys(self) -> int:
        return len(self._cooldown_marks)

    # ── Rate limit ───────────────────────────────────────────────

    def _prune_rate_window(self, now: float) -> None:
        while self._sent_times and now - self._sent_times[0] >= RATE_WINDOW_MS:
            self._sent_times.popleft()

    def sends_in_window(self, now: float) -> int:
        self._prune_rate_window(now)
        return len(self._sent_times)

    def try_consume(self, now: float) -> bool:
        """Take one send from the rolling hour budget (0 = unlimited)."""
        self._prune_rate_window(now)
        cap = self.policy.max_per_hour
        if cap and len(self._sent_times) >= cap:
            return False
        self._sent_times.append(now)
        return True

    # ── Batching ─────────────────────────────────────────────────

    def add(
        self,
        event: AlertEvent,
        now: float,
        not_before: float | None = None,
    ) -> PendingBatch:
        """Queue *event* in the open batch for its kind, opening one if needed.

        A later event for a key already in the batch replaces the earlier
        one.  Reaching ``batch_max_size`` makes the batch due immediately.
        *not_before* pushes the batch deadline back to at least that time.
        """
        batch = self._batches.get(event.kind)
        if batch is None:
            window = (
                self.policy.batch_window_ms
                if event.kind == AlertEventKind.FIRED
                else self.policy.recovery_delay_ms
            )
            batch = PendingBatch(kind=event.kind, opened_at=now, due_at=now + window)
            self._batches[event.kind] = batch
        if not_before is not None and batch.due_at < not_before:
            batch.due_at = not_before
        batch.envelopes[event.key] = NotificationEnvelope(
            event=event, channel=self.name, scheduled_at=batch.due_at,
        )
        if len(batch) >= self.policy.batch_max_size:
            batch.due_at = now
        return batch

    def cancel(self, key: AlertKey, kind: AlertEventKind) -> bool:
        """Remove a queued event for *key*; returns True if one was queued."""
        batch = self._batches.get(kind)
        if batch is None or key not in batch.envelopes:
            return False
        del batch.envelopes[key]
        if not batch.envelopes:
            del self._batches[kind]
        return True

    def queued_due(self, key: AlertKey, kind: AlertEventKind) -> float | None:
        """Deadline of the open batch holding *key*, or None if not queued."""
        batch = self._batches.get(kind)
        if batch is None or key not in batch.envelopes:
            return None
        return batch.due_at

    def take_due(self, now: float, force: bool = False) -> list[PendingBatch]:
        """Pop every batch whose window has elapsed (all of them if *force*).

        A due ``fired`` batch always comes before a due ``recovered`` one.
        """
        due = sorted(
            (kind for kind, batch in self._batches.items() if force or batch.due_at <= now),
            key=lambda kind: kind != AlertEventKind.FIRED,
        )
        return [self._batches.pop(kind) for kind in due]
