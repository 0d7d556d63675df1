"""JSON Lines replay — feeds recorded samples through the real engine.

Each non-blank line is one record::

    {"timestamp": 0, "source": "pve-1", "entity_id": "vm-101",
     "metric_kind": "cpu", "value": 90.0, "entity_name": "web-1"}
    {"timestamp": 30000, "source": "pve-1", "inventory": ["vm-101", "vm-102"]}

Records are grouped by timestamp; the engine clock is moved to each
timestamp before that group is submitted and a tick is run.
"""

from __future__ import annotations

import json
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from alertengine.core.clock import ManualClock
from alertengine.core.types import EntityKey, MetricSample, MetricSnapshot
from alertengine.intake.exceptions import ReplayFormatError

if TYPE_CHECKING:
    from alertengine.engine import AlertEngine

logger = structlog.get_logger(__name__)

ReplayStep = tuple[float, list[MetricSnapshot]]


def _parse_record(raw: dict[str, Any], line_no: int) -> tuple[float, str, MetricSample | list[EntityKey]]:
    try:
        timestamp = float(raw["timestamp"])
        source = str(raw["source"])
        if "inventory" in raw:
            entities = [EntityKey(source=source, entity_id=str(e)) for e in raw["inventory"]]
            return timestamp, source, entities
        sample = MetricSample(
            entity=EntityKey(source=source, entity_id=str(raw["entity_id"])),
            metric_kind=raw["metric_kind"],
            value=raw["value"],
            timestamp=timestamp,
            entity_name=raw.get("entity_name", ""),
            entity_kind=raw.get("entity_kind"),
        )
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        raise ReplayFormatError(f"line {line_no}: {exc}") from exc
    return timestamp, source, sample


class JsonlReplaySource:
    """Replays a recorded JSON Lines file on a :class:`ManualClock`.

    Usage::

        clock = ManualClock()
        engine = create_engine(settings, clock=clock)
        source = JsonlReplaySource("samples.jsonl", clock)
        await engine.start()
        await source.replay(engine)
        await engine.stop()
    """

    def __init__(self, path: str | Path, clock: ManualClock) -> None:
        self._path = Path(path)
        self._clock = clock

    def load(self) -> list[ReplayStep]:
        """Parse the file into timestamp-ordered steps.

        Raises:
            ReplayFormatError: A line is not valid JSON or not a valid record.
        """
        samples: dict[float, dict[str, list[MetricSample]]] = defaultdict(lambda: defaultdict(list))
        inventories: dict[float, dict[str, list[EntityKey]]] = defaultdict(dict)

        with open(self._path, encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise ReplayFormatError(f"line {line_no}: {exc}") from exc
                if not isinstance(raw, dict):
                    raise ReplayFormatError(f"line {line_no}: expected a JSON object")
                timestamp, source, record = _parse_record(raw, line_no)
                if isinstance(record, MetricSample):
                    samples[timestamp][source].append(record)
                else:
                    inventories[timestamp][source] = record

        steps: list[ReplayStep] = []
        for timestamp in sorted(set(samples) | set(inventories)):
            sources = sorted(set(samples.get(timestamp, {})) | set(inventories.get(timestamp, {})))
            steps.append((timestamp, [
                MetricSnapshot(
                    source_id=source,
                    samples=samples.get(timestamp, {}).get(source, []),
                    inventory=inventories.get(timestamp, {}).get(source),
                    collected_at=timestamp,
                )
                for source in sources
            ]))
        return steps

    async def replay(self, engine: AlertEngine) -> int:
        """Drive *engine* through every step. Returns the number of samples."""
        steps = self.load()
        total = 0
        for timestamp, snapshots in steps:
            if timestamp > self._clock.monotonic_ms():
                self._clock.set(timestamp)
            for snapshot in snapshots:
                await engine.submit_snapshot(
                    snapshot.source_id, snapshot.samples, snapshot.inventory,
                )
                total += len(snapshot.samples)
            await engine.tick()
        logger.info("replay_finished", path=str(self._path), steps=len(steps), samples=total)
        return total
