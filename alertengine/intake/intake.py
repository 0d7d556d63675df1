"""MetricIntake — normalizes source snapshots into evaluator calls."""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from alertengine.core.types import AlertState, EntityKey, MetricSample, MetricSnapshot
from alertengine.evaluator.evaluator import AlertEvaluator

logger = structlog.get_logger(__name__)


class MetricIntake:
    """Feeds samples to the evaluator and tracks each source's inventory.

    When a snapshot carries an inventory, entities the same source reported
    last time but not this time are removed from the evaluator (closing any
    open alerts as ``entity_removed``).  Sources are independent: one
    source's inventory never removes another source's entities.

    After :meth:`prune_restored`, the first inventory each source reports
    also closes that source's restored alerts for entities it no longer
    lists.
    """

    def __init__(
        self,
        evaluator: AlertEvaluator,
        expected_sources: Iterable[str] = (),
    ) -> None:
        self._evaluator = evaluator
        self._expected: set[str] = set(expected_sources)
        self._inventories: dict[str, set[EntityKey]] = {}
        self._prune_restored = False
        self._samples_accepted = 0
        self._entities_removed = 0

    @property
    def ready(self) -> bool:
        """True once every expected source has reported an inventory."""
        return bool(self._expected) and self._expected <= set(self._inventories)

    def expect_source(self, source_id: str) -> None:
        self._expected.add(source_id)

    def prune_restored(self) -> None:
        """Check restored alerts against each source's first inventory."""
        self._prune_restored = True

    def inventory(self) -> set[EntityKey]:
        """Union of the latest inventory of every source."""
        result: set[EntityKey] = set()
        for entities in self._inventories.values():
            result |= entities
        return result

    def stats(self) -> dict[str, object]:
        return {
            "sources": sorted(self._inventories),
            "expected_sources": sorted(self._expected),
            "entities": sum(len(e) for e in self._inventories.values()),
            "samples_accepted": self._samples_accepted,
            "entities_removed": self._entities_removed,
            "ready": self.ready,
        }

    # ── Intake ───────────────────────────────────────────────────

    async def submit_sample(self, sample: MetricSample) -> AlertState:
        self._samples_accepted += 1
        return await self._evaluator.submit_sample(sample)

    async def submit_snapshot(
        self,
        source_id: str,
        samples: Iterable[MetricSample],
        inventory: Iterable[EntityKey] | None = None,
    ) -> int:
        """Apply one source snapshot. Returns the number of entities removed."""
        removed = 0
        if inventory is not None:
            current = set(inventory)
            previous = self._inventories.get(source_id)
            self._inventories[source_id] = current
            if previous is not None:
                gone = previous - current
            elif self._prune_restored:
                gone = self._evaluator.entities(source_id) - current
                logger.info(
                    "restored_alerts_pruning",
                    source_id=source_id,
                    inventory=len(current),
                    vanished=len(gone),
                )
            else:
                gone = set()
            for entity in sorted(gone, key=str):
                await self._evaluator.remove_entity(entity)
                removed += 1
            if removed:
                self._entities_removed += removed
                logger.info(
                    "source_entities_removed",
                    source_id=source_id,
                    removed=removed,
                    remaining=len(current),
                )

        for sample in samples:
            if sample.entity.source != source_id:
                logger.debug(
                    "sample_source_mismatch",
                    source_id=source_id,
                    entity=str(sample.entity),
                )
            await self.submit_sample(sample)
        return removed

    async def handle_snapshot(self, snapshot: MetricSnapshot) -> None:
        """Snapshot callback for :class:`MetricSource`."""
        await self.submit_snapshot(snapshot.source_id, snapshot.samples, snapshot.inventory)

    async def remove_source(self, source_id: str) -> int:
        """Forget a source and remove every entity it reported."""
        entities = self._inventories.pop(source_id, set())
        self._expected.discard(source_id)
        for entity in sorted(entities, key=str):
            await self._evaluator.remove_entity(entity)
        if entities:
            self._entities_removed += len(entities)
            logger.info("source_removed", source_id=source_id, entities=len(entities))
        return len(entities)
