"""AlertStateStore — versioned JSON snapshot written atomically.

Writes go to a temp file in the same directory, are fsync'd, then
``os.replace``'d over the real file, so a crash mid-write leaves either the
old or the new snapshot on disk, never a torn one.
"""

from __future__ import annotations

import contextlib
import json
import os
import time
from pathlib import Path

import structlog
from pydantic import ValidationError

from alertengine.core.types import SNAPSHOT_VERSION, StateSnapshot
from alertengine.store.exceptions import StateLoadError, StateSaveError

logger = structlog.get_logger(__name__)


class AlertStateStore:
    """Load and save :class:`StateSnapshot` objects.

    Both methods are blocking; the engine calls them through
    ``asyncio.to_thread``.

    Usage::

        store = AlertStateStore("data/alert_state.json")
        snapshot = store.load()          # empty snapshot if missing/corrupt
        ok = store.save(snapshot)        # False on write failure
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._saves = 0
        self._save_failures = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def save_failures(self) -> int:
        return self._save_failures

    # ── Load ─────────────────────────────────────────────────────

    def load(self) -> StateSnapshot:
        """Read the snapshot; never raises.

        A missing file yields an empty snapshot.  An unreadable file is
        logged, moved aside with a ``.corrupt`` suffix, and an empty
        snapshot is returned.
        """
        if not self._path.exists():
            logger.info("state_file_missing", path=str(self._path))
            return StateSnapshot()
        try:
            snapshot = self._read()
        except StateLoadError as exc:
            logger.warning("state_load_failed", path=str(self._path), error=str(exc))
            self._quarantine()
            return StateSnapshot()
        logger.info(
            "state_loaded",
            path=str(self._path),
            alerts=len(snapshot.alerts),
            history=len(snapshot.history),
            version=snapshot.version,
        )
        return snapshot

    def _read(self) -> StateSnapshot:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateLoadError(f"cannot read {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise StateLoadError(f"{self._path}: top-level value is not an object")
        version = raw.get("version", SNAPSHOT_VERSION)
        if not isinstance(version, int) or version > SNAPSHOT_VERSION:
            logger.warning(
                "state_version_newer",
                path=str(self._path),
                version=version,
                supported=SNAPSHOT_VERSION,
            )
        try:
            return StateSnapshot.model_validate(raw)
        except ValidationError as exc:
            raise StateLoadError(f"{self._path}: invalid snapshot: {exc}") from exc

    def _quarantine(self) -> None:
        target = self._path.with_name(self._path.name + ".corrupt")
        try:
            os.replace(self._path, target)
            logger.warning("state_file_quarantined", path=str(target))
        except OSError:
            logger.exception("state_quarantine_failed", path=str(self._path))

    # ── Save ─────────────────────────────────────────────────────

    def save(self, snapshot: StateSnapshot) -> bool:
        """Write *snapshot* atomically. Returns False (and logs) on failure."""
        if not snapshot.saved_at:
            snapshot = snapshot.model_copy(update={"saved_at": time.time() * 1000.0})
        try:
            self._write(snapshot.model_dump_json(by_alias=True, indent=2))
        except StateSaveError as exc:
            self._save_failures += 1
            logger.warning(
                "state_save_failed",
                path=str(self._path),
                error=str(exc),
                failures=self._save_failures,
            )
            return False
        self._saves += 1
        logger.debug("state_saved", path=str(self._path), alerts=len(snapshot.alerts))
        return True

    def _write(self, text: str) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(text)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self._path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                tmp.unlink(missing_ok=True)
            raise StateSaveError(f"cannot write {self._path}: {exc}") from exc
