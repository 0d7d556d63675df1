"""Durable alert state (JSON snapshot on disk)."""

from alertengine.store.exceptions import StateLoadError, StateSaveError, StateStoreError
from alertengine.store.state_store import AlertStateStore

__all__ = [
    "AlertStateStore",
    "StateLoadError",
    "StateSaveError",
    "StateStoreError",
]
