"""Exception hierarchy for the alert state store."""

from __future__ import annotations


class StateStoreError(Exception):
    """Base exception for state store errors."""


class StateLoadError(StateStoreError):
    """The state file exists but cannot be read or parsed."""


class StateSaveError(StateStoreError):
    """The state file could not be written."""
