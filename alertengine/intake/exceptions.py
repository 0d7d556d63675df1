"""Exception hierarchy for metric intake and sources."""

from __future__ import annotations


class IntakeError(Exception):
    """Base exception for metric intake errors."""


class ReplayFormatError(IntakeError):
    """A replay file line is not a valid sample or inventory record."""
