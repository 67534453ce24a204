"""
errors.py — Exceptions raised by the write-side timing operations.

The ranking kernel itself never raises for bad data; these are for operator
actions that must abort without any partial effect.
"""

from __future__ import annotations


class TimingError(Exception):
    """Base class for all timing operation failures."""


class NotFoundError(TimingError):
    """Unknown race, participant, bib, checkpoint or queue entry."""


class NoDataError(TimingError):
    """The operation needs passages that do not exist (e.g. correction reference)."""


class RaceNotRunningError(TimingError):
    """Passages can only be recorded while the race is running."""


class InvalidOperationError(TimingError):
    """Request is well-formed but cannot be applied (e.g. self-correction)."""
