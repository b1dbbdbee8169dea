"""
Exception types raised by the battery engine.

Missed responses and false starts are trial outcomes, not exceptions.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cogbattery.records import Run


class InvalidSelection(ValueError):
    """Empty test-kind or condition selection at battery configuration."""


class OutputSinkFailure(RuntimeError):
    """An indicator command could not be delivered."""


class PersistenceFailure(RuntimeError):
    """A finalized run could not be written; the run stays available for retry."""

    def __init__(self, message: str, run: "Run | None" = None) -> None:
        super().__init__(message)
        self.run = run


class TrialStateError(RuntimeError):
    """Attempt to resolve a trial while no stimulus is active."""
