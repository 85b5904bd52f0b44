"""Exception hierarchy shared across the tuning modules."""
from __future__ import annotations


class FFMTuneError(Exception):
    """Base class for errors raised by ffmtune."""


class StorageError(FFMTuneError):
    """Raised when the trial store cannot be opened or written."""


class SuggestionError(FFMTuneError):
    """Raised when the parameter suggester rejects a request."""


class NoCompleteTrialsError(FFMTuneError):
    """Raised when a best trial is requested but no trial completed."""


class TrialFailedError(FFMTuneError):
    """Raised by the scheduler in fail-fast mode after a per-trial failure."""

    def __init__(self, trial_number: int, reason: str) -> None:
        super().__init__(f"Trial {trial_number} failed: {reason}")
        self.trial_number = trial_number
        self.reason = reason


__all__ = [
    "FFMTuneError",
    "NoCompleteTrialsError",
    "StorageError",
    "SuggestionError",
    "TrialFailedError",
]
