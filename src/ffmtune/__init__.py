"""Concurrent hyperparameter search for the ffm-train trainer."""

from .aggregation import BestTrial, best_of, select_best
from .cancellation import CancellationController, CancellationToken
from .errors import (
    FFMTuneError,
    NoCompleteTrialsError,
    StorageError,
    SuggestionError,
    TrialFailedError,
)
from .runner import EvaluationOutcome, EvaluationResult, ObjectiveRunner
from .scheduler import SchedulerReport, TrialScheduler, default_worker_count
from .storage import TrialStore
from .suggestion import OptunaSuggester, ParameterSuggester, build_sampler
from .trials import ParameterDomain, TrialRecord, TrialStatus

__all__ = [
    "BestTrial",
    "CancellationController",
    "CancellationToken",
    "EvaluationOutcome",
    "EvaluationResult",
    "FFMTuneError",
    "NoCompleteTrialsError",
    "ObjectiveRunner",
    "OptunaSuggester",
    "ParameterDomain",
    "ParameterSuggester",
    "SchedulerReport",
    "StorageError",
    "SuggestionError",
    "TrialFailedError",
    "TrialRecord",
    "TrialScheduler",
    "TrialStatus",
    "TrialStore",
    "best_of",
    "build_sampler",
    "default_worker_count",
    "select_best",
]
