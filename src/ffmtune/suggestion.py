"""Parameter suggestion strategies keyed by trial number."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable

import optuna
from optuna.trial import TrialState

from .errors import SuggestionError
from .trials import DomainKind, ParamValue, ParameterDomain, TrialRecord, TrialStatus

logger = logging.getLogger(__name__)


class ParameterSuggester(ABC):
    """Strategy interface that proposes parameter values for a trial.

    Implementations must be safe to call from several worker threads and are
    keyed by the caller's trial number so that every suggestion can be
    attributed to the trial it was made for.
    """

    @abstractmethod
    def suggest_log_uniform(
        self,
        trial_number: int,
        name: str,
        low: float,
        high: float,
    ) -> float:
        """Return a value drawn from the log-uniform range ``[low, high]``."""

    @abstractmethod
    def suggest_int(self, trial_number: int, name: str, low: int, high: int) -> int:
        """Return an integer from the inclusive range ``[low, high]``."""

    def suggest(self, trial_number: int, domain: ParameterDomain) -> ParamValue:
        if domain.kind is DomainKind.LOG_UNIFORM:
            return self.suggest_log_uniform(trial_number, domain.name, domain.low, domain.high)
        if domain.kind is DomainKind.INT:
            return self.suggest_int(trial_number, domain.name, int(domain.low), int(domain.high))
        raise SuggestionError(f"Unsupported domain kind for '{domain.name}': {domain.kind!r}")

    def complete(self, record: TrialRecord) -> None:
        """Learn from a persisted trial outcome."""

    def discard(self, trial_number: int) -> None:
        """Forget a trial that was cancelled before it finished."""


def build_sampler(name: str, seed: int | None) -> optuna.samplers.BaseSampler:
    sampler_name = name.lower()
    if sampler_name == "tpe":
        return optuna.samplers.TPESampler(seed=seed)
    if sampler_name == "random":
        return optuna.samplers.RandomSampler(seed=seed)
    raise ValueError(f"Unsupported sampler: {sampler_name}")


class OptunaSuggester(ParameterSuggester):
    """Suggest values with an Optuna sampler backed by a private in-memory study.

    The study only holds the sampler's learning state: it is seeded from the
    stored trial history and then told about every outcome through
    :meth:`complete`. Trials cancelled mid-flight are closed as failures here
    via :meth:`discard` without leaving any durable trace.
    """

    def __init__(
        self,
        sampler: optuna.samplers.BaseSampler,
        history: Iterable[TrialRecord] = (),
    ) -> None:
        self._lock = threading.RLock()
        self._study = optuna.create_study(direction="minimize", sampler=sampler)
        self._pending: Dict[int, optuna.trial.Trial] = {}
        seeded = [
            _to_frozen_trial(record)
            for record in history
            if record.status is not TrialStatus.RUNNING
        ]
        if seeded:
            self._study.add_trials(seeded)
            logger.info("Sampler seeded with %d stored trial(s)", len(seeded))

    @property
    def study(self) -> optuna.study.Study:
        return self._study

    def suggest_log_uniform(
        self,
        trial_number: int,
        name: str,
        low: float,
        high: float,
    ) -> float:
        if not 0 < low < high:
            raise SuggestionError(
                f"Invalid log-uniform range for '{name}': low={low!r}, high={high!r}"
            )
        with self._lock:
            trial = self._trial_for(trial_number)
            return self._suggest(
                lambda: trial.suggest_float(name, float(low), float(high), log=True),
                name,
            )

    def suggest_int(self, trial_number: int, name: str, low: int, high: int) -> int:
        if low >= high:
            raise SuggestionError(f"Invalid integer range for '{name}': low={low!r}, high={high!r}")
        with self._lock:
            trial = self._trial_for(trial_number)
            return self._suggest(lambda: trial.suggest_int(name, int(low), int(high)), name)

    def complete(self, record: TrialRecord) -> None:
        with self._lock:
            trial = self._pending.pop(record.number, None)
            if trial is None:
                return
            if record.is_complete:
                self._study.tell(trial, record.value)
            else:
                self._study.tell(trial, state=TrialState.FAIL)

    def discard(self, trial_number: int) -> None:
        with self._lock:
            trial = self._pending.pop(trial_number, None)
            if trial is not None:
                self._study.tell(trial, state=TrialState.FAIL)

    def pending(self) -> list[int]:
        with self._lock:
            return sorted(self._pending)

    def _trial_for(self, trial_number: int) -> optuna.trial.Trial:
        trial = self._pending.get(trial_number)
        if trial is None:
            trial = self._study.ask()
            self._pending[trial_number] = trial
        return trial

    @staticmethod
    def _suggest(draw, name: str):
        try:
            return draw()
        except ValueError as exc:
            # Optuna rejects incompatible re-suggestions and malformed ranges with ValueError.
            raise SuggestionError(f"Sampler rejected '{name}': {exc}") from exc


def _to_frozen_trial(record: TrialRecord) -> optuna.trial.FrozenTrial:
    state = TrialState.COMPLETE if record.is_complete else TrialState.FAIL
    return optuna.trial.create_trial(
        state=state,
        value=record.value if record.is_complete else None,
        params=record.params_dict(),
        distributions=dict(record.distributions),
        user_attrs={"trial_number": record.number},
    )


__all__ = ["OptunaSuggester", "ParameterSuggester", "build_sampler"]
