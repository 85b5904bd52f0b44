"""Durable trial records backed by an Optuna storage."""
from __future__ import annotations

import csv
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List

import optuna
from optuna.trial import TrialState

from .aggregation import select_best
from .errors import StorageError
from .trials import TrialRecord, TrialStatus

logger = logging.getLogger(__name__)

#: User attribute holding the scheduler-issued trial number.
TRIAL_NUMBER_ATTR = "trial_number"

_STATE_TO_STATUS = {
    TrialState.COMPLETE: TrialStatus.COMPLETE,
    TrialState.FAIL: TrialStatus.FAILED,
    TrialState.RUNNING: TrialStatus.RUNNING,
}


class TrialStore:
    """Write-once store of :class:`TrialRecord` objects.

    Records are appended to an Optuna study that acts purely as a database;
    sampling happens elsewhere. Writes are serialized by a lock because the
    backing engine (SQLite in the default configuration) is not assumed to
    tolerate concurrent writers. Reads are meant to happen after the writers
    have finished.
    """

    def __init__(self, study: optuna.study.Study) -> None:
        self._study = study
        self._write_lock = threading.Lock()
        self._numbers = {record.number for record in self.trials()}

    @classmethod
    def open(cls, study_name: str, storage_url: str | None = None) -> "TrialStore":
        """Create the study, or load it when it already exists."""

        try:
            study = optuna.create_study(
                study_name=study_name,
                storage=storage_url,
                direction="minimize",
                load_if_exists=True,
            )
            store = cls(study)
        except Exception as exc:  # noqa: BLE001 - any backend failure is fatal here
            raise StorageError(
                f"Failed to open study '{study_name}' at {storage_url or '<memory>'}: {exc}"
            ) from exc
        logger.info(
            "Opened study '%s' (%s) with %d stored trial(s)",
            study_name,
            storage_url or "in-memory",
            len(store._numbers),
        )
        return store

    @property
    def study_name(self) -> str:
        return self._study.study_name

    def persist(self, record: TrialRecord) -> None:
        if record.status is TrialStatus.RUNNING:
            raise StorageError(f"Refusing to persist unfinished trial {record.number}")
        if TRIAL_NUMBER_ATTR in record.attributes:
            raise StorageError(f"Attribute '{TRIAL_NUMBER_ATTR}' is reserved")

        user_attrs: Dict[str, Any] = dict(record.attributes)
        user_attrs[TRIAL_NUMBER_ATTR] = record.number
        with self._write_lock:
            if record.number in self._numbers:
                raise StorageError(f"Trial {record.number} is already stored")
            try:
                frozen = optuna.trial.create_trial(
                    state=(
                        TrialState.COMPLETE
                        if record.status is TrialStatus.COMPLETE
                        else TrialState.FAIL
                    ),
                    value=record.value,
                    params=record.params_dict(),
                    distributions=dict(record.distributions),
                    user_attrs=user_attrs,
                )
                self._study.add_trial(frozen)
            except Exception as exc:  # noqa: BLE001 - surface as storage failure
                raise StorageError(f"Failed to persist trial {record.number}: {exc}") from exc
            self._numbers.add(record.number)

    def trials(self, statuses: Iterable[TrialStatus] | None = None) -> List[TrialRecord]:
        wanted = set(statuses) if statuses is not None else None
        records = []
        for frozen in self._study.get_trials(deepcopy=False):
            status = _STATE_TO_STATUS.get(frozen.state)
            if status is None or (wanted is not None and status not in wanted):
                continue
            records.append(_to_record(frozen, status))
        records.sort(key=lambda record: record.number)
        return records

    def query_best(self) -> TrialRecord:
        return select_best(self.trials((TrialStatus.COMPLETE,)))

    def next_trial_number(self) -> int:
        with self._write_lock:
            return max(self._numbers) + 1 if self._numbers else 0

    def __len__(self) -> int:
        return len(self._numbers)


def _to_record(frozen: optuna.trial.FrozenTrial, status: TrialStatus) -> TrialRecord:
    user_attrs = dict(frozen.user_attrs)
    number = user_attrs.pop(TRIAL_NUMBER_ATTR, frozen.number)
    return TrialRecord(
        number=int(number),
        status=status,
        params=dict(frozen.params),
        distributions=dict(frozen.distributions),
        attributes={key: str(value) for key, value in user_attrs.items()},
        value=frozen.value if status is TrialStatus.COMPLETE else None,
    )


class TrialLog:
    """Append one CSV row per persisted trial."""

    def __init__(self, path: Path, param_names: Iterable[str]) -> None:
        self.path = path
        self.param_names = list(param_names)
        self._lock = threading.Lock()

        path.parent.mkdir(parents=True, exist_ok=True)
        write_header = not path.exists() or path.stat().st_size == 0
        self._fh = path.open("a", newline="", encoding="utf-8")
        self._writer = csv.DictWriter(
            self._fh,
            fieldnames=[
                "trial",
                "status",
                "value",
                *[f"param_{name}" for name in self.param_names],
                "best_iteration",
                "outcome",
                "reason",
            ],
        )
        if write_header:
            self._writer.writeheader()
            self._fh.flush()

    def log(self, record: TrialRecord) -> None:
        row: Dict[str, Any] = {
            "trial": record.number,
            "status": record.status.value,
            "value": record.value,
            "best_iteration": record.attributes.get("best_iteration"),
            "outcome": record.attributes.get("outcome"),
            "reason": record.attributes.get("reason"),
        }
        for name in self.param_names:
            row[f"param_{name}"] = record.params.get(name)
        with self._lock:
            self._writer.writerow(row)
            self._fh.flush()

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "TrialLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["TRIAL_NUMBER_ATTR", "TrialLog", "TrialStore"]
