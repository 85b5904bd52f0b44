"""Best-result selection over finished trials."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable

from .errors import NoCompleteTrialsError
from .trials import ParamValue, TrialRecord, TrialStatus

if TYPE_CHECKING:
    from .storage import TrialStore


@dataclass(frozen=True)
class BestTrial:
    """Lowest-scoring complete trial of a study."""

    value: float
    params: Dict[str, ParamValue]
    number: int


def select_best(records: Iterable[TrialRecord]) -> TrialRecord:
    """Return the complete record with the minimum value.

    Ties go to the lowest trial number. Failed and unfinished records take no
    part in the selection.
    """

    best: TrialRecord | None = None
    for record in records:
        if record.status is not TrialStatus.COMPLETE or record.value is None:
            continue
        if best is None or (record.value, record.number) < (best.value, best.number):
            best = record
    if best is None:
        raise NoCompleteTrialsError("No complete trials are available")
    return best


def best_of(store: "TrialStore") -> BestTrial:
    record = store.query_best()
    return BestTrial(value=float(record.value), params=record.params_dict(), number=record.number)


__all__ = ["BestTrial", "best_of", "select_best"]
