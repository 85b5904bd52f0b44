"""Concurrent trial scheduling against a shared budget and trial store."""
from __future__ import annotations

import concurrent.futures
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Protocol, Sequence

from optuna.distributions import BaseDistribution

from .cancellation import CancellationToken
from .errors import StorageError, SuggestionError, TrialFailedError
from .runner import EvaluationOutcome, EvaluationResult
from .storage import TrialLog, TrialStore
from .suggestion import ParameterSuggester
from .trials import ParameterDomain, ParamValue, TrialRecord, TrialStatus

logger = logging.getLogger(__name__)


class Evaluator(Protocol):
    def evaluate(
        self,
        trial_number: int,
        params: Mapping[str, ParamValue],
        token: CancellationToken | None = None,
    ) -> EvaluationResult: ...


def default_worker_count() -> int:
    """Available parallelism minus one unit kept for orchestration."""

    return max(1, (os.cpu_count() or 2) - 1)


class TrialBudget:
    """Remaining number of trial attempts, claimed one unit at a time."""

    def __init__(self, total: int) -> None:
        if total < 0:
            raise ValueError("budget must be non-negative")
        self._remaining = int(total)
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    def claim(self) -> bool:
        """Atomically take one unit; ``False`` once the budget is exhausted."""

        with self._lock:
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True


class TrialCounter:
    """Monotonic trial number source shared by all workers."""

    def __init__(self, start: int = 0) -> None:
        self._next = int(start)
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            number = self._next
            self._next += 1
            return number


@dataclass(frozen=True)
class SchedulerReport:
    """Counts gathered while :meth:`TrialScheduler.run` was active."""

    attempted: int
    completed: int
    failed: int
    cancelled: int
    budget_remaining: int


class _Tally:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.completed = 0
        self.failed = 0
        self.cancelled = 0

    def add(self, status: TrialStatus | None) -> None:
        with self._lock:
            if status is TrialStatus.COMPLETE:
                self.completed += 1
            elif status is TrialStatus.FAILED:
                self.failed += 1
            else:
                self.cancelled += 1


class TrialScheduler:
    """Run trials on a fixed pool of worker threads.

    Every worker repeatedly claims one unit of the shared budget, takes the
    next trial number, asks the suggester for each parameter domain,
    evaluates the parameters and writes the finished record. Workers stop
    when the budget is exhausted, when the cancellation token fires, or when
    their own evaluation comes back cancelled; cancelled evaluations are
    discarded instead of stored.

    Per-trial failures (suggestion errors, malformed trainer output, process
    errors) are stored as failed trials and the search continues, unless
    ``fail_fast`` is set, in which case the first failure cancels all workers
    and :meth:`run` raises :class:`TrialFailedError`. A storage write failure
    always cancels the run and is raised from :meth:`run`.
    """

    def __init__(
        self,
        suggester: ParameterSuggester,
        store: TrialStore,
        runner: Evaluator,
        domains: Sequence[ParameterDomain],
        *,
        workers: int | None = None,
        fail_fast: bool = False,
        trial_log: TrialLog | None = None,
        first_trial_number: int | None = None,
        join_interval: float = 0.2,
    ) -> None:
        if workers is not None and workers <= 0:
            raise ValueError("workers must be positive")
        self.suggester = suggester
        self.store = store
        self.runner = runner
        self.domains = list(domains)
        self.workers = workers if workers is not None else default_worker_count()
        self.fail_fast = fail_fast
        self.trial_log = trial_log
        self.first_trial_number = first_trial_number
        self.join_interval = join_interval
        self._write_lock = threading.Lock()

    def run(self, budget: int, token: CancellationToken) -> SchedulerReport:
        """Run until ``budget`` trials were attempted or ``token`` fires.

        Returns only after every worker has exited.
        """

        start = (
            self.first_trial_number
            if self.first_trial_number is not None
            else self.store.next_trial_number()
        )
        remaining = TrialBudget(budget)
        counter = TrialCounter(start)
        tally = _Tally()
        logger.info(
            "Starting %d worker(s) for %d trial(s), first trial number %d",
            self.workers,
            budget,
            start,
        )

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers,
            thread_name_prefix="ffmtune-worker",
        ) as executor:
            futures = [
                executor.submit(self._worker, remaining, counter, tally, token)
                for _ in range(self.workers)
            ]
            pending = set(futures)
            # Short waits keep the main thread free to run signal handlers.
            while pending:
                _, pending = concurrent.futures.wait(pending, timeout=self.join_interval)

        report = SchedulerReport(
            attempted=tally.completed + tally.failed,
            completed=tally.completed,
            failed=tally.failed,
            cancelled=tally.cancelled,
            budget_remaining=remaining.remaining,
        )
        logger.info(
            "Workers finished: %d complete, %d failed, %d cancelled",
            report.completed,
            report.failed,
            report.cancelled,
        )

        errors = [exc for exc in (future.exception() for future in futures) if exc is not None]
        if errors:
            raise errors[0]
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _worker(
        self,
        budget: TrialBudget,
        counter: TrialCounter,
        tally: _Tally,
        token: CancellationToken,
    ) -> None:
        while not token.cancelled:
            if not budget.claim():
                return
            number = counter.next()
            record = self._run_trial(number, token)
            if record is None:
                self.suggester.discard(number)
                tally.add(None)
                return

            try:
                self._write(record)
            except StorageError as exc:
                logger.error("Aborting run: %s", exc)
                self.suggester.discard(number)
                token.cancel(reason="storage_error")
                raise
            self.suggester.complete(record)
            tally.add(record.status)

            if record.status is TrialStatus.FAILED and self.fail_fast:
                reason = record.attributes.get("reason") or record.attributes.get("outcome", "failed")
                token.cancel(reason=f"trial_failed:{number}")
                raise TrialFailedError(number, reason)

    def _run_trial(self, number: int, token: CancellationToken) -> TrialRecord | None:
        params: Dict[str, ParamValue] = {}
        distributions: Dict[str, BaseDistribution] = {}
        try:
            for domain in self.domains:
                params[domain.name] = self.suggester.suggest(number, domain)
                distributions[domain.name] = domain.to_distribution()
        except StorageError:
            raise
        except Exception as exc:  # noqa: BLE001 - any suggester failure is contained to the trial
            if isinstance(exc, SuggestionError):
                reason = str(exc)
            else:
                reason = f"exception:{exc.__class__.__name__}: {exc}"
            logger.warning("Trial %d: suggestion failed: %s", number, reason)
            return self._failed_record(
                number,
                params,
                distributions,
                {"outcome": "suggestion_error", "reason": reason},
            )

        try:
            result = self.runner.evaluate(number, params, token)
        except Exception as exc:  # noqa: BLE001 - contained to the trial
            logger.exception("Trial %d: evaluation raised", number)
            return self._failed_record(
                number,
                params,
                distributions,
                {"outcome": "error", "reason": f"exception:{exc.__class__.__name__}: {exc}"},
            )

        if result.outcome is EvaluationOutcome.CANCELLED:
            logger.info("Trial %d: cancelled, discarding", number)
            return None

        attributes: Dict[str, Any] = {
            "stdout": result.stdout,
            "stderr": result.stderr,
        }
        if result.return_code is not None:
            attributes["return_code"] = result.return_code

        if result.outcome is EvaluationOutcome.SCORED and result.score is not None:
            attributes["best_iteration"] = result.iteration_reached
            logger.info(
                "Trial %d finished with value %s (best_iteration=%d)",
                number,
                result.score,
                result.iteration_reached,
            )
            return TrialRecord(
                number=number,
                status=TrialStatus.COMPLETE,
                params=params,
                distributions=distributions,
                attributes=attributes,
                value=result.score,
            )

        attributes["outcome"] = result.outcome.value
        if result.reason is not None:
            attributes["reason"] = result.reason
        logger.warning("Trial %d failed: %s (%s)", number, result.outcome.value, result.reason)
        return self._failed_record(number, params, distributions, attributes)

    @staticmethod
    def _failed_record(
        number: int,
        params: Mapping[str, ParamValue],
        distributions: Mapping[str, BaseDistribution],
        attributes: Mapping[str, Any],
    ) -> TrialRecord:
        return TrialRecord(
            number=number,
            status=TrialStatus.FAILED,
            params=params,
            distributions=distributions,
            attributes=attributes,
        )

    def _write(self, record: TrialRecord) -> None:
        with self._write_lock:
            self.store.persist(record)
            if self.trial_log is not None:
                self.trial_log.log(record)


__all__ = [
    "Evaluator",
    "SchedulerReport",
    "TrialBudget",
    "TrialCounter",
    "TrialScheduler",
    "default_worker_count",
]
