"""Top-level tuning run: storage, sampler, workers, signals and the final summary."""
from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

from .aggregation import best_of
from .cancellation import CancellationController, CancellationToken
from .config import TuningConfig
from .errors import NoCompleteTrialsError
from .runner import ObjectiveRunner
from .scheduler import SchedulerReport, TrialScheduler
from .storage import TrialLog, TrialStore
from .suggestion import OptunaSuggester, build_sampler
from .trials import ParameterDomain, ParamValue

logger = logging.getLogger(__name__)


@dataclass
class TuningResult:
    """Container for summarising a tuning run."""

    study_name: str
    report: SchedulerReport
    best_value: float | None = None
    best_params: Dict[str, ParamValue] = field(default_factory=dict)
    best_number: int | None = None
    cancelled_by: str | None = None


def build_domains(search_space: Mapping[str, Mapping[str, Any]]) -> List[ParameterDomain]:
    return [ParameterDomain.from_spec(name, spec) for name, spec in search_space.items()]


def run_tuning(
    config: TuningConfig,
    *,
    token: CancellationToken | None = None,
    install_signal_handlers: bool = True,
) -> TuningResult:
    """Execute the tuning loop described by ``config``.

    Raises :class:`~ffmtune.errors.StorageError` before any worker starts
    when the study cannot be created or loaded.
    """

    store = TrialStore.open(config.study.name, config.study.storage)
    sampler = build_sampler(config.study.sampler, config.study.seed)
    suggester = OptunaSuggester(sampler, history=store.trials())
    runner = ObjectiveRunner(config.trainer)
    domains = build_domains(config.search_space)
    token = token if token is not None else CancellationToken()

    # Signal handlers can only be installed from the main thread.
    use_signals = (
        install_signal_handlers and threading.current_thread() is threading.main_thread()
    )
    controller = CancellationController(token)
    with contextlib.ExitStack() as stack:
        trial_log = None
        if config.artifacts.log_file:
            trial_log = stack.enter_context(
                TrialLog(Path(config.artifacts.log_file), [domain.name for domain in domains])
            )

        scheduler = TrialScheduler(
            suggester,
            store,
            runner,
            domains,
            workers=config.scheduler.workers,
            fail_fast=config.scheduler.fail_fast,
            trial_log=trial_log,
        )
        stack.callback(controller.close)
        if use_signals:
            controller.start()
        report = scheduler.run(config.scheduler.n_trials, token)

    received = controller.received_signal
    result = TuningResult(
        study_name=store.study_name,
        report=report,
        cancelled_by=received.name if received is not None else None,
    )
    try:
        best = best_of(store)
    except NoCompleteTrialsError:
        logger.warning("No complete trials in study '%s'", store.study_name)
        return result

    result.best_value = best.value
    result.best_params = dict(best.params)
    result.best_number = best.number
    logger.info(
        "Best evaluation=%s (trial %d, %s)",
        best.value,
        best.number,
        ", ".join(f"{name}={value}" for name, value in best.params.items()),
    )
    return result


__all__ = ["TuningResult", "build_domains", "run_tuning"]
