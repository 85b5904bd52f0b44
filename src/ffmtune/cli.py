"""Command line interface for running a tuning study."""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Sequence

import optuna

from .config import TuningConfig, load_config
from .errors import StorageError, TrialFailedError

if TYPE_CHECKING:
    from .tuning import TuningResult


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Tune ffm-train hyperparameters with concurrent trials."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional YAML configuration file; built-in defaults apply otherwise.",
    )
    parser.add_argument("--n-trials", type=int, help="Override scheduler.n_trials.")
    parser.add_argument("--workers", type=int, help="Override scheduler.workers.")
    parser.add_argument("--study-name", help="Override study.name.")
    parser.add_argument(
        "--storage",
        help="Override study.storage (an Optuna storage URL, or 'memory').",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging verbosity.",
    )
    parser.add_argument(
        "--as-json",
        action="store_true",
        help="Print the validated configuration as JSON and exit.",
    )
    parser.add_argument(
        "--summarize",
        action="store_true",
        help="Only print a summary of the configuration without running trials.",
    )
    return parser.parse_args(argv)


def apply_overrides(config: TuningConfig, args: argparse.Namespace) -> TuningConfig:
    data = config.model_dump(mode="python")
    if args.n_trials is not None:
        data["scheduler"]["n_trials"] = args.n_trials
    if args.workers is not None:
        data["scheduler"]["workers"] = args.workers
    if args.study_name is not None:
        data["study"]["name"] = args.study_name
    if args.storage is not None:
        data["study"]["storage"] = None if args.storage == "memory" else args.storage
    try:
        return TuningConfig.model_validate(data)
    except ValueError as exc:
        raise SystemExit(f"Invalid override: {exc}") from exc


def summarize_config(config: Dict[str, Any]) -> str:
    study = config.get("study", {})
    scheduler = config.get("scheduler", {})
    trainer = config.get("trainer", {})
    space = config.get("search_space", {})

    lines = [
        f"Study name     : {study.get('name', 'N/A')}",
        f"Storage        : {study.get('storage') or 'in-memory'}",
        f"Sampler        : {study.get('sampler', 'N/A')}",
        "",
        "[Scheduler]",
        f"  n_trials     : {scheduler.get('n_trials', 'N/A')}",
        f"  workers      : {scheduler.get('workers') or 'auto'}",
        f"  fail_fast    : {'yes' if scheduler.get('fail_fast') else 'no'}",
        "",
        "[Trainer]",
        f"  binary       : {trainer.get('binary', 'N/A')}",
        f"  train        : {trainer.get('train_path', 'N/A')}",
        f"  valid        : {trainer.get('valid_path', 'N/A')}",
        f"  max_iter     : {trainer.get('max_iterations', 'N/A')}",
        "",
        "[Search space]",
    ]
    for name, spec in space.items():
        scale = " (log)" if spec.get("log") else ""
        lines.append(f"  {name:<12} : {spec.get('type')} [{spec.get('low')}, {spec.get('high')}]{scale}")
    return "\n".join(lines)


def format_result(result: "TuningResult") -> str:
    report = result.report
    lines = [
        "Tuning finished.",
        f"Study           : {result.study_name}",
        f"Trials attempted: {report.attempted}",
        f"  complete      : {report.completed}",
        f"  failed        : {report.failed}",
        f"  cancelled     : {report.cancelled}",
    ]
    if result.cancelled_by:
        lines.append(f"Interrupted by  : {result.cancelled_by}")
    if result.best_value is None:
        lines.append("Best value      : n/a (no complete trials)")
        return "\n".join(lines)
    lines.append(f"Best value      : {result.best_value} (trial {result.best_number})")
    lines.append("Best parameters :")
    lines.extend([f"  - {name}: {value}" for name, value in result.best_params.items()])
    return "\n".join(lines)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    # Optuna logs every told trial of the sampler study; keep only its warnings.
    optuna.logging.set_verbosity(optuna.logging.WARNING)

    config = apply_overrides(load_config(args.config), args)
    config_dict = config.model_dump(mode="python")

    if args.as_json:
        print(json.dumps(config_dict, indent=2, ensure_ascii=False))
        return

    if args.summarize:
        print(summarize_config(config_dict))
        return

    from .tuning import run_tuning

    try:
        result = run_tuning(config)
    except StorageError as exc:
        raise SystemExit(f"Storage failure: {exc}") from exc
    except TrialFailedError as exc:
        raise SystemExit(f"Stopped after failed trial: {exc}") from exc
    print(format_result(result))


if __name__ == "__main__":
    main()
