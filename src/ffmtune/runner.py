"""Evaluate a parameter vector by running the external ``ffm-train`` trainer."""
from __future__ import annotations

import logging
import math
import os
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Mapping

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .cancellation import CancellationToken
from .config import TRAINER_PARAMETER_FLAGS, TrainerConfig
from .trials import ParamValue

logger = logging.getLogger(__name__)

#: Environment variable that overrides the configured trainer binary.
TRAINER_BIN_ENV = "FFMTUNE_TRAINER_BIN"


class EvaluationOutcome(str, Enum):
    """Classification of a single trainer invocation."""

    SCORED = "scored"
    MALFORMED_OUTPUT = "malformed_output"
    PROCESS_ERROR = "process_error"
    CANCELLED = "cancelled"


class TrainerMeta(BaseModel):
    """Schema of the JSON metadata file written by the trainer."""

    best_iteration: int
    best_score: float = Field(validation_alias=AliasChoices("best_score", "best_va_loss"))

    model_config = ConfigDict(extra="allow")

    @field_validator("best_score")
    @classmethod
    def _validate_score(cls, value: float) -> float:
        if math.isnan(value) or math.isinf(value):
            raise ValueError("best_score must be finite")
        return value


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of :meth:`ObjectiveRunner.evaluate`.

    ``score`` is ``None`` unless the outcome is :attr:`EvaluationOutcome.SCORED`.
    The remaining fields are diagnostics only.
    """

    outcome: EvaluationOutcome
    score: float | None = None
    iteration_reached: int = 0
    stdout: str = ""
    stderr: str = ""
    return_code: int | None = None
    reason: str | None = None
    elapsed_seconds: float = 0.0


class _Interrupted(Exception):
    """Internal signal that the trainer was stopped before it finished."""

    def __init__(self, outcome: EvaluationOutcome, reason: str, stdout: str, stderr: str) -> None:
        super().__init__(reason)
        self.outcome = outcome
        self.reason = reason
        self.stdout = stdout
        self.stderr = stderr


def resolve_trainer_binary(
    configured: str,
    environ: Mapping[str, str] | None = None,
) -> str:
    """Return the trainer binary, honouring the :data:`TRAINER_BIN_ENV` override."""

    env = os.environ if environ is None else environ
    override = env.get(TRAINER_BIN_ENV, "").strip()
    return override or configured


def format_param_value(value: ParamValue) -> str:
    """Serialise a parameter value in a stable, round-trippable form."""

    if isinstance(value, bool):
        raise TypeError("Boolean parameters are not supported by the trainer")
    if isinstance(value, int):
        return str(value)
    return repr(float(value))


class ObjectiveRunner:
    """Turn a suggested parameter vector into a score by running the trainer.

    Each call owns its scratch file (``ffm-meta-<trial>.json`` under
    ``meta_dir``) and its child process. A non-zero exit code is not treated
    as a failure on its own because the trainer exits with status 1 when its
    early-stopping rule triggers; the metadata file decides the outcome.

    When the cancellation token fires while the trainer runs, the child is
    terminated (then killed after ``kill_grace_sec``) and reaped before the
    call returns :attr:`EvaluationOutcome.CANCELLED`.
    """

    def __init__(
        self,
        config: TrainerConfig,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.binary = resolve_trainer_binary(config.binary, environ)
        self.meta_dir = Path(config.meta_dir)

    def scratch_path(self, trial_number: int) -> Path:
        return self.meta_dir / f"ffm-meta-{trial_number}.json"

    def build_command(self, params: Mapping[str, ParamValue], scratch_path: Path) -> List[str]:
        unknown = sorted(set(params) - set(TRAINER_PARAMETER_FLAGS))
        if unknown:
            raise ValueError("Unknown trainer parameters: " + ", ".join(unknown))

        cfg = self.config
        command = [
            self.binary,
            "-p", cfg.valid_path,
            "--auto-stop", "--auto-stop-threshold", str(cfg.auto_stop_threshold),
        ]
        for name, flag in TRAINER_PARAMETER_FLAGS.items():
            if name in params:
                command.extend([flag, format_param_value(params[name])])
        command.extend([
            "-t", str(cfg.max_iterations),
            "--json-meta", str(scratch_path),
            cfg.train_path,
        ])
        return command

    def evaluate(
        self,
        trial_number: int,
        params: Mapping[str, ParamValue],
        token: CancellationToken | None = None,
    ) -> EvaluationResult:
        start = time.perf_counter()
        scratch = self.scratch_path(trial_number)
        command = self.build_command(params, scratch)
        if token is not None and token.cancelled:
            return self._result(EvaluationOutcome.CANCELLED, start, reason="cancelled")

        try:
            scratch.parent.mkdir(parents=True, exist_ok=True)
            scratch.unlink(missing_ok=True)
        except OSError as exc:
            return self._result(
                EvaluationOutcome.PROCESS_ERROR,
                start,
                reason=f"scratch_unavailable: {exc}",
            )

        logger.debug("Trial %d: launching %s", trial_number, " ".join(command))
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            logger.warning("Trial %d: failed to launch trainer: %s", trial_number, exc)
            return self._result(
                EvaluationOutcome.PROCESS_ERROR,
                start,
                reason=f"launch_failed: {exc}",
            )

        try:
            stdout, stderr = self._supervise(process, token, start)
        except _Interrupted as stop:
            if stop.outcome is EvaluationOutcome.CANCELLED:
                logger.info("Trial %d: trainer terminated after cancellation", trial_number)
            else:
                logger.warning("Trial %d: trainer stopped (%s)", trial_number, stop.reason)
            return self._result(
                stop.outcome,
                start,
                stdout=stop.stdout,
                stderr=stop.stderr,
                return_code=process.returncode,
                reason=stop.reason,
            )

        return_code = process.returncode
        if return_code:
            logger.debug("Trial %d: trainer exited with status %d", trial_number, return_code)

        try:
            raw = scratch.read_bytes()
        except OSError as exc:
            return self._result(
                EvaluationOutcome.PROCESS_ERROR,
                start,
                stdout=stdout,
                stderr=stderr,
                return_code=return_code,
                reason=f"missing_output: {exc.__class__.__name__}",
            )

        try:
            meta = TrainerMeta.model_validate_json(raw.decode("utf-8"))
        except UnicodeDecodeError:
            return self._result(
                EvaluationOutcome.MALFORMED_OUTPUT,
                start,
                stdout=stdout,
                stderr=stderr,
                return_code=return_code,
                reason="invalid_meta: not utf-8",
            )
        except ValidationError as exc:
            return self._result(
                EvaluationOutcome.MALFORMED_OUTPUT,
                start,
                stdout=stdout,
                stderr=stderr,
                return_code=return_code,
                reason=f"invalid_meta: {exc.error_count()} error(s)",
            )

        if meta.best_iteration == 0 and meta.best_score == 0:
            return self._result(
                EvaluationOutcome.MALFORMED_OUTPUT,
                start,
                stdout=stdout,
                stderr=stderr,
                return_code=return_code,
                reason="empty_meta",
            )

        return self._result(
            EvaluationOutcome.SCORED,
            start,
            score=meta.best_score,
            iteration_reached=meta.best_iteration,
            stdout=stdout,
            stderr=stderr,
            return_code=return_code,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _supervise(
        self,
        process: subprocess.Popen,
        token: CancellationToken | None,
        start: float,
    ) -> tuple[str, str]:
        timeout = self.config.timeout_sec
        deadline = start + timeout if timeout is not None else None
        while True:
            if token is not None and token.cancelled:
                stdout, stderr = self._terminate(process)
                raise _Interrupted(EvaluationOutcome.CANCELLED, "cancelled", stdout, stderr)

            wait = self.config.poll_interval
            if deadline is not None:
                remaining = deadline - time.perf_counter()
                if remaining <= 0:
                    stdout, stderr = self._terminate(process)
                    raise _Interrupted(EvaluationOutcome.PROCESS_ERROR, "timeout", stdout, stderr)
                wait = min(wait, remaining)

            try:
                stdout, stderr = process.communicate(timeout=wait)
            except subprocess.TimeoutExpired:
                # Retrying communicate() keeps the output gathered so far.
                continue
            return stdout or "", stderr or ""

    def _terminate(self, process: subprocess.Popen) -> tuple[str, str]:
        process.terminate()
        try:
            stdout, stderr = process.communicate(timeout=self.config.kill_grace_sec)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, stderr = process.communicate()
        return stdout or "", stderr or ""

    def _result(
        self,
        outcome: EvaluationOutcome,
        start: float,
        *,
        score: float | None = None,
        iteration_reached: int = 0,
        stdout: str = "",
        stderr: str = "",
        return_code: int | None = None,
        reason: str | None = None,
    ) -> EvaluationResult:
        return EvaluationResult(
            outcome=outcome,
            score=score,
            iteration_reached=iteration_reached,
            stdout=stdout,
            stderr=stderr,
            return_code=return_code,
            reason=reason,
            elapsed_seconds=time.perf_counter() - start,
        )


__all__ = [
    "EvaluationOutcome",
    "EvaluationResult",
    "ObjectiveRunner",
    "TRAINER_BIN_ENV",
    "TrainerMeta",
    "format_param_value",
    "resolve_trainer_binary",
]
