"""Configuration schema and validation for tuning runs."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


#: Command line flag used to pass each tunable parameter to ``ffm-train``.
TRAINER_PARAMETER_FLAGS: Dict[str, str] = {
    "lambda": "-l",
    "eta": "-r",
    "latent": "-k",
}

SUPPORTED_SAMPLERS = ("tpe", "random")


def _default_search_space() -> Dict[str, Dict[str, Any]]:
    return {
        "lambda": {"type": "float", "low": 1e-6, "high": 1.0, "log": True},
        "eta": {"type": "float", "low": 1e-6, "high": 1.0, "log": True},
        "latent": {"type": "int", "low": 1, "high": 16},
    }


class StudyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "ffm-tuning"
    storage: str | None = "sqlite:///db.sqlite3"
    sampler: str = "tpe"
    seed: int | None = None

    @model_validator(mode="after")
    def validate_study(self) -> "StudyConfig":
        if not self.name.strip():
            raise ValueError("study.name must be a non-empty string")
        self.name = self.name.strip()
        if self.storage is not None and not self.storage.strip():
            raise ValueError("study.storage must be a non-empty string or null")
        self.sampler = self.sampler.lower().strip()
        if self.sampler not in SUPPORTED_SAMPLERS:
            raise ValueError(
                "study.sampler must be one of " + ", ".join(SUPPORTED_SAMPLERS)
            )
        return self


class SchedulerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    n_trials: int = 1000
    workers: int | None = None
    fail_fast: bool = False

    @model_validator(mode="after")
    def validate_numbers(self) -> "SchedulerConfig":
        if self.n_trials <= 0:
            raise ValueError("scheduler.n_trials must be a positive integer")
        if self.workers is not None and self.workers <= 0:
            raise ValueError("scheduler.workers must be positive when provided")
        return self


class TrainerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    binary: str = "./ffm-train"
    train_path: str = "./data/train2.txt"
    valid_path: str = "./data/valid2.txt"
    meta_dir: str = "./data/optuna"
    auto_stop_threshold: int = 3
    max_iterations: int = 500
    timeout_sec: float | None = None
    poll_interval: float = Field(default=0.5, gt=0)
    kill_grace_sec: float = Field(default=5.0, ge=0)

    @model_validator(mode="after")
    def validate_trainer(self) -> "TrainerConfig":
        for key in ("binary", "train_path", "valid_path", "meta_dir"):
            if not str(getattr(self, key)).strip():
                raise ValueError(f"trainer.{key} must be a non-empty string")
        if self.auto_stop_threshold <= 0:
            raise ValueError("trainer.auto_stop_threshold must be positive")
        if self.max_iterations <= 0:
            raise ValueError("trainer.max_iterations must be positive")
        if self.timeout_sec is not None and self.timeout_sec <= 0:
            raise ValueError("trainer.timeout_sec must be positive when provided")
        return self


class FloatParam(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    low: float
    high: float
    log: bool = True

    @model_validator(mode="after")
    def validate_float(self) -> "FloatParam":
        if self.type.lower() != "float":
            raise ValueError("Search space entry type must be 'float'")
        if not self.log:
            raise ValueError("float parameters are sampled log-uniformly; log must be true")
        if self.low <= 0:
            raise ValueError("log-uniform parameter requires low > 0")
        if self.low >= self.high:
            raise ValueError("float parameter requires low < high")
        return self


class IntParam(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    low: int
    high: int

    @model_validator(mode="after")
    def validate_int(self) -> "IntParam":
        if self.type.lower() != "int":
            raise ValueError("Search space entry type must be 'int'")
        if self.low >= self.high:
            raise ValueError("int parameter requires low < high")
        return self


PARAMETER_MODELS = {
    "float": FloatParam,
    "int": IntParam,
}


class ArtifactsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_file: str | None = None

    @model_validator(mode="after")
    def validate_paths(self) -> "ArtifactsConfig":
        if self.log_file is not None and not self.log_file.strip():
            raise ValueError("artifacts.log_file must be a non-empty string when provided")
        return self


class TuningConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    study: StudyConfig = Field(default_factory=StudyConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    trainer: TrainerConfig = Field(default_factory=TrainerConfig)
    search_space: Dict[str, Dict[str, Any]] = Field(default_factory=_default_search_space)
    artifacts: ArtifactsConfig = Field(default_factory=ArtifactsConfig)

    @model_validator(mode="after")
    def validate_all(self) -> "TuningConfig":
        if not self.search_space:
            raise ValueError("search_space must define at least one parameter")

        normalised_space: Dict[str, Dict[str, Any]] = {}
        for name, spec in self.search_space.items():
            if name not in TRAINER_PARAMETER_FLAGS:
                raise ValueError(
                    f"search_space.{name} is not a trainer parameter; expected one of "
                    + ", ".join(TRAINER_PARAMETER_FLAGS)
                )
            if not isinstance(spec, Mapping):
                raise ValueError(f"search_space.{name} must be a mapping")
            param_type = str(spec.get("type", "")).lower()
            model_cls = PARAMETER_MODELS.get(param_type)
            if model_cls is None:
                raise ValueError(f"search_space.{name}.type '{param_type}' is not supported")
            normalised_space[name] = model_cls.model_validate(dict(spec)).model_dump()

        self.search_space = normalised_space
        return self


def load_config(path: Path | None) -> TuningConfig:
    """Load and validate a YAML configuration; defaults apply when ``path`` is None."""

    if path is None:
        return TuningConfig()

    if not path.exists():
        raise SystemExit(f"Configuration file not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SystemExit("Configuration root must be a mapping (YAML dictionary).")

    try:
        return TuningConfig.model_validate(data)
    except ValidationError as exc:
        details: List[str] = []
        for error in exc.errors(include_url=False):
            location = ".".join(str(loc) for loc in error["loc"])
            details.append(f"- {location or '<root>'}: {error['msg']}")
        message = "Configuration validation failed:\n" + "\n".join(details)
        raise SystemExit(message) from exc


__all__ = [
    "ArtifactsConfig",
    "SchedulerConfig",
    "StudyConfig",
    "SUPPORTED_SAMPLERS",
    "TRAINER_PARAMETER_FLAGS",
    "TrainerConfig",
    "TuningConfig",
    "load_config",
]
