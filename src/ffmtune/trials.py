"""Trial records and parameter domains shared by the scheduler and storage."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping

from optuna.distributions import BaseDistribution, FloatDistribution, IntDistribution


ParamValue = float | int
"""Concrete value types a parameter domain can produce."""


class TrialStatus(str, Enum):
    """Lifecycle states of a trial."""

    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class DomainKind(str, Enum):
    """Supported parameter domain shapes."""

    LOG_UNIFORM = "log_uniform"
    INT = "int"


@dataclass(frozen=True)
class ParameterDomain:
    """Search range for a single named parameter."""

    name: str
    kind: DomainKind
    low: float
    high: float

    def to_distribution(self) -> BaseDistribution:
        if self.kind is DomainKind.LOG_UNIFORM:
            return FloatDistribution(float(self.low), float(self.high), log=True)
        return IntDistribution(int(self.low), int(self.high))

    @classmethod
    def from_spec(cls, name: str, spec: Mapping[str, Any]) -> "ParameterDomain":
        """Build a domain from a validated ``search_space`` entry."""

        param_type = str(spec.get("type", "")).lower()
        if param_type == "float":
            if not spec.get("log", False):
                raise ValueError(f"search_space.{name} must be log-uniform (log: true)")
            return cls(name, DomainKind.LOG_UNIFORM, float(spec["low"]), float(spec["high"]))
        if param_type == "int":
            return cls(name, DomainKind.INT, int(spec["low"]), int(spec["high"]))
        raise ValueError(f"Unsupported parameter type for '{name}': {param_type}")


@dataclass(frozen=True)
class TrialRecord:
    """Final, immutable record of one evaluation attempt.

    ``value`` is only meaningful when ``status`` is :attr:`TrialStatus.COMPLETE`.
    Lower values are better.
    """

    number: int
    status: TrialStatus
    params: Mapping[str, ParamValue] = field(default_factory=dict)
    distributions: Mapping[str, BaseDistribution] = field(default_factory=dict)
    attributes: Mapping[str, str] = field(default_factory=dict)
    value: float | None = None

    def __post_init__(self) -> None:
        # Freeze the mappings so a persisted record cannot be edited in place.
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))
        object.__setattr__(self, "distributions", MappingProxyType(dict(self.distributions)))
        object.__setattr__(
            self,
            "attributes",
            MappingProxyType({str(k): str(v) for k, v in self.attributes.items()}),
        )
        if self.status is TrialStatus.COMPLETE and self.value is None:
            raise ValueError(f"Complete trial {self.number} requires a value")
        if self.status is not TrialStatus.COMPLETE and self.value is not None:
            raise ValueError(f"Only complete trials carry a value (trial {self.number})")

    @property
    def is_complete(self) -> bool:
        return self.status is TrialStatus.COMPLETE

    def params_dict(self) -> Dict[str, ParamValue]:
        return dict(self.params)


__all__ = [
    "DomainKind",
    "ParamValue",
    "ParameterDomain",
    "TrialRecord",
    "TrialStatus",
]
