"""Reconciliation model descriptors and rate vectors."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

import numpy as np


class RecModel(str, Enum):
    PARSIMONY_D = "parsimony-d"
    PARSIMONY_DTL = "parsimony-dtl"
    SIMPLE_DS = "simple-ds"


class TransferConstraint(str, Enum):
    NONE = "none"
    RELDATED = "reldated"


class ModelParametrization(str, Enum):
    GLOBAL = "global"
    PER_FAMILY = "per-family"
    PER_SPECIES = "per-species"


_FREE_PARAMETERS = {
    RecModel.PARSIMONY_D: (),
    RecModel.PARSIMONY_DTL: (),
    RecModel.SIMPLE_DS: ("D",),
}

_DEFAULT_RATE = 0.2


def parameter_names(model: RecModel) -> tuple[str, ...]:
    return _FREE_PARAMETERS[RecModel(model)]


def free_parameter_count(model: RecModel) -> int:
    return len(parameter_names(model))


@dataclass(frozen=True)
class RecModelInfo:
    """Reconciliation model choice and the options attached to it."""

    model: RecModel = RecModel.SIMPLE_DS
    parametrization: ModelParametrization = ModelParametrization.GLOBAL
    prune_species_tree: bool = True
    transfer_constraint: TransferConstraint = TransferConstraint.NONE
    fixed_rates: tuple[tuple[str, float], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "model", RecModel(self.model))
        object.__setattr__(self, "parametrization", ModelParametrization(self.parametrization))
        object.__setattr__(self, "transfer_constraint", TransferConstraint(self.transfer_constraint))
        names = parameter_names(self.model)
        for name, value in self.fixed_rates:
            if name not in names:
                raise ValueError(f"unknown rate {name!r} for model {self.model.value}")
            if value < 0:
                raise ValueError("fixed rates must be >= 0")

    @property
    def parameter_names(self) -> tuple[str, ...]:
        return parameter_names(self.model)

    @property
    def free_parameters(self) -> int:
        fixed = {name for name, _ in self.fixed_rates}
        return sum(1 for name in self.parameter_names if name not in fixed)

    @property
    def per_family_rates(self) -> bool:
        return self.parametrization == ModelParametrization.PER_FAMILY

    @property
    def is_dated(self) -> bool:
        return self.transfer_constraint == TransferConstraint.RELDATED

    @property
    def infers_transfers(self) -> bool:
        return self.model == RecModel.PARSIMONY_DTL

    def default_rates(self) -> np.ndarray:
        return np.full(len(self.parameter_names), _DEFAULT_RATE, dtype=float)

    def complete_rates(self, free_rates: Sequence[float]) -> np.ndarray:
        """Merge optimized free rates with the user-fixed ones."""
        fixed = dict(self.fixed_rates)
        free = iter(np.asarray(free_rates, dtype=float))
        return np.array(
            [fixed[name] if name in fixed else next(free) for name in self.parameter_names],
            dtype=float,
        )

    def free_subset(self, rates: Sequence[float]) -> np.ndarray:
        fixed = dict(self.fixed_rates)
        return np.array(
            [value for name, value in zip(self.parameter_names, rates) if name not in fixed],
            dtype=float,
        )


@dataclass
class RatesVector:
    """Non-negative rate values paired with the score of their last evaluation."""

    values: np.ndarray
    score: float = -np.inf

    def __post_init__(self) -> None:
        self.values = np.asarray(self.values, dtype=float).copy()

    @property
    def dimensions(self) -> int:
        return int(self.values.size)

    def copy(self) -> "RatesVector":
        return RatesVector(self.values.copy(), self.score)

    def ensure_positivity(self) -> "RatesVector":
        self.values = np.maximum(self.values, 0.0)
        return self

    def distance(self, other: "RatesVector") -> float:
        return float(np.linalg.norm(self.values - other.values))

    def __repr__(self) -> str:
        rendered = ", ".join(f"{v:.6g}" for v in self.values)
        return f"RatesVector([{rendered}], score={self.score:.6f})"


@dataclass
class ModelParameters:
    """Rates of a model, laid out according to its parametrization.

    ``rates`` holds ``k`` values for GLOBAL, ``families * k`` values for
    PER_FAMILY and ``species_nodes * k`` values for PER_SPECIES, where ``k``
    is the number of model parameters.
    """

    info: RecModelInfo
    rates: np.ndarray
    families: int = 1
    species_nodes: int = 1
    score: float = -np.inf
    _k: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._k = len(self.info.parameter_names)
        self.rates = np.asarray(self.rates, dtype=float).copy()
        if self.rates.size != self._blocks() * self._k:
            raise ValueError(
                f"expected {self._blocks() * self._k} rates for {self.info.parametrization.value} "
                f"parametrization, got {self.rates.size}"
            )

    @classmethod
    def from_global(
        cls,
        info: RecModelInfo,
        global_rates: Sequence[float] | None = None,
        *,
        families: int = 1,
        species_nodes: int = 1,
    ) -> "ModelParameters":
        base = info.default_rates() if global_rates is None else np.asarray(global_rates, dtype=float)
        base = info.complete_rates(info.free_subset(base))
        blocks = _block_count(info.parametrization, families, species_nodes)
        return cls(info, np.tile(base, blocks), families=families, species_nodes=species_nodes)

    def _blocks(self) -> int:
        return _block_count(self.info.parametrization, self.families, self.species_nodes)

    def copy(self) -> "ModelParameters":
        return ModelParameters(
            self.info,
            self.rates.copy(),
            families=self.families,
            species_nodes=self.species_nodes,
            score=self.score,
        )

    def family_rates(self, family: int) -> np.ndarray:
        """Rates seen by one family: ``(k,)`` or ``(species_nodes, k)``."""
        if self.info.parametrization == ModelParametrization.PER_FAMILY:
            return self.rates[family * self._k : (family + 1) * self._k].copy()
        if self.info.parametrization == ModelParametrization.PER_SPECIES:
            return self.rates.reshape(self.species_nodes, self._k).copy()
        return self.rates.copy()

    def set_family_rates(self, family: int, values: Sequence[float]) -> None:
        if self.info.parametrization != ModelParametrization.PER_FAMILY:
            raise ValueError("per-family rates require the per-family parametrization")
        self.rates[family * self._k : (family + 1) * self._k] = np.asarray(values, dtype=float)

    def free_vector(self) -> np.ndarray:
        """Free rates of every block, concatenated."""
        if self._k == 0:
            return np.zeros(0)
        blocks = self.rates.reshape(-1, self._k)
        return np.concatenate([self.info.free_subset(block) for block in blocks])

    def with_free_vector(self, free: Sequence[float]) -> "ModelParameters":
        free = np.asarray(free, dtype=float)
        width = self.info.free_parameters
        blocks = [
            self.info.complete_rates(free[i * width : (i + 1) * width]) for i in range(self._blocks())
        ]
        rates = np.concatenate(blocks) if blocks else np.zeros(0)
        return ModelParameters(
            self.info, rates, families=self.families, species_nodes=self.species_nodes
        )


def _block_count(parametrization: ModelParametrization, families: int, species_nodes: int) -> int:
    if parametrization == ModelParametrization.PER_FAMILY:
        return families
    if parametrization == ModelParametrization.PER_SPECIES:
        return species_nodes
    return 1
