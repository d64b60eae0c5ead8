"""Likelihood evaluators consumed by the species-tree search."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .models import EVENT_TYPES, BaseReconciliationModel, GeneFamily, build_model
from .parallel import ParallelContext
from .parameters import ModelParameters, ModelParametrization, RatesVector, RecModelInfo
from .rates import OptimizationSettings, optimize_parameters, optimize_parameters_global
from .trees import SpeciesTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferInformation:
    """Transfer statistics summed over every family.

    ``frequencies[i, j]`` counts transfers from species node ``i`` to
    species node ``j``.
    """

    frequencies: np.ndarray
    per_species_events: np.ndarray
    potential_transfers: np.ndarray

    @classmethod
    def empty(cls, node_count: int) -> "TransferInformation":
        return cls(
            np.zeros((node_count, node_count), dtype=int),
            np.zeros((node_count, len(EVENT_TYPES)), dtype=int),
            np.zeros((node_count, node_count), dtype=int),
        )

    def ranked_pairs(self, min_count: int = 1) -> List[Tuple[int, int, int]]:
        """``(count, source, dest)`` by decreasing count, then by index."""
        sources, dests = np.nonzero(self.frequencies >= max(min_count, 1))
        pairs = [(int(self.frequencies[s, d]), int(s), int(d)) for s, d in zip(sources, dests)]
        pairs.sort(key=lambda x: (-x[0], x[1], x[2]))
        return pairs


class SpeciesTreeLikelihoodEvaluator(ABC):
    """Scores the current species tree.

    Implementations are registered as listeners of the species tree they
    evaluate. Rollback points form an explicit stack: every
    ``push_rollback`` is matched by ``pop_and_apply_rollback`` or
    ``discard_rollback``.
    """

    def __init__(self) -> None:
        self._rollbacks: List[object] = []

    @abstractmethod
    def compute_likelihood(self, per_family_ll: Optional[List[float]] = None) -> float:
        ...

    def compute_likelihood_fast(self) -> float:
        return self.compute_likelihood()

    def provides_fast_likelihood(self) -> bool:
        return False

    def is_dated(self) -> bool:
        return False

    @abstractmethod
    def optimize_model_rates(self, thorough: bool = False) -> float:
        ...

    def on_species_tree_change(self, nodes: Optional[set[int]]) -> None:
        return None

    def on_species_dates_change(self) -> None:
        return None

    def infers_transfers(self) -> bool:
        return False

    def get_transfer_information(self) -> TransferInformation:
        raise NotImplementedError(f"{type(self).__name__} does not infer transfers")

    def _snapshot(self) -> object:
        return None

    def _apply_snapshot(self, snapshot: object) -> None:
        return None

    def push_rollback(self) -> None:
        self._rollbacks.append(self._snapshot())

    def pop_and_apply_rollback(self) -> None:
        if not self._rollbacks:
            raise ValueError("pop_and_apply_rollback without a matching push_rollback")
        self._apply_snapshot(self._rollbacks.pop())

    def discard_rollback(self) -> None:
        if not self._rollbacks:
            raise ValueError("discard_rollback without a matching push_rollback")
        self._rollbacks.pop()

    @property
    def rollback_depth(self) -> int:
        return len(self._rollbacks)


@dataclass(frozen=True)
class _EvaluatorSnapshot:
    rates: Tuple[float, ...]
    model_states: Tuple[object, ...]


class ReconciliationEvaluator(SpeciesTreeLikelihoodEvaluator):
    """Sums the log-likelihoods of the families held by this worker.

    Families are split across workers by contiguous ranges; every score is
    reduced across all workers.
    """

    def __init__(
        self,
        species_tree: SpeciesTree,
        families: Sequence[GeneFamily],
        info: RecModelInfo,
        *,
        context: Optional[ParallelContext] = None,
        settings: Optional[OptimizationSettings] = None,
        rates: Optional[Sequence[float]] = None,
        optimize_rates: bool = True,
    ):
        super().__init__()
        self._tree = species_tree
        self._info = info
        self._context = context or ParallelContext()
        self._settings = settings or OptimizationSettings()
        self._optimize_rates = optimize_rates
        self._family_count = len(families)
        self._begin = self._context.get_begin(len(families))
        end = self._context.get_end(len(families))
        self._models: List[BaseReconciliationModel] = [
            build_model(species_tree, family, info) for family in families[self._begin : end]
        ]
        self._parameters = ModelParameters.from_global(
            info, rates, families=len(families), species_nodes=species_tree.node_count
        )
        self._last_ll = -np.inf
        self._apply_parameters(self._parameters)
        species_tree.add_listener(self)

    @property
    def parameters(self) -> ModelParameters:
        return self._parameters.copy()

    @property
    def models(self) -> List[BaseReconciliationModel]:
        return list(self._models)

    def is_dated(self) -> bool:
        return self._info.is_dated

    def _apply_parameters(self, parameters: ModelParameters) -> None:
        self._parameters = parameters
        for i, model in enumerate(self._models):
            model.set_rates(parameters.family_rates(self._begin + i))

    def compute_likelihood(self, per_family_ll: Optional[List[float]] = None) -> float:
        local = [model.compute_log_likelihood() for model in self._models]
        total = self._context.sum_float(sum(local))
        if per_family_ll is not None:
            per_family_ll[:] = self._context.concatenate(local)
        self._last_ll = total
        return total

    def optimize_model_rates(self, thorough: bool = False) -> float:
        if not self._optimize_rates or self._info.free_parameters == 0:
            return self.compute_likelihood()
        settings = self._settings if thorough else self._settings.fast(self._last_ll)
        if self._info.parametrization == ModelParametrization.PER_FAMILY:
            self._optimize_per_family(settings, thorough)
        else:
            if self._info.parametrization == ModelParametrization.PER_SPECIES and thorough:
                self._optimize_per_species(settings)
            else:
                self._optimize_shared(settings, thorough)
        ll = self.compute_likelihood()
        logger.info("rates optimized (thorough=%s): ll=%.6f", thorough, ll)
        return ll

    def _objective(self, template: ModelParameters):
        def objective(free: np.ndarray) -> float:
            self._apply_parameters(template.with_free_vector(free))
            return self.compute_likelihood()

        return objective

    def _optimize_shared(self, settings: OptimizationSettings, thorough: bool) -> None:
        template = self._parameters.copy()
        start = RatesVector(template.free_vector())
        optimizer = optimize_parameters_global if thorough else optimize_parameters
        best = optimizer(self._objective(template), start, settings)
        self._apply_parameters(template.with_free_vector(best.values))

    def _optimize_per_species(self, settings: OptimizationSettings) -> None:
        """Fit shared rates first, then let every species node depart from them."""
        info = self._info
        shared_info = RecModelInfo(
            info.model,
            ModelParametrization.GLOBAL,
            info.prune_species_tree,
            info.transfer_constraint,
            info.fixed_rates,
        )
        shared = ModelParameters.from_global(shared_info, self._parameters.family_rates(0).mean(axis=0))

        def shared_objective(free: np.ndarray) -> float:
            rates = shared.with_free_vector(free).rates
            return self._set_all_rates(np.tile(rates, (self._tree.node_count, 1)))

        best = optimize_parameters_global(shared_objective, RatesVector(shared.free_vector()), settings)
        replicated = ModelParameters.from_global(
            info,
            shared.with_free_vector(best.values).rates,
            families=self._family_count,
            species_nodes=self._tree.node_count,
        )
        self._apply_parameters(replicated)
        self._optimize_shared(settings, thorough=False)

    def _set_all_rates(self, per_species: np.ndarray) -> float:
        for model in self._models:
            model.set_rates(per_species)
        return self.compute_likelihood()

    def _optimize_per_family(self, settings: OptimizationSettings, thorough: bool) -> None:
        template = self._parameters.copy()
        local: List[float] = []
        optimizer = optimize_parameters_global if thorough else optimize_parameters
        with self._context.sequential():
            for i, model in enumerate(self._models):
                family = self._begin + i
                info = self._info

                def objective(free: np.ndarray, model: BaseReconciliationModel = model) -> float:
                    model.set_rates(info.complete_rates(free))
                    return model.compute_log_likelihood()

                start = RatesVector(info.free_subset(template.family_rates(family)))
                best = optimizer(objective, start, settings)
                local.extend(best.values)
                model.set_rates(info.complete_rates(best.values))
        # Every worker needs the rates of every family for its rollback snapshots.
        self._apply_parameters(template.with_free_vector(self._context.concatenate(local)))

    def on_species_tree_change(self, nodes: Optional[set[int]]) -> None:
        for model in self._models:
            model.on_species_tree_change(nodes)

    def on_species_dates_change(self) -> None:
        for model in self._models:
            model.on_species_dates_change()

    def infers_transfers(self) -> bool:
        return self._info.infers_transfers

    def get_transfer_information(self) -> TransferInformation:
        n = self._tree.node_count
        frequencies = np.zeros((n, n), dtype=int)
        events = np.zeros((n, len(EVENT_TYPES)), dtype=int)
        for model in self._models:
            for source, dest in model.transfer_events():
                frequencies[source, dest] += 1
            events += model.event_counts()
        potential = np.zeros((n, n), dtype=int)
        dated = self._tree.dated_tree
        for source in range(n):
            for dest in range(n):
                if source != dest and (not self.is_dated() or dated.can_transfer(source, dest)):
                    potential[source, dest] = 1
        return TransferInformation(
            self._context.sum_array(frequencies),
            self._context.sum_array(events),
            potential,
        )

    def _snapshot(self) -> _EvaluatorSnapshot:
        return _EvaluatorSnapshot(
            tuple(self._parameters.rates.tolist()),
            tuple(model.get_state() for model in self._models),
        )

    def _apply_snapshot(self, snapshot: object) -> None:
        if not isinstance(snapshot, _EvaluatorSnapshot):
            raise ValueError(f"not a reconciliation evaluator snapshot: {snapshot!r}")
        parameters = self._parameters.copy()
        parameters.rates = np.array(snapshot.rates, dtype=float)
        self._apply_parameters(parameters)
        for model, state in zip(self._models, snapshot.model_states):
            model.set_state(state)
