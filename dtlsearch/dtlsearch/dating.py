"""Search over the relative dating of the species tree."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .config import SearchConfig
from .dated import DatedBackup, DatedTree
from .evaluator import SpeciesTreeLikelihoodEvaluator
from .state import SearchState
from .trees import SpeciesTree

logger = logging.getLogger(__name__)

Score = Callable[[], float]
Notify = Callable[[], None]


def _nothing() -> None:
    return None


@dataclass(frozen=True)
class ScoredBackup:
    ll: float
    backup: DatedBackup


def _local_search(
    dated: DatedTree,
    score: Score,
    current: float,
    config: SearchConfig,
    notify: Notify = _nothing,
) -> float:
    """Hill-climb with ``move_up`` swaps until a sweep gains too little."""
    best = current
    while True:
        sweep_start = best
        rank = 0
        while rank + 1 < len(dated):
            if not dated.move_up(rank):
                rank += 1
                continue
            ll = score()
            if ll > best + config.min_improvement:
                best = ll
                # Step back so the swapped node can keep climbing.
                rank = rank - min(2, rank) + 1
            else:
                dated.move_up(rank)
                notify()
                rank += 1
        if best - sweep_start <= config.date_restart_threshold:
            break
    return best


def perturbate_dates(dated: DatedTree, rng: np.random.Generator, perturbation: float) -> None:
    """Random walk of speciation ranks, scaled by ``perturbation``."""
    n = len(dated)
    if n < 2:
        return
    perturbations = int(2 * n * perturbation)
    max_displacement = max(2, int(math.sqrt(n) * 2 * perturbation))
    for _ in range(perturbations):
        rank = int(rng.integers(0, n))
        displacement = int(rng.integers(1, max_displacement + 1))
        up = bool(rng.integers(0, 2))
        for _ in range(displacement):
            if up:
                if not dated.move_up(rank):
                    break
                rank += 1
            else:
                if not dated.move_down(rank):
                    break
                rank -= 1


def _likelihood_score(evaluator: SpeciesTreeLikelihoodEvaluator) -> Score:
    def score() -> float:
        evaluator.on_species_dates_change()
        return evaluator.compute_likelihood()

    return score


def _perturbation_search(
    dated: DatedTree,
    score: Score,
    current: float,
    rng: np.random.Generator,
    max_trials: int,
    config: SearchConfig,
    notify: Notify = _nothing,
) -> float:
    """Perturb then re-optimize; keep only strict improvements."""
    best = current
    failures = 0
    while failures < max_trials:
        backup = dated.get_backup()
        perturbate_dates(dated, rng, (failures + 1) / max_trials)
        ll = _local_search(dated, score, score(), config, notify)
        if ll > best + config.min_improvement:
            best = ll
            failures = 0
        else:
            dated.restore(backup)
            notify()
            failures += 1
    return best


def optimize_dates(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
    thorough: bool = False,
) -> float:
    """Improve the speciation order; returns the resulting likelihood.

    The search state is read for its configuration and random generator
    only; callers decide whether the result is a new best.
    """
    if not evaluator.is_dated():
        return evaluator.compute_likelihood()
    config = state.config
    dated = tree.dated_tree
    score = _likelihood_score(evaluator)
    notify = evaluator.on_species_dates_change
    best = _local_search(dated, score, evaluator.compute_likelihood(), config, notify)
    if thorough:
        best = _perturbation_search(
            dated, score, best, state.rng, config.dating_max_trials, config, notify
        )
        if evaluator.infers_transfers():
            best = _reconciliation_restarts(tree, evaluator, state, best)
    logger.debug("dates optimized (thorough=%s): ll=%.6f", thorough, best)
    return best


def _reconciliation_restarts(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
    current: float,
) -> float:
    """Climb again from datings that fit the inferred transfers; keep the best."""
    config = state.config
    dated = tree.dated_tree
    score = _likelihood_score(evaluator)
    notify = evaluator.on_species_dates_change
    best, best_backup = current, dated.get_backup()
    candidates = optimize_dates_from_reconciliation(
        tree, evaluator, state, searches=config.dating_reconciliation_searches
    )
    for candidate in candidates:
        dated.restore(candidate.backup)
        notify()
        ll = _local_search(dated, score, candidate.ll, config, notify)
        if ll > best + config.min_improvement:
            best, best_backup = ll, dated.get_backup()
    dated.restore(best_backup)
    notify()
    logger.debug("%d datings from reconciliation tried: ll=%.6f", len(candidates), best)
    return best


def transfer_score(dated: DatedTree, transfers: Sequence[Tuple[int, int, int]]) -> float:
    """Number of observed transfers admissible under the current order."""
    return float(sum(count for count, source, dest in transfers if dated.can_transfer(source, dest)))


def optimize_dates_from_reconciliation(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
    searches: int = 1,
    to_evaluate: Optional[int] = None,
) -> List[ScoredBackup]:
    """Propose datings that fit the transfers of the current reconciliations.

    Each search starts from a random order and climbs the transfer score
    with escalating perturbations. The best candidates are then scored by
    the evaluator. The tree is left at its initial dating.
    """
    config = state.config
    to_evaluate = config.dating_reconciliation_candidates if to_evaluate is None else to_evaluate
    dated = tree.dated_tree
    initial = dated.get_backup()
    transfers = evaluator.get_transfer_information().ranked_pairs()
    if not transfers:
        return []

    def score() -> float:
        return transfer_score(dated, transfers)

    candidates: List[Tuple[float, int, DatedBackup]] = []
    for search in range(searches):
        dated.randomize(state.rng)
        best = _local_search(dated, score, score(), config)
        best = _perturbation_search(
            dated, score, best, state.rng, config.dating_reconciliation_trials, config
        )
        candidates.append((best, search, dated.get_backup()))
    candidates.sort(key=lambda x: (-x[0], x[1]))

    scored: List[ScoredBackup] = []
    for _, _, backup in candidates[:to_evaluate]:
        dated.restore(backup)
        evaluator.on_species_dates_change()
        scored.append(ScoredBackup(evaluator.compute_likelihood(), backup))
    dated.restore(initial)
    evaluator.on_species_dates_change()
    scored.sort(key=lambda x: -x.ll)
    return scored
