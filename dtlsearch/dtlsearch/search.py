"""SPR and transfer-guided topology search."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import numpy as np

from .dating import optimize_dates
from .evaluator import SpeciesTreeLikelihoodEvaluator, TransferInformation
from .operators import (
    apply_spr,
    can_apply_spr,
    get_possible_prunes,
    get_possible_regrafts,
    reverse_spr,
)
from .state import SearchState
from .trees import SpeciesTree

logger = logging.getLogger(__name__)


def _ensure_best_ll(evaluator: SpeciesTreeLikelihoodEvaluator, state: SearchState) -> None:
    if state.best_ll == -np.inf:
        state.best_ll = evaluator.compute_likelihood()


def try_spr(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
    prune: int,
    regraft: int,
) -> bool:
    """Apply one SPR move and keep it only if it beats the best likelihood.

    A rejected move leaves topology, dating and evaluator state exactly as
    they were.
    """
    if not can_apply_spr(tree, prune, regraft):
        return False
    config = state.config
    dated = tree.dated_tree
    dated_backup = dated.get_backup()
    evaluator.push_rollback()
    rollback = apply_spr(tree, prune, regraft)
    if config.rates_per_move:
        evaluator.optimize_model_rates(thorough=False)
    promising = True
    if evaluator.provides_fast_likelihood():
        promising = state.is_improvement(evaluator.compute_likelihood_fast())
    if promising:
        optimize_dates(tree, evaluator, state)
        per_family_ll: List[float] = []
        ll = evaluator.compute_likelihood(per_family_ll)
        if state.is_improvement(ll) and state.bootstrap_accepts(per_family_ll, sorted(rollback.invalidated)):
            evaluator.discard_rollback()
            logger.debug("accepted SPR prune=%s regraft=%s", tree.label(prune), tree.label(regraft))
            state.better_tree_callback(ll, per_family_ll)
            return True
    reverse_spr(tree, rollback)
    dated.restore(dated_backup)
    evaluator.on_species_dates_change()
    evaluator.pop_and_apply_rollback()
    return False


def _neighbourhood(tree: SpeciesTree, prune: int) -> List[int]:
    candidates = [prune, tree.parent(prune), tree.sibling(prune)]
    out: List[int] = []
    for node in candidates:
        if node is not None and node != tree.root and node not in out:
            out.append(node)
    return out


def very_local_search(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
    prune: int,
) -> bool:
    """Short-radius SPR moves around a node that was just moved."""
    improved = False
    while True:
        moved = False
        for candidate in _neighbourhood(tree, prune):
            for regraft in get_possible_regrafts(tree, candidate, state.config.very_local_radius):
                if try_spr(tree, evaluator, state, candidate, regraft):
                    moved = improved = True
                    prune = candidate
                    break
            if moved:
                break
        if not moved:
            return improved


def spr_round(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
    radius: int,
) -> bool:
    """One pass over every prune in index order.

    After an accepted move the remaining regrafts of that prune are
    dropped and the pass goes on with the next prune.
    """
    improved = False
    for prune in get_possible_prunes(tree):
        for regraft in get_possible_regrafts(tree, prune, radius):
            if try_spr(tree, evaluator, state, prune, regraft):
                improved = True
                very_local_search(tree, evaluator, state, prune)
                break
    return improved


def spr_search(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
    radius: Optional[int] = None,
) -> float:
    radius = state.config.spr_radius if radius is None else radius
    _ensure_best_ll(evaluator, state)
    logger.info("SPR search (radius=%d) from ll=%.6f", radius, state.best_ll)
    while spr_round(tree, evaluator, state, radius):
        logger.info("SPR round improved: ll=%.6f", state.best_ll)
    logger.info("after SPR search: ll=%.6f", state.best_ll)
    return state.best_ll


def transfer_moves(tree: SpeciesTree, info: TransferInformation, state: SearchState) -> List[Tuple[int, int]]:
    """SPR moves that bring transfer recipients next to their donors.

    Moves come by decreasing transfer count. The recipient is tried as the
    prune first, then its parent.
    """
    config = state.config
    moves: List[Tuple[int, int]] = []
    for _, source, dest in info.ranked_pairs(config.min_transfers):
        for prune in (dest, tree.parent(dest)):
            if prune is None or not can_apply_spr(tree, prune, source):
                continue
            if (prune, source) not in moves:
                moves.append((prune, source))
        if len(moves) >= config.transfer_max_trials:
            break
    return moves[: config.transfer_max_trials]


def transfer_round(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
) -> bool:
    moves = transfer_moves(tree, evaluator.get_transfer_information(), state)
    logger.debug("transfer round: %d candidate moves", len(moves))
    improved = False
    for prune, regraft in moves:
        if try_spr(tree, evaluator, state, prune, regraft):
            improved = True
            very_local_search(tree, evaluator, state, prune)
    return improved


def transfer_search(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
) -> float:
    _ensure_best_ll(evaluator, state)
    logger.info("transfer search from ll=%.6f", state.best_ll)
    while transfer_round(tree, evaluator, state):
        logger.info("transfer round improved: ll=%.6f", state.best_ll)
    logger.info("after transfer search: ll=%.6f", state.best_ll)
    return state.best_ll
