"""Branch-and-bound search over root placements."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

import numpy as np

from .dated import DatedBackup
from .dating import optimize_dates
from .evaluator import SpeciesTreeLikelihoodEvaluator
from .operators import can_change_root, change_root, revert_change_root
from .state import SearchState
from .trees import SpeciesTree, Taxon

logger = logging.getLogger(__name__)

RootKey = FrozenSet[Taxon]
TreePerFamilyLL = List[Tuple[str, List[float]]]


def _split_key(below: FrozenSet[Taxon], everything: FrozenSet[Taxon]) -> RootKey:
    other = everything - below
    return min(below, other, key=lambda side: sorted(side))


def root_key(tree: SpeciesTree) -> RootKey:
    """Identifies the current root placement by the split it induces."""
    everything = tree.leaf_labels_below(tree.root)
    left = tree.left(tree.root)
    return _split_key(tree.leaf_labels_below(left), everything)


@dataclass
class RootLikelihoods:
    """Likelihood of every root placement visited by a root search."""

    likelihoods: Dict[RootKey, float] = field(default_factory=dict)
    per_family: Dict[RootKey, List[float]] = field(default_factory=dict)
    ids: Dict[RootKey, int] = field(default_factory=dict)

    def save(self, tree: SpeciesTree, ll: float, per_family_ll: List[float]) -> int:
        """Store the current placement and return its id."""
        key = root_key(tree)
        self.likelihoods[key] = ll
        self.per_family[key] = list(per_family_ll)
        return self.ids.setdefault(key, len(self.ids))

    def branch_llr(self, tree: SpeciesTree) -> Dict[int, float]:
        """For each non-root node, the LL of rooting above it minus the best LL."""
        if not self.likelihoods:
            return {}
        best = max(self.likelihoods.values())
        everything = tree.leaf_labels_below(tree.root)
        out: Dict[int, float] = {}
        for node in range(tree.node_count):
            if node == tree.root:
                continue
            key = _split_key(tree.leaf_labels_below(node), everything)
            if key in self.likelihoods:
                out[node] = self.likelihoods[key] - best
        return out

    def branch_support(self, tree: SpeciesTree, supports: Mapping[int, float]) -> Dict[int, float]:
        """For each non-root node, the support of rooting above it."""
        everything = tree.leaf_labels_below(tree.root)
        out: Dict[int, float] = {}
        for node in range(tree.node_count):
            if node == tree.root:
                continue
            key = _split_key(tree.leaf_labels_below(node), everything)
            if key in self.ids:
                out[node] = supports.get(self.ids[key], 0.0)
        return out


class _RootSearch:
    def __init__(
        self,
        tree: SpeciesTree,
        evaluator: SpeciesTreeLikelihoodEvaluator,
        state: SearchState,
        thorough_dates: bool,
        root_likelihoods: Optional[RootLikelihoods],
        tree_per_family_ll: Optional[TreePerFamilyLL],
    ):
        self.tree = tree
        self.evaluator = evaluator
        self.state = state
        self.thorough_dates = thorough_dates
        self.root_likelihoods = root_likelihoods
        self.tree_per_family_ll = tree_per_family_ll
        self.best_ll = -np.inf
        self.best_moves: List[int] = []
        self.best_per_family: List[float] = []
        self.best_dated: Optional[DatedBackup] = None
        self.visits = 0

    def record(self, ll: float, per_family_ll: List[float]) -> None:
        self.visits += 1
        if self.tree_per_family_ll is not None:
            self.tree_per_family_ll.append((self.tree.newick(), list(per_family_ll)))
        if self.root_likelihoods is not None:
            root_id = self.root_likelihoods.save(self.tree, ll, per_family_ll)
            self.state.test_root(root_id, per_family_ll)

    def explore(self, history: List[int], best_ll_stack: float, max_depth: int) -> None:
        """``history[0]`` is a seed that only selects the first pair of directions."""
        if len(history) > max_depth:
            return
        tree, evaluator = self.tree, self.evaluator
        dated = tree.dated_tree
        backup = dated.get_backup()
        side = history[-1] % 2
        for direction in (side, 2 + side):
            if not can_change_root(tree, direction):
                continue
            history.append(direction)
            evaluator.push_rollback()
            rollback = change_root(tree, direction)
            optimize_dates(tree, evaluator, self.state, thorough=self.thorough_dates)
            per_family_ll: List[float] = []
            ll = evaluator.compute_likelihood(per_family_ll)
            self.record(ll, per_family_ll)
            new_max_depth = max_depth
            stack = best_ll_stack
            if ll > stack:
                stack = ll
                new_max_depth = len(history) + self.state.config.root_depth_bonus
            if ll > self.best_ll + self.state.config.min_improvement:
                self.best_ll = ll
                self.best_moves = list(history)
                self.best_per_family = per_family_ll
                self.best_dated = dated.get_backup()
                logger.info("better root: ll=%.6f", ll)
            self.explore(history, stack, new_max_depth)
            revert_change_root(tree, rollback)
            evaluator.pop_and_apply_rollback()
            history.pop()
            dated.restore(backup)
            evaluator.on_species_dates_change()


def root_search(
    tree: SpeciesTree,
    evaluator: SpeciesTreeLikelihoodEvaluator,
    state: SearchState,
    max_depth: int,
    *,
    thorough_dates: bool = False,
    root_likelihoods: Optional[RootLikelihoods] = None,
    tree_per_family_ll: Optional[TreePerFamilyLL] = None,
) -> float:
    """Move the root to the best placement within a depth budget.

    The budget is extended each time a path improves on its own best. The
    tree ends at the best root found; every other explored placement is
    rolled back.
    """
    logger.info("root search with depth=%d", max_depth)
    search = _RootSearch(tree, evaluator, state, thorough_dates, root_likelihoods, tree_per_family_ll)
    if root_likelihoods is not None:
        state.reset_root_boots()
    per_family_ll: List[float] = []
    initial_ll = evaluator.compute_likelihood(per_family_ll)
    if tree_per_family_ll is not None:
        tree_per_family_ll.clear()
    search.record(initial_ll, per_family_ll)
    search.best_ll = initial_ll
    search.best_per_family = per_family_ll
    search.best_dated = tree.dated_tree.get_backup()
    for seed in (1, 0):
        search.explore([seed], initial_ll, max_depth)
    if search.best_moves:
        for direction in search.best_moves[1:]:
            change_root(tree, direction)
        tree.dated_tree.restore(search.best_dated)
        evaluator.on_species_dates_change()
    if state.is_improvement(search.best_ll):
        state.better_tree_callback(search.best_ll, search.best_per_family)
    # The best LL tracks the tree the search leaves behind.
    state.best_ll = search.best_ll
    logger.info("after root search: ll=%.6f (%d roots visited)", search.best_ll, search.visits)
    return search.best_ll
