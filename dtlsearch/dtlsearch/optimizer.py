"""Species-tree optimizer: composes rate, dating, root and topology search."""

from __future__ import annotations

import logging
import os
from typing import Callable, Dict, Optional

import numpy as np

from . import dating, root_search, search
from .config import SearchConfig, SearchStrategy
from .evaluator import SpeciesTreeLikelihoodEvaluator
from .output import (
    llr_newick,
    root_support_newick,
    support_newick,
    write_per_family_likelihoods,
    write_species_tree,
)
from .parallel import ParallelContext
from .root_search import RootLikelihoods, TreePerFamilyLL
from .state import SearchState
from .trees import SpeciesTree

logger = logging.getLogger(__name__)


class SpeciesTreeOptimizer:
    """Runs one search strategy over a species tree and its evaluator."""

    def __init__(
        self,
        tree: SpeciesTree,
        evaluator: SpeciesTreeLikelihoodEvaluator,
        family_count: int,
        config: Optional[SearchConfig] = None,
        *,
        context: Optional[ParallelContext] = None,
        output_dir: Optional[str] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.tree = tree
        self.evaluator = evaluator
        self.config = config or SearchConfig()
        self.context = context or ParallelContext()
        self.output_dir = output_dir
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)
        path = os.path.join(output_dir, "inferred_species_tree.newick") if output_dir else None
        self.state = SearchState(
            tree,
            family_count,
            self.config,
            context=self.context,
            path_to_best_tree=path,
            rng=rng,
        )
        self.root_likelihoods = RootLikelihoods()
        self.tree_per_family_ll: TreePerFamilyLL = []

    # read access

    @property
    def best_ll(self) -> float:
        return self.state.best_ll

    @property
    def species_tree(self) -> SpeciesTree:
        return self.tree

    @property
    def dated_order(self) -> tuple[str, ...]:
        """Speciation labels from youngest to oldest."""
        return tuple(self.tree.label(x) for x in self.tree.dated_tree.ordered_speciations)

    # single steps

    def compute_likelihood(self) -> float:
        self.state.best_ll = self.evaluator.compute_likelihood()
        return self.state.best_ll

    def optimize_model_rates(self, thorough: bool = False) -> float:
        ll = self.evaluator.optimize_model_rates(thorough)
        if self.evaluator.is_dated():
            ll = dating.optimize_dates(self.tree, self.evaluator, self.state, thorough=thorough)
        self.state.best_ll = ll
        return ll

    def optimize_dates(self, thorough: bool = False) -> float:
        ll = dating.optimize_dates(self.tree, self.evaluator, self.state, thorough=thorough)
        self.state.best_ll = ll
        return ll

    def spr_search(self, radius: int) -> float:
        return search.spr_search(self.tree, self.evaluator, self.state, radius)

    def transfer_search(self) -> float:
        return search.transfer_search(self.tree, self.evaluator, self.state)

    def root_search(self, max_depth: int, output: bool = False) -> float:
        if not output:
            return root_search.root_search(self.tree, self.evaluator, self.state, max_depth)
        self.root_likelihoods = RootLikelihoods()
        ll = root_search.root_search(
            self.tree,
            self.evaluator,
            self.state,
            max_depth,
            root_likelihoods=self.root_likelihoods,
            tree_per_family_ll=self.tree_per_family_ll,
        )
        self.save_likelihoods()
        return ll

    # strategies

    def search(self, strategy: SearchStrategy) -> float:
        strategy = SearchStrategy(strategy)
        self.compute_likelihood()
        logger.info("species tree search (%s) from ll=%.6f", strategy.value, self.state.best_ll)
        runners: Dict[SearchStrategy, Callable[[], None]] = {
            SearchStrategy.SPR: self._spr,
            SearchStrategy.TRANSFERS: self._transfers,
            SearchStrategy.HYBRID: self._hybrid,
            SearchStrategy.REROOT: self._reroot,
            SearchStrategy.EVAL: self._eval,
        }
        runners[strategy]()
        self.save_species_tree()
        logger.info("species tree search (%s) done: ll=%.6f", strategy.value, self.state.best_ll)
        return self.state.best_ll

    def _spr(self) -> None:
        for radius in range(1, self.config.spr_radius + 1):
            self.optimize_model_rates()
            self.spr_search(radius)

    def _transfers(self) -> None:
        self.transfer_search()
        self.root_search(self.config.root_small_radius)
        self.transfer_search()
        self.root_search(self.config.root_big_radius, output=True)

    def _hybrid(self) -> None:
        self.optimize_model_rates()
        self.root_search(self.config.root_small_radius)
        previous = None
        current = self.tree.topology_hash()
        while previous != current:
            previous = current
            self.transfer_search()
            self.root_search(self.config.root_small_radius)
            self.spr_search(self.config.spr_radius)
            self.root_search(self.config.root_small_radius)
            current = self.tree.topology_hash()
        self.root_search(self.config.root_big_radius, output=True)
        self.optimize_model_rates(thorough=True)

    def _reroot(self) -> None:
        self.root_search(self.config.root_big_radius, output=True)

    def _eval(self) -> None:
        ll = self.optimize_model_rates(thorough=True)
        logger.info("species tree likelihood: %.6f", ll)

    # persistence

    def save_species_tree(self, path: Optional[str] = None) -> None:
        path = path or self.state.path_to_best_tree
        if not path or not self.context.is_master():
            return
        if self.evaluator.is_dated():
            self.tree.dated_tree.rescale_branch_lengths()
        write_species_tree(path, self.tree)

    def save_likelihoods(self) -> None:
        """Per-root likelihood files, written by the master worker only."""
        if not self.output_dir or not self.context.is_master():
            return
        write_per_family_likelihoods(
            self.tree_per_family_ll,
            os.path.join(self.output_dir, "species_trees.newick"),
            os.path.join(self.output_dir, "per_family_likelihoods.txt"),
        )
        with open(os.path.join(self.output_dir, "root_likelihoods.nhx"), "w", encoding="utf-8") as handle:
            handle.write(llr_newick(self.tree, self.root_likelihoods.branch_llr(self.tree)) + "\n")
        if self.state.bootstraps:
            with open(os.path.join(self.output_dir, "branch_supports.newick"), "w", encoding="utf-8") as handle:
                handle.write(support_newick(self.tree, self.state.branch_supports()) + "\n")
            supports = self.root_likelihoods.branch_support(self.tree, self.state.root_supports())
            with open(os.path.join(self.output_dir, "root_supports.nhx"), "w", encoding="utf-8") as handle:
                handle.write(root_support_newick(self.tree, supports) + "\n")
