"""Best-so-far bookkeeping shared by every search operation."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional, Sequence

import numpy as np

from .bootstrap import Bootstrap, PerBranchBoot, RootBoot
from .config import SearchConfig
from .parallel import ParallelContext
from .trees import SpeciesTree

logger = logging.getLogger(__name__)


class SearchState:
    """Best likelihood, persistence target and bootstrap testers of one run."""

    def __init__(
        self,
        tree: SpeciesTree,
        family_count: int,
        config: Optional[SearchConfig] = None,
        *,
        context: Optional[ParallelContext] = None,
        path_to_best_tree: Optional[str] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.tree = tree
        self.config = config or SearchConfig()
        self.context = context or ParallelContext()
        self.path_to_best_tree = path_to_best_tree
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self.best_ll = -np.inf
        self._family_count = family_count
        self._begin = self.context.get_begin(family_count)
        self._end = self.context.get_end(family_count)
        local = self._end - self._begin
        self.bootstraps: List[Bootstrap] = [
            Bootstrap(local, self.config.seed + 1 + i, self.context)
            for i in range(self.config.bootstrap_replicates)
        ]
        self.branch_boots: List[PerBranchBoot] = [
            PerBranchBoot(b, tree.node_count) for b in self.bootstraps
        ]
        self.root_boots: List[RootBoot] = [RootBoot(b) for b in self.bootstraps]
        self._reference: Optional[np.ndarray] = None

    def _local(self, per_family_ll: Sequence[float]) -> np.ndarray:
        values = np.asarray(per_family_ll, dtype=float)
        if values.size != self._family_count:
            raise ValueError(f"expected {self._family_count} per-family values, got {values.size}")
        return values[self._begin : self._end]

    def is_improvement(self, ll: float) -> bool:
        return ll > self.best_ll + self.config.min_improvement

    def set_reference(self, per_family_ll: Sequence[float]) -> None:
        """Make the current tree the one bootstrap resamples are compared against."""
        self._reference = self._local(per_family_ll)
        for boot in self.branch_boots:
            boot.test(self._reference, range(self.tree.node_count), True)

    def bootstrap_accepts(self, per_family_ll: Sequence[float], branches: Sequence[int] = ()) -> bool:
        """True if enough resamples prefer the candidate over the reference."""
        if not self.bootstraps or self._reference is None:
            return True
        candidate = self._local(per_family_ll)
        for boot in self.branch_boots:
            boot.test(candidate, branches, False)
        wins = sum(
            1 for b in self.bootstraps if b.evaluate(candidate) > b.evaluate(self._reference)
        )
        return wins >= self.config.bootstrap_acceptance * len(self.bootstraps)

    def better_tree_callback(self, ll: float, per_family_ll: Optional[Sequence[float]] = None) -> None:
        self.best_ll = ll
        logger.info("better tree: ll=%.6f", ll)
        if per_family_ll is not None and self.bootstraps:
            self.set_reference(per_family_ll)
        if self.path_to_best_tree and self.context.is_master():
            with open(self.path_to_best_tree, "w", encoding="utf-8") as handle:
                handle.write(self.tree.newick() + "\n")

    def branch_supports(self) -> np.ndarray:
        """Fraction of resamples under which each branch kept its support."""
        if not self.branch_boots:
            return np.ones(self.tree.node_count)
        ok = np.stack([boot.ok for boot in self.branch_boots])
        return ok.mean(axis=0)

    def test_root(self, root_id: int, per_family_ll: Sequence[float]) -> None:
        if not self.root_boots:
            return
        values = self._local(per_family_ll)
        for boot in self.root_boots:
            boot.test(root_id, values)

    def reset_root_boots(self) -> None:
        for boot in self.root_boots:
            boot.reset()

    def root_supports(self) -> Dict[int, float]:
        """Fraction of resamples under which each tested root is the best one."""
        if not self.root_boots:
            return {}
        counts = Counter(boot.best_root for boot in self.root_boots if boot.best_root is not None)
        return {root: count / len(self.root_boots) for root, count in counts.items()}
