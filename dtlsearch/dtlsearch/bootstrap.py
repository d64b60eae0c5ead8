"""Resampling of per-family likelihoods across workers."""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from .parallel import ParallelContext


class Bootstrap:
    """A fixed resample of the families held by every worker.

    ``samples`` is the number of families this worker holds. Every worker
    draws the same global index sequence from a shared seed and keeps the
    indices that fall in its own range, so no communication is needed
    beyond the reduction in :meth:`evaluate`.
    """

    def __init__(self, samples: int, seed: int, context: Optional[ParallelContext] = None):
        if samples < 0:
            raise ValueError("samples must be >= 0")
        self._context = context or ParallelContext()
        counts = self._context.allgather(int(samples))
        total = int(sum(counts))
        begin = int(sum(counts[: self._context.rank()]))
        end = begin + int(samples)
        self._total = total
        self._counts = np.zeros(samples, dtype=int)
        if total > 0:
            rng = np.random.default_rng(seed)
            draws = rng.integers(0, total, size=total)
            for index in draws[(draws >= begin) & (draws < end)]:
                self._counts[index - begin] += 1

    @property
    def total(self) -> int:
        return self._total

    @property
    def counts(self) -> np.ndarray:
        return self._counts.copy()

    def evaluate(self, values: Sequence[float]) -> float:
        """Resampled sum of ``values``, one value per local family."""
        values = np.asarray(values, dtype=float)
        if values.size != self._counts.size:
            raise ValueError("expected one value per local family")
        local = float(np.dot(self._counts, values)) if values.size else 0.0
        return self._context.sum_float(local)


class RootBoot:
    """Best root placement under one resample."""

    def __init__(self, bootstrap: Bootstrap):
        self.bootstrap = bootstrap
        self.best_root: Optional[int] = None
        self.best_ll = -np.inf

    def test(self, root_id: int, values: Sequence[float]) -> bool:
        ll = self.bootstrap.evaluate(values)
        if ll > self.best_ll:
            self.best_ll = ll
            self.best_root = root_id
            return True
        return False

    def reset(self) -> None:
        self.best_root = None
        self.best_ll = -np.inf


class PerBranchBoot:
    """Per-branch support bookkeeping under one resample.

    The reference tree sets the score every branch has to beat; a branch
    loses support as soon as a tree that changes it scores better.
    """

    def __init__(self, bootstrap: Bootstrap, branches: int):
        self.bootstrap = bootstrap
        self.best_ll = np.full(branches, -np.inf)
        self.ok = np.ones(branches, dtype=bool)

    def test(self, values: Sequence[float], branches: Sequence[int], is_reference: bool) -> float:
        ll = self.bootstrap.evaluate(values)
        for branch in branches:
            if is_reference:
                self.best_ll[branch] = ll
                self.ok[branch] = True
            elif ll > self.best_ll[branch]:
                self.ok[branch] = False
        return ll

    def is_ok(self, branch: int) -> bool:
        return bool(self.ok[branch])
