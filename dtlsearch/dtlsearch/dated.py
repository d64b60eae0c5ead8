"""Relative dating: a total order over the speciations of a species tree."""

from __future__ import annotations

import heapq
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Tuple

import numpy as np

if TYPE_CHECKING:
    from .trees import SpeciesTree


@dataclass(frozen=True)
class DatedBackup:
    order: Tuple[int, ...]


class DatedTree:
    """Rank order over internal nodes, youngest first.

    Every internal node ranks above both of its internal children. Leaves
    have rank ``-1``.
    """

    def __init__(self, tree: "SpeciesTree"):
        self._tree = tree
        self._order: list[int] = []
        self._ranks: list[int] = []
        self._init_from_branch_lengths()

    def _init_from_branch_lengths(self) -> None:
        tree = self._tree
        distances = tree.root_distances()
        position = {node: i for i, node in enumerate(tree.postorder())}
        internals = [x for x in tree.postorder() if not tree.is_leaf(x)]
        # Deeper nodes are younger; postorder breaks ties child-first.
        internals.sort(key=lambda x: (-distances[x], position[x]))
        self._set_order(internals)

    def _set_order(self, order: list[int]) -> None:
        self._order = list(order)
        self._ranks = [-1] * self._tree.node_count
        for rank, node in enumerate(self._order):
            self._ranks[node] = rank

    @property
    def ordered_speciations(self) -> tuple[int, ...]:
        return tuple(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def rank(self, node: int) -> int:
        return self._ranks[node]

    def node_at(self, rank: int) -> int:
        return self._order[rank]

    def move_up(self, rank: int) -> bool:
        """Swap the node at ``rank`` with the next older one, unless it is its parent."""
        if rank < 0 or rank + 1 >= len(self._order):
            return False
        node = self._order[rank]
        above = self._order[rank + 1]
        if self._tree.parent(node) == above:
            return False
        self._swap(rank, rank + 1)
        return True

    def move_down(self, rank: int) -> bool:
        """Swap the node at ``rank`` with the next younger one, unless it is its child."""
        if rank <= 0 or rank >= len(self._order):
            return False
        node = self._order[rank]
        below = self._order[rank - 1]
        if self._tree.parent(below) == node:
            return False
        self._swap(rank - 1, rank)
        return True

    def _swap(self, r1: int, r2: int) -> None:
        a, b = self._order[r1], self._order[r2]
        self._order[r1], self._order[r2] = b, a
        self._ranks[a], self._ranks[b] = r2, r1

    def is_consistent(self) -> bool:
        tree = self._tree
        if sorted(self._order) != tree.internal_nodes():
            return False
        for node in self._order:
            p = tree.parent(node)
            if p is not None and self._ranks[node] >= self._ranks[p]:
                return False
        return True

    def get_backup(self) -> DatedBackup:
        return DatedBackup(tuple(self._order))

    def restore(self, backup: DatedBackup) -> None:
        previous = self._order
        self._set_order(list(backup.order))
        if not self.is_consistent():
            self._set_order(previous)
            raise ValueError("dated backup is inconsistent with the current species tree")

    def randomize(self, rng: np.random.Generator) -> None:
        """Draw a uniformly random order compatible with the topology.

        The order is built from the root downwards, picking each next node
        with probability proportional to the number of internal nodes in
        its subtree.
        """
        tree = self._tree
        sizes = [0] * tree.node_count
        for node in tree.postorder():
            if not tree.is_leaf(node):
                sizes[node] = 1 + sum(sizes[c] for c in tree.children(node))
        available = [tree.root] if not tree.is_leaf(tree.root) else []
        top_down: list[int] = []
        while available:
            weights = np.array([sizes[x] for x in available], dtype=float)
            pick = int(rng.choice(len(available), p=weights / weights.sum()))
            node = available.pop(pick)
            top_down.append(node)
            available.extend(c for c in tree.children(node) if not tree.is_leaf(c))
        self._set_order(top_down[::-1])

    def rebuild(self) -> None:
        """Repair the order after a topology change.

        Nodes keep their previous relative order wherever ancestry allows;
        a still-consistent order comes out unchanged.
        """
        tree = self._tree
        previous = self._ranks
        pending = [0] * tree.node_count
        heap: list[tuple[int, int]] = []
        for node in tree.internal_nodes():
            pending[node] = sum(1 for c in tree.children(node) if not tree.is_leaf(c))
            if pending[node] == 0:
                heapq.heappush(heap, (previous[node], node))
        order: list[int] = []
        while heap:
            _, node = heapq.heappop(heap)
            order.append(node)
            p = tree.parent(node)
            if p is not None:
                pending[p] -= 1
                if pending[p] == 0:
                    heapq.heappush(heap, (previous[p], p))
        self._set_order(order)

    def _bottom(self, node: int) -> float:
        return float(self._ranks[node]) if not self._tree.is_leaf(node) else -1.0

    def _top(self, node: int) -> float:
        p = self._tree.parent(node)
        return math.inf if p is None else float(self._ranks[p])

    def can_transfer(self, source: int, dest: int) -> bool:
        """True if the branches above ``source`` and ``dest`` share an epoch."""
        return self._bottom(source) < self._top(dest) and self._bottom(dest) < self._top(source)

    def rescale_branch_lengths(self) -> None:
        """Turn ranks into ultrametric branch lengths (leaves at height 0)."""
        tree = self._tree
        for node in range(tree.node_count):
            p = tree.parent(node)
            if p is None:
                continue
            height = 0 if tree.is_leaf(node) else self._ranks[node] + 1
            tree.set_branch_length(node, float(self._ranks[p] + 1 - height))

    def __repr__(self) -> str:
        labels = [self._tree.label(x) for x in self._order]
        return f"DatedTree({labels})"
