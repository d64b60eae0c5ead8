"""Per-family view of the species tree, pruned to the species a family covers."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from .trees import SpeciesTree


class SpeciesTreeView:
    """Species tree as seen by one gene family.

    With pruning enabled, a species node whose two sides are both covered
    by the family is a pruned internal node; a node with one covered side
    collapses onto that side's representative; a node with no covered side
    disappears. Navigation goes through the pruned structure when pruning
    is enabled and through the raw tree otherwise.
    """

    def __init__(
        self,
        tree: SpeciesTree,
        coverage: Optional[Sequence[int]] = None,
        *,
        prune: bool = True,
    ):
        self._tree = tree
        self._prune = prune
        if coverage is None:
            coverage = [1] * tree.leaf_count
        if len(coverage) != tree.leaf_count:
            raise ValueError("coverage must have one entry per species leaf")
        if prune and not any(c > 0 for c in coverage):
            raise ValueError("a family must cover at least one species")
        self._covered = [c > 0 for c in coverage]
        n = tree.node_count
        self._left: list[Optional[int]] = [None] * n
        self._right: list[Optional[int]] = [None] * n
        self._parent: list[Optional[int]] = [None] * n
        self._representative: list[Optional[int]] = [None] * n
        self._all_nodes: list[int] = []
        self._pruned_nodes: list[int] = []
        self._pruned_root: Optional[int] = None
        self._invalidated: set[int] = set()
        self._all_invalid = True
        self._built = False
        self.on_topology_change(None)

    @property
    def species_tree(self) -> SpeciesTree:
        return self._tree

    @property
    def pruning(self) -> bool:
        return self._prune

    def is_covered(self, leaf: int) -> bool:
        return self._covered[leaf]

    def on_topology_change(self, invalidated: Optional[Iterable[int]]) -> None:
        """Rebuild after a topology change.

        ``None`` invalidates every node; otherwise the given nodes and all
        their ancestors are recomputed.
        """
        tree = self._tree
        if invalidated is None:
            self._all_invalid = True
            to_update = None
        else:
            to_update = set()
            for node in invalidated:
                while node is not None and node not in to_update:
                    to_update.add(node)
                    node = tree.parent(node)
            self._invalidated |= to_update
        self._all_nodes = tree.postorder()
        full = to_update is None or not self._built
        for node in self._all_nodes:
            if full or node in to_update:
                self._update_node(node)
        self._built = True
        self._pruned_root = self._representative[tree.root]
        self._parent[self._pruned_root] = None
        self._pruned_nodes = self._collect_pruned_nodes()

    def _update_node(self, node: int) -> None:
        tree = self._tree
        if tree.is_leaf(node):
            self._left[node] = None
            self._right[node] = None
            covered = self._covered[node] or not self._prune
            self._representative[node] = node if covered else None
            return
        left, right = tree.left(node), tree.right(node)
        rep_left, rep_right = self._representative[left], self._representative[right]
        if rep_left is not None and rep_right is not None:
            self._left[node] = rep_left
            self._right[node] = rep_right
            self._parent[rep_left] = node
            self._parent[rep_right] = node
            self._representative[node] = node
        else:
            self._left[node] = None
            self._right[node] = None
            self._representative[node] = rep_left if rep_left is not None else rep_right

    def _collect_pruned_nodes(self) -> list[int]:
        out: list[int] = []
        stack: list[tuple[int, bool]] = [(self._pruned_root, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded or self._left[node] is None:
                out.append(node)
                continue
            stack.append((node, True))
            stack.append((self._right[node], False))
            stack.append((self._left[node], False))
        return out

    def invalidate_all(self) -> None:
        self._all_invalid = True

    def pop_invalidated(self) -> Optional[set[int]]:
        """Nodes invalidated since the last call; ``None`` when everything is."""
        out = None if self._all_invalid else set(self._invalidated)
        self._all_invalid = False
        self._invalidated = set()
        return out

    @property
    def pruned_root(self) -> int:
        return self._pruned_root

    def left(self, node: int) -> Optional[int]:
        return self._left[node]

    def right(self, node: int) -> Optional[int]:
        return self._right[node]

    def parent(self, node: int) -> Optional[int]:
        return self._parent[node]

    def is_leaf(self, node: int) -> bool:
        return self._left[node] is None

    def representative(self, node: int) -> Optional[int]:
        return self._representative[node]

    @property
    def all_nodes(self) -> list[int]:
        """Full species tree nodes, postorder."""
        return list(self._all_nodes)

    @property
    def pruned_nodes(self) -> list[int]:
        """Nodes of the pruned tree, postorder."""
        return list(self._pruned_nodes)

    def pruned_leaves(self) -> list[int]:
        return [x for x in self._pruned_nodes if self._left[x] is None]

    def state(self) -> tuple:
        """Structural snapshot, comparable across rebuilds."""
        return (
            tuple(self._left),
            tuple(self._right),
            tuple(self._parent[x] for x in self._pruned_nodes),
            tuple(self._representative),
            self._pruned_root,
            tuple(self._pruned_nodes),
        )
