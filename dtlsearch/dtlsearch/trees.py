"""Species-tree arena, tree I/O and gene-to-species mappings."""

from __future__ import annotations

import hashlib
import io
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import treeswift

Taxon = str
Side = int  # 0 for left, 1 for right

_DEFAULT_BRANCH_LENGTH = 1.0


class SpeciesTreeListener(Protocol):
    def on_species_tree_change(self, nodes: Optional[set[int]]) -> None:
        ...


@dataclass(frozen=True)
class TopologyBackup:
    left: Tuple[Optional[int], ...]
    right: Tuple[Optional[int], ...]
    parent: Tuple[Optional[int], ...]
    lengths: Tuple[float, ...]
    root: int


def _read_tree(newick: str) -> treeswift.Tree:
    if hasattr(treeswift, "read_tree_newick"):
        return treeswift.read_tree_newick(newick)
    return treeswift.read_tree(io.StringIO(newick), "newick")


def read_gene_trees(path: str) -> List[treeswift.Tree]:
    """Read Newick trees from a file (one per line)."""
    trees: List[treeswift.Tree] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            trees.append(_read_tree(line))
    return trees


def read_gene_species_mapping(path: str) -> Dict[Taxon, Taxon]:
    """Read a gene-to-species mapping.

    Two layouts are accepted, one entry per line: ``species:gene1;gene2``
    or ``gene species``.
    """
    mapping: Dict[Taxon, Taxon] = {}
    with open(path, "r", encoding="utf-8") as handle:
        for lineno, raw in enumerate(handle, start=1):
            line = raw.strip()
            if not line:
                continue
            if ":" in line:
                species, _, genes = line.partition(":")
                species = species.strip()
                names = [g.strip() for g in genes.split(";") if g.strip()]
                if not species or not names:
                    raise ValueError(f"{path}:{lineno}: malformed mapping line {line!r}")
                for gene in names:
                    mapping[gene] = species
            else:
                fields = line.split()
                if len(fields) != 2:
                    raise ValueError(f"{path}:{lineno}: expected 'gene species', got {line!r}")
                mapping[fields[0]] = fields[1]
    return mapping


def gene_leaf_labels(tree: treeswift.Tree) -> list[Taxon]:
    return [str(node.label) for node in tree.traverse_leaves()]


def identity_mapping(gene_trees: Iterable[treeswift.Tree]) -> Dict[Taxon, Taxon]:
    """Map every gene leaf to the species carrying the same label."""
    mapping: Dict[Taxon, Taxon] = {}
    for tree in gene_trees:
        for label in gene_leaf_labels(tree):
            mapping[label] = label
    return mapping


class SpeciesTree:
    """Rooted binary species tree stored as index arrays.

    Leaves occupy indices ``0..leaf_count-1`` and internal nodes the rest.
    Indices survive every topology change, so they are stable identifiers
    for the whole search. Topology changes go through
    :mod:`dtlsearch.operators`, which notify the registered listeners.
    """

    def __init__(
        self,
        labels: Sequence[Taxon],
        left: Sequence[Optional[int]],
        right: Sequence[Optional[int]],
        parent: Sequence[Optional[int]],
        lengths: Sequence[float],
        root: int,
    ):
        n = len(labels)
        if not (len(left) == len(right) == len(parent) == len(lengths) == n):
            raise ValueError("species tree arrays must have the same length")
        self._labels = list(labels)
        self._left = list(left)
        self._right = list(right)
        self._parent = list(parent)
        self._lengths = [float(x) for x in lengths]
        self._root = root
        self._leaf_count = sum(1 for x in self._left if x is None)
        self._listeners: list[SpeciesTreeListener] = []
        from .dated import DatedTree

        self._dated = DatedTree(self)

    @classmethod
    def from_treeswift(cls, tree: treeswift.Tree) -> "SpeciesTree":
        tree.suppress_unifurcations()
        leaves: list[treeswift.Node] = []
        internals: list[treeswift.Node] = []
        for node in tree.traverse_postorder():
            if node.is_leaf():
                if node.label is None or str(node.label) == "":
                    raise ValueError("every species leaf must carry a label")
                leaves.append(node)
            else:
                if len(node.children) != 2:
                    raise ValueError("species tree must be rooted and binary")
                internals.append(node)
        ordered = leaves + internals
        index = {node: i for i, node in enumerate(ordered)}
        labels = [str(node.label) for node in leaves]
        if len(set(labels)) != len(labels):
            raise ValueError("species leaf labels must be unique")
        used = set(labels)
        for i, node in enumerate(internals, start=len(leaves)):
            # Support values and other duplicated names are replaced.
            label = "" if node.label is None else str(node.label)
            if not label or label in used:
                label = f"n{i}"
            used.add(label)
            labels.append(label)
        left: list[Optional[int]] = [None] * len(ordered)
        right: list[Optional[int]] = [None] * len(ordered)
        parent: list[Optional[int]] = [None] * len(ordered)
        lengths = [_DEFAULT_BRANCH_LENGTH] * len(ordered)
        for node, i in index.items():
            if node.edge_length is not None:
                lengths[i] = float(node.edge_length)
            if not node.is_leaf():
                left[i] = index[node.children[0]]
                right[i] = index[node.children[1]]
                parent[left[i]] = i
                parent[right[i]] = i
        return cls(labels, left, right, parent, lengths, index[tree.root])

    @classmethod
    def from_newick(cls, newick: str) -> "SpeciesTree":
        return cls.from_treeswift(_read_tree(newick.strip()))

    @classmethod
    def from_file(cls, path: str) -> "SpeciesTree":
        with open(path, "r", encoding="utf-8") as handle:
            return cls.from_newick(handle.read())

    # navigation

    @property
    def node_count(self) -> int:
        return len(self._labels)

    @property
    def leaf_count(self) -> int:
        return self._leaf_count

    @property
    def root(self) -> int:
        return self._root

    @property
    def dated_tree(self):
        return self._dated

    def left(self, node: int) -> Optional[int]:
        return self._left[node]

    def right(self, node: int) -> Optional[int]:
        return self._right[node]

    def child(self, node: int, side: Side) -> Optional[int]:
        return self._right[node] if side else self._left[node]

    def children(self, node: int) -> tuple[int, ...]:
        if self._left[node] is None:
            return ()
        return (self._left[node], self._right[node])

    def parent(self, node: int) -> Optional[int]:
        return self._parent[node]

    def sibling(self, node: int) -> Optional[int]:
        p = self._parent[node]
        if p is None:
            return None
        return self._right[p] if self._left[p] == node else self._left[p]

    def label(self, node: int) -> Taxon:
        return self._labels[node]

    def branch_length(self, node: int) -> float:
        return self._lengths[node]

    def set_branch_length(self, node: int, length: float) -> None:
        if length < 0:
            raise ValueError("branch length must be >= 0")
        self._lengths[node] = float(length)

    def is_leaf(self, node: int) -> bool:
        return self._left[node] is None

    def leaves(self) -> list[int]:
        return list(range(self._leaf_count))

    def internal_nodes(self) -> list[int]:
        return list(range(self._leaf_count, self.node_count))

    def label_to_id(self) -> Dict[Taxon, int]:
        return {label: i for i, label in enumerate(self._labels)}

    def postorder(self, start: Optional[int] = None) -> list[int]:
        start = self._root if start is None else start
        out: list[int] = []
        stack: list[tuple[int, bool]] = [(start, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded or self._left[node] is None:
                out.append(node)
                continue
            stack.append((node, True))
            stack.append((self._right[node], False))
            stack.append((self._left[node], False))
        return out

    def subtree(self, node: int) -> set[int]:
        return set(self.postorder(node))

    def is_ancestor(self, ancestor: int, node: Optional[int]) -> bool:
        """True if ``ancestor`` lies on the path from ``node`` to the root, ``node`` included."""
        while node is not None:
            if node == ancestor:
                return True
            node = self._parent[node]
        return False

    def root_distances(self) -> list[float]:
        dist = [0.0] * self.node_count
        for node in reversed(self.postorder()):
            p = self._parent[node]
            if p is not None:
                dist[node] = dist[p] + self._lengths[node]
        return dist

    def leaf_labels_below(self, node: int) -> frozenset[Taxon]:
        return frozenset(self._labels[x] for x in self.postorder(node) if self._left[x] is None)

    # low-level mutation, used by the topology operators

    def set_child(self, parent: int, side: Side, child: int) -> None:
        """Attach ``child`` below ``parent``. Listeners are not notified."""
        if side:
            self._right[parent] = child
        else:
            self._left[parent] = child
        self._parent[child] = parent

    def set_root(self, node: int) -> None:
        self._root = node
        self._parent[node] = None

    # listeners

    def add_listener(self, listener: SpeciesTreeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SpeciesTreeListener) -> None:
        self._listeners.remove(listener)

    def on_species_tree_change(self, nodes: Optional[set[int]]) -> None:
        """Repair the dating, then tell every listener which nodes changed."""
        self._dated.rebuild()
        for listener in list(self._listeners):
            listener.on_species_tree_change(None if nodes is None else set(nodes))

    # backup

    def get_backup(self) -> TopologyBackup:
        return TopologyBackup(
            tuple(self._left),
            tuple(self._right),
            tuple(self._parent),
            tuple(self._lengths),
            self._root,
        )

    def restore(self, backup: TopologyBackup) -> None:
        """Copy the arrays back. Callers notify listeners themselves."""
        self._left = list(backup.left)
        self._right = list(backup.right)
        self._parent = list(backup.parent)
        self._lengths = list(backup.lengths)
        self._root = backup.root

    # serialization

    def newick(
        self,
        *,
        branch_lengths: bool = True,
        internal_labels: bool = True,
        labels: Optional[Mapping[int, str]] = None,
        comments: Optional[Mapping[int, str]] = None,
    ) -> str:
        """Newick string; ``labels`` overrides node names, ``comments`` adds ``[...]`` after a node."""
        labels = labels or {}
        comments = comments or {}
        text: dict[int, str] = {}
        for node in self.postorder():
            name = labels.get(node, self._labels[node])
            if self._left[node] is None:
                s = name
            else:
                s = f"({text.pop(self._left[node])},{text.pop(self._right[node])})"
                if internal_labels or node in labels:
                    s += name
            if branch_lengths and node != self._root:
                s += f":{self._lengths[node]:.6g}"
            if node in comments:
                s += f"[{comments[node]}]"
            text[node] = s
        return text[self._root] + ";"

    def canonical_newick(self) -> str:
        """Label-sorted rooted topology, identical for identical topologies."""
        text: dict[int, str] = {}
        for node in self.postorder():
            if self._left[node] is None:
                text[node] = self._labels[node]
            else:
                a = text.pop(self._left[node])
                b = text.pop(self._right[node])
                text[node] = f"({min(a, b)},{max(a, b)})"
        return text[self._root] + ";"

    def topology_hash(self) -> int:
        digest = hashlib.sha1(self.canonical_newick().encode("utf-8")).hexdigest()
        return int(digest[:16], 16)

    def copy(self) -> "SpeciesTree":
        clone = SpeciesTree(
            self._labels, self._left, self._right, self._parent, self._lengths, self._root
        )
        clone.dated_tree.restore(self._dated.get_backup())
        return clone

    def __repr__(self) -> str:
        return f"SpeciesTree({self.newick(branch_lengths=False, internal_labels=False)})"
