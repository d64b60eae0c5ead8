"""Per-family reconciliation models evaluated on a pruned species-tree view."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import treeswift

from .parameters import RecModel, RecModelInfo
from .scaled import ScaledNumber
from .trees import SpeciesTree, Taxon
from .view import SpeciesTreeView

# Columns of the per-species event matrix.
EVENT_TYPES = ("S", "D", "T")


@dataclass(frozen=True)
class GeneFamily:
    name: str
    tree: treeswift.Tree
    mapping: Mapping[Taxon, Taxon]


def load_families(
    gene_trees: Sequence[treeswift.Tree],
    mapping: Mapping[Taxon, Taxon],
    names: Optional[Sequence[str]] = None,
) -> List[GeneFamily]:
    names = names or [f"family_{i}" for i in range(len(gene_trees))]
    if len(names) != len(gene_trees):
        raise ValueError("one family name is needed per gene tree")
    return [GeneFamily(name, tree, mapping) for name, tree in zip(names, gene_trees)]


class BaseReconciliationModel(ABC):
    """Likelihood of one gene family given the species tree.

    Gene trees are read as rooted. Gene nodes are mapped to species
    through a least-common-ancestor reconciliation on the family's pruned
    view of the species tree.
    """

    def __init__(self, species_tree: SpeciesTree, family: GeneFamily, info: RecModelInfo):
        self.family = family
        self.info = info
        self._species_tree = species_tree
        self._compile_gene_tree(species_tree, family)
        coverage = [0] * species_tree.leaf_count
        for species in self._leaf_species.values():
            coverage[species] += 1
        self.view = SpeciesTreeView(species_tree, coverage, prune=info.prune_species_tree)
        self._rates = np.asarray(info.default_rates(), dtype=float)
        self._cached_ll: Optional[float] = None
        self._mapping: Optional[List[int]] = None

    def _compile_gene_tree(self, species_tree: SpeciesTree, family: GeneFamily) -> None:
        label_to_id = species_tree.label_to_id()
        nodes = list(family.tree.traverse_postorder())
        index: Dict[treeswift.Node, int] = {node: i for i, node in enumerate(nodes)}
        self._gene_children: List[List[int]] = []
        self._leaf_species: Dict[int, int] = {}
        for i, node in enumerate(nodes):
            self._gene_children.append([index[c] for c in node.children])
            if node.is_leaf():
                gene = str(node.label)
                species = family.mapping.get(gene)
                if species is None:
                    raise ValueError(f"{family.name}: gene {gene!r} has no species mapping")
                if species not in label_to_id or not species_tree.is_leaf(label_to_id[species]):
                    raise ValueError(f"{family.name}: unknown species {species!r} for gene {gene!r}")
                self._leaf_species[i] = label_to_id[species]

    @property
    def gene_node_count(self) -> int:
        return len(self._gene_children)

    def set_rates(self, rates: np.ndarray) -> None:
        self._rates = np.asarray(rates, dtype=float).copy()
        self._cached_ll = None

    def species_rates(self, column: int) -> np.ndarray:
        """One rate for every species node, from global or per-species rates."""
        if self._rates.ndim == 2:
            return self._rates[:, column]
        return np.full(self._species_tree.node_count, self._rates[column])

    def on_species_tree_change(self, nodes: Optional[set[int]]) -> None:
        self.view.on_topology_change(nodes)
        self._cached_ll = None

    def on_species_dates_change(self) -> None:
        self.view.invalidate_all()
        self._cached_ll = None

    def get_state(self) -> object:
        return None

    def set_state(self, state: object) -> None:
        return None

    def compute_log_likelihood(self) -> float:
        invalidated = self.view.pop_invalidated()
        if invalidated is None or invalidated or self._mapping is None:
            self._mapping = self._lca_mapping()
            self._cached_ll = None
        if self._cached_ll is None:
            self._cached_ll = float(self._compute_log_likelihood(self._mapping))
        return self._cached_ll

    def _lca_mapping(self) -> List[int]:
        view = self.view
        depth: Dict[int, int] = {}
        for node in reversed(view.pruned_nodes):
            p = view.parent(node)
            depth[node] = 0 if p is None else depth[p] + 1
        mapping: List[int] = []
        for i, children in enumerate(self._gene_children):
            if not children:
                mapping.append(self._leaf_species[i])
                continue
            lca = mapping[children[0]]
            for c in children[1:]:
                lca = self._lca(lca, mapping[c], depth)
            mapping.append(lca)
        return mapping

    def _lca(self, a: int, b: int, depth: Dict[int, int]) -> int:
        view = self.view
        while a != b:
            if depth[a] >= depth[b]:
                a = view.parent(a)
            else:
                b = view.parent(b)
        return a

    def duplications(self, mapping: Optional[List[int]] = None) -> List[bool]:
        """Per gene node: True when the node is a duplication."""
        mapping = mapping if mapping is not None else self._lca_mapping()
        return [
            bool(children) and any(mapping[c] == mapping[i] for c in children)
            for i, children in enumerate(self._gene_children)
        ]

    def event_counts(self) -> np.ndarray:
        counts = np.zeros((self._species_tree.node_count, len(EVENT_TYPES)), dtype=int)
        mapping = self._lca_mapping()
        for i, dup in enumerate(self.duplications(mapping)):
            if not self._gene_children[i]:
                continue
            counts[mapping[i], 1 if dup else 0] += 1
        return counts

    def transfer_events(self) -> List[tuple[int, int]]:
        """(donor, recipient) species pairs of the reconciliation's transfers."""
        return []

    @abstractmethod
    def _compute_log_likelihood(self, mapping: List[int]) -> float:
        ...


class ParsimonyDModel(BaseReconciliationModel):
    """Duplication parsimony: the score is minus the number of duplications."""

    def _compute_log_likelihood(self, mapping: List[int]) -> float:
        return -float(sum(self.duplications(mapping)))


class SimpleDSModel(BaseReconciliationModel):
    """Each gene node is a duplication with probability ``D / (1 + D)``.

    ``D`` is read on the species node the gene node maps to, so global and
    per-species rates share the same code path.
    """

    def _compute_log_likelihood(self, mapping: List[int]) -> float:
        d_rates = self.species_rates(0)
        likelihood = ScaledNumber(1.0)
        for i, dup in enumerate(self.duplications(mapping)):
            if not self._gene_children[i]:
                continue
            d = float(d_rates[mapping[i]])
            p_dup = d / (1.0 + d)
            likelihood *= p_dup if dup else 1.0 - p_dup
            likelihood.rescale()
        return likelihood.log()


@dataclass(frozen=True)
class _Event:
    kind: str
    species: int
    recipient: Optional[int] = None


class ParsimonyDTLModel(BaseReconciliationModel):
    """Duplication, transfer and loss parsimony on the pruned view.

    The score is minus the cost of the cheapest reconciliation. A gene
    node placed on species ``s`` may send one child to any branch that is
    neither an ancestor nor a descendant of ``s``. With a dated species
    tree both branches must also share an epoch. Losses above the gene
    root are not charged.
    """

    DUPLICATION_COST = 2.0
    TRANSFER_COST = 3.0
    LOSS_COST = 1.0

    def __init__(self, species_tree: SpeciesTree, family: GeneFamily, info: RecModelInfo):
        super().__init__(species_tree, family, info)
        if any(len(children) > 2 for children in self._gene_children):
            raise ValueError(f"{family.name}: transfer parsimony needs a binary gene tree")
        self._events: List[_Event] = []

    def _compute_log_likelihood(self, mapping: List[int]) -> float:
        cost, self._events = self._reconcile()
        return -cost

    def _recipients(self, nodes: List[int]) -> Dict[int, List[int]]:
        view = self.view
        ancestors: Dict[int, set[int]] = {}
        for node in reversed(nodes):
            p = view.parent(node)
            ancestors[node] = {node} | (ancestors[p] if p is not None else set())
        dated = self._species_tree.dated_tree if self.info.is_dated else None
        return {
            s: [
                r
                for r in nodes
                if r not in ancestors[s]
                and s not in ancestors[r]
                and (dated is None or dated.can_transfer(s, r))
            ]
            for s in nodes
        }

    def _reconcile(self) -> tuple[float, List[_Event]]:
        view = self.view
        nodes = view.pruned_nodes
        recipients = self._recipients(nodes)
        inf = math.inf
        # Per gene node: cost when placed exactly on s, the event chosen
        # there, and the cheapest placement within the subtree of s.
        exact: List[Dict[int, float]] = []
        chosen: List[Dict[int, tuple]] = []
        inside: List[Dict[int, tuple[float, int]]] = []
        outside: List[Dict[int, tuple[float, int]]] = []
        for g, children in enumerate(self._gene_children):
            cost: Dict[int, float] = {}
            choice: Dict[int, tuple] = {}
            if not children:
                for s in nodes:
                    cost[s] = 0.0 if s == self._leaf_species[g] else inf
                    choice[s] = ("leaf",)
            elif len(children) == 1:
                c = children[0]
                for s in nodes:
                    cost[s] = exact[c][s]
                    choice[s] = ("pass",)
            else:
                g1, g2 = children
                for s in nodes:
                    options = []
                    if not view.is_leaf(s):
                        l, r = view.left(s), view.right(s)
                        options.append((inside[g1][l][0] + inside[g2][r][0], ("S", l, r)))
                        options.append((inside[g1][r][0] + inside[g2][l][0], ("S", r, l)))
                    options.append(
                        (self.DUPLICATION_COST + inside[g1][s][0] + inside[g2][s][0], ("D", s, s))
                    )
                    out2, to2 = outside[g2][s]
                    if to2 is not None:
                        options.append((self.TRANSFER_COST + inside[g1][s][0] + out2, ("T", s, to2)))
                    out1, to1 = outside[g1][s]
                    if to1 is not None:
                        options.append((self.TRANSFER_COST + out1 + inside[g2][s][0], ("T", to1, s)))
                    best = min(options, key=lambda option: option[0])
                    cost[s], choice[s] = best
            exact.append(cost)
            chosen.append(choice)
            below: Dict[int, tuple[float, int]] = {}
            for s in nodes:
                best_in = (cost[s], s)
                if not view.is_leaf(s):
                    for child in (view.left(s), view.right(s)):
                        candidate = below[child][0] + self.LOSS_COST
                        if candidate < best_in[0]:
                            best_in = (candidate, below[child][1])
                below[s] = best_in
            inside.append(below)
            outside.append(
                {
                    s: min(
                        ((below[r][0], r) for r in recipients[s]),
                        key=lambda option: option[0],
                        default=(inf, None),
                    )
                    for s in nodes
                }
            )
        root = len(self._gene_children) - 1
        total, placement = min(((exact[root][s], s) for s in nodes), key=lambda option: option[0])
        if not math.isfinite(total):
            raise ValueError(f"{self.family.name}: no reconciliation on the species tree")
        return total, self._backtrack(root, placement, chosen, inside)

    def _backtrack(
        self,
        root: int,
        placement: int,
        chosen: List[Dict[int, tuple]],
        inside: List[Dict[int, tuple[float, int]]],
    ) -> List[_Event]:
        events: List[_Event] = []
        stack = [(root, placement)]
        while stack:
            g, s = stack.pop()
            choice = chosen[g][s]
            children = self._gene_children[g]
            if choice[0] == "leaf":
                continue
            if choice[0] == "pass":
                stack.append((children[0], s))
                continue
            kind, s1, s2 = choice
            if kind == "T":
                recipient = s2 if s1 == s else s1
                events.append(_Event("T", s, recipient))
            else:
                events.append(_Event(kind, s))
            stack.append((children[0], inside[children[0]][s1][1]))
            stack.append((children[1], inside[children[1]][s2][1]))
        return events

    def _current_events(self) -> List[_Event]:
        self.compute_log_likelihood()
        return self._events

    def event_counts(self) -> np.ndarray:
        counts = np.zeros((self._species_tree.node_count, len(EVENT_TYPES)), dtype=int)
        for event in self._current_events():
            counts[event.species, EVENT_TYPES.index(event.kind)] += 1
        return counts

    def transfer_events(self) -> List[tuple[int, int]]:
        return [(e.species, e.recipient) for e in self._current_events() if e.kind == "T"]


_MODELS = {
    RecModel.PARSIMONY_D: ParsimonyDModel,
    RecModel.PARSIMONY_DTL: ParsimonyDTLModel,
    RecModel.SIMPLE_DS: SimpleDSModel,
}


def build_model(species_tree: SpeciesTree, family: GeneFamily, info: RecModelInfo) -> BaseReconciliationModel:
    return _MODELS[info.model](species_tree, family, info)
