"""Topology operators on the species tree: SPR moves and local re-rooting."""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet

import networkx as nx

from .trees import SpeciesTree, TopologyBackup


@dataclass(frozen=True)
class TopologyRollback:
    backup: TopologyBackup
    invalidated: FrozenSet[int]


def _side(tree: SpeciesTree, parent: int, child: int) -> int:
    return 0 if tree.left(parent) == child else 1


def get_possible_prunes(tree: SpeciesTree) -> list[int]:
    """Every non-root node, by increasing index."""
    return [node for node in range(tree.node_count) if node != tree.root]


def can_apply_spr(tree: SpeciesTree, prune: int, regraft: int) -> bool:
    if prune == tree.root or prune == regraft:
        return False
    p = tree.parent(prune)
    if regraft == p or regraft == tree.sibling(prune):
        return False
    return not tree.is_ancestor(prune, regraft)


def _pruned_graph(tree: SpeciesTree, prune: int) -> nx.Graph:
    """Tree edges once ``prune`` and its parent are detached."""
    p = tree.parent(prune)
    removed = tree.subtree(prune) | {p}
    graph = nx.Graph()
    for node in range(tree.node_count):
        if node in removed:
            continue
        graph.add_node(node)
        parent = tree.parent(node)
        if parent is not None and parent not in removed:
            graph.add_edge(node, parent)
    grandparent = tree.parent(p)
    if grandparent is not None:
        graph.add_edge(tree.sibling(prune), grandparent)
    return graph


def get_possible_regrafts(tree: SpeciesTree, prune: int, radius: int) -> list[int]:
    """Regraft targets within ``radius`` edges of the detached position.

    Sorted by distance, then by node index.
    """
    if prune == tree.root or radius < 1:
        return []
    graph = _pruned_graph(tree, prune)
    distances = nx.single_source_shortest_path_length(graph, tree.sibling(prune), cutoff=radius)
    candidates = [
        (dist, node)
        for node, dist in distances.items()
        if dist >= 1 and can_apply_spr(tree, prune, node)
    ]
    return [node for _, node in sorted(candidates)]


def apply_spr(tree: SpeciesTree, prune: int, regraft: int) -> TopologyRollback:
    """Move the parent of ``prune`` onto the branch above ``regraft``."""
    if not can_apply_spr(tree, prune, regraft):
        raise ValueError(f"invalid SPR move: prune={prune} regraft={regraft}")
    backup = tree.get_backup()
    p = tree.parent(prune)
    sibling = tree.sibling(prune)
    grandparent = tree.parent(p)
    prune_side = _side(tree, p, prune)

    if grandparent is None:
        tree.set_root(sibling)
    else:
        tree.set_child(grandparent, _side(tree, grandparent, p), sibling)
        tree.set_branch_length(sibling, tree.branch_length(sibling) + tree.branch_length(p))

    new_parent = tree.parent(regraft)
    if new_parent is None:
        tree.set_root(p)
    else:
        tree.set_child(new_parent, _side(tree, new_parent, regraft), p)
    tree.set_child(p, 1 - prune_side, regraft)
    half = tree.branch_length(regraft) / 2.0
    tree.set_branch_length(regraft, half)
    tree.set_branch_length(p, half)

    invalidated = frozenset(x for x in (p, sibling, grandparent, new_parent) if x is not None)
    tree.on_species_tree_change(set(invalidated))
    return TopologyRollback(backup, invalidated)


def reverse_spr(tree: SpeciesTree, rollback: TopologyRollback) -> None:
    tree.restore(rollback.backup)
    tree.on_species_tree_change(set(rollback.invalidated))


def can_change_root(tree: SpeciesTree, direction: int) -> bool:
    """``direction % 2`` picks the root child, ``direction // 2`` its child."""
    if direction not in (0, 1, 2, 3):
        return False
    child = tree.child(tree.root, direction % 2)
    return child is not None and not tree.is_leaf(child)


def change_root(tree: SpeciesTree, direction: int) -> TopologyRollback:
    """Move the root onto the branch above a grandchild of the root.

    With ``C`` the root child picked by ``direction % 2``, ``G`` the child
    of ``C`` picked by ``direction // 2``, ``S`` the sibling of ``C`` and
    ``H`` the sibling of ``G``, the root splits ``G`` from ``(S, H)``.
    Applying ``inverse_root_direction(direction)`` afterwards gives back the
    previous topology.
    """
    if not can_change_root(tree, direction):
        raise ValueError(f"cannot change root in direction {direction}")
    backup = tree.get_backup()
    root = tree.root
    d1, d2 = direction % 2, direction // 2
    c = tree.child(root, d1)
    s = tree.child(root, 1 - d1)
    g = tree.child(c, d2)
    h = tree.child(c, 1 - d2)
    length_g = tree.branch_length(g)
    length_cs = tree.branch_length(c) + tree.branch_length(s)

    tree.set_child(root, d1, g)
    tree.set_child(root, 1 - d1, c)
    tree.set_child(c, d2, s)
    tree.set_child(c, 1 - d2, h)
    tree.set_branch_length(g, length_g / 2.0)
    tree.set_branch_length(c, length_g / 2.0)
    tree.set_branch_length(s, length_cs)

    invalidated = frozenset((root, c))
    tree.on_species_tree_change(set(invalidated))
    return TopologyRollback(backup, invalidated)


def revert_change_root(tree: SpeciesTree, rollback: TopologyRollback) -> None:
    tree.restore(rollback.backup)
    tree.on_species_tree_change(set(rollback.invalidated))


def inverse_root_direction(direction: int) -> int:
    d1, d2 = direction % 2, direction // 2
    return (1 - d1) + 2 * d2
