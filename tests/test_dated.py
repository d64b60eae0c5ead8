"""Tests for the relative dating of species trees."""

from __future__ import annotations

import numpy as np
import pytest

from dtlsearch.operators import apply_spr
from dtlsearch.trees import SpeciesTree

BALANCED = "((A:1,B:1)AB:1,(C:1,D:1)CD:2)R;"
EIGHT = "((((A,B)AB,C)ABC,D)ABCD,((E,F)EF,(G,H)GH)EFGH)R;"


def _labels(tree, order):
    return tuple(tree.label(x) for x in order)


def test_order_follows_root_distances():
    tree = SpeciesTree.from_newick(BALANCED)
    dated = tree.dated_tree
    assert _labels(tree, dated.ordered_speciations) == ("CD", "AB", "R")
    assert dated.rank(tree.label_to_id()["CD"]) == 0
    assert dated.rank(tree.label_to_id()["A"]) == -1
    assert len(dated) == 3


def test_moves_respect_ancestry():
    tree = SpeciesTree.from_newick(BALANCED)
    dated = tree.dated_tree
    assert dated.move_up(0)
    assert _labels(tree, dated.ordered_speciations) == ("AB", "CD", "R")
    assert not dated.move_up(1)
    assert not dated.move_down(0)
    assert not dated.move_down(2)
    assert dated.move_down(1)
    assert _labels(tree, dated.ordered_speciations) == ("CD", "AB", "R")


def test_random_moves_stay_consistent():
    tree = SpeciesTree.from_newick(EIGHT)
    dated = tree.dated_tree
    rng = np.random.default_rng(3)
    for _ in range(500):
        rank = int(rng.integers(0, len(dated)))
        if rng.integers(0, 2):
            dated.move_up(rank)
        else:
            dated.move_down(rank)
        assert dated.is_consistent()
        for r, node in enumerate(dated.ordered_speciations):
            assert dated.rank(node) == r


def test_move_down_undoes_move_up():
    tree = SpeciesTree.from_newick(EIGHT)
    dated = tree.dated_tree
    for rank in range(len(dated)):
        before = dated.ordered_speciations
        if dated.move_up(rank):
            assert dated.move_down(rank + 1)
        assert dated.ordered_speciations == before


def test_backup_restore_after_moves():
    tree = SpeciesTree.from_newick(EIGHT)
    dated = tree.dated_tree
    backup = dated.get_backup()
    rng = np.random.default_rng(0)
    for _ in range(50):
        dated.move_up(int(rng.integers(0, len(dated))))
    dated.restore(backup)
    assert dated.get_backup() == backup


def test_restore_rejects_inconsistent_order():
    tree = SpeciesTree.from_newick(BALANCED)
    dated = tree.dated_tree
    before = dated.get_backup()
    reversed_order = type(before)(tuple(reversed(before.order)))
    with pytest.raises(ValueError):
        dated.restore(reversed_order)
    assert dated.get_backup() == before


def test_randomize_is_consistent_and_uniform():
    tree = SpeciesTree.from_newick(BALANCED)
    dated = tree.dated_tree
    ids = tree.label_to_id()
    rng = np.random.default_rng(11)
    ab_first = 0
    draws = 2000
    for _ in range(draws):
        dated.randomize(rng)
        assert dated.is_consistent()
        ab_first += dated.node_at(0) == ids["AB"]
    assert abs(ab_first / draws - 0.5) < 0.05


def test_rebuild_after_spr_is_consistent():
    tree = SpeciesTree.from_newick(EIGHT)
    ids = tree.label_to_id()
    apply_spr(tree, ids["ABCD"], ids["E"])
    assert tree.dated_tree.is_consistent()


def test_rebuild_keeps_consistent_order():
    tree = SpeciesTree.from_newick(EIGHT)
    dated = tree.dated_tree
    dated.randomize(np.random.default_rng(5))
    before = dated.ordered_speciations
    dated.rebuild()
    assert dated.ordered_speciations == before


def test_can_transfer_uses_epochs():
    tree = SpeciesTree.from_newick(BALANCED)
    dated = tree.dated_tree
    ids = tree.label_to_id()
    # CD is the youngest speciation, AB the next one.
    assert dated.can_transfer(ids["A"], ids["C"])
    assert dated.can_transfer(ids["C"], ids["A"])
    assert not dated.can_transfer(ids["AB"], ids["C"])
    assert not dated.can_transfer(ids["C"], ids["AB"])
    assert dated.can_transfer(ids["AB"], ids["CD"])


def test_rescale_branch_lengths():
    tree = SpeciesTree.from_newick(BALANCED)
    tree.dated_tree.rescale_branch_lengths()
    ids = tree.label_to_id()
    assert tree.branch_length(ids["A"]) == 2.0
    assert tree.branch_length(ids["C"]) == 1.0
    assert tree.branch_length(ids["CD"]) == 2.0
    assert tree.branch_length(ids["AB"]) == 1.0
