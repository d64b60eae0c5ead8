"""Tests for the dating search."""

from __future__ import annotations

import numpy as np

from dtlsearch.config import SearchConfig
from dtlsearch.dating import optimize_dates, optimize_dates_from_reconciliation, perturbate_dates, transfer_score
from dtlsearch.state import SearchState
from dtlsearch.trees import SpeciesTree

BALANCED = "((A:1,B:1)AB:1,(C:1,D:1)CD:2)R;"
EIGHT = "((((A,B)AB,C)ABC,D)ABCD,((E,F)EF,(G,H)GH)EFGH)R;"


def _youngest_is(label, good=0.0, bad=-5.0):
    def score(tree):
        dated = tree.dated_tree
        return good if tree.label(dated.node_at(0)) == label else bad

    return score


def test_non_dated_evaluator_keeps_order(scored_evaluator):
    tree = SpeciesTree.from_newick(BALANCED)
    evaluator = scored_evaluator(tree, _youngest_is("AB"))
    before = tree.dated_tree.get_backup()
    assert optimize_dates(tree, evaluator, SearchState(tree, 1)) == -5.0
    assert tree.dated_tree.get_backup() == before


def test_local_search_finds_better_order(scored_evaluator):
    tree = SpeciesTree.from_newick(BALANCED)
    evaluator = scored_evaluator(tree, _youngest_is("AB"), dated=True)
    state = SearchState(tree, 1)
    assert optimize_dates(tree, evaluator, state) == 0.0
    assert tree.label(tree.dated_tree.node_at(0)) == "AB"
    assert state.best_ll == -np.inf


def test_thorough_search_keeps_consistency(scored_evaluator):
    tree = SpeciesTree.from_newick(EIGHT)
    ids = tree.label_to_id()

    def score(t):
        # Reward ABC being older than GH.
        dated = t.dated_tree
        return -1.0 * max(0, dated.rank(ids["GH"]) - dated.rank(ids["ABC"]))

    evaluator = scored_evaluator(tree, score, dated=True)
    state = SearchState(tree, 1, SearchConfig(dating_max_trials=3))
    ll = optimize_dates(tree, evaluator, state, thorough=True)
    assert ll == 0.0
    assert tree.dated_tree.is_consistent()
    assert tree.dated_tree.rank(ids["ABC"]) > tree.dated_tree.rank(ids["GH"])


def test_perturbation_keeps_consistency():
    tree = SpeciesTree.from_newick(EIGHT)
    rng = np.random.default_rng(2)
    for perturbation in (0.1, 0.5, 1.0):
        perturbate_dates(tree.dated_tree, rng, perturbation)
        assert tree.dated_tree.is_consistent()


def test_transfer_score():
    tree = SpeciesTree.from_newick(BALANCED)
    ids = tree.label_to_id()
    transfers = [(3, ids["A"], ids["C"]), (2, ids["AB"], ids["C"])]
    assert transfer_score(tree.dated_tree, transfers) == 3.0
    tree.dated_tree.move_up(0)
    assert transfer_score(tree.dated_tree, transfers) == 5.0


def test_dating_from_reconciliation(scored_evaluator):
    tree = SpeciesTree.from_newick(EIGHT)
    ids = tree.label_to_id()

    def score(t):
        return -float(t.dated_tree.rank(ids["AB"]))

    evaluator = scored_evaluator(tree, score, dated=True, transfers={("AB", "GH"): 5, ("E", "A"): 2})
    state = SearchState(tree, 1, SearchConfig(dating_reconciliation_trials=3))
    before = tree.dated_tree.get_backup()
    results = optimize_dates_from_reconciliation(tree, evaluator, state, searches=4, to_evaluate=3)
    assert len(results) == 3
    assert [r.ll for r in results] == sorted((r.ll for r in results), reverse=True)
    assert tree.dated_tree.get_backup() == before
    for result in results:
        tree.dated_tree.restore(result.backup)
        assert tree.dated_tree.is_consistent()


PLATEAU = "((((A:1,B:1)AB:1,C:2)ABC:1,D:3)ABCD:1,((E:1,F:1)EF:1,(G:1,H:1.1)GH:1.1)EFGH:0.5)R;"


def _efgh_below_abc(tree):
    ids = tree.label_to_id()

    def score(t):
        dated = t.dated_tree
        return 0.0 if dated.rank(ids["EFGH"]) < dated.rank(ids["ABC"]) else -5.0

    return score


def test_thorough_search_restarts_from_transfer_datings(scored_evaluator):
    tree = SpeciesTree.from_newick(PLATEAU)
    ids = tree.label_to_id()
    assert tree.dated_tree.rank(ids["EFGH"]) > tree.dated_tree.rank(ids["ABC"])
    evaluator = scored_evaluator(tree, _efgh_below_abc(tree), dated=True, transfers={("AB", "EFGH"): 5})
    config = SearchConfig(dating_max_trials=0, dating_reconciliation_searches=10)
    ll = optimize_dates(tree, evaluator, SearchState(tree, 1, config), thorough=True)
    assert ll == 0.0
    assert tree.dated_tree.is_consistent()
    assert tree.dated_tree.rank(ids["EFGH"]) < tree.dated_tree.rank(ids["ABC"])
    assert evaluator.compute_likelihood() == 0.0


def test_thorough_search_without_transfers_stays_on_plateau(scored_evaluator):
    tree = SpeciesTree.from_newick(PLATEAU)
    evaluator = scored_evaluator(tree, _efgh_below_abc(tree), dated=True)
    before = tree.dated_tree.get_backup()
    config = SearchConfig(dating_max_trials=0, dating_reconciliation_searches=10)
    assert optimize_dates(tree, evaluator, SearchState(tree, 1, config), thorough=True) == -5.0
    assert tree.dated_tree.get_backup() == before
