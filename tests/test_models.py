"""Tests for reconciliation models and the reconciliation evaluator."""

from __future__ import annotations

import io
import math
import threading

import numpy as np
import pytest
import treeswift

from dtlsearch.evaluator import ReconciliationEvaluator, TransferInformation
from dtlsearch.models import ParsimonyDModel, ParsimonyDTLModel, SimpleDSModel, load_families
from dtlsearch.operators import apply_spr, reverse_spr
from dtlsearch.parallel import ParallelContext, thread_communicators
from dtlsearch.parameters import ModelParametrization, RecModel, RecModelInfo
from dtlsearch.rates import OptimizationSettings, OptimizationStrategy
from dtlsearch.trees import SpeciesTree

SPECIES = "((A,B)AB,(C,D)CD)R;"
MAPPING = {
    "a1": "A",
    "a2": "A",
    "b1": "B",
    "c1": "C",
    "d1": "D",
}


def _read_tree(newick: str) -> treeswift.Tree:
    if hasattr(treeswift, "read_tree_newick"):
        return treeswift.read_tree_newick(newick)
    return treeswift.read_tree(io.StringIO(newick), "newick")


def _families(*newicks):
    return load_families([_read_tree(n) for n in newicks], MAPPING)


def _lbfgsb():
    return OptimizationSettings(strategy=OptimizationStrategy.LBFGSB)


def test_parsimony_counts_duplications():
    tree = SpeciesTree.from_newick(SPECIES)
    info = RecModelInfo(RecModel.PARSIMONY_D)
    clean = ParsimonyDModel(tree, _families("((a1,b1),(c1,d1));")[0], info)
    assert clean.compute_log_likelihood() == 0.0
    dup = ParsimonyDModel(tree, _families("((a1,a2),b1);")[0], info)
    assert dup.compute_log_likelihood() == -1.0


def test_pruned_reconciliation_uses_covered_species_only():
    tree = SpeciesTree.from_newick(SPECIES)
    info = RecModelInfo(RecModel.PARSIMONY_D)
    model = ParsimonyDModel(tree, _families("(a1,c1);")[0], info)
    assert model.view.pruned_root == tree.root
    assert model.duplications() == [False, False, False]


def test_event_counts():
    tree = SpeciesTree.from_newick(SPECIES)
    ids = tree.label_to_id()
    model = SimpleDSModel(tree, _families("((a1,a2),b1);")[0], RecModelInfo())
    counts = model.event_counts()
    assert counts[ids["A"]].tolist() == [0, 1, 0]
    assert counts[ids["AB"]].tolist() == [1, 0, 0]
    assert counts.sum() == 2


def test_unknown_genes_and_species_are_rejected():
    tree = SpeciesTree.from_newick(SPECIES)
    with pytest.raises(ValueError, match="no species mapping"):
        ParsimonyDModel(tree, load_families([_read_tree("(a1,x1);")], MAPPING)[0], RecModelInfo())
    with pytest.raises(ValueError, match="unknown species"):
        ParsimonyDModel(tree, load_families([_read_tree("(a1,b1);")], {"a1": "A", "b1": "Z"})[0], RecModelInfo())


def test_simple_ds_likelihood():
    tree = SpeciesTree.from_newick(SPECIES)
    model = SimpleDSModel(tree, _families("((a1,a2),b1);")[0], RecModelInfo())
    model.set_rates(np.array([1.0]))
    assert model.compute_log_likelihood() == pytest.approx(2 * math.log(0.5))


def test_evaluator_follows_topology_changes():
    tree = SpeciesTree.from_newick(SPECIES)
    ids = tree.label_to_id()
    evaluator = ReconciliationEvaluator(tree, _families("((a1,b1),(c1,d1));"), RecModelInfo(RecModel.PARSIMONY_D))
    assert evaluator.compute_likelihood() == 0.0
    rollback = apply_spr(tree, ids["A"], ids["CD"])
    assert evaluator.compute_likelihood() == -1.0
    reverse_spr(tree, rollback)
    assert evaluator.compute_likelihood() == 0.0


def test_global_rates_reach_duplication_ratio():
    tree = SpeciesTree.from_newick(SPECIES)
    evaluator = ReconciliationEvaluator(tree, _families("((a1,a2),b1);"), RecModelInfo(), settings=_lbfgsb())
    ll = evaluator.optimize_model_rates(thorough=True)
    assert evaluator.parameters.rates[0] == pytest.approx(1.0, abs=1e-2)
    assert ll == pytest.approx(2 * math.log(0.5), abs=1e-4)


def test_per_family_rates():
    tree = SpeciesTree.from_newick(SPECIES)
    info = RecModelInfo(RecModel.SIMPLE_DS, ModelParametrization.PER_FAMILY)
    evaluator = ReconciliationEvaluator(
        tree, _families("((a1,a2),b1);", "(c1,d1);"), info, settings=_lbfgsb()
    )
    evaluator.optimize_model_rates(thorough=True)
    params = evaluator.parameters
    assert params.family_rates(0)[0] == pytest.approx(1.0, abs=1e-2)
    assert params.family_rates(1)[0] < 0.01


def test_per_species_rates_not_worse_than_global():
    tree = SpeciesTree.from_newick(SPECIES)
    families = _families("((a1,a2),b1);", "((c1,d1),(a1,b1));")
    shared = ReconciliationEvaluator(tree.copy(), families, RecModelInfo(), settings=_lbfgsb())
    info = RecModelInfo(RecModel.SIMPLE_DS, ModelParametrization.PER_SPECIES)
    per_species = ReconciliationEvaluator(tree, families, info, settings=_lbfgsb())
    global_ll = shared.optimize_model_rates(thorough=True)
    assert per_species.optimize_model_rates(thorough=True) >= global_ll - 1e-6


def test_parsimony_has_no_rates_to_optimize():
    tree = SpeciesTree.from_newick(SPECIES)
    evaluator = ReconciliationEvaluator(tree, _families("((a1,a2),b1);"), RecModelInfo(RecModel.PARSIMONY_D))
    assert evaluator.optimize_model_rates(thorough=True) == -1.0
    assert evaluator.parameters.rates.size == 0


def test_rollback_restores_rates():
    tree = SpeciesTree.from_newick(SPECIES)
    evaluator = ReconciliationEvaluator(tree, _families("((a1,a2),b1);"), RecModelInfo(), settings=_lbfgsb())
    before_ll = evaluator.compute_likelihood()
    before_rates = evaluator.parameters.rates.copy()
    evaluator.push_rollback()
    evaluator.optimize_model_rates(thorough=True)
    assert evaluator.compute_likelihood() > before_ll
    evaluator.pop_and_apply_rollback()
    assert evaluator.parameters.rates.tolist() == before_rates.tolist()
    assert evaluator.compute_likelihood() == pytest.approx(before_ll)
    assert evaluator.rollback_depth == 0
    with pytest.raises(ValueError):
        evaluator.pop_and_apply_rollback()
    with pytest.raises(ValueError):
        evaluator.discard_rollback()
    with pytest.raises(ValueError, match="snapshot"):
        evaluator._apply_snapshot(None)


def test_per_family_output():
    tree = SpeciesTree.from_newick(SPECIES)
    evaluator = ReconciliationEvaluator(
        tree, _families("((a1,a2),b1);", "(c1,d1);"), RecModelInfo(RecModel.PARSIMONY_D)
    )
    per_family = []
    total = evaluator.compute_likelihood(per_family)
    assert per_family == [-1.0, 0.0]
    assert total == -1.0


def test_transfer_information():
    tree = SpeciesTree.from_newick(SPECIES)
    evaluator = ReconciliationEvaluator(tree, _families("((a1,a2),b1);"), RecModelInfo())
    info = evaluator.get_transfer_information()
    assert info.frequencies.sum() == 0
    assert info.per_species_events.sum() == 2
    assert info.potential_transfers[0, 0] == 0
    assert info.potential_transfers[0, 1] == 1


def test_ranked_pairs():
    info = TransferInformation.empty(4)
    info.frequencies[0, 2] = 3
    info.frequencies[1, 3] = 3
    info.frequencies[2, 0] = 5
    info.frequencies[3, 0] = 1
    assert info.ranked_pairs() == [(5, 2, 0), (3, 0, 2), (3, 1, 3), (1, 3, 0)]
    assert info.ranked_pairs(min_count=3) == [(5, 2, 0), (3, 0, 2), (3, 1, 3)]


def test_workers_agree_with_serial_evaluation():
    newicks = ("((a1,a2),b1);", "((a1,b1),(c1,d1));", "(c1,d1);")
    serial = ReconciliationEvaluator(
        SpeciesTree.from_newick(SPECIES), _families(*newicks), RecModelInfo(RecModel.PARSIMONY_D)
    )
    expected_per_family = []
    expected = serial.compute_likelihood(expected_per_family)

    results = {}

    def worker(comm):
        context = ParallelContext(comm)
        evaluator = ReconciliationEvaluator(
            SpeciesTree.from_newick(SPECIES),
            _families(*newicks),
            RecModelInfo(RecModel.PARSIMONY_D),
            context=context,
        )
        per_family = []
        results[comm.rank] = (evaluator.compute_likelihood(per_family), per_family, len(evaluator.models))

    threads = [
        threading.Thread(target=worker, args=(comm,), daemon=True) for comm in thread_communicators(2)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    assert sorted(results) == [0, 1]
    for ll, per_family, _ in results.values():
        assert ll == expected
        assert per_family == expected_per_family
    assert results[0][2] + results[1][2] == 3


TRANSFER_SPECIES = "(((A,B)AB,D)ABD,C)R;"
IDENTITY = {"A": "A", "B": "B", "C": "C", "D": "D"}


def _identity_families(*newicks):
    return load_families([_read_tree(n) for n in newicks], IDENTITY)


def test_dtl_parsimony_explains_misplaced_clade_by_transfer():
    tree = SpeciesTree.from_newick(TRANSFER_SPECIES)
    ids = tree.label_to_id()
    model = ParsimonyDTLModel(tree, _identity_families("((A,B),(C,D));")[0], RecModelInfo(RecModel.PARSIMONY_DTL))
    assert model.compute_log_likelihood() == -3.0
    assert model.transfer_events() == [(ids["D"], ids["C"])]
    counts = model.event_counts()
    assert counts[ids["ABD"]].tolist() == [1, 0, 0]
    assert counts[ids["AB"]].tolist() == [1, 0, 0]
    assert counts[ids["D"]].tolist() == [0, 0, 1]
    assert counts.sum() == 3


def test_dtl_parsimony_prefers_duplication_and_loss_when_cheaper():
    tree = SpeciesTree.from_newick(SPECIES)
    info = RecModelInfo(RecModel.PARSIMONY_DTL)
    clean = ParsimonyDTLModel(tree, _families("((a1,b1),(c1,d1));")[0], info)
    assert clean.compute_log_likelihood() == 0.0
    assert clean.transfer_events() == []
    dup = ParsimonyDTLModel(tree, _families("((a1,a2),b1);")[0], info)
    assert dup.compute_log_likelihood() == -2.0
    assert dup.transfer_events() == []


def test_dtl_parsimony_follows_topology_changes():
    tree = SpeciesTree.from_newick(TRANSFER_SPECIES)
    ids = tree.label_to_id()
    evaluator = ReconciliationEvaluator(
        tree, _identity_families("((A,B),(C,D));"), RecModelInfo(RecModel.PARSIMONY_DTL)
    )
    assert evaluator.compute_likelihood() == -3.0
    rollback = apply_spr(tree, ids["C"], ids["D"])
    assert evaluator.compute_likelihood() == 0.0
    assert evaluator.get_transfer_information().frequencies.sum() == 0
    reverse_spr(tree, rollback)
    assert evaluator.compute_likelihood() == -3.0


def test_dtl_transfer_information_reaches_evaluator():
    tree = SpeciesTree.from_newick(TRANSFER_SPECIES)
    ids = tree.label_to_id()
    evaluator = ReconciliationEvaluator(
        tree,
        _identity_families("((A,B),(C,D));", "((A,B),(C,D));", "((A,B),C);"),
        RecModelInfo(RecModel.PARSIMONY_DTL),
    )
    info = evaluator.get_transfer_information()
    assert info.frequencies[ids["D"], ids["C"]] == 2
    assert info.frequencies.sum() == 2
    assert info.ranked_pairs() == [(2, ids["D"], ids["C"])]
    assert info.per_species_events[:, 2].sum() == 2


def test_dtl_dated_transfers_share_an_epoch():
    tree = SpeciesTree.from_newick("((A:1,B:1)AB:1,(C:1,D:1)CD:2)R;")
    info = RecModelInfo(RecModel.PARSIMONY_DTL, transfer_constraint="reldated")
    model = ParsimonyDTLModel(tree, _identity_families("((A,C),(B,D));")[0], info)
    model.compute_log_likelihood()
    for source, dest in model.transfer_events():
        assert tree.dated_tree.can_transfer(source, dest)


def test_dtl_parsimony_rejects_multifurcating_gene_trees():
    tree = SpeciesTree.from_newick(SPECIES)
    with pytest.raises(ValueError, match="binary"):
        ParsimonyDTLModel(tree, _families("(a1,b1,c1);")[0], RecModelInfo(RecModel.PARSIMONY_DTL))
