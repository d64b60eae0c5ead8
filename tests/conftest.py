import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
PKG_ROOT = ROOT / "dtlsearch"
if str(PKG_ROOT) not in sys.path:
    sys.path.insert(0, str(PKG_ROOT))

from dtlsearch.evaluator import SpeciesTreeLikelihoodEvaluator, TransferInformation  # noqa: E402


class ScoredEvaluator(SpeciesTreeLikelihoodEvaluator):
    """Evaluator whose per-family scores come from a plain function of the tree."""

    def __init__(self, tree, score, *, dated=False, transfers=None):
        super().__init__()
        self.tree = tree
        self.score = score
        self.dated = dated
        self.transfers = transfers or {}
        self.evaluations = 0
        tree.add_listener(self)

    def compute_likelihood(self, per_family_ll=None):
        self.evaluations += 1
        values = self.score(self.tree)
        if np.isscalar(values):
            values = [float(values)]
        if per_family_ll is not None:
            per_family_ll[:] = [float(v) for v in values]
        return float(sum(values))

    def optimize_model_rates(self, thorough=False):
        return self.compute_likelihood()

    def is_dated(self):
        return self.dated

    def infers_transfers(self):
        return bool(self.transfers)

    def get_transfer_information(self):
        info = TransferInformation.empty(self.tree.node_count)
        ids = self.tree.label_to_id()
        for (source, dest), count in self.transfers.items():
            info.frequencies[ids[source], ids[dest]] = count
        return info


def table_score(table, default=-20.0):
    def score(tree):
        return table.get(tree.canonical_newick(), default)

    return score


@pytest.fixture
def scored_evaluator():
    return ScoredEvaluator


@pytest.fixture
def table():
    return table_score
