"""Writers for search results."""

from __future__ import annotations

from typing import Mapping, Sequence, Tuple

import numpy as np

from .trees import SpeciesTree


def write_species_tree(path: str, tree: SpeciesTree) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(tree.newick() + "\n")


def write_per_family_likelihoods(
    rows: Sequence[Tuple[str, Sequence[float]]],
    trees_path: str,
    likelihoods_path: str,
) -> None:
    """Write one Newick per line and the matching likelihood matrix.

    The matrix starts with ``<tree count> <family count>`` followed by one
    ``treeN ll1 ll2 ...`` line per tree.
    """
    families = len(rows[0][1]) if rows else 0
    for _, values in rows:
        if len(values) != families:
            raise ValueError("every tree needs the same number of per-family likelihoods")
    with open(trees_path, "w", encoding="utf-8") as handle:
        for newick, _ in rows:
            handle.write(newick.rstrip() + "\n")
    with open(likelihoods_path, "w", encoding="utf-8") as handle:
        handle.write(f"{len(rows)} {families}\n")
        for i, (_, values) in enumerate(rows, start=1):
            handle.write(f"tree{i} " + " ".join(repr(float(v)) for v in values) + "\n")


def llr_newick(tree: SpeciesTree, llr: Mapping[int, float]) -> str:
    """Newick with each branch annotated by the LLR of rooting on it."""
    comments = {node: f"&&NHX:llr={value:.6g}" for node, value in llr.items()}
    return tree.newick(comments=comments)


def root_support_newick(tree: SpeciesTree, supports: Mapping[int, float]) -> str:
    """Newick with each branch annotated by the resample support of rooting on it."""
    comments = {node: f"&&NHX:support={value:.3g}" for node, value in supports.items()}
    return tree.newick(comments=comments)


def support_newick(tree: SpeciesTree, supports: np.ndarray) -> str:
    """Newick whose internal node names are branch supports."""
    labels = {
        node: f"{float(supports[node]):.3g}"
        for node in tree.internal_nodes()
        if node != tree.root
    }
    return tree.newick(labels=labels, internal_labels=False)
