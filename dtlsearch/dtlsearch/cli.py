"""dtlsearch command-line interface."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from .config import SearchConfig, SearchStrategy
from .evaluator import ReconciliationEvaluator
from .models import load_families
from .optimizer import SpeciesTreeOptimizer
from .parameters import ModelParametrization, RecModel, RecModelInfo, TransferConstraint
from .rates import OptimizationSettings, OptimizationStrategy
from .trees import SpeciesTree, identity_mapping, read_gene_species_mapping, read_gene_trees


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dtlsearch",
        description="Search the species tree, its dating and its rates that best explain a set of gene trees.",
    )
    parser.add_argument("species_tree", help="Path to the starting rooted species tree (Newick).")
    parser.add_argument("gene_trees", help="Path to gene-family trees (Newick, one family per line).")
    parser.add_argument(
        "--mapping",
        default=None,
        help="Gene-to-species mapping ('species:gene1;gene2' or 'gene species' per line). "
        "Defaults to gene labels equal to species labels.",
    )
    parser.add_argument(
        "-o",
        "--output",
        default=None,
        help="Optional output path for the inferred species tree. Defaults to stdout.",
    )
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Directory for the best-tree checkpoint and per-root likelihood files.",
    )
    parser.add_argument(
        "--model",
        choices=[m.value for m in RecModel],
        default=RecModel.SIMPLE_DS.value,
        help="Reconciliation model.",
    )
    parser.add_argument(
        "--rates",
        choices=[p.value for p in ModelParametrization],
        default=ModelParametrization.GLOBAL.value,
        help="How rates are shared: one global set, one per family or one per species.",
    )
    parser.add_argument(
        "--strategy",
        choices=[s.value for s in SearchStrategy],
        default=SearchStrategy.HYBRID.value,
        help="Species-tree search strategy.",
    )
    parser.add_argument(
        "--rate-optimizer",
        choices=[s.value for s in OptimizationStrategy],
        default=OptimizationStrategy.GRADIENT.value,
        help="Numerical strategy for rate optimization.",
    )
    parser.add_argument("--spr-radius", type=int, default=3, help="Maximum SPR regraft distance.")
    parser.add_argument(
        "--min-improvement",
        type=float,
        default=1e-3,
        help="Minimum log-likelihood gain for a move to be accepted.",
    )
    parser.add_argument(
        "--bootstrap-replicates",
        type=int,
        default=0,
        help="Family resamples a move must convince before being accepted.",
    )
    parser.add_argument(
        "--dated",
        action="store_true",
        help="Constrain transfers by the relative dating of the species tree.",
    )
    parser.add_argument(
        "--no-prune",
        action="store_true",
        help="Evaluate every family on the full species tree instead of its covered part.",
    )
    parser.add_argument("--seed", type=int, default=0, help="Random seed for deterministic stochastic steps.")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Log every candidate move.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.spr_radius < 1:
        print("error: --spr-radius must be >= 1", file=sys.stderr)
        return 2
    if args.min_improvement < 0:
        print("error: --min-improvement must be >= 0", file=sys.stderr)
        return 2
    if args.bootstrap_replicates < 0:
        print("error: --bootstrap-replicates must be >= 0", file=sys.stderr)
        return 2

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        species_tree = SpeciesTree.from_file(args.species_tree)
        gene_trees = read_gene_trees(args.gene_trees)
        mapping = read_gene_species_mapping(args.mapping) if args.mapping else identity_mapping(gene_trees)
    except Exception as exc:  # pragma: no cover - error path
        print(f"error: failed reading input: {exc}", file=sys.stderr)
        return 1
    if not gene_trees:
        print("error: no gene trees loaded from input file", file=sys.stderr)
        return 1

    info = RecModelInfo(
        model=RecModel(args.model),
        parametrization=ModelParametrization(args.rates),
        prune_species_tree=not args.no_prune,
        transfer_constraint=TransferConstraint.RELDATED if args.dated else TransferConstraint.NONE,
    )
    config = SearchConfig(
        min_improvement=args.min_improvement,
        spr_radius=args.spr_radius,
        bootstrap_replicates=args.bootstrap_replicates,
        seed=args.seed,
    )

    try:
        families = load_families(gene_trees, mapping)
        evaluator = ReconciliationEvaluator(
            species_tree,
            families,
            info,
            settings=OptimizationSettings(strategy=OptimizationStrategy(args.rate_optimizer)),
        )
        optimizer = SpeciesTreeOptimizer(
            species_tree,
            evaluator,
            len(families),
            config,
            output_dir=args.output_dir,
        )
        ll = optimizer.search(SearchStrategy(args.strategy))
    except Exception as exc:  # pragma: no cover - error path
        print(f"error: search failed: {exc}", file=sys.stderr)
        return 1
    logging.getLogger(__name__).info("final log-likelihood: %.6f", ll)

    species_newick = species_tree.newick()
    if args.output:
        try:
            with open(args.output, "w", encoding="utf-8") as handle:
                handle.write(species_newick.rstrip() + "\n")
        except Exception as exc:  # pragma: no cover - error path
            print(f"error: failed writing output: {exc}", file=sys.stderr)
            return 1
    else:
        print(species_newick.rstrip())
    return 0
