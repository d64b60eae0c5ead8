"""dtlsearch package."""

__all__ = [
    "scaled",
    "parameters",
    "parallel",
    "trees",
    "dated",
    "operators",
    "view",
    "rates",
    "models",
    "evaluator",
    "bootstrap",
    "config",
    "state",
    "dating",
    "search",
    "root_search",
    "output",
    "optimizer",
    "cli",
]
