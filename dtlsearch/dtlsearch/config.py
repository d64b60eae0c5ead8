"""Search configuration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SearchStrategy(str, Enum):
    SPR = "spr"
    TRANSFERS = "transfers"
    HYBRID = "hybrid"
    REROOT = "reroot"
    EVAL = "eval"


@dataclass(frozen=True)
class SearchConfig:
    """Thresholds, radii and trial caps of the species-tree search."""

    min_improvement: float = 1e-3
    spr_radius: int = 3
    very_local_radius: int = 1
    root_small_radius: int = 2
    root_big_radius: int = 5
    root_depth_bonus: int = 2
    date_restart_threshold: float = 0.0
    dating_max_trials: int = 2
    dating_reconciliation_trials: int = 20
    dating_reconciliation_searches: int = 1
    dating_reconciliation_candidates: int = 5
    transfer_max_trials: int = 50
    min_transfers: int = 1
    bootstrap_replicates: int = 0
    bootstrap_acceptance: float = 0.5
    rates_per_move: bool = True
    seed: int = 0

    def __post_init__(self) -> None:
        if self.min_improvement < 0:
            raise ValueError("min_improvement must be >= 0")
        for name in ("spr_radius", "very_local_radius"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        for name in (
            "root_small_radius",
            "root_big_radius",
            "root_depth_bonus",
            "dating_max_trials",
            "dating_reconciliation_trials",
            "dating_reconciliation_searches",
            "transfer_max_trials",
            "bootstrap_replicates",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.dating_reconciliation_candidates < 1:
            raise ValueError("dating_reconciliation_candidates must be >= 1")
        if self.min_transfers < 1:
            raise ValueError("min_transfers must be >= 1")
        if not 0.0 <= self.bootstrap_acceptance <= 1.0:
            raise ValueError("bootstrap_acceptance must be in [0, 1]")
        if self.date_restart_threshold < 0:
            raise ValueError("date_restart_threshold must be >= 0")
