"""Numerical optimization of reconciliation rate vectors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Sequence

import numpy as np
from scipy.optimize import minimize, minimize_scalar

from .parameters import RatesVector

logger = logging.getLogger(__name__)

Objective = Callable[[np.ndarray], float]


class OptimizationStrategy(str, Enum):
    GRADIENT = "gradient"
    LBFGSB = "lbfgsb"
    SIMPLEX = "simplex"


@dataclass(frozen=True)
class OptimizationSettings:
    strategy: OptimizationStrategy = OptimizationStrategy.GRADIENT
    line_search_min_improvement: float = 0.1
    optimization_min_improvement: float = 3.0
    min_alpha: float = 1e-7
    starting_alpha: float = 0.1
    epsilon: float = 1e-7
    individual_param_opt: bool = False
    individual_param_opt_min_improvement: float = 10.0
    individual_param_opt_max_iterations: int = 3
    lbfgsb_bounds: tuple[float, float] = (1e-10, 2.0)
    simplex_tolerance: float = 0.005
    simplex_initial_step: float = 0.09

    def __post_init__(self) -> None:
        object.__setattr__(self, "strategy", OptimizationStrategy(self.strategy))
        if self.min_alpha <= 0:
            raise ValueError("min_alpha must be > 0")
        if self.starting_alpha <= self.min_alpha:
            raise ValueError("starting_alpha must be > min_alpha")
        if self.epsilon <= 0:
            raise ValueError("epsilon must be > 0")
        if self.line_search_min_improvement < 0 or self.optimization_min_improvement < 0:
            raise ValueError("minimum improvements must be >= 0")
        lo, hi = self.lbfgsb_bounds
        if not 0 <= lo < hi:
            raise ValueError("lbfgsb_bounds must satisfy 0 <= low < high")
        if self.simplex_tolerance <= 0:
            raise ValueError("simplex_tolerance must be > 0")
        if self.individual_param_opt_max_iterations < 0:
            raise ValueError("individual_param_opt_max_iterations must be >= 0")

    def fast(self, score: float) -> "OptimizationSettings":
        """Looser settings for the cheap rate refresh done during topology search."""
        return replace(
            self,
            line_search_min_improvement=10.0,
            min_alpha=0.01,
            optimization_min_improvement=max(3.0, abs(score) / 1000.0),
        )


def evaluate(objective: Objective, rates: RatesVector) -> RatesVector:
    """Score ``rates`` in place; an invalid score becomes ``-inf``."""
    rates.ensure_positivity()
    score = float(objective(rates.values.copy()))
    rates.score = score if np.isfinite(score) else -np.inf
    return rates


def _gradient(objective: Objective, current: RatesVector, epsilon: float) -> np.ndarray:
    grad = np.zeros(current.dimensions)
    for i in range(current.dimensions):
        shifted = current.copy()
        shifted.values[i] += epsilon
        evaluate(objective, shifted)
        grad[i] = (shifted.score - current.score) / epsilon
    return grad


def _line_search(
    objective: Objective,
    current: RatesVector,
    gradient: np.ndarray,
    settings: OptimizationSettings,
) -> tuple[RatesVector, bool]:
    """Walk along the normalized gradient; every improving step is kept.

    The flag tells whether at least one step gained more than
    ``line_search_min_improvement``.
    """
    norm = float(np.linalg.norm(gradient))
    if not np.isfinite(norm) or norm == 0.0:
        return current, False
    direction = gradient / norm
    alpha = settings.starting_alpha
    significant = False
    while alpha > settings.min_alpha:
        proposal = evaluate(objective, RatesVector(current.values + alpha * direction))
        improvement = proposal.score - current.score
        if improvement > 0:
            current = proposal
            alpha *= 1.5
            if improvement > settings.line_search_min_improvement:
                significant = True
        else:
            alpha *= 0.5
            if significant and current.dimensions > 1:
                # Recompute the gradient from the new point.
                return current, True
    return current, significant


def _optimize_gradient(objective: Objective, start: RatesVector, settings: OptimizationSettings) -> RatesVector:
    current = start.copy()
    while True:
        gradient = _gradient(objective, current, settings.epsilon)
        proposal, significant = _line_search(objective, current, gradient, settings)
        improvement = proposal.score - current.score
        current = proposal
        if improvement > 0:
            logger.debug("gradient step: ll=%.6f (+%.6f)", current.score, improvement)
        if not significant or improvement < settings.optimization_min_improvement:
            break
    return current


def _negated(objective: Objective) -> Callable[[np.ndarray], float]:
    def fn(x: np.ndarray) -> float:
        score = float(objective(np.maximum(np.asarray(x, dtype=float), 0.0)))
        return -score if np.isfinite(score) else np.finfo(float).max
    return fn


def _optimize_lbfgsb(objective: Objective, start: RatesVector, settings: OptimizationSettings) -> RatesVector:
    lo, hi = settings.lbfgsb_bounds
    x0 = np.clip(start.values, lo, hi)
    res = minimize(
        _negated(objective),
        x0=x0,
        method="L-BFGS-B",
        bounds=[(lo, hi) for _ in range(start.dimensions)],
    )
    return evaluate(objective, RatesVector(np.clip(res.x, lo, hi)))


def _optimize_simplex(objective: Objective, start: RatesVector, settings: OptimizationSettings) -> RatesVector:
    dim = start.dimensions
    simplex = np.tile(start.values, (dim + 1, 1))
    for i in range(dim):
        simplex[i + 1, i] -= settings.simplex_initial_step
    res = minimize(
        _negated(objective),
        x0=start.values,
        method="Nelder-Mead",
        options={
            "initial_simplex": simplex,
            "xatol": settings.simplex_tolerance,
            # Convergence is decided on point distance only.
            "fatol": np.inf,
        },
    )
    return evaluate(objective, RatesVector(res.x))


def _optimize_individually(objective: Objective, start: RatesVector, settings: OptimizationSettings) -> RatesVector:
    lo, hi = settings.lbfgsb_bounds
    current = start.copy()
    for _ in range(settings.individual_param_opt_max_iterations):
        before = current.score
        for i in range(current.dimensions):
            def along(x: float, i: int = i) -> float:
                values = current.values.copy()
                values[i] = x
                score = float(objective(values))
                return -score if np.isfinite(score) else np.finfo(float).max

            res = minimize_scalar(along, bounds=(lo, hi), method="bounded")
            values = current.values.copy()
            values[i] = float(res.x)
            candidate = evaluate(objective, RatesVector(values))
            if candidate.score > current.score:
                current = candidate
        if current.score - before < settings.individual_param_opt_min_improvement:
            break
    return current


_STRATEGIES = {
    OptimizationStrategy.GRADIENT: _optimize_gradient,
    OptimizationStrategy.LBFGSB: _optimize_lbfgsb,
    OptimizationStrategy.SIMPLEX: _optimize_simplex,
}


def optimize_parameters(
    objective: Objective,
    start: RatesVector,
    settings: OptimizationSettings | None = None,
) -> RatesVector:
    """Maximize ``objective`` from ``start``.

    The returned vector never scores below the starting one. A vector with
    no free dimension is returned unchanged, score included.
    """
    settings = settings or OptimizationSettings()
    if start.dimensions == 0:
        return start.copy()
    baseline = evaluate(objective, start.copy())
    result = _STRATEGIES[settings.strategy](objective, baseline, settings)
    if settings.individual_param_opt:
        result = _optimize_individually(objective, result, settings)
    if result.score < baseline.score:
        return baseline
    logger.debug("rates optimized with %s: %s", settings.strategy.value, result)
    return result


_GLOBAL_STARTS: dict[int, list[tuple[float, ...]]] = {
    1: [(0.1,), (0.3,), (1.0,), (10.0,)],
    2: [(0.1, 0.2), (0.2, 0.2), (0.5, 0.5), (0.5, 1.0), (0.01, 0.01)],
    3: [(0.1, 0.2, 0.1), (0.01, 0.01, 0.01)],
}


def starting_points(dimensions: int, start: Sequence[float] | None = None) -> list[np.ndarray]:
    points = [np.asarray(p, dtype=float) for p in _GLOBAL_STARTS.get(dimensions, [])]
    if start is not None and len(start) == dimensions:
        points.insert(0, np.asarray(start, dtype=float))
    if not points:
        points.append(np.full(dimensions, 0.1))
    return points


def optimize_parameters_global(
    objective: Objective,
    start: RatesVector,
    settings: OptimizationSettings | None = None,
) -> RatesVector:
    """Multi-start optimization from preset starting points; best result wins."""
    if start.dimensions == 0:
        return start.copy()
    best: RatesVector | None = None
    for point in starting_points(start.dimensions, start.values):
        result = optimize_parameters(objective, RatesVector(point), settings)
        if best is None or result.score > best.score:
            best = result
    logger.info("global rate optimization: %s", best)
    return best
