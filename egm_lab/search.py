"""
search.py - Hyperparameter Search over Sparsity Grids and Regularization Paths

This module explores hyperparameters and keeps the best-fitting model:
- sparsity_grid: (p_in, p_out) pairs for the standard procedure
- run_points: independent fits, sequential or on a thread pool
- select_best: criterion-based reduction of point outcomes
- grid_search / path_search: the two search modes

Every point produces a PointOutcome holding either a fitted model or the
reason it failed. Failed points are excluded from selection; only a sweep
in which every point fails is an error.

Example Usage:
-------------
    >>> from egm_lab.search import sparsity_grid
    >>> sparsity_grid(0.9, step=0.05)[:4]
    [(0.9, 0.0), (0.95, 0.0), (1.0, 0.0), (0.9, 0.05)]
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .network import Services
from .optimization import LoadingOptimizationError
from .pipeline import (
    empirical_partial,
    fit_regularized_network,
    fit_standard_network,
    resolve_structure,
)
from .types import (
    Criterion,
    EGMConfig,
    EGMResult,
    PointOutcome,
    PreparedData,
    SearchSelection,
)

SEARCH_FAILURE = (
    "Search could not converge to any solutions. Try: "
    "increasing 'p_in', changing 'communities', changing 'structure'"
)

# Failures that disqualify a single point without stopping the sweep
POINT_ERRORS = (
    LoadingOptimizationError,
    np.linalg.LinAlgError,
    ValueError,
    FloatingPointError,
)


# =============================================================================
# GRID
# =============================================================================

def _sequence(start: float, stop: float, step: float) -> np.ndarray:
    """start, start + step, ... up to and including stop (within rounding)."""
    count = int(np.floor((stop - start) / step + 1e-9))
    return np.round(start + step * np.arange(count + 1), 10)


def sparsity_grid(p_in: float, step: float = 0.05) -> List[Tuple[float, float]]:
    """
    Grid of (p_in, p_out) pairs.

    p_in runs from the given floor to 1 and p_out from 0 to the floor, both
    in `step` increments; p_in varies fastest.

    Examples
    --------
    >>> len(sparsity_grid(0.9, step=0.05))
    57
    """
    if not 0.0 <= p_in <= 1.0:
        raise ValueError(f"'p_in' must be between 0 and 1, got {p_in}")
    ins = _sequence(float(p_in), 1.0, step)
    outs = _sequence(0.0, float(p_in), step)
    return [(float(pi), float(po)) for po in outs for pi in ins]


# =============================================================================
# POINT EVALUATION
# =============================================================================

def evaluate_point(
    parameters: Dict[str, float], fit: Callable[[Dict[str, float]], EGMResult]
) -> PointOutcome:
    """Fit one point, turning expected numerical failures into a failed outcome."""
    try:
        return PointOutcome(parameters=parameters, model=fit(parameters))
    except POINT_ERRORS as e:
        logger.debug(f"Point {parameters} failed: {type(e).__name__}: {e}")
        return PointOutcome(parameters=parameters, reason=f"{type(e).__name__}: {e}")


def run_points(
    points: Sequence[Dict[str, float]],
    fit: Callable[[Dict[str, float]], EGMResult],
    n_jobs: int = 1,
) -> List[PointOutcome]:
    """
    Evaluate every point.

    With ``n_jobs > 1`` points run on a thread pool. Outcomes are returned
    in the order of `points` regardless of completion order.
    """
    if n_jobs <= 1 or len(points) <= 1:
        return [evaluate_point(parameters, fit) for parameters in points]

    with ThreadPoolExecutor(max_workers=n_jobs) as executor:
        futures = [executor.submit(evaluate_point, parameters, fit) for parameters in points]
        return [future.result() for future in futures]


def select_best(
    outcomes: Sequence[PointOutcome],
    criterion: Criterion,
    prefer: str = "first",
    tie_break: Optional[Callable[[PointOutcome], float]] = None,
) -> PointOutcome:
    """
    Outcome with the best criterion among successful points.

    Parameters
    ----------
    outcomes : sequence of PointOutcome
        Outcomes in sweep order.
    criterion : Criterion
        Selection criterion (minimized, or maximized for logLik).
    prefer : {"first", "last"}, default="first"
        Which of several tied optima to return.
    tie_break : callable, optional
        Key of an outcome; among tied optima only those with the largest
        key are kept before `prefer` applies.

    Raises
    ------
    RuntimeError
        If no point produced a finite criterion value.
    """
    if prefer not in ("first", "last"):
        raise ValueError(f"'prefer' must be 'first' or 'last', got '{prefer}'")

    scores = np.array([criterion.to_minimize(outcome.criterion(criterion)) for outcome in outcomes])
    valid = np.flatnonzero(np.isfinite(scores))
    if valid.size == 0:
        raise RuntimeError(SEARCH_FAILURE)

    best = np.min(scores[valid])
    tied = valid[scores[valid] == best]
    if tie_break is not None and tied.size > 1:
        keys = np.array([tie_break(outcomes[i]) for i in tied], dtype=float)
        tied = tied[keys == np.max(keys)]
    index = int(tied[0] if prefer == "first" else tied[-1])
    return outcomes[index]


def _finalize(
    outcomes: List[PointOutcome],
    criterion: Criterion,
    prefer: str,
    label: str,
    tie_break: Optional[Callable[[PointOutcome], float]] = None,
) -> EGMResult:
    failed = sum(not outcome.succeeded for outcome in outcomes)
    if failed:
        logger.warning(f"{label}: {failed} of {len(outcomes)} points failed and were excluded")

    winner = select_best(outcomes, criterion, prefer=prefer, tie_break=tie_break)
    value = winner.criterion(criterion)

    selection = SearchSelection(
        parameters=dict(winner.parameters),
        criterion=criterion.value,
        value=value,
        evaluated=len(outcomes),
        failed=failed,
    )
    metadata = replace(winner.model.metadata, model_selection=criterion.value, criterion=value)

    logger.success(f"{label} selected {winner.parameters} ({criterion.value} = {value:.4f})")
    return winner.model.with_search(selection, metadata)


# =============================================================================
# SEARCH MODES
# =============================================================================

def grid_search(
    prepared: PreparedData,
    config: EGMConfig,
    services: Optional[Services] = None,
) -> EGMResult:
    """
    Standard procedure fitted at every (p_in, p_out) of the sparsity grid.

    The partial correlations and the partition are computed once and
    shared (read-only) by every point. Ties go to the first grid point.
    """
    services = services or Services()
    P = empirical_partial(prepared)
    structure = resolve_structure(P, config, services)

    points = [
        {"p_in": p_in, "p_out": p_out}
        for p_in, p_out in sparsity_grid(float(config.p_in), config.grid_step)
    ]
    logger.info(
        f"Sparsity grid search: {len(points)} points, {int(structure.max())} communities, "
        f"n_jobs={config.n_jobs}"
    )

    def fit(parameters: Dict[str, float]) -> EGMResult:
        return fit_standard_network(
            prepared, P, structure, parameters["p_in"], parameters["p_out"],
            config, services, model="search",
        )

    outcomes = run_points(points, fit, config.n_jobs)
    return _finalize(outcomes, config.opt, prefer="first", label="Sparsity grid search")


def path_search(
    prepared: PreparedData,
    config: EGMConfig,
    services: Optional[Services] = None,
) -> EGMResult:
    """
    Fit every estimate of a regularization path and keep the best.

    Each point derives its partial correlations and partition (the user
    structure when configured) and counts community correlations as
    parameters. Ties go to the largest lambda (the sparsest network)
    whatever order the path service returns them in.
    """
    services = services or Services()
    path = services.regularization_path(
        prepared.correlation, prepared.n, config.nlambda, config.lambda_min_ratio
    )

    points = [{"lambda": float(lambda_)} for lambda_ in path.lambdas]
    precisions = {point["lambda"]: theta for point, theta in zip(points, path.precisions)}
    logger.info(f"Regularization path search: {len(points)} lambdas, n_jobs={config.n_jobs}")

    def fit(parameters: Dict[str, float]) -> EGMResult:
        return fit_regularized_network(
            prepared, precisions[parameters["lambda"]], parameters["lambda"], config, services,
            model="ega.search", remove_correlations=False,
        )

    outcomes = run_points(points, fit, config.n_jobs)
    return _finalize(
        outcomes, config.opt, prefer="first", label="Regularization path search",
        tie_break=lambda outcome: outcome.parameters["lambda"],
    )
