"""
network.py - Network Estimation, Communities and Network Loadings

This module provides the default collaborators of the EGM pipeline:
- GraphicalLassoPath: L1-regularized concentration matrices over a lambda grid (CVXPY)
- ebic_select: Extended BIC model selection along a path
- detect_communities: Louvain partitions with a count-targeted hierarchical fallback
- network_loadings: Standardized node strengths per community
- compute_scores / community_correlations: Composite scores and their correlations
- Services: Bundle of replaceable collaborators

Mathematical Background:
-----------------------
The graphical lasso estimates a sparse concentration matrix Θ:

    minimize    -log det(Θ) + tr(S @ Θ) + λ * Σ_{i≠j} |Θ_ij|
    subject to  Θ ≻ 0

for a log-spaced grid of λ from `lambda_min_ratio * λ_max` to
λ_max = max |S_ij| (i≠j), at which the solution is diagonal. Each
estimate is scored with the extended BIC

    EBIC = -2 L + E log(n) + 4 γ E log(p),    L = n/2 (log det Θ - tr(S Θ))

where E is the number of edges.

Example Usage:
-------------
    >>> from egm_lab.network import regularization_path, ebic_select
    >>> path = regularization_path(R, n=500, nlambda=20)
    >>> best = ebic_select(path, gamma=0.5)
    >>> theta = path.precisions[best]
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np
import cvxpy as cp
import networkx as nx
from networkx.algorithms.community import louvain_communities
from loguru import logger
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform

from .correlation import correlate, cov2cor, precision_to_partial, standardize
from .structure import assignment_matrix, reindex_structure
from .types import DEFAULT_SEED, RegularizationPath


# =============================================================================
# GRAPHICAL LASSO PATH
# =============================================================================

class GraphicalLassoPath:
    """
    Graphical lasso solved with CVXPY along a regularization grid.

    The penalty strength is a DPP parameter so the problem is compiled
    once and re-solved (warm started) for every lambda.

    Parameters
    ----------
    S : np.ndarray
        Empirical correlation matrix (p, p).
    solver : str, optional
        CVXPY solver to use. Defaults to None (auto-select).
    threshold : float, default=1e-4
        Partial correlations smaller than this in absolute value are set
        to exact zeros in the returned concentration matrices.

    Examples
    --------
    >>> glasso = GraphicalLassoPath(R)
    >>> theta = glasso.solve(0.1)
    >>> path = glasso.path(glasso.lambda_grid(nlambda=50), n=500)
    """

    def __init__(
        self,
        S: np.ndarray,
        solver: Optional[str] = None,
        threshold: float = 1e-4,
    ):
        S = np.asarray(S, dtype=float)
        if S.ndim != 2 or S.shape[0] != S.shape[1]:
            raise ValueError(f"S must be square, got shape {S.shape}")

        self.S = S
        self.p = S.shape[0]
        self.solver = solver
        self.threshold = threshold

        self._offdiagonal = 1.0 - np.eye(self.p)
        self._theta = cp.Variable((self.p, self.p), PSD=True, name="theta")
        self._lambda = cp.Parameter(nonneg=True, name="lambda")

        penalty = cp.sum(cp.abs(cp.multiply(self._offdiagonal, self._theta)))
        objective = cp.Minimize(
            -cp.log_det(self._theta) + cp.trace(S @ self._theta) + self._lambda * penalty
        )
        self._problem = cp.Problem(objective)

    @property
    def lambda_max(self) -> float:
        """Smallest penalty at which the estimate has no edges."""
        return float(np.max(np.abs(self.S[self._offdiagonal == 1])))

    def lambda_grid(self, nlambda: int = 100, lambda_min_ratio: float = 0.1) -> np.ndarray:
        """Ascending log-spaced penalties from `lambda_min_ratio * lambda_max` to `lambda_max`."""
        lambda_max = self.lambda_max
        if lambda_max <= 0:
            return np.zeros(1)
        return np.exp(
            np.linspace(np.log(lambda_min_ratio * lambda_max), np.log(lambda_max), nlambda)
        )

    def solve(self, lambda_: float) -> Optional[np.ndarray]:
        """
        Estimate the concentration matrix for one penalty.

        Returns
        -------
        np.ndarray or None
            Thresholded symmetric concentration matrix, or None if the
            solver failed.
        """
        self._lambda.value = float(lambda_)

        try:
            if self.solver:
                self._problem.solve(solver=self.solver, warm_start=True)
            else:
                self._problem.solve(warm_start=True)
        except cp.SolverError as e:
            logger.warning(f"Graphical lasso failed at lambda={lambda_:.4g}: {e}")
            return None

        if self._problem.status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE) or self._theta.value is None:
            logger.warning(
                f"Graphical lasso did not solve at lambda={lambda_:.4g} (status: {self._problem.status})"
            )
            return None

        theta = np.asarray(self._theta.value, dtype=float)
        theta = (theta + theta.T) / 2

        partial = precision_to_partial(theta)
        weak = (np.abs(partial) < self.threshold) & (self._offdiagonal == 1)
        theta[weak] = 0.0
        return theta

    def path(self, lambdas: Sequence[float], n: int) -> RegularizationPath:
        """
        Solve every penalty of `lambdas` (ascending).

        Raises
        ------
        RuntimeError
            If no penalty could be solved.
        """
        kept_lambdas: List[float] = []
        precisions: List[np.ndarray] = []

        for lambda_ in lambdas:
            theta = self.solve(lambda_)
            if theta is None:
                continue
            kept_lambdas.append(float(lambda_))
            precisions.append(theta)

        if not precisions:
            raise RuntimeError("Graphical lasso could not be estimated for any lambda")

        logger.debug(
            f"Regularization path: {len(precisions)}/{len(lambdas)} lambdas solved "
            f"(range {kept_lambdas[0]:.4g} to {kept_lambdas[-1]:.4g})"
        )

        return RegularizationPath(
            lambdas=np.array(kept_lambdas),
            precisions=tuple(precisions),
            S=self.S,
            n=int(n),
        )


def regularization_path(
    S: np.ndarray,
    n: int,
    nlambda: int = 100,
    lambda_min_ratio: float = 0.1,
) -> RegularizationPath:
    """
    Graphical lasso concentration matrices over a log-spaced lambda grid.

    Parameters
    ----------
    S : np.ndarray
        Empirical correlation matrix (p, p).
    n : int
        Sample size (stored on the path for EBIC).
    nlambda : int, default=100
        Number of penalties.
    lambda_min_ratio : float, default=0.1
        Ratio of the smallest to the largest penalty.

    Returns
    -------
    RegularizationPath
        Penalties in ascending order with their estimates.
    """
    glasso = GraphicalLassoPath(S)
    return glasso.path(glasso.lambda_grid(nlambda, lambda_min_ratio), n)


# =============================================================================
# MODEL SELECTION
# =============================================================================

def ebic(theta: np.ndarray, S: np.ndarray, n: int, gamma: float = 0.5) -> float:
    """Extended BIC of a concentration matrix (Gaussian likelihood without constants)."""
    p = S.shape[0]
    sign, logdet = np.linalg.slogdet(theta)
    if sign <= 0:
        return math.inf
    loglik = (n / 2) * (logdet - float(np.sum(S * theta)))
    edges = int(np.count_nonzero(np.triu(theta, k=1)))
    return -2 * loglik + edges * math.log(n) + 4 * edges * gamma * math.log(p)


def ebic_select(path: RegularizationPath, gamma: float = 0.5) -> int:
    """
    Index of the path estimate with the smallest EBIC.

    Ties go to the first (least regularized) estimate.
    """
    values = np.array([ebic(theta, path.S, path.n, gamma) for theta in path.precisions])
    best = int(np.argmin(values))
    logger.debug(f"EBIC selected lambda={path.lambdas[best]:.4g} (EBIC={values[best]:.3f})")
    return best


# =============================================================================
# COMMUNITY DETECTION
# =============================================================================

def relabel_by_appearance(labels: Sequence) -> np.ndarray:
    """Dense labels 1..K numbered in order of first appearance."""
    _, first, inverse = np.unique(np.asarray(labels), return_index=True, return_inverse=True)
    rank = np.argsort(np.argsort(first))
    return rank[inverse.reshape(-1)] + 1


def hierarchical_communities(P: np.ndarray, communities: int) -> np.ndarray:
    """Average-linkage clustering of |P| similarities cut into `communities` groups."""
    weights = np.abs(np.asarray(P, dtype=float))
    np.fill_diagonal(weights, 0.0)
    distances = weights.max() - weights
    np.fill_diagonal(distances, 0.0)

    tree = linkage(squareform(distances, checks=False), method="average")
    labels = fcluster(tree, t=communities, criterion="maxclust")
    return relabel_by_appearance(labels)


def detect_communities(
    P: np.ndarray,
    communities: Optional[int] = None,
    seed: Optional[int] = DEFAULT_SEED,
) -> np.ndarray:
    """
    Partition the variables of a network.

    Louvain modularity optimization (networkx) on the absolute edge
    weights. When `communities` is given and Louvain finds a different
    number, the partition is instead obtained by cutting an average-linkage
    tree at that count.

    Parameters
    ----------
    P : np.ndarray
        Partial correlation network (p, p).
    communities : int, optional
        Target number of communities.
    seed : int, default=DEFAULT_SEED
        Louvain random seed. None uses the global random state, so the
        partition may change between calls.

    Returns
    -------
    np.ndarray
        Labels 1..K in order of first appearance.
    """
    p = P.shape[0]
    weights = np.abs(np.asarray(P, dtype=float))
    np.fill_diagonal(weights, 0.0)

    if communities == 1:
        return np.ones(p, dtype=int)

    graph = nx.from_numpy_array(weights)
    partition = louvain_communities(graph, weight="weight", seed=seed)

    labels = np.zeros(p, dtype=int)
    for community, nodes in enumerate(partition):
        labels[list(nodes)] = community
    labels = relabel_by_appearance(labels)

    found = int(labels.max())
    if communities is not None and found != communities:
        logger.debug(
            f"Louvain found {found} communities, cutting hierarchical tree at {communities}"
        )
        labels = hierarchical_communities(P, communities)

    return labels


# =============================================================================
# NETWORK LOADINGS AND SCORES
# =============================================================================

def network_loadings(A: np.ndarray, structure: Sequence) -> np.ndarray:
    """
    Standardized network loadings.

    The loading of variable i on community c is its signed node strength
    toward the members of c, divided by the square root of the summed
    absolute strengths of that community column.

    Parameters
    ----------
    A : np.ndarray
        Network (p, p) with a zero diagonal.
    structure : sequence
        Community label of each variable.

    Returns
    -------
    np.ndarray
        Loadings (p, K). Columns without any edge stay zero.
    """
    A = np.asarray(A, dtype=float)
    membership = assignment_matrix(reindex_structure(structure)).astype(float)

    strength = A @ membership
    column_totals = np.sum(np.abs(strength), axis=0)
    scale = np.zeros_like(column_totals)
    nonzero = column_totals > 0
    scale[nonzero] = 1.0 / np.sqrt(column_totals[nonzero])

    return strength * scale[None, :]


def score_weights(loadings: np.ndarray, structure: Sequence) -> np.ndarray:
    """
    Composite weights (p, K) from the loadings on each variable's own community.

    Each column is normalized to unit absolute sum. A community whose
    assigned loadings are all zero weights its members equally.
    """
    membership = assignment_matrix(reindex_structure(structure))
    weights = np.where(membership, np.asarray(loadings, dtype=float), 0.0)

    totals = np.sum(np.abs(weights), axis=0)
    empty = totals == 0
    if np.any(empty):
        weights[:, empty] = membership[:, empty].astype(float)
        totals[empty] = membership[:, empty].sum(axis=0)

    return weights / totals[None, :]


def compute_scores(loadings: np.ndarray, structure: Sequence, data: np.ndarray) -> np.ndarray:
    """Standardized community scores (n, K) of raw data."""
    scores = standardize(data) @ score_weights(loadings, structure)
    return standardize(scores)


def community_correlations(
    loadings: np.ndarray, structure: Sequence, R: np.ndarray
) -> np.ndarray:
    """
    Correlations between community scores implied by a correlation matrix.

    Equals the correlation of `compute_scores` on data whose correlation
    matrix is `R`, without needing the data.
    """
    weights = score_weights(loadings, structure)
    return cov2cor(weights.T @ np.asarray(R, dtype=float) @ weights)


# =============================================================================
# SERVICES
# =============================================================================

@dataclass(frozen=True)
class Services:
    """
    Collaborators used by the model builders.

    Every field is a plain callable so callers can substitute their own
    (for example a different correlation estimator or community detection
    algorithm) without subclassing.

    Examples
    --------
    >>> from egm_lab.network import Services
    >>> services = Services(detect_communities=lambda P, k, seed: my_partition)
    """
    correlate: Callable = correlate
    detect_communities: Callable = detect_communities
    regularization_path: Callable = regularization_path
    ebic_select: Callable = ebic_select
    network_loadings: Callable = network_loadings
    compute_scores: Callable = compute_scores
    community_correlations: Callable = community_correlations
