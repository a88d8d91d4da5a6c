"""
pipeline.py - Building Blocks of an EGM Fit

Steps shared by every model variant and every search point:
- prepare_data: empirical correlations, sample size and variable names
- resolve_structure: user partition or detected communities
- fit_loadings: loadings -> implied matrices, community correlations, fit
- assemble_model: network -> network loadings -> optimized loadings -> EGMResult
- fit_standard_network / fit_regularized_network: the two network procedures
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
from loguru import logger

from .correlation import (
    cor2pcor,
    implied_correlation,
    implied_partial,
    precision_to_partial,
)
from .covariance_selection import known_graph
from .entropy import tefi
from .fit import compute_fit
from .network import Services
from .optimization import LoadingOptimizer
from .structure import build_community_structure, reindex_structure
from .types import (
    EGMConfig,
    EGMResult,
    LoadingSolution,
    NetworkMetadata,
    PreparedData,
    Probability,
)


# =============================================================================
# DATA
# =============================================================================

def prepare_data(
    data: np.ndarray,
    n: Optional[int] = None,
    services: Optional[Services] = None,
    variable_names: Optional[Sequence[str]] = None,
) -> PreparedData:
    """
    Correlate the input once for the whole fit.

    Raw data (n, p) are kept for score computation; a square matrix needs
    `n` and yields no scores.
    """
    services = services or Services()
    data = np.asarray(data, dtype=float)
    correlation, n = services.correlate(data, n)

    p = correlation.shape[0]
    if variable_names is None:
        variable_names = tuple(f"V{i + 1}" for i in range(p))
    elif len(variable_names) != p:
        raise ValueError(
            f"'variable_names' must have length {p}, got {len(variable_names)}"
        )

    raw = None if data.shape[0] == data.shape[1] else data
    return PreparedData(
        correlation=correlation,
        n=n,
        data=raw,
        variable_names=tuple(str(name) for name in variable_names),
    )


def resolve_structure(
    P: np.ndarray, config: EGMConfig, services: Services
) -> np.ndarray:
    """User partition if configured, otherwise communities detected on P."""
    if config.structure is not None:
        return reindex_structure(config.structure)
    return reindex_structure(
        services.detect_communities(P, config.communities, config.seed)
    )


# =============================================================================
# LOADINGS
# =============================================================================

def fit_loadings(
    prepared: PreparedData,
    loadings: np.ndarray,
    structure: np.ndarray,
    config: EGMConfig,
    services: Services,
    remove_correlations: bool,
) -> LoadingSolution:
    """
    Everything derived from one loading matrix.

    Community correlations come from the scores when raw data are
    available, otherwise they are derived from the empirical correlations.
    """
    implied_R = implied_correlation(loadings)
    implied_P = implied_partial(implied_R)

    if prepared.data is not None:
        scores = services.compute_scores(loadings, structure, prepared.data)
        correlations = np.atleast_2d(np.corrcoef(scores, rowvar=False))
    else:
        scores = None
        correlations = services.community_correlations(loadings, structure, prepared.correlation)

    fit = compute_fit(
        n=prepared.n,
        p=prepared.p,
        R=implied_R,
        S=prepared.correlation,
        loadings=loadings,
        correlations=correlations,
        structure=structure,
        ci=config.ci,
        remove_correlations=remove_correlations,
    )

    return LoadingSolution(
        loadings=loadings,
        correlations=correlations,
        fit=fit,
        implied_R=implied_R,
        implied_P=implied_P,
        scores=scores,
    )


def assemble_model(
    prepared: PreparedData,
    network: np.ndarray,
    structure: np.ndarray,
    metadata: NetworkMetadata,
    config: EGMConfig,
    services: Services,
    remove_correlations: bool,
) -> EGMResult:
    """
    Turn a network and a partition into a fitted model.

    Network loadings give the "standard" solution; the optimizer started
    from them gives the "optimized" solution.
    """
    loadings = np.asarray(services.network_loadings(network, structure), dtype=float)
    standard = fit_loadings(prepared, loadings, structure, config, services, remove_correlations)

    optimizer = LoadingOptimizer(
        prepared.correlation,
        prepared.n,
        structure,
        config,
        count_correlations=not remove_correlations,
    )
    result = optimizer.optimize(loadings)
    optimized = fit_loadings(
        prepared, result.loadings, structure, config, services, remove_correlations
    )

    return EGMResult(
        network=network,
        metadata=metadata,
        structure=structure,
        correlation=prepared.correlation,
        n=prepared.n,
        variable_names=prepared.variable_names,
        tefi=tefi(prepared.correlation, structure).vn_entropy_fit,
        standard=standard,
        optimized=optimized,
    )


# =============================================================================
# NETWORK PROCEDURES
# =============================================================================

def fit_standard_network(
    prepared: PreparedData,
    P: np.ndarray,
    structure: np.ndarray,
    p_in: Probability,
    p_out: Probability,
    config: EGMConfig,
    services: Services,
    model: str = "standard",
) -> EGMResult:
    """Thin the empirical partial correlations to (p_in, p_out) and fit."""
    network = build_community_structure(P, structure, p_in, p_out)
    metadata = NetworkMetadata(
        model=model,
        communities=int(structure.max()),
        p_in=p_in,
        p_out=p_out,
    )
    return assemble_model(
        prepared, network, structure, metadata, config, services, remove_correlations=True
    )


def fit_regularized_network(
    prepared: PreparedData,
    theta: np.ndarray,
    lambda_: float,
    config: EGMConfig,
    services: Services,
    model: str = "ega",
    remove_correlations: bool = True,
    refit: bool = False,
) -> EGMResult:
    """
    Fit from a concentration matrix estimated with penalty `lambda_`.

    With `refit` the graph of `theta` is re-estimated without penalty
    (maximum-likelihood covariance selection) before taking partial
    correlations.
    """
    if refit:
        refitted = known_graph(prepared.correlation, theta != 0)
        network = refitted.partial
        logger.debug(
            f"Refit selected graph: {refitted.iterations} sweeps, converged={refitted.converged}"
        )
    else:
        network = precision_to_partial(theta)

    structure = resolve_structure(network, config, services)
    metadata = NetworkMetadata(
        model=model,
        communities=int(structure.max()),
        lambda_=float(lambda_),
        refit=refit,
    )
    return assemble_model(
        prepared, network, structure, metadata, config, services, remove_correlations
    )


def empirical_partial(prepared: PreparedData) -> np.ndarray:
    """Non-regularized partial correlations of the empirical correlations."""
    return cor2pcor(prepared.correlation)
