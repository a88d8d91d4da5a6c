"""
model.py - Exploratory Graph Model Entry Point and Procedures

This module resolves a configuration into one of four procedures and runs it:
- StandardModel: non-regularized partial correlations thinned to (p_in, p_out)
- SparsitySearchModel: StandardModel over a grid of (p_in, p_out)
- EGAModel: graphical lasso network selected by EBIC
- EGASearchModel: every network of the graphical lasso path, selected by criterion

Example Usage:
-------------
    >>> from egm_lab import EGM, EGMConfig
    >>>
    >>> # Regularized network, communities detected
    >>> result = EGM(data)
    >>>
    >>> # Standard procedure with a known number of communities
    >>> result = EGM(data, EGMConfig(model="standard", communities=3, p_in=0.95, p_out=0.80))
    >>> result.structure, result.optimized.fit.cfi
    >>>
    >>> # Correlation matrix input needs the sample size
    >>> result = EGM(R, EGMConfig(model="ega", search=True), n=500)
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence, Type

import numpy as np
from loguru import logger

from .network import Services
from .pipeline import (
    empirical_partial,
    fit_regularized_network,
    fit_standard_network,
    prepare_data,
    resolve_structure,
)
from .search import grid_search, path_search
from .types import EGMConfig, EGMResult, ModelKind, PreparedData


# =============================================================================
# PROCEDURES
# =============================================================================

class ModelProcedure:
    """
    One EGM procedure bound to a configuration and collaborators.

    Subclasses implement `fit(prepared)`.
    """

    kind: ModelKind

    def __init__(self, config: EGMConfig, services: Optional[Services] = None):
        self.config = config
        self.services = services or Services()

    def fit(self, prepared: PreparedData) -> EGMResult:
        raise NotImplementedError


class StandardModel(ModelProcedure):
    """Empirical partial correlations, partition, block thinning, loadings."""

    kind = ModelKind.STANDARD

    def fit(self, prepared: PreparedData) -> EGMResult:
        P = empirical_partial(prepared)
        structure = resolve_structure(P, self.config, self.services)
        logger.info(f"Standard EGM: {int(structure.max())} communities")
        return fit_standard_network(
            prepared, P, structure, self.config.p_in, self.config.p_out,
            self.config, self.services,
        )


class SparsitySearchModel(ModelProcedure):
    """StandardModel selected over the (p_in, p_out) grid."""

    kind = ModelKind.SEARCH

    def fit(self, prepared: PreparedData) -> EGMResult:
        return grid_search(prepared, self.config, self.services)


class EGAModel(ModelProcedure):
    """
    Regularized network procedure.

    The graphical lasso path is estimated, the EBIC-optimal network is
    selected (optionally refit without penalty), its communities are
    detected unless a structure is given, and loadings are fitted.
    """

    kind = ModelKind.EGA

    def fit(self, prepared: PreparedData) -> EGMResult:
        path = self.services.regularization_path(
            prepared.correlation, prepared.n, self.config.nlambda, self.config.lambda_min_ratio
        )
        index = self.services.ebic_select(path, self.config.gamma)
        lambda_ = float(path.lambdas[index])
        logger.info(f"EGA network selected by EBIC at lambda={lambda_:.4g}")

        return fit_regularized_network(
            prepared, path.precisions[index], lambda_, self.config, self.services,
            model="ega", remove_correlations=True, refit=self.config.refit,
        )


class EGASearchModel(ModelProcedure):
    """Regularized networks selected along the whole path by criterion."""

    kind = ModelKind.EGA_SEARCH

    def fit(self, prepared: PreparedData) -> EGMResult:
        return path_search(prepared, self.config, self.services)


PROCEDURES: Dict[ModelKind, Type[ModelProcedure]] = {
    ModelKind.STANDARD: StandardModel,
    ModelKind.SEARCH: SparsitySearchModel,
    ModelKind.EGA: EGAModel,
    ModelKind.EGA_SEARCH: EGASearchModel,
}


def resolve_procedure(
    config: EGMConfig, services: Optional[Services] = None
) -> ModelProcedure:
    """Concrete procedure for the configured model kind."""
    return PROCEDURES[config.resolved_kind](config, services)


# =============================================================================
# ENTRY POINT
# =============================================================================

def EGM(
    data: np.ndarray,
    config: Optional[EGMConfig] = None,
    n: Optional[int] = None,
    services: Optional[Services] = None,
    variable_names: Optional[Sequence[str]] = None,
) -> EGMResult:
    """
    Fit an Exploratory Graph Model.

    Parameters
    ----------
    data : np.ndarray
        Raw data (n, p) or a correlation matrix (p, p).
    config : EGMConfig, optional
        Procedure and hyperparameters. Defaults to ``EGMConfig()`` (EGA).
    n : int, optional
        Sample size, required when `data` is a correlation matrix.
    services : Services, optional
        Collaborators (correlation, communities, path, loadings, scores).
    variable_names : sequence of str, optional
        Names of the variables. Defaults to V1..Vp.

    Returns
    -------
    EGMResult
        Partition, network with its metadata, standard and optimized
        loading solutions, and the winning hyperparameters for searches.

    Raises
    ------
    MissingSampleSizeError
        If a square matrix is given without `n`.
    ValueError, TypeError
        If the configuration is invalid for the data.
    RuntimeError
        If a search finds no usable model.

    Examples
    --------
    >>> result = EGM(data, EGMConfig(model="standard", search=True, p_in=0.9, communities=2))
    >>> result.search.parameters
    {'p_in': 0.95, 'p_out': 0.1}
    """
    config = config or EGMConfig()
    services = services or Services()
    config.validate()

    prepared = prepare_data(data, n=n, services=services, variable_names=variable_names)
    config.validate(prepared.p)

    procedure = resolve_procedure(config, services)
    logger.info(
        f"Fitting EGM ({procedure.kind.value}) on {prepared.p} variables, n={prepared.n}, "
        f"criterion={config.opt.value}"
    )

    result = procedure.fit(prepared)
    logger.success(
        f"EGM fitted: {result.k} communities, optimized {config.opt.value} = "
        f"{result.optimized.fit.get(config.opt):.4f}"
    )
    return result
