"""
optimization.py - Constrained Optimization of Network Loadings

This module refines a loading matrix so that the correlation matrix it
implies fits the empirical correlations better:
- LoadingOptimizer: bounded, constraint-respecting minimizer of a fit criterion
- LoadingOptimizationError: raised when the starting loadings cannot be scored

Mathematical Background:
-----------------------
Loadings are optimized in absolute value, |λ_ic| in [0, 1], and the signs
of the starting matrix are restored afterwards. The objective is the
selected criterion (AIC, BIC, SRMR, or the negated log-likelihood) of the
implied correlation matrix of the trial loadings.

With `constrain_structure` each variable's loading on its assigned
community a must dominate its cross-loadings:

    |λ_ia| - |λ_ic| >= 0        for every c != a

which is solved with SLSQP. Without it the problem only has box bounds
and is solved with L-BFGS-B. With `constrain_zeros`, entries that are
zero in the starting matrix are removed from the free parameters.

The starting point is made feasible by raising each assigned loading to
the largest cross-loading of its row. When both flags are set and a
variable's assigned loading starts at zero (e.g. the only member of a
singleton community) while it has cross-loadings, no feasible loading
row exists and LoadingOptimizationError is raised.

Trial loadings whose implied matrix is not positive definite receive a
large finite penalty, so the minimizer steps back instead of failing.

Example Usage:
-------------
    >>> from egm_lab.optimization import LoadingOptimizer
    >>> from egm_lab.types import EGMConfig
    >>>
    >>> optimizer = LoadingOptimizer(R, n=500, structure=[1, 1, 1, 2, 2, 2],
    ...                              config=EGMConfig(opt="SRMR"))
    >>> result = optimizer.optimize(initial_loadings)
    >>> result.objective <= result.initial_objective
    True
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
import scipy.optimize
from loguru import logger

from .correlation import implied_correlation
from .fit import count_model_parameters, criterion_value
from .structure import assignment_matrix, reindex_structure
from .types import EGMConfig, LoadingOptimizationResult

# Objective of an implied matrix that is not positive definite
PENALTY = 1e10


class LoadingOptimizationError(RuntimeError):
    """The starting loadings do not produce a finite objective."""


class LoadingOptimizer:
    """
    Fit-criterion optimizer for network loadings.

    Parameters
    ----------
    correlation : np.ndarray
        Empirical correlation matrix (p, p).
    n : int
        Sample size.
    structure : sequence
        Community label of each variable.
    config : EGMConfig, optional
        Supplies the criterion (`opt`), the constraint flags and `max_iter`.
    count_correlations : bool, default=False
        Count community correlations as model parameters (affects AIC/BIC).

    Examples
    --------
    >>> optimizer = LoadingOptimizer(R, 500, structure, EGMConfig(constrain_structure=False))
    >>> result = optimizer.optimize(L0)
    >>> if result.converged:
    ...     print(f"Objective: {result.initial_objective:.3f} -> {result.objective:.3f}")

    Notes
    -----
    The flattened parameter vector is row-major: entry ``i * k + c`` is the
    loading of variable i on community c.
    """

    def __init__(
        self,
        correlation: np.ndarray,
        n: int,
        structure: Sequence,
        config: Optional[EGMConfig] = None,
        count_correlations: bool = False,
    ):
        self.config = config if config is not None else EGMConfig()
        self.S = np.asarray(correlation, dtype=float)
        self.n = int(n)
        self.structure = reindex_structure(structure)
        self.criterion = self.config.opt
        self.remove_correlations = not count_correlations

        if self.structure.size != self.S.shape[0]:
            raise ValueError(
                f"Structure length ({self.structure.size}) does not match the number "
                f"of variables ({self.S.shape[0]})"
            )

        self.p = self.S.shape[0]
        self.k = int(self.structure.max())
        self._assigned = assignment_matrix(self.structure)

    # -------------------------------------------------------------------------
    # Objective
    # -------------------------------------------------------------------------

    def objective(self, x: np.ndarray) -> float:
        """
        Criterion of flattened loadings on the minimization scale.

        Parameters
        ----------
        x : np.ndarray
            Loadings flattened row-major, shape (p * k,).

        Returns
        -------
        float
            Criterion value (negated for logLik), or a penalty of at least
            `PENALTY` if the implied matrix is degenerate.
        """
        loadings = np.asarray(x, dtype=float).reshape(self.p, self.k)

        try:
            R = implied_correlation(loadings)
        except ValueError:
            return 2 * PENALTY

        eigenvalues = np.linalg.eigvalsh(R)
        if not np.all(np.isfinite(eigenvalues)):
            return 2 * PENALTY
        if eigenvalues[0] <= 0:
            return PENALTY * (1.0 + abs(eigenvalues[0]))

        parameters = count_model_parameters(loadings, self.remove_correlations)
        value = criterion_value(self.criterion, self.n, R, self.S, parameters)
        if not np.isfinite(value):
            return 2 * PENALTY
        return self.criterion.to_minimize(value)

    # -------------------------------------------------------------------------
    # Optimization
    # -------------------------------------------------------------------------

    def optimize(self, initial_loadings: np.ndarray) -> LoadingOptimizationResult:
        """
        Optimize loadings starting from `initial_loadings`.

        Parameters
        ----------
        initial_loadings : np.ndarray
            Starting matrix (p, k), typically network loadings.

        Returns
        -------
        LoadingOptimizationResult
            Never worse than the (projected) starting point.

        Raises
        ------
        ValueError
            If the matrix has the wrong shape.
        LoadingOptimizationError
            If the starting point is non-finite or degenerate.
        """
        initial = np.asarray(initial_loadings, dtype=float)
        if initial.shape != (self.p, self.k):
            raise ValueError(
                f"Loadings shape mismatch: expected {(self.p, self.k)}, got {initial.shape}"
            )
        if not np.all(np.isfinite(initial)):
            raise LoadingOptimizationError("Starting loadings contain non-finite values")

        signs = np.where(initial < 0, -1.0, 1.0).ravel()
        magnitudes = np.abs(initial).ravel()

        if self.config.constrain_zeros:
            free = magnitudes != 0
        else:
            free = np.ones_like(magnitudes, dtype=bool)

        if not np.any(free):
            raise LoadingOptimizationError("Starting loadings have no free (non-zero) entries")

        if self.config.constrain_structure:
            stranded = self._stranded_variables(magnitudes, free)
            if stranded.size:
                raise LoadingOptimizationError(
                    f"Variables {stranded.tolist()} have a zero loading on their own community "
                    "that 'constrain_zeros' keeps at zero, so the structure constraint forces "
                    "all their cross-loadings to zero as well. Set constrain_zeros=False to "
                    "free these loadings"
                )

        def expand(z: np.ndarray) -> np.ndarray:
            full = np.zeros(self.p * self.k)
            full[free] = z
            return full * signs

        def objective_free(z: np.ndarray) -> float:
            return self.objective(expand(z))

        z0 = self._project(np.clip(magnitudes, 0.0, 1.0), free)[free]
        initial_objective = objective_free(z0)

        if initial_objective >= PENALTY:
            raise LoadingOptimizationError(
                "Starting loadings imply a correlation matrix that is not positive definite"
            )

        bounds = [(0.0, 1.0)] * int(free.sum())
        options = {"maxiter": self.config.max_iter}

        if self.config.constrain_structure:
            G = self._structure_constraints(free)
            constraints = []
            if G.shape[0] > 0:
                constraints.append({"type": "ineq", "fun": lambda z: G @ z, "jac": lambda z: G})
            result = scipy.optimize.minimize(
                objective_free, z0, method="SLSQP",
                bounds=bounds, constraints=constraints, options=options,
            )
        else:
            result = scipy.optimize.minimize(
                objective_free, z0, method="L-BFGS-B",
                bounds=bounds, options=options,
            )

        z = np.clip(np.asarray(result.x, dtype=float), 0.0, 1.0)
        full = np.zeros(self.p * self.k)
        full[free] = z
        z = self._project(full, free)[free]
        final_objective = objective_free(z)

        if not final_objective <= initial_objective:
            logger.debug(
                f"Optimizer did not improve on the start ({final_objective:.4g} > "
                f"{initial_objective:.4g}); keeping starting loadings"
            )
            z, final_objective = z0, initial_objective

        par = expand(z)
        logger.debug(
            f"Loading optimization ({self.criterion.value}): "
            f"{initial_objective:.4f} -> {final_objective:.4f} "
            f"in {getattr(result, 'nit', 0)} iterations ({result.message})"
        )

        return LoadingOptimizationResult(
            par=par,
            loadings=par.reshape(self.p, self.k),
            objective=float(final_objective),
            initial_objective=float(initial_objective),
            converged=bool(result.success),
            iterations=int(getattr(result, "nit", 0)),
            message=str(result.message),
        )

    # -------------------------------------------------------------------------
    # Constraints
    # -------------------------------------------------------------------------

    def _project(self, magnitudes: np.ndarray, free: np.ndarray) -> np.ndarray:
        """
        Zero locked entries and, if constrained, make the assigned loading dominate.

        A free assigned loading is raised to the row's largest cross-loading;
        cross-loadings are left as they are.
        """
        x = np.where(free, magnitudes, 0.0).reshape(self.p, self.k)
        if self.config.constrain_structure:
            rows = np.arange(self.p)
            columns = self.structure - 1
            cross = np.max(np.where(self._assigned, 0.0, x), axis=1)
            assigned_free = free.reshape(self.p, self.k)[rows, columns]
            x[rows, columns] = np.where(
                assigned_free, np.maximum(x[rows, columns], cross), x[rows, columns]
            )
        return x.ravel()

    def _stranded_variables(self, magnitudes: np.ndarray, free: np.ndarray) -> np.ndarray:
        """Variables whose locked zero assigned loading must dominate non-zero cross-loadings."""
        x = np.where(free, magnitudes, 0.0).reshape(self.p, self.k)
        rows = np.arange(self.p)
        columns = self.structure - 1
        locked = ~free.reshape(self.p, self.k)[rows, columns]
        crossing = np.any(np.where(self._assigned, 0.0, x) > 0, axis=1)
        return np.flatnonzero(locked & crossing)

    def _structure_constraints(self, free: np.ndarray) -> np.ndarray:
        """Rows of G with G @ z >= 0 encoding |assigned| - |cross| >= 0 over free entries."""
        position = np.full(self.p * self.k, -1)
        position[free] = np.arange(int(free.sum()))

        rows: List[np.ndarray] = []
        for i in range(self.p):
            a = i * self.k + (self.structure[i] - 1)
            for c in range(self.k):
                cross = i * self.k + c
                if cross == a or not free[cross]:
                    continue
                row = np.zeros(int(free.sum()))
                row[position[cross]] = -1.0
                if free[a]:
                    row[position[a]] = 1.0
                rows.append(row)

        if not rows:
            return np.zeros((0, int(free.sum())))
        return np.vstack(rows)
