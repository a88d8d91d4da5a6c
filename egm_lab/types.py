"""
types.py - Core Data Structures and Type Definitions for EGM Lab

This module defines the data structures shared across egm_lab:
- EGMConfig: Immutable configuration threaded through every component call
- Criterion / ModelKind: Enumerations for model selection and model variants
- FitRecord / EntropyFit: Fit statistics computed for a loading matrix
- LoadingSolution / EGMResult: A fitted Exploratory Graph Model
- KnownGraphResult / LoadingOptimizationResult: Solver outputs
- PointOutcome / SearchSelection: Per-point results of a hyperparameter search

Design Principles:
-----------------
1. Immutability (frozen dataclasses for value objects)
2. Validation at construction time (fail-fast, before numeric work)
3. Explicit metadata records instead of attributes attached to matrices
4. Numpy-style docstrings throughout

Example Usage:
-------------
    >>> from egm_lab.types import EGMConfig, ModelKind, Criterion
    >>>
    >>> config = EGMConfig(
    ...     model=ModelKind.STANDARD, communities=3,
    ...     p_in=0.95, p_out=0.80, opt=Criterion.SRMR
    ... )
    >>> config.resolved_kind
    <ModelKind.STANDARD: 'standard'>
"""

from __future__ import annotations

import math
import numpy as np
from dataclasses import dataclass, replace
from typing import Dict, Any, Optional, Tuple, Sequence, Union
from enum import Enum


# =============================================================================
# TYPE ALIASES
# =============================================================================

# A sparsity target is either one value for every community or one per community.
Probability = Union[float, Sequence[float]]

# Community detection seed used unless one is configured
DEFAULT_SEED = 0


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Criterion(str, Enum):
    """
    Fit index used to score loadings and to select among searched models.

    Each member knows the FitRecord attribute it reads and whether the
    best model minimizes or maximizes it.
    """
    AIC = "AIC"
    BIC = "BIC"
    LOGLIK = "logLik"
    SRMR = "SRMR"

    @classmethod
    def parse(cls, value: Union[str, "Criterion"]) -> "Criterion":
        """Case-insensitive lookup ('aic', 'loglik', 'SRMR', ...)."""
        if isinstance(value, cls):
            return value
        lookup = {member.value.lower(): member for member in cls}
        try:
            return lookup[str(value).lower()]
        except KeyError:
            raise ValueError(
                f"Unknown criterion '{value}'. "
                f"Valid options are: {[m.value for m in cls]}"
            ) from None

    @property
    def attribute(self) -> str:
        """Name of the FitRecord field holding this criterion."""
        return {
            Criterion.AIC: "aic",
            Criterion.BIC: "bic",
            Criterion.LOGLIK: "loglik",
            Criterion.SRMR: "srmr",
        }[self]

    @property
    def maximize(self) -> bool:
        """True if larger values are better (log-likelihood only)."""
        return self is Criterion.LOGLIK

    def to_minimize(self, value: float) -> float:
        """Map a criterion value onto a 'smaller is better' scale."""
        return -value if self.maximize else value


class ModelKind(str, Enum):
    """
    Tagged variant of the EGM procedures.

    STANDARD and EGA are the base procedures; SEARCH and EGA_SEARCH are
    their hyperparameter-search counterparts.
    """
    STANDARD = "standard"
    SEARCH = "search"
    EGA = "ega"
    EGA_SEARCH = "ega.search"

    @classmethod
    def parse(cls, value: Union[str, "ModelKind"]) -> "ModelKind":
        if isinstance(value, cls):
            return value
        lookup = {member.value: member for member in cls}
        key = str(value).lower()
        if key not in lookup:
            raise ValueError(
                f"Unknown EGM model '{value}'. "
                f"Valid options are: {[m.value for m in cls]}"
            )
        return lookup[key]

    def with_search(self, search: bool) -> "ModelKind":
        """Resolve the base procedure and the search flag into a variant."""
        if not search:
            return self
        if self in (ModelKind.STANDARD, ModelKind.SEARCH):
            return ModelKind.SEARCH
        return ModelKind.EGA_SEARCH

    @property
    def uses_sparsity(self) -> bool:
        """Whether p_in/p_out drive the network (standard variants)."""
        return self in (ModelKind.STANDARD, ModelKind.SEARCH)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class EGMConfig:
    """
    Immutable configuration of an EGM fit.

    Parameters
    ----------
    model : ModelKind, default=ModelKind.EGA
        Base procedure: ``EGA`` (regularized network) or ``STANDARD``
        (non-regularized partial correlations thinned by p_in/p_out).
    search : bool, default=False
        Whether to search hyperparameters (sparsity grid for STANDARD,
        regularization path for EGA).
    communities : int, optional
        Number of communities for the standard procedures.
    structure : sequence, optional
        Known partition, one label per variable.
    p_in : float or sequence of float, optional
        Within-community edge retention probability (scalar or one per
        community). Required for STANDARD and SEARCH (floor of the grid).
    p_out : float or sequence of float, optional
        Between-community edge retention probability. Required for STANDARD.
    opt : Criterion, default=Criterion.LOGLIK
        Criterion optimized by the loading optimizer and the searches.
    constrain_structure : bool, default=True
        Assigned loadings must be at least as large as any cross-loading.
    constrain_zeros : bool, default=True
        Zero loadings of the initial matrix stay zero.
    ci : float, default=0.95
        Confidence level of the RMSEA interval.
    grid_step : float, default=0.05
        Increment of the sparsity grid.
    n_jobs : int, default=1
        Worker threads used for grid/path sweeps.
    nlambda : int, default=100
        Number of regularization strengths on the graphical lasso path.
    lambda_min_ratio : float, default=0.1
        Ratio of the smallest to the largest regularization strength.
    gamma : float, default=0.5
        EBIC hyperparameter used to select the EGA network.
    refit : bool, default=False
        Refit the selected EGA graph without penalty (covariance selection).
    seed : int, default=DEFAULT_SEED
        Seed for Louvain community detection. Fixed by default so repeated
        fits and search points agree however they are scheduled; None draws
        from the global random state.
    max_iter : int, default=1000
        Iteration cap of the loading optimizer.

    Examples
    --------
    >>> config = EGMConfig(model=ModelKind.STANDARD, search=True, p_in=0.9, communities=2)
    >>> config.resolved_kind
    <ModelKind.SEARCH: 'search'>
    """
    model: ModelKind = ModelKind.EGA
    search: bool = False
    communities: Optional[int] = None
    structure: Optional[Tuple[Any, ...]] = None
    p_in: Optional[Probability] = None
    p_out: Optional[Probability] = None
    opt: Criterion = Criterion.LOGLIK
    constrain_structure: bool = True
    constrain_zeros: bool = True
    ci: float = 0.95
    grid_step: float = 0.05
    n_jobs: int = 1
    nlambda: int = 100
    lambda_min_ratio: float = 0.1
    gamma: float = 0.5
    refit: bool = False
    seed: Optional[int] = DEFAULT_SEED
    max_iter: int = 1000

    def __post_init__(self):
        """Normalize enum-like and sequence fields."""
        object.__setattr__(self, "model", ModelKind.parse(self.model))
        object.__setattr__(self, "opt", Criterion.parse(self.opt))
        if self.structure is not None:
            object.__setattr__(self, "structure", tuple(self.structure))
        for name in ("p_in", "p_out"):
            value = getattr(self, name)
            if value is not None and not np.isscalar(value):
                object.__setattr__(self, name, tuple(float(v) for v in value))

    @property
    def resolved_kind(self) -> ModelKind:
        """The concrete model variant after applying `search`."""
        return self.model.with_search(self.search)

    def evolve(self, **changes: Any) -> "EGMConfig":
        """Return a copy with some fields replaced."""
        return replace(self, **changes)

    def validate(self, p: Optional[int] = None) -> None:
        """
        Check the configuration, against a problem with `p` variables if given.

        Without `p` only the checks that do not depend on the data run, so
        a call before correlating catches most mistakes early.

        Raises
        ------
        ValueError
            If a required hyperparameter is missing or out of range.
        TypeError
            If a flag or count has the wrong type.
        """
        kind = self.resolved_kind

        if self.communities is not None:
            if isinstance(self.communities, bool) or not isinstance(
                self.communities, (int, np.integer)
            ):
                raise TypeError(
                    f"'communities' must be an integer, got {type(self.communities).__name__}"
                )
            if self.communities < 1:
                raise ValueError(f"'communities' must be at least 1, got {self.communities}")
            if p is not None and self.communities > p:
                raise ValueError(
                    f"'communities' must be in range [1, {p}], got {self.communities}"
                )

        if p is not None and self.structure is not None and len(self.structure) != p:
            raise ValueError(
                f"'structure' must have length {p} (one label per variable), "
                f"got {len(self.structure)}"
            )

        for name in ("constrain_structure", "constrain_zeros", "search", "refit"):
            if not isinstance(getattr(self, name), (bool, np.bool_)):
                raise TypeError(f"'{name}' must be a boolean")

        if self.seed is not None and (
            isinstance(self.seed, bool) or not isinstance(self.seed, (int, np.integer))
        ):
            raise TypeError(f"'seed' must be an integer or None, got {type(self.seed).__name__}")

        if kind.uses_sparsity:
            if self.p_in is None:
                raise ValueError(
                    "Input for 'p_in' is None. A value between 0 and 1 for 'p_in' must be provided."
                )
            self._validate_probability("p_in", self.p_in)

        if kind is ModelKind.STANDARD:
            if self.p_out is None:
                raise ValueError(
                    "Input for 'p_out' is None. A value between 0 and 1 for 'p_out' must be provided."
                )
            self._validate_probability("p_out", self.p_out)

        if kind is ModelKind.SEARCH and not np.isscalar(self.p_in):
            raise ValueError("'p_in' must be a single value when searching the sparsity grid")

        if not 0.0 < self.ci < 1.0:
            raise ValueError(f"'ci' must be in (0, 1), got {self.ci}")

        if not 0.0 < self.grid_step <= 1.0:
            raise ValueError(f"'grid_step' must be in (0, 1], got {self.grid_step}")

        if self.n_jobs < 1:
            raise ValueError(f"'n_jobs' must be at least 1, got {self.n_jobs}")

        if self.nlambda < 1:
            raise ValueError(f"'nlambda' must be at least 1, got {self.nlambda}")

        if not 0.0 < self.lambda_min_ratio < 1.0:
            raise ValueError(
                f"'lambda_min_ratio' must be in (0, 1), got {self.lambda_min_ratio}"
            )

        if self.max_iter < 1:
            raise ValueError(f"'max_iter' must be at least 1, got {self.max_iter}")

    def _validate_probability(self, name: str, value: Probability) -> None:
        values = np.atleast_1d(np.asarray(value, dtype=float))
        if np.any(~np.isfinite(values)) or np.any(values < 0) or np.any(values > 1):
            raise ValueError(f"'{name}' must be between 0 and 1, got {value}")
        if values.size == 1:
            return
        if self.structure is not None:
            expected, source = len(set(self.structure)), "communities in 'structure'"
        elif self.communities is not None:
            expected, source = self.communities, "communities"
        else:
            return
        if values.size != expected:
            raise ValueError(
                f"'{name}' must have length 1 or {expected} ({source}), got {values.size}"
            )


# =============================================================================
# FIT STATISTICS
# =============================================================================

@dataclass(frozen=True)
class EntropyFit:
    """
    Von Neumann entropy fit measures of a partition.

    Parameters
    ----------
    vn_entropy_fit : float
        Entropy fit index (TEFI). Lower values indicate better fit.
    total_correlation : float
        Sum of community entropies minus the joint entropy.
    average_entropy : float
        Mean community entropy minus the joint entropy.
    """
    vn_entropy_fit: float
    total_correlation: float
    average_entropy: float


@dataclass(frozen=True)
class FitRecord:
    """
    Fit statistics of an implied correlation matrix against an empirical one.

    Examples
    --------
    >>> record = compute_fit(n, p, R=implied, S=empirical, ...)
    >>> print(f"CFI = {record.cfi:.3f}, RMSEA = {record.rmsea:.3f}")
    >>> record.to_dict()["RMSEA.95.lower"]
    """
    chisq: float
    df: float
    chisq_p_value: float
    rmsea: float
    rmsea_lower: float
    rmsea_upper: float
    rmsea_p_value: float
    cfi: float
    tli: float
    srmr: float
    loglik: float
    aic: float
    bic: float
    tefi: float
    tefi_adj: float
    ci: float = 0.95

    def get(self, criterion: Union[str, Criterion]) -> float:
        """Value of a selection criterion."""
        return getattr(self, Criterion.parse(criterion).attribute)

    def to_dict(self) -> Dict[str, float]:
        """Statistics under their conventional names, in reporting order."""
        level = f"{self.ci * 100:g}"
        return {
            "chisq": self.chisq,
            "df": self.df,
            "chisq.p.value": self.chisq_p_value,
            "RMSEA": self.rmsea,
            f"RMSEA.{level}.lower": self.rmsea_lower,
            f"RMSEA.{level}.upper": self.rmsea_upper,
            "RMSEA.p.value": self.rmsea_p_value,
            "CFI": self.cfi,
            "TLI": self.tli,
            "SRMR": self.srmr,
            "logLik": self.loglik,
            "AIC": self.aic,
            "BIC": self.bic,
            "TEFI": self.tefi,
            "TEFI.adj": self.tefi_adj,
        }

    @classmethod
    def from_dict(cls, values: Dict[str, float]) -> "FitRecord":
        """Inverse of `to_dict` (used when loading saved results)."""
        lower = next(k for k in values if k.startswith("RMSEA.") and k.endswith(".lower"))
        upper = next(k for k in values if k.startswith("RMSEA.") and k.endswith(".upper"))
        ci = float(lower[len("RMSEA."):-len(".lower")]) / 100
        return cls(
            chisq=values["chisq"], df=values["df"],
            chisq_p_value=values["chisq.p.value"], rmsea=values["RMSEA"],
            rmsea_lower=values[lower], rmsea_upper=values[upper],
            rmsea_p_value=values["RMSEA.p.value"], cfi=values["CFI"],
            tli=values["TLI"], srmr=values["SRMR"], loglik=values["logLik"],
            aic=values["AIC"], bic=values["BIC"], tefi=values["TEFI"],
            tefi_adj=values["TEFI.adj"], ci=ci,
        )


# =============================================================================
# SOLVER RESULTS
# =============================================================================

@dataclass(frozen=True)
class KnownGraphResult:
    """
    Maximum-likelihood covariance for a fixed graph.

    Parameters
    ----------
    W : np.ndarray
        Estimated covariance matrix (p, p).
    theta : np.ndarray
        Its inverse, with zeros at the non-edges of the graph.
    partial : np.ndarray
        Partial correlations implied by `theta` (zero diagonal).
    iterations : int
        Number of sweeps performed.
    converged : bool
        True if the last sweep changed W by at most the tolerance.
    """
    W: np.ndarray
    theta: np.ndarray
    partial: np.ndarray
    iterations: int
    converged: bool


@dataclass(frozen=True)
class LoadingOptimizationResult:
    """
    Result of optimizing a loading matrix.

    Parameters
    ----------
    par : np.ndarray
        Optimized loadings flattened row-major, shape (p * k,).
    loadings : np.ndarray
        `par` reshaped to (p, k).
    objective : float
        Final objective (criterion on the minimization scale).
    initial_objective : float
        Objective at the starting loadings.
    converged : bool
        Whether the minimizer reported success.
    iterations : int
        Minimizer iterations.
    message : str
        Minimizer status message.
    """
    par: np.ndarray
    loadings: np.ndarray
    objective: float
    initial_objective: float
    converged: bool
    iterations: int = 0
    message: str = ""


@dataclass(frozen=True)
class RegularizationPath:
    """
    Sparse concentration-matrix estimates indexed by regularization strength.

    `precisions[i]` was estimated with `lambdas[i]`. The built-in path is
    ascending; consumers do not rely on the order.
    """
    lambdas: np.ndarray
    precisions: Tuple[np.ndarray, ...]
    S: np.ndarray
    n: int

    def __len__(self) -> int:
        return len(self.lambdas)


# =============================================================================
# FITTED MODEL
# =============================================================================

@dataclass(frozen=True)
class PreparedData:
    """Empirical inputs shared (read-only) by every fit of one call."""
    correlation: np.ndarray
    n: int
    data: Optional[np.ndarray] = None
    variable_names: Tuple[str, ...] = ()

    @property
    def p(self) -> int:
        return self.correlation.shape[0]


@dataclass(frozen=True)
class NetworkMetadata:
    """
    How the network of an EGM was obtained.

    Replaces attributes stashed on the network matrix: procedure name,
    community count and the hyperparameters that produced it.
    """
    model: str
    communities: int
    p_in: Optional[Probability] = None
    p_out: Optional[Probability] = None
    lambda_: Optional[float] = None
    model_selection: Optional[str] = None
    criterion: Optional[float] = None
    refit: bool = False


@dataclass(frozen=True)
class LoadingSolution:
    """
    One loading matrix with everything derived from it.

    Parameters
    ----------
    loadings : np.ndarray
        Loading matrix (p, k).
    correlations : np.ndarray
        Correlations between community scores (k, k).
    fit : FitRecord
        Fit statistics of `implied_R` against the empirical correlations.
    implied_R : np.ndarray
        Model-implied correlation matrix.
    implied_P : np.ndarray
        Model-implied partial correlation matrix.
    scores : np.ndarray, optional
        Community scores (n, k); only available with raw data.
    """
    loadings: np.ndarray
    correlations: np.ndarray
    fit: FitRecord
    implied_R: np.ndarray
    implied_P: np.ndarray
    scores: Optional[np.ndarray] = None


@dataclass(frozen=True)
class SearchSelection:
    """Winning hyperparameters of a search and the criterion it achieved."""
    parameters: Dict[str, float]
    criterion: str
    value: float
    evaluated: int = 0
    failed: int = 0


@dataclass(frozen=True)
class EGMResult:
    """
    A fitted Exploratory Graph Model.

    Parameters
    ----------
    network : np.ndarray
        Partial correlation network (p, p) consistent with the partition.
    metadata : NetworkMetadata
        How `network` was obtained.
    structure : np.ndarray
        Community labels 1..k, one per variable.
    correlation : np.ndarray
        Empirical correlation matrix.
    n : int
        Sample size.
    variable_names : tuple of str
        Names of the variables.
    tefi : float
        Entropy fit index of `structure` on the empirical correlations.
    standard : LoadingSolution
        Solution for the network (unoptimized) loadings.
    optimized : LoadingSolution
        Solution for the optimized loadings.
    search : SearchSelection, optional
        Present when the model was selected by a search.

    Examples
    --------
    >>> result = EGM(data, EGMConfig(model="standard", communities=3, p_in=0.95, p_out=0.8))
    >>> result.k, result.optimized.fit.cfi
    """
    network: np.ndarray
    metadata: NetworkMetadata
    structure: np.ndarray
    correlation: np.ndarray
    n: int
    variable_names: Tuple[str, ...]
    tefi: float
    standard: LoadingSolution
    optimized: LoadingSolution
    search: Optional[SearchSelection] = None

    @property
    def p(self) -> int:
        """Number of variables."""
        return self.correlation.shape[0]

    @property
    def k(self) -> int:
        """Number of communities."""
        return int(np.max(self.structure))

    def with_search(
        self, selection: SearchSelection, metadata: NetworkMetadata
    ) -> "EGMResult":
        """Copy of this result annotated with the search that selected it."""
        return replace(self, search=selection, metadata=metadata)


# =============================================================================
# SEARCH OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class PointOutcome:
    """
    Result of fitting one grid or path point: a model or a failure reason.

    Examples
    --------
    >>> outcome = PointOutcome(parameters={"p_in": 0.9, "p_out": 0.1}, reason="singular")
    >>> outcome.succeeded
    False
    """
    parameters: Dict[str, float]
    model: Optional[EGMResult] = None
    reason: Optional[str] = None

    def __post_init__(self):
        if (self.model is None) == (self.reason is None):
            raise ValueError("PointOutcome needs exactly one of 'model' or 'reason'")

    @property
    def succeeded(self) -> bool:
        return self.model is not None

    def criterion(self, criterion: Criterion) -> float:
        """Criterion of the optimized fit, NaN for failed points."""
        if self.model is None:
            return math.nan
        return float(self.model.optimized.fit.get(criterion))
