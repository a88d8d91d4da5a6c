"""
fit.py - Model Fit Statistics for Implied Correlation Matrices

This module scores a model-implied correlation matrix R against an
empirical matrix S:
- Maximum-likelihood discrepancy, chi-square and degrees of freedom
- RMSEA with a root-finding confidence interval and close-fit p-value
- CFI, TLI and SRMR
- Gaussian log-likelihood, AIC and BIC
- Entropy fit index (TEFI) and its complexity-adjusted variant

Mathematical Background:
-----------------------
    F_ML   = log|R| + tr(S R^-1) - log|S| - p
    chisq  = n * F_ML
    df     = p(p - 1)/2 - q
    RMSEA  = sqrt(max(chisq - df, 0) / (n * df))
    logLik = -(n/2) * (p log(2 pi) + log|R| + tr(S R^-1))

where q counts the non-zero loadings plus, unless removed, the k(k - 1)/2
community correlations. The baseline (null) model is the identity matrix.

Example Usage:
-------------
    >>> from egm_lab.fit import compute_fit
    >>> record = compute_fit(
    ...     n=500, p=6, R=implied, S=empirical, loadings=L,
    ...     correlations=community_cor, structure=[1, 1, 1, 2, 2, 2]
    ... )
    >>> print(f"CFI = {record.cfi:.3f}, RMSEA = {record.rmsea:.3f}")
"""

from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple

import numpy as np
import scipy.optimize
import scipy.stats
from loguru import logger

from .entropy import tefi
from .types import Criterion, FitRecord

# 0.05 ** 2, the close-fit RMSEA null
RMSEA_CLOSE_FIT = 0.0025


# =============================================================================
# PRIMITIVES
# =============================================================================

def _log_det(matrix: np.ndarray) -> Optional[float]:
    """log-determinant, or None if the matrix is not positive definite."""
    sign, logdet = np.linalg.slogdet(matrix)
    if sign <= 0 or not np.isfinite(logdet):
        return None
    return float(logdet)


def likelihood_terms(R: np.ndarray, S: np.ndarray) -> Optional[Tuple[float, float]]:
    """
    log|R| and tr(S R^-1).

    Returns None when R is not positive definite.
    """
    log_det_R = _log_det(R)
    if log_det_R is None:
        return None
    try:
        trace = float(np.trace(np.linalg.solve(R, S)))
    except np.linalg.LinAlgError:
        return None
    if not np.isfinite(trace):
        return None
    return log_det_R, trace


def ml_discrepancy(R: np.ndarray, S: np.ndarray) -> float:
    """Maximum-likelihood discrepancy F_ML (NaN if R or S is degenerate)."""
    terms = likelihood_terms(R, S)
    log_det_S = _log_det(S)
    if terms is None or log_det_S is None:
        return math.nan
    log_det_R, trace = terms
    return log_det_R + trace - log_det_S - S.shape[0]


def log_likelihood(n: int, R: np.ndarray, S: np.ndarray) -> float:
    """Gaussian log-likelihood of S under R, assuming zero means."""
    terms = likelihood_terms(R, S)
    if terms is None:
        return math.nan
    log_det_R, trace = terms
    p = S.shape[0]
    return -(n / 2) * (p * math.log(2 * math.pi) + log_det_R + trace)


def srmr(S: np.ndarray, R: np.ndarray) -> float:
    """Standardized root mean square residual over the lower triangle (with diagonal)."""
    rows, cols = np.tril_indices(S.shape[0])
    residuals = S[rows, cols] - R[rows, cols]
    return float(np.sqrt(np.mean(residuals ** 2)))


def count_model_parameters(
    loadings: np.ndarray, remove_correlations: bool = False
) -> int:
    """Non-zero loadings plus community correlations (unless removed)."""
    p, m = loadings.shape
    loading_parameters = p * m - int(np.sum(loadings == 0))
    correlation_parameters = (m * (m - 1)) // 2
    return loading_parameters + (0 if remove_correlations else correlation_parameters)


def information_criteria(loglik: float, parameters: int, n: int) -> Tuple[float, float]:
    """AIC and BIC from a log-likelihood."""
    aic = -2 * loglik + 2 * parameters
    bic = -2 * loglik + parameters * math.log(n)
    return aic, bic


def criterion_value(
    criterion: Criterion,
    n: int,
    R: np.ndarray,
    S: np.ndarray,
    parameters: int,
) -> float:
    """
    A single selection criterion, without computing the full record.

    Used as the loading optimizer's objective.
    """
    if criterion is Criterion.SRMR:
        return srmr(S, R)
    loglik = log_likelihood(n, R, S)
    if criterion is Criterion.LOGLIK:
        return loglik
    aic, bic = information_criteria(loglik, parameters, n)
    return aic if criterion is Criterion.AIC else bic


# =============================================================================
# RMSEA
# =============================================================================

def _pchisq(x: float, df: float, ncp: float) -> float:
    """Chi-square CDF with optional non-centrality."""
    if ncp <= 0:
        return float(scipy.stats.chi2.cdf(x, df))
    return float(scipy.stats.ncx2.cdf(x, df, ncp))


def rmsea_ci(
    chi_square: float, df: float, n: int, ci: float = 0.95
) -> Tuple[float, float]:
    """
    Confidence interval of the RMSEA.

    Finds the non-centrality parameters at which the observed chi-square
    sits at the upper and lower tail probabilities (Brent's method), then
    converts them to RMSEA units. Follows the lavaan (0.6.19) rules: a
    bound is 0 when df < 1 or when no root is bracketed at zero, and NaN
    when the root search fails.

    Parameters
    ----------
    chi_square : float
        Model chi-square statistic.
    df : float
        Degrees of freedom.
    n : int
        Sample size.
    ci : float, default=0.95
        Confidence level.

    Returns
    -------
    (lower, upper) : tuple of float
    """
    if df < 1 or not np.isfinite(chi_square):
        return 0.0, 0.0

    n_df = n * df
    lower_level = 1 - (1 - ci) / 2
    upper_level = 1 - lower_level

    def find_lambda(lam: float, level: float) -> float:
        return _pchisq(chi_square, df, lam) - level

    # Lower bound
    if find_lambda(0.0, lower_level) < 0:
        lower = 0.0
    else:
        try:
            lam = scipy.optimize.brentq(find_lambda, 0.0, chi_square, args=(lower_level,))
            lower = math.sqrt(lam / n_df)
        except ValueError:
            lower = math.nan

    # Upper bound
    n_rmsea = max(n, chi_square * 4)
    if find_lambda(n_rmsea, upper_level) > 0 or find_lambda(0.0, upper_level) < 0:
        upper = 0.0
    else:
        try:
            lam = scipy.optimize.brentq(find_lambda, 0.0, n_rmsea, args=(upper_level,))
            upper = math.sqrt(lam / n_df)
        except ValueError:
            upper = math.nan

    return lower, upper


# =============================================================================
# FIT RECORD
# =============================================================================

def compute_fit(
    n: int,
    p: int,
    R: np.ndarray,
    S: np.ndarray,
    loadings: np.ndarray,
    correlations: np.ndarray,
    structure: Sequence,
    ci: float = 0.95,
    remove_correlations: bool = False,
) -> FitRecord:
    """
    Compute the full set of fit statistics.

    Parameters
    ----------
    n : int
        Sample size.
    p : int
        Number of variables.
    R : ndarray (p, p)
        Model-implied correlation matrix.
    S : ndarray (p, p)
        Empirical correlation (or covariance) matrix.
    loadings : ndarray (p, k)
        Loading matrix; its zeros reduce the parameter count.
    correlations : ndarray (k, k)
        Correlations between community scores.
    structure : sequence
        Community label of each variable (for TEFI).
    ci : float, default=0.95
        Confidence level of the RMSEA interval.
    remove_correlations : bool, default=False
        Do not count community correlations as parameters (used when the
        loadings come from a network whose block correlations are implied
        structurally).

    Returns
    -------
    FitRecord

    Notes
    -----
    A non-positive-definite R produces NaN for the likelihood-based
    statistics instead of raising; SRMR and TEFI are still reported.
    """
    R = np.asarray(R, dtype=float)
    S = np.asarray(S, dtype=float)
    loadings = np.asarray(loadings, dtype=float)

    zero_parameters = p * (p - 1) / 2
    model_parameters = count_model_parameters(loadings, remove_correlations)

    # Baseline (identity) model
    baseline_chi_square = n * ml_discrepancy(np.eye(p), S)
    baseline_tli = baseline_chi_square / zero_parameters

    # Traditional SEM measures
    chi_square = n * ml_discrepancy(R, S)
    if not np.isfinite(chi_square):
        logger.warning("Implied correlation matrix is not positive definite; likelihood statistics are NaN")

    df = zero_parameters - model_parameters
    chi_max = max(chi_square - df, 0.0) if np.isfinite(chi_square) else math.nan
    n_df = n * df

    if df >= 1:
        chisq_p_value = float(scipy.stats.chi2.sf(chi_square, df))
        rmsea = math.sqrt(chi_max / n_df)
        rmsea_p_value = float(
            scipy.stats.ncx2.sf(chi_max, df, n_df * RMSEA_CLOSE_FIT)
        )
    else:
        chisq_p_value = math.nan
        rmsea = 0.0
        rmsea_p_value = math.nan

    rmsea_lower, rmsea_upper = rmsea_ci(chi_square, df, n, ci)

    baseline_excess = max(baseline_chi_square - zero_parameters, 0.0)
    cfi = 1.0 - chi_max / baseline_excess if baseline_excess > 0 else 1.0

    if df > 0 and baseline_tli != 1:
        tli = (baseline_tli - chi_square / df) / (baseline_tli - 1)
    else:
        tli = math.nan

    loglik = log_likelihood(n, R, S)
    aic, bic = information_criteria(loglik, model_parameters, n)

    entropy_fit = tefi(R, structure).vn_entropy_fit
    adjustment = -2 * math.log(model_parameters) + float(np.mean(np.abs(correlations)))

    return FitRecord(
        chisq=float(chi_square),
        df=float(df),
        chisq_p_value=chisq_p_value,
        rmsea=rmsea,
        rmsea_lower=rmsea_lower,
        rmsea_upper=rmsea_upper,
        rmsea_p_value=rmsea_p_value,
        cfi=float(cfi),
        tli=float(tli),
        srmr=srmr(S, R),
        loglik=loglik,
        aic=aic,
        bic=bic,
        tefi=entropy_fit,
        tefi_adj=entropy_fit - adjustment,
        ci=ci,
    )
