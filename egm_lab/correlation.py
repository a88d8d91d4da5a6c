"""
correlation.py - Correlation, Partial Correlation and Implied Matrices
=====================================================================

Matrix conversions shared by every stage of the EGM pipeline:
- correlate: empirical correlations from raw data (or a declared matrix)
- cor2pcor / precision_to_partial: partial correlations
- implied_correlation / implied_partial: matrices reproduced by loadings
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import scipy.linalg
from loguru import logger


class MissingSampleSizeError(ValueError):
    """A square matrix was supplied without the sample size it came from."""


# =============================================================================
# EMPIRICAL CORRELATIONS
# =============================================================================

def correlate(data: np.ndarray, n: Optional[int] = None) -> Tuple[np.ndarray, int]:
    """
    Obtain the empirical correlation matrix and sample size.

    Parameters
    ----------
    data : ndarray
        Raw data (n, p) or a symmetric (p, p) correlation matrix.
    n : int, optional
        Sample size. Required when `data` is square.

    Returns
    -------
    R : ndarray (p, p)
        Pearson correlation matrix.
    n : int
        Sample size.

    Raises
    ------
    MissingSampleSizeError
        If a square matrix is given without `n`.
    ValueError
        If `data` is not 2D or has fewer than 2 variables.
    """
    data = np.asarray(data, dtype=float)

    if data.ndim != 2:
        raise ValueError(f"Data must be a 2D array, got shape {data.shape}")

    rows, p = data.shape
    if p < 2:
        raise ValueError(f"At least 2 variables are required, got {p}")

    if rows == p:
        if n is None:
            raise MissingSampleSizeError(
                f"A symmetric ({rows} x {p}) matrix was input but sample size was not provided. "
                "If you'd like to use a correlation matrix, please set 'n' to your sample size"
            )
        if not np.allclose(data, data.T, atol=1e-8):
            raise ValueError("Square input must be a symmetric correlation matrix")
        logger.debug(f"Using supplied correlation matrix (p={p}, n={n})")
        return cov2cor(data), int(n)

    if np.any(~np.isfinite(data)):
        raise ValueError("Data contains missing or infinite values")

    logger.debug(f"Estimating Pearson correlations ({rows} x {p})")
    return np.corrcoef(data, rowvar=False), rows


def standardize(data: np.ndarray) -> np.ndarray:
    """Column-wise z-scores (sample standard deviation)."""
    data = np.asarray(data, dtype=float)
    return (data - data.mean(axis=0)) / data.std(axis=0, ddof=1)


# =============================================================================
# CONVERSIONS
# =============================================================================

def cov2cor(covariance: np.ndarray) -> np.ndarray:
    """Rescale a covariance matrix to unit diagonal."""
    scale = 1.0 / np.sqrt(np.diag(covariance))
    R = covariance * np.outer(scale, scale)
    np.fill_diagonal(R, 1.0)
    return R


def precision_to_partial(theta: np.ndarray) -> np.ndarray:
    """
    Partial correlations from a concentration (inverse covariance) matrix.

    P_ij = -theta_ij / sqrt(theta_ii * theta_jj), with a zero diagonal.
    """
    scale = 1.0 / np.sqrt(np.diag(theta))
    P = -theta * np.outer(scale, scale)
    np.fill_diagonal(P, 0.0)
    return P


def cor2pcor(R: np.ndarray) -> np.ndarray:
    """
    Partial correlations of a correlation matrix.

    Raises
    ------
    numpy.linalg.LinAlgError
        If `R` is singular.
    """
    return precision_to_partial(np.linalg.inv(R))


def is_positive_definite(matrix: np.ndarray) -> bool:
    """True if `matrix` admits a Cholesky factorization."""
    if not np.all(np.isfinite(matrix)):
        return False
    try:
        scipy.linalg.cholesky(matrix, lower=True)
    except np.linalg.LinAlgError:
        return False
    return True


# =============================================================================
# LOADING-IMPLIED MATRICES
# =============================================================================

def implied_correlation(loadings: np.ndarray) -> np.ndarray:
    """
    Correlation matrix reproduced by a network loading matrix.

    The cross-product L @ L.T has its diagonal replaced by the row norms
    ("interdependence") and is rescaled by their inverse square roots, so
    the result has a unit diagonal.

    Parameters
    ----------
    loadings : ndarray (p, k)

    Returns
    -------
    ndarray (p, p)

    Raises
    ------
    ValueError
        If a variable has no non-zero loading.
    """
    loadings = np.asarray(loadings, dtype=float)
    P = loadings @ loadings.T
    interdependence = np.sqrt(np.diag(P))

    if np.any(interdependence <= 0):
        empty = np.flatnonzero(interdependence <= 0)
        raise ValueError(f"Variables {empty.tolist()} have no non-zero loadings")

    np.fill_diagonal(P, interdependence)
    scale = np.sqrt(1.0 / interdependence)
    return P * np.outer(scale, scale)


def implied_partial(R: np.ndarray) -> np.ndarray:
    """
    Partial correlations of an implied correlation matrix.

    Returns a NaN matrix (with zero diagonal) when `R` is not positive
    definite rather than raising.
    """
    if not is_positive_definite(R):
        logger.warning("Implied correlation matrix is not positive definite; partial correlations undefined")
        P = np.full(R.shape, np.nan)
        np.fill_diagonal(P, 0.0)
        return P
    return cor2pcor(R)
