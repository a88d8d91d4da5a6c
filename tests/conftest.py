"""
conftest.py - Pytest Configuration and Shared Fixtures

This file contains fixtures used across all test modules. Fixtures are
organized by category:
- Random number generators (for reproducibility)
- Population correlation matrices with known community structure
- Simulated data
"""

import pytest
import numpy as np

from egm_lab import cor2pcor


# =============================================================================
# RANDOM NUMBER GENERATORS
# =============================================================================

@pytest.fixture
def rng():
    """
    Provide a seeded random number generator for reproducible tests.

    All tests should use this fixture (or derive from it) to ensure
    reproducibility across runs.
    """
    return np.random.default_rng(seed=42)


# =============================================================================
# POPULATION MATRICES
# =============================================================================

def block_correlation_matrix(sizes, within, between=0.0):
    """Correlation matrix with equal within-block and between-block correlations."""
    p = sum(sizes)
    R = np.full((p, p), between)
    start = 0
    for size in sizes:
        R[start:start + size, start:start + size] = within
        start += size
    np.fill_diagonal(R, 1.0)
    return R


@pytest.fixture
def block_correlation():
    """
    2 communities x 3 variables, 0.6 within and 0 between.

    Structure: [1, 1, 1, 2, 2, 2]
    """
    return block_correlation_matrix([3, 3], within=0.6)


@pytest.fixture
def block_structure():
    """Partition matching `block_correlation`."""
    return np.array([1, 1, 1, 2, 2, 2])


@pytest.fixture
def block_partial(block_correlation):
    """Partial correlations of `block_correlation` (0.375 within, 0 between)."""
    return cor2pcor(block_correlation)


@pytest.fixture
def random_correlation(rng):
    """An unstructured 8-variable sample correlation matrix."""
    X = rng.standard_normal((200, 8))
    X[:, 1:] += 0.5 * X[:, :-1]
    return np.corrcoef(X, rowvar=False)


# =============================================================================
# SIMULATED DATA
# =============================================================================

@pytest.fixture
def block_data(rng, block_correlation):
    """
    n = 500 draws from the 2-community population.

    Shape: (500, 6)
    """
    return rng.multivariate_normal(np.zeros(6), block_correlation, size=500)


@pytest.fixture
def three_block_data(rng):
    """
    n = 400 draws from 3 communities x 3 variables (0.5 within, 0.1 between).

    Shape: (400, 9)
    """
    R = block_correlation_matrix([3, 3, 3], within=0.5, between=0.1)
    return rng.multivariate_normal(np.zeros(9), R, size=400)


# =============================================================================
# HELPER FIXTURES
# =============================================================================

@pytest.fixture
def tolerance():
    """Standard numerical tolerance for float comparisons."""
    return {"rtol": 1e-5, "atol": 1e-8}
