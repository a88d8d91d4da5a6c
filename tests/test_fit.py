"""
test_fit.py - Tests for Fit Statistics

Tests cover:
- ML discrepancy, log-likelihood and SRMR primitives
- Parameter counting and information criteria
- RMSEA confidence interval
- The full fit record, including degenerate inputs
"""

import math

import pytest
import numpy as np

from egm_lab import Criterion, compute_fit, rmsea_ci
from egm_lab.fit import (
    count_model_parameters,
    criterion_value,
    information_criteria,
    log_likelihood,
    ml_discrepancy,
    srmr,
)


@pytest.fixture
def block_loadings():
    """Loadings with one non-zero entry per variable."""
    return np.array([
        [0.6, 0.0],
        [0.6, 0.0],
        [0.6, 0.0],
        [0.0, 0.6],
        [0.0, 0.6],
        [0.0, 0.6],
    ])


class TestPrimitives:
    """Tests for the discrepancy functions."""

    def test_discrepancy_zero_at_truth(self, block_correlation):
        assert ml_discrepancy(block_correlation, block_correlation) == pytest.approx(0.0, abs=1e-10)

    def test_discrepancy_positive(self, block_correlation):
        assert ml_discrepancy(np.eye(6), block_correlation) > 0

    def test_discrepancy_not_positive_definite(self, block_correlation):
        R = np.diag([-1.0, 1.0, 1.0, 1.0, 1.0, 1.0])
        assert math.isnan(ml_discrepancy(R, block_correlation))

    def test_log_likelihood_identity(self):
        """Test the closed form at R = S = I."""
        expected = -(100 / 2) * (3 * math.log(2 * math.pi) + 3)
        assert log_likelihood(100, np.eye(3), np.eye(3)) == pytest.approx(expected)

    def test_log_likelihood_maximized_at_truth(self, block_correlation):
        at_truth = log_likelihood(500, block_correlation, block_correlation)
        assert log_likelihood(500, np.eye(6), block_correlation) < at_truth

    def test_srmr_includes_diagonal(self):
        """Test that residuals are averaged over the lower triangle with diagonal."""
        S = np.array([[1.0, 0.5], [0.5, 1.0]])
        R = np.array([[1.0, 0.2], [0.2, 1.0]])
        assert srmr(S, R) == pytest.approx(math.sqrt(0.3 ** 2 / 3))


class TestParameters:
    """Tests for parameter counting and information criteria."""

    def test_count_with_correlations(self, block_loadings):
        assert count_model_parameters(block_loadings) == 7

    def test_count_without_correlations(self, block_loadings):
        assert count_model_parameters(block_loadings, remove_correlations=True) == 6

    def test_information_criteria(self):
        aic, bic = information_criteria(-100.0, 5, 200)
        assert aic == pytest.approx(210.0)
        assert bic == pytest.approx(200.0 + 5 * math.log(200))

    @pytest.mark.parametrize("criterion", list(Criterion))
    def test_criterion_value_matches_record(self, criterion, block_correlation, block_loadings):
        """Test that the optimizer objective agrees with the fit record."""
        S = block_correlation.copy()
        S[0, 3] = S[3, 0] = 0.1
        record = compute_fit(
            500, 6, block_correlation, S, block_loadings, np.eye(2), [1, 1, 1, 2, 2, 2]
        )
        value = criterion_value(criterion, 500, block_correlation, S, 7)

        assert value == pytest.approx(record.get(criterion))


class TestRMSEAInterval:
    """Tests for the RMSEA confidence interval."""

    def test_brackets_point_estimate(self):
        chi_square, df, n = 50.0, 10.0, 200
        point = math.sqrt((chi_square - df) / (n * df))
        lower, upper = rmsea_ci(chi_square, df, n)

        assert 0 < lower < point < upper

    def test_wider_at_higher_level(self):
        lower_90, upper_90 = rmsea_ci(50.0, 10.0, 200, ci=0.90)
        lower_99, upper_99 = rmsea_ci(50.0, 10.0, 200, ci=0.99)

        assert lower_99 < lower_90
        assert upper_99 > upper_90

    def test_perfect_fit(self):
        """Test that a zero chi-square gives a degenerate interval."""
        assert rmsea_ci(0.0, 9.0, 500) == (0.0, 0.0)

    def test_no_degrees_of_freedom(self):
        assert rmsea_ci(12.0, 0.0, 500) == (0.0, 0.0)

    def test_nan_chi_square(self):
        assert rmsea_ci(math.nan, 5.0, 500) == (0.0, 0.0)


class TestComputeFit:
    """Tests for the full fit record."""

    def test_perfect_fit(self, block_correlation, block_loadings, block_structure):
        """Test the record when the implied matrix equals the empirical one."""
        record = compute_fit(
            500, 6, block_correlation, block_correlation, block_loadings,
            np.eye(2), block_structure, remove_correlations=True,
        )

        assert record.chisq == pytest.approx(0.0, abs=1e-8)
        assert record.df == 9
        assert record.rmsea == 0.0
        assert record.cfi == pytest.approx(1.0)
        assert record.srmr == pytest.approx(0.0, abs=1e-12)
        assert record.chisq_p_value == pytest.approx(1.0)
        assert (record.rmsea_lower, record.rmsea_upper) == (0.0, 0.0)

    def test_degrees_of_freedom(self, block_correlation, block_loadings, block_structure):
        record = compute_fit(
            500, 6, block_correlation, block_correlation, block_loadings,
            np.eye(2), block_structure,
        )
        assert record.df == 8

    def test_misfit(self, block_correlation, block_loadings, block_structure):
        """Test that a wrong implied matrix is penalized by every index."""
        record = compute_fit(
            500, 6, np.eye(6), block_correlation, block_loadings,
            np.eye(2), block_structure,
        )

        assert record.chisq > 100
        assert record.rmsea > 0.1
        assert record.cfi < 0.05
        assert record.srmr > 0.1
        assert record.chisq_p_value < 1e-6

    def test_information_criteria(self, block_correlation, block_loadings, block_structure):
        record = compute_fit(
            500, 6, block_correlation, block_correlation, block_loadings,
            np.eye(2), block_structure,
        )

        assert record.aic == pytest.approx(-2 * record.loglik + 2 * 7)
        assert record.bic == pytest.approx(-2 * record.loglik + 7 * math.log(500))

    def test_tefi_adjustment(self, block_correlation, block_loadings, block_structure):
        correlations = np.array([[1.0, 0.2], [0.2, 1.0]])
        record = compute_fit(
            500, 6, block_correlation, block_correlation, block_loadings,
            correlations, block_structure,
        )

        adjustment = -2 * math.log(7) + 0.6
        assert record.tefi == pytest.approx(-0.3763, abs=1e-3)
        assert record.tefi_adj == pytest.approx(record.tefi - adjustment)

    def test_not_positive_definite(self):
        """Test that a non-PD implied matrix gives NaN instead of raising."""
        R = np.array([
            [1.0, 0.9, 0.9],
            [0.9, 1.0, -0.9],
            [0.9, -0.9, 1.0],
        ])
        S = np.array([
            [1.0, 0.3, 0.2],
            [0.3, 1.0, 0.1],
            [0.2, 0.1, 1.0],
        ])
        loadings = np.array([[0.5, 0.0], [0.5, 0.0], [0.0, 0.5]])
        record = compute_fit(100, 3, R, S, loadings, np.eye(2), [1, 1, 2])

        assert math.isnan(record.chisq)
        assert math.isnan(record.loglik)
        assert math.isnan(record.aic)
        assert np.isfinite(record.srmr)

    def test_no_degrees_of_freedom(self, block_correlation, block_structure):
        """Test the guards when the model has as many parameters as data."""
        loadings = np.full((6, 3), 0.4)
        record = compute_fit(
            500, 6, block_correlation, block_correlation, loadings,
            np.eye(3), block_structure,
        )

        assert record.df < 1
        assert record.rmsea == 0.0
        assert math.isnan(record.chisq_p_value)
        assert math.isnan(record.tli)
        assert (record.rmsea_lower, record.rmsea_upper) == (0.0, 0.0)

    def test_ci_level_recorded(self, block_correlation, block_loadings, block_structure):
        record = compute_fit(
            500, 6, np.eye(6), block_correlation, block_loadings,
            np.eye(2), block_structure, ci=0.90,
        )
        assert "RMSEA.90.lower" in record.to_dict()
