"""
test_optimization.py - Tests for the Loading Optimizer

Tests cover:
- Objective penalties for degenerate loadings
- Recovery of known loadings
- Structure and zero constraints, sign handling
- Never returning a worse objective than the start
- Error handling for unusable starting points
"""

import pytest
import numpy as np

from egm_lab import (
    Criterion,
    EGMConfig,
    LoadingOptimizer,
    LoadingOptimizationError,
)
from egm_lab.optimization import PENALTY


@pytest.fixture
def start_loadings():
    """Network-like loadings with cross-loadings, one of them too large."""
    return np.array([
        [0.5, 0.1],
        [0.4, 0.2],
        [0.5, 0.0],
        [0.1, 0.5],
        [0.0, 0.4],
        [0.6, 0.5],
    ])


def assigned_and_cross(loadings, structure):
    assigned = np.abs(loadings[np.arange(len(structure)), structure - 1])
    mask = np.ones_like(loadings, dtype=bool)
    mask[np.arange(len(structure)), structure - 1] = False
    cross = np.where(mask, np.abs(loadings), 0.0).max(axis=1)
    return assigned, cross


class TestObjective:
    """Tests for scoring flattened loadings."""

    def test_matches_criterion(self, block_correlation, block_structure):
        """Test that logLik is negated onto the minimization scale."""
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        loadings = np.repeat(np.eye(2), 3, axis=0) * 0.6

        value = optimizer.objective(loadings.ravel())
        expected = -(500 / 2) * (6 * np.log(2 * np.pi) + np.linalg.slogdet(block_correlation)[1] + 6)

        assert value == pytest.approx(-expected)

    def test_empty_row_penalized(self, block_correlation, block_structure):
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        loadings = np.repeat(np.eye(2), 3, axis=0) * 0.6
        loadings[0] = 0.0

        assert optimizer.objective(loadings.ravel()) == 2 * PENALTY

    def test_not_positive_definite_penalized(self, block_correlation, block_structure):
        """Test that indefinite implied matrices get a finite graded penalty."""
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        value = optimizer.objective(np.ones(12))

        assert PENALTY <= value < 2 * PENALTY

    def test_structure_length(self, block_correlation):
        with pytest.raises(ValueError, match="does not match"):
            LoadingOptimizer(block_correlation, 500, [1, 1, 2])


class TestOptimize:
    """Tests for loading optimization."""

    @pytest.mark.parametrize("criterion", [Criterion.LOGLIK, Criterion.AIC])
    def test_recovers_population_loadings(self, criterion, block_correlation, block_structure):
        """Test that single-community loadings converge to the block correlation."""
        start = np.repeat(np.eye(2), 3, axis=0) * 0.5
        optimizer = LoadingOptimizer(
            block_correlation, 500, block_structure, EGMConfig(opt=criterion)
        )
        result = optimizer.optimize(start)

        np.testing.assert_allclose(result.loadings[start != 0], 0.6, atol=0.02)
        np.testing.assert_array_equal(result.loadings[start == 0], 0.0)
        assert result.objective < result.initial_objective

    def test_never_worse_than_start(self, block_data, block_structure, start_loadings):
        R = np.corrcoef(block_data, rowvar=False)
        for criterion in Criterion:
            optimizer = LoadingOptimizer(R, 500, block_structure, EGMConfig(opt=criterion))
            result = optimizer.optimize(start_loadings)
            assert result.objective <= result.initial_objective

    def test_structure_constraint(self, block_data, block_structure, start_loadings):
        """Test that assigned loadings dominate cross-loadings."""
        R = np.corrcoef(block_data, rowvar=False)
        optimizer = LoadingOptimizer(R, 500, block_structure, EGMConfig(opt="SRMR"))
        result = optimizer.optimize(start_loadings)

        assigned, cross = assigned_and_cross(result.loadings, block_structure)
        assert np.all(assigned >= cross)

    def test_zero_constraint(self, block_data, block_structure, start_loadings):
        R = np.corrcoef(block_data, rowvar=False)
        optimizer = LoadingOptimizer(R, 500, block_structure, EGMConfig(opt="BIC"))
        result = optimizer.optimize(start_loadings)

        np.testing.assert_array_equal(result.loadings[start_loadings == 0], 0.0)

    def test_signs_preserved(self, block_correlation, block_structure):
        """Test that negative starting loadings stay non-positive."""
        start = np.repeat(np.eye(2), 3, axis=0) * 0.5
        start[3:, 1] *= -1
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        result = optimizer.optimize(start)

        assert np.all(result.loadings[3:, 1] < 0)
        assert np.all(result.loadings[:3, 0] > 0)

    def test_flattening_row_major(self, block_correlation, block_structure, start_loadings):
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        result = optimizer.optimize(start_loadings)

        np.testing.assert_array_equal(result.par, result.loadings.ravel())
        assert result.par.shape == (12,)

    def test_unconstrained_bounds(self, block_data, block_structure, start_loadings):
        """Test the box-bounded path without the structure constraint."""
        R = np.corrcoef(block_data, rowvar=False)
        config = EGMConfig(constrain_structure=False, constrain_zeros=False)
        result = LoadingOptimizer(R, 500, block_structure, config).optimize(start_loadings)

        assert np.all(np.abs(result.loadings) <= 1.0)
        assert result.objective <= result.initial_objective

    def test_shape_mismatch(self, block_correlation, block_structure):
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        with pytest.raises(ValueError, match="shape mismatch"):
            optimizer.optimize(np.full((6, 3), 0.3))

    def test_non_finite_start(self, block_correlation, block_structure, start_loadings):
        start_loadings[2, 0] = np.nan
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        with pytest.raises(LoadingOptimizationError, match="non-finite"):
            optimizer.optimize(start_loadings)

    def test_all_zero_start(self, block_correlation, block_structure):
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        with pytest.raises(LoadingOptimizationError, match="no free"):
            optimizer.optimize(np.zeros((6, 2)))

    def test_degenerate_start(self, block_correlation, block_structure):
        """Test that a start with an empty variable cannot be optimized."""
        start = np.repeat(np.eye(2), 3, axis=0) * 0.5
        start[4] = 0.0
        optimizer = LoadingOptimizer(block_correlation, 500, block_structure)
        with pytest.raises(LoadingOptimizationError, match="positive definite"):
            optimizer.optimize(start)


class TestFeasibleStart:
    """Tests for starting points whose assigned loading starts at zero."""

    @pytest.fixture
    def singleton_correlation(self):
        """Two blocks of three (0.6 within) plus a seventh variable at 0.3 with all."""
        R = np.full((7, 7), 0.3)
        R[:3, :3] = 0.6
        R[3:6, 3:6] = 0.6
        np.fill_diagonal(R, 1.0)
        return R

    @pytest.fixture
    def singleton_structure(self):
        return np.array([1, 1, 1, 2, 2, 2, 3])

    @pytest.fixture
    def singleton_start(self):
        """The seventh variable only loads on the communities it does not belong to."""
        return np.array([
            [0.6, 0.0, 0.1],
            [0.6, 0.0, 0.1],
            [0.6, 0.0, 0.1],
            [0.0, 0.6, 0.1],
            [0.0, 0.6, 0.1],
            [0.0, 0.6, 0.1],
            [0.2, 0.2, 0.0],
        ])

    def test_assigned_loading_raised(
        self, singleton_correlation, singleton_structure, singleton_start
    ):
        """Test that a free zero assigned loading is lifted instead of emptying the row."""
        config = EGMConfig(opt="SRMR", constrain_zeros=False)
        optimizer = LoadingOptimizer(singleton_correlation, 500, singleton_structure, config)
        result = optimizer.optimize(singleton_start)

        assert result.initial_objective < PENALTY
        assert result.objective <= result.initial_objective
        assert result.loadings[6, 2] > 0

        assigned, cross = assigned_and_cross(result.loadings, singleton_structure)
        assert np.all(assigned >= cross)

    def test_projection_keeps_cross_loadings(self, singleton_correlation, singleton_structure):
        config = EGMConfig(constrain_zeros=False)
        optimizer = LoadingOptimizer(singleton_correlation, 500, singleton_structure, config)
        start = np.array([
            [0.5, 0.3, 0.0],
            [0.5, 0.0, 0.0],
            [0.5, 0.0, 0.0],
            [0.0, 0.5, 0.0],
            [0.0, 0.5, 0.0],
            [0.0, 0.5, 0.0],
            [0.2, 0.4, 0.0],
        ])
        projected = optimizer._project(start.ravel(), np.ones(21, dtype=bool)).reshape(7, 3)

        np.testing.assert_allclose(projected[6], [0.2, 0.4, 0.4])
        np.testing.assert_allclose(projected[0], [0.5, 0.3, 0.0])

    def test_locked_assigned_loading(
        self, singleton_correlation, singleton_structure, singleton_start
    ):
        """Test that a zero assigned loading locked by constrain_zeros is reported."""
        optimizer = LoadingOptimizer(singleton_correlation, 500, singleton_structure)

        with pytest.raises(LoadingOptimizationError, match=r"Variables \[6\].*constrain_zeros"):
            optimizer.optimize(singleton_start)

    def test_unconstrained_structure_accepts_start(
        self, singleton_correlation, singleton_structure, singleton_start
    ):
        config = EGMConfig(constrain_structure=False)
        optimizer = LoadingOptimizer(singleton_correlation, 500, singleton_structure, config)
        result = optimizer.optimize(singleton_start)

        assert result.loadings[6, 2] == 0.0
        assert result.objective <= result.initial_objective
