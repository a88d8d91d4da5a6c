"""
test_search.py - Tests for Hyperparameter Searches

Tests cover:
- The (p_in, p_out) sparsity grid
- Point evaluation, failures and thread-pool ordering
- Best-outcome selection and tie breaking
- Grid and regularization path searches end to end
"""

from types import SimpleNamespace

import pytest
import numpy as np

from egm_lab import (
    Criterion,
    EGMConfig,
    FitRecord,
    PointOutcome,
    RegularizationPath,
    Services,
    detect_communities,
    grid_search,
    path_search,
    regularization_path,
    select_best,
    sparsity_grid,
)
from egm_lab.pipeline import prepare_data
from egm_lab.search import SEARCH_FAILURE, evaluate_point, run_points


def fake_model(aic=100.0, loglik=-50.0):
    """Stand-in carrying only the optimized fit record that selection reads."""
    record = FitRecord(
        chisq=1.0, df=5.0, chisq_p_value=0.9, rmsea=0.0, rmsea_lower=0.0,
        rmsea_upper=0.0, rmsea_p_value=1.0, cfi=1.0, tli=1.0, srmr=0.01,
        loglik=loglik, aic=aic, bic=aic + 10, tefi=-0.3, tefi_adj=1.0,
    )
    return SimpleNamespace(optimized=SimpleNamespace(fit=record))


def success(index, **values):
    return PointOutcome(parameters={"index": index}, model=fake_model(**values))


def failure(index):
    return PointOutcome(parameters={"index": index}, reason="ValueError: singular")


class TestSparsityGrid:
    """Tests for the (p_in, p_out) grid."""

    def test_length(self):
        assert len(sparsity_grid(0.9)) == 57

    def test_order(self):
        """Test that p_in varies fastest."""
        grid = sparsity_grid(0.9)
        assert grid[:4] == [(0.9, 0.0), (0.95, 0.0), (1.0, 0.0), (0.9, 0.05)]
        assert grid[-1] == (1.0, 0.9)

    def test_bounds(self):
        grid = np.array(sparsity_grid(0.8, step=0.1))

        assert np.all((grid[:, 0] >= 0.8) & (grid[:, 0] <= 1.0))
        assert np.all((grid[:, 1] >= 0.0) & (grid[:, 1] <= 0.8))
        assert len(grid) == 3 * 9

    def test_full_retention(self):
        assert sparsity_grid(1.0, step=0.5) == [(1.0, 0.0), (1.0, 0.5), (1.0, 1.0)]

    def test_out_of_range(self):
        with pytest.raises(ValueError, match="between 0 and 1"):
            sparsity_grid(1.2)


class TestRunPoints:
    """Tests for independent point evaluation."""

    @staticmethod
    def fit(parameters):
        if parameters["index"] % 3 == 0:
            raise ValueError("singular")
        return fake_model(aic=float(parameters["index"]))

    def test_failures_recorded(self):
        outcome = evaluate_point({"index": 3}, self.fit)

        assert not outcome.succeeded
        assert "singular" in outcome.reason

    def test_unexpected_errors_propagate(self):
        def fit(parameters):
            raise KeyError("bug")

        with pytest.raises(KeyError):
            evaluate_point({"index": 1}, fit)

    def test_parallel_preserves_order(self):
        """Test that threaded outcomes line up with the sequential ones."""
        points = [{"index": i} for i in range(10)]

        sequential = run_points(points, self.fit, n_jobs=1)
        parallel = run_points(points, self.fit, n_jobs=4)

        assert [o.parameters for o in parallel] == points
        assert [o.succeeded for o in parallel] == [o.succeeded for o in sequential]
        assert [o.criterion(Criterion.AIC) for o in parallel[1:3]] == [1.0, 2.0]


class TestSelectBest:
    """Tests for criterion-based selection."""

    def test_single_success(self):
        outcomes = [failure(0), success(1, aic=500.0), failure(2)]
        assert select_best(outcomes, Criterion.AIC) is outcomes[1]

    def test_minimum(self):
        outcomes = [success(0, aic=30.0), success(1, aic=10.0), success(2, aic=20.0)]
        assert select_best(outcomes, Criterion.AIC) is outcomes[1]

    def test_maximum_log_likelihood(self):
        outcomes = [success(0, loglik=-30.0), success(1, loglik=-10.0), success(2, loglik=-20.0)]
        assert select_best(outcomes, Criterion.LOGLIK) is outcomes[1]

    def test_ties(self):
        outcomes = [success(0, aic=10.0), success(1, aic=20.0), success(2, aic=10.0)]

        assert select_best(outcomes, Criterion.AIC, prefer="first") is outcomes[0]
        assert select_best(outcomes, Criterion.AIC, prefer="last") is outcomes[2]

    def test_tie_break_key(self):
        """Test that a key settles ties whatever the sweep order."""
        outcomes = [
            PointOutcome(parameters={"lambda": value}, model=fake_model(aic=10.0))
            for value in (0.1, 0.5, 0.3)
        ]

        def by_lambda(outcome):
            return outcome.parameters["lambda"]

        assert select_best(outcomes, Criterion.AIC, tie_break=by_lambda) is outcomes[1]
        assert select_best(outcomes[::-1], Criterion.AIC, tie_break=by_lambda) is outcomes[1]

    def test_tie_break_ignores_worse_points(self):
        outcomes = [
            PointOutcome(parameters={"lambda": 0.9}, model=fake_model(aic=50.0)),
            PointOutcome(parameters={"lambda": 0.2}, model=fake_model(aic=10.0)),
        ]
        chosen = select_best(outcomes, Criterion.AIC, tie_break=lambda o: o.parameters["lambda"])

        assert chosen is outcomes[1]

    def test_nan_excluded(self):
        outcomes = [success(0, aic=float("nan")), success(1, aic=40.0)]
        assert select_best(outcomes, Criterion.AIC) is outcomes[1]

    def test_all_failed(self):
        with pytest.raises(RuntimeError, match="could not converge"):
            select_best([failure(0), failure(1)], Criterion.AIC)

    def test_failure_message(self):
        assert "increasing 'p_in'" in SEARCH_FAILURE

    def test_invalid_preference(self):
        with pytest.raises(ValueError, match="prefer"):
            select_best([success(0)], Criterion.AIC, prefer="middle")


class TestGridSearch:
    """Tests for the sparsity grid search."""

    def test_selects_grid_point(self, block_data, block_structure):
        prepared = prepare_data(block_data)
        config = EGMConfig(
            model="standard", search=True, structure=block_structure,
            p_in=0.9, grid_step=0.1, opt="BIC",
        )
        result = grid_search(prepared, config)
        grid = sparsity_grid(0.9, step=0.1)

        assert result.search is not None
        assert result.search.evaluated == len(grid)
        chosen = (result.search.parameters["p_in"], result.search.parameters["p_out"])
        assert chosen in grid
        assert result.search.value == pytest.approx(result.optimized.fit.bic)
        assert result.metadata.model == "search"
        assert result.metadata.model_selection == "BIC"
        assert result.metadata.p_in == chosen[0]

    def test_threads_match_sequential(self, block_data, block_structure):
        prepared = prepare_data(block_data)
        config = EGMConfig(
            model="standard", search=True, structure=block_structure,
            p_in=0.9, grid_step=0.3,
        )
        sequential = grid_search(prepared, config)
        parallel = grid_search(prepared, config.evolve(n_jobs=3))

        assert parallel.search.parameters == sequential.search.parameters
        assert parallel.search.value == pytest.approx(sequential.search.value)


class TestPathSearch:
    """Tests for the regularization path search."""

    def test_selects_path_lambda(self, block_data):
        prepared = prepare_data(block_data)
        config = EGMConfig(model="ega", search=True, nlambda=5, seed=1, opt="AIC")
        result = path_search(prepared, config)

        assert result.search is not None
        assert result.search.evaluated == 5
        assert result.metadata.model == "ega.search"
        assert result.metadata.lambda_ == pytest.approx(result.search.parameters["lambda"])
        assert result.search.value == pytest.approx(result.optimized.fit.aic)

    def test_counts_community_correlations(self, block_data, block_structure):
        """Test that path points include community correlations as parameters."""
        prepared = prepare_data(block_data)
        config = EGMConfig(model="ega", search=True, nlambda=3, structure=block_structure)
        result = path_search(prepared, config)

        loadings = result.optimized.loadings
        parameters = np.count_nonzero(loadings) + 1
        assert result.optimized.fit.df == 15 - parameters

    def test_ties_prefer_largest_lambda(self, block_correlation, block_structure):
        """Test that identical estimates resolve to the largest lambda of a descending path."""
        theta = np.linalg.inv(block_correlation)

        def descending_path(S, n, nlambda, lambda_min_ratio):
            return RegularizationPath(
                lambdas=np.array([0.5, 0.3, 0.1]), precisions=(theta,) * 3, S=S, n=n
            )

        prepared = prepare_data(block_correlation, n=500)
        config = EGMConfig(model="ega", search=True, structure=block_structure)
        result = path_search(prepared, config, Services(regularization_path=descending_path))

        assert result.search.parameters["lambda"] == 0.5
        assert result.metadata.lambda_ == 0.5

    def test_threads_match_sequential_partitions(self, block_data):
        """Test that every path point gets the same partition on threads as sequentially."""
        prepared = prepare_data(block_data)
        path = regularization_path(prepared.correlation, prepared.n, nlambda=6)

        def recording(partitions):
            def detect(P, communities, seed):
                labels = detect_communities(P, communities, seed)
                partitions[P.tobytes()] = tuple(labels)
                return labels
            return detect

        sequential, parallel = {}, {}
        config = EGMConfig(model="ega", search=True, nlambda=6)
        for partitions, n_jobs in ((sequential, 1), (parallel, 3)):
            services = Services(
                regularization_path=lambda *args: path,
                detect_communities=recording(partitions),
            )
            path_search(prepared, config.evolve(n_jobs=n_jobs), services)

        assert len(sequential) > 0
        assert parallel == sequential
