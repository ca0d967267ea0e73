"""Unit tests for resampling-based treatment ranking."""

import pytest
import numpy as np

from nmapy.core.exceptions import (
    AnalysisCancelled,
    ConvergenceWarning,
    ResamplingError,
    ResamplingWarning,
    ValidationError,
)
from nmapy.core.execution import CancellationToken
from nmapy.core.linalg import LinearAlgebraKernel
from nmapy.diagnostics.ranking import (
    ResamplingEngine,
    p_scores,
    rank_treatments,
    sucra_from_probabilities,
)
from nmapy.models.frequentist import NetworkEstimator


class TestRankHelpers:
    """Tests for ranking helpers."""

    def test_rank_treatments(self):
        """Test zero-based ranks in both directions."""
        effects = np.array([0.0, -1.0, 0.5])
        assert rank_treatments(effects).tolist() == [1, 0, 2]
        assert rank_treatments(effects, smaller_is_better=False).tolist() == [1, 2, 0]

    def test_ties_keep_treatment_order(self):
        """Test tied effects rank by treatment index."""
        assert rank_treatments(np.array([0.0, 0.0, 0.0])).tolist() == [0, 1, 2]

    def test_sucra_extremes(self):
        """Test SUCRA for a certain ordering."""
        sucra = sucra_from_probabilities(np.eye(3))
        np.testing.assert_allclose(sucra, [1.0, 0.5, 0.0])

    def test_p_scores(self, star):
        """Test P-scores order the star network and average 1/2."""
        result = NetworkEstimator().estimate(star)
        scores = p_scores(result)
        assert np.all((scores >= 0) & (scores <= 1))
        assert scores.mean() == pytest.approx(0.5)
        assert result.treatments[int(np.argmax(scores))] == "B"


class TestResamplingEngine:
    """Tests for ResamplingEngine.run."""

    def test_invalid_n_boot(self):
        """Test a non-positive iteration count is rejected."""
        with pytest.raises(ValueError):
            ResamplingEngine(n_boot=0)

    def test_clear_ordering(self, star):
        """Test a well-separated network ranks identically every iteration."""
        dist = ResamplingEngine(n_boot=100, seed=1).run(star)
        assert dist.n_iterations == 100
        assert dist.probability("B", 1) == 1.0
        assert dist.order() == ["B", "C", "A", "D"]
        assert dist.best() == "B"
        assert dist.sucra[dist.treatments.index("B")] == pytest.approx(1.0)

    def test_direction(self, star):
        """Test larger-is-better reverses the ordering."""
        dist = ResamplingEngine(n_boot=50, seed=1, smaller_is_better=False).run(star)
        assert dist.order() == ["D", "A", "C", "B"]

    def test_probabilities_sum_to_one(self, multi_arm):
        """Test every row and column of the rank-probability matrix sums to 1."""
        dist = ResamplingEngine(n_boot=100, seed=3).run(multi_arm, tau_squared=0.01)
        probs = dist.rank_probabilities
        np.testing.assert_allclose(probs.sum(axis=1), 1.0)
        np.testing.assert_allclose(probs.sum(axis=0), 1.0)
        assert dist.rank_counts.sum() == 100 * len(dist.treatments)

    def test_same_seed_reproducible(self, multi_arm):
        """Test the same seed yields identical counts."""
        a = ResamplingEngine(n_boot=60, seed=42).run(multi_arm)
        b = ResamplingEngine(n_boot=60, seed=42).run(multi_arm)
        assert np.array_equal(a.rank_counts, b.rank_counts)

    @pytest.mark.parametrize("n_workers", [2, 3])
    def test_independent_of_workers(self, multi_arm, n_workers):
        """Test partitioning across workers does not change the counts."""
        serial = ResamplingEngine(n_boot=60, seed=42).run(multi_arm)
        parallel = ResamplingEngine(n_boot=60, seed=42, n_workers=n_workers).run(multi_arm)
        assert np.array_equal(serial.rank_counts, parallel.rank_counts)

    def test_failed_iterations_skipped(self, star):
        """Test iterations without a connected draw are skipped with a warning."""
        engine = ResamplingEngine(n_boot=50, seed=7, max_retries=0)
        with pytest.warns(ResamplingWarning):
            dist = engine.run(star)
        assert dist.n_failed > 0
        assert dist.n_iterations == 50 - dist.n_failed
        np.testing.assert_allclose(dist.rank_probabilities.sum(axis=1), 1.0)

    def test_all_iterations_failed(self, star, monkeypatch):
        """Test a run with no successful iteration raises."""
        engine = ResamplingEngine(n_boot=5, seed=7)
        monkeypatch.setattr(engine, "run_iteration", lambda *args: None)
        with pytest.warns(ResamplingWarning):
            with pytest.raises(ResamplingError):
                engine.run(star)

    def test_cancelled(self, star):
        """Test a cancelled token aborts the batch."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelled):
            ResamplingEngine(n_boot=10).run(star, cancel_token=token)

    def test_disconnected(self, disconnected):
        """Test a disconnected network is rejected before resampling."""
        with pytest.raises(ValidationError):
            ResamplingEngine(n_boot=10).run(disconnected)

    def test_outputs(self, star):
        """Test tabular and dictionary output."""
        dist = ResamplingEngine(n_boot=20, seed=1).run(star)
        df = dist.to_dataframe()
        assert list(df.index) == ["A", "B", "C", "D"]
        assert {"sucra", "mean_rank", "rank_1", "rank_4"} <= set(df.columns)
        d = dist.to_dict()
        assert d["seed"] == 1
        assert d["n_requested"] == 20
        assert not dist.rank_counts.flags.writeable
        assert d["converged"] is True
        assert dist.status == "converged"

    def test_sweep_cap_tags_distribution(self, triangle):
        """Test iterations that hit the SVD sweep cap tag the distribution."""
        engine = ResamplingEngine(
            estimator=NetworkEstimator(kernel=LinearAlgebraKernel(max_sweeps=1)),
            n_boot=20,
            seed=2,
        )
        with pytest.warns(ConvergenceWarning):
            dist = engine.run(triangle)
        assert not dist.converged
        assert dist.status == "not_converged"
        assert dist.to_dict()["converged"] is False
