"""Unit tests for the consistency-model network estimator."""

import pytest
import numpy as np

from nmapy.core.contrast import Contrast, TreatmentSet
from nmapy.core.exceptions import ConvergenceWarning, ValidationError
from nmapy.core.linalg import LinearAlgebraKernel
from nmapy.models.frequentist import NetworkEstimator


class TestNetworkEstimator:
    """Tests for NetworkEstimator.estimate."""

    def test_single_contrast(self, single_contrast):
        """Test a two-treatment network reproduces the study."""
        result = NetworkEstimator().estimate(single_contrast)
        assert result.effect("A", "B") == pytest.approx(0.5)
        assert result.se("A", "B") == pytest.approx(0.2)
        assert result.reference == "A"
        assert result.status == "converged"

    def test_reverse_orientation(self, single_contrast):
        """Test the effect of A relative to B is the negation."""
        result = NetworkEstimator().estimate(single_contrast)
        assert result.effect("B", "A") == pytest.approx(-0.5)
        assert result.se("B", "A") == pytest.approx(0.2)

    def test_confidence_interval(self, single_contrast):
        """Test the Wald interval at the default level."""
        result = NetworkEstimator().estimate(single_contrast)
        lo, hi = result.ci("A", "B")
        assert lo == pytest.approx(0.5 - 1.959964 * 0.2, rel=1e-5)
        assert hi == pytest.approx(0.5 + 1.959964 * 0.2, rel=1e-5)

    def test_consistent_triangle(self, triangle):
        """Test exactly consistent data is reproduced with zero residual."""
        result = NetworkEstimator().estimate(triangle)
        assert result.effect("A", "B") == pytest.approx(0.5)
        assert result.effect("B", "C") == pytest.approx(0.3)
        assert result.effect("A", "C") == pytest.approx(0.8)
        assert result.q_statistic == pytest.approx(0.0, abs=1e-10)
        assert result.heterogeneity.q_df == 1
        assert result.i_squared == pytest.approx(0.0)

    def test_indirect_evidence_reduces_se(self, triangle):
        """Test the network SE is below the direct-only SE."""
        result = NetworkEstimator().estimate(triangle)
        assert result.se("A", "B") < 0.2

    @pytest.mark.parametrize("tau_squared", [0.0, 0.05])
    def test_additive_consistency(self, star, tau_squared):
        """Test effect(a, c) = effect(a, b) + effect(b, c) for every triple."""
        result = NetworkEstimator().estimate(star, tau_squared=tau_squared)
        t = result.treatments
        for a in t:
            for b in t:
                for c in t:
                    assert result.effect(a, c) == pytest.approx(
                        result.effect(a, b) + result.effect(b, c), abs=1e-10
                    )

    def test_pairwise_table_shape(self, star):
        """Test the pairwise table is antisymmetric with a zero diagonal."""
        result = NetworkEstimator().estimate(star)
        est = result.pairwise.estimates
        se = result.pairwise.standard_errors
        np.testing.assert_allclose(est, -est.T, atol=1e-12)
        np.testing.assert_allclose(se, se.T, atol=1e-12)
        assert np.all(np.diag(se) == 0)
        assert len(list(result.pairs())) == 6

    def test_tau_squared_widens_se(self, triangle_replicated):
        """Test a positive tau² increases standard errors."""
        estimator = NetworkEstimator()
        fixed = estimator.estimate(triangle_replicated, tau_squared=0.0)
        random = estimator.estimate(triangle_replicated, tau_squared=0.1)
        assert random.se("A", "C") > fixed.se("A", "C")
        assert random.tau == pytest.approx(np.sqrt(0.1))

    def test_deterministic(self, multi_arm):
        """Test identical input gives bitwise identical output."""
        first = NetworkEstimator().estimate(multi_arm, tau_squared=0.02)
        second = NetworkEstimator().estimate(multi_arm, tau_squared=0.02)
        assert np.array_equal(first.treatment_effects, second.treatment_effects)
        assert np.array_equal(first.covariance, second.covariance)

    def test_explicit_treatment_order(self, triangle):
        """Test an explicit treatment set sets the reference."""
        result = NetworkEstimator().estimate(triangle, TreatmentSet(["C", "A", "B"]))
        assert result.reference == "C"
        assert result.treatment_effects[0] == 0.0
        assert result.effect("A", "C") == pytest.approx(0.8)

    def test_disconnected(self, disconnected):
        """Test a disconnected network is rejected."""
        with pytest.raises(ValidationError):
            NetworkEstimator().estimate(disconnected)

    @pytest.mark.parametrize("tau_squared", [-0.1, float("nan")])
    def test_invalid_tau(self, triangle, tau_squared):
        """Test negative or NaN tau² is rejected."""
        with pytest.raises(ValidationError):
            NetworkEstimator().estimate(triangle, tau_squared=tau_squared)

    def test_invalid_alpha(self):
        """Test alpha outside (0, 1) is rejected."""
        with pytest.raises(ValueError):
            NetworkEstimator(alpha=0.0)

    def test_sweep_cap(self, triangle):
        """Test hitting the SVD sweep cap tags the result."""
        estimator = NetworkEstimator(kernel=LinearAlgebraKernel(max_sweeps=1))
        with pytest.warns(ConvergenceWarning):
            result = estimator.estimate(triangle)
        assert not result.converged
        assert result.status == "not_converged"
        assert result.warnings

    def test_league_table(self, triangle):
        """Test league table layout."""
        table = NetworkEstimator().estimate(triangle).league_table()
        assert list(table.index) == ["A", "B", "C"]
        assert table.loc["A", "A"] == "A"
        assert table.loc["A", "B"].startswith("0.50")

    def test_to_dataframe(self, triangle):
        """Test long-format pairwise output."""
        df = NetworkEstimator().estimate(triangle).to_dataframe()
        assert len(df) == 3
        assert {"treatment_a", "treatment_b", "effect", "se", "p_value"} <= set(df.columns)

    def test_multi_arm_covariance_used(self):
        """Test shared-arm covariance changes the fit relative to independence."""
        correlated = [
            Contrast("M", "A", "B", 0.4, 0.05, baseline_variance=0.02),
            Contrast("M", "A", "C", 0.9, 0.06, baseline_variance=0.02),
            Contrast("S2", "B", "C", 0.2, 0.05),
        ]
        independent = [
            Contrast("M1", "A", "B", 0.4, 0.05),
            Contrast("M2", "A", "C", 0.9, 0.06),
            Contrast("S2", "B", "C", 0.2, 0.05),
        ]
        r1 = NetworkEstimator().estimate(correlated)
        r2 = NetworkEstimator().estimate(independent)
        assert r1.effect("B", "C") != pytest.approx(r2.effect("B", "C"), abs=1e-6)
