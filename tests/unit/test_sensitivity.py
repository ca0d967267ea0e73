"""Unit tests for leave-one-out and tau² sensitivity."""

import pytest
import numpy as np

from nmapy.core.contrast import TreatmentSet
from nmapy.core.exceptions import AnalysisCancelled, ConvergenceWarning, NotEstimable
from nmapy.core.execution import CancellationToken
from nmapy.core.linalg import LinearAlgebraKernel
from nmapy.core.network import build_study_blocks
from nmapy.diagnostics.sensitivity import SensitivityAnalyzer, reduced_network
from nmapy.models.frequentist import NetworkEstimator


class TestLeaveOneOut:
    """Tests for SensitivityAnalyzer.leave_one_out."""

    def test_removing_replicate_increases_se(self, triangle_replicated):
        """Test dropping one of two A-B studies widens the A-B estimate."""
        result = SensitivityAnalyzer().leave_one_out(triangle_replicated)
        shift = result.for_study("S4").shift("A", "B")
        assert shift.loo_se > shift.baseline_se
        assert shift.se_ratio > 1.0

    def test_records_in_study_order(self, triangle_replicated):
        """Test one record per study, all removable."""
        result = SensitivityAnalyzer().leave_one_out(triangle_replicated)
        assert [r.study_id for r in result.records] == ["S1", "S2", "S3", "S4"]
        assert result.non_removable == []
        assert all(len(r.shifts) == 3 for r in result.records)
        assert result.converged
        assert result.status == "converged"

    def test_sweep_cap_tags_result(self, triangle):
        """Test refits that hit the SVD sweep cap tag their records and the result."""
        analyzer = SensitivityAnalyzer(
            estimator=NetworkEstimator(kernel=LinearAlgebraKernel(max_sweeps=1))
        )
        with pytest.warns(ConvergenceWarning):
            result = analyzer.leave_one_out(triangle)
        assert not result.converged
        assert result.status == "not_converged"
        # without S3 the A-B and B-C columns are not orthogonal
        assert not result.for_study("S3").converged
        assert "converged" in result.to_dataframe().columns

    def test_bridge_study_not_removable(self, chain):
        """Test a study whose removal disconnects the network is flagged."""
        result = SensitivityAnalyzer().leave_one_out(chain)
        record = result.for_study("S2")
        assert not record.removable
        assert record.status == "non_removable"
        assert "disconnects" in record.reason
        assert result.non_removable == ["S2"]

    def test_leaf_study_drops_treatment(self, chain):
        """Test removing a leaf study drops its treatment and keeps the rest."""
        record = SensitivityAnalyzer().leave_one_out(chain).for_study("S1")
        assert record.removable
        assert record.dropped_treatments == ("A",)
        pairs = {(s.treatment_a, s.treatment_b) for s in record.shifts}
        assert pairs == {("B", "C"), ("B", "D"), ("C", "D")}

    def test_single_study_not_removable(self, single_contrast):
        """Test a one-study network cannot lose its study."""
        result = SensitivityAnalyzer().leave_one_out(single_contrast)
        assert result.non_removable == ["S1"]
        assert np.isnan(result.records[0].max_abs_shift)

    def test_shift_orientation(self, triangle_replicated):
        """Test shifts are available in either orientation."""
        record = SensitivityAnalyzer().leave_one_out(triangle_replicated).for_study("S4")
        forward = record.shift("A", "B")
        backward = record.shift("B", "A")
        assert backward.loo_effect == pytest.approx(-forward.loo_effect)
        assert backward.abs_shift == pytest.approx(forward.abs_shift)
        with pytest.raises(KeyError):
            record.shift("A", "Z")

    def test_most_influential(self, inconsistent_triangle):
        """Test the most influential study has the largest shift."""
        result = SensitivityAnalyzer().leave_one_out(inconsistent_triangle)
        top = result.most_influential()
        assert top is not None
        assert top.max_abs_shift == max(r.max_abs_shift for r in result.records)

    def test_workers_match_serial(self, multi_arm):
        """Test threaded leave-one-out gives the same records."""
        serial = SensitivityAnalyzer().leave_one_out(multi_arm)
        parallel = SensitivityAnalyzer(n_workers=3).leave_one_out(multi_arm)
        assert serial == parallel

    def test_cancelled(self, triangle):
        """Test a cancelled token aborts the batch."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelled):
            SensitivityAnalyzer().leave_one_out(triangle, cancel_token=token)

    def test_dataframes(self, chain):
        """Test summary and long-format output."""
        result = SensitivityAnalyzer().leave_one_out(chain)
        summary = result.to_dataframe()
        assert list(summary["study_id"]) == ["S1", "S2", "S3"]
        assert list(summary["status"]) == ["removable", "non_removable", "removable"]
        long = result.shifts_dataframe()
        assert set(long["study_id"]) == {"S1", "S3"}


class TestReducedNetwork:
    """Tests for reduced_network."""

    def test_two_treatments_remaining(self, star):
        """Test a star loses a spoke but stays estimable."""
        blocks = build_study_blocks(star)
        ts = TreatmentSet.from_contrasts(star)
        remaining, reduced, dropped = reduced_network(blocks, 0, ts)
        assert len(remaining) == 5
        assert dropped == ()
        assert reduced == ts

    def test_fewer_than_two_treatments(self):
        """Test removal leaving one treatment is not estimable."""
        from nmapy.core.contrast import Contrast

        contrasts = [Contrast("S1", "A", "B", 0.1, 0.04), Contrast("S2", "A", "C", 0.2, 0.04)]
        blocks = build_study_blocks(contrasts)
        ts = TreatmentSet.from_contrasts(contrasts)
        remaining, reduced, dropped = reduced_network(blocks, 0, ts)
        assert dropped == ("B",)
        assert reduced.labels == ("A", "C")

        with pytest.raises(NotEstimable):
            reduced_network(blocks[:1], 0, TreatmentSet(["A", "B"]))


class TestVaryTauSquared:
    """Tests for SensitivityAnalyzer.vary_tau_squared."""

    def test_se_increases_with_tau(self, triangle_replicated):
        """Test standard errors grow with the assumed tau²."""
        fits = SensitivityAnalyzer().vary_tau_squared(triangle_replicated, [0.0, 0.05, 0.2])
        assert list(fits) == [0.0, 0.05, 0.2]
        ses = [fits[t].se("A", "C") for t in fits]
        assert ses[0] < ses[1] < ses[2]
