"""Unit tests for the NetworkMetaAnalysis pipeline."""

import json
import logging

import pytest

from nmapy import NetworkMetaAnalysis, NMAConfig
from nmapy.core.config import TauMethod
from nmapy.core.exceptions import AnalysisCancelled, ValidationError
from nmapy.core.execution import CancellationToken


@pytest.fixture
def fast_config():
    """Small bootstrap so pipeline tests stay quick."""
    return NMAConfig(tau_method="DL", n_boot=30, seed=11)


class TestNetworkMetaAnalysis:
    """Tests for NetworkMetaAnalysis construction and fitting."""

    def test_construction(self, triangle_replicated, fast_config):
        """Test treatments and study counts."""
        nma = NetworkMetaAnalysis(triangle_replicated, fast_config)
        assert nma.treatments.labels == ("A", "B", "C")
        assert nma.n_studies == 4
        assert not nma.is_fitted

    def test_dict_inputs(self, triangle):
        """Test dictionaries are accepted for contrasts and config."""
        nma = NetworkMetaAnalysis(
            [c.to_dict() for c in triangle],
            {"tauMethod": "DL", "nBoot": 10},
        )
        assert nma.config.tau_method == TauMethod.DL
        assert nma.config.n_boot == 10
        assert nma.contrasts == tuple(triangle)

    def test_reference(self, triangle):
        """Test the configured reference takes index 0."""
        config = NMAConfig(tau_method="DL", n_boot=10, reference="C")
        nma = NetworkMetaAnalysis(triangle, config)
        assert nma.treatments.reference == "C"
        assert nma.fit().network.reference == "C"

    def test_disconnected(self, disconnected):
        """Test a disconnected network is rejected at construction."""
        with pytest.raises(ValidationError):
            NetworkMetaAnalysis(disconnected)

    def test_invalid_contrast(self):
        """Test malformed records are rejected at construction."""
        with pytest.raises(ValidationError):
            NetworkMetaAnalysis([{"study_id": "S1", "treatment_a": "A",
                                  "treatment_b": "B", "effect_size": 0.5, "variance": 0}])

    def test_single_contrast(self, single_contrast, fast_config):
        """Test the simplest possible network."""
        results = NetworkMetaAnalysis(single_contrast, fast_config).fit()
        assert results.tau_squared == 0.0
        assert results.network.effect("A", "B") == pytest.approx(0.5)
        assert results.network.se("A", "B") == pytest.approx(0.2)
        assert results.converged

    def test_fit_memoized(self, triangle, fast_config):
        """Test repeated fits return the same results object."""
        nma = NetworkMetaAnalysis(triangle, fast_config)
        first = nma.fit()
        assert nma.fit() is first
        assert nma.is_fitted
        assert nma.results is first

    def test_verbose_logging(self, triangle, fast_config, caplog):
        """Test stage progress is logged at INFO when verbose."""
        caplog.set_level(logging.INFO, logger="nmapy")
        NetworkMetaAnalysis(triangle, fast_config, verbose=True).fit()
        assert "Fitting network of 3 treatments" in caplog.text


class TestLazyStages:
    """Tests for on-demand consistency, ranking and sensitivity."""

    def test_stages_computed_on_access(self, triangle_replicated, fast_config):
        """Test lazy stages are computed once and memoized."""
        results = NetworkMetaAnalysis(triangle_replicated, fast_config).fit()
        assert not results.is_computed("ranking")
        ranking = results.ranking
        assert results.is_computed("ranking")
        assert results.ranking is ranking
        assert not results.is_computed("consistency")

    def test_run_computes_everything(self, triangle_replicated, fast_config):
        """Test run executes every stage."""
        results = NetworkMetaAnalysis(triangle_replicated, fast_config).run()
        for stage in ("consistency", "ranking", "sensitivity"):
            assert results.is_computed(stage)
        assert results.ranking.n_requested == 30
        assert results.sensitivity.non_removable == []

    def test_run_cancelled(self, triangle, fast_config):
        """Test a cancelled run stops before the lazy stages."""
        token = CancellationToken()
        token.cancel()
        nma = NetworkMetaAnalysis(triangle, fast_config)
        with pytest.raises(AnalysisCancelled):
            nma.run(token)
        assert nma.is_fitted
        assert not nma.results.is_computed("consistency")

    def test_cancelled_stage_not_memoized(self, triangle, fast_config):
        """Test a cancelled stage can be recomputed afterwards."""
        results = NetworkMetaAnalysis(triangle, fast_config).fit()
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AnalysisCancelled):
            results.get_ranking(token)
        assert not results.is_computed("ranking")
        assert results.get_ranking().n_iterations == 30

    def test_ranking_reproducible(self, multi_arm, fast_config):
        """Test separate pipelines with the same seed agree."""
        a = NetworkMetaAnalysis(multi_arm, fast_config).fit().ranking
        b = NetworkMetaAnalysis(multi_arm, fast_config).fit().ranking
        assert (a.rank_counts == b.rank_counts).all()

    def test_p_scores(self, star, fast_config):
        """Test analytic P-scores keyed by treatment."""
        scores = NetworkMetaAnalysis(star, fast_config).fit().p_scores()
        assert set(scores) == {"A", "B", "C", "D"}
        assert max(scores, key=scores.get) == "B"


class TestSerialization:
    """Tests for dictionary and JSON output."""

    def test_results_to_json(self, triangle, fast_config):
        """Test computed stages appear in the JSON output."""
        results = NetworkMetaAnalysis(triangle, fast_config).fit()
        d = json.loads(results.to_json())
        assert d["treatments"] == ["A", "B", "C"]
        assert "ranking" not in d
        results.get_ranking()
        d = json.loads(results.to_json())
        assert d["ranking"]["n_requested"] == 30

    def test_analysis_roundtrip(self, triangle, fast_config):
        """Test an analysis can be rebuilt from its JSON."""
        nma = NetworkMetaAnalysis(triangle, fast_config)
        restored = NetworkMetaAnalysis.from_json(nma.to_json())
        assert restored.contrasts == nma.contrasts
        assert restored.config == nma.config

    def test_summary(self, triangle, fast_config):
        """Test the text summary."""
        nma = NetworkMetaAnalysis(triangle, fast_config)
        nma.fit()
        text = nma.summary()
        assert "Network meta-analysis: 3 treatments" in text
        assert "Reference: A" in text
