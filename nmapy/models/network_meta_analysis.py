"""
NetworkMetaAnalysis: Main Interface for nmapy.

This module provides the primary user interface for running a complete
frequentist network meta-analysis: validation, heterogeneity, the
baseline network estimate and the on-demand consistency, ranking and
leave-one-out stages.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Sequence, Tuple
import json
import logging

from nmapy.core.config import NMAConfig
from nmapy.core.contrast import Contrast, TreatmentSet, validate_contrasts
from nmapy.core.execution import CancellationToken, CellStore, fingerprint
from nmapy.core.linalg import LinearAlgebraKernel
from nmapy.core.network import build_study_blocks, check_connected
from nmapy.diagnostics.consistency import ConsistencyAnalyzer, ConsistencyResult
from nmapy.diagnostics.heterogeneity import HeterogeneityEstimator, Tau2
from nmapy.diagnostics.ranking import RankingDistribution, ResamplingEngine, p_scores
from nmapy.diagnostics.sensitivity import SensitivityAnalyzer, SensitivityResult
from nmapy.models.base import NetworkEstimateResult
from nmapy.models.frequentist import NetworkEstimator

logger = logging.getLogger(__name__)

# Config fields each lazy stage depends on, beyond the shared inputs
_STAGE_OPTIONS = {
    "consistency": ("alpha", "svd_tolerance", "max_iterations", "rank_tolerance"),
    "ranking": (
        "n_boot", "seed", "smaller_is_better", "max_resample_retries",
        "svd_tolerance", "max_iterations", "rank_tolerance",
    ),
    "sensitivity": ("svd_tolerance", "max_iterations", "rank_tolerance"),
}


def kernel_from_config(config: NMAConfig) -> LinearAlgebraKernel:
    """Linear algebra kernel with the numerical controls of ``config``."""
    return LinearAlgebraKernel(
        svd_tolerance=config.svd_tolerance,
        max_sweeps=config.max_iterations,
        rank_tolerance=config.rank_tolerance,
    )


@dataclass(frozen=True)
class NMAResults:
    """
    Immutable result of one pipeline run.

    The baseline stages (tau² and the network estimate) are computed
    eagerly. Consistency, ranking and sensitivity are computed on first
    access and memoized by a fingerprint of their inputs.

    Attributes:
        contrasts: Validated contrast records
        treatments: Treatment set (index 0 is the reference)
        config: Configuration of the run
        tau2: Estimated between-study variance
        network: Baseline network estimate
    """

    contrasts: Tuple[Contrast, ...]
    treatments: TreatmentSet
    config: NMAConfig
    tau2: Tau2
    network: NetworkEstimateResult
    _cells: CellStore = field(default_factory=CellStore, repr=False, compare=False)

    @property
    def tau_squared(self) -> float:
        return self.tau2.value

    @property
    def converged(self) -> bool:
        """False if the tau² loop or any SVD hit its cap."""
        return self.tau2.converged and self.network.converged

    def stage_key(self, stage: str) -> str:
        """Input fingerprint of a lazy stage."""
        options = {name: getattr(self.config, name) for name in _STAGE_OPTIONS[stage]}
        return fingerprint(stage, list(self.contrasts), self.treatments, self.tau2.value, options)

    def _estimator(self) -> NetworkEstimator:
        return NetworkEstimator(alpha=self.config.alpha, kernel=kernel_from_config(self.config))

    # ------------------------------------------------------------------
    # Lazy stages
    # ------------------------------------------------------------------

    @property
    def consistency(self) -> ConsistencyResult:
        """Q decomposition and node-splits (computed on first access)."""
        return self.get_consistency()

    @property
    def ranking(self) -> RankingDistribution:
        """Resampling rank distribution (computed on first access)."""
        return self.get_ranking()

    @property
    def sensitivity(self) -> SensitivityResult:
        """Leave-one-out records (computed on first access)."""
        return self.get_sensitivity()

    def get_consistency(self) -> ConsistencyResult:
        def compute():
            analyzer = ConsistencyAnalyzer(estimator=self._estimator(), alpha=self.config.alpha)
            return analyzer.analyze(
                self.contrasts, self.treatments, self.tau2.value, baseline=self.network
            )

        key = self.stage_key("consistency")
        return self._cells.cell("consistency", key, compute).get(compute)

    def get_ranking(self, cancel_token: Optional[CancellationToken] = None) -> RankingDistribution:
        """
        Rank distribution, computing it if needed.

        Args:
            cancel_token: Checked between resampling iterations

        Raises:
            AnalysisCancelled: If cancelled; nothing is memoized
        """
        def compute():
            engine = ResamplingEngine(
                estimator=self._estimator(),
                n_boot=self.config.n_boot,
                seed=self.config.seed,
                smaller_is_better=self.config.smaller_is_better,
                max_retries=self.config.max_resample_retries,
                n_workers=self.config.n_workers,
            )
            return engine.run(self.contrasts, self.treatments, self.tau2.value, cancel_token)

        key = self.stage_key("ranking")
        return self._cells.cell("ranking", key, compute).get(compute)

    def get_sensitivity(self, cancel_token: Optional[CancellationToken] = None) -> SensitivityResult:
        """
        Leave-one-out records, computing them if needed.

        Args:
            cancel_token: Checked between studies

        Raises:
            AnalysisCancelled: If cancelled; nothing is memoized
        """
        def compute():
            analyzer = SensitivityAnalyzer(
                estimator=self._estimator(), n_workers=self.config.n_workers
            )
            return analyzer.leave_one_out(
                self.contrasts, self.treatments, self.tau2.value,
                baseline=self.network, cancel_token=cancel_token,
            )

        key = self.stage_key("sensitivity")
        return self._cells.cell("sensitivity", key, compute).get(compute)

    def is_computed(self, stage: str) -> bool:
        """Whether a lazy stage has already been computed."""
        return self._cells.ready(stage, self.stage_key(stage))

    def p_scores(self) -> Dict[str, float]:
        """Analytic P-scores of the baseline network estimate."""
        scores = p_scores(self.network, self.config.smaller_is_better)
        return dict(zip(self.treatments.labels, scores.tolist()))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def summary_table(self) -> str:
        lines = [
            "=" * 70,
            "Network Meta-Analysis",
            "=" * 70,
            f"Heterogeneity: {self.tau2.method.value}, tau² = {self.tau2.value:.4f} "
            f"({self.tau2.status})",
            "",
            self.network.summary_table(),
        ]
        if self.is_computed("consistency"):
            lines.extend(["", self.consistency.summary_table()])
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Baseline results plus any lazy stage already computed."""
        d = {
            "config": self.config.to_dict(),
            "treatments": list(self.treatments.labels),
            "tau2": self.tau2.to_dict(),
            "network": self.network.to_dict(),
        }
        if self.is_computed("consistency"):
            d["consistency"] = self.consistency.to_dataframe().to_dict(orient="records")
        if self.is_computed("ranking"):
            d["ranking"] = self.ranking.to_dict()
        if self.is_computed("sensitivity"):
            d["sensitivity"] = self.sensitivity.to_dataframe().to_dict(orient="records")
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


@dataclass
class NetworkMetaAnalysis:
    """
    Main class for conducting a network meta-analysis.

    Attributes:
        contrasts: Pairwise contrast records (multi-arm studies share a baseline)
        config: Analysis configuration
        verbose: Log stage progress at INFO instead of DEBUG

    Example:
        >>> from nmapy import Contrast, NetworkMetaAnalysis, NMAConfig
        >>>
        >>> contrasts = [
        ...     Contrast("S1", "A", "B", 0.5, 0.04),
        ...     Contrast("S2", "B", "C", 0.3, 0.05),
        ...     Contrast("S3", "A", "C", 0.7, 0.06),
        ... ]
        >>> nma = NetworkMetaAnalysis(contrasts, NMAConfig(tau_method="DL", n_boot=200))
        >>> results = nma.fit()
        >>> print(results.network.summary_table())
        >>> results.ranking.to_dataframe()
    """

    contrasts: Sequence[Contrast]
    config: NMAConfig = field(default_factory=NMAConfig)
    verbose: bool = False

    # Internal state
    _treatments: Optional[TreatmentSet] = field(default=None, repr=False)
    _results: Optional[NMAResults] = field(default=None, repr=False)
    _results_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        """Validate the input and build the treatment set."""
        if isinstance(self.config, dict):
            self.config = NMAConfig.from_dict(self.config)
        self.contrasts = tuple(
            c if isinstance(c, Contrast) else Contrast.from_dict(c) for c in self.contrasts
        )
        validate_contrasts(self.contrasts)
        self._treatments = TreatmentSet.from_contrasts(self.contrasts, self.config.reference)
        check_connected(self._treatments, build_study_blocks(self.contrasts))

    @property
    def treatments(self) -> TreatmentSet:
        return self._treatments

    @property
    def n_studies(self) -> int:
        """Number of distinct studies."""
        return len({c.study_id for c in self.contrasts})

    @property
    def results(self) -> Optional[NMAResults]:
        """Results of the last fit."""
        return self._results

    @property
    def is_fitted(self) -> bool:
        return self._results is not None

    def _log(self, msg: str, *args) -> None:
        logger.log(logging.INFO if self.verbose else logging.DEBUG, msg, *args)

    def _key(self) -> str:
        return fingerprint(list(self.contrasts), self._treatments, self.config)

    def fit(self) -> NMAResults:
        """
        Estimate tau² and the baseline network.

        Repeated calls with unchanged inputs return the same NMAResults.

        Returns:
            NMAResults
        """
        key = self._key()
        if self._results is not None and self._results_key == key:
            return self._results

        kernel = kernel_from_config(self.config)
        self._log(
            "Fitting network of %d treatments from %d studies (%d contrasts)",
            len(self._treatments), self.n_studies, len(self.contrasts),
        )

        tau2 = HeterogeneityEstimator(
            kernel=kernel,
            max_iterations=self.config.tau_max_iterations,
            tolerance=self.config.tau_tolerance,
        ).estimate(self.contrasts, self._treatments, self.config.tau_method)
        self._log("tau² (%s) = %.6g, %s", tau2.method.value, tau2.value, tau2.status)

        network = NetworkEstimator(alpha=self.config.alpha, kernel=kernel).estimate(
            self.contrasts, self._treatments, tau2.value
        )
        self._log("Baseline network estimate: %s", network.status)

        self._results = NMAResults(
            contrasts=tuple(self.contrasts),
            treatments=self._treatments,
            config=self.config,
            tau2=tau2,
            network=network,
        )
        self._results_key = key
        return self._results

    def run(self, cancel_token: Optional[CancellationToken] = None) -> NMAResults:
        """
        Run every stage in order: tau², baseline, consistency, ranking,
        leave-one-out.

        Args:
            cancel_token: Checked between stages and between units of the
                resampling and leave-one-out batches

        Returns:
            NMAResults with every lazy stage computed

        Raises:
            AnalysisCancelled: If cancelled
        """
        results = self.fit()
        stages = [
            ("consistency", lambda: results.get_consistency()),
            ("ranking", lambda: results.get_ranking(cancel_token)),
            ("sensitivity", lambda: results.get_sensitivity(cancel_token)),
        ]
        for name, compute in stages:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            self._log("Stage %s started", name)
            compute()
            self._log("Stage %s finished", name)
        return results

    def summary(self) -> str:
        """Get analysis summary."""
        lines = [
            f"Network meta-analysis: {len(self._treatments)} treatments, "
            f"{self.n_studies} studies, {len(self.contrasts)} contrasts",
            f"Reference: {self._treatments.reference}",
            f"Heterogeneity method: {self.config.tau_method.value}",
        ]
        if self._results is not None:
            lines.append("")
            lines.append(self._results.summary_table())
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert analysis to dictionary."""
        return {
            "contrasts": [c.to_dict() for c in self.contrasts],
            "config": self.config.to_dict(),
            "results": self._results.to_dict() if self._results else None,
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> NetworkMetaAnalysis:
        """Create an analysis from a dictionary (results are not restored)."""
        contrasts: List[Contrast] = [Contrast.from_dict(c) for c in d["contrasts"]]
        config = NMAConfig.from_dict(d.get("config", {}))
        return cls(contrasts=contrasts, config=config, verbose=d.get("verbose", False))

    @classmethod
    def from_json(cls, json_str: str) -> NetworkMetaAnalysis:
        """Create from JSON string."""
        return cls.from_dict(json.loads(json_str))
