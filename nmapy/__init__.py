"""
nmapy: Frequentist Network Meta-Analysis

Estimates consistent relative effects for every pair of treatments from
pairwise contrasts reported by many studies, some of them multi-arm.
Around the generalized least-squares network estimator it provides
between-study heterogeneity (REML, DL, ML), design-by-treatment and
node-split inconsistency checks, study-level bootstrap rankings (SUCRA,
rank probabilities) and leave-one-out sensitivity.

Example Usage:
    >>> from nmapy import Contrast, NetworkMetaAnalysis, NMAConfig
    >>>
    >>> contrasts = [
    ...     Contrast("S1", "Placebo", "DrugA", -0.40, 0.04),
    ...     Contrast("S2", "Placebo", "DrugB", -0.25, 0.05),
    ...     Contrast("S3", "DrugA", "DrugB", 0.10, 0.06),
    ...     # three-arm study: both contrasts share the Placebo arm
    ...     Contrast("S4", "Placebo", "DrugA", -0.35, 0.05, baseline_variance=0.02),
    ...     Contrast("S4", "Placebo", "DrugC", -0.10, 0.06, baseline_variance=0.02),
    ... ]
    >>>
    >>> nma = NetworkMetaAnalysis(contrasts, NMAConfig(tau_method="REML", n_boot=500))
    >>> results = nma.fit()
    >>> print(results.network.summary_table())
    >>> results.consistency.node_splits
    >>> results.ranking.to_dataframe()
    >>> results.sensitivity.most_influential()

Version: 0.1.0
License: MIT
"""

__version__ = "0.1.0"

# Core classes
from nmapy.core.config import NMAConfig, TauMethod
from nmapy.core.contrast import Contrast, TreatmentSet, validate_contrasts
from nmapy.core.exceptions import (
    NMAError,
    ValidationError,
    NumericalSingularity,
    NotEstimable,
    AnalysisCancelled,
    ResamplingError,
    ConvergenceWarning,
    ResamplingWarning,
    MultiArmCovarianceWarning,
)
from nmapy.core.execution import CancellationToken
from nmapy.core.linalg import LinearAlgebraKernel

# Models
from nmapy.models.base import NetworkEstimateResult, PairwiseEstimate
from nmapy.models.frequentist import NetworkEstimator

# Main analysis class
from nmapy.models.network_meta_analysis import NetworkMetaAnalysis, NMAResults

# Diagnostics
from nmapy.diagnostics.heterogeneity import HeterogeneityEstimator, Tau2, prediction_interval
from nmapy.diagnostics.consistency import ConsistencyAnalyzer, ConsistencyResult, NodeSplitRecord
from nmapy.diagnostics.ranking import ResamplingEngine, RankingDistribution, p_scores
from nmapy.diagnostics.sensitivity import SensitivityAnalyzer, SensitivityResult, StudyInfluence

# Alignment utilities
from nmapy.alignment.effect_measures import ArmData, EffectMeasure, arms_to_contrasts

# I/O
from nmapy.io.readers import (
    read_csv,
    read_json,
    contrasts_from_records,
    contrasts_from_dataframe,
    arms_from_records,
)
from nmapy.io.schema import validate_input

# Utilities
from nmapy.utils import se_from_ci, format_estimate

__all__ = [
    # Version info
    "__version__",

    # Core classes
    "NMAConfig",
    "TauMethod",
    "Contrast",
    "TreatmentSet",
    "validate_contrasts",
    "CancellationToken",
    "LinearAlgebraKernel",

    # Errors and warnings
    "NMAError",
    "ValidationError",
    "NumericalSingularity",
    "NotEstimable",
    "AnalysisCancelled",
    "ResamplingError",
    "ConvergenceWarning",
    "ResamplingWarning",
    "MultiArmCovarianceWarning",

    # Main analysis
    "NetworkMetaAnalysis",
    "NMAResults",

    # Models
    "NetworkEstimator",
    "NetworkEstimateResult",
    "PairwiseEstimate",

    # Diagnostics
    "HeterogeneityEstimator",
    "Tau2",
    "prediction_interval",
    "ConsistencyAnalyzer",
    "ConsistencyResult",
    "NodeSplitRecord",
    "ResamplingEngine",
    "RankingDistribution",
    "p_scores",
    "SensitivityAnalyzer",
    "SensitivityResult",
    "StudyInfluence",

    # Alignment
    "ArmData",
    "EffectMeasure",
    "arms_to_contrasts",

    # I/O
    "read_csv",
    "read_json",
    "contrasts_from_records",
    "contrasts_from_dataframe",
    "arms_from_records",
    "validate_input",

    # Utilities
    "se_from_ci",
    "format_estimate",
]
