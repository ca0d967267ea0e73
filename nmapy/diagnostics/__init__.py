"""Diagnostic tools for nmapy analyses."""

from nmapy.diagnostics.heterogeneity import HeterogeneityEstimator, Tau2, prediction_interval
from nmapy.diagnostics.consistency import (
    ConsistencyAnalyzer,
    ConsistencyResult,
    NodeSplitRecord,
    DesignQ,
)
from nmapy.diagnostics.ranking import (
    ResamplingEngine,
    RankingDistribution,
    sucra_from_probabilities,
    p_scores,
)
from nmapy.diagnostics.sensitivity import (
    SensitivityAnalyzer,
    SensitivityResult,
    StudyInfluence,
    PairShift,
)

__all__ = [
    "HeterogeneityEstimator",
    "Tau2",
    "prediction_interval",
    "ConsistencyAnalyzer",
    "ConsistencyResult",
    "NodeSplitRecord",
    "DesignQ",
    "ResamplingEngine",
    "RankingDistribution",
    "sucra_from_probabilities",
    "p_scores",
    "SensitivityAnalyzer",
    "SensitivityResult",
    "StudyInfluence",
    "PairShift",
]
