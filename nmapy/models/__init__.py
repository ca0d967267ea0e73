"""
Statistical models for nmapy.

This module provides the generalized least-squares network estimator,
its result structures and the pipeline class that runs a full analysis.
"""

from nmapy.models.base import (
    NetworkEstimateResult,
    PairwiseEstimate,
    PairwiseTable,
    ResidualHeterogeneity,
    compute_heterogeneity_stats,
)
from nmapy.models.frequentist import (
    NetworkEstimator,
    NetworkFit,
    fit_network,
)
from nmapy.models.network_meta_analysis import NetworkMetaAnalysis, NMAResults

__all__ = [
    # Results
    "NetworkEstimateResult",
    "PairwiseEstimate",
    "PairwiseTable",
    "ResidualHeterogeneity",
    "compute_heterogeneity_stats",
    # Estimator
    "NetworkEstimator",
    "NetworkFit",
    "fit_network",
    # Main analysis class
    "NetworkMetaAnalysis",
    "NMAResults",
]
