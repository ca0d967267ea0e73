"""Core data structures and numerical kernel for nmapy."""

from nmapy.core.config import NMAConfig, TauMethod
from nmapy.core.contrast import Contrast, TreatmentSet, validate_contrasts
from nmapy.core.linalg import LinearAlgebraKernel, SVDResult, PseudoInverse, WeightedSolution
from nmapy.core.network import StudyBlock, NetworkData, build_study_blocks, check_connected
from nmapy.core.execution import CancellationToken, LazyCell, run_partitioned

__all__ = [
    "NMAConfig",
    "TauMethod",
    "Contrast",
    "TreatmentSet",
    "validate_contrasts",
    "LinearAlgebraKernel",
    "SVDResult",
    "PseudoInverse",
    "WeightedSolution",
    "StudyBlock",
    "NetworkData",
    "build_study_blocks",
    "check_connected",
    "CancellationToken",
    "LazyCell",
    "run_partitioned",
]
