"""
Analysis configuration for nmapy.

This module defines the heterogeneity estimator methods and the
configuration object recognized by the analysis pipeline.
"""

from __future__ import annotations
from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Optional, Dict, Any

from nmapy.core.exceptions import ValidationError


class TauMethod(Enum):
    """Between-study variance (tau-squared) estimators."""

    REML = "REML"
    DL = "DL"
    ML = "ML"
    FIXED = "FIXED"

    @classmethod
    def from_string(cls, s: str) -> TauMethod:
        """Convert string to TauMethod enum."""
        s_upper = s.upper().strip()
        aliases = {
            "RESTRICTED MAXIMUM LIKELIHOOD": "REML",
            "DERSIMONIAN-LAIRD": "DL",
            "DERSIMONIAN LAIRD": "DL",
            "MOM": "DL",
            "METHOD OF MOMENTS": "DL",
            "MAXIMUM LIKELIHOOD": "ML",
            "FE": "FIXED",
            "COMMON": "FIXED",
        }
        if s_upper in aliases:
            s_upper = aliases[s_upper]

        for member in cls:
            if member.value == s_upper:
                return member
        raise ValidationError(f"Unknown tau-squared method: {s}")

    @property
    def is_iterative(self) -> bool:
        """Whether the estimator iterates to convergence."""
        return self in {TauMethod.REML, TauMethod.ML}


# camelCase names used by external callers
_ALIASES = {
    "tauMethod": "tau_method",
    "nBoot": "n_boot",
    "smallerIsBetter": "smaller_is_better",
    "svdTolerance": "svd_tolerance",
    "maxIterations": "max_iterations",
    "rankTolerance": "rank_tolerance",
    "tauMaxIterations": "tau_max_iterations",
    "tauTolerance": "tau_tolerance",
    "maxResampleRetries": "max_resample_retries",
    "nWorkers": "n_workers",
}


@dataclass(frozen=True)
class NMAConfig:
    """
    Configuration for a network meta-analysis run.

    Attributes:
        tau_method: Heterogeneity estimator
        n_boot: Number of resampling iterations
        smaller_is_better: Ranking direction (True: lower effects rank first)
        alpha: Significance level for CIs and inconsistency tests
        svd_tolerance: Jacobi SVD convergence tolerance on the normalized
            off-diagonal inner products
        max_iterations: Maximum number of Jacobi sweeps
        rank_tolerance: Relative threshold below which singular values are
            treated as zero by the pseudoinverse
        tau_max_iterations: Maximum REML/ML iterations
        tau_tolerance: REML/ML convergence tolerance on tau-squared
        seed: Seed for the resampling random source
        max_resample_retries: Redraws allowed per iteration when a resample
            is disconnected
        n_workers: Worker threads for resampling and leave-one-out
        reference: Reference treatment label (defaults to first seen)
    """

    tau_method: TauMethod = TauMethod.REML
    n_boot: int = 1000
    smaller_is_better: bool = True
    alpha: float = 0.05
    svd_tolerance: float = 1e-12
    max_iterations: int = 100
    rank_tolerance: float = 1e-10
    tau_max_iterations: int = 50
    tau_tolerance: float = 1e-8
    seed: int = 12345
    max_resample_retries: int = 100
    n_workers: int = 1
    reference: Optional[str] = None

    def __post_init__(self):
        """Coerce enum fields and validate ranges."""
        if isinstance(self.tau_method, str):
            object.__setattr__(self, "tau_method", TauMethod.from_string(self.tau_method))
        if not isinstance(self.tau_method, TauMethod):
            raise ValidationError(f"tau_method must be a TauMethod, got {self.tau_method!r}")

        if not isinstance(self.n_boot, int) or isinstance(self.n_boot, bool) or self.n_boot < 1:
            raise ValidationError(f"n_boot must be a positive integer, got {self.n_boot!r}")
        if not 0 < self.alpha < 1:
            raise ValidationError(f"alpha must be in (0, 1), got {self.alpha}")
        for name in ("svd_tolerance", "rank_tolerance", "tau_tolerance"):
            value = getattr(self, name)
            if not value > 0:
                raise ValidationError(f"{name} must be positive, got {value}")
        for name in ("max_iterations", "tau_max_iterations", "n_workers"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ValidationError(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.max_resample_retries, int) or self.max_resample_retries < 0:
            raise ValidationError(
                f"max_resample_retries must be a non-negative integer, "
                f"got {self.max_resample_retries!r}"
            )
        if not isinstance(self.seed, int) or isinstance(self.seed, bool) or self.seed < 0:
            raise ValidationError(f"seed must be a non-negative integer, got {self.seed!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> NMAConfig:
        """
        Build a configuration from a dictionary.

        Accepts both snake_case field names and the camelCase names
        used by external callers (``tauMethod``, ``nBoot``, ...).

        Args:
            data: Option mapping

        Returns:
            NMAConfig
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise ValidationError(f"Unknown configuration option: {key}", [key])
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        d = asdict(self)
        d["tau_method"] = self.tau_method.value
        return d
