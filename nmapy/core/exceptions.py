"""
Exceptions and warnings for nmapy.

Fatal problems (malformed input, disconnected networks, degenerate
linear systems) are raised as exceptions that name the offending
studies, treatments or comparisons. Non-fatal problems (iteration caps,
approximated covariances, failed resamples) are emitted as warnings and
recorded on the affected result.
"""

from __future__ import annotations
from typing import Optional, Sequence, Tuple


class NMAError(Exception):
    """Base class for all nmapy errors."""


class ValidationError(NMAError, ValueError):
    """
    Input rejected before any estimation.

    Attributes:
        identifiers: Study ids, treatment labels or comparisons implicated
    """

    def __init__(self, message: str, identifiers: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.identifiers: Tuple[str, ...] = tuple(str(i) for i in (identifiers or ()))


class NumericalSingularity(NMAError, ArithmeticError):
    """
    Pseudoinverse truncated more singular values than the expected rank allows.

    Attributes:
        components: Labels of the parameters of the degenerate system
        rank: Numerical rank found
        expected_rank: Rank required by the caller
    """

    def __init__(
        self,
        message: str,
        components: Optional[Sequence[str]] = None,
        rank: int = 0,
        expected_rank: int = 0
    ):
        super().__init__(message)
        self.components: Tuple[str, ...] = tuple(str(c) for c in (components or ()))
        self.rank = rank
        self.expected_rank = expected_rank


class NotEstimable(NMAError):
    """A single node-split or leave-one-out item cannot be computed."""


class AnalysisCancelled(NMAError):
    """A batch was cancelled; no partial aggregate is returned."""


class ResamplingError(NMAError):
    """No resampling iteration produced an estimable network."""


class ConvergenceWarning(UserWarning):
    """An iterative routine reached its cap without meeting tolerance."""


class ResamplingWarning(UserWarning):
    """A resampling iteration exhausted its retries and was skipped."""


class MultiArmCovarianceWarning(UserWarning):
    """A multi-arm study's shared-arm covariance had to be approximated."""
