"""
Frequentist network estimator for nmapy.

This module implements the generalized least-squares consistency model

    y = X d + e,    Var(e) = V + tau² K

where ``y`` stacks each study's basic contrasts, ``X`` maps them to
treatment parameters ``d`` (reference fixed at zero), ``V`` is the
block-diagonal within-study covariance and ``K`` the random-effects
pattern of each block. Every pairwise effect is a linear combination of
``d``, so the output is additively consistent by construction.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, List, Sequence, Tuple
import warnings
import numpy as np

from nmapy.core.contrast import Contrast, TreatmentSet, validate_contrasts
from nmapy.core.exceptions import ValidationError, ConvergenceWarning
from nmapy.core.linalg import LinearAlgebraKernel, WeightedSolution
from nmapy.core.network import (
    StudyBlock, NetworkData, assemble, build_study_blocks, check_connected
)
from nmapy.models.base import (
    NetworkEstimateResult, PairwiseTable,
    compute_heterogeneity_stats, freeze
)


@dataclass(frozen=True)
class NetworkFit:
    """
    Raw GLS fit of a network.

    Attributes:
        data: Design and stacked contrasts
        solution: Weighted least-squares solution (parameters exclude the reference)
        converged: False if any SVD hit its sweep cap
    """

    data: NetworkData
    solution: WeightedSolution
    converged: bool

    @property
    def treatment_effects(self) -> np.ndarray:
        """Parameters with the reference's zero prepended."""
        return np.concatenate([[0.0], self.solution.coefficients])

    @property
    def covariance(self) -> np.ndarray:
        """Parameter covariance padded with a zero row/column for the reference."""
        p = self.data.n_params
        cov = np.zeros((p + 1, p + 1))
        cov[1:, 1:] = self.solution.covariance
        return cov

    @property
    def q_statistic(self) -> float:
        return self.solution.q_statistic


def fit_network(
    blocks: Sequence[StudyBlock],
    treatments: TreatmentSet,
    tau_squared: float,
    kernel: LinearAlgebraKernel
) -> NetworkFit:
    """
    Fit the consistency model to study blocks.

    The caller is responsible for validation and connectivity.

    Args:
        blocks: Study blocks
        treatments: Treatment set (parameter order)
        tau_squared: Between-study variance
        kernel: Linear algebra kernel

    Returns:
        NetworkFit

    Raises:
        NumericalSingularity: If the normal equations have rank below T - 1
    """
    data = assemble(blocks, treatments)
    W, w_converged = kernel.inverse_blocks(
        data.total_covariance_blocks(tau_squared),
        labels=list(data.block_ids),
    )
    solution = kernel.solve_weighted(
        data.X, data.y, W,
        expected_rank=data.n_params,
        labels=list(data.parameter_labels),
    )
    return NetworkFit(
        data=data,
        solution=solution,
        converged=w_converged and solution.converged,
    )


@dataclass
class NetworkEstimator:
    """
    Generalized least-squares estimator of a treatment network.

    Attributes:
        alpha: Significance level for confidence intervals
        kernel: Linear algebra kernel used for all inversions
    """

    alpha: float = 0.05
    kernel: LinearAlgebraKernel = field(default_factory=LinearAlgebraKernel)

    def __post_init__(self):
        """Validate inputs."""
        if not 0 < self.alpha < 1:
            raise ValueError(f"alpha must be in (0, 1), got {self.alpha}")

    def estimate(
        self,
        contrasts: Sequence[Contrast],
        treatments: Optional[TreatmentSet] = None,
        tau_squared: float = 0.0,
        diagnostics: bool = True
    ) -> NetworkEstimateResult:
        """
        Estimate all pairwise effects from contrasts.

        Args:
            contrasts: Contrast records
            treatments: Treatment set (default: order of first appearance)
            tau_squared: Fixed between-study variance
            diagnostics: Compute residual heterogeneity statistics

        Returns:
            NetworkEstimateResult

        Raises:
            ValidationError: For malformed input or a disconnected network
        """
        validate_contrasts(contrasts, treatments)
        if treatments is None:
            treatments = TreatmentSet.from_contrasts(contrasts)
        blocks = build_study_blocks(contrasts)
        return self.estimate_blocks(blocks, treatments, tau_squared, diagnostics)

    def estimate_blocks(
        self,
        blocks: Sequence[StudyBlock],
        treatments: TreatmentSet,
        tau_squared: float = 0.0,
        diagnostics: bool = True
    ) -> NetworkEstimateResult:
        """
        Estimate all pairwise effects from prepared study blocks.

        Args:
            blocks: Study blocks
            treatments: Treatment set
            tau_squared: Fixed between-study variance
            diagnostics: Compute residual heterogeneity statistics

        Returns:
            NetworkEstimateResult
        """
        tau_squared = _check_tau(tau_squared)
        if len(blocks) == 0:
            raise ValidationError("No studies to estimate from")
        if len(treatments) < 2:
            raise ValidationError("At least two treatments are required", list(treatments))
        for b in blocks:
            for t in b.treatments:
                if t not in treatments:
                    raise ValidationError(
                        f"Study '{b.study_id}' references unknown treatment '{t}'",
                        [b.study_id, t]
                    )
        check_connected(treatments, blocks)

        fit = fit_network(blocks, treatments, tau_squared, self.kernel)
        converged = fit.converged
        messages: List[str] = []

        heterogeneity = None
        if diagnostics:
            if tau_squared == 0.0:
                fe_fit = fit
            else:
                fe_fit = fit_network(blocks, treatments, 0.0, self.kernel)
                converged = converged and fe_fit.converged
            heterogeneity = compute_heterogeneity_stats(fe_fit.q_statistic, fe_fit.data.df)

        if not converged:
            msg = (
                "Jacobi SVD reached its sweep cap without meeting tolerance; "
                "estimates are tagged not_converged"
            )
            messages.append(msg)
            warnings.warn(msg, ConvergenceWarning, stacklevel=2)

        if any(b.approximated for b in blocks):
            messages.append(
                "Shared-arm covariance of one or more multi-arm studies was approximated"
            )

        effects = fit.treatment_effects
        covariance = fit.covariance
        return NetworkEstimateResult(
            treatments=treatments.labels,
            treatment_effects=freeze(effects),
            covariance=freeze(covariance),
            pairwise=PairwiseTable.from_effects(effects, covariance, self.alpha),
            tau_squared=tau_squared,
            alpha=self.alpha,
            heterogeneity=heterogeneity,
            n_studies=len(blocks),
            n_contrasts=fit.data.n_rows,
            converged=converged,
            warnings=tuple(messages),
        )


def _check_tau(tau_squared: float) -> float:
    try:
        tau_squared = float(tau_squared)
    except (TypeError, ValueError):
        raise ValidationError(f"tau_squared must be a number, got {tau_squared!r}") from None
    if not np.isfinite(tau_squared) or tau_squared < 0:
        raise ValidationError(f"tau_squared must be finite and non-negative, got {tau_squared}")
    return tau_squared
