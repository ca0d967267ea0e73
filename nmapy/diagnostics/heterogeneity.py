"""
Heterogeneity estimation for nmapy.

This module estimates the between-study variance (tau-squared) of a
treatment network. All estimators work on the stacked basic contrasts of
the consistency model, so multi-arm studies contribute their correlated
contrasts with the usual tau²/2 between-arm covariance.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple, Union
import logging
import warnings
import numpy as np
from scipy import stats

from nmapy.core.config import TauMethod
from nmapy.core.contrast import Contrast, TreatmentSet, validate_contrasts
from nmapy.core.exceptions import ConvergenceWarning
from nmapy.core.linalg import LinearAlgebraKernel
from nmapy.core.network import NetworkData, assemble, build_study_blocks, check_connected
from nmapy.models.base import NetworkEstimateResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tau2:
    """
    Estimated between-study variance.

    Attributes:
        value: tau-squared, always >= 0
        method: Estimator used
        converged: Whether the estimator met its tolerance
        n_iter: Iterations performed (0 for closed-form estimators)
    """

    value: float
    method: TauMethod
    converged: bool = True
    n_iter: int = 0

    def __post_init__(self):
        if not self.value >= 0:
            raise ValueError(f"tau-squared must be non-negative, got {self.value}")

    def __float__(self) -> float:
        return float(self.value)

    @property
    def tau(self) -> float:
        """Between-study standard deviation."""
        return float(np.sqrt(self.value))

    @property
    def status(self) -> str:
        return "converged" if self.converged else "not_converged"

    def to_dict(self):
        return {
            "value": self.value,
            "method": self.method.value,
            "converged": self.converged,
            "n_iter": self.n_iter,
        }


@dataclass
class HeterogeneityEstimator:
    """
    Between-study variance estimator for a treatment network.

    Attributes:
        kernel: Linear algebra kernel
        max_iterations: Iteration cap for REML and ML
        tolerance: Absolute change in tau² that stops REML and ML
    """

    kernel: LinearAlgebraKernel = field(default_factory=LinearAlgebraKernel)
    max_iterations: int = 50
    tolerance: float = 1e-8

    def estimate(
        self,
        contrasts: Sequence[Contrast],
        treatments: Optional[TreatmentSet] = None,
        method: Union[TauMethod, str] = TauMethod.REML
    ) -> Tau2:
        """
        Estimate tau-squared.

        Args:
            contrasts: Contrast records
            treatments: Treatment set (default: order of first appearance)
            method: REML, DL, ML or FIXED

        Returns:
            Tau2

        Raises:
            ValidationError: For malformed input or a disconnected network
        """
        if isinstance(method, str):
            method = TauMethod.from_string(method)
        validate_contrasts(contrasts, treatments)
        if treatments is None:
            treatments = TreatmentSet.from_contrasts(contrasts)
        blocks = build_study_blocks(contrasts)
        check_connected(treatments, blocks)
        data = assemble(blocks, treatments)

        if method == TauMethod.FIXED:
            return Tau2(0.0, method)
        if data.df <= 0:
            logger.debug("No residual degrees of freedom; tau² set to 0")
            return Tau2(0.0, method)

        tau_dl, converged = self._moments(data)
        if not method.is_iterative:
            return Tau2(tau_dl, method, converged=converged)

        return self._iterate(data, method, tau_dl, converged)

    # ------------------------------------------------------------------

    def _projection(
        self,
        data: NetworkData,
        tau_squared: float
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, bool]:
        """
        Weight and residual projection at a given tau².

        Returns:
            Tuple of (W, P, residuals, converged) where
            P = W - W X (X'WX)^+ X'W
        """
        W, w_ok = self.kernel.inverse_blocks(
            data.total_covariance_blocks(tau_squared),
            labels=list(data.block_ids),
        )
        sol = self.kernel.solve_weighted(
            data.X, data.y, W,
            expected_rank=data.n_params,
            labels=list(data.parameter_labels),
        )
        WX = W @ data.X
        P = W - WX @ sol.covariance @ WX.T
        return W, P, np.asarray(sol.residuals), w_ok and sol.converged

    def _moments(self, data: NetworkData) -> Tuple[float, bool]:
        """
        Generalized DerSimonian-Laird estimate.

        E[Q] = df + tau² tr(P0 K) under the random-effects model, so
        tau² = (Q - df) / tr(P0 K), truncated at zero.
        """
        K = self.kernel.block_diagonal(data.tau_blocks)
        W, P0, resid, converged = self._projection(data, 0.0)
        q = float(resid @ W @ resid)
        denom = float(np.trace(P0 @ K))
        if denom <= 1e-12:
            return 0.0, converged
        return max(0.0, (q - data.df) / denom), converged

    def _iterate(
        self,
        data: NetworkData,
        method: TauMethod,
        start: float,
        converged_so_far: bool
    ) -> Tau2:
        """Fisher scoring for REML or ML, starting from the DL estimate."""
        K = self.kernel.block_diagonal(data.tau_blocks)
        tau_sq = start
        svd_ok = converged_so_far
        converged = False
        n_iter = 0

        for n_iter in range(1, self.max_iterations + 1):
            W, P, resid, ok = self._projection(data, tau_sq)
            svd_ok = svd_ok and ok
            Wr = W @ resid

            if method == TauMethod.REML:
                PK = P @ K
                score = -0.5 * np.trace(PK) + 0.5 * float(Wr @ K @ Wr)
                info = 0.5 * np.trace(PK @ PK)
            else:
                WK = W @ K
                score = -0.5 * np.trace(WK) + 0.5 * float(Wr @ K @ Wr)
                info = 0.5 * np.trace(WK @ WK)

            if info <= 0:
                converged = True
                break

            tau_new = max(0.0, tau_sq + score / info)
            if abs(tau_new - tau_sq) < self.tolerance:
                tau_sq = tau_new
                converged = True
                break
            tau_sq = tau_new

        if not converged:
            warnings.warn(
                f"{method.value} tau² estimation did not converge in {self.max_iterations} "
                f"iterations; returning last value {tau_sq:.6g}",
                ConvergenceWarning,
                stacklevel=3,
            )
        logger.debug("%s tau² = %.6g after %d iterations", method.value, tau_sq, n_iter)
        return Tau2(
            value=float(tau_sq),
            method=method,
            converged=converged and svd_ok,
            n_iter=n_iter,
        )


def prediction_interval(
    result: NetworkEstimateResult,
    treatment_a: str,
    treatment_b: str,
    level: Optional[float] = None
) -> Tuple[float, float]:
    """
    Prediction interval for the effect in a new study.

    Args:
        result: Network estimate
        treatment_a: Comparator
        treatment_b: Active treatment
        level: Prediction level (default: 1 - result.alpha)

    Returns:
        Tuple of (lower, upper) bounds
    """
    if level is None:
        level = 1 - result.alpha
    theta = result.effect(treatment_a, treatment_b)
    se_theta = result.se(treatment_a, treatment_b)

    # Prediction variance includes both estimation uncertainty and tau
    pred_se = np.sqrt(se_theta ** 2 + result.tau_squared)

    # t-distribution with k-2 df (Higgins et al.)
    df = max(1, result.n_studies - 2)
    t_crit = stats.t.ppf((1 + level) / 2, df)

    return theta - t_crit * pred_se, theta + t_crit * pred_se
