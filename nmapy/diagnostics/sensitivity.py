"""
Sensitivity analysis for nmapy.

This module assesses how much individual studies drive the network
estimates (leave-one-out) and how the estimates respond to the assumed
heterogeneity variance.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Sequence
import logging
import numpy as np

from nmapy.core.contrast import Contrast, TreatmentSet, validate_contrasts
from nmapy.core.exceptions import NotEstimable
from nmapy.core.execution import CancellationToken, run_partitioned
from nmapy.core.network import StudyBlock, build_study_blocks, check_connected, is_connected
from nmapy.models.base import NetworkEstimateResult
from nmapy.models.frequentist import NetworkEstimator

logger = logging.getLogger(__name__)

REMOVABLE = "removable"
NON_REMOVABLE = "non_removable"


@dataclass(frozen=True)
class PairShift:
    """Change in one pairwise estimate when a study is left out."""

    treatment_a: str
    treatment_b: str
    baseline_effect: float
    baseline_se: float
    loo_effect: float
    loo_se: float

    @property
    def abs_shift(self) -> float:
        return abs(self.loo_effect - self.baseline_effect)

    @property
    def rel_shift(self) -> float:
        """Absolute shift relative to the baseline magnitude (nan if baseline is 0)."""
        if self.baseline_effect == 0:
            return np.nan
        return self.abs_shift / abs(self.baseline_effect)

    @property
    def se_ratio(self) -> float:
        return self.loo_se / self.baseline_se if self.baseline_se > 0 else np.nan

    def to_dict(self) -> Dict[str, Any]:
        return {
            "treatment_a": self.treatment_a,
            "treatment_b": self.treatment_b,
            "baseline_effect": self.baseline_effect,
            "baseline_se": self.baseline_se,
            "loo_effect": self.loo_effect,
            "loo_se": self.loo_se,
            "abs_shift": self.abs_shift,
            "rel_shift": self.rel_shift,
        }


@dataclass(frozen=True)
class StudyInfluence:
    """
    Leave-one-out record for one study.

    Attributes:
        study_id: Study left out
        status: "removable" or "non_removable"
        reason: Why the study cannot be removed
        dropped_treatments: Treatments with no evidence left
        shifts: Per retained pair, baseline vs leave-one-out estimates
        converged: False if the refit hit the SVD sweep cap
    """

    study_id: str
    status: str
    reason: str = ""
    dropped_treatments: Tuple[str, ...] = field(default_factory=tuple)
    shifts: Tuple[PairShift, ...] = field(default_factory=tuple)
    converged: bool = True

    @property
    def removable(self) -> bool:
        return self.status == REMOVABLE

    @property
    def max_abs_shift(self) -> float:
        if not self.shifts:
            return np.nan
        return max(s.abs_shift for s in self.shifts)

    @property
    def mean_abs_shift(self) -> float:
        if not self.shifts:
            return np.nan
        return float(np.mean([s.abs_shift for s in self.shifts]))

    @property
    def max_rel_shift(self) -> float:
        rel = [s.rel_shift for s in self.shifts if not np.isnan(s.rel_shift)]
        return max(rel) if rel else np.nan

    def shift(self, a: str, b: str) -> PairShift:
        for s in self.shifts:
            if (s.treatment_a, s.treatment_b) == (a, b):
                return s
            if (s.treatment_a, s.treatment_b) == (b, a):
                return PairShift(a, b, -s.baseline_effect, s.baseline_se,
                                 -s.loo_effect, s.loo_se)
        raise KeyError(f"No shift recorded for {a} vs {b} without study '{self.study_id}'")


@dataclass(frozen=True)
class SensitivityResult:
    """
    Leave-one-out records for every study, in study order.

    ``converged`` is False if the baseline fit or any refit hit the SVD
    sweep cap.
    """

    records: Tuple[StudyInfluence, ...]
    converged: bool = True

    @property
    def status(self) -> str:
        return "converged" if self.converged else "not_converged"

    @property
    def non_removable(self) -> List[str]:
        return [r.study_id for r in self.records if not r.removable]

    def for_study(self, study_id: str) -> StudyInfluence:
        for r in self.records:
            if r.study_id == study_id:
                return r
        raise KeyError(f"Study '{study_id}' not found")

    def most_influential(self) -> Optional[StudyInfluence]:
        """Removable study with the largest maximum absolute shift."""
        removable = [r for r in self.records if r.removable and r.shifts]
        if not removable:
            return None
        return max(removable, key=lambda r: r.max_abs_shift)

    def to_dataframe(self):
        """Per-study summary as a pandas DataFrame."""
        import pandas as pd

        return pd.DataFrame([
            {
                "study_id": r.study_id,
                "status": r.status,
                "reason": r.reason,
                "dropped_treatments": ", ".join(r.dropped_treatments),
                "max_abs_shift": r.max_abs_shift,
                "mean_abs_shift": r.mean_abs_shift,
                "max_rel_shift": r.max_rel_shift,
                "converged": r.converged,
            }
            for r in self.records
        ])

    def shifts_dataframe(self):
        """Per-study, per-pair shifts in long format."""
        import pandas as pd

        rows = []
        for r in self.records:
            for s in r.shifts:
                rows.append({"study_id": r.study_id, **s.to_dict()})
        return pd.DataFrame(rows)


@dataclass
class SensitivityAnalyzer:
    """
    Leave-one-out and heterogeneity sensitivity for a treatment network.

    Attributes:
        estimator: Network estimator for every refit
        n_workers: Worker threads for leave-one-out
    """

    estimator: NetworkEstimator = field(default_factory=NetworkEstimator)
    n_workers: int = 1

    def leave_one_out(
        self,
        contrasts: Sequence[Contrast],
        treatments: Optional[TreatmentSet] = None,
        tau_squared: float = 0.0,
        baseline: Optional[NetworkEstimateResult] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> SensitivityResult:
        """
        Refit the network without each study in turn.

        Args:
            contrasts: Contrast records
            treatments: Treatment set
            tau_squared: Fixed between-study variance
            baseline: Full-data estimate (computed if not supplied)
            cancel_token: Checked between studies

        Returns:
            SensitivityResult
        """
        validate_contrasts(contrasts, treatments)
        if treatments is None:
            treatments = TreatmentSet.from_contrasts(contrasts)
        blocks = build_study_blocks(contrasts)
        check_connected(treatments, blocks)
        tau_squared = float(tau_squared)
        if baseline is None:
            baseline = self.estimator.estimate_blocks(
                blocks, treatments, tau_squared, diagnostics=False
            )

        def work(chunk, token):
            out = []
            for k in chunk:
                if token is not None:
                    token.raise_if_cancelled()
                out.append(self.remove_study(blocks, k, treatments, tau_squared, baseline))
            return out

        logger.info("Leave-one-out over %d studies", len(blocks))
        partials = run_partitioned(range(len(blocks)), work, self.n_workers, cancel_token)
        records = tuple(r for part in partials for r in part)
        converged = baseline.converged and all(r.converged for r in records)
        return SensitivityResult(records=records, converged=converged)

    def remove_study(
        self,
        blocks: Sequence[StudyBlock],
        index: int,
        treatments: TreatmentSet,
        tau_squared: float,
        baseline: NetworkEstimateResult
    ) -> StudyInfluence:
        """
        Leave-one-out record for the study at ``index``.

        Args:
            blocks: All study blocks
            index: Position of the study to remove
            treatments: Full treatment set
            tau_squared: Fixed between-study variance
            baseline: Full-data estimate

        Returns:
            StudyInfluence (non_removable if the reduced network is not estimable)
        """
        study_id = blocks[index].study_id
        try:
            remaining, reduced, dropped = reduced_network(blocks, index, treatments)
        except NotEstimable as e:
            logger.debug("Study %s is not removable: %s", study_id, e)
            return StudyInfluence(
                study_id=study_id,
                status=NON_REMOVABLE,
                reason=str(e),
                dropped_treatments=_dropped(blocks, index, treatments),
            )

        fit = self.estimator.estimate_blocks(remaining, reduced, tau_squared, diagnostics=False)
        shifts = tuple(
            PairShift(
                treatment_a=a,
                treatment_b=b,
                baseline_effect=baseline.effect(a, b),
                baseline_se=baseline.se(a, b),
                loo_effect=fit.effect(a, b),
                loo_se=fit.se(a, b),
            )
            for a, b in reduced.pairs()
        )
        return StudyInfluence(
            study_id=study_id,
            status=REMOVABLE,
            dropped_treatments=dropped,
            shifts=shifts,
            converged=fit.converged,
        )

    def vary_tau_squared(
        self,
        contrasts: Sequence[Contrast],
        tau_values: Sequence[float],
        treatments: Optional[TreatmentSet] = None
    ) -> Dict[float, NetworkEstimateResult]:
        """
        Refit the network over a grid of fixed tau-squared values.

        Args:
            contrasts: Contrast records
            tau_values: tau-squared values to evaluate
            treatments: Treatment set

        Returns:
            Mapping of tau-squared to network estimate
        """
        validate_contrasts(contrasts, treatments)
        if treatments is None:
            treatments = TreatmentSet.from_contrasts(contrasts)
        blocks = build_study_blocks(contrasts)
        return {
            float(t): self.estimator.estimate_blocks(blocks, treatments, t)
            for t in tau_values
        }


def _dropped(blocks: Sequence[StudyBlock], index: int, treatments: TreatmentSet) -> Tuple[str, ...]:
    present = {t for k, b in enumerate(blocks) if k != index for t in b.treatments}
    return tuple(t for t in treatments if t not in present)


def reduced_network(
    blocks: Sequence[StudyBlock],
    index: int,
    treatments: TreatmentSet
) -> Tuple[List[StudyBlock], TreatmentSet, Tuple[str, ...]]:
    """
    Network without one study.

    Treatments left without any comparison are dropped from the set.

    Returns:
        Tuple of (remaining blocks, reduced treatment set, dropped treatments)

    Raises:
        NotEstimable: If fewer than two treatments remain or the reduced
            network is disconnected
    """
    remaining = [b for k, b in enumerate(blocks) if k != index]
    dropped = _dropped(blocks, index, treatments)
    if not remaining:
        raise NotEstimable("no other studies remain")
    reduced = treatments.restrict(t for t in treatments if t not in dropped)
    if len(reduced) < 2:
        raise NotEstimable("fewer than two treatments remain")
    if not is_connected(reduced, remaining):
        raise NotEstimable("removal disconnects the network")
    return remaining, reduced, dropped
