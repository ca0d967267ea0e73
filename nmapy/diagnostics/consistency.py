"""
Consistency analysis for nmapy.

Two diagnostics compare direct and indirect evidence:

- the design-by-treatment decomposition of Cochran's Q into a
  within-design (heterogeneity) and a between-design (inconsistency)
  component, and
- node-splitting, which re-estimates each directly observed comparison
  from its direct evidence alone and from the rest of the network, and
  tests the difference.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Sequence
import logging
import warnings
import numpy as np

from nmapy.core.contrast import Contrast, TreatmentSet, validate_contrasts
from nmapy.core.exceptions import ConvergenceWarning, NotEstimable
from nmapy.core.network import (
    StudyBlock, block_comparisons, build_study_blocks, check_connected,
    connected_components,
)
from nmapy.models.base import NetworkEstimateResult
from nmapy.models.frequentist import NetworkEstimator, fit_network
from nmapy.utils import format_p_value, p_value_from_chi2, p_value_from_z

logger = logging.getLogger(__name__)

ESTIMABLE = "estimable"
NOT_ESTIMABLE = "not_estimable"


@dataclass(frozen=True)
class DesignQ:
    """Within-design heterogeneity of one design."""

    design: Tuple[str, ...]
    n_studies: int
    q_statistic: float
    df: int

    @property
    def p_value(self) -> float:
        return p_value_from_chi2(self.q_statistic, self.df)


@dataclass(frozen=True)
class NodeSplitRecord:
    """
    Direct versus indirect evidence for one comparison.

    Effects are those of ``comparison[1]`` relative to ``comparison[0]``.

    Attributes:
        comparison: (treatment_a, treatment_b)
        status: "estimable" or "not_estimable"
        direct_estimate: Estimate from studies comparing the pair directly
        direct_se: Its standard error
        indirect_estimate: Estimate from the remaining network
        indirect_se: Its standard error
        network_estimate: Estimate from the full network, if supplied
        z: (direct - indirect) / sqrt(direct_se² + indirect_se²)
        p_value: Two-sided p-value of ``z``
        inconsistent: Whether ``p_value`` is below alpha
        n_direct_studies: Number of studies with direct evidence
        reason: Why the split is not estimable
        converged: False if a sub-network fit hit the SVD sweep cap
    """

    comparison: Tuple[str, str]
    status: str
    direct_estimate: float = np.nan
    direct_se: float = np.nan
    indirect_estimate: float = np.nan
    indirect_se: float = np.nan
    network_estimate: float = np.nan
    z: float = np.nan
    p_value: float = np.nan
    inconsistent: bool = False
    n_direct_studies: int = 0
    reason: str = ""
    converged: bool = True

    @property
    def estimable(self) -> bool:
        return self.status == ESTIMABLE

    @property
    def difference(self) -> float:
        return self.direct_estimate - self.indirect_estimate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "treatment_a": self.comparison[0],
            "treatment_b": self.comparison[1],
            "status": self.status,
            "direct_estimate": self.direct_estimate,
            "direct_se": self.direct_se,
            "indirect_estimate": self.indirect_estimate,
            "indirect_se": self.indirect_se,
            "network_estimate": self.network_estimate,
            "difference": self.difference,
            "z": self.z,
            "p_value": self.p_value,
            "inconsistent": self.inconsistent,
            "n_direct_studies": self.n_direct_studies,
            "reason": self.reason,
            "converged": self.converged,
        }


@dataclass(frozen=True)
class ConsistencyResult:
    """
    Global and local inconsistency diagnostics.

    The headline ``q_statistic``, ``df`` and ``p_value`` are those of the
    between-design (inconsistency) component.

    Attributes:
        q_total: Total Q of the consistency model
        df_total: Its degrees of freedom
        q_within: Sum of within-design Q statistics
        df_within: Its degrees of freedom
        q_between: q_total - q_within
        df_between: df_total - df_within
        designs: Per-design heterogeneity records
        node_splits: Per-comparison node-split records
        alpha: Significance threshold for flagging inconsistency
        converged: False if any fit behind the result hit the SVD sweep cap
    """

    q_total: float
    df_total: int
    q_within: float
    df_within: int
    q_between: float
    df_between: int
    designs: Tuple[DesignQ, ...] = field(default_factory=tuple)
    node_splits: Tuple[NodeSplitRecord, ...] = field(default_factory=tuple)
    alpha: float = 0.05
    converged: bool = True

    @property
    def status(self) -> str:
        return "converged" if self.converged else "not_converged"

    @property
    def q_statistic(self) -> float:
        return self.q_between

    @property
    def df(self) -> int:
        return self.df_between

    @property
    def p_value(self) -> float:
        return p_value_from_chi2(self.q_between, self.df_between)

    @property
    def p_total(self) -> float:
        return p_value_from_chi2(self.q_total, self.df_total)

    @property
    def p_within(self) -> float:
        return p_value_from_chi2(self.q_within, self.df_within)

    @property
    def inconsistent_comparisons(self) -> List[Tuple[str, str]]:
        return [r.comparison for r in self.node_splits if r.inconsistent]

    def split(self, a: str, b: str) -> NodeSplitRecord:
        """Node-split record for a comparison, in either orientation."""
        for r in self.node_splits:
            if r.comparison == (a, b):
                return r
            if r.comparison == (b, a):
                return _flip(r)
        raise KeyError(f"No node-split for {a} vs {b}")

    def to_dataframe(self):
        """Node-split records as a pandas DataFrame."""
        import pandas as pd

        return pd.DataFrame([r.to_dict() for r in self.node_splits])

    def summary_table(self) -> str:
        """Generate summary table as string."""
        lines = [
            "=" * 60,
            "Consistency Analysis",
            "=" * 60,
            "",
            "Q decomposition:",
            f"  Total:          Q = {self.q_total:.2f} (df={self.df_total}, "
            f"{format_p_value(self.p_total)})",
            f"  Within designs: Q = {self.q_within:.2f} (df={self.df_within}, "
            f"{format_p_value(self.p_within)})",
            f"  Between designs: Q = {self.q_between:.2f} (df={self.df_between}, "
            f"{format_p_value(self.p_value)})",
            "",
            "Node-splitting:",
        ]
        for r in self.node_splits:
            label = f"  {r.comparison[0]} vs {r.comparison[1]}"
            if not r.estimable:
                lines.append(f"{label}: not estimable ({r.reason})")
                continue
            flag = " *" if r.inconsistent else ""
            lines.append(
                f"{label}: direct {r.direct_estimate:.3f}, indirect {r.indirect_estimate:.3f}, "
                f"z = {r.z:.2f}, {format_p_value(r.p_value)}{flag}"
            )
        if not self.converged:
            lines.extend(["", "Status: not_converged"])
        lines.append("=" * 60)
        return "\n".join(lines)


def _flip(r: NodeSplitRecord) -> NodeSplitRecord:
    return NodeSplitRecord(
        comparison=(r.comparison[1], r.comparison[0]),
        status=r.status,
        direct_estimate=-r.direct_estimate,
        direct_se=r.direct_se,
        indirect_estimate=-r.indirect_estimate,
        indirect_se=r.indirect_se,
        network_estimate=-r.network_estimate,
        z=-r.z,
        p_value=r.p_value,
        inconsistent=r.inconsistent,
        n_direct_studies=r.n_direct_studies,
        reason=r.reason,
        converged=r.converged,
    )


@dataclass
class ConsistencyAnalyzer:
    """
    Design-by-treatment Q decomposition and node-splitting.

    Attributes:
        estimator: Network estimator used for every sub-network
        alpha: Threshold below which a node-split is flagged inconsistent
    """

    estimator: NetworkEstimator = field(default_factory=NetworkEstimator)
    alpha: float = 0.05

    def analyze(
        self,
        contrasts: Sequence[Contrast],
        treatments: Optional[TreatmentSet] = None,
        tau_squared: float = 0.0,
        baseline: Optional[NetworkEstimateResult] = None
    ) -> ConsistencyResult:
        """
        Run the global test and node-split every direct comparison.

        Args:
            contrasts: Contrast records
            treatments: Treatment set
            tau_squared: Fixed between-study variance for node-splits
            baseline: Full-network estimate, reported alongside each split

        Returns:
            ConsistencyResult
        """
        validate_contrasts(contrasts, treatments)
        if treatments is None:
            treatments = TreatmentSet.from_contrasts(contrasts)
        blocks = build_study_blocks(contrasts)
        check_connected(treatments, blocks)

        totals = self._decompose(blocks, treatments)
        splits = tuple(
            self._split(blocks, treatments, a, b, float(tau_squared), baseline)
            for a, b in direct_comparisons(blocks, treatments)
        )
        n_bad = sum(1 for s in splits if s.inconsistent)
        logger.debug(
            "Node-split %d comparisons, %d flagged inconsistent", len(splits), n_bad
        )
        totals["converged"] = totals["converged"] and all(s.converged for s in splits)
        return ConsistencyResult(node_splits=splits, alpha=self.alpha, **totals)

    def global_test(
        self,
        contrasts: Sequence[Contrast],
        treatments: Optional[TreatmentSet] = None
    ) -> ConsistencyResult:
        """Q decomposition only, without node-splitting."""
        validate_contrasts(contrasts, treatments)
        if treatments is None:
            treatments = TreatmentSet.from_contrasts(contrasts)
        blocks = build_study_blocks(contrasts)
        check_connected(treatments, blocks)
        return ConsistencyResult(alpha=self.alpha, **self._decompose(blocks, treatments))

    def node_split(
        self,
        contrasts: Sequence[Contrast],
        treatment_a: str,
        treatment_b: str,
        treatments: Optional[TreatmentSet] = None,
        tau_squared: float = 0.0,
        baseline: Optional[NetworkEstimateResult] = None
    ) -> NodeSplitRecord:
        """Node-split a single comparison."""
        validate_contrasts(contrasts, treatments)
        if treatments is None:
            treatments = TreatmentSet.from_contrasts(contrasts)
        blocks = build_study_blocks(contrasts)
        check_connected(treatments, blocks)
        return self._split(blocks, treatments, treatment_a, treatment_b,
                           float(tau_squared), baseline)

    # ------------------------------------------------------------------
    # Q decomposition
    # ------------------------------------------------------------------

    def _decompose(self, blocks: Sequence[StudyBlock], treatments: TreatmentSet) -> Dict[str, Any]:
        kernel = self.estimator.kernel
        total = fit_network(blocks, treatments, 0.0, kernel)
        converged = total.converged

        by_design: Dict[Tuple[str, ...], List[StudyBlock]] = {}
        for b in blocks:
            by_design.setdefault(b.design, []).append(b)

        designs = []
        for design, members in by_design.items():
            design_set = treatments.restrict(design)
            fit = fit_network(members, design_set, 0.0, kernel)
            converged = converged and fit.converged
            designs.append(DesignQ(
                design=design_set.labels,
                n_studies=len(members),
                q_statistic=max(0.0, fit.q_statistic),
                df=fit.data.df,
            ))

        q_total = max(0.0, total.q_statistic)
        df_total = total.data.df
        q_within = float(sum(d.q_statistic for d in designs))
        df_within = int(sum(d.df for d in designs))
        if not converged:
            warnings.warn(
                "Jacobi SVD reached its sweep cap in the Q decomposition; "
                "the consistency result is tagged not_converged",
                ConvergenceWarning, stacklevel=3
            )
        return {
            "q_total": q_total,
            "df_total": df_total,
            "q_within": q_within,
            "df_within": df_within,
            "q_between": max(0.0, q_total - q_within),
            "df_between": df_total - df_within,
            "designs": tuple(designs),
            "converged": converged,
        }

    # ------------------------------------------------------------------
    # Node-splitting
    # ------------------------------------------------------------------

    def _split(
        self,
        blocks: Sequence[StudyBlock],
        treatments: TreatmentSet,
        a: str,
        b: str,
        tau_squared: float,
        baseline: Optional[NetworkEstimateResult]
    ) -> NodeSplitRecord:
        network = baseline.effect(a, b) if baseline is not None else np.nan
        direct, indirect = split_evidence(blocks, a, b)
        if not direct:
            return NodeSplitRecord(
                comparison=(a, b), status=NOT_ESTIMABLE, network_estimate=network,
                reason=f"no study compares {a} and {b} directly",
            )

        d = self.estimator.estimate_blocks(
            direct, TreatmentSet([a, b]), tau_squared, diagnostics=False
        )
        try:
            ind_blocks, ind_treatments = indirect_subnetwork(indirect, treatments, a, b)
        except NotEstimable as e:
            return NodeSplitRecord(
                comparison=(a, b), status=NOT_ESTIMABLE,
                direct_estimate=d.effect(a, b), direct_se=d.se(a, b),
                network_estimate=network, n_direct_studies=len(direct),
                reason=str(e), converged=d.converged,
            )
        i = self.estimator.estimate_blocks(
            ind_blocks, ind_treatments, tau_squared, diagnostics=False
        )

        de, dse = d.effect(a, b), d.se(a, b)
        ie, ise = i.effect(a, b), i.se(a, b)
        z = (de - ie) / np.sqrt(dse ** 2 + ise ** 2)
        p = p_value_from_z(z)
        return NodeSplitRecord(
            comparison=(a, b),
            status=ESTIMABLE,
            direct_estimate=de,
            direct_se=dse,
            indirect_estimate=ie,
            indirect_se=ise,
            network_estimate=network,
            z=float(z),
            p_value=p,
            inconsistent=bool(p < self.alpha),
            n_direct_studies=len(direct),
            converged=d.converged and i.converged,
        )


def direct_comparisons(
    blocks: Sequence[StudyBlock],
    treatments: TreatmentSet
) -> List[Tuple[str, str]]:
    """
    Every pair compared within at least one study, oriented and sorted
    by treatment order.
    """
    pairs = set()
    for blk in blocks:
        for x, y in blk.comparisons():
            i, j = treatments.index(x), treatments.index(y)
            pairs.add((min(i, j), max(i, j)))
    return [(treatments[i], treatments[j]) for i, j in sorted(pairs)]


def split_evidence(
    blocks: Sequence[StudyBlock],
    a: str,
    b: str
) -> Tuple[List[StudyBlock], List[StudyBlock]]:
    """
    Separate direct from indirect evidence for the comparison a-b.

    Direct evidence is the a-b contrast of every study containing both
    arms. Indirect evidence is every other study, plus each multi-arm
    study containing both arms with arm ``b`` removed.

    Returns:
        Tuple of (direct blocks, indirect blocks)
    """
    direct: List[StudyBlock] = []
    indirect: List[StudyBlock] = []
    for blk in blocks:
        arms = blk.treatments
        if a in arms and b in arms:
            effect, variance = blk.contrast(a, b)
            direct.append(StudyBlock(
                study_id=blk.study_id,
                baseline=a,
                arms=(b,),
                effects=np.array([effect]),
                covariance=np.array([[variance]]),
            ))
            if blk.n_arms > 2:
                indirect.append(blk.drop_arm(b))
        else:
            indirect.append(blk)
    return direct, indirect


def indirect_subnetwork(
    blocks: Sequence[StudyBlock],
    treatments: TreatmentSet,
    a: str,
    b: str
) -> Tuple[List[StudyBlock], TreatmentSet]:
    """
    Restrict indirect evidence to the component connecting ``a``.

    Raises:
        NotEstimable: If ``b`` cannot be reached from ``a``
    """
    present = {t for blk in blocks for t in blk.treatments}
    if a not in present or b not in present:
        raise NotEstimable(f"no indirect evidence links {a} and {b}")
    order = [t for t in treatments if t in present]
    component = None
    for comp in connected_components(order, block_comparisons(blocks)):
        if a in comp:
            component = set(comp)
            break
    if b not in component:
        raise NotEstimable(f"indirect evidence does not connect {a} and {b}")
    kept = [blk for blk in blocks if blk.baseline in component]
    return kept, treatments.restrict(component)
