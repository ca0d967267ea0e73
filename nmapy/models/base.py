"""
Result containers for nmapy network estimates.

This module defines the immutable result of a network fit: treatment
effects against the reference, the full pairwise table with standard
errors and confidence intervals, and residual heterogeneity statistics.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Iterator
import numpy as np
from scipy import stats

from nmapy.utils import format_estimate, p_value_from_z


def freeze(a) -> np.ndarray:
    """Read-only contiguous float64 copy."""
    out = np.array(a, dtype=np.float64, copy=True, order="C")
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class PairwiseEstimate:
    """
    Network estimate for one treatment pair.

    The effect is that of ``treatment_b`` relative to ``treatment_a``.
    """

    treatment_a: str
    treatment_b: str
    effect: float
    se: float
    ci_lower: float
    ci_upper: float

    @property
    def z(self) -> float:
        return self.effect / self.se if self.se > 0 else np.nan

    @property
    def p_value(self) -> float:
        return p_value_from_z(self.z) if self.se > 0 else np.nan

    def to_dict(self) -> Dict[str, Any]:
        return {
            "treatment_a": self.treatment_a,
            "treatment_b": self.treatment_b,
            "effect": self.effect,
            "se": self.se,
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
            "z": self.z,
            "p_value": self.p_value,
        }


@dataclass(frozen=True)
class PairwiseTable:
    """
    All pairwise effects of a network fit.

    Entry ``[i, j]`` is the effect of treatment j relative to treatment i.

    Attributes:
        estimates: Effect matrix (T x T), antisymmetric
        standard_errors: SE matrix (T x T), symmetric, zero diagonal
        ci_lower: Lower confidence bounds
        ci_upper: Upper confidence bounds
    """

    estimates: np.ndarray
    standard_errors: np.ndarray
    ci_lower: np.ndarray
    ci_upper: np.ndarray

    @classmethod
    def from_effects(
        cls,
        effects: np.ndarray,
        covariance: np.ndarray,
        alpha: float = 0.05
    ) -> PairwiseTable:
        """
        Derive the pairwise table from reference-anchored effects.

        Args:
            effects: Effect of each treatment vs the reference (T,)
            covariance: Covariance of ``effects`` (T x T), zero for the reference
            alpha: Significance level for the intervals
        """
        est = effects[np.newaxis, :] - effects[:, np.newaxis]
        d = np.diag(covariance)
        var = d[:, np.newaxis] + d[np.newaxis, :] - 2.0 * covariance
        se = np.sqrt(np.clip(var, 0.0, None))
        np.fill_diagonal(se, 0.0)
        z = stats.norm.ppf(1 - alpha / 2)
        return cls(
            estimates=freeze(est),
            standard_errors=freeze(se),
            ci_lower=freeze(est - z * se),
            ci_upper=freeze(est + z * se),
        )


@dataclass(frozen=True)
class ResidualHeterogeneity:
    """
    Residual heterogeneity of the consistency model under common-effect weights.

    Attributes:
        q_statistic: Weighted residual sum of squares
        q_df: Residual degrees of freedom (rows - (T - 1))
        q_pvalue: Chi-squared tail probability (nan when df is 0)
        i_squared: Proportion of variation beyond sampling error
    """

    q_statistic: float
    q_df: int
    q_pvalue: float
    i_squared: float

    @property
    def h(self) -> float:
        """H statistic, sqrt(Q / df), floored at 1."""
        if self.q_df <= 0:
            return 1.0
        return float(max(1.0, np.sqrt(self.q_statistic / self.q_df)))


def compute_heterogeneity_stats(q: float, df: int) -> ResidualHeterogeneity:
    """
    Compute Q test and I-squared from a residual Q.

    Args:
        q: Weighted residual sum of squares
        df: Residual degrees of freedom

    Returns:
        ResidualHeterogeneity
    """
    q = max(0.0, float(q))
    if df > 0:
        pvalue = float(stats.chi2.sf(q, df))
    else:
        pvalue = np.nan

    if q > df and q > 0:
        i_squared = (q - df) / q
    else:
        i_squared = 0.0

    return ResidualHeterogeneity(
        q_statistic=q,
        q_df=int(df),
        q_pvalue=pvalue,
        i_squared=float(i_squared),
    )


@dataclass(frozen=True)
class NetworkEstimateResult:
    """
    Consistent network estimates for every treatment pair.

    Attributes:
        treatments: Treatment labels; index 0 is the reference
        treatment_effects: Effect of each treatment vs the reference
        covariance: Covariance of ``treatment_effects`` (T x T)
        pairwise: Pairwise effects, SEs and CIs
        tau_squared: Between-study variance used for the weights
        alpha: Significance level of the intervals
        heterogeneity: Residual heterogeneity (None if not computed)
        n_studies: Number of studies
        n_contrasts: Number of basic contrasts
        converged: False if any decomposition hit its iteration cap
        warnings: Messages raised while fitting
    """

    treatments: Tuple[str, ...]
    treatment_effects: np.ndarray
    covariance: np.ndarray
    pairwise: PairwiseTable
    tau_squared: float
    alpha: float = 0.05
    heterogeneity: Optional[ResidualHeterogeneity] = None
    n_studies: int = 0
    n_contrasts: int = 0
    converged: bool = True
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def reference(self) -> str:
        return self.treatments[0]

    @property
    def n_treatments(self) -> int:
        return len(self.treatments)

    @property
    def status(self) -> str:
        return "converged" if self.converged else "not_converged"

    @property
    def tau(self) -> float:
        return float(np.sqrt(self.tau_squared))

    @property
    def q_statistic(self) -> Optional[float]:
        return self.heterogeneity.q_statistic if self.heterogeneity else None

    @property
    def i_squared(self) -> Optional[float]:
        return self.heterogeneity.i_squared if self.heterogeneity else None

    def index(self, treatment: str) -> int:
        try:
            return self.treatments.index(treatment)
        except ValueError:
            raise KeyError(f"Treatment '{treatment}' not in network") from None

    def effect(self, a: str, b: str) -> float:
        """Effect of ``b`` relative to ``a``."""
        return float(self.pairwise.estimates[self.index(a), self.index(b)])

    def se(self, a: str, b: str) -> float:
        """Standard error of ``effect(a, b)``."""
        return float(self.pairwise.standard_errors[self.index(a), self.index(b)])

    def ci(self, a: str, b: str) -> Tuple[float, float]:
        """Confidence interval of ``effect(a, b)``."""
        i, j = self.index(a), self.index(b)
        return (float(self.pairwise.ci_lower[i, j]), float(self.pairwise.ci_upper[i, j]))

    def estimate(self, a: str, b: str) -> PairwiseEstimate:
        lo, hi = self.ci(a, b)
        return PairwiseEstimate(a, b, self.effect(a, b), self.se(a, b), lo, hi)

    def pairs(self) -> Iterator[PairwiseEstimate]:
        """All pairs (i < j) in treatment order."""
        for i in range(self.n_treatments):
            for j in range(i + 1, self.n_treatments):
                yield self.estimate(self.treatments[i], self.treatments[j])

    def league_table(self, decimals: int = 2, exponentiate: bool = False):
        """
        League table as a pandas DataFrame.

        Cell (row i, column j) holds the effect of treatment j relative to
        treatment i with its confidence interval.

        Args:
            decimals: Number of decimal places
            exponentiate: Report on the ratio scale

        Returns:
            pandas DataFrame indexed and labeled by treatment
        """
        import pandas as pd

        t = self.treatments
        cells: List[List[str]] = []
        for i in range(len(t)):
            row = []
            for j in range(len(t)):
                if i == j:
                    row.append(t[i])
                else:
                    row.append(format_estimate(
                        self.pairwise.estimates[i, j],
                        ci=(self.pairwise.ci_lower[i, j], self.pairwise.ci_upper[i, j]),
                        decimals=decimals,
                        exponentiate=exponentiate,
                    ))
            cells.append(row)
        return pd.DataFrame(cells, index=list(t), columns=list(t))

    def to_dataframe(self):
        """Long-format pairwise estimates as a pandas DataFrame."""
        import pandas as pd

        return pd.DataFrame([p.to_dict() for p in self.pairs()])

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "treatments": list(self.treatments),
            "reference": self.reference,
            "treatment_effects": self.treatment_effects.tolist(),
            "covariance": self.covariance.tolist(),
            "pairwise": [p.to_dict() for p in self.pairs()],
            "tau_squared": float(self.tau_squared),
            "alpha": self.alpha,
            "q_statistic": self.q_statistic,
            "q_df": self.heterogeneity.q_df if self.heterogeneity else None,
            "q_pvalue": self.heterogeneity.q_pvalue if self.heterogeneity else None,
            "i_squared": self.i_squared,
            "n_studies": self.n_studies,
            "n_contrasts": self.n_contrasts,
            "converged": self.converged,
            "warnings": list(self.warnings),
        }

    def summary_table(self, exponentiate: bool = False) -> str:
        """Generate summary table as string."""
        level = int(round((1 - self.alpha) * 100))
        lines = [
            "=" * 60,
            "Network Meta-Analysis Results",
            "=" * 60,
            "",
            f"Treatments: {self.n_treatments} (reference: {self.reference})",
            f"Studies: {self.n_studies}   Basic contrasts: {self.n_contrasts}",
            "",
            f"Effects vs {self.reference} ({level}% CI):",
        ]
        for t in self.treatments[1:]:
            est = self.estimate(self.reference, t)
            lines.append(
                f"  {t}: " + format_estimate(
                    est.effect, ci=(est.ci_lower, est.ci_upper), exponentiate=exponentiate
                )
            )
        lines.extend([
            "",
            "Heterogeneity:",
            f"  τ²: {self.tau_squared:.4f}",
            f"  τ: {self.tau:.4f}",
        ])
        if self.heterogeneity is not None:
            h = self.heterogeneity
            lines.append(f"  I²: {h.i_squared * 100:.1f}%")
            lines.append(f"  Q statistic: {h.q_statistic:.2f} (df={h.q_df}, p={h.q_pvalue:.4f})")

        lines.extend(["", f"Converged: {self.converged}"])
        if self.warnings:
            lines.append("")
            lines.append("Warnings:")
            for w in self.warnings:
                lines.append(f"  - {w}")
        lines.append("=" * 60)
        return "\n".join(lines)
