"""
Effect Measure Utilities for nmapy.

This module turns arm-level study data (event counts or means) into the
pairwise contrasts the network estimator consumes. Every study is
expressed against its first arm, and the variance of that shared arm is
attached so multi-arm covariance is exact rather than approximated.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, List, Tuple, Sequence, Union
import math
import numpy as np

from nmapy.core.contrast import Contrast
from nmapy.core.exceptions import ValidationError
from nmapy.utils import hedges_correction

CONTINUITY_CORRECTION = 0.5


class EffectMeasure(Enum):
    """Effect measures that can be computed from arm-level data."""

    # Ratio measures (analyzed on log scale)
    ODDS_RATIO = "OR"
    RISK_RATIO = "RR"

    # Difference measures (analyzed on natural scale)
    MEAN_DIFFERENCE = "MD"
    STANDARDIZED_MEAN_DIFFERENCE = "SMD"

    @classmethod
    def from_string(cls, s: str) -> EffectMeasure:
        """Convert string to EffectMeasure enum."""
        s_upper = s.upper().strip()
        aliases = {
            "ODDS RATIO": "OR",
            "LOG OR": "OR",
            "RISK RATIO": "RR",
            "RELATIVE RISK": "RR",
            "LOG RR": "RR",
            "MEAN DIFFERENCE": "MD",
            "STANDARDIZED MEAN DIFFERENCE": "SMD",
            "HEDGES G": "SMD",
            "HEDGES' G": "SMD",
        }
        if s_upper in aliases:
            s_upper = aliases[s_upper]

        for member in cls:
            if member.value == s_upper or member.name == s_upper:
                return member
        raise ValidationError(f"Unknown effect measure: {s}", [s])

    def is_ratio_measure(self) -> bool:
        """Check if this is a ratio measure (analyzed on log scale)."""
        return self in {EffectMeasure.ODDS_RATIO, EffectMeasure.RISK_RATIO}

    def is_binary(self) -> bool:
        """Whether the measure is computed from event counts."""
        return self.is_ratio_measure()

    def null_value(self) -> float:
        """Null value on the analysis scale."""
        return 0.0


@dataclass(frozen=True)
class ArmData:
    """
    Summary data for one arm of a study.

    Binary outcomes use ``events``; continuous outcomes use ``mean`` and ``sd``.

    Attributes:
        study_id: Study identifier
        treatment: Treatment label of the arm
        n: Number of participants
        events: Number of events (binary outcomes)
        mean: Mean response (continuous outcomes)
        sd: Standard deviation (continuous outcomes)
    """

    study_id: str
    treatment: str
    n: int
    events: Optional[int] = None
    mean: Optional[float] = None
    sd: Optional[float] = None

    def __post_init__(self):
        for name in ("study_id", "treatment"):
            value = getattr(self, name)
            if value is None or str(value).strip() == "":
                raise ValidationError(f"Arm record is missing {name}", [str(self.study_id)])
        object.__setattr__(self, "study_id", str(self.study_id))
        object.__setattr__(self, "treatment", str(self.treatment))
        ident = [self.study_id, self.treatment]
        if self.n is None or self.n <= 0:
            raise ValidationError(
                f"Study '{self.study_id}' arm '{self.treatment}': n must be positive", ident
            )
        if self.events is not None and not 0 <= self.events <= self.n:
            raise ValidationError(
                f"Study '{self.study_id}' arm '{self.treatment}': events must be in [0, n]",
                ident
            )
        if self.sd is not None and self.sd <= 0:
            raise ValidationError(
                f"Study '{self.study_id}' arm '{self.treatment}': sd must be positive", ident
            )

    @property
    def is_binary(self) -> bool:
        return self.events is not None

    @property
    def is_continuous(self) -> bool:
        return self.mean is not None and self.sd is not None


# ============================================================================
# Arm-level quantities
# ============================================================================

def log_odds(events: float, n: float, correction: float = 0.0) -> Tuple[float, float]:
    """
    Log odds of an arm and its variance.

    Args:
        events: Event count
        n: Arm size
        correction: Added to both the event and non-event cells

    Returns:
        Tuple of (log_odds, variance)
    """
    a = events + correction
    b = n - events + correction
    if a <= 0 or b <= 0:
        raise ValueError("Zero cell in log odds; apply a continuity correction")
    return float(np.log(a / b)), 1 / a + 1 / b


def log_risk(events: float, n: float, correction: float = 0.0) -> Tuple[float, float]:
    """
    Log risk of an arm and its variance.

    Args:
        events: Event count
        n: Arm size
        correction: Added to the event cell and twice to the total

    Returns:
        Tuple of (log_risk, variance)
    """
    a = events + correction
    total = n + 2 * correction
    if a <= 0:
        raise ValueError("Zero events in log risk; apply a continuity correction")
    return float(np.log(a / total)), 1 / a - 1 / total


def mean_variance(sd: float, n: int) -> float:
    """Sampling variance of an arm mean."""
    return sd ** 2 / n


# ============================================================================
# Pairwise effects
# ============================================================================

def log_odds_ratio(
    events_a: int, n_a: int, events_b: int, n_b: int,
    correction: Optional[float] = None
) -> Tuple[float, float]:
    """
    Log odds ratio of arm b vs arm a.

    Args:
        events_a, n_a: Comparator arm
        events_b, n_b: Active arm
        correction: Continuity correction (default: 0.5 if any cell is zero)

    Returns:
        Tuple of (log_or, variance)
    """
    if correction is None:
        correction = CONTINUITY_CORRECTION if _has_zero_cell([(events_a, n_a), (events_b, n_b)]) else 0.0
    la, va = log_odds(events_a, n_a, correction)
    lb, vb = log_odds(events_b, n_b, correction)
    return lb - la, va + vb


def log_risk_ratio(
    events_a: int, n_a: int, events_b: int, n_b: int,
    correction: Optional[float] = None
) -> Tuple[float, float]:
    """
    Log risk ratio of arm b vs arm a.

    Returns:
        Tuple of (log_rr, variance)
    """
    if correction is None:
        correction = CONTINUITY_CORRECTION if _has_zero_cell([(events_a, n_a), (events_b, n_b)]) else 0.0
    la, va = log_risk(events_a, n_a, correction)
    lb, vb = log_risk(events_b, n_b, correction)
    return lb - la, va + vb


def mean_difference(
    mean_a: float, sd_a: float, n_a: int,
    mean_b: float, sd_b: float, n_b: int
) -> Tuple[float, float]:
    """
    Mean difference of arm b vs arm a.

    Returns:
        Tuple of (md, variance)
    """
    return mean_b - mean_a, mean_variance(sd_a, n_a) + mean_variance(sd_b, n_b)


def standardized_mean_difference(
    mean_a: float, sd_a: float, n_a: int,
    mean_b: float, sd_b: float, n_b: int
) -> Tuple[float, float]:
    """
    Hedges' g of arm b vs arm a.

    Uses the pooled standard deviation of the two arms and the
    small-sample correction J.

    Returns:
        Tuple of (g, variance)
    """
    n = n_a + n_b
    if n < 3:
        raise ValueError("SMD requires at least 3 participants across both arms")
    pooled = math.sqrt(((n_a - 1) * sd_a ** 2 + (n_b - 1) * sd_b ** 2) / (n - 2))
    j = hedges_correction(n)
    g = j * (mean_b - mean_a) / pooled
    variance = 1 / n_a + 1 / n_b + g ** 2 / (2 * n)
    return g, variance


def _has_zero_cell(arms: Sequence[Tuple[float, float]]) -> bool:
    return any(e == 0 or e == n for e, n in arms)


# ============================================================================
# Arm data to contrasts
# ============================================================================

def _arm_terms(
    arms: Sequence[ArmData],
    measure: EffectMeasure
) -> Tuple[List[float], List[float]]:
    """Per-arm location and variance on the analysis scale."""
    if measure == EffectMeasure.ODDS_RATIO or measure == EffectMeasure.RISK_RATIO:
        for arm in arms:
            if not arm.is_binary:
                raise ValidationError(
                    f"Study '{arm.study_id}' arm '{arm.treatment}' has no event count "
                    f"for {measure.value}",
                    [arm.study_id, arm.treatment]
                )
        f = log_odds if measure == EffectMeasure.ODDS_RATIO else log_risk
        zero = _has_zero_cell([(a.events, a.n) for a in arms])
        correction = CONTINUITY_CORRECTION if zero else 0.0
        terms = [f(a.events, a.n, correction) for a in arms]
        return [t[0] for t in terms], [t[1] for t in terms]

    for arm in arms:
        if not arm.is_continuous:
            raise ValidationError(
                f"Study '{arm.study_id}' arm '{arm.treatment}' needs mean and sd "
                f"for {measure.value}",
                [arm.study_id, arm.treatment]
            )
    return [a.mean for a in arms], [mean_variance(a.sd, a.n) for a in arms]


def study_contrasts(
    arms: Sequence[ArmData],
    measure: Union[EffectMeasure, str]
) -> List[Contrast]:
    """
    Contrasts of one study against its first arm.

    For OR, RR and MD the contrast variance is the sum of two arm
    variances, so the first arm's variance is exactly the covariance
    between contrasts. For SMD each pair is standardized with its own
    pooled SD and the covariance is approximated by 1/n of the first arm.

    Args:
        arms: Arms of a single study, baseline first
        measure: Effect measure

    Returns:
        One contrast per non-baseline arm
    """
    if isinstance(measure, str):
        measure = EffectMeasure.from_string(measure)
    if len(arms) < 2:
        sid = arms[0].study_id if arms else "?"
        raise ValidationError(f"Study '{sid}' needs at least two arms", [sid])
    study_id = arms[0].study_id
    labels = [a.treatment for a in arms]
    if len(set(labels)) != len(labels):
        raise ValidationError(f"Study '{study_id}' repeats a treatment arm", [study_id])

    base = arms[0]
    contrasts = []
    if measure == EffectMeasure.STANDARDIZED_MEAN_DIFFERENCE:
        _arm_terms(arms, measure)
        for arm in arms[1:]:
            g, var = standardized_mean_difference(
                base.mean, base.sd, base.n, arm.mean, arm.sd, arm.n
            )
            contrasts.append(Contrast(
                study_id, base.treatment, arm.treatment, g, var,
                baseline_variance=1 / base.n if len(arms) > 2 else None,
            ))
        return contrasts

    locations, variances = _arm_terms(arms, measure)
    for k in range(1, len(arms)):
        contrasts.append(Contrast(
            study_id,
            base.treatment,
            arms[k].treatment,
            locations[k] - locations[0],
            variances[0] + variances[k],
            baseline_variance=variances[0] if len(arms) > 2 else None,
        ))
    return contrasts


def arms_to_contrasts(
    arms: Sequence[ArmData],
    measure: Union[EffectMeasure, str]
) -> List[Contrast]:
    """
    Convert arm-level data of many studies to contrasts.

    Studies keep the order of their first arm; within a study the first
    arm listed is the baseline.

    Args:
        arms: Arm records of all studies
        measure: Effect measure ("OR", "RR", "MD" or "SMD")

    Returns:
        List of Contrast
    """
    if isinstance(measure, str):
        measure = EffectMeasure.from_string(measure)
    by_study: Dict[str, List[ArmData]] = {}
    for arm in arms:
        by_study.setdefault(arm.study_id, []).append(arm)

    contrasts: List[Contrast] = []
    for study_arms in by_study.values():
        contrasts.extend(study_contrasts(study_arms, measure))
    return contrasts
