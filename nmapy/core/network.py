"""
Study blocks, design matrices and network connectivity for nmapy.

Contrasts are grouped per study into blocks of basic contrasts (the
study's baseline arm against each of its other arms) together with their
within-study covariance. Blocks are the unit of weighting, resampling and
leave-one-out; the design matrix is rebuilt from them for every fit.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional, Dict, List, Tuple, Sequence, Iterable
import warnings
import numpy as np

from nmapy.core.contrast import Contrast, TreatmentSet
from nmapy.core.exceptions import ValidationError, MultiArmCovarianceWarning

# Largest allowed gap between a reported non-baseline contrast of a
# multi-arm study and the difference of its basic contrasts
MULTI_ARM_EFFECT_TOLERANCE = 0.02


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.ascontiguousarray(a, dtype=np.float64)
    a.setflags(write=False)
    return a


@dataclass(frozen=True)
class StudyBlock:
    """
    Basic contrasts of one study.

    Attributes:
        study_id: Study identifier
        baseline: Arm every other arm is compared with
        arms: Non-baseline arms, in the order their contrasts appear
        effects: Effect of each arm relative to the baseline
        covariance: Within-study covariance of ``effects``
        approximated: Whether the shared-arm covariance was approximated
    """

    study_id: str
    baseline: str
    arms: Tuple[str, ...]
    effects: np.ndarray
    covariance: np.ndarray
    approximated: bool = False

    @property
    def treatments(self) -> Tuple[str, ...]:
        """All arms, baseline first."""
        return (self.baseline,) + self.arms

    @property
    def n_arms(self) -> int:
        return len(self.arms) + 1

    @property
    def design(self) -> Tuple[str, ...]:
        """Sorted arm labels; studies with the same arms share a design."""
        return tuple(sorted(self.treatments))

    def tau_structure(self) -> np.ndarray:
        """Between-study covariance pattern: 1 on the diagonal, 1/2 off it."""
        k = len(self.arms)
        return 0.5 * (np.eye(k) + np.ones((k, k)))

    def total_covariance(self, tau_squared: float) -> np.ndarray:
        """Within-study covariance plus the random-effects component."""
        return self.covariance + tau_squared * self.tau_structure()

    def comparisons(self) -> List[Tuple[str, str]]:
        """Every pair of arms the study compares directly."""
        t = self.treatments
        return [(t[i], t[j]) for i in range(len(t)) for j in range(i + 1, len(t))]

    def contrast(self, a: str, b: str) -> Tuple[float, float]:
        """
        Effect of ``b`` relative to ``a`` within this study.

        Returns:
            Tuple of (effect, variance)
        """
        w = np.zeros(len(self.arms))
        for label, sign in ((b, 1.0), (a, -1.0)):
            if label == self.baseline:
                continue
            try:
                w[self.arms.index(label)] += sign
            except ValueError:
                raise KeyError(f"Study '{self.study_id}' has no arm '{label}'") from None
        return float(w @ self.effects), float(w @ self.covariance @ w)

    def drop_arm(self, label: str) -> StudyBlock:
        """
        Remove one arm, rebasing onto the first remaining arm if the
        baseline itself is removed.

        Args:
            label: Arm to remove

        Returns:
            New StudyBlock with one arm fewer
        """
        if self.n_arms <= 2:
            raise ValueError(f"Study '{self.study_id}' would be left with a single arm")
        if label == self.baseline:
            new_base = self.arms[0]
            rest = self.arms[1:]
            T = np.zeros((len(rest), len(self.arms)))
            for r in range(len(rest)):
                T[r, r + 1] = 1.0
                T[r, 0] = -1.0
            return StudyBlock(
                study_id=self.study_id,
                baseline=new_base,
                arms=rest,
                effects=_readonly(T @ self.effects),
                covariance=_readonly(T @ self.covariance @ T.T),
                approximated=self.approximated,
            )
        if label not in self.arms:
            raise KeyError(f"Study '{self.study_id}' has no arm '{label}'")
        keep = [i for i, t in enumerate(self.arms) if t != label]
        return StudyBlock(
            study_id=self.study_id,
            baseline=self.baseline,
            arms=tuple(self.arms[i] for i in keep),
            effects=_readonly(self.effects[keep]),
            covariance=_readonly(self.covariance[np.ix_(keep, keep)]),
            approximated=self.approximated,
        )

    def relabel(self, study_id: str) -> StudyBlock:
        """Copy of this block under another study identifier."""
        return replace(self, study_id=study_id)

    def to_contrasts(self) -> List[Contrast]:
        """Basic contrasts of this block as Contrast records."""
        shared = None
        if len(self.arms) > 1:
            shared = float(self.covariance[0, 1])
        return [
            Contrast(
                study_id=self.study_id,
                treatment_a=self.baseline,
                treatment_b=arm,
                effect_size=float(self.effects[k]),
                variance=float(self.covariance[k, k]),
                baseline_variance=shared,
            )
            for k, arm in enumerate(self.arms)
        ]


def build_study_blocks(contrasts: Sequence[Contrast]) -> List[StudyBlock]:
    """
    Group contrasts into per-study blocks of basic contrasts.

    Args:
        contrasts: Validated contrast records

    Returns:
        List of StudyBlock in order of first study appearance

    Raises:
        ValidationError: If a study reports a pair twice, or its contrasts
            do not share a common baseline arm
    """
    by_study: Dict[str, List[Contrast]] = {}
    for c in contrasts:
        by_study.setdefault(c.study_id, []).append(c)
    return [_build_block(sid, cs) for sid, cs in by_study.items()]


def _build_block(study_id: str, contrasts: List[Contrast]) -> StudyBlock:
    pairs: Dict[frozenset, Contrast] = {}
    arms: List[str] = []
    for c in contrasts:
        key = frozenset(c.comparison)
        if key in pairs:
            raise ValidationError(
                f"Study '{study_id}' reports {c.treatment_a} vs {c.treatment_b} more than once",
                [study_id, c.treatment_a, c.treatment_b]
            )
        pairs[key] = c
        for t in c.comparison:
            if t not in arms:
                arms.append(t)

    # first-mentioned arm that is compared with every other arm
    baseline = None
    for candidate in arms:
        if all(frozenset((candidate, t)) in pairs for t in arms if t != candidate):
            baseline = candidate
            break
    if baseline is None:
        raise ValidationError(
            f"Contrasts of study '{study_id}' do not share a common baseline arm",
            [study_id]
        )

    others = tuple(t for t in arms if t != baseline)
    effects = np.zeros(len(others))
    variances = np.zeros(len(others))
    for k, arm in enumerate(others):
        c = pairs[frozenset((baseline, arm))]
        effects[k] = c.effect_size if c.treatment_a == baseline else -c.effect_size
        variances[k] = c.variance

    _check_additivity(study_id, others, pairs, effects)

    cov = np.diag(variances)
    approximated = False
    if len(others) > 1:
        shared, approximated = _shared_arm_variance(study_id, baseline, others, pairs, variances)
        off = ~np.eye(len(others), dtype=bool)
        cov[off] = shared

    return StudyBlock(
        study_id=study_id,
        baseline=baseline,
        arms=others,
        effects=_readonly(effects),
        covariance=_readonly(cov),
        approximated=approximated,
    )


def _check_additivity(
    study_id: str,
    others: Tuple[str, ...],
    pairs: Dict[frozenset, Contrast],
    effects: np.ndarray
) -> None:
    """Reported non-baseline contrasts must equal the difference of basic ones."""
    for i in range(len(others)):
        for j in range(i + 1, len(others)):
            c = pairs.get(frozenset((others[i], others[j])))
            if c is None:
                continue
            implied = effects[j] - effects[i]
            if c.treatment_a != others[i]:
                implied = -implied
            if abs(c.effect_size - implied) > MULTI_ARM_EFFECT_TOLERANCE * max(1.0, abs(implied)):
                raise ValidationError(
                    f"Study '{study_id}' reports {c.treatment_a} vs {c.treatment_b} = "
                    f"{c.effect_size:g}, but its other contrasts imply {implied:g}",
                    [study_id, c.treatment_a, c.treatment_b]
                )


def _shared_arm_variance(
    study_id: str,
    baseline: str,
    others: Tuple[str, ...],
    pairs: Dict[frozenset, Contrast],
    variances: np.ndarray
) -> Tuple[float, bool]:
    """Variance of the baseline arm, shared by all basic contrasts."""
    basic = [pairs[frozenset((baseline, arm))] for arm in others]
    explicit = [c.baseline_variance for c in basic if c.baseline_variance is not None]
    upper = float(np.min(variances))

    if explicit:
        if max(explicit) - min(explicit) > 1e-12 * max(1.0, max(explicit)):
            raise ValidationError(
                f"Study '{study_id}' reports inconsistent baseline variances",
                [study_id]
            )
        return min(max(explicit[0], 0.0), upper), False

    derived = []
    for i in range(len(others)):
        for j in range(i + 1, len(others)):
            c = pairs.get(frozenset((others[i], others[j])))
            if c is not None:
                derived.append(0.5 * (variances[i] + variances[j] - c.variance))
    if derived:
        return min(max(float(np.mean(derived)), 0.0), upper), False

    warnings.warn(
        f"Study '{study_id}' has {len(others) + 1} arms but no baseline-arm variance; "
        f"approximating the shared covariance as half the smallest contrast variance",
        MultiArmCovarianceWarning,
        stacklevel=4,
    )
    return 0.5 * upper, True


# ============================================================================
# Connectivity
# ============================================================================

def connected_components(
    treatments: Iterable[str],
    comparisons: Iterable[Tuple[str, str]]
) -> List[List[str]]:
    """
    Connected components of the comparison graph.

    Args:
        treatments: Nodes, in the order components should be listed
        comparisons: Edges

    Returns:
        List of components, each a list of labels in input order
    """
    order = list(treatments)
    parent = {t: t for t in order}

    def find(t: str) -> str:
        while parent[t] != t:
            parent[t] = parent[parent[t]]
            t = parent[t]
        return t

    for a, b in comparisons:
        if a in parent and b in parent:
            ra, rb = find(a), find(b)
            if ra != rb:
                parent[rb] = ra

    groups: Dict[str, List[str]] = {}
    for t in order:
        groups.setdefault(find(t), []).append(t)
    return list(groups.values())


def block_comparisons(blocks: Sequence[StudyBlock]) -> List[Tuple[str, str]]:
    """Basic-contrast edges of a set of blocks."""
    return [(b.baseline, arm) for b in blocks for arm in b.arms]


def is_connected(treatments: TreatmentSet, blocks: Sequence[StudyBlock]) -> bool:
    """Whether every treatment is reachable from the reference."""
    if len(treatments) == 0:
        return False
    return len(connected_components(treatments, block_comparisons(blocks))) == 1


def check_connected(treatments: TreatmentSet, blocks: Sequence[StudyBlock]) -> None:
    """
    Reject a network whose comparison graph is disconnected.

    Raises:
        ValidationError: Listing the separate components
    """
    present = {t for b in blocks for t in b.treatments}
    unused = [t for t in treatments if t not in present]
    if unused:
        raise ValidationError(
            f"Treatments with no comparisons cannot be estimated: {unused}",
            unused
        )
    components = connected_components(treatments, block_comparisons(blocks))
    if len(components) > 1:
        desc = "; ".join("{" + ", ".join(c) + "}" for c in components)
        raise ValidationError(
            f"Comparison graph is disconnected into {len(components)} components: {desc}",
            [t for c in components[1:] for t in c]
        )


# ============================================================================
# Design matrix
# ============================================================================

@dataclass(frozen=True)
class NetworkData:
    """
    Stacked basic contrasts and their design for one fit.

    Attributes:
        treatments: Treatment set the design is built against
        X: Design matrix (rows x (T - 1)); the reference column is omitted
        y: Stacked basic-contrast effects
        covariance_blocks: Within-study covariance per block
        tau_blocks: Random-effects covariance pattern per block
        row_labels: (study_id, baseline, arm) per row
        block_ids: Study id per block
    """

    treatments: TreatmentSet
    X: np.ndarray
    y: np.ndarray
    covariance_blocks: Tuple[np.ndarray, ...]
    tau_blocks: Tuple[np.ndarray, ...]
    row_labels: Tuple[Tuple[str, str, str], ...]
    block_ids: Tuple[str, ...]

    @property
    def n_rows(self) -> int:
        return self.X.shape[0]

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def df(self) -> int:
        """Residual degrees of freedom of the consistency model."""
        return self.n_rows - self.n_params

    @property
    def parameter_labels(self) -> Tuple[str, ...]:
        return self.treatments.labels[1:]

    def total_covariance_blocks(self, tau_squared: float) -> List[np.ndarray]:
        return [c + tau_squared * k for c, k in zip(self.covariance_blocks, self.tau_blocks)]


def assemble(blocks: Sequence[StudyBlock], treatments: TreatmentSet) -> NetworkData:
    """
    Build the design matrix for a set of blocks.

    Each basic contrast (baseline -> arm) maps to
    ``d[arm] - d[baseline]`` with the reference parameter fixed at zero.

    Args:
        blocks: Study blocks
        treatments: Treatment set defining the parameter order

    Returns:
        NetworkData
    """
    n_rows = sum(len(b.arms) for b in blocks)
    n_params = len(treatments) - 1
    X = np.zeros((n_rows, n_params), dtype=np.float64)
    y = np.zeros(n_rows, dtype=np.float64)
    labels = []

    row = 0
    for b in blocks:
        base_idx = treatments.index(b.baseline)
        for k, arm in enumerate(b.arms):
            arm_idx = treatments.index(arm)
            if arm_idx > 0:
                X[row, arm_idx - 1] += 1.0
            if base_idx > 0:
                X[row, base_idx - 1] -= 1.0
            y[row] = b.effects[k]
            labels.append((b.study_id, b.baseline, arm))
            row += 1

    return NetworkData(
        treatments=treatments,
        X=_readonly(X),
        y=_readonly(y),
        covariance_blocks=tuple(b.covariance for b in blocks),
        tau_blocks=tuple(b.tau_structure() for b in blocks),
        row_labels=tuple(labels),
        block_ids=tuple(b.study_id for b in blocks),
    )
