"""
Contrast and TreatmentSet classes for nmapy.

A contrast is one reported comparison between two arms of a study, on
the analysis (log or difference) scale. The treatment set is the ordered
collection of all treatment labels; its first member is the reference
against which the network is parameterized.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple, Iterable, Iterator, Sequence
import math

from nmapy.core.exceptions import ValidationError


@dataclass(frozen=True)
class Contrast:
    """
    One reported pairwise comparison within a study.

    The effect is that of ``treatment_b`` relative to ``treatment_a``.

    Attributes:
        study_id: Identifier of the study reporting the comparison
        treatment_a: Comparator arm
        treatment_b: Active arm
        effect_size: Relative effect (log scale for ratio measures)
        variance: Sampling variance of the effect
        baseline_variance: Variance of the shared baseline arm, for
            multi-arm studies whose contrasts share ``treatment_a``
    """

    study_id: str
    treatment_a: str
    treatment_b: str
    effect_size: float
    variance: float
    baseline_variance: Optional[float] = None

    def __post_init__(self):
        ident = [str(self.study_id)]
        if self.study_id is None or str(self.study_id).strip() == "":
            raise ValidationError("Contrast is missing a study_id", ident)
        object.__setattr__(self, "study_id", str(self.study_id))

        for name in ("treatment_a", "treatment_b"):
            label = getattr(self, name)
            if label is None or str(label).strip() == "":
                raise ValidationError(f"Study '{self.study_id}': {name} is missing", ident)
            object.__setattr__(self, name, str(label))
        if self.treatment_a == self.treatment_b:
            raise ValidationError(
                f"Study '{self.study_id}': contrast compares '{self.treatment_a}' with itself",
                ident + [self.treatment_a]
            )

        effect = _as_float(self.effect_size)
        if effect is None or not math.isfinite(effect):
            raise ValidationError(
                f"Study '{self.study_id}': missing or non-finite effect size "
                f"for {self.treatment_a} vs {self.treatment_b}",
                ident
            )
        object.__setattr__(self, "effect_size", effect)

        variance = _as_float(self.variance)
        if variance is None or not math.isfinite(variance) or variance <= 0:
            raise ValidationError(
                f"Study '{self.study_id}': variance must be positive, got {self.variance!r}",
                ident
            )
        object.__setattr__(self, "variance", variance)

        if self.baseline_variance is not None:
            bv = _as_float(self.baseline_variance)
            if bv is None or not math.isfinite(bv) or bv < 0:
                raise ValidationError(
                    f"Study '{self.study_id}': baseline_variance must be non-negative, "
                    f"got {self.baseline_variance!r}",
                    ident
                )
            object.__setattr__(self, "baseline_variance", bv)

    @property
    def se(self) -> float:
        """Standard error of the effect."""
        return math.sqrt(self.variance)

    @property
    def comparison(self) -> Tuple[str, str]:
        """The (treatment_a, treatment_b) pair."""
        return (self.treatment_a, self.treatment_b)

    def reversed(self) -> Contrast:
        """Same comparison expressed as treatment_a relative to treatment_b."""
        return Contrast(
            study_id=self.study_id,
            treatment_a=self.treatment_b,
            treatment_b=self.treatment_a,
            effect_size=-self.effect_size,
            variance=self.variance,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "study_id": self.study_id,
            "treatment_a": self.treatment_a,
            "treatment_b": self.treatment_b,
            "effect_size": self.effect_size,
            "variance": self.variance,
            "baseline_variance": self.baseline_variance,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Contrast:
        """Create Contrast from dictionary."""
        return cls(
            study_id=data.get("study_id"),
            treatment_a=data.get("treatment_a"),
            treatment_b=data.get("treatment_b"),
            effect_size=data.get("effect_size"),
            variance=data.get("variance"),
            baseline_variance=data.get("baseline_variance"),
        )


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class TreatmentSet:
    """
    Ordered, immutable set of treatment labels.

    Index 0 is the reference treatment whose parameter is fixed at zero.
    """

    __slots__ = ("_labels", "_index")

    def __init__(self, labels: Iterable[str]):
        labels = tuple(str(t) for t in labels)
        if len(set(labels)) != len(labels):
            dupes = sorted({t for t in labels if labels.count(t) > 1})
            raise ValidationError(f"Duplicate treatment labels: {dupes}", dupes)
        self._labels = labels
        self._index = {t: i for i, t in enumerate(labels)}

    @classmethod
    def from_contrasts(
        cls,
        contrasts: Sequence[Contrast],
        reference: Optional[str] = None
    ) -> TreatmentSet:
        """
        Collect treatments in order of first appearance.

        Args:
            contrasts: Contrast records
            reference: Optional label to move to index 0

        Returns:
            TreatmentSet
        """
        labels: List[str] = []
        seen = set()
        for c in contrasts:
            for t in (c.treatment_a, c.treatment_b):
                if t not in seen:
                    seen.add(t)
                    labels.append(t)
        if reference is not None:
            reference = str(reference)
            if reference not in seen:
                raise ValidationError(
                    f"Reference treatment '{reference}' does not appear in any contrast",
                    [reference]
                )
            labels.remove(reference)
            labels.insert(0, reference)
        return cls(labels)

    @property
    def labels(self) -> Tuple[str, ...]:
        """Treatment labels in parameter order."""
        return self._labels

    @property
    def reference(self) -> str:
        """The reference treatment (index 0)."""
        return self._labels[0]

    def index(self, label: str) -> int:
        """Position of a treatment."""
        try:
            return self._index[label]
        except KeyError:
            raise KeyError(f"Treatment '{label}' not in treatment set") from None

    def restrict(self, keep: Iterable[str]) -> TreatmentSet:
        """Subset preserving the current order."""
        keep = set(keep)
        return TreatmentSet(t for t in self._labels if t in keep)

    def pairs(self) -> Iterator[Tuple[str, str]]:
        """All unordered pairs (i < j) in parameter order."""
        n = len(self._labels)
        for i in range(n):
            for j in range(i + 1, n):
                yield self._labels[i], self._labels[j]

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self) -> Iterator[str]:
        return iter(self._labels)

    def __contains__(self, label: object) -> bool:
        return label in self._index

    def __getitem__(self, i: int) -> str:
        return self._labels[i]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, TreatmentSet):
            return self._labels == other._labels
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._labels)

    def __repr__(self) -> str:
        return f"TreatmentSet({list(self._labels)!r})"


def validate_contrasts(
    contrasts: Sequence[Contrast],
    treatments: Optional[TreatmentSet] = None
) -> None:
    """
    Check that contrasts are well-formed and reference known treatments.

    Args:
        contrasts: Contrast records
        treatments: Treatment set the contrasts must draw from

    Raises:
        ValidationError: On the first offending contrast
    """
    if len(contrasts) == 0:
        raise ValidationError("No contrasts supplied")
    for c in contrasts:
        if not isinstance(c, Contrast):
            raise ValidationError(f"Expected Contrast, got {type(c).__name__}")
        if treatments is not None:
            for t in (c.treatment_a, c.treatment_b):
                if t not in treatments:
                    raise ValidationError(
                        f"Study '{c.study_id}' references unknown treatment '{t}'",
                        [c.study_id, t]
                    )


def study_ids(contrasts: Sequence[Contrast]) -> List[str]:
    """Study identifiers in order of first appearance."""
    seen: Dict[str, None] = {}
    for c in contrasts:
        seen.setdefault(c.study_id, None)
    return list(seen)
