"""
Treatment ranking for nmapy.

The resampling engine draws studies with replacement, refits the network
with the heterogeneity variance held fixed, and ranks the treatments in
every iteration. Rank counts are accumulated per treatment and turned
into rank probabilities and SUCRA values.

Each iteration owns a random generator spawned from the seed, so the
distribution depends only on (seed, n_boot) and not on how iterations
are partitioned across workers.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Sequence
import logging
import warnings
import numpy as np
from scipy import stats

from nmapy.core.contrast import Contrast, TreatmentSet, validate_contrasts
from nmapy.core.exceptions import ResamplingError, ResamplingWarning
from nmapy.core.execution import CancellationToken, run_partitioned
from nmapy.core.network import StudyBlock, build_study_blocks, check_connected, is_connected
from nmapy.models.base import NetworkEstimateResult
from nmapy.models.frequentist import NetworkEstimator

logger = logging.getLogger(__name__)


def _readonly(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


@dataclass(frozen=True)
class RankingDistribution:
    """
    Empirical rank distribution over resampling iterations.

    Attributes:
        treatments: Treatment labels
        rank_counts: Counts (T x T); entry [i, r] is how often treatment i
            took rank r + 1
        n_requested: Iterations requested
        n_failed: Iterations skipped after exhausting their retries
        seed: Seed of the random source
        smaller_is_better: Ranking direction
        converged: False if any iteration's fit hit the SVD sweep cap
    """

    treatments: Tuple[str, ...]
    rank_counts: np.ndarray
    n_requested: int
    n_failed: int
    seed: int
    smaller_is_better: bool
    converged: bool = True

    @property
    def status(self) -> str:
        return "converged" if self.converged else "not_converged"

    @property
    def n_iterations(self) -> int:
        """Iterations that contributed to the counts."""
        return self.n_requested - self.n_failed

    @property
    def rank_probabilities(self) -> np.ndarray:
        """Rank-probability matrix; each row sums to 1."""
        return self.rank_counts / float(self.n_iterations)

    @property
    def sucra(self) -> np.ndarray:
        """Surface under the cumulative ranking curve, per treatment."""
        return sucra_from_probabilities(self.rank_probabilities)

    @property
    def mean_rank(self) -> np.ndarray:
        ranks = np.arange(1, len(self.treatments) + 1)
        return self.rank_probabilities @ ranks

    def probability(self, treatment: str, rank: int) -> float:
        """Probability that ``treatment`` takes ``rank`` (1 = best)."""
        i = self.treatments.index(treatment)
        return float(self.rank_probabilities[i, rank - 1])

    def best(self) -> str:
        """Treatment with the highest SUCRA."""
        return self.treatments[int(np.argmax(self.sucra))]

    def order(self) -> List[str]:
        """Treatments sorted by descending SUCRA."""
        idx = np.argsort(-self.sucra, kind="stable")
        return [self.treatments[i] for i in idx]

    def to_dataframe(self):
        """Per-treatment SUCRA, mean rank and rank probabilities as a pandas DataFrame."""
        import pandas as pd

        probs = self.rank_probabilities
        df = pd.DataFrame(
            probs,
            index=list(self.treatments),
            columns=[f"rank_{r}" for r in range(1, len(self.treatments) + 1)],
        )
        df.insert(0, "mean_rank", self.mean_rank)
        df.insert(0, "sucra", self.sucra)
        return df

    def to_dict(self) -> Dict[str, Any]:
        return {
            "treatments": list(self.treatments),
            "rank_counts": self.rank_counts.tolist(),
            "rank_probabilities": self.rank_probabilities.tolist(),
            "sucra": self.sucra.tolist(),
            "mean_rank": self.mean_rank.tolist(),
            "n_requested": self.n_requested,
            "n_failed": self.n_failed,
            "seed": self.seed,
            "smaller_is_better": self.smaller_is_better,
            "converged": self.converged,
        }


def sucra_from_probabilities(probabilities: np.ndarray) -> np.ndarray:
    """
    SUCRA from a rank-probability matrix.

    SUCRA_i = sum_{r < T} cum_i(r) / (T - 1), where cum_i(r) is the
    probability that treatment i ranks r-th or better.

    Args:
        probabilities: Rank probabilities (T x T)

    Returns:
        SUCRA per treatment, in [0, 1]
    """
    probabilities = np.asarray(probabilities, dtype=float)
    n = probabilities.shape[0]
    if n < 2:
        return np.ones(n)
    cumulative = np.cumsum(probabilities, axis=1)
    return cumulative[:, :-1].sum(axis=1) / (n - 1)


def rank_treatments(effects: np.ndarray, smaller_is_better: bool = True) -> np.ndarray:
    """
    Zero-based rank of each treatment; ties keep treatment order.

    Args:
        effects: Effect of each treatment vs the reference
        smaller_is_better: Rank low effects first

    Returns:
        Array where entry i is the rank of treatment i (0 = best)
    """
    effects = np.asarray(effects, dtype=float)
    key = effects if smaller_is_better else -effects
    order = np.argsort(key, kind="stable")
    ranks = np.empty(len(effects), dtype=np.int64)
    ranks[order] = np.arange(len(effects))
    return ranks


def p_scores(result: NetworkEstimateResult, smaller_is_better: bool = True) -> np.ndarray:
    """
    Frequentist P-scores (Rücker & Schwarzer) from a single network fit.

    P_i is the mean, over j != i, of the one-sided probability that
    treatment i is better than treatment j.

    Args:
        result: Network estimate
        smaller_is_better: Ranking direction

    Returns:
        P-score per treatment, in [0, 1]
    """
    n = result.n_treatments
    if n < 2:
        return np.ones(n)
    est = np.asarray(result.pairwise.estimates)
    se = np.asarray(result.pairwise.standard_errors)
    scores = np.zeros(n)
    for i in range(n):
        total = 0.0
        for j in range(n):
            if i == j:
                continue
            # est[i, j] is the effect of j relative to i
            diff = est[i, j] if smaller_is_better else -est[i, j]
            if se[i, j] > 0:
                total += stats.norm.cdf(diff / se[i, j])
            else:
                total += 0.5 if diff == 0 else float(diff > 0)
        scores[i] = total / (n - 1)
    return scores


@dataclass
class ResamplingEngine:
    """
    Study-level bootstrap ranking engine.

    Attributes:
        estimator: Network estimator for each iteration
        n_boot: Number of iterations
        seed: Seed of the random source
        smaller_is_better: Ranking direction
        max_retries: Redraws allowed per iteration when a resample is
            disconnected
        n_workers: Worker threads
    """

    estimator: NetworkEstimator = field(default_factory=NetworkEstimator)
    n_boot: int = 1000
    seed: int = 12345
    smaller_is_better: bool = True
    max_retries: int = 100
    n_workers: int = 1

    def __post_init__(self):
        if self.n_boot < 1:
            raise ValueError(f"n_boot must be positive, got {self.n_boot}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")
        if self.seed < 0:
            raise ValueError(f"seed must be non-negative, got {self.seed}")

    def run(
        self,
        contrasts: Sequence[Contrast],
        treatments: Optional[TreatmentSet] = None,
        tau_squared: float = 0.0,
        cancel_token: Optional[CancellationToken] = None
    ) -> RankingDistribution:
        """
        Bootstrap the network and accumulate treatment ranks.

        Args:
            contrasts: Contrast records
            treatments: Treatment set
            tau_squared: Fixed between-study variance (not re-estimated)
            cancel_token: Checked between iterations

        Returns:
            RankingDistribution

        Raises:
            ValidationError: For malformed input or a disconnected network
            AnalysisCancelled: If cancelled
            ResamplingError: If every iteration failed
        """
        validate_contrasts(contrasts, treatments)
        if treatments is None:
            treatments = TreatmentSet.from_contrasts(contrasts)
        blocks = build_study_blocks(contrasts)
        check_connected(treatments, blocks)
        tau_squared = float(tau_squared)

        children = np.random.SeedSequence(self.seed).spawn(self.n_boot)
        units = list(enumerate(children))
        n_t = len(treatments)

        def work(chunk, token):
            counts = np.zeros((n_t, n_t), dtype=np.int64)
            failed = 0
            converged = True
            for _, seq in chunk:
                if token is not None:
                    token.raise_if_cancelled()
                outcome = self.run_iteration(blocks, treatments, tau_squared, seq)
                if outcome is None:
                    failed += 1
                else:
                    ranks, ok = outcome
                    counts[np.arange(n_t), ranks] += 1
                    converged = converged and ok
            return counts, failed, converged

        logger.info(
            "Resampling %d studies for %d iterations on %d worker(s)",
            len(blocks), self.n_boot, self.n_workers,
        )
        partials = run_partitioned(units, work, self.n_workers, cancel_token)

        counts = np.zeros((n_t, n_t), dtype=np.int64)
        n_failed = 0
        converged = True
        for c, f, ok in partials:
            counts += c
            n_failed += f
            converged = converged and ok

        if n_failed:
            warnings.warn(
                f"{n_failed} of {self.n_boot} resampling iterations exceeded "
                f"{self.max_retries} retries and were skipped",
                ResamplingWarning,
                stacklevel=2,
            )
        if n_failed == self.n_boot:
            raise ResamplingError(
                "No resample produced a connected network; rankings are unavailable"
            )

        return RankingDistribution(
            treatments=treatments.labels,
            rank_counts=_readonly(counts),
            n_requested=self.n_boot,
            n_failed=n_failed,
            seed=self.seed,
            smaller_is_better=self.smaller_is_better,
            converged=converged,
        )

    def run_iteration(
        self,
        blocks: Sequence[StudyBlock],
        treatments: TreatmentSet,
        tau_squared: float,
        seed_sequence: np.random.SeedSequence
    ) -> Optional[Tuple[np.ndarray, bool]]:
        """
        One bootstrap iteration.

        Draws as many studies as there are, with replacement, keeping every
        arm of a drawn study together. Disconnected draws are redrawn up to
        ``max_retries`` times.

        Args:
            blocks: Original study blocks
            treatments: Treatment set
            tau_squared: Fixed between-study variance
            seed_sequence: Random state of this iteration

        Returns:
            Tuple of (zero-based rank per treatment, fit converged), or None
            if every draw was disconnected
        """
        rng = np.random.default_rng(seed_sequence)
        n = len(blocks)
        for _ in range(self.max_retries + 1):
            picks = rng.integers(0, n, size=n)
            sample = [
                blocks[k].relabel(f"{blocks[k].study_id}#{pos}")
                for pos, k in enumerate(picks)
            ]
            if not _covers(sample, treatments):
                continue
            fit = self.estimator.estimate_blocks(
                sample, treatments, tau_squared, diagnostics=False
            )
            return rank_treatments(fit.treatment_effects, self.smaller_is_better), fit.converged
        return None


def _covers(sample: Sequence[StudyBlock], treatments: TreatmentSet) -> bool:
    present = {t for b in sample for t in b.treatments}
    if len(present) != len(treatments):
        return False
    return is_connected(treatments, sample)
