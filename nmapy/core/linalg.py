"""
Linear algebra kernel for nmapy.

This module provides the dense matrix primitives used by the estimators:
a one-sided Jacobi singular value decomposition, the Moore-Penrose
pseudoinverse built on it, and a weighted least-squares solve.

All matrices are contiguous float64 numpy buffers. Every operation
allocates its own working arrays, so a kernel instance can be shared
between threads.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple
import math
import numpy as np

from nmapy.core.exceptions import NumericalSingularity


def as_matrix(a) -> np.ndarray:
    """Return ``a`` as a contiguous 2-D float64 array."""
    m = np.ascontiguousarray(a, dtype=np.float64)
    if m.ndim == 1:
        m = m.reshape(-1, 1)
    if m.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got {m.ndim} dimensions")
    return m


def _readonly(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


@dataclass(frozen=True)
class SVDResult:
    """
    Thin singular value decomposition ``A = U diag(s) Vt``.

    Attributes:
        u: Left singular vectors (m x k)
        s: Singular values, descending (k,)
        vt: Right singular vectors, transposed (k x n)
        converged: Whether the off-diagonal tolerance was met
        n_sweeps: Number of Jacobi sweeps performed
        off_diagonal: Largest normalized column inner product at exit
    """

    u: np.ndarray
    s: np.ndarray
    vt: np.ndarray
    converged: bool
    n_sweeps: int
    off_diagonal: float

    @property
    def status(self) -> str:
        return "converged" if self.converged else "not_converged"

    def reconstruct(self) -> np.ndarray:
        """Multiply the factors back together."""
        return (self.u * self.s) @ self.vt


@dataclass(frozen=True)
class PseudoInverse:
    """
    Moore-Penrose pseudoinverse with its rank decision.

    Attributes:
        matrix: The pseudoinverse (n x m)
        rank: Number of singular values kept
        singular_values: All singular values, descending
        cutoff: Absolute threshold used for truncation
        converged: Convergence flag of the underlying SVD
    """

    matrix: np.ndarray
    rank: int
    singular_values: np.ndarray
    cutoff: float
    converged: bool


@dataclass(frozen=True)
class WeightedSolution:
    """
    Solution of a weighted least-squares problem.

    Attributes:
        coefficients: Estimated parameters
        covariance: Parameter covariance ``(X'WX)^+``
        fitted: ``X @ coefficients``
        residuals: ``y - fitted``
        q_statistic: Weighted residual sum of squares ``r'Wr``
        rank: Numerical rank of ``X'WX``
        converged: Convergence flag of the underlying SVD
    """

    coefficients: np.ndarray
    covariance: np.ndarray
    fitted: np.ndarray
    residuals: np.ndarray
    q_statistic: float
    rank: int
    converged: bool


@dataclass(frozen=True)
class LinearAlgebraKernel:
    """
    Deterministic dense linear algebra for the estimators.

    Attributes:
        svd_tolerance: Jacobi convergence tolerance. A sweep converges when
            every pair of columns satisfies |a_i.a_j| <= tol * |a_i| |a_j|.
        max_sweeps: Maximum number of Jacobi sweeps
        rank_tolerance: Singular values at or below
            ``rank_tolerance * max(s)`` are treated as zero
    """

    svd_tolerance: float = 1e-12
    max_sweeps: int = 100
    rank_tolerance: float = 1e-10

    def __post_init__(self):
        if self.svd_tolerance <= 0:
            raise ValueError(f"svd_tolerance must be positive, got {self.svd_tolerance}")
        if self.max_sweeps < 1:
            raise ValueError(f"max_sweeps must be >= 1, got {self.max_sweeps}")
        if self.rank_tolerance <= 0:
            raise ValueError(f"rank_tolerance must be positive, got {self.rank_tolerance}")

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    @staticmethod
    def allocate(rows: int, cols: int) -> np.ndarray:
        """Zero-filled contiguous matrix."""
        return np.zeros((rows, cols), dtype=np.float64)

    @staticmethod
    def multiply(a, b) -> np.ndarray:
        """Matrix product."""
        return np.ascontiguousarray(np.asarray(a, dtype=np.float64) @ np.asarray(b, dtype=np.float64))

    @staticmethod
    def transpose(a) -> np.ndarray:
        """Contiguous copy of the transpose."""
        return np.ascontiguousarray(as_matrix(a).T)

    @staticmethod
    def block_diagonal(blocks: Sequence[np.ndarray]) -> np.ndarray:
        """Assemble square blocks into one block-diagonal matrix."""
        n = sum(b.shape[0] for b in blocks)
        out = np.zeros((n, n), dtype=np.float64)
        pos = 0
        for b in blocks:
            k = b.shape[0]
            out[pos:pos + k, pos:pos + k] = b
            pos += k
        return out

    # ------------------------------------------------------------------
    # Decompositions
    # ------------------------------------------------------------------

    def svd(self, a) -> SVDResult:
        """
        Singular value decomposition by one-sided Jacobi rotations.

        Columns of the working matrix are rotated pairwise until they are
        mutually orthogonal; the column norms are then the singular values.
        Wide matrices are decomposed through their transpose.

        Args:
            a: Matrix to decompose

        Returns:
            SVDResult (tagged not converged if the sweep cap was reached)
        """
        A = as_matrix(a)
        transposed = A.shape[0] < A.shape[1]
        work = A.T.copy() if transposed else A.copy()
        m, n = work.shape
        V = np.eye(n, dtype=np.float64)
        tol = self.svd_tolerance

        converged = n < 2
        n_sweeps = 0
        off = 0.0

        if not converged:
            for n_sweeps in range(1, self.max_sweeps + 1):
                off = 0.0
                for i in range(n - 1):
                    for j in range(i + 1, n):
                        ci = work[:, i]
                        cj = work[:, j]
                        alpha = float(ci @ ci)
                        beta = float(cj @ cj)
                        gamma = float(ci @ cj)
                        if alpha == 0.0 or beta == 0.0 or gamma == 0.0:
                            continue
                        ratio = abs(gamma) / math.sqrt(alpha * beta)
                        if ratio > off:
                            off = ratio
                        if ratio <= tol:
                            continue
                        zeta = (beta - alpha) / (2.0 * gamma)
                        t = math.copysign(1.0, zeta) / (abs(zeta) + math.sqrt(1.0 + zeta * zeta))
                        c = 1.0 / math.sqrt(1.0 + t * t)
                        s = c * t
                        self._rotate(work, i, j, c, s)
                        self._rotate(V, i, j, c, s)
                if off <= tol:
                    converged = True
                    break

        sigma = np.sqrt(np.einsum("ij,ij->j", work, work))
        order = np.argsort(-sigma, kind="stable")
        sigma = sigma[order]
        work = work[:, order]
        V = V[:, order]

        U = np.zeros_like(work)
        nonzero = sigma > 0
        U[:, nonzero] = work[:, nonzero] / sigma[nonzero]

        if transposed:
            u, vt = V, U.T
        else:
            u, vt = U, V.T

        return SVDResult(
            u=_readonly(np.ascontiguousarray(u)),
            s=_readonly(np.ascontiguousarray(sigma)),
            vt=_readonly(np.ascontiguousarray(vt)),
            converged=converged,
            n_sweeps=n_sweeps,
            off_diagonal=off,
        )

    @staticmethod
    def _rotate(M: np.ndarray, i: int, j: int, c: float, s: float) -> None:
        mi = M[:, i].copy()
        mj = M[:, j]
        M[:, i] = c * mi - s * mj
        M[:, j] = s * mi + c * mj

    def pinv(
        self,
        a,
        expected_rank: Optional[int] = None,
        labels: Optional[Sequence[str]] = None
    ) -> PseudoInverse:
        """
        Moore-Penrose pseudoinverse with relative rank truncation.

        Args:
            a: Matrix to invert
            expected_rank: Minimum numerical rank the caller requires
            labels: Names of the matrix's parameters, for error reporting

        Returns:
            PseudoInverse

        Raises:
            NumericalSingularity: If fewer than ``expected_rank`` singular
                values survive truncation
        """
        A = as_matrix(a)
        dec = self.svd(A)
        s_max = float(dec.s[0]) if dec.s.size else 0.0
        cutoff = self.rank_tolerance * s_max
        keep = dec.s > cutoff if s_max > 0 else np.zeros(dec.s.shape, dtype=bool)
        rank = int(np.count_nonzero(keep))

        if expected_rank is not None and rank < expected_rank:
            raise NumericalSingularity(
                f"Matrix has numerical rank {rank} but rank {expected_rank} is required "
                f"(relative tolerance {self.rank_tolerance:g})",
                components=labels,
                rank=rank,
                expected_rank=expected_rank,
            )

        inv_s = np.zeros_like(dec.s)
        inv_s[keep] = 1.0 / dec.s[keep]
        matrix = (dec.vt.T * inv_s) @ dec.u.T
        return PseudoInverse(
            matrix=_readonly(np.ascontiguousarray(matrix)),
            rank=rank,
            singular_values=dec.s,
            cutoff=cutoff,
            converged=dec.converged,
        )

    # ------------------------------------------------------------------
    # Solvers
    # ------------------------------------------------------------------

    def solve_weighted(
        self,
        X,
        y,
        W,
        expected_rank: Optional[int] = None,
        labels: Optional[Sequence[str]] = None
    ) -> WeightedSolution:
        """
        Weighted least squares: minimize ``(y - Xb)' W (y - Xb)``.

        Args:
            X: Design matrix (n x p)
            y: Response vector (n,)
            W: Weight matrix (n x n), symmetric positive semi-definite
            expected_rank: Required rank of ``X'WX``
            labels: Parameter names, for error reporting

        Returns:
            WeightedSolution
        """
        X = as_matrix(X)
        W = as_matrix(W)
        y = np.ascontiguousarray(y, dtype=np.float64).ravel()

        XtW = X.T @ W
        normal = XtW @ X
        # symmetrize against round-off
        normal = 0.5 * (normal + normal.T)
        inv = self.pinv(normal, expected_rank=expected_rank, labels=labels)

        coef = inv.matrix @ (XtW @ y)
        fitted = X @ coef
        resid = y - fitted
        q = float(resid @ W @ resid)

        return WeightedSolution(
            coefficients=_readonly(coef),
            covariance=inv.matrix,
            fitted=_readonly(fitted),
            residuals=_readonly(resid),
            q_statistic=q,
            rank=inv.rank,
            converged=inv.converged,
        )

    def inverse_blocks(
        self,
        blocks: Sequence[np.ndarray],
        labels: Optional[Sequence[str]] = None
    ) -> Tuple[np.ndarray, bool]:
        """
        Invert each square block and assemble the block-diagonal inverse.

        Args:
            blocks: Full-rank square matrices
            labels: One label per block, for error reporting

        Returns:
            Tuple of (block-diagonal inverse, all SVDs converged)
        """
        inverses = []
        converged = True
        for k, b in enumerate(blocks):
            if b.shape == (1, 1):
                if not b[0, 0] > 0:
                    raise NumericalSingularity(
                        "Non-positive variance in weight block",
                        components=[labels[k]] if labels else None,
                        rank=0,
                        expected_rank=1,
                    )
                inverses.append(np.array([[1.0 / b[0, 0]]]))
                continue
            inv = self.pinv(
                b,
                expected_rank=b.shape[0],
                labels=[labels[k]] if labels else None,
            )
            converged = converged and inv.converged
            inverses.append(np.asarray(inv.matrix))
        return self.block_diagonal(inverses), converged
