"""Unit tests for the linear algebra kernel."""

import pytest
import numpy as np

from nmapy.core.exceptions import NumericalSingularity
from nmapy.core.linalg import LinearAlgebraKernel


class TestKernelConfig:
    """Tests for LinearAlgebraKernel construction."""

    def test_default_values(self):
        """Test default numerical controls."""
        kernel = LinearAlgebraKernel()
        assert kernel.svd_tolerance == 1e-12
        assert kernel.max_sweeps == 100
        assert kernel.rank_tolerance == 1e-10

    def test_invalid_values(self):
        """Test that non-positive controls are rejected."""
        with pytest.raises(ValueError):
            LinearAlgebraKernel(svd_tolerance=0.0)
        with pytest.raises(ValueError):
            LinearAlgebraKernel(max_sweeps=0)
        with pytest.raises(ValueError):
            LinearAlgebraKernel(rank_tolerance=-1.0)


class TestSVD:
    """Tests for the one-sided Jacobi SVD."""

    def test_reconstructs_matrix(self):
        """Test U diag(s) Vt reproduces the input."""
        rng = np.random.default_rng(0)
        a = rng.normal(size=(6, 4))
        dec = LinearAlgebraKernel().svd(a)
        assert dec.converged
        assert dec.status == "converged"
        np.testing.assert_allclose(dec.reconstruct(), a, atol=1e-10)

    def test_singular_values_match_numpy(self):
        """Test singular values agree with LAPACK and are descending."""
        rng = np.random.default_rng(1)
        a = rng.normal(size=(5, 5))
        dec = LinearAlgebraKernel().svd(a)
        expected = np.linalg.svd(a, compute_uv=False)
        np.testing.assert_allclose(dec.s, expected, rtol=1e-10)
        assert np.all(np.diff(dec.s) <= 0)

    def test_sweep_cap_flags_not_converged(self):
        """Test a single sweep on a non-orthogonal matrix is not converged."""
        a = np.array([
            [4.0, 1.0, 2.0],
            [1.0, 3.0, 0.5],
            [2.0, 0.5, 5.0],
            [1.0, 2.0, 1.0],
        ])
        dec = LinearAlgebraKernel(max_sweeps=1).svd(a)
        assert not dec.converged
        assert dec.status == "not_converged"
        assert dec.n_sweeps == 1

    def test_deterministic(self):
        """Test identical input gives identical output."""
        a = np.array([[2.0, 1.0], [1.0, 3.0], [0.5, 0.5]])
        kernel = LinearAlgebraKernel()
        first = kernel.svd(a)
        second = kernel.svd(a)
        assert np.array_equal(first.s, second.s)
        assert np.array_equal(first.u, second.u)


class TestPseudoInverse:
    """Tests for the truncated pseudoinverse."""

    def test_full_rank_inverse(self):
        """Test the pseudoinverse of a full-rank matrix is its inverse."""
        a = np.array([[4.0, 1.0], [1.0, 3.0]])
        pinv = LinearAlgebraKernel().pinv(a, expected_rank=2)
        assert pinv.rank == 2
        np.testing.assert_allclose(pinv.matrix, np.linalg.inv(a), atol=1e-12)

    def test_rank_deficient(self):
        """Test rank truncation on a singular matrix."""
        a = np.array([[1.0, 2.0], [2.0, 4.0]])
        pinv = LinearAlgebraKernel().pinv(a)
        assert pinv.rank == 1
        np.testing.assert_allclose(pinv.matrix, np.linalg.pinv(a), atol=1e-10)

    def test_singularity_reported(self):
        """Test insufficient rank raises with the affected labels."""
        a = np.array([[1.0, 2.0], [2.0, 4.0]])
        with pytest.raises(NumericalSingularity) as exc_info:
            LinearAlgebraKernel().pinv(a, expected_rank=2, labels=["B", "C"])
        assert exc_info.value.rank == 1
        assert exc_info.value.expected_rank == 2
        assert isinstance(exc_info.value, ArithmeticError)


class TestWeightedSolve:
    """Tests for weighted least squares."""

    def test_matches_normal_equations(self):
        """Test solution equals (X'WX)^-1 X'Wy."""
        X = np.array([[1.0, 0.0], [0.0, 1.0], [-1.0, 1.0]])
        y = np.array([0.5, 0.8, 0.3])
        W = np.diag([1 / 0.04, 1 / 0.06, 1 / 0.05])
        sol = LinearAlgebraKernel().solve_weighted(X, y, W, expected_rank=2)
        expected = np.linalg.solve(X.T @ W @ X, X.T @ W @ y)
        np.testing.assert_allclose(sol.coefficients, expected, atol=1e-12)
        np.testing.assert_allclose(sol.residuals, y - X @ expected, atol=1e-12)
        assert sol.q_statistic >= 0
        assert sol.rank == 2

    def test_inverse_blocks(self):
        """Test block-diagonal inverse of mixed block sizes."""
        blocks = [np.array([[0.04]]), np.array([[0.05, 0.02], [0.02, 0.06]])]
        inv, converged = LinearAlgebraKernel().inverse_blocks(blocks, labels=["S1", "S2"])
        assert converged
        assert inv.shape == (3, 3)
        assert inv[0, 0] == pytest.approx(25.0)
        np.testing.assert_allclose(inv[1:, 1:], np.linalg.inv(blocks[1]), atol=1e-10)
        assert inv[0, 1] == 0.0

    def test_inverse_blocks_nonpositive_variance(self):
        """Test a zero scalar block is reported as singular."""
        with pytest.raises(NumericalSingularity):
            LinearAlgebraKernel().inverse_blocks([np.array([[0.0]])], labels=["S1"])
