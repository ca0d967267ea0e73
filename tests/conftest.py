"""Pytest configuration and shared network fixtures for nmapy tests."""

import sys
from pathlib import Path

import pytest

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from nmapy.core.contrast import Contrast


# ============================================================================
# Network Fixtures
# ============================================================================


@pytest.fixture
def single_contrast():
    """Two treatments, one study."""
    return [Contrast("S1", "A", "B", 0.5, 0.04)]


@pytest.fixture
def triangle():
    """A-B, B-C and A-C observed once each, exactly consistent."""
    return [
        Contrast("S1", "A", "B", 0.5, 0.04),
        Contrast("S2", "B", "C", 0.3, 0.05),
        Contrast("S3", "A", "C", 0.8, 0.06),
    ]


@pytest.fixture
def triangle_replicated():
    """Triangle with a second A-B study."""
    return [
        Contrast("S1", "A", "B", 0.5, 0.04),
        Contrast("S2", "B", "C", 0.3, 0.05),
        Contrast("S3", "A", "C", 0.8, 0.06),
        Contrast("S4", "A", "B", 0.4, 0.05),
    ]


@pytest.fixture
def inconsistent_triangle():
    """Triangle whose direct A-C evidence contradicts the A-B-C path."""
    return [
        Contrast("S1", "A", "B", 0.5, 0.01),
        Contrast("S2", "A", "B", 0.5, 0.01),
        Contrast("S3", "B", "C", 0.5, 0.01),
        Contrast("S4", "B", "C", 0.5, 0.01),
        Contrast("S5", "A", "C", -1.0, 0.01),
        Contrast("S6", "A", "C", -1.0, 0.01),
    ]


@pytest.fixture
def star():
    """Placebo-anchored star with a clear ordering B < C < D."""
    return [
        Contrast("S1", "A", "B", -1.0, 0.01),
        Contrast("S2", "A", "B", -1.1, 0.01),
        Contrast("S3", "A", "C", -0.5, 0.01),
        Contrast("S4", "A", "C", -0.4, 0.01),
        Contrast("S5", "A", "D", 0.5, 0.01),
        Contrast("S6", "A", "D", 0.6, 0.01),
    ]


@pytest.fixture
def heterogeneous_pairwise():
    """Two-treatment network with widely scattered study effects."""
    effects = [0.0, 1.0, 2.0, -1.0, 0.5]
    variances = [0.01, 0.02, 0.015, 0.03, 0.02]
    return [
        Contrast(f"S{k + 1}", "A", "B", e, v)
        for k, (e, v) in enumerate(zip(effects, variances))
    ]


@pytest.fixture
def multi_arm():
    """Three-arm study with an explicit baseline variance plus two-arm studies."""
    return [
        Contrast("M1", "A", "B", 0.4, 0.05, baseline_variance=0.02),
        Contrast("M1", "A", "C", 0.9, 0.06, baseline_variance=0.02),
        Contrast("S2", "B", "C", 0.4, 0.05),
        Contrast("S3", "A", "B", 0.6, 0.04),
        Contrast("S4", "C", "D", 0.2, 0.05),
        Contrast("S5", "A", "D", 1.0, 0.08),
    ]


@pytest.fixture
def chain():
    """A-B-C-D path; the middle study is the only bridge."""
    return [
        Contrast("S1", "A", "B", 0.2, 0.04),
        Contrast("S2", "B", "C", 0.3, 0.04),
        Contrast("S3", "C", "D", 0.1, 0.04),
    ]


@pytest.fixture
def disconnected():
    """{A, B} and {C, D} never compared with each other."""
    return [
        Contrast("S1", "A", "B", 0.5, 0.04),
        Contrast("S2", "A", "B", 0.4, 0.05),
        Contrast("S3", "C", "D", 0.2, 0.04),
    ]
