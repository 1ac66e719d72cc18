# tests/mstep_engine/test_error_estimator.py
"""Unit tests for mstep_engine.error_estimator.ErrorEstimator."""

from __future__ import annotations

import math

import numpy as np
import pytest

from mstep_engine.error_estimator import ErrorEstimator
from mstep_engine.vector_ops import NumpyVectorOps


def test_estimate_is_weighted_norm_times_coefficient(ops: NumpyVectorOps) -> None:
    """dsm = ||acor||_wrms * tq[2]."""
    est = ErrorEstimator(ops)
    acor = np.array([3.0, 4.0])
    w = np.array([2.0, 2.0])
    expected = math.sqrt((36.0 + 64.0) / 2.0) * 0.25
    assert est.estimate(acor, 0.25, w) == pytest.approx(expected)


def test_acceptance_boundary_is_inclusive(ops: NumpyVectorOps) -> None:
    """dsm == 1 accepts; the next representable value rejects."""
    est = ErrorEstimator(ops)
    ones = np.ones(1)

    at_one = est.estimate(np.array([1.0]), 1.0, ones)
    assert at_one == 1.0
    assert est.accepts(at_one)

    above = est.estimate(np.array([np.nextafter(1.0, 2.0)]), 1.0, ones)
    assert above > 1.0
    assert not est.accepts(above)


def test_non_finite_norm_maps_to_infinity() -> None:
    """A NaN or infinite correction norm never passes the error test."""
    assert ErrorEstimator.estimate_from_norm(math.nan, 0.5) == math.inf
    assert ErrorEstimator.estimate_from_norm(math.inf, 0.5) == math.inf
    assert not ErrorEstimator.accepts(math.inf)


def test_negative_coefficient_rejected() -> None:
    """Error coefficients are nonnegative by construction."""
    with pytest.raises(ValueError, match="nonnegative"):
        ErrorEstimator.estimate_from_norm(1.0, -0.1)


def test_local_errors_scale_correction(ops: NumpyVectorOps) -> None:
    """The local error vector is tq[2] * acor."""
    est = ErrorEstimator(ops)
    np.testing.assert_allclose(est.local_errors(np.array([2.0, -4.0]), 0.5), [1.0, -2.0])
