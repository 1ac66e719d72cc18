# tests/mstep_engine/test_history.py
"""Unit tests for mstep_engine.history.HistoryStore.

Coverage:
- priming and accessors
- predict(): purity, Taylor-shift exactness on polynomials
- commit(): folding a correction into the history
- change_order(): window expansion and contraction
- reload_derivative()
"""

from __future__ import annotations

import numpy as np
import pytest

from mstep_engine.coefficients import BDFFormula
from mstep_engine.history import HistoryStore
from mstep_engine.vector_ops import NumpyVectorOps

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _primed(q_max: int = 5, h: float = 0.1) -> HistoryStore:
    """Return a history primed with y0 = [1, 2], f0 = [-1, 0.5]."""
    store = HistoryStore(NumpyVectorOps(), q_max)
    store.prime(np.array([1.0, 2.0]), np.array([-1.0, 0.5]), h)
    return store


def _snapshot(store: HistoryStore) -> list[np.ndarray]:
    return [store.entry(j).copy() for j in range(store.q_max + 1)]


# -----------------------------------------------------------------------------
# Priming
# -----------------------------------------------------------------------------


def test_prime_sets_order_one_entries() -> None:
    """zn[0] = y0, zn[1] = h*f0, higher entries zero, q = 1."""
    store = _primed(h=0.1)
    assert store.primed
    assert store.q == 1
    assert store.active_length == 2
    assert store.hscale == 0.1
    np.testing.assert_array_equal(store.y, [1.0, 2.0])
    np.testing.assert_allclose(store.entry(1), [-0.1, 0.05])
    for j in range(2, 6):
        np.testing.assert_array_equal(store.entry(j), [0.0, 0.0])
    assert store.saved_correction is None


def test_unprimed_history_rejects_access() -> None:
    """entry() and predict() need a primed history."""
    store = HistoryStore(NumpyVectorOps(), 3)
    assert not store.primed
    with pytest.raises(RuntimeError, match="primed"):
        _ = store.y
    with pytest.raises(RuntimeError, match="primed"):
        store.predict(0.1)


def test_prime_rejects_zero_step() -> None:
    """A zero step size cannot scale the history."""
    store = HistoryStore(NumpyVectorOps(), 3)
    with pytest.raises(ValueError, match="nonzero"):
        store.prime(np.zeros(1), np.zeros(1), 0.0)


# -----------------------------------------------------------------------------
# Predict
# -----------------------------------------------------------------------------


def test_predict_is_pure() -> None:
    """Repeated predictions from the same history are identical."""
    store = _primed()
    before = _snapshot(store)

    p1 = store.predict(0.05)
    p2 = store.predict(0.05)
    for a, b in zip(p1.zn, p2.zn, strict=True):
        np.testing.assert_array_equal(a, b)

    after = _snapshot(store)
    for a, b in zip(before, after, strict=True):
        np.testing.assert_array_equal(a, b)


def test_predict_order_one_is_explicit_euler() -> None:
    """At order 1 the predicted solution is y + h*f."""
    store = _primed(h=0.1)
    pred = store.predict(0.2)
    assert pred.q == 1
    assert pred.h == 0.2
    np.testing.assert_allclose(pred.y, [1.0 - 0.2, 2.0 + 0.1])
    np.testing.assert_allclose(pred.zn[1], [-0.2, 0.1])


def test_predict_is_exact_for_quadratic() -> None:
    """For y = 1 + 2t + 3t^2 the Pascal shift reproduces y(t+h) exactly."""
    ops = NumpyVectorOps()
    store = HistoryStore(ops, 5)
    hs = 0.1
    store.prime(np.array([1.0]), np.array([2.0]), hs)
    store.change_order(None, 1)
    # zn[2] = hs^2 y''/2 at t = 0
    store._zn[2] = np.array([3.0 * hs * hs])  # noqa: SLF001

    h = 0.25
    pred = store.predict(h)
    y_exact = 1.0 + 2.0 * h + 3.0 * h * h
    np.testing.assert_allclose(pred.y, [y_exact], rtol=1e-14)
    # first derivative entry scaled for h: h*y'(h)
    np.testing.assert_allclose(pred.zn[1], [h * (2.0 + 6.0 * h)], rtol=1e-14)


def test_predict_rejects_zero_step() -> None:
    """predict(0) is an error."""
    with pytest.raises(ValueError, match="nonzero"):
        _primed().predict(0.0)


# -----------------------------------------------------------------------------
# Commit
# -----------------------------------------------------------------------------


def test_commit_applies_correction_and_rescales() -> None:
    """zn[j] = pred[j] + l[j]*acor and hscale becomes the step taken."""
    store = _primed(h=0.1)
    pred = store.predict(0.2)
    acor = np.array([0.01, -0.02])
    store.commit(pred, acor, [1.0, 1.0])

    np.testing.assert_allclose(store.y, pred.y + acor)
    np.testing.assert_allclose(store.entry(1), pred.zn[1] + acor)
    assert store.hscale == 0.2
    assert store.q == 1


def _quadratic_history(h: float = 0.1) -> HistoryStore:
    """Order 2 history with a nonzero second-derivative entry."""
    store = _primed(h=h)
    store.change_order(None, 1)
    store._zn[2] = np.array([0.03, -0.01])  # noqa: SLF001
    return store


def test_predict_commit_same_step_round_trip() -> None:
    """At the same h, a zero correction commits exactly the predicted history."""
    h = 0.1
    store = _quadratic_history(h)
    pred = store.predict(h)
    store.commit(pred, np.zeros(2), [1.0, 1.5, 0.5])

    assert store.hscale == h
    assert store.q == 2
    for j in range(3):
        np.testing.assert_allclose(store.entry(j), pred.zn[j], rtol=1e-15, atol=0.0)

    # two shifts by h are one shift by 2h
    twice = store.predict(h)
    once = _quadratic_history(h).predict(2.0 * h)
    for j in range(3):
        np.testing.assert_allclose(twice.zn[j] * 2.0**j, once.zn[j], rtol=1e-13)


def test_commit_then_predict_zero_correction_round_trip() -> None:
    """Committing a zero correction and predicting back by -h restores zn[0]."""
    store = _primed(h=0.1)
    y0 = store.y.copy()
    pred = store.predict(0.1)
    store.commit(pred, np.zeros(2), [1.0, 1.0])
    back = store.predict(-0.1)
    np.testing.assert_allclose(back.y, y0, rtol=1e-14, atol=1e-15)


# -----------------------------------------------------------------------------
# Order change / reload
# -----------------------------------------------------------------------------


def test_change_order_without_saved_correction_zero_fills() -> None:
    """Increasing with no saved correction appends a zero entry."""
    store = _primed()
    store.change_order(None, 1)
    assert store.q == 2
    np.testing.assert_array_equal(store.entry(2), [0.0, 0.0])


def test_change_order_increase_uses_saved_correction() -> None:
    """The new top entry is new_entry_scale * saved correction."""
    store = _primed(h=0.1)
    store.change_order(None, 1)
    acor = np.array([1.0, -1.0])
    store.save_correction(acor)
    tau = np.full(14, 0.1)
    tau[2] = 0.2
    change = BDFFormula().order_change(2, 1, tau, store.hscale)
    assert change is not None
    store.change_order(change, 1)
    assert store.q == 3
    np.testing.assert_allclose(store.entry(3), change.new_entry_scale * acor)


def test_change_order_decrease_and_bounds() -> None:
    """Decrease shrinks the window; leaving [1, q_max] is an error."""
    store = _primed(q_max=2)
    with pytest.raises(ValueError, match="outside"):
        store.change_order(None, -1)
    store.change_order(None, 1)
    with pytest.raises(ValueError, match="outside"):
        store.change_order(None, 1)
    store.change_order(None, -1)
    assert store.q == 1
    with pytest.raises(ValueError, match="must be"):
        store.change_order(None, 2)


def test_reload_derivative_restarts_at_order_one() -> None:
    """reload_derivative sets zn[1] = h*f, q = 1 and hscale = h."""
    store = _primed()
    store.change_order(None, 1)
    store.reload_derivative(np.array([4.0, 4.0]), 0.05)
    assert store.q == 1
    assert store.hscale == 0.05
    np.testing.assert_allclose(store.entry(1), [0.2, 0.2])
