# tests/mstep_engine/test_step_controller.py
"""Behavioral tests for mstep_engine.step_controller.

The controller is exercised through Integrator.attempt_step so that every
collaborator is the real one; the tests inspect the attempt records and the
shared IntegratorState.
"""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
import pytest

from mstep_engine.coefficients import BDFFormula
from mstep_engine.config import IntegratorConfig, StepSizeConfig, ToleranceConfig
from mstep_engine.error_weights import ErrorWeights
from mstep_engine.errors import (
    IllegalInputError,
    RecoverableCallbackError,
    ResultCode,
    UserCallbackFatalError,
    VectorOpFailureError,
)
from mstep_engine.integrator import Integrator
from mstep_engine.step_controller import (
    AttemptOutcome,
    IntegratorStatus,
    StepAttemptRecord,
)

RHS = Callable[[float, np.ndarray], np.ndarray]

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _attempts(integ: Integrator, t_end: float, max_attempts: int = 5000) -> list[StepAttemptRecord]:
    """Run attempts until t >= t_end and return every record."""
    records: list[StepAttemptRecord] = []
    while integ.t < t_end and len(records) < max_attempts:
        record = integ.attempt_step(t_end)
        records.append(record)
        assert record.outcome is not AttemptOutcome.FATAL
    return records


# -----------------------------------------------------------------------------
# Step / order sequence invariants
# -----------------------------------------------------------------------------


def test_order_changes_by_at_most_one_and_time_increases(
    harmonic: RHS, config_factory: Callable[..., IntegratorConfig]
) -> None:
    """Consecutive attempts differ in order by <= 1; accepted t strictly increases."""
    integ = Integrator(harmonic, np.array([1.0, 0.0]), config=config_factory(rtol=1e-7, atol=1e-9))
    records = _attempts(integ, 6.0)

    orders = [r.q for r in records]
    assert all(abs(b - a) <= 1 for a, b in zip(orders, orders[1:], strict=False))
    assert max(orders) >= 2
    assert all(1 <= q <= 5 for q in orders)

    accepted_t = [r.t + r.h for r in records if r.outcome is AttemptOutcome.ACCEPTED]
    assert all(b > a for a, b in zip(accepted_t, accepted_t[1:], strict=False))
    assert integ.stats.nst == len(accepted_t)


def test_first_step_keeps_order_one(decay: RHS) -> None:
    """No order change is considered before q+1 steps at the current order."""
    cfg = IntegratorConfig(step=StepSizeConfig(h_init=1e-3))
    integ = Integrator(decay, np.array([1.0]), config=cfg)
    record = integ.step()
    assert record.q == 1
    assert integ.state.q == 1
    assert integ.state.nst == 1
    # growth after the first step is bounded by eta_max_first
    assert abs(integ.state.h) <= 1.0e4 * 1e-3


def test_h_max_bounds_every_attempt(decay: RHS) -> None:
    """No attempted step exceeds h_max in magnitude."""
    cfg = IntegratorConfig(step=StepSizeConfig(h_init=1e-3, h_max=0.05))
    integ = Integrator(decay, np.array([1.0]), config=cfg)
    records = _attempts(integ, 1.0)
    assert all(abs(r.h) <= 0.05 for r in records)


def test_stop_time_is_never_passed(decay: RHS) -> None:
    """Accepted steps end at or before tstop and the last one lands on it."""
    integ = Integrator(decay, np.array([1.0]))
    result = integ.solve(10.0, tstop=0.3)
    assert result.t == 0.3
    assert integ.t == 0.3
    assert integ.status is IntegratorStatus.STOPPED


def test_stop_time_behind_current_time_does_not_bound_steps(decay: RHS) -> None:
    """After landing on tstop, further single steps move past it."""
    integ = Integrator(decay, np.array([1.0]))
    integ.solve(0.5, tstop=0.5)
    record = integ.step()
    assert record.h > 0.0
    assert integ.t > 0.5
    assert integ.status is IntegratorStatus.STEPPING


# -----------------------------------------------------------------------------
# Next step selection
# -----------------------------------------------------------------------------


def test_select_next_step_threshold_and_growth(decay: RHS) -> None:
    """Ratios under the threshold keep h; small errors grow h up to eta_max."""
    cfg = IntegratorConfig(step=StepSizeConfig(h_init=0.01))
    integ = Integrator(decay, np.array([1.0]), config=cfg)
    integ.step()
    st = integ.state
    h_prev = st.h_prev
    coeffs = BDFFormula().coefficients(1, h_prev, st.tau, qwait=2, nls_coef=0.1)
    acor = np.zeros(1)

    st.qwait = 2
    st.eta_max = 10.0
    h_next, q_next = integ.controller.select_next_step_order(1.0, coeffs, acor)
    assert h_next == h_prev
    assert q_next == 1

    st.qwait = 2
    st.eta_max = 10.0
    h_next, _ = integ.controller.select_next_step_order(1e-12, coeffs, acor)
    assert h_next == pytest.approx(10.0 * h_prev)

    st.qwait = 2
    st.eta_max = 1.0
    h_next, _ = integ.controller.select_next_step_order(1e-12, coeffs, acor)
    assert h_next == h_prev


def test_no_growth_on_step_after_rejection(decay: RHS) -> None:
    """The first accepted step after a rejection keeps its step size."""
    calls = {"n": 0}

    def flaky(t: float, y: np.ndarray) -> np.ndarray:
        calls["n"] += 1
        if calls["n"] == 3:
            raise RecoverableCallbackError("transient")
        return decay(t, y)

    cfg = IntegratorConfig(
        tolerances=ToleranceConfig(rtol=1e-6, atol=1e-10),
        step=StepSizeConfig(h_init=1e-4),
    )
    integ = Integrator(flaky, np.array([1.0]), config=cfg, jac=lambda t, y: np.array([[-1.0]]))
    records = _attempts(integ, 1.0e-3)

    outcomes = [r.outcome for r in records]
    assert AttemptOutcome.REJECTED_CONVERGENCE in outcomes
    idx = outcomes.index(AttemptOutcome.REJECTED_CONVERGENCE)
    nxt = records[idx + 1]
    assert nxt.outcome is AttemptOutcome.ACCEPTED
    assert nxt.h == pytest.approx(0.25 * records[idx].h)
    assert records[idx + 2].h == nxt.h


# -----------------------------------------------------------------------------
# Fatal handling
# -----------------------------------------------------------------------------


def test_fatal_attempt_moves_to_failed_state(decay: RHS) -> None:
    """A fatal callback error yields a FATAL record and a sticky FAILED state."""

    def broken(t: float, y: np.ndarray) -> np.ndarray:
        if t > 0.0:
            raise ZeroDivisionError("boom")
        return decay(t, y)

    cfg = IntegratorConfig(step=StepSizeConfig(h_init=0.01))
    integ = Integrator(broken, np.array([1.0]), config=cfg, jac=lambda t, y: np.array([[-1.0]]))

    record = integ.attempt_step()
    assert record.outcome is AttemptOutcome.FATAL
    assert isinstance(record.error, UserCallbackFatalError)
    assert record.error.context is not None
    assert integ.status is IntegratorStatus.FAILED

    again = integ.attempt_step()
    assert again.outcome is AttemptOutcome.FATAL
    assert again.error is record.error
    with pytest.raises(UserCallbackFatalError):
        integ.solve(1.0)


def test_invalid_weights_after_acceptance_is_a_vector_op_failure(
    decay: RHS, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Weights that cannot be rebuilt from the accepted solution end the run."""
    cfg = IntegratorConfig(step=StepSizeConfig(h_init=0.01))
    integ = Integrator(decay, np.array([1.0]), config=cfg)
    assert integ.step().outcome is AttemptOutcome.ACCEPTED

    def overflowed(self: ErrorWeights, y: np.ndarray) -> np.ndarray:  # noqa: ARG001
        raise IllegalInputError("error weight vector has a non-finite component")

    monkeypatch.setattr(ErrorWeights, "update", overflowed)
    record = integ.attempt_step()
    assert record.outcome is AttemptOutcome.FATAL
    assert isinstance(record.error, VectorOpFailureError)
    assert record.error.code is ResultCode.VECTOR_OP_FAILURE
    assert isinstance(record.error.__cause__, IllegalInputError)
    assert integ.status is IntegratorStatus.FAILED
