# src/mstep_engine/step_controller.py
"""Step controller: one attempt at a time, and next step/order selection.

An attempt runs

    bound h by tstop -> predict -> corrector solve -> error test
    -> accept (commit, select next h and q) or reject (retry policy)

and returns a StepAttemptRecord tagged with an AttemptOutcome. Rejections never
touch the history: predictions are pure, so a retry simply predicts again with
the new step size (and, after an order reduction, the contracted history).

Next step/order selection (after every accepted step):
    eta(q)   = 1/((bias_same  * dsm)^(1/(q+1)) + addon)
    eta(q-1) = 1/((bias_lower * ||zn[q]|| * tq[1])^(1/q) + addon)
    eta(q+1) = 1/((bias_higher * ||acor - c*acor_saved|| * tq[3])^(1/(q+2)) + addon)

Orders q-1 and q+1 are only considered once qwait reaches zero, i.e. after
q+1 steps at the current order. The largest ratio wins, ties go to the lower
order; ratios below the threshold keep h; growth is capped by eta_max, which is
1 for the step following any rejection.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from .errors import (
    IllegalInputError,
    IntegratorError,
    LinearSolverError,
    RecoverableCallbackError,
    ResultCode,
    UserCallbackFatalError,
    VectorOpError,
    fatal_error_for,
)
from .failure_manager import Fatal, FailureKind, Retry
from .nls_driver import Converged, Failed, NlsFailureReason

if TYPE_CHECKING:
    from .coefficients import FormulaFamily, StepCoefficients
    from .config import IntegratorConfig
    from .error_estimator import ErrorEstimator
    from .error_weights import ErrorWeights
    from .failure_manager import FailureManager
    from .history import HistoryStore, Prediction
    from .nls_driver import NlsOutcome, NonlinearSolveDriver
    from .rhs import RhsEvaluator
    from .vector_ops import Vector, VectorOps

logger = logging.getLogger(__name__)

# qwait after an order-1 restart
_LONG_WAIT = 10

_NOT_PRIMED_MSG = "step controller used before the history was primed"
_FAILED_STATE_MSG = "integrator is in the FAILED state; create a new integrator"
_VECTOR_OP_MSG = "vector or linear-solver backend failed: {exc}"
_RELOAD_FAILED_MSG = "rhs failed while rebuilding the derivative history: {exc}"
_WEIGHTS_MSG = "error weights became invalid after an accepted step: {exc}"


class IntegratorStatus(str, Enum):
    """Lifecycle of the stepping state machine."""

    UNINITIALIZED = "uninitialized"
    PRIMED = "primed"
    STEPPING = "stepping"
    STOPPED = "stopped"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    """Outcome of a single step attempt."""

    ACCEPTED = "accepted"
    REJECTED_CONVERGENCE = "rejected-convergence"
    REJECTED_ERROR = "rejected-error"
    FATAL = "fatal"


@dataclass(slots=True)
class IntegratorState:
    """Mutable integrator state, owned by one Integrator.

    Attributes:
        t: Time of the last accepted step.
        h: Step size of the next attempt.
        h_prev: Last accepted step size.
        q: Order of the next attempt.
        q_last: Order of the last accepted step.
        qwait: Accepted steps left before an order change is considered.
        nst: Accepted steps.
        eta_max: Growth cap for the next step-size selection.
        tau: Recent accepted step sizes, tau[1] most recent.
        tstop: Optional stop time.
        status: Lifecycle status.
        h_init_used: Step size of the first attempt.
    """

    t: float
    h: float
    q: int = 1
    h_prev: float = 0.0
    q_last: int = 1
    qwait: int = 2
    nst: int = 0
    eta_max: float = 1.0e4
    tau: NDArray[np.floating] = field(default_factory=lambda: np.zeros(14))
    tstop: float | None = None
    status: IntegratorStatus = IntegratorStatus.UNINITIALIZED
    h_init_used: float = 0.0


@dataclass(slots=True)
class StepAttemptRecord:
    """Transient data for one attempt.

    Attributes:
        t: Start time of the attempt.
        h: Attempted step size.
        q: Attempted order.
        outcome: Attempt outcome.
        prediction: Predicted solution.
        acor: Correction (when the corrector converged).
        dsm: Error estimate (when the corrector converged).
        nls: Corrector outcome.
        conv_rate: Convergence-rate estimate.
        error: Fatal error when outcome is FATAL.
    """

    t: float
    h: float
    q: int
    outcome: AttemptOutcome = AttemptOutcome.FATAL
    prediction: Vector | None = None
    acor: Vector | None = None
    dsm: float | None = None
    nls: NlsOutcome | None = None
    conv_rate: float | None = None
    error: IntegratorError | None = None


class StepController:
    """Orchestrates step attempts on shared integrator state.

    Args:
        state: Integrator state (mutated in place).
        history: Nordsieck history.
        weights: Error weights.
        formula: Formula family.
        driver: Corrector driver.
        estimator: Local error estimator.
        failures: Retry policy.
        rhs: Counted RHS evaluator (used to rebuild history after repeated
            error-test failures at order 1).
        ops: Vector backend.
        config: Integrator configuration.
        q_max: Maximum order.
    """

    def __init__(
        self,
        *,
        state: IntegratorState,
        history: HistoryStore,
        weights: ErrorWeights,
        formula: FormulaFamily,
        driver: NonlinearSolveDriver,
        estimator: ErrorEstimator,
        failures: FailureManager,
        rhs: RhsEvaluator,
        ops: VectorOps,
        config: IntegratorConfig,
        q_max: int,
    ) -> None:
        self.state = state
        self.history = history
        self.weights = weights
        self.formula = formula
        self.driver = driver
        self.estimator = estimator
        self.failures = failures
        self.rhs = rhs
        self.ops = ops
        self.config = config
        self.q_max = int(q_max)

        self.last_acor: Vector | None = None
        self.last_tq2 = 0.0
        self._saved_tq5 = 0.0
        self._fatal: IntegratorError | None = None

    @property
    def fatal_error(self) -> IntegratorError | None:
        """Return the error that moved the state machine to FAILED, if any."""
        return self._fatal

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _bounded_h(self) -> tuple[float, float]:
        """Return (h, t_new) for the next attempt, clipped to h_max and tstop."""
        st = self.state
        h = st.h
        h_max = self.config.step.h_max
        if abs(h) > h_max:
            h = math.copysign(h_max, h)

        t_new = st.t + h
        # a tstop at or behind t no longer bounds the step
        ahead = st.tstop is not None and (st.tstop - st.t) * h > 0.0
        if ahead and (t_new - st.tstop) * h >= 0.0:
            h = st.tstop - st.t
            t_new = st.tstop
        return h, t_new

    def _fail(
        self,
        record: StepAttemptRecord,
        code: ResultCode,
        reason: str,
        cause: BaseException | None = None,
    ) -> StepAttemptRecord:
        st = self.state
        ctx = self.failures.context(t=st.t, h=record.h, q=record.q, nst=st.nst)
        error = fatal_error_for(code, reason, context=ctx)
        if cause is not None:
            error.__cause__ = cause
        st.status = IntegratorStatus.FAILED
        self._fatal = error
        record.outcome = AttemptOutcome.FATAL
        record.error = error
        logger.warning("integration failed (%s): %s", code.value, error)
        return record

    def _apply_retry(self, action: Retry, record: StepAttemptRecord) -> None:
        st = self.state
        hist = self.history
        st.eta_max = 1.0
        st.h = action.new_h
        if action.refresh:
            self.driver.request_refresh()

        if action.order_delta == -1 and hist.q > 1:
            change = self.formula.order_change(hist.q, -1, st.tau, hist.hscale)
            hist.change_order(change, -1)
            st.q = hist.q
            st.qwait = st.q + 1
            logger.info("order reduced to %d after repeated error-test failures", st.q)

        if action.reload_derivative:
            try:
                fy = self.rhs(st.t, hist.y)
            except RecoverableCallbackError as exc:
                raise UserCallbackFatalError(_RELOAD_FAILED_MSG.format(exc=exc)) from exc
            hist.reload_derivative(fy, action.new_h)
            st.q = hist.q
            st.qwait = _LONG_WAIT
            logger.debug("derivative history rebuilt at t=%.6g", st.t)

        logger.debug(
            "attempt at t=%.6g h=%.6g q=%d rejected (%s); retry with h=%.6g",
            record.t,
            record.h,
            record.q,
            record.outcome.value,
            st.h,
        )

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    def attempt_step(self) -> StepAttemptRecord:
        """Make one attempt to advance the solution.

        Raises:
            RuntimeError: If the history is not primed.

        Returns:
            The attempt record; outcome FATAL carries the error in .error.
        """
        st = self.state
        if st.status is IntegratorStatus.FAILED:
            record = StepAttemptRecord(t=st.t, h=st.h, q=st.q)
            record.error = self._fatal or fatal_error_for(
                ResultCode.RECOVERABLE_STEP_FAILURE_EXHAUSTED, _FAILED_STATE_MSG
            )
            return record
        if not self.history.primed:
            raise RuntimeError(_NOT_PRIMED_MSG)
        st.status = IntegratorStatus.STEPPING

        h, t_new = self._bounded_h()
        record = StepAttemptRecord(t=st.t, h=h, q=self.history.q)
        try:
            return self._attempt(record, h, t_new)
        except UserCallbackFatalError as exc:
            return self._fail(record, ResultCode.USER_CALLBACK_FATAL, str(exc), exc)
        except (VectorOpError, LinearSolverError) as exc:
            return self._fail(
                record,
                ResultCode.VECTOR_OP_FAILURE,
                _VECTOR_OP_MSG.format(exc=exc),
                exc,
            )

    def _attempt(self, record: StepAttemptRecord, h: float, t_new: float) -> StepAttemptRecord:
        st = self.state
        hist = self.history
        q = hist.q
        cfg = self.config

        coeffs = self.formula.coefficients(
            q,
            h,
            st.tau,
            qwait=st.qwait,
            nls_coef=cfg.nonlinear.nls_coef,
        )
        prediction = hist.predict(h)
        record.prediction = prediction.y

        nls = self.driver.solve(
            prediction,
            t_new,
            h,
            coeffs,
            self.weights.weights,
            nst=st.nst,
        )
        record.nls = nls

        if isinstance(nls, Failed):
            record.outcome = AttemptOutcome.REJECTED_CONVERGENCE
            action = self.failures.classify(
                FailureKind.CONVERGENCE,
                h=h,
                q=q,
                stale=nls.reason is NlsFailureReason.STALE_SETUP,
            )
            if isinstance(action, Fatal):
                return self._fail(record, action.code, f"{action.reason} ({nls.reason.value})")
            self._apply_retry(action, record)
            return record

        record.acor = nls.acor
        record.conv_rate = nls.conv_rate
        dsm = self.estimator.estimate_from_norm(nls.acnrm, float(coeffs.tq[2]))
        record.dsm = dsm

        if not self.estimator.accepts(dsm):
            record.outcome = AttemptOutcome.REJECTED_ERROR
            action = self.failures.classify(FailureKind.ERROR_TEST, h=h, q=q, dsm=dsm)
            if isinstance(action, Fatal):
                return self._fail(record, action.code, f"{action.reason} (dsm={dsm:.6g})")
            self._apply_retry(action, record)
            return record

        self._accept(record, prediction, nls, coeffs, dsm, t_new)
        return record

    def _accept(
        self,
        record: StepAttemptRecord,
        prediction: Prediction,
        nls: Converged,
        coeffs: StepCoefficients,
        dsm: float,
        t_new: float,
    ) -> None:
        st = self.state
        hist = self.history
        h = prediction.h
        q = prediction.q

        hist.commit(prediction, nls.acor, coeffs.l)
        st.t = t_new
        st.nst += 1
        st.h_prev = h
        st.q_last = q
        st.tau[2:] = st.tau[1:-1]
        st.tau[1] = h
        self.failures.reset()

        self.last_acor = nls.acor
        self.last_tq2 = float(coeffs.tq[2])

        st.qwait -= 1
        if st.qwait == 1 and q != self.q_max:
            hist.save_correction(nls.acor)
            self._saved_tq5 = float(coeffs.tq[5])

        self.select_next_step_order(dsm, coeffs, nls.acor)

        try:
            self.weights.update(hist.y)
        except IllegalInputError as exc:
            self._fail(
                record,
                ResultCode.VECTOR_OP_FAILURE,
                _WEIGHTS_MSG.format(exc=exc),
                exc,
            )
            return

        record.outcome = AttemptOutcome.ACCEPTED
        if st.tstop is not None and t_new == st.tstop:
            st.status = IntegratorStatus.STOPPED
            logger.info("stop time %.16g reached after %d steps", st.tstop, st.nst)
        logger.debug(
            "step %d accepted: t=%.6g h=%.6g q=%d dsm=%.3g next h=%.6g q=%d",
            st.nst,
            t_new,
            h,
            q,
            dsm,
            st.h,
            st.q,
        )

    # ------------------------------------------------------------------
    # Next step size and order
    # ------------------------------------------------------------------

    def _eta(self, bias: float, err: float, order: int) -> float:
        addon = self.config.controller.addon
        return 1.0 / ((bias * err) ** (1.0 / order) + addon)

    def _eta_lower(self, coeffs: StepCoefficients) -> float:
        q = self.history.q
        if q <= 1:
            return 0.0
        ddn = self.ops.wrms_norm(self.history.entry(q), self.weights.weights)
        ddn *= float(coeffs.tq[1])
        return self._eta(self.config.controller.bias_lower, ddn, q)

    def _eta_higher(self, coeffs: StepCoefficients, acor: Vector) -> float:
        q = self.history.q
        saved = self.history.saved_correction
        if q >= self.q_max or saved is None or self._saved_tq5 == 0.0:
            return 0.0
        st = self.state
        cquot = (float(coeffs.tq[5]) / self._saved_tq5) * (
            (st.h_prev / st.tau[2]) ** (q + 1)
        )
        diff = self.ops.linear_sum(-cquot, saved, 1.0, acor)
        dup = self.ops.wrms_norm(diff, self.weights.weights) * float(coeffs.tq[3])
        return self._eta(self.config.controller.bias_higher, dup, q + 2)

    def _choose(self, etaqm1: float, etaq: float, etaqp1: float) -> tuple[float, int]:
        q = self.history.q
        ctl = self.config.controller
        etam = max(etaqm1, etaq, etaqp1)
        if etam < ctl.threshold:
            return 1.0, 0
        tol = ctl.order_tie_rtol * etam
        for eta, delta in ((etaqm1, -1), (etaq, 0), (etaqp1, 1)):
            if abs(eta - etam) <= tol:
                if delta == 1 and q >= self.q_max:
                    continue
                return eta, delta
        return etaq, 0

    def select_next_step_order(
        self,
        dsm: float,
        coeffs: StepCoefficients,
        acor: Vector,
    ) -> tuple[float, int]:
        """Choose the step size and order of the next attempt.

        Applies any order change to the history immediately.

        Args:
            dsm: Error estimate of the accepted step.
            coeffs: Coefficients of the accepted step.
            acor: Correction of the accepted step.

        Returns:
            (h_next, q_next).
        """
        st = self.state
        ctl = self.config.controller
        hist = self.history
        q = hist.q
        h = st.h_prev

        delta = 0
        if st.eta_max == 1.0:
            st.qwait = max(st.qwait, 2)
            eta = 1.0
        else:
            etaq = self._eta(ctl.bias_same, dsm, q + 1)
            if st.qwait != 0:
                eta = etaq
            else:
                st.qwait = 2
                eta, delta = self._choose(self._eta_lower(coeffs), etaq, self._eta_higher(coeffs, acor))

            if eta < ctl.threshold:
                eta = 1.0
                delta = 0
            else:
                eta = min(eta, st.eta_max)
                eta /= max(1.0, abs(h) * eta / self.config.step.h_max)

        if delta != 0:
            if delta == 1:
                hist.save_correction(acor)
            change = self.formula.order_change(q, delta, st.tau, hist.hscale)
            hist.change_order(change, delta)
            st.qwait = hist.q + 1
            logger.info("order changed %d -> %d at t=%.6g", q, hist.q, st.t)

        st.q = hist.q
        st.h = h * eta
        st.eta_max = ctl.eta_max_early if st.nst <= ctl.small_nst else ctl.eta_max
        return st.h, st.q
