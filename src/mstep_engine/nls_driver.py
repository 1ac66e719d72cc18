# src/mstep_engine/nls_driver.py
"""Driver for the per-step corrector solve.

The driver owns everything the stepping loop needs around a nonlinear solve:

- the corrector system for the current attempt (Newton residual and
  fixed-point map built from the prediction),
- the convergence test and its running rate estimate,
- the lazy linear-solver setup policy and Jacobian freshness tracking.

Corrector equations, for a = y - y_pred, gamma = h/l[1] and rl1 = 1/l[1]:

    Newton:       F(a) = a + rl1*zn[1] - gamma*f(t, zn[0] + a) = 0
    fixed point:  G(a) = gamma*f(t, zn[0] + a) - rl1*zn[1]

Convergence test after iteration m with correction norm del:

    crate = max(crdown*crate, del/delp)      (m > 0)
    converged   if min(crate, 1) * del / tq[4] <= 1
    diverged    if m >= 1 and del > rdiv*delp

A failed solve is reported as STALE_SETUP when the iteration ran with a
Jacobian that was not evaluated for this attempt; the stepping loop can then
retry the same step with a refreshed Jacobian before shrinking h.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .config import NonlinearConfig
from .errors import RecoverableLinearSolveError
from .linear_solvers import LinearSolver, SetupContext
from .nonlinear_solvers import ConvVerdict, NonlinearSolver, SolveFailure
from .vector_ops import Vector, VectorOps, linear_combination

if TYPE_CHECKING:
    from .coefficients import StepCoefficients
    from .history import Prediction
    from .rhs import RhsEvaluator

logger = logging.getLogger(__name__)

_NO_LINEAR_SOLVER_MSG = "{solver} requires a linear solver"


class NlsFailureReason(str, Enum):
    """Why the corrector did not converge."""

    DIVERGED = "diverged"
    MAX_ITERS = "max-iters"
    STALE_SETUP = "stale-setup"
    LINEAR_SOLVE = "linear-solve"
    CALLBACK_RECOVERABLE = "callback-recoverable"


@dataclass(slots=True, frozen=True)
class Converged:
    """Successful corrector solve.

    Attributes:
        y: Corrected solution.
        acor: Accumulated correction y - y_pred.
        acnrm: Weighted RMS norm of acor.
        conv_rate: Convergence-rate estimate at exit.
        iters: Iterations used.
    """

    y: Vector
    acor: Vector
    acnrm: float
    conv_rate: float
    iters: int


@dataclass(slots=True, frozen=True)
class Failed:
    """Failed corrector solve.

    Attributes:
        reason: Failure reason.
        iters: Iterations used.
        jacobian_current: Whether the Jacobian was evaluated for this attempt.
    """

    reason: NlsFailureReason
    iters: int
    jacobian_current: bool


NlsOutcome = Converged | Failed

_REASON_BY_FAILURE = {
    SolveFailure.DIVERGED: NlsFailureReason.DIVERGED,
    SolveFailure.MAX_ITERS: NlsFailureReason.MAX_ITERS,
    SolveFailure.LINEAR_SOLVE: NlsFailureReason.LINEAR_SOLVE,
    SolveFailure.CALLBACK_RECOVERABLE: NlsFailureReason.CALLBACK_RECOVERABLE,
}


class _CorrectorSystem:
    """Corrector equation for one step attempt."""

    def __init__(
        self,
        driver: NonlinearSolveDriver,
        prediction: Prediction,
        t: float,
        h: float,
        coeffs: StepCoefficients,
        weights: Vector,
        nst: int,
    ) -> None:
        self._driver = driver
        self._zn0 = prediction.zn[0]
        self._zn1 = prediction.zn[1]
        self._t = t
        self._h = h
        self._gamma = coeffs.gamma(h)
        self._rl1 = coeffs.rl1
        self._weights = weights
        self._nst = nst
        self._y_cur = self._zn0
        self._f_cur: Vector | None = None

    @property
    def weights(self) -> Vector:
        return self._weights

    def _f(self, a: Vector) -> Vector:
        ops = self._driver.ops
        self._y_cur = ops.linear_sum(1.0, self._zn0, 1.0, a)
        self._f_cur = self._driver.rhs(self._t, self._y_cur)
        return self._f_cur

    def residual(self, a: Vector) -> Vector:
        f = self._f(a)
        return linear_combination(
            self._driver.ops,
            (1.0, self._rl1, -self._gamma),
            (a, self._zn1, f),
        )

    def fixed_point(self, a: Vector) -> Vector:
        f = self._f(a)
        return self._driver.ops.linear_sum(self._gamma, f, -self._rl1, self._zn1)

    def setup(self) -> bool:
        ctx = SetupContext(t=self._t, y=self._zn0, weights=self._weights, h=self._h)
        return self._driver._setup(ctx, self._gamma, self._nst)

    def linear_solve(self, b: Vector) -> Vector:
        return self._driver._linear_solve(b, self._y_cur, self._f_cur, self._gamma)


class NonlinearSolveDriver:
    """Runs the corrector solve of each step attempt.

    Args:
        solver: Nonlinear solver (Newton or fixed point).
        rhs: Counted RHS evaluator.
        ops: Vector backend.
        linear_solver: Linear solver for Newton iterations; None for
            fixed-point iteration.
        config: Corrector settings.
        bdf: Whether the corrector belongs to a BDF formula. Corrections from
            a matrix factored at an older gamma are then scaled by
            2/(1 + gamma/gamma_p).

    Raises:
        ValueError: If a Newton-type solver is given no linear solver.
    """

    def __init__(
        self,
        solver: NonlinearSolver,
        rhs: RhsEvaluator,
        ops: VectorOps,
        linear_solver: LinearSolver | None = None,
        config: NonlinearConfig | None = None,
        *,
        bdf: bool = False,
    ) -> None:
        if solver.uses_setup and linear_solver is None:
            raise ValueError(_NO_LINEAR_SOLVER_MSG.format(solver=type(solver).__name__))
        self.solver = solver
        self.rhs = rhs
        self.ops = ops
        self.linear_solver = linear_solver if solver.uses_setup else None
        self.config = config or NonlinearConfig()
        self.bdf = bdf

        self.crate = 1.0
        self.jcur = False
        self.gamma_p = 0.0
        self.nst_last_setup = 0
        self.nst_last_jacobian = 0
        self.nsetups = 0

        self._delp = 0.0
        self._tq4 = 1.0
        self._acnrm = 0.0
        self._weights: Vector | None = None
        self._previous_failure = False
        self._refresh_requested = False

        solver.set_convergence_test(self._convergence_test)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    @property
    def nni(self) -> int:
        """Total nonlinear iterations."""
        return self.solver.niters

    @property
    def nje(self) -> int:
        """Total Jacobian evaluations (0 without a linear solver)."""
        return int(getattr(self.linear_solver, "nje", 0))

    # ------------------------------------------------------------------
    # Policy hooks
    # ------------------------------------------------------------------

    def request_refresh(self) -> None:
        """Force a linear-solver setup with a new Jacobian on the next solve."""
        self._refresh_requested = True
        self.solver.request_setup()

    def _needs_setup(self, gamma: float, nst: int) -> bool:
        if self.linear_solver is None:
            return False
        cfg = self.config
        gamrat = gamma / self.gamma_p if (nst > 0 and self.gamma_p != 0.0) else 1.0
        return (
            nst == 0
            or self._previous_failure
            or self._refresh_requested
            or nst >= self.nst_last_setup + cfg.setup_period
            or abs(gamrat - 1.0) > cfg.dgmax
        )

    def _setup(self, ctx: SetupContext, gamma: float, nst: int) -> bool:
        if self.linear_solver is None:
            return False
        new_jacobian = (
            self._refresh_requested
            or nst == 0
            or nst >= self.nst_last_jacobian + self.config.jacobian_period
        )
        self.nsetups += 1
        self._refresh_requested = False
        try:
            self.jcur = self.linear_solver.setup(ctx, gamma, new_jacobian=new_jacobian)
        except RecoverableLinearSolveError:
            # J was evaluated before the factorization failed
            self.jcur = new_jacobian
            raise
        if self.jcur:
            self.nst_last_jacobian = nst
        self.gamma_p = gamma
        self.nst_last_setup = nst
        self.crate = 1.0
        logger.debug(
            "linear solver setup at t=%.6g gamma=%.6g new_jacobian=%s",
            ctx.t,
            gamma,
            new_jacobian,
        )
        return self.jcur

    def _linear_solve(
        self,
        b: Vector,
        y: Vector,
        fy: Vector | None,
        gamma: float,
    ) -> Vector:
        if self.linear_solver is None:
            raise RuntimeError(_NO_LINEAR_SOLVER_MSG.format(solver="linear_solve"))
        x = self.linear_solver.solve(b, y=y, fy=fy, gamma=gamma)
        if self.bdf and not self.linear_solver.matrix_free and gamma != self.gamma_p:
            x = self.ops.scale(2.0 / (1.0 + gamma / self.gamma_p), x)
        return x

    def _convergence_test(self, m: int, delnrm: float, a: Vector) -> ConvVerdict:
        cfg = self.config
        if m > 0:
            self.crate = max(cfg.crdown * self.crate, delnrm / self._delp)
        dcon = min(self.crate, 1.0) * delnrm / self._tq4
        if dcon <= 1.0:
            if m == 0:
                self._acnrm = delnrm
            else:
                self._acnrm = self.ops.wrms_norm(a, self._weights)
            return ConvVerdict.CONVERGED
        if m >= 1 and delnrm > cfg.rdiv * self._delp:
            return ConvVerdict.DIVERGED
        self._delp = delnrm
        return ConvVerdict.CONTINUE

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------

    def solve(
        self,
        prediction: Prediction,
        t: float,
        h: float,
        coeffs: StepCoefficients,
        weights: Vector,
        *,
        nst: int,
    ) -> NlsOutcome:
        """Solve the corrector equation for one attempt.

        Args:
            prediction: Predicted history for t.
            t: End time of the attempted step.
            h: Attempted step size.
            coeffs: Formula coefficients of the attempt.
            weights: Error weights.
            nst: Accepted steps so far.

        Returns:
            Converged or Failed.
        """
        gamma = coeffs.gamma(h)
        call_setup = self._needs_setup(gamma, nst)
        if call_setup:
            self.jcur = False

        self._tq4 = float(coeffs.tq[4])
        self._delp = 0.0
        self._weights = weights

        system = _CorrectorSystem(self, prediction, t, h, coeffs, weights, nst)
        a0 = self.ops.const(0.0, prediction.y)
        result = self.solver.solve(system, a0, call_setup=call_setup)

        if result.converged and result.correction is not None:
            acor = result.correction
            self._previous_failure = False
            self.jcur = False
            y = self.ops.linear_sum(1.0, prediction.y, 1.0, acor)
            return Converged(
                y=y,
                acor=acor,
                acnrm=self._acnrm,
                conv_rate=self.crate,
                iters=result.iters,
            )

        self._previous_failure = True
        reason = _REASON_BY_FAILURE[result.failure or SolveFailure.MAX_ITERS]
        stale = (
            self.linear_solver is not None
            and not self.jcur
            and reason is not NlsFailureReason.CALLBACK_RECOVERABLE
        )
        if stale:
            reason = NlsFailureReason.STALE_SETUP
        return Failed(reason=reason, iters=result.iters, jacobian_current=self.jcur)
