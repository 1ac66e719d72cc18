# src/mstep_engine/nonlinear_solvers.py
"""Nonlinear solvers for the implicit corrector equation.

Two solvers are provided, both operating on the correction a = y - y_pred:

- NewtonSolver: a_{m+1} = a_m + delta, with (I - gamma*J) delta = -F(a_m)
  where F is the Newton residual supplied by the nonlinear system.
- FixedPointSolver: a_{m+1} = G(a_m) (functional iteration); needs no
  Jacobian and is intended for non-stiff problems.

Convergence is decided by a pluggable test installed with
set_convergence_test; the solver itself only applies the iteration cap.
Recoverable collaborator failures (RecoverableCallbackError from the user RHS,
RecoverableLinearSolveError from the linear solver) end the solve with a
failure reason instead of propagating. Everything else propagates.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from .errors import RecoverableCallbackError, RecoverableLinearSolveError
from .vector_ops import Vector, VectorOps

_MAX_ITERS_MSG = "max_iters must be >= 1; got {value}"
_NO_CONV_TEST_MSG = "no convergence test installed; call set_convergence_test first"


class ConvVerdict(str, Enum):
    """Verdict of a convergence test after one iteration."""

    CONVERGED = "converged"
    CONTINUE = "continue"
    DIVERGED = "diverged"


class SolveFailure(str, Enum):
    """Why a nonlinear solve stopped without converging."""

    DIVERGED = "diverged"
    MAX_ITERS = "max-iters"
    LINEAR_SOLVE = "linear-solve"
    CALLBACK_RECOVERABLE = "callback-recoverable"


ConvergenceTest = Callable[[int, float, Vector], ConvVerdict]


@dataclass(slots=True, frozen=True)
class NonlinearSolveResult:
    """Outcome of one nonlinear solve.

    Attributes:
        correction: Final correction when converged, else None.
        iters: Iterations performed.
        failure: Failure reason, or None when converged.
    """

    correction: Vector | None
    iters: int
    failure: SolveFailure | None = None

    @property
    def converged(self) -> bool:
        """Return True if the solve converged."""
        return self.failure is None


class NonlinearSystem(Protocol):
    """The equation a nonlinear solver works on."""

    @property
    def weights(self) -> Vector:
        """Error weights used for the correction norm."""
        ...

    def residual(self, a: Vector) -> Vector:
        """Newton residual F(a)."""
        ...

    def fixed_point(self, a: Vector) -> Vector:
        """Fixed-point map G(a)."""
        ...

    def setup(self) -> bool:
        """Set up the linear solver; return True if the Jacobian is current."""
        ...

    def linear_solve(self, b: Vector) -> Vector:
        """Solve the linearized system for right-hand side b."""
        ...


class NonlinearSolver(Protocol):
    """Capability set required by the nonlinear-solve driver."""

    max_iters: int
    niters: int
    uses_setup: bool

    def solve(
        self,
        system: NonlinearSystem,
        a0: Vector,
        *,
        call_setup: bool,
    ) -> NonlinearSolveResult:
        """Solve system starting from the correction a0."""
        ...

    def set_convergence_test(self, test: ConvergenceTest) -> None:
        """Install the convergence test."""
        ...

    def request_setup(self) -> None:
        """Force a linear-solver setup at the start of the next solve."""
        ...


class _BaseSolver:
    """Shared bookkeeping for the shipped solvers."""

    uses_setup = False

    def __init__(self, ops: VectorOps, *, max_iters: int = 3) -> None:
        if int(max_iters) < 1:
            raise ValueError(_MAX_ITERS_MSG.format(value=max_iters))
        self.ops = ops
        self.max_iters = int(max_iters)
        self.niters = 0
        self._ctest: ConvergenceTest | None = None
        self._setup_requested = False

    def set_convergence_test(self, test: ConvergenceTest) -> None:
        self._ctest = test

    def request_setup(self) -> None:
        self._setup_requested = True

    def _test(self, m: int, delnrm: float, a: Vector) -> ConvVerdict:
        if self._ctest is None:
            raise RuntimeError(_NO_CONV_TEST_MSG)
        return self._ctest(m, delnrm, a)


class NewtonSolver(_BaseSolver):
    """Modified Newton iteration with a lazily refreshed iteration matrix.

    Args:
        ops: Vector backend.
        max_iters: Iteration cap per solve.
    """

    uses_setup = True

    def solve(
        self,
        system: NonlinearSystem,
        a0: Vector,
        *,
        call_setup: bool,
    ) -> NonlinearSolveResult:
        ops = self.ops
        try:
            if call_setup or self._setup_requested:
                self._setup_requested = False
                system.setup()
        except RecoverableLinearSolveError:
            return NonlinearSolveResult(None, 0, SolveFailure.LINEAR_SOLVE)
        except RecoverableCallbackError:
            return NonlinearSolveResult(None, 0, SolveFailure.CALLBACK_RECOVERABLE)

        a = ops.clone(a0)
        for m in range(self.max_iters):
            try:
                res = system.residual(a)
                delta = system.linear_solve(ops.scale(-1.0, res))
            except RecoverableCallbackError:
                return NonlinearSolveResult(None, m, SolveFailure.CALLBACK_RECOVERABLE)
            except RecoverableLinearSolveError:
                return NonlinearSolveResult(None, m, SolveFailure.LINEAR_SOLVE)

            self.niters += 1
            a = ops.linear_sum(1.0, a, 1.0, delta)
            delnrm = ops.wrms_norm(delta, system.weights)

            verdict = self._test(m, delnrm, a)
            if verdict is ConvVerdict.CONVERGED:
                return NonlinearSolveResult(a, m + 1)
            if verdict is ConvVerdict.DIVERGED:
                return NonlinearSolveResult(None, m + 1, SolveFailure.DIVERGED)

        return NonlinearSolveResult(None, self.max_iters, SolveFailure.MAX_ITERS)


class FixedPointSolver(_BaseSolver):
    """Functional iteration a <- G(a).

    Args:
        ops: Vector backend.
        max_iters: Iteration cap per solve.
    """

    def solve(
        self,
        system: NonlinearSystem,
        a0: Vector,
        *,
        call_setup: bool,  # noqa: ARG002
    ) -> NonlinearSolveResult:
        ops = self.ops
        self._setup_requested = False
        a = ops.clone(a0)
        for m in range(self.max_iters):
            try:
                a_new = system.fixed_point(a)
            except RecoverableCallbackError:
                return NonlinearSolveResult(None, m, SolveFailure.CALLBACK_RECOVERABLE)

            self.niters += 1
            delta = ops.linear_sum(1.0, a_new, -1.0, a)
            a = a_new
            delnrm = ops.wrms_norm(delta, system.weights)

            verdict = self._test(m, delnrm, a)
            if verdict is ConvVerdict.CONVERGED:
                return NonlinearSolveResult(a, m + 1)
            if verdict is ConvVerdict.DIVERGED:
                return NonlinearSolveResult(None, m + 1, SolveFailure.DIVERGED)

        return NonlinearSolveResult(None, self.max_iters, SolveFailure.MAX_ITERS)
