# src/mstep_engine/errors.py
"""Result codes and error types for mstep_engine.

This module centralizes:
- the discrete result enumeration reported at the integrator boundary,
- explicit error classes with actionable messages, and
- the exceptions collaborators raise to signal recoverable or fatal failures.

Design intent:
- recoverable conditions (nonlinear non-convergence, error-test failures,
  transient callback failures) never leave the stepping loop
- fatal conditions cross the boundary as an IntegratorError subclass tagged with
  a ResultCode and the FailureContext of the last attempt
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

_CONTEXT_MSG: Final[str] = (
    "t={t:.16g}, h={h:.6g}, q={q}, nst={nst}, ncf={ncf}, nef={nef}, "
    "netf={netf}, ncfn={ncfn}"
)


class ResultCode(str, Enum):
    """Discrete outcome of an integrator call."""

    SUCCESS = "success"
    STOP_TIME_REACHED = "stop-time-reached"
    RECOVERABLE_STEP_FAILURE_EXHAUSTED = "recoverable-step-failure-exhausted"
    ILLEGAL_INPUT = "illegal-input"
    VECTOR_OP_FAILURE = "vector-op-failure"
    USER_CALLBACK_FATAL = "user-callback-fatal"
    TOO_MUCH_WORK = "too-much-work"


@dataclass(frozen=True, slots=True)
class FailureContext:
    """Snapshot of the integrator at the point a fatal condition was detected.

    Attributes:
        t: Time of the last accepted step (the attempted step started here).
        h: Step size of the last attempt.
        q: Method order of the last attempt.
        nst: Accepted steps so far.
        ncf: Consecutive convergence failures at this step time.
        nef: Consecutive error-test failures at this step time.
        netf: Total error-test failures.
        ncfn: Total nonlinear convergence failures.
    """

    t: float
    h: float
    q: int
    nst: int = 0
    ncf: int = 0
    nef: int = 0
    netf: int = 0
    ncfn: int = 0

    def describe(self) -> str:
        """Return a one-line human readable description."""
        return _CONTEXT_MSG.format(
            t=self.t,
            h=self.h,
            q=self.q,
            nst=self.nst,
            ncf=self.ncf,
            nef=self.nef,
            netf=self.netf,
            ncfn=self.ncfn,
        )


# =============================================================================
# Integrator boundary errors
# =============================================================================


class IntegratorError(Exception):
    """Base exception for mstep_engine errors."""

    code: ResultCode = ResultCode.ILLEGAL_INPUT

    def __init__(self, message: str, *, context: FailureContext | None = None):
        """Initialize the error.

        Args:
            message: Human-readable description.
            context: Optional integrator snapshot for diagnostics.
        """
        if context is not None:
            message = f"{message} [{context.describe()}]"
        super().__init__(message)
        self.context = context


class IllegalInputError(IntegratorError, ValueError):
    """Raised for invalid tolerances, bounds, orders or initial data."""

    code = ResultCode.ILLEGAL_INPUT


class IntegratorFatalError(IntegratorError, RuntimeError):
    """Base class for fatal conditions detected while stepping."""

    code = ResultCode.RECOVERABLE_STEP_FAILURE_EXHAUSTED


class StepFailureExhaustedError(IntegratorFatalError):
    """Raised when retry limits are exhausted or h is driven below h_min."""

    code = ResultCode.RECOVERABLE_STEP_FAILURE_EXHAUSTED


class VectorOpFailureError(IntegratorFatalError):
    """Raised when a vector or linear-algebra backend fails unrecoverably."""

    code = ResultCode.VECTOR_OP_FAILURE


class UserCallbackFatalError(IntegratorFatalError):
    """Raised when a user callback fails with a non-recoverable error."""

    code = ResultCode.USER_CALLBACK_FATAL


class TooMuchWorkError(IntegratorFatalError):
    """Raised when max_steps internal steps did not reach the output time."""

    code = ResultCode.TOO_MUCH_WORK


# =============================================================================
# Collaborator-raised errors
# =============================================================================


class VectorOpError(RuntimeError):
    """Raised by a vector backend when an operation cannot be completed."""


class LinearSolverError(RuntimeError):
    """Raised by a linear solver on an unrecoverable setup/solve failure."""


class RecoverableLinearSolveError(Exception):
    """Raised by a linear solver for a singular or unconverged system.

    The step is retried; a smaller step makes I - gamma*J better conditioned.
    """


class RecoverableCallbackError(Exception):
    """Raised by a user callback to request a retry with a smaller step.

    Typical use is a transient domain error, e.g. a state component that went
    negative under a square root for an overly large trial step.
    """


_FATAL_BY_CODE: Final[dict[ResultCode, type[IntegratorFatalError]]] = {
    ResultCode.RECOVERABLE_STEP_FAILURE_EXHAUSTED: StepFailureExhaustedError,
    ResultCode.VECTOR_OP_FAILURE: VectorOpFailureError,
    ResultCode.USER_CALLBACK_FATAL: UserCallbackFatalError,
    ResultCode.TOO_MUCH_WORK: TooMuchWorkError,
}


def fatal_error_for(
    code: ResultCode,
    message: str,
    *,
    context: FailureContext | None = None,
) -> IntegratorError:
    """Build the exception matching a fatal result code.

    Args:
        code: Result code of the fatal condition.
        message: Human-readable reason.
        context: Integrator snapshot.

    Returns:
        An IntegratorError subclass instance (IllegalInputError for
        ILLEGAL_INPUT).
    """
    if code is ResultCode.ILLEGAL_INPUT:
        return IllegalInputError(message, context=context)
    cls = _FATAL_BY_CODE.get(code, IntegratorFatalError)
    return cls(message, context=context)
