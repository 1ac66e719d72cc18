# src/mstep_engine/failure_manager.py
"""Retry policy for rejected step attempts.

Two kinds of rejection are counted separately, per step time:

- convergence failures (ncf): the corrector did not converge. A failure
  attributed to a stale Jacobian retries the same h with a fresh Jacobian;
  otherwise h shrinks by eta_conv_fail (bounded below by h_min), with a
  forced Jacobian refresh from conv_fails_before_setup failures on.
- error-test failures (nef): the corrector converged but dsm > 1. h shrinks
  by max(eta_min_error, 1/((bias*dsm)^(1/(q+1)) + addon)), capped at
  eta_max_error from error_fails_before_order_drop failures on, where the
  order also drops by one when q > 1.

Counters reset only when a step is accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .config import ControllerConfig, FailureConfig
from .errors import FailureContext, ResultCode

# |h| within this factor of h_min counts as h_min
_HMIN_FUZZ = 1.000001

_CONV_LIMIT_MSG = "corrector failed to converge {n} times at one step time"
_CONV_HMIN_MSG = "corrector failed to converge with |h| = h_min"
_ERR_LIMIT_MSG = "error test failed {n} times at one step time"
_ERR_HMIN_MSG = "error test failed with |h| = h_min"


class FailureKind(str, Enum):
    """Kind of rejected attempt."""

    CONVERGENCE = "convergence"
    ERROR_TEST = "error-test"


@dataclass(slots=True, frozen=True)
class Retry:
    """Retry the step.

    Attributes:
        new_h: Step size of the next attempt.
        refresh: Evaluate a fresh Jacobian before the next attempt.
        order_delta: 0 or -1.
        reload_derivative: Rebuild the first-derivative history entry from f.
    """

    new_h: float
    refresh: bool = False
    order_delta: int = 0
    reload_derivative: bool = False


@dataclass(slots=True, frozen=True)
class Fatal:
    """Give up on the step.

    Attributes:
        code: Result code reported to the caller.
        reason: Human-readable reason.
    """

    code: ResultCode
    reason: str


FailureAction = Retry | Fatal


class FailureManager:
    """Counters and escalating retry policy.

    Args:
        failure: Retry limits.
        controller: Step-size reduction constants.
        h_min: Minimum step size magnitude.
    """

    def __init__(
        self,
        failure: FailureConfig,
        controller: ControllerConfig,
        *,
        h_min: float = 0.0,
    ) -> None:
        self.failure = failure
        self.controller = controller
        self.h_min = float(h_min)
        self.ncf = 0
        self.nef = 0
        self.ncfn = 0
        self.netf = 0

    def reset(self) -> None:
        """Clear the per-step counters after an accepted step."""
        self.ncf = 0
        self.nef = 0

    def context(self, *, t: float, h: float, q: int, nst: int) -> FailureContext:
        """Return a FailureContext with the current counters."""
        return FailureContext(
            t=t,
            h=h,
            q=q,
            nst=nst,
            ncf=self.ncf,
            nef=self.nef,
            netf=self.netf,
            ncfn=self.ncfn,
        )

    def _at_h_min(self, h: float) -> bool:
        return abs(h) <= self.h_min * _HMIN_FUZZ

    def classify(
        self,
        kind: FailureKind,
        *,
        h: float,
        q: int,
        dsm: float = 0.0,
        stale: bool = False,
    ) -> FailureAction:
        """Count a rejected attempt and decide how to proceed.

        Args:
            kind: Failure kind.
            h: Step size of the rejected attempt.
            q: Order of the rejected attempt.
            dsm: Error estimate (error-test failures only).
            stale: The corrector failed on a Jacobian that was not current.

        Returns:
            Retry or Fatal.
        """
        if kind is FailureKind.CONVERGENCE:
            return self._convergence_failure(h, stale=stale)
        return self._error_test_failure(h, q, dsm)

    def _convergence_failure(self, h: float, *, stale: bool) -> FailureAction:
        cfg = self.failure
        self.ncf += 1
        self.ncfn += 1

        if self.ncf >= cfg.max_conv_fails:
            return Fatal(
                ResultCode.RECOVERABLE_STEP_FAILURE_EXHAUSTED,
                _CONV_LIMIT_MSG.format(n=self.ncf),
            )
        if stale:
            return Retry(new_h=h, refresh=True)
        if self._at_h_min(h):
            return Fatal(ResultCode.RECOVERABLE_STEP_FAILURE_EXHAUSTED, _CONV_HMIN_MSG)

        eta = max(self.controller.eta_conv_fail, self.h_min / abs(h))
        return Retry(new_h=h * eta, refresh=self.ncf >= cfg.conv_fails_before_setup)

    def _error_test_failure(self, h: float, q: int, dsm: float) -> FailureAction:
        cfg = self.failure
        ctl = self.controller
        self.nef += 1
        self.netf += 1

        if self._at_h_min(h):
            return Fatal(ResultCode.RECOVERABLE_STEP_FAILURE_EXHAUSTED, _ERR_HMIN_MSG)
        if self.nef >= cfg.max_error_test_fails:
            return Fatal(
                ResultCode.RECOVERABLE_STEP_FAILURE_EXHAUSTED,
                _ERR_LIMIT_MSG.format(n=self.nef),
            )

        eta = 1.0 / ((ctl.bias_same * dsm) ** (1.0 / (q + 1)) + ctl.addon)
        eta = max(ctl.eta_min_error, eta)
        order_delta = 0
        if self.nef >= cfg.error_fails_before_order_drop:
            eta = min(eta, ctl.eta_max_error)
            if q > 1:
                order_delta = -1
        eta = max(eta, self.h_min / abs(h))

        reload = q == 1 and self.nef > cfg.error_fails_before_reload
        return Retry(new_h=h * eta, order_delta=order_delta, reload_derivative=reload)
