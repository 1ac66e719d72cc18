# src/mstep_engine/integrator.py
"""Public integrator facade.

Integrator wires the collaborators together (vector backend, error weights,
formula family, history, linear and nonlinear solvers, corrector driver,
error estimator, retry policy and step controller), validates configuration
eagerly, computes the initial step size when none is given, and exposes:

- attempt_step(): a single attempt (accepted, rejected or fatal),
- step(): attempts until one is accepted (raises on fatal conditions),
- solve(tout, tstop=...): steps until tout (or tstop) is reached exactly,
- run(core): advances a ModelCore through its output time grid,
- stats / estimated_local_errors() / request_stop().

Example:
    >>> import numpy as np
    >>> from mstep_engine import Integrator
    >>> integ = Integrator(lambda t, y: -y, np.array([1.0]))
    >>> result = integ.solve(1.0)
    >>> abs(result.y[0] - np.exp(-1.0)) < 1e-4
    True
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

from .coefficients import formula_for
from .config import IntegratorConfig
from .error_estimator import ErrorEstimator
from .error_weights import ErrorWeights
from .errors import (
    IllegalInputError,
    IntegratorError,
    RecoverableCallbackError,
    ResultCode,
    TooMuchWorkError,
    UserCallbackFatalError,
)
from .failure_manager import FailureManager
from .history import HistoryStore
from .linear_solvers import (
    DenseLinearSolver,
    KrylovLinearSolver,
    LinearSolver,
    SparseLinearSolver,
)
from .nls_driver import NonlinearSolveDriver
from .nonlinear_solvers import FixedPointSolver, NewtonSolver, NonlinearSolver
from .rhs import JacobianEvaluator, JacobianFunction, RhsEvaluator, RHSFunction
from .step_controller import (
    AttemptOutcome,
    IntegratorState,
    IntegratorStatus,
    StepAttemptRecord,
    StepController,
)
from .vector_ops import NumpyVectorOps, Vector, VectorOps

if TYPE_CHECKING:
    from .model_core import ModelCore

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]

_UROUND = float(np.finfo(np.float64).eps)

# initial step size estimation constants
_HLB_FACTOR = 100.0
_HUB_FACTOR = 0.1
_H_BIAS = 0.5
_HIN_MAX_ITERS = 4

# =============================================================================
# Errors / messages
# =============================================================================

_Y0_SHAPE_MSG = "y0 must be a non-empty 1D array; got shape {shape}"
_Y0_FINITE_MSG = "y0 must contain only finite values"
_H_MIN_MSG = "h_min must be finite and >= 0; got {value!r}"
_H_MAX_MSG = "h_max must be > 0; got {value!r}"
_H_BOUNDS_MSG = "h_min ({h_min!r}) must not exceed h_max ({h_max!r})"
_H_INIT_MSG = "h_init must be finite and > 0; got {value!r}"
_MAX_STEPS_MSG = "max_steps must be >= 1; got {value!r}"
_MAX_ORDER_MSG = "max_order must be >= 1; got {value!r}"
_MAX_ORDER_CLIPPED_MSG = (
    "max_order={value} exceeds the {method} limit {limit}; using {limit}"
)
_METHOD_MSG = "unknown method {value!r}; expected 'bdf' or 'adams'"
_NLS_MSG = "unknown nonlinear solver {value!r}; expected 'newton' or 'fixed-point'"
_LS_MSG = "unknown linear solver {value!r}; expected 'dense', 'sparse' or 'krylov'"
_NLS_ITERS_MSG = "max_iters must be >= 1; got {value!r}"
_FAIL_LIMIT_MSG = "{name} must be >= 1; got {value!r}"
_SPARSE_NEEDS_JAC_MSG = "linear solver 'sparse' requires a Jacobian function"
_H_INIT_CLIPPED_MSG = "h_init={value!r} clipped to [{h_min!r}, {h_max!r}]"
_TOUT_TOO_CLOSE_MSG = "tout={tout!r} too close to t0={t0!r} to start integration"
_TOUT_BEHIND_MSG = "tout={tout!r} is behind the current time t={t!r}"
_TSTOP_BEHIND_MSG = "tstop={tstop!r} is behind the current time t={t!r}"
_NO_DIRECTION_MSG = "cannot take a first step without h_init, tout or tstop"
_FIRST_RHS_MSG = "rhs failed at the initial point t={t!r}: {exc}"
_HIN_RHS_MSG = "rhs failed repeatedly while estimating the initial step size"
_TOO_MUCH_WORK_MSG = "took {n} steps without reaching t={target!r}"
_CORE_TIME_MSG = "ModelCore current time {core_t!r} does not match integrator t={t!r}"
_CORE_SHAPE_MSG = "ModelCore state shape {actual} does not match y shape {expected}"


# =============================================================================
# Result containers
# =============================================================================


@dataclass(slots=True, frozen=True)
class SolveResult:
    """Result of Integrator.solve.

    Attributes:
        t: Time reached.
        y: Solution at t (host array copy).
        code: SUCCESS (tout reached) or STOP_TIME_REACHED.
        interrupted: True if request_stop() ended the call early.
    """

    t: float
    y: FloatArray
    code: ResultCode
    interrupted: bool = False


@dataclass(slots=True, frozen=True)
class IntegratorStats:
    """Cumulative integrator statistics."""

    nst: int
    nfe: int
    nsetups: int
    nje: int
    nni: int
    ncfn: int
    netf: int
    q_last: int
    q_current: int
    h_init_used: float
    h_last: float
    h_current: float
    t_current: float


# =============================================================================
# Configuration validation
# =============================================================================


def _validate_config(cfg: IntegratorConfig) -> None:
    """Raise IllegalInputError for configuration values that cannot work."""
    step = cfg.step
    if not (math.isfinite(step.h_min) and step.h_min >= 0.0):
        raise IllegalInputError(_H_MIN_MSG.format(value=step.h_min))
    if not step.h_max > 0.0:
        raise IllegalInputError(_H_MAX_MSG.format(value=step.h_max))
    if step.h_min > step.h_max:
        raise IllegalInputError(_H_BOUNDS_MSG.format(h_min=step.h_min, h_max=step.h_max))
    if step.h_init is not None and not (math.isfinite(step.h_init) and step.h_init > 0.0):
        raise IllegalInputError(_H_INIT_MSG.format(value=step.h_init))
    if step.max_steps < 1:
        raise IllegalInputError(_MAX_STEPS_MSG.format(value=step.max_steps))

    if cfg.nonlinear.solver not in ("newton", "fixed-point"):
        raise IllegalInputError(_NLS_MSG.format(value=cfg.nonlinear.solver))
    if cfg.nonlinear.max_iters < 1:
        raise IllegalInputError(_NLS_ITERS_MSG.format(value=cfg.nonlinear.max_iters))
    if cfg.linear.kind not in ("dense", "sparse", "krylov"):
        raise IllegalInputError(_LS_MSG.format(value=cfg.linear.kind))

    for name in ("max_conv_fails", "max_error_test_fails"):
        value = getattr(cfg.failure, name)
        if value < 1:
            raise IllegalInputError(_FAIL_LIMIT_MSG.format(name=name, value=value))


def _resolve_max_order(cfg: IntegratorConfig, limit: int) -> int:
    requested = cfg.order.max_order
    if requested is None:
        return limit
    if requested < 1:
        raise IllegalInputError(_MAX_ORDER_MSG.format(value=requested))
    if requested > limit:
        warnings.warn(
            _MAX_ORDER_CLIPPED_MSG.format(
                value=requested,
                method=cfg.order.method,
                limit=limit,
            ),
            RuntimeWarning,
            stacklevel=3,
        )
        return limit
    return int(requested)


# =============================================================================
# Integrator
# =============================================================================


class Integrator:
    """Adaptive variable-order implicit multistep integrator for y' = f(t, y).

    Args:
        rhs: Right-hand side f(t, y) -> ydot.
        y0: Initial solution, 1D.
        t0: Initial time.
        config: Integrator configuration (defaults when None).
        jac: Optional Jacobian J(t, y) (dense array or SciPy sparse matrix).
        ops: Vector backend (NumpyVectorOps when None).
        linear_solver: Custom linear solver overriding config.linear.
        nonlinear_solver: Custom nonlinear solver overriding config.nonlinear.

    Raises:
        IllegalInputError: For invalid tolerances, bounds, orders or y0.
    """

    def __init__(
        self,
        rhs: RHSFunction,
        y0: npt.ArrayLike,
        t0: float = 0.0,
        *,
        config: IntegratorConfig | None = None,
        jac: JacobianFunction | None = None,
        ops: VectorOps | None = None,
        linear_solver: LinearSolver | None = None,
        nonlinear_solver: NonlinearSolver | None = None,
    ) -> None:
        cfg = config or IntegratorConfig()
        _validate_config(cfg)
        self.config = cfg
        self.ops = ops or NumpyVectorOps()

        y0_arr = np.asarray(y0, dtype=float)
        if y0_arr.ndim != 1 or y0_arr.size == 0:
            raise IllegalInputError(_Y0_SHAPE_MSG.format(shape=y0_arr.shape))
        if not np.all(np.isfinite(y0_arr)):
            raise IllegalInputError(_Y0_FINITE_MSG)

        try:
            formula = formula_for(cfg.order.method)
        except ValueError as exc:
            raise IllegalInputError(_METHOD_MSG.format(value=cfg.order.method)) from exc
        self.formula = formula
        self.q_max = _resolve_max_order(cfg, formula.max_order)

        y = self.ops.clone(self.ops.from_array(y0_arr, y0_arr))
        self._y0 = y
        self.weights = ErrorWeights(
            self.ops,
            cfg.tolerances.rtol,
            cfg.tolerances.atol,
            y,
        )
        self.rhs = RhsEvaluator(rhs, self.ops, y)
        self.jac = JacobianEvaluator(jac, y0_arr.size) if jac is not None else None

        self.driver = NonlinearSolveDriver(
            nonlinear_solver or self._build_nonlinear_solver(),
            self.rhs,
            self.ops,
            linear_solver or self._build_linear_solver(),
            cfg.nonlinear,
            bdf=formula.name == "bdf",
        )
        self.estimator = ErrorEstimator(self.ops)
        self.failures = FailureManager(cfg.failure, cfg.controller, h_min=cfg.step.h_min)
        self.history = HistoryStore(self.ops, self.q_max)
        self.state = IntegratorState(
            t=float(t0),
            h=0.0,
            eta_max=cfg.controller.eta_max_first,
        )
        self.controller = StepController(
            state=self.state,
            history=self.history,
            weights=self.weights,
            formula=formula,
            driver=self.driver,
            estimator=self.estimator,
            failures=self.failures,
            rhs=self.rhs,
            ops=self.ops,
            config=cfg,
            q_max=self.q_max,
        )
        self._stop_requested = False
        logger.debug(
            "integrator created: method=%s q_max=%d n=%d",
            formula.name,
            self.q_max,
            y0_arr.size,
        )

    @classmethod
    def from_model_core(
        cls,
        core: ModelCore,
        rhs: RHSFunction,
        **kwargs: Any,
    ) -> Integrator:
        """Create an integrator starting from a ModelCore's current state."""
        return cls(rhs, core.get_current_state(), core.current_time, **kwargs)

    def _build_nonlinear_solver(self) -> NonlinearSolver:
        cfg = self.config.nonlinear
        if cfg.solver == "fixed-point":
            return FixedPointSolver(self.ops, max_iters=cfg.max_iters)
        return NewtonSolver(self.ops, max_iters=cfg.max_iters)

    def _build_linear_solver(self) -> LinearSolver | None:
        if self.config.nonlinear.solver == "fixed-point":
            return None
        kind = self.config.linear.kind
        if kind == "sparse":
            if self.jac is None:
                raise IllegalInputError(_SPARSE_NEEDS_JAC_MSG)
            return SparseLinearSolver(self.rhs, self.ops, self.jac)
        if kind == "krylov":
            return KrylovLinearSolver(
                self.rhs,
                self.ops,
                rtol=self.config.linear.krylov_rtol,
                max_iters=self.config.linear.max_krylov,
            )
        return DenseLinearSolver(self.rhs, self.ops, self.jac)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def t(self) -> float:
        """Time of the last accepted step."""
        return self.state.t

    @property
    def y(self) -> FloatArray:
        """Copy of the solution at t."""
        vec = self.history.y if self.history.primed else self._y0
        return np.array(self.ops.to_array(vec), dtype=float, copy=True)

    @property
    def status(self) -> IntegratorStatus:
        """Lifecycle status."""
        return self.state.status

    @property
    def stats(self) -> IntegratorStats:
        """Cumulative statistics."""
        st = self.state
        return IntegratorStats(
            nst=st.nst,
            nfe=self.rhs.nfe,
            nsetups=self.driver.nsetups,
            nje=self.driver.nje,
            nni=self.driver.nni,
            ncfn=self.failures.ncfn,
            netf=self.failures.netf,
            q_last=st.q_last,
            q_current=st.q,
            h_init_used=st.h_init_used,
            h_last=st.h_prev,
            h_current=st.h,
            t_current=st.t,
        )

    def estimated_local_errors(self) -> FloatArray:
        """Return tq[2]*acor of the last accepted step (zeros before any step)."""
        acor = self.controller.last_acor
        if acor is None:
            return np.zeros_like(self.y)
        local = self.estimator.local_errors(acor, self.controller.last_tq2)
        return np.array(self.ops.to_array(local), dtype=float, copy=True)

    def request_stop(self) -> None:
        """Ask solve/run to return at the next step boundary."""
        self._stop_requested = True

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _upper_bound_h0(self, tdist: float, y: Vector, fy: Vector) -> float:
        y_arr = np.abs(np.asarray(self.ops.to_array(y), dtype=float))
        f_arr = np.abs(np.asarray(self.ops.to_array(fy), dtype=float))
        denom = _HUB_FACTOR * y_arr + self.weights.atol
        hub_inv = float(np.max(f_arr / denom))
        hub = _HUB_FACTOR * tdist
        if hub * hub_inv > 1.0:
            hub = 1.0 / hub_inv
        return hub

    def _ydd_norm(self, hg: float, y: Vector, fy: Vector) -> float:
        ops = self.ops
        t0 = self.state.t
        y_trial = ops.linear_sum(1.0, y, hg, fy)
        f_trial = self.rhs(t0 + hg, y_trial)
        ydd = ops.linear_sum(1.0 / hg, f_trial, -1.0 / hg, fy)
        return ops.wrms_norm(ydd, self.weights.weights)

    def _initial_step(self, tout: float, y: Vector, fy: Vector) -> float:
        """Estimate h0 from a second-derivative norm (magnitude and sign)."""
        t0 = self.state.t
        tdiff = tout - t0
        tdist = abs(tdiff)
        tround = _UROUND * max(abs(t0), abs(tout))
        if tdist < 2.0 * tround:
            raise IllegalInputError(_TOUT_TOO_CLOSE_MSG.format(tout=tout, t0=t0))
        sign = 1.0 if tdiff > 0.0 else -1.0

        hlb = _HLB_FACTOR * tround
        hub = self._upper_bound_h0(tdist, y, fy)
        hg = math.sqrt(hlb * hub)
        if hub < hlb:
            return sign * hg

        hs = hg
        hnew = hg
        hnew_ok = False
        for count1 in range(1, _HIN_MAX_ITERS + 1):
            hg_ok = False
            yddnrm = 0.0
            for _ in range(_HIN_MAX_ITERS):
                try:
                    yddnrm = self._ydd_norm(sign * hg, y, fy)
                except RecoverableCallbackError:
                    hg *= 0.2
                    continue
                hg_ok = True
                break

            if not hg_ok:
                if count1 <= 2:
                    raise UserCallbackFatalError(_HIN_RHS_MSG)
                hnew = hs
                break

            hs = hg
            if hnew_ok or count1 == _HIN_MAX_ITERS:
                hnew = hg
                break

            if yddnrm * hub * hub > 2.0:
                hnew = math.sqrt(2.0 / yddnrm)
            else:
                hnew = math.sqrt(hg * hub)
            hrat = hnew / hg
            if 0.5 < hrat < 2.0:
                hnew_ok = True
            if count1 > 1 and hrat > 2.0:
                hnew = hg
                hnew_ok = True
            hg = hnew

        h0 = min(max(_H_BIAS * hnew, hlb), hub)
        return sign * h0

    def _prime(self, target: float | None) -> None:
        st = self.state
        step = self.config.step
        y = self._y0

        self.weights.update(y)
        try:
            fy = self.rhs(st.t, y)
        except RecoverableCallbackError as exc:
            raise UserCallbackFatalError(_FIRST_RHS_MSG.format(t=st.t, exc=exc)) from exc

        if step.h_init is not None:
            sign = 1.0 if target is None or target >= st.t else -1.0
            h0 = sign * step.h_init
            h_abs = min(max(abs(h0), step.h_min), step.h_max)
            if h_abs != abs(h0):
                warnings.warn(
                    _H_INIT_CLIPPED_MSG.format(
                        value=step.h_init,
                        h_min=step.h_min,
                        h_max=step.h_max,
                    ),
                    RuntimeWarning,
                    stacklevel=3,
                )
        else:
            if target is None:
                raise IllegalInputError(_NO_DIRECTION_MSG)
            h0 = self._initial_step(target, y, fy)
            h_abs = min(max(abs(h0), step.h_min), step.h_max)
        h0 = math.copysign(h_abs, h0)

        self.history.prime(y, fy, h0)
        st.h = h0
        st.h_init_used = h0
        st.q = 1
        st.qwait = 2
        st.status = IntegratorStatus.PRIMED
        logger.debug("history primed at t=%.6g with h0=%.6g", st.t, h0)

    def _raise_if_failed(self) -> None:
        error = self.controller.fatal_error
        if self.state.status is IntegratorStatus.FAILED and error is not None:
            raise error

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def attempt_step(self, tout: float | None = None) -> StepAttemptRecord:
        """Make a single step attempt.

        Args:
            tout: Direction/scale hint for the initial step size; only used
                before the first step when h_init is not configured.

        Returns:
            The attempt record. A FATAL outcome carries its exception in
            record.error and leaves the integrator FAILED.
        """
        if not self.history.primed:
            self._prime(tout if tout is not None else self.state.tstop)
        return self.controller.attempt_step()

    def step(self, tout: float | None = None) -> StepAttemptRecord:
        """Attempt until a step is accepted.

        Args:
            tout: Initial-step hint, as for attempt_step.

        Raises:
            IntegratorError: On any fatal condition.

        Returns:
            The record of the accepted attempt.
        """
        while True:
            record = self.attempt_step(tout)
            if record.outcome is AttemptOutcome.ACCEPTED:
                return record
            if record.outcome is AttemptOutcome.FATAL:
                if record.error is None:
                    raise IntegratorError(record.outcome.value)
                raise record.error

    def solve(self, tout: float, *, tstop: float | None = None) -> SolveResult:
        """Advance until tout, landing on it exactly.

        Args:
            tout: Output time.
            tstop: Optional stop time; integration never steps past it.

        Raises:
            IllegalInputError: If tout or tstop lie behind the current time.
            TooMuchWorkError: If max_steps steps do not reach the target.
            IntegratorError: On any other fatal condition.

        Returns:
            SolveResult with code SUCCESS or STOP_TIME_REACHED.
        """
        self._raise_if_failed()
        st = self.state
        tout = float(tout)
        t_start = st.t
        direction = math.copysign(1.0, st.h) if self.history.primed else 1.0
        if tout != t_start and not self.history.primed:
            direction = 1.0 if tout > t_start else -1.0
        if (tout - t_start) * direction < 0.0:
            raise IllegalInputError(_TOUT_BEHIND_MSG.format(tout=tout, t=t_start))
        if tstop is not None and (tstop - t_start) * direction < 0.0:
            raise IllegalInputError(_TSTOP_BEHIND_MSG.format(tstop=tstop, t=t_start))

        stop_at = tout
        stops_at_tstop = False
        if tstop is not None and (tstop - tout) * direction <= 0.0:
            stop_at = float(tstop)
            stops_at_tstop = True

        if stop_at == st.t:
            code = ResultCode.STOP_TIME_REACHED if stops_at_tstop else ResultCode.SUCCESS
            return SolveResult(t=st.t, y=self.y, code=code)

        st.tstop = stop_at
        nsteps = 0
        while (stop_at - st.t) * direction > 0.0:
            if self._stop_requested:
                self._stop_requested = False
                logger.info("stop requested at t=%.6g", st.t)
                return SolveResult(t=st.t, y=self.y, code=ResultCode.SUCCESS, interrupted=True)
            if nsteps >= self.config.step.max_steps:
                ctx = self.failures.context(t=st.t, h=st.h, q=st.q, nst=st.nst)
                error = TooMuchWorkError(
                    _TOO_MUCH_WORK_MSG.format(n=nsteps, target=stop_at),
                    context=ctx,
                )
                logger.warning("integration failed (%s): %s", error.code.value, error)
                raise error
            self.step(stop_at)
            nsteps += 1

        st.status = IntegratorStatus.STOPPED
        code = ResultCode.STOP_TIME_REACHED if stops_at_tstop else ResultCode.SUCCESS
        return SolveResult(t=st.t, y=self.y, code=code)

    def run(self, core: ModelCore) -> None:
        """Advance a ModelCore through its output times.

        Each output time is reached exactly and stored with
        core.advance_timestep.

        Args:
            core: ModelCore positioned at the integrator's current time.

        Raises:
            IllegalInputError: If the core's time or state shape disagree with
                the integrator.
        """
        if not math.isclose(core.current_time, self.state.t, rel_tol=0.0, abs_tol=1e-14):
            raise IllegalInputError(
                _CORE_TIME_MSG.format(core_t=core.current_time, t=self.state.t)
            )
        if core.state_shape != self.y.shape:
            raise IllegalInputError(
                _CORE_SHAPE_MSG.format(actual=core.state_shape, expected=self.y.shape)
            )

        for idx in range(core.current_step, core.n_timesteps - 1):
            t1 = core.get_time_at(idx + 1)
            result = self.solve(t1)
            if result.interrupted:
                return
            core.advance_timestep(result.y)
