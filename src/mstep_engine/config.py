# src/mstep_engine/config.py
"""Configuration for the multistep integrator.

Two layers:

- Native, frozen dataclasses grouped by concern (tolerances, step sizes,
  order, controller constants, nonlinear solver, failure limits, linear
  solver). IntegratorConfig aggregates them and is what Integrator consumes.
- IntegratorSettings, a flat pydantic model intended for YAML files. Unknown
  fields are allowed and ignored so settings can live inside a larger
  document. to_integrator_config() translates to the native form.

Controller constants are formula-family specific configuration; the defaults
are the values used by CVODE for both BDF and Adams.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field

MethodName = Literal["bdf", "adams"]
NonlinearSolverName = Literal["newton", "fixed-point"]
LinearSolverName = Literal["dense", "sparse", "krylov"]

_SETTINGS_NOT_MAPPING_MSG = "settings file {path} must contain a mapping; got {kind}"


# =============================================================================
# Native configuration dataclasses
# =============================================================================


@dataclass(slots=True, frozen=True)
class ToleranceConfig:
    """Error tolerances.

    Attributes:
        rtol: Relative tolerance (scalar or per component).
        atol: Absolute tolerance (scalar or per component).
    """

    rtol: Any = 1e-6
    atol: Any = 1e-9


@dataclass(slots=True, frozen=True)
class StepSizeConfig:
    """Step-size bounds and work limits.

    Attributes:
        h_init: Initial step size; computed from the problem when None.
        h_min: Minimum step size magnitude.
        h_max: Maximum step size magnitude.
        max_steps: Internal steps allowed per call before TOO_MUCH_WORK.
    """

    h_init: float | None = None
    h_min: float = 0.0
    h_max: float = float("inf")
    max_steps: int = 500


@dataclass(slots=True, frozen=True)
class OrderConfig:
    """Formula family and order window.

    Attributes:
        method: "bdf" (stiff) or "adams" (non-stiff).
        max_order: Maximum order; the family maximum when None.
    """

    method: MethodName = "bdf"
    max_order: int | None = None


@dataclass(slots=True, frozen=True)
class ControllerConfig:
    """Step and order selection constants.

    Attributes:
        bias_lower: Safety bias on the order q-1 error estimate.
        bias_same: Safety bias on the order q error estimate.
        bias_higher: Safety bias on the order q+1 error estimate.
        addon: Added to the denominator of every growth ratio.
        threshold: Growth ratios below this keep the step size.
        eta_max_first: Growth cap after the first step.
        eta_max_early: Growth cap while nst <= small_nst.
        eta_max: Growth cap afterwards.
        small_nst: Number of steps using eta_max_early.
        eta_min_error: Smallest reduction after an error-test failure.
        eta_max_error: Largest reduction from the second error-test failure on.
        eta_conv_fail: Reduction after a convergence failure.
        order_tie_rtol: Relative tolerance for treating growth ratios as equal.
    """

    bias_lower: float = 6.0
    bias_same: float = 6.0
    bias_higher: float = 10.0
    addon: float = 1e-6
    threshold: float = 1.5
    eta_max_first: float = 1.0e4
    eta_max_early: float = 10.0
    eta_max: float = 10.0
    small_nst: int = 10
    eta_min_error: float = 0.1
    eta_max_error: float = 0.2
    eta_conv_fail: float = 0.25
    order_tie_rtol: float = 1e-10


@dataclass(slots=True, frozen=True)
class NonlinearConfig:
    """Corrector iteration settings.

    Attributes:
        solver: "newton" or "fixed-point".
        max_iters: Iteration cap per solve.
        nls_coef: Safety coefficient in the convergence tolerance.
        crdown: Convergence-rate memory factor.
        rdiv: Divergence ratio between successive correction norms.
        dgmax: Relative gamma change that forces a linear-solver setup.
        setup_period: Steps between forced linear-solver setups.
        jacobian_period: Steps between forced Jacobian evaluations.
    """

    solver: NonlinearSolverName = "newton"
    max_iters: int = 3
    nls_coef: float = 0.1
    crdown: float = 0.3
    rdiv: float = 2.0
    dgmax: float = 0.3
    setup_period: int = 20
    jacobian_period: int = 51


@dataclass(slots=True, frozen=True)
class FailureConfig:
    """Retry limits.

    Attributes:
        max_conv_fails: Convergence failures at one step time before giving up.
        max_error_test_fails: Error-test failures at one step time before
            giving up.
        conv_fails_before_setup: Convergence failures that force a Jacobian
            refresh.
        error_fails_before_order_drop: Error-test failures that force an
            order reduction.
        error_fails_before_reload: Error-test failures at order 1 after which
            the derivative history entry is rebuilt from f.
    """

    max_conv_fails: int = 10
    max_error_test_fails: int = 7
    conv_fails_before_setup: int = 2
    error_fails_before_order_drop: int = 2
    error_fails_before_reload: int = 3


@dataclass(slots=True, frozen=True)
class LinearSolverConfig:
    """Linear solver selection for Newton iterations.

    Attributes:
        kind: "dense", "sparse" (requires a sparse Jacobian) or "krylov".
        krylov_rtol: GMRES relative residual tolerance.
        max_krylov: GMRES iteration cap.
    """

    kind: LinearSolverName = "dense"
    krylov_rtol: float = 0.05
    max_krylov: int = 100


@dataclass(slots=True, frozen=True)
class IntegratorConfig:
    """Full integrator configuration."""

    tolerances: ToleranceConfig = field(default_factory=ToleranceConfig)
    step: StepSizeConfig = field(default_factory=StepSizeConfig)
    order: OrderConfig = field(default_factory=OrderConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    nonlinear: NonlinearConfig = field(default_factory=NonlinearConfig)
    failure: FailureConfig = field(default_factory=FailureConfig)
    linear: LinearSolverConfig = field(default_factory=LinearSolverConfig)


# =============================================================================
# YAML-facing settings
# =============================================================================


class IntegratorSettings(BaseModel):
    """Flat, YAML-friendly integrator settings.

    Scalar tolerances only; per-component tolerances go through the native
    ToleranceConfig.
    """

    model_config = ConfigDict(extra="allow")

    method: MethodName = Field(default="bdf", description="Formula family")
    max_order: int | None = Field(default=None, ge=1, le=12)

    rtol: float = Field(default=1e-6, gt=0.0)
    atol: float = Field(default=1e-9, gt=0.0)

    h_init: float | None = Field(default=None, gt=0.0)
    h_min: float = Field(default=0.0, ge=0.0)
    h_max: float = Field(default=float("inf"), gt=0.0)
    max_steps: int = Field(default=500, ge=1)

    nonlinear_solver: NonlinearSolverName = Field(default="newton")
    max_nonlinear_iters: int = Field(default=3, ge=1)
    nls_coef: float = Field(default=0.1, gt=0.0)

    linear_solver: LinearSolverName = Field(default="dense")
    krylov_rtol: float = Field(default=0.05, gt=0.0, lt=1.0)

    max_conv_fails: int = Field(default=10, ge=1)
    max_error_test_fails: int = Field(default=7, ge=1)

    def to_integrator_config(self) -> IntegratorConfig:
        """Convert to the native IntegratorConfig.

        Returns:
            Fully constructed IntegratorConfig.
        """
        return IntegratorConfig(
            tolerances=ToleranceConfig(rtol=self.rtol, atol=self.atol),
            step=StepSizeConfig(
                h_init=self.h_init,
                h_min=self.h_min,
                h_max=self.h_max,
                max_steps=self.max_steps,
            ),
            order=OrderConfig(method=self.method, max_order=self.max_order),
            nonlinear=NonlinearConfig(
                solver=self.nonlinear_solver,
                max_iters=self.max_nonlinear_iters,
                nls_coef=self.nls_coef,
            ),
            failure=FailureConfig(
                max_conv_fails=self.max_conv_fails,
                max_error_test_fails=self.max_error_test_fails,
            ),
            linear=LinearSolverConfig(
                kind=self.linear_solver,
                krylov_rtol=self.krylov_rtol,
            ),
        )


def load_settings(path: str | Path, *, section: str | None = None) -> IntegratorSettings:
    """Read IntegratorSettings from a YAML file.

    Args:
        path: YAML file path.
        section: Optional top-level key holding the settings mapping.

    Raises:
        ValueError: If the document (or section) is not a mapping.

    Returns:
        Validated settings.
    """
    path = Path(path)
    with path.open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        data = {}
    if section is not None and isinstance(data, dict):
        data = data.get(section) or {}
    if not isinstance(data, dict):
        raise ValueError(
            _SETTINGS_NOT_MAPPING_MSG.format(path=path, kind=type(data).__name__)
        )
    return IntegratorSettings.model_validate(data)
