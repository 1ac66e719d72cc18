"""Global pytest configuration and shared fixtures for mstep_engine."""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
import pytest

from mstep_engine.config import (
    IntegratorConfig,
    NonlinearConfig,
    OrderConfig,
    StepSizeConfig,
    ToleranceConfig,
)
from mstep_engine.vector_ops import NumpyVectorOps

FloatArray = np.ndarray
RHS = Callable[[float, FloatArray], FloatArray]

# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "slow: longer-running integration tests",
    )


# -----------------------------------------------------------------------------
# Problems
# -----------------------------------------------------------------------------


def decay_rhs(t: float, y: FloatArray) -> FloatArray:  # noqa: ARG001
    """y' = -y."""
    return -y


def harmonic_rhs(t: float, y: FloatArray) -> FloatArray:  # noqa: ARG001
    """y0' = y1, y1' = -y0 (period 2*pi)."""
    return np.array([y[1], -y[0]])


def robertson_rhs(t: float, y: FloatArray) -> FloatArray:  # noqa: ARG001
    """Robertson chemical kinetics (stiff, conserves y1 + y2 + y3)."""
    y1, y2, y3 = y
    return np.array(
        [
            -0.04 * y1 + 1.0e4 * y2 * y3,
            0.04 * y1 - 1.0e4 * y2 * y3 - 3.0e7 * y2 * y2,
            3.0e7 * y2 * y2,
        ]
    )


def robertson_jac(t: float, y: FloatArray) -> FloatArray:  # noqa: ARG001
    """Analytic Jacobian of robertson_rhs."""
    _, y2, y3 = y
    return np.array(
        [
            [-0.04, 1.0e4 * y3, 1.0e4 * y2],
            [0.04, -1.0e4 * y3 - 6.0e7 * y2, -1.0e4 * y2],
            [0.0, 6.0e7 * y2, 0.0],
        ]
    )


def make_config(
    *,
    rtol: float = 1e-6,
    atol: float = 1e-10,
    method: str = "bdf",
    solver: str = "newton",
    h_init: float | None = None,
    h_min: float = 0.0,
    max_steps: int = 500,
) -> IntegratorConfig:
    """Build an IntegratorConfig with the commonly varied fields."""
    return IntegratorConfig(
        tolerances=ToleranceConfig(rtol=rtol, atol=atol),
        step=StepSizeConfig(h_init=h_init, h_min=h_min, max_steps=max_steps),
        order=OrderConfig(method=method),  # type: ignore[arg-type]
        nonlinear=NonlinearConfig(solver=solver),  # type: ignore[arg-type]
    )


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def ops() -> NumpyVectorOps:
    """Default NumPy vector backend."""
    return NumpyVectorOps()


@pytest.fixture
def decay_config() -> IntegratorConfig:
    """Tolerances used for the y' = -y reference problem."""
    return make_config(rtol=1e-6, atol=1e-10)


@pytest.fixture
def config_factory() -> Callable[..., IntegratorConfig]:
    """Factory for IntegratorConfig objects (see make_config)."""
    return make_config


@pytest.fixture
def decay() -> RHS:
    """The y' = -y right-hand side."""
    return decay_rhs


@pytest.fixture
def harmonic() -> RHS:
    """The harmonic oscillator right-hand side."""
    return harmonic_rhs


@pytest.fixture
def robertson() -> tuple[RHS, RHS]:
    """Robertson right-hand side and analytic Jacobian."""
    return robertson_rhs, robertson_jac
