# tests/mstep_engine/test_config.py
"""Tests for mstep_engine.config (native dataclasses and YAML settings)."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest
from pydantic import ValidationError

from mstep_engine.config import (
    ControllerConfig,
    IntegratorConfig,
    IntegratorSettings,
    load_settings,
)

# -----------------------------------------------------------------------------
# Native configuration
# -----------------------------------------------------------------------------


def test_default_integrator_config() -> None:
    """Defaults: BDF, Newton with a dense linear solver, CVODE limits."""
    cfg = IntegratorConfig()
    assert cfg.order.method == "bdf"
    assert cfg.order.max_order is None
    assert cfg.nonlinear.solver == "newton"
    assert cfg.nonlinear.max_iters == 3
    assert cfg.linear.kind == "dense"
    assert cfg.failure.max_conv_fails == 10
    assert cfg.failure.max_error_test_fails == 7
    assert cfg.step.max_steps == 500


def test_config_is_frozen() -> None:
    """Configuration objects are immutable."""
    cfg = ControllerConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.threshold = 2.0  # type: ignore[misc]


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------


def test_settings_to_integrator_config() -> None:
    """Flat settings map onto the grouped configuration."""
    settings = IntegratorSettings(
        method="adams",
        max_order=8,
        rtol=1e-5,
        atol=1e-8,
        h_max=0.5,
        nonlinear_solver="fixed-point",
        max_nonlinear_iters=4,
        linear_solver="krylov",
        max_error_test_fails=3,
    )
    cfg = settings.to_integrator_config()
    assert cfg.order.method == "adams"
    assert cfg.order.max_order == 8
    assert cfg.tolerances.rtol == 1e-5
    assert cfg.tolerances.atol == 1e-8
    assert cfg.step.h_max == 0.5
    assert cfg.nonlinear.solver == "fixed-point"
    assert cfg.nonlinear.max_iters == 4
    assert cfg.linear.kind == "krylov"
    assert cfg.failure.max_error_test_fails == 3
    # untouched groups keep their defaults
    assert cfg.controller == ControllerConfig()


@pytest.mark.parametrize(
    "field",
    [
        {"rtol": 0.0},
        {"atol": -1.0},
        {"max_steps": 0},
        {"method": "rk45"},
        {"krylov_rtol": 1.5},
    ],
)
def test_settings_validation(field: dict[str, object]) -> None:
    """Out-of-range values are rejected by pydantic."""
    with pytest.raises(ValidationError):
        IntegratorSettings.model_validate(field)


def test_load_settings_from_yaml(tmp_path: Path) -> None:
    """Settings load from a YAML document, optionally from a section."""
    path = tmp_path / "run.yml"
    path.write_text(
        "model: robertson\n"
        "integrator:\n"
        "  method: bdf\n"
        "  rtol: 1.0e-4\n"
        "  atol: 1.0e-8\n"
        "  max_steps: 2000\n"
        "  comment: ignored\n",
        encoding="utf-8",
    )
    settings = load_settings(path, section="integrator")
    assert settings.rtol == 1e-4
    assert settings.max_steps == 2000
    assert settings.to_integrator_config().step.max_steps == 2000


def test_load_settings_empty_file_gives_defaults(tmp_path: Path) -> None:
    """An empty document is an empty mapping."""
    path = tmp_path / "empty.yml"
    path.write_text("", encoding="utf-8")
    assert load_settings(path) == IntegratorSettings()


def test_load_settings_requires_mapping(tmp_path: Path) -> None:
    """A YAML list is not a settings mapping."""
    path = tmp_path / "bad.yml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError, match="must contain a mapping"):
        load_settings(path)
