# mstep_engine/examples/robertson.py
"""Robertson chemical kinetics, the classic stiff test problem.

    y1' = -0.04 y1 + 1e4 y2 y3
    y2' =  0.04 y1 - 1e4 y2 y3 - 3e7 y2^2
    y3' =  3e7 y2^2

with y(0) = (1, 0, 0). The components sum to 1 for all t.

The script integrates the system twice on a logarithmic output grid:

1) BDF with Newton iterations and an analytic dense Jacobian.
2) BDF with Newton iterations and a difference-quotient Jacobian.

and saves the trajectories plus the per-run statistics. Adams with fixed-point
iteration is also attempted to show why stiff problems need BDF: it gives up
long before the final time.

This script saves plots to disk (no interactive windows).
"""

from __future__ import annotations

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from mstep_engine import (
    Integrator,
    IntegratorConfig,
    IntegratorFatalError,
    ModelCore,
    ModelCoreOptions,
    OrderConfig,
    ToleranceConfig,
)
from mstep_engine.config import NonlinearConfig, StepSizeConfig

_OUTPUT_DIR = Path(__file__).resolve().parent / "output" / "robertson"
_STATE_ARRAY_NONE_ERROR = "state_array is None despite store_history=True"


def robertson_rhs(t: float, y: np.ndarray) -> np.ndarray:  # noqa: ARG001
    """Right-hand side of the Robertson system.

    Returns:
        dy/dt, shape (3,).
    """
    y1, y2, y3 = y
    return np.array(
        [
            -0.04 * y1 + 1.0e4 * y2 * y3,
            0.04 * y1 - 1.0e4 * y2 * y3 - 3.0e7 * y2 * y2,
            3.0e7 * y2 * y2,
        ]
    )


def robertson_jac(t: float, y: np.ndarray) -> np.ndarray:  # noqa: ARG001
    """Analytic Jacobian of the Robertson system.

    Returns:
        df/dy, shape (3, 3).
    """
    _, y2, y3 = y
    return np.array(
        [
            [-0.04, 1.0e4 * y3, 1.0e4 * y2],
            [0.04, -1.0e4 * y3 - 6.0e7 * y2, -1.0e4 * y2],
            [0.0, 6.0e7 * y2, 0.0],
        ]
    )


def _config(method: str, solver: str) -> IntegratorConfig:
    return IntegratorConfig(
        tolerances=ToleranceConfig(rtol=1e-4, atol=np.array([1e-8, 1e-14, 1e-6])),
        order=OrderConfig(method=method),  # type: ignore[arg-type]
        nonlinear=NonlinearConfig(solver=solver),  # type: ignore[arg-type]
        step=StepSizeConfig(max_steps=5000),
    )


def _run(time_grid: np.ndarray, config: IntegratorConfig, *, analytic_jac: bool) -> tuple[np.ndarray, str]:
    """Run one configuration through ModelCore.

    Raises:
        RuntimeError: If the state history is not available after the run.

    Returns:
        (state history of shape (n_times, 3), statistics summary).
    """
    core = ModelCore(3, time_grid, options=ModelCoreOptions(state_names=("y1", "y2", "y3")))
    core.set_initial_state(np.array([1.0, 0.0, 0.0]))

    integ = Integrator.from_model_core(
        core,
        robertson_rhs,
        config=config,
        jac=robertson_jac if analytic_jac else None,
    )
    integ.run(core)

    if core.state_array is None:
        raise RuntimeError(_STATE_ARRAY_NONE_ERROR)
    st = integ.stats
    summary = (
        f"nst={st.nst} nfe={st.nfe} nje={st.nje} nsetups={st.nsetups} "
        f"nni={st.nni} ncfn={st.ncfn} netf={st.netf} q_last={st.q_last}"
    )
    return core.state_array, summary


def save_plot(time_grid: np.ndarray, states: np.ndarray, *, title: str, out_path: Path) -> None:
    """Save the three components on a log time axis (y2 scaled by 1e4)."""
    t = time_grid[1:]
    plt.figure(figsize=(8, 5))
    plt.semilogx(t, states[1:, 0], label="y1")
    plt.semilogx(t, 1.0e4 * states[1:, 1], label="1e4 * y2")
    plt.semilogx(t, states[1:, 2], label="y3")
    drift = float(np.max(np.abs(states.sum(axis=1) - 1.0)))
    plt.title(f"{title}\nmax |y1+y2+y3-1| = {drift:.3e}")
    plt.xlabel("Time")
    plt.grid(visible=True)
    plt.legend()
    plt.tight_layout()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(out_path, dpi=150)
    plt.close()


def main() -> None:
    """Integrate Robertson to t = 4e10 and save the plots to examples/output/."""
    time_grid = np.concatenate(([0.0], 0.4 * 10.0 ** np.arange(0, 11)))

    for analytic_jac, tag in ((True, "analytic"), (False, "dq")):
        states, summary = _run(time_grid, _config("bdf", "newton"), analytic_jac=analytic_jac)
        print(f"BDF/Newton ({tag} Jacobian): {summary}")  # noqa: T201
        save_plot(
            time_grid,
            states,
            title=f"Robertson, BDF + Newton ({tag} Jacobian)",
            out_path=_OUTPUT_DIR / f"robertson_bdf_{tag}.png",
        )

    try:
        _run(time_grid, _config("adams", "fixed-point"), analytic_jac=False)
    except IntegratorFatalError as exc:
        print(f"Adams/fixed-point gave up as expected: {exc}")  # noqa: T201


if __name__ == "__main__":
    main()
