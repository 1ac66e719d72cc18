# src/mstep_engine/model_core.py
"""Output time grid and stored solution history.

ModelCore holds the times at which the caller wants the solution and,
optionally, the solution at every one of them. It does not integrate anything;
Integrator.run advances it one output time at a time, landing exactly on each
grid point.

The grid may be non-uniform. The state is a 1D vector of n_states components.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import numpy as np
import numpy.typing as npt

if TYPE_CHECKING:
    from numpy.typing import DTypeLike


# Error / message constants -------------------------------------------------

_TIMEGRID_1D_ERROR = "time_grid must be a 1D array"
_TIMEGRID_MIN_POINTS_ERROR = "time_grid must contain at least one time point"
_TIMEGRID_MONOTONE_ERROR = "time_grid must be strictly increasing"
_TIMEGRID_FINITE_ERROR = "time_grid must contain only finite values"
_N_STATES_ERROR = "n_states must be >= 1; got {value}"

_INITIAL_STATE_SHAPE_ERROR = "Initial state shape {actual} mismatch vs. {expected}"
_NEXT_STATE_SHAPE_ERROR = "Next state shape {actual} does not match expected {expected}"

_HISTORY_NOT_STORED_ERROR = (
    "Full history is not stored (store_history=False); get_state_at is unavailable."
)
_STEP_OOB_ERROR = "Step out of bounds"
_FINAL_TIMESTEP_ERROR = "Simulation has already reached final timestep"
_DT_INDEX_OOB_ERROR = "dt index out of bounds: {idx}"
_TIME_INDEX_OOB_ERROR = "time index out of bounds: {idx}"


# Typing helpers ------------------------------------------------------------

FloatArray = npt.NDArray[np.floating[Any]]


@dataclass(slots=True)
class ModelCoreOptions:
    """Optional configuration for ModelCore.

    Attributes:
        state_names: Optional names for the state components.
        store_history: Whether to store the solution at every output time.
        dtype: Floating-point dtype for stored arrays.
    """

    state_names: tuple[str, ...] | None = None
    store_history: bool = True
    dtype: DTypeLike = np.float64


class ModelCore:
    """Output times and solution storage for one integration."""

    def __init__(
        self,
        n_states: int,
        time_grid: npt.ArrayLike,
        *,
        options: ModelCoreOptions | None = None,
    ) -> None:
        """
        Initialize ModelCore.

        Args:
            n_states: Number of state components.
            time_grid: 1D array of output times, shape (n_timesteps,).
            options: Optional ModelCoreOptions for additional configuration.

        Raises:
            ValueError: if time_grid or n_states is invalid.
        """
        opts = options or ModelCoreOptions()
        self.dtype = np.dtype(opts.dtype)

        if int(n_states) < 1:
            raise ValueError(_N_STATES_ERROR.format(value=n_states))
        self.n_states = int(n_states)
        self.state_shape: tuple[int, ...] = (self.n_states,)

        self.time_grid = np.asarray(time_grid, dtype=self.dtype)
        if self.time_grid.ndim != 1:
            raise ValueError(_TIMEGRID_1D_ERROR)

        self.n_timesteps = int(self.time_grid.size)
        if self.n_timesteps < 1:
            raise ValueError(_TIMEGRID_MIN_POINTS_ERROR)
        if not np.all(np.isfinite(self.time_grid)):
            raise ValueError(_TIMEGRID_FINITE_ERROR)

        if self.n_timesteps > 1:
            dt_arr = np.diff(self.time_grid)
            if np.any(dt_arr <= 0):
                raise ValueError(_TIMEGRID_MONOTONE_ERROR)
            self.dt_grid = np.asarray(dt_arr, dtype=self.dtype)
        else:
            self.dt_grid = np.asarray([], dtype=self.dtype)

        if opts.state_names is None:
            self.state_names = tuple(f"y{i}" for i in range(self.n_states))
        else:
            if len(opts.state_names) != self.n_states:
                raise ValueError(
                    _INITIAL_STATE_SHAPE_ERROR.format(
                        actual=(len(opts.state_names),),
                        expected=self.state_shape,
                    )
                )
            self.state_names = tuple(opts.state_names)

        self.store_history = bool(opts.store_history)
        self.current_step = 0
        self.current_state = np.zeros(self.state_shape, dtype=self.dtype)

        # Optional full history: (n_timesteps, n_states)
        self.state_array: FloatArray | None
        if self.store_history:
            self.state_array = cast(
                "FloatArray",
                np.zeros((self.n_timesteps, self.n_states), dtype=self.dtype),
            )
        else:
            self.state_array = None

    # ------------------------------------------------------------------
    # Time helpers
    # ------------------------------------------------------------------

    @property
    def current_time(self) -> float:
        """Current output time t = time_grid[current_step]."""
        return float(self.time_grid[self.current_step])

    @property
    def final_time(self) -> float:
        """Last output time."""
        return float(self.time_grid[-1])

    def get_time_at(self, step_idx: int) -> float:
        """
        Return time at a given step index.

        Args:
            step_idx: Timestep index in [0, n_timesteps).

        Raises:
            IndexError: if step_idx is out of bounds.

        Returns:
            Time as a float.
        """
        if not (0 <= step_idx < self.n_timesteps):
            raise IndexError(_TIME_INDEX_OOB_ERROR.format(idx=step_idx))
        return float(self.time_grid[step_idx])

    def get_dt(self, step_idx: int) -> float:
        """
        Return the output interval [t_step_idx, t_step_idx+1].

        Args:
            step_idx: Timestep index in [0, n_timesteps - 1].

        Raises:
            IndexError: if step_idx is out of bounds.

        Returns:
            Interval length as a float.
        """
        if self.n_timesteps <= 1:
            return 0.0
        if not (0 <= step_idx < self.n_timesteps - 1):
            raise IndexError(_DT_INDEX_OOB_ERROR.format(idx=step_idx))
        return float(self.dt_grid[step_idx])

    # ------------------------------------------------------------------
    # Initialization / accessors
    # ------------------------------------------------------------------

    def set_initial_state(self, initial_state: npt.ArrayLike) -> None:
        """
        Set the state at time_grid[0] and rewind to the first output time.

        Args:
            initial_state: Initial state, shape (n_states,).

        Raises:
            ValueError: if initial_state has incorrect shape.
        """
        initial_state_arr = np.asarray(initial_state, dtype=self.dtype)
        if initial_state_arr.shape != self.state_shape:
            raise ValueError(
                _INITIAL_STATE_SHAPE_ERROR.format(
                    actual=initial_state_arr.shape,
                    expected=self.state_shape,
                )
            )

        np.copyto(self.current_state, initial_state_arr)
        if self.store_history and self.state_array is not None:
            self.state_array[0] = self.current_state
        self.current_step = 0

    def get_current_state(self) -> FloatArray:
        """Return a copy of the current state."""
        return self.current_state.copy()

    def get_state_at(self, step: int) -> FloatArray:
        """
        Return the stored state at a given output index.

        Args:
            step: Timestep index in [0, n_timesteps).

        Returns:
            State at the given output time, shape (n_states,).

        Raises:
            RuntimeError: if history is not stored.
            IndexError: if step is out of bounds.
        """
        if not self.store_history or self.state_array is None:
            raise RuntimeError(_HISTORY_NOT_STORED_ERROR)
        if not (0 <= step < self.n_timesteps):
            raise IndexError(_STEP_OOB_ERROR)
        return cast("FloatArray", self.state_array[step])

    # ------------------------------------------------------------------
    # Stepping / updates
    # ------------------------------------------------------------------

    def advance_timestep(self, next_state: npt.ArrayLike) -> None:
        """
        Store the state at the next output time and advance to it.

        Args:
            next_state: State at the next output time, shape (n_states,).

        Raises:
            ValueError: if next_state has incorrect shape.
            RuntimeError: if the final output time was already reached.
        """
        next_state_arr = np.asarray(next_state, dtype=self.dtype)
        if next_state_arr.shape != self.state_shape:
            raise ValueError(
                _NEXT_STATE_SHAPE_ERROR.format(
                    actual=next_state_arr.shape, expected=self.state_shape
                )
            )
        if self.current_step >= self.n_timesteps - 1:
            raise RuntimeError(_FINAL_TIMESTEP_ERROR)

        np.copyto(self.current_state, next_state_arr)
        self.current_step += 1
        if self.store_history and self.state_array is not None:
            self.state_array[self.current_step] = self.current_state
