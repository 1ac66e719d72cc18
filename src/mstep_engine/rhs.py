# src/mstep_engine/rhs.py
"""User callback wrappers (right-hand side and Jacobian).

The wrappers enforce shape/dtype, count evaluations, and sort exceptions:

- RecoverableCallbackError propagates unchanged; the stepping loop retries the
  step with a smaller step size.
- Any other exception is converted into UserCallbackFatalError (the original
  exception is kept as __cause__).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeAlias

import numpy as np
import numpy.typing as npt
from scipy.sparse import issparse

from .errors import RecoverableCallbackError, UserCallbackFatalError
from .vector_ops import Vector, VectorOps

FloatArray: TypeAlias = npt.NDArray[np.floating[Any]]
RHSFunction = Callable[[float, FloatArray], FloatArray]
JacobianFunction = Callable[[float, FloatArray], Any]

_RHS_SHAPE_ERROR_MSG = "rhs shape {actual} does not match expected {expected}"
_JAC_SHAPE_ERROR_MSG = "jacobian shape {actual} does not match expected {expected}"
_RHS_FAILED_MSG = "rhs raised an unrecoverable error at t={t:.16g}: {exc}"
_JAC_FAILED_MSG = "jacobian raised an unrecoverable error at t={t:.16g}: {exc}"


class RhsEvaluator:
    """Counted, shape-checked wrapper around f(t, y).

    Args:
        rhs: User function f(t, y) -> ydot.
        ops: Vector backend.
        like: Template vector (the initial solution).
    """

    def __init__(self, rhs: RHSFunction, ops: VectorOps, like: Vector) -> None:
        self.rhs = rhs
        self.ops = ops
        self._like = like
        self.shape = np.shape(ops.to_array(like))
        self.nfe = 0

    def __call__(self, t: float, y: Vector) -> Vector:
        """Evaluate f(t, y).

        Args:
            t: Time.
            y: State vector.

        Raises:
            RecoverableCallbackError: If the user function requests a retry.
            UserCallbackFatalError: On any other failure or a shape mismatch.

        Returns:
            f(t, y) as a backend vector.
        """
        self.nfe += 1
        y_host = self.ops.to_array(y)
        try:
            f = self.rhs(float(t), y_host)
        except RecoverableCallbackError:
            raise
        except Exception as exc:
            raise UserCallbackFatalError(_RHS_FAILED_MSG.format(t=t, exc=exc)) from exc

        f_arr = np.asarray(f, dtype=float)
        if f_arr.shape != self.shape:
            raise UserCallbackFatalError(
                _RHS_SHAPE_ERROR_MSG.format(actual=f_arr.shape, expected=self.shape)
            )
        return self.ops.from_array(f_arr, self._like)


class JacobianEvaluator:
    """Counted, shape-checked wrapper around a user Jacobian J(t, y).

    Dense results are returned as 2D float arrays, sparse results as SciPy
    sparse matrices.

    Args:
        jac: User function J(t, y) -> (n, n) matrix.
        n: Number of state components.
    """

    def __init__(self, jac: JacobianFunction, n: int) -> None:
        self.jac = jac
        self.n = int(n)
        self.nje = 0

    def __call__(self, t: float, y: FloatArray) -> Any:
        """Evaluate J(t, y).

        Raises:
            RecoverableCallbackError: If the user function requests a retry.
            UserCallbackFatalError: On any other failure or a shape mismatch.

        Returns:
            Dense ndarray or SciPy sparse matrix.
        """
        self.nje += 1
        try:
            jac = self.jac(float(t), y)
        except RecoverableCallbackError:
            raise
        except Exception as exc:
            raise UserCallbackFatalError(_JAC_FAILED_MSG.format(t=t, exc=exc)) from exc

        if not issparse(jac):
            jac = np.asarray(jac, dtype=float)
        if tuple(jac.shape) != (self.n, self.n):
            raise UserCallbackFatalError(
                _JAC_SHAPE_ERROR_MSG.format(actual=jac.shape, expected=(self.n, self.n))
            )
        return jac
