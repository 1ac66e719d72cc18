# src/mstep_engine/error_weights.py
"""Tolerance validation and error-weight computation.

The error weight of component i is

    w_i = 1 / (rtol_i * |y_i| + atol_i)

so that the weighted RMS norm of a vector is dimensionless and a value of 1.0
means "exactly at tolerance". Weights are recomputed once per accepted step
from the accepted solution.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import numpy.typing as npt

from .errors import IllegalInputError
from .vector_ops import Vector, VectorOps

_RTOL_POSITIVE_MSG = "rtol must be strictly positive and finite; got {value!r}"
_ATOL_POSITIVE_MSG = "atol must be strictly positive and finite; got {value!r}"
_TOL_SHAPE_MSG = "{name} has shape {actual}; expected scalar or {expected}"
_WEIGHT_NONPOSITIVE_MSG = (
    "error weight vector has a non-positive or non-finite component "
    "(min weight {wmin!r}); check atol"
)

FloatArray = npt.NDArray[np.floating[Any]]


def _validate_tolerance(
    value: float | npt.ArrayLike,
    *,
    name: str,
    msg: str,
    n: int,
) -> float | FloatArray:
    """Validate a scalar or per-component tolerance.

    Args:
        value: Tolerance value.
        name: Field name for messages.
        msg: Message template for non-positive values.
        n: Number of solution components.

    Raises:
        IllegalInputError: If any component is non-positive/non-finite, or the
            shape does not match.

    Returns:
        A float or a 1D float array of length n.
    """
    arr = np.asarray(value, dtype=float)
    if arr.ndim == 0:
        scalar = float(arr)
        if not (np.isfinite(scalar) and scalar > 0.0):
            raise IllegalInputError(msg.format(value=value))
        return scalar

    if arr.shape != (n,):
        raise IllegalInputError(
            _TOL_SHAPE_MSG.format(name=name, actual=arr.shape, expected=(n,))
        )
    if not (np.all(np.isfinite(arr)) and np.all(arr > 0.0)):
        raise IllegalInputError(msg.format(value=value))
    return arr


class ErrorWeights:
    """Owner of the per-component error weight vector.

    Args:
        ops: Vector backend.
        rtol: Relative tolerance (scalar or per component).
        atol: Absolute tolerance (scalar or per component).
        like: Template vector (the initial solution).

    Raises:
        IllegalInputError: If tolerances are not strictly positive.
    """

    def __init__(
        self,
        ops: VectorOps,
        rtol: float | npt.ArrayLike,
        atol: float | npt.ArrayLike,
        like: Vector,
    ) -> None:
        self.ops = ops
        n = int(np.size(ops.to_array(like)))
        self.rtol = _validate_tolerance(rtol, name="rtol", msg=_RTOL_POSITIVE_MSG, n=n)
        self.atol = _validate_tolerance(atol, name="atol", msg=_ATOL_POSITIVE_MSG, n=n)

        self._rtol_vec: Vector | None = None
        self._atol_vec: Vector | None = None
        if not isinstance(self.rtol, float):
            self._rtol_vec = ops.from_array(self.rtol, like)
        if not isinstance(self.atol, float):
            self._atol_vec = ops.from_array(self.atol, like)

        self.weights: Vector = ops.const(1.0, like)

    def compute(self, y: Vector) -> Vector:
        """Compute weights for y without storing them.

        Args:
            y: Solution vector.

        Raises:
            IllegalInputError: If a weight is non-positive or non-finite.

        Returns:
            The weight vector.
        """
        ops = self.ops
        ay = ops.abs(y)

        if self._rtol_vec is None:
            scaled = ops.scale(float(self.rtol), ay)
        else:
            scaled = ops.prod(self._rtol_vec, ay)

        if self._atol_vec is None:
            denom = ops.linear_sum(1.0, scaled, float(self.atol), ops.const(1.0, y))
        else:
            denom = ops.linear_sum(1.0, scaled, 1.0, self._atol_vec)

        dmin = ops.min(denom)
        if not (np.isfinite(dmin) and dmin > 0.0):
            raise IllegalInputError(_WEIGHT_NONPOSITIVE_MSG.format(wmin=dmin))

        w = ops.inv(denom)
        wmin = ops.min(w)
        if not (np.isfinite(wmin) and wmin > 0.0):
            raise IllegalInputError(_WEIGHT_NONPOSITIVE_MSG.format(wmin=wmin))
        return w

    def update(self, y: Vector) -> Vector:
        """Recompute and store the weights from an accepted solution.

        Args:
            y: Accepted solution.

        Returns:
            The stored weight vector.
        """
        self.weights = self.compute(y)
        return self.weights
