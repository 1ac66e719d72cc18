# src/mstep_engine/vector_ops.py
"""Vector capability set consumed by the integration core.

The core never touches state arrays directly; every elementwise or reduction
operation goes through a VectorOps object. The required operation set is
small. Backends may additionally provide fused operations, which are used as a
performance hint only: when a fused operation is missing, the core composes the
required operations in the same evaluation order, so results are unchanged.

NumpyVectorOps is the CPU backend shipped with the package. Its fused
linear_combination writes into a preallocated buffer but performs exactly the
same sequence of floating-point operations as the composed fallback.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol, TypeAlias, runtime_checkable

import numpy as np
import numpy.typing as npt

from .errors import VectorOpError

Vector: TypeAlias = Any
FloatArray: TypeAlias = npt.NDArray[np.floating[Any]]

_LENGTH_MISMATCH_MSG = (
    "linear_combination got {n_coeffs} coefficients for {n_vecs} vectors"
)
_EMPTY_COMBINATION_MSG = "linear_combination requires at least one vector"
_NON_FINITE_MSG = "vector operation produced non-finite values in {op}"


# =============================================================================
# Capability protocols
# =============================================================================


@runtime_checkable
class VectorOps(Protocol):
    """Required vector operations."""

    def clone(self, x: Vector) -> Vector:
        """Return a new vector with the same contents as x."""
        ...

    def const(self, c: float, like: Vector) -> Vector:
        """Return a new vector shaped like `like`, filled with c."""
        ...

    def linear_sum(self, a: float, x: Vector, b: float, y: Vector) -> Vector:
        """Return a*x + b*y."""
        ...

    def scale(self, c: float, x: Vector) -> Vector:
        """Return c*x."""
        ...

    def dot(self, x: Vector, y: Vector) -> float:
        """Return the dot product of x and y."""
        ...

    def wrms_norm(self, x: Vector, w: Vector) -> float:
        """Return sqrt(mean((x*w)**2))."""
        ...

    def abs(self, x: Vector) -> Vector:
        """Return |x| elementwise."""
        ...

    def inv(self, x: Vector) -> Vector:
        """Return 1/x elementwise."""
        ...

    def prod(self, x: Vector, y: Vector) -> Vector:
        """Return x*y elementwise."""
        ...

    def min(self, x: Vector) -> float:
        """Return the minimum component of x."""
        ...

    def to_array(self, x: Vector) -> FloatArray:
        """Return a host NumPy view/copy of x (for callbacks and linear solvers)."""
        ...

    def from_array(self, arr: FloatArray, like: Vector) -> Vector:
        """Wrap a host NumPy array as a vector compatible with `like`."""
        ...


@runtime_checkable
class FusedVectorOps(Protocol):
    """Optional fused operations."""

    def linear_combination(
        self,
        coeffs: Sequence[float],
        vectors: Sequence[Vector],
    ) -> Vector:
        """Return sum_i coeffs[i]*vectors[i]."""
        ...


def linear_combination(
    ops: VectorOps,
    coeffs: Sequence[float],
    vectors: Sequence[Vector],
) -> Vector:
    """Compute sum_i coeffs[i]*vectors[i] with the fused op when available.

    Args:
        ops: Vector backend.
        coeffs: Scalar coefficients.
        vectors: Vectors, same length as coeffs.

    Raises:
        VectorOpError: If the inputs are empty or have mismatched lengths.

    Returns:
        The combined vector (newly allocated).
    """
    if len(coeffs) != len(vectors):
        raise VectorOpError(
            _LENGTH_MISMATCH_MSG.format(n_coeffs=len(coeffs), n_vecs=len(vectors))
        )
    if not vectors:
        raise VectorOpError(_EMPTY_COMBINATION_MSG)

    if isinstance(ops, FusedVectorOps) and callable(ops.linear_combination):
        return ops.linear_combination(coeffs, vectors)

    out = ops.scale(float(coeffs[0]), vectors[0])
    for c, v in zip(coeffs[1:], vectors[1:], strict=True):
        out = ops.linear_sum(1.0, out, float(c), v)
    return out


# =============================================================================
# NumPy backend
# =============================================================================


class NumpyVectorOps:
    """Serial NumPy implementation of the vector capability set.

    Args:
        dtype: Floating dtype of every vector produced by this backend.
        check_finite: If True, reductions raise VectorOpError on NaN/inf.
    """

    def __init__(self, dtype: npt.DTypeLike = np.float64, *, check_finite: bool = False):
        self.dtype = np.dtype(dtype)
        self.check_finite = bool(check_finite)

    def _finite(self, value: float, op: str) -> float:
        if self.check_finite and not np.isfinite(value):
            raise VectorOpError(_NON_FINITE_MSG.format(op=op))
        return value

    def clone(self, x: FloatArray) -> FloatArray:
        return np.array(x, dtype=self.dtype, copy=True)

    def const(self, c: float, like: FloatArray) -> FloatArray:
        return np.full(np.shape(like), c, dtype=self.dtype)

    def linear_sum(
        self,
        a: float,
        x: FloatArray,
        b: float,
        y: FloatArray,
    ) -> FloatArray:
        out = np.multiply(a, x, dtype=self.dtype)
        out += np.multiply(b, y, dtype=self.dtype)
        return out

    def scale(self, c: float, x: FloatArray) -> FloatArray:
        return np.multiply(c, x, dtype=self.dtype)

    def dot(self, x: FloatArray, y: FloatArray) -> float:
        return self._finite(float(np.dot(np.ravel(x), np.ravel(y))), "dot")

    def wrms_norm(self, x: FloatArray, w: FloatArray) -> float:
        prod = np.multiply(x, w, dtype=self.dtype)
        value = float(np.sqrt(np.mean(prod * prod)))
        return self._finite(value, "wrms_norm")

    def abs(self, x: FloatArray) -> FloatArray:
        return np.abs(np.asarray(x, dtype=self.dtype))

    def inv(self, x: FloatArray) -> FloatArray:
        with np.errstate(divide="ignore"):
            return np.divide(1.0, x, dtype=self.dtype)

    def prod(self, x: FloatArray, y: FloatArray) -> FloatArray:
        return np.multiply(x, y, dtype=self.dtype)

    def min(self, x: FloatArray) -> float:
        return float(np.min(x))

    def to_array(self, x: FloatArray) -> FloatArray:
        return np.asarray(x, dtype=self.dtype)

    def from_array(self, arr: FloatArray, like: FloatArray) -> FloatArray:
        out = np.asarray(arr, dtype=self.dtype)
        if out.shape != np.shape(like):
            out = out.reshape(np.shape(like))
        return out

    def linear_combination(
        self,
        coeffs: Sequence[float],
        vectors: Sequence[FloatArray],
    ) -> FloatArray:
        """Fused sum_i coeffs[i]*vectors[i], same operation order as composed."""
        out = np.multiply(float(coeffs[0]), vectors[0], dtype=self.dtype)
        tmp = np.empty_like(out)
        for c, v in zip(coeffs[1:], vectors[1:], strict=True):
            np.multiply(1.0, out, out=out)
            np.multiply(float(c), v, out=tmp)
            out += tmp
        return out


class ComposedNumpyVectorOps(NumpyVectorOps):
    """NumPy backend that exposes only the required operation set.

    Useful to check that the fused path is a pure performance hint.
    """

    linear_combination = None  # type: ignore[assignment]
