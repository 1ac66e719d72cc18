# src/mstep_engine/history.py
"""Nordsieck history array and the algebra performed on it.

The history is an owned, fixed-capacity list of q_max+1 vectors

    zn[j] = h_s^j y^(j) / j!,   j = 0..q

scaled for the step size h_s of the last accepted step (hscale). Only the
first q+1 entries are active; entries above q are retained but unused.
Entry 0 is always the last accepted solution.

Operations:
    - predict(h): pure; rescales a copy of the active entries by (h/hscale)^j
      and applies the Pascal-triangle sums.
    - commit(prediction, acor, l): zn[j] = pred[j] + l[j]*acor. The committed
      history is scaled for the step actually taken.
    - change_order(change): expands or contracts the active window.
    - reload_derivative(fy, h): restart the derivative entry from f(t, y).

Rescaling is scale-by-ratio only, so the cost is O(q) vector operations
per step (O(q^2) for the Pascal sums of a prediction).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .coefficients import OrderChange
from .vector_ops import Vector, VectorOps, linear_combination

_ORDER_RANGE_MSG = "order {q} outside [1, {q_max}]"
_NOT_PRIMED_MSG = "history has not been primed with an initial solution"
_SCALE_MSG = "step size must be nonzero and finite; got {h!r}"
_ORDER_DELTA_MSG = "order change must be +1 or -1; got {delta}"


@dataclass(slots=True, frozen=True)
class Prediction:
    """Predicted Nordsieck array for a trial step.

    Attributes:
        h: Trial step size.
        q: Order of the prediction.
        zn: Predicted entries 0..q (zn[0] is the predicted solution).
    """

    h: float
    q: int
    zn: tuple[Vector, ...]

    @property
    def y(self) -> Vector:
        """Return the predicted solution."""
        return self.zn[0]


class HistoryStore:
    """Owner of the Nordsieck history array.

    Args:
        ops: Vector backend.
        q_max: Maximum method order (capacity is q_max + 1 entries).
    """

    def __init__(self, ops: VectorOps, q_max: int) -> None:
        self.ops = ops
        self.q_max = int(q_max)
        self._zn: list[Vector | None] = [None] * (self.q_max + 1)
        self._saved_acor: Vector | None = None
        self.q = 1
        self.hscale = 0.0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def primed(self) -> bool:
        """Return True once the history holds an initial solution."""
        return self._zn[0] is not None

    @property
    def active_length(self) -> int:
        """Return the number of active entries, q + 1."""
        return self.q + 1

    def entry(self, j: int) -> Vector:
        """Return history entry j (0 <= j <= q_max).

        Raises:
            RuntimeError: If the history is not primed or entry j was never set.
        """
        value = self._zn[j]
        if value is None:
            raise RuntimeError(_NOT_PRIMED_MSG)
        return value

    @property
    def y(self) -> Vector:
        """Return the last accepted solution (entry 0)."""
        return self.entry(0)

    @property
    def saved_correction(self) -> Vector | None:
        """Return the correction saved for a possible order increase."""
        return self._saved_acor

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prime(self, y0: Vector, fy0: Vector, h: float) -> None:
        """Initialize the history at order 1.

        Args:
            y0: Initial solution.
            fy0: f(t0, y0).
            h: Initial step size.

        Raises:
            ValueError: If h is zero.
        """
        if h == 0.0:
            raise ValueError(_SCALE_MSG.format(h=h))
        ops = self.ops
        self._zn = [None] * (self.q_max + 1)
        self._zn[0] = ops.clone(y0)
        self._zn[1] = ops.scale(h, fy0)
        for j in range(2, self.q_max + 1):
            self._zn[j] = ops.const(0.0, y0)
        self._saved_acor = None
        self.q = 1
        self.hscale = float(h)

    def reload_derivative(self, fy: Vector, h: float) -> None:
        """Restart at order 1 with zn[1] = h * f(t, y) and hscale = h.

        Used as the last resort after repeated error-test failures at order 1.

        Args:
            fy: f evaluated at the last accepted solution.
            h: New step size.
        """
        if h == 0.0:
            raise ValueError(_SCALE_MSG.format(h=h))
        self._zn[1] = self.ops.scale(h, fy)
        self.q = 1
        self.hscale = float(h)

    # ------------------------------------------------------------------
    # Predict / commit
    # ------------------------------------------------------------------

    def predict(self, h: float) -> Prediction:
        """Predict the Nordsieck array at t + h at the current order.

        Pure with respect to the stored history.

        Args:
            h: Trial step size.

        Raises:
            RuntimeError: If the history is not primed.
            ValueError: If h is zero.

        Returns:
            The prediction.
        """
        if not self.primed:
            raise RuntimeError(_NOT_PRIMED_MSG)
        if h == 0.0:
            raise ValueError(_SCALE_MSG.format(h=h))

        ops = self.ops
        q = self.q
        eta = h / self.hscale

        pred: list[Vector] = [ops.clone(self.entry(0))]
        factor = 1.0
        for j in range(1, q + 1):
            factor *= eta
            pred.append(ops.scale(factor, self.entry(j)))

        for k in range(1, q + 1):
            for j in range(q, k - 1, -1):
                pred[j - 1] = ops.linear_sum(1.0, pred[j - 1], 1.0, pred[j])

        return Prediction(h=float(h), q=q, zn=tuple(pred))

    def commit(self, prediction: Prediction, acor: Vector, l: Sequence[float]) -> None:
        """Fold an accepted correction into the history.

        Args:
            prediction: Prediction the corrector started from.
            acor: Accumulated correction y_new - prediction.y.
            l: Corrector vector of the accepted step, length q+1.
        """
        ops = self.ops
        for j in range(prediction.q + 1):
            self._zn[j] = linear_combination(
                ops,
                (1.0, float(l[j])),
                (prediction.zn[j], acor),
            )
        self.q = prediction.q
        self.hscale = prediction.h

    def save_correction(self, acor: Vector) -> None:
        """Keep a copy of acor for a later order increase."""
        self._saved_acor = self.ops.clone(acor)

    # ------------------------------------------------------------------
    # Order change
    # ------------------------------------------------------------------

    def change_order(self, change: OrderChange | None, delta: int) -> None:
        """Expand (+1) or contract (-1) the active window.

        Args:
            change: History adjustment from the formula family, or None when no
                adjustment of the stored entries is required.
            delta: +1 or -1.

        Raises:
            ValueError: If delta is not +1/-1 or the new order is out of range.
        """
        if delta not in (1, -1):
            raise ValueError(_ORDER_DELTA_MSG.format(delta=delta))
        q_new = self.q + delta
        if not (1 <= q_new <= self.q_max):
            raise ValueError(_ORDER_RANGE_MSG.format(q=q_new, q_max=self.q_max))

        ops = self.ops
        q = self.q
        if delta == 1:
            if change is None or self._saved_acor is None:
                self._zn[q + 1] = ops.const(0.0, self.entry(0))
                self.q = q_new
                return
            new_entry = ops.scale(change.new_entry_scale, self._saved_acor)
            self._zn[q + 1] = new_entry
            for j in range(2, q + 1):
                c = float(change.coeffs[j])
                if c != 0.0:
                    self._zn[j] = ops.linear_sum(1.0, self.entry(j), c, new_entry)
        elif change is not None:
            top = self.entry(q)
            for j in range(2, q):
                c = float(change.coeffs[j])
                if c != 0.0:
                    self._zn[j] = ops.linear_sum(1.0, self.entry(j), -c, top)

        self.q = q_new
