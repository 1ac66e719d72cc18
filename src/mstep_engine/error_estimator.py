# src/mstep_engine/error_estimator.py
"""Local truncation error estimate for a converged step attempt.

The estimate is dsm = ||acor||_wrms * tq[2], where acor is the accumulated
corrector correction and tq[2] the order-q error coefficient of the active
formula. dsm <= 1 accepts the step. The norm is the same weighted RMS norm the
corrector convergence test uses.
"""

from __future__ import annotations

import math

from .vector_ops import Vector, VectorOps

_NEGATIVE_COEFF_MSG = "error coefficient must be nonnegative; got {value!r}"


class ErrorEstimator:
    """Weighted-RMS local error estimator.

    Args:
        ops: Vector backend.
    """

    def __init__(self, ops: VectorOps) -> None:
        self.ops = ops

    def estimate(self, correction: Vector, coefficient: float, weights: Vector) -> float:
        """Return dsm for a correction vector.

        Args:
            correction: Correction vector acor.
            coefficient: Error coefficient tq[2] of the attempt.
            weights: Error weights.

        Returns:
            Nonnegative dsm; inf when the norm is not finite.
        """
        return self.estimate_from_norm(self.ops.wrms_norm(correction, weights), coefficient)

    @staticmethod
    def estimate_from_norm(acnrm: float, coefficient: float) -> float:
        """Return dsm from an already computed correction norm.

        Args:
            acnrm: Weighted RMS norm of the correction.
            coefficient: Error coefficient tq[2] of the attempt.

        Raises:
            ValueError: If the coefficient is negative.

        Returns:
            Nonnegative dsm; inf when the product is not finite.
        """
        if coefficient < 0.0:
            raise ValueError(_NEGATIVE_COEFF_MSG.format(value=coefficient))
        dsm = float(acnrm) * float(coefficient)
        if not math.isfinite(dsm):
            return math.inf
        return dsm

    @staticmethod
    def accepts(dsm: float) -> bool:
        """Return True when the estimate passes the error test."""
        return dsm <= 1.0

    def local_errors(self, correction: Vector, coefficient: float) -> Vector:
        """Return the estimated local error vector coefficient*acor."""
        return self.ops.scale(coefficient, correction)
