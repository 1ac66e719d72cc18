# src/mstep_engine/coefficients.py
"""Order-dependent coefficient tables for variable-step multistep formulas.

Both families are expressed in Nordsieck form: the history holds
zn[j] = h^j y^(j) / j!, the corrector updates every entry by l[j] * acor, and
the error coefficients tq[1..5] relate the correction acor to local error
estimates:

    tq[1]: error at order q-1 (from zn[q])
    tq[2]: error at order q (from acor)
    tq[3]: error at order q+1 (from the difference of successive corrections)
    tq[4]: corrector convergence tolerance nls_coef / tq[2]
    tq[5]: ratio used to compare corrections of successive steps

Coefficients are recomputed every attempt from the step-size history tau
(tau[1] is the last accepted step, tau[2] the one before, ...), which is what
makes the formulas valid for variable step sizes without interpolation.

Families:
    - BDFFormula: backward differentiation formulas, orders 1..5 (stiff).
    - AdamsFormula: Adams-Moulton formulas, orders 1..12 (non-stiff).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Final, Literal

import numpy as np
from numpy.typing import NDArray

FormulaName = Literal["bdf", "adams"]

BDF_MAX_ORDER: Final[int] = 5
ADAMS_MAX_ORDER: Final[int] = 12

_UNKNOWN_FORMULA_MSG = "Unknown formula family: {name}"


@dataclass(slots=True, frozen=True)
class StepCoefficients:
    """Coefficients for one step attempt at order q.

    Attributes:
        q: Method order.
        l: Corrector vector, length q+1.
        tq: Error coefficients, length 6 (index 0 unused).
    """

    q: int
    l: NDArray[np.floating]
    tq: NDArray[np.floating]

    @property
    def rl1(self) -> float:
        """Return 1/l[1]."""
        return 1.0 / float(self.l[1])

    def gamma(self, h: float) -> float:
        """Return h/l[1], the scalar multiplying the Jacobian in M = I - gamma*J."""
        return h * self.rl1


@dataclass(slots=True, frozen=True)
class OrderChange:
    """History adjustment for an order change.

    For an increase to q+1 the new entry is zn[q+1] = new_entry_scale * acor,
    then zn[j] += coeffs[j] * zn[q+1]. For a decrease from q the lower entries
    are updated as zn[j] -= coeffs[j] * zn[q]. Zero coefficients are skipped.

    Attributes:
        delta: +1 or -1.
        new_entry_scale: Scale applied to the saved correction (increase only).
        coeffs: Per-entry coefficients indexed by history position.
    """

    delta: int
    new_entry_scale: float
    coeffs: NDArray[np.floating]


def _alt_sum(iend: int, a: NDArray[np.floating], k: int) -> float:
    """Return sum_{i=0..iend} (-1)^i a[i]/(i+k)."""
    if iend < 0:
        return 0.0
    total = 0.0
    sign = 1.0
    for i in range(iend + 1):
        total += sign * (a[i] / (i + k))
        sign = -sign
    return total


def _adams_coefficients(
    q: int,
    h: float,
    tau: NDArray[np.floating],
    *,
    qwait: int,
    nls_coef: float,
) -> StepCoefficients:
    """Adams-Moulton coefficients from the integrated step polynomial.

    m holds the coefficients of prod_j (1 + x*h/hsum_j); the l vector and the
    error coefficients are alternating sums of its integrals over [-1, 0].
    Valid for every q >= 1; tq[1] stays zero at q == 1 and tq[3] is only
    formed when qwait == 1.
    """
    l = np.zeros(q + 1, dtype=float)
    tq = np.zeros(6, dtype=float)
    m = np.zeros(q + 1, dtype=float)
    m[0] = 1.0
    hsum = h
    for j in range(1, q):
        if j == q - 1 and qwait == 1:
            tq[1] = q * _alt_sum(q - 2, m, 2) / m[q - 2]
        xi_inv = h / hsum
        for i in range(j, 0, -1):
            m[i] += m[i - 1] * xi_inv
        hsum += tau[j]

    m0_inv = 1.0 / _alt_sum(q - 1, m, 1)
    m1 = _alt_sum(q - 1, m, 2)

    l[0] = 1.0
    for i in range(1, q + 1):
        l[i] = m0_inv * (m[i - 1] / i)
    xi = hsum / h
    xi_inv = 1.0 / xi

    tq[2] = m1 * m0_inv / xi
    tq[5] = xi / l[q]
    if qwait == 1:
        for i in range(q, 0, -1):
            m[i] += m[i - 1] * xi_inv
        m2 = _alt_sum(q, m, 2)
        tq[3] = m2 * m0_inv / (q + 1)
    tq[4] = nls_coef / tq[2]
    return StepCoefficients(q=q, l=l, tq=tq)


class FormulaFamily(ABC):
    """A multistep formula family in Nordsieck form."""

    name: FormulaName
    max_order: int

    @abstractmethod
    def coefficients(
        self,
        q: int,
        h: float,
        tau: NDArray[np.floating],
        *,
        qwait: int,
        nls_coef: float,
    ) -> StepCoefficients:
        """Compute l and tq for a step of size h at order q.

        Args:
            q: Method order.
            h: Step size of the attempt.
            tau: Step-size history, tau[1] most recent.
            qwait: Steps remaining before an order change may be considered.
                tq[1] and tq[3] are only computed when qwait == 1.
            nls_coef: Corrector tolerance coefficient.

        Returns:
            The step coefficients.
        """

    @abstractmethod
    def order_change(
        self,
        q: int,
        delta: int,
        tau: NDArray[np.floating],
        hscale: float,
    ) -> OrderChange | None:
        """Compute the history adjustment for changing order q -> q+delta.

        Args:
            q: Current order.
            delta: +1 or -1.
            tau: Step-size history.
            hscale: Step size the history is currently scaled for.

        Returns:
            The adjustment, or None when no history change is needed.
        """


class BDFFormula(FormulaFamily):
    """Fixed-leading-coefficient BDF formulas, orders 1..5."""

    name: FormulaName = "bdf"
    max_order = BDF_MAX_ORDER

    def coefficients(
        self,
        q: int,
        h: float,
        tau: NDArray[np.floating],
        *,
        qwait: int,
        nls_coef: float,
    ) -> StepCoefficients:
        l = np.zeros(q + 1, dtype=float)
        tq = np.zeros(6, dtype=float)

        l[0] = l[1] = 1.0
        xi_inv = xistar_inv = 1.0
        alpha0 = alpha0_hat = -1.0
        hsum = h
        if q > 1:
            for j in range(2, q):
                hsum += tau[j - 1]
                xi_inv = h / hsum
                alpha0 -= 1.0 / j
                for i in range(j, 0, -1):
                    l[i] += l[i - 1] * xi_inv
            # j = q
            alpha0 -= 1.0 / q
            xistar_inv = -l[1] - alpha0
            hsum += tau[q - 1]
            xi_inv = h / hsum
            alpha0_hat = -l[1] - xi_inv
            for i in range(q, 0, -1):
                l[i] += l[i - 1] * xistar_inv

        a1 = 1.0 - alpha0_hat + alpha0
        a2 = 1.0 + q * a1
        tq[2] = abs(a1 / (alpha0 * a2))
        tq[5] = abs(a2 * xistar_inv / (l[q] * xi_inv))
        if qwait == 1:
            if q > 1:
                c = xistar_inv / l[q]
                a3 = alpha0 + 1.0 / q
                a4 = alpha0_hat + xi_inv
                cp_inv = (1.0 - a4 + a3) / a3
                tq[1] = abs(c * cp_inv)
            else:
                tq[1] = 1.0
            hsum += tau[q]
            xi_inv = h / hsum
            a5 = alpha0 - 1.0 / (q + 1)
            a6 = alpha0_hat - xi_inv
            cpp_inv = (1.0 - a6 + a5) / a2
            tq[3] = abs(cpp_inv / (xi_inv * (q + 2) * a5))
        tq[4] = nls_coef / tq[2]
        return StepCoefficients(q=q, l=l, tq=tq)

    def order_change(
        self,
        q: int,
        delta: int,
        tau: NDArray[np.floating],
        hscale: float,
    ) -> OrderChange | None:
        if q == 2 and delta != 1:
            return None

        l = np.zeros(q + 2, dtype=float)
        if delta == 1:
            l[2] = alpha1 = prod = xiold = 1.0
            alpha0 = -1.0
            hsum = hscale
            for j in range(1, q):
                hsum += tau[j + 1]
                xi = hsum / hscale
                prod *= xi
                alpha0 -= 1.0 / (j + 1)
                alpha1 += 1.0 / xi
                for i in range(j + 2, 1, -1):
                    l[i] = l[i] * xiold + l[i - 1]
                xiold = xi
            a1 = (-alpha0 - alpha1) / prod
            coeffs = np.zeros(q + 1, dtype=float)
            coeffs[2 : q + 1] = l[2 : q + 1]
            return OrderChange(delta=1, new_entry_scale=a1, coeffs=coeffs)

        l[2] = 1.0
        hsum = 0.0
        for j in range(1, q - 1):
            hsum += tau[j]
            xi = hsum / hscale
            for i in range(j + 2, 1, -1):
                l[i] = l[i] * xi + l[i - 1]
        coeffs = np.zeros(q + 1, dtype=float)
        coeffs[2:q] = l[2:q]
        return OrderChange(delta=-1, new_entry_scale=0.0, coeffs=coeffs)


class AdamsFormula(FormulaFamily):
    """Adams-Moulton formulas, orders 1..12."""

    name: FormulaName = "adams"
    max_order = ADAMS_MAX_ORDER

    def coefficients(
        self,
        q: int,
        h: float,
        tau: NDArray[np.floating],
        *,
        qwait: int,
        nls_coef: float,
    ) -> StepCoefficients:
        l = np.zeros(q + 1, dtype=float)
        tq = np.zeros(6, dtype=float)

        if q == 1:
            l[0] = l[1] = 1.0
            tq[1] = tq[5] = 1.0
            tq[2] = 0.5
            tq[3] = 1.0 / 12.0
            tq[4] = nls_coef / tq[2]
            return StepCoefficients(q=q, l=l, tq=tq)
        return _adams_coefficients(q, h, tau, qwait=qwait, nls_coef=nls_coef)

    def order_change(
        self,
        q: int,
        delta: int,
        tau: NDArray[np.floating],
        hscale: float,
    ) -> OrderChange | None:
        if delta == 1:
            return OrderChange(
                delta=1,
                new_entry_scale=0.0,
                coeffs=np.zeros(q + 1, dtype=float),
            )
        if q <= 2:
            return None

        l = np.zeros(q + 1, dtype=float)
        l[1] = 1.0
        hsum = 0.0
        for j in range(1, q - 1):
            hsum += tau[j]
            xi = hsum / hscale
            for i in range(j + 1, 0, -1):
                l[i] = l[i] * xi + l[i - 1]
        for j in range(1, q - 1):
            l[j + 1] = q * (l[j] / (j + 1))

        coeffs = np.zeros(q + 1, dtype=float)
        coeffs[2:q] = l[2:q]
        return OrderChange(delta=-1, new_entry_scale=0.0, coeffs=coeffs)


def formula_for(name: str) -> FormulaFamily:
    """Return the formula family for a method name.

    Args:
        name: "bdf" or "adams" (case-insensitive).

    Raises:
        ValueError: If the name is unknown.

    Returns:
        A FormulaFamily instance.
    """
    key = str(name).strip().lower()
    if key == "bdf":
        return BDFFormula()
    if key == "adams":
        return AdamsFormula()
    raise ValueError(_UNKNOWN_FORMULA_MSG.format(name=name))
