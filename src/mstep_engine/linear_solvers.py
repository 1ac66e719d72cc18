# src/mstep_engine/linear_solvers.py
"""Linear solvers for the Newton iteration matrix M = I - gamma*J.

This module provides the linear-solver collaborators consumed by the Newton
nonlinear solver:

- DenseLinearSolver: dense Jacobian (user supplied or difference quotient),
  LAPACK LU factorization via scipy.linalg.lu_factor / lu_solve.
- SparseLinearSolver: user-supplied sparse Jacobian, SuperLU factorization via
  scipy.sparse.linalg.splu.
- KrylovLinearSolver: matrix-free GMRES (scipy.sparse.linalg.gmres) with
  difference-quotient Jacobian-vector products.

Design notes:
    * Setup is expensive and is invoked lazily by the nonlinear-solve driver.
      A setup either re-evaluates J (new_jacobian=True) or reuses the stored J
      and only re-forms/re-factors M for the current gamma.
    * Direct solvers apply M at the gamma of their last setup. The Krylov
      solver forms products at the iterate and gamma passed to solve().
    * Singular or unconverged systems raise RecoverableLinearSolveError, which
      the stepping loop treats as a convergence failure. Anything else that
      goes wrong inside the linear algebra is a LinearSolverError (fatal).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias

import numpy as np
import numpy.typing as npt
from scipy.linalg import LinAlgError, lu_factor, lu_solve
from scipy.sparse import csc_matrix, identity, issparse
from scipy.sparse.linalg import LinearOperator, gmres, splu

from .errors import LinearSolverError, RecoverableLinearSolveError
from .rhs import JacobianEvaluator, RhsEvaluator
from .vector_ops import Vector, VectorOps

FloatArray: TypeAlias = npt.NDArray[np.floating[Any]]

_UROUND = float(np.finfo(np.float64).eps)

_SINGULAR_MSG = "iteration matrix I - gamma*J is singular (zero pivot at {idx})"
_SPARSE_SINGULAR_MSG = "sparse iteration matrix I - gamma*J is singular: {exc}"
_NOT_SET_UP_MSG = "linear solver solve() called before setup()"
_SPARSE_JAC_REQUIRED_MSG = "SparseLinearSolver requires a user Jacobian function"
_SPARSE_JAC_TYPE_MSG = "SparseLinearSolver expects a SciPy sparse Jacobian"
_KRYLOV_NOT_CONVERGED_MSG = "GMRES did not converge (info={info})"
_KRYLOV_BREAKDOWN_MSG = "GMRES reported an illegal input or breakdown (info={info})"
_FACTOR_FAILED_MSG = "LU factorization failed: {exc}"


@dataclass(slots=True, frozen=True)
class SetupContext:
    """Point at which the iteration matrix is formed.

    Attributes:
        t: Time of the trial step end.
        y: Predicted solution (backend vector).
        weights: Error weights (backend vector).
        h: Trial step size.
    """

    t: float
    y: Vector
    weights: Vector
    h: float


class LinearSolver(Protocol):
    """Capability set required by the Newton solver.

    Attributes:
        matrix_free: True if solve() applies M at the gamma it is given rather
            than at the gamma of the last setup.
    """

    matrix_free: bool

    def setup(self, ctx: SetupContext, gamma: float, *, new_jacobian: bool) -> bool:
        """Form and factor M = I - gamma*J.

        Args:
            ctx: Linearization point.
            gamma: Scalar in M.
            new_jacobian: If True, re-evaluate J; otherwise reuse the stored J
                when one exists.

        Returns:
            True if J was re-evaluated (the Jacobian is current).
        """
        ...

    def solve(
        self,
        b: Vector,
        *,
        y: Vector | None = None,
        fy: Vector | None = None,
        gamma: float | None = None,
    ) -> Vector:
        """Return x with M x = b.

        Args:
            b: Right-hand side.
            y: Current Newton iterate, if known.
            fy: RHS value at y, if known.
            gamma: Current gamma, if known.
        """
        ...


def dense_dq_jacobian(
    rhs: RhsEvaluator,
    ops: VectorOps,
    ctx: SetupContext,
) -> FloatArray:
    """Difference-quotient dense Jacobian, one column per RHS evaluation.

    The increment for column j is max(sqrt(uround)*|y_j|, min_inc/w_j) with
    min_inc = 1000*|h|*uround*n*||f||_wrms (or 1 when f vanishes).

    Args:
        rhs: Counted RHS evaluator.
        ops: Vector backend.
        ctx: Linearization point.

    Returns:
        Dense (n, n) Jacobian approximation.
    """
    y = np.array(ops.to_array(ctx.y), dtype=float).ravel()
    w = np.asarray(ops.to_array(ctx.weights), dtype=float).ravel()
    n = y.size

    fy_vec = rhs(ctx.t, ctx.y)
    fy = np.asarray(ops.to_array(fy_vec), dtype=float).ravel()

    srur = np.sqrt(_UROUND)
    fnorm = ops.wrms_norm(fy_vec, ctx.weights)
    min_inc = 1000.0 * abs(ctx.h) * _UROUND * n * fnorm if fnorm != 0.0 else 1.0

    jac = np.empty((n, n), dtype=float)
    shape = np.shape(ops.to_array(ctx.y))
    for j in range(n):
        yj = y[j]
        inc = max(srur * abs(yj), min_inc / w[j])
        y[j] = yj + inc
        f_pert = rhs(ctx.t, ops.from_array(y.reshape(shape), ctx.y))
        jac[:, j] = (np.asarray(ops.to_array(f_pert), dtype=float).ravel() - fy) / inc
        y[j] = yj
    return jac


# =============================================================================
# Dense
# =============================================================================


class DenseLinearSolver:
    """Dense LU solver for M = I - gamma*J.

    Args:
        rhs: Counted RHS evaluator (used for difference-quotient Jacobians).
        ops: Vector backend.
        jac: Optional counted user Jacobian evaluator.
    """

    matrix_free = False

    def __init__(
        self,
        rhs: RhsEvaluator,
        ops: VectorOps,
        jac: JacobianEvaluator | None = None,
    ) -> None:
        self.rhs = rhs
        self.ops = ops
        self.jac = jac
        self._jac_matrix: FloatArray | None = None
        self._lu: tuple[FloatArray, npt.NDArray[np.int32]] | None = None
        self._like: Vector | None = None
        self.nje = 0

    def _evaluate_jacobian(self, ctx: SetupContext) -> FloatArray:
        self.nje += 1
        if self.jac is None:
            return dense_dq_jacobian(self.rhs, self.ops, ctx)
        jac = self.jac(ctx.t, self.ops.to_array(ctx.y))
        if issparse(jac):
            jac = jac.toarray()
        return np.asarray(jac, dtype=float)

    def setup(self, ctx: SetupContext, gamma: float, *, new_jacobian: bool) -> bool:
        jcur = False
        if new_jacobian or self._jac_matrix is None:
            self._jac_matrix = self._evaluate_jacobian(ctx)
            jcur = True

        n = self._jac_matrix.shape[0]
        m = np.eye(n, dtype=float) - gamma * self._jac_matrix
        try:
            lu, piv = lu_factor(m, check_finite=True)
        except (LinAlgError, ValueError) as exc:
            raise LinearSolverError(_FACTOR_FAILED_MSG.format(exc=exc)) from exc

        diag = np.abs(np.diag(lu))
        if np.any(diag == 0.0):
            idx = int(np.argmin(diag))
            self._lu = None
            raise RecoverableLinearSolveError(_SINGULAR_MSG.format(idx=idx))

        self._lu = (lu, piv)
        self._like = ctx.y
        return jcur

    def solve(
        self,
        b: Vector,
        *,
        y: Vector | None = None,  # noqa: ARG002
        fy: Vector | None = None,  # noqa: ARG002
        gamma: float | None = None,  # noqa: ARG002
    ) -> Vector:
        if self._lu is None or self._like is None:
            raise LinearSolverError(_NOT_SET_UP_MSG)
        b_arr = np.asarray(self.ops.to_array(b), dtype=float)
        x = lu_solve(self._lu, b_arr.ravel())
        return self.ops.from_array(x.reshape(b_arr.shape), b)


# =============================================================================
# Sparse
# =============================================================================


class SparseLinearSolver:
    """Sparse LU (SuperLU) solver for M = I - gamma*J.

    Args:
        rhs: Counted RHS evaluator (unused by the factorization, kept for
            interface symmetry with the dense solver).
        ops: Vector backend.
        jac: Counted user Jacobian evaluator returning SciPy sparse matrices.

    Raises:
        LinearSolverError: If no Jacobian function is given.
    """

    matrix_free = False

    def __init__(
        self,
        rhs: RhsEvaluator,
        ops: VectorOps,
        jac: JacobianEvaluator | None = None,
    ) -> None:
        if jac is None:
            raise LinearSolverError(_SPARSE_JAC_REQUIRED_MSG)
        self.rhs = rhs
        self.ops = ops
        self.jac = jac
        self._jac_matrix: csc_matrix | None = None
        self._factor: Any = None
        self.nje = 0

    def setup(self, ctx: SetupContext, gamma: float, *, new_jacobian: bool) -> bool:
        jcur = False
        if new_jacobian or self._jac_matrix is None:
            self.nje += 1
            jac = self.jac(ctx.t, self.ops.to_array(ctx.y))
            if not issparse(jac):
                raise LinearSolverError(_SPARSE_JAC_TYPE_MSG)
            self._jac_matrix = csc_matrix(jac, dtype=float)
            jcur = True

        n = self._jac_matrix.shape[0]
        m = csc_matrix(identity(n, dtype=float, format="csc") - gamma * self._jac_matrix)
        try:
            self._factor = splu(m)
        except RuntimeError as exc:
            self._factor = None
            raise RecoverableLinearSolveError(
                _SPARSE_SINGULAR_MSG.format(exc=exc)
            ) from exc
        return jcur

    def solve(
        self,
        b: Vector,
        *,
        y: Vector | None = None,  # noqa: ARG002
        fy: Vector | None = None,  # noqa: ARG002
        gamma: float | None = None,  # noqa: ARG002
    ) -> Vector:
        if self._factor is None:
            raise LinearSolverError(_NOT_SET_UP_MSG)
        b_arr = np.asarray(self.ops.to_array(b), dtype=float)
        x = self._factor.solve(b_arr.ravel())
        return self.ops.from_array(np.asarray(x).reshape(b_arr.shape), b)


# =============================================================================
# Krylov (matrix-free)
# =============================================================================


class KrylovLinearSolver:
    """Matrix-free GMRES for M = I - gamma*J.

    Jacobian-vector products use J v ~ (f(t, y + s v) - f(t, y)) / s with
    s = 1/||v||_wrms, linearized at the current Newton iterate and applied
    with the current gamma whenever the caller passes them to solve(). There
    is no stored Jacobian, so every setup reports a current Jacobian and the
    stale-Jacobian retry never applies.

    Args:
        rhs: Counted RHS evaluator.
        ops: Vector backend.
        rtol: Relative residual tolerance passed to GMRES.
        max_iters: Maximum GMRES iterations (restart length is min(n, 30)).
    """

    matrix_free = True

    def __init__(
        self,
        rhs: RhsEvaluator,
        ops: VectorOps,
        *,
        rtol: float = 0.05,
        max_iters: int = 100,
    ) -> None:
        self.rhs = rhs
        self.ops = ops
        self.rtol = float(rtol)
        self.max_iters = int(max_iters)
        self._ctx: SetupContext | None = None
        self._gamma = 0.0
        self.nje = 0
        self.n_jtimes = 0

    def setup(self, ctx: SetupContext, gamma: float, *, new_jacobian: bool) -> bool:  # noqa: ARG002
        self._ctx = ctx
        self._gamma = float(gamma)
        return True

    def _jtimes(self, v: FloatArray, y: Vector, fy: FloatArray) -> FloatArray:
        ctx = self._ctx
        if ctx is None:
            raise LinearSolverError(_NOT_SET_UP_MSG)
        self.n_jtimes += 1
        v_vec = self.ops.from_array(v.reshape(fy.shape), y)
        vnorm = self.ops.wrms_norm(v_vec, ctx.weights)
        if vnorm == 0.0:
            return np.zeros_like(v)
        sig = 1.0 / vnorm
        y_pert = self.ops.linear_sum(1.0, y, sig, v_vec)
        f_pert = np.asarray(self.ops.to_array(self.rhs(ctx.t, y_pert)), dtype=float)
        return ((f_pert - fy) / sig).ravel()

    def solve(
        self,
        b: Vector,
        *,
        y: Vector | None = None,
        fy: Vector | None = None,
        gamma: float | None = None,
    ) -> Vector:
        ctx = self._ctx
        if ctx is None:
            raise LinearSolverError(_NOT_SET_UP_MSG)
        y_lin = ctx.y if y is None else y
        if fy is None:
            fy = self.rhs(ctx.t, y_lin)
        fy_arr = np.asarray(self.ops.to_array(fy), dtype=float)
        g = self._gamma if gamma is None else float(gamma)

        b_arr = np.asarray(self.ops.to_array(b), dtype=float)
        n = b_arr.size

        def matvec(v: FloatArray) -> FloatArray:
            v = np.asarray(v, dtype=float).ravel()
            return v - g * self._jtimes(v, y_lin, fy_arr)

        op = LinearOperator((n, n), matvec=matvec, dtype=float)
        x, info = gmres(
            op,
            b_arr.ravel(),
            rtol=self.rtol,
            restart=min(n, 30),
            maxiter=self.max_iters,
        )
        if info < 0:
            raise LinearSolverError(_KRYLOV_BREAKDOWN_MSG.format(info=info))
        if info > 0:
            raise RecoverableLinearSolveError(_KRYLOV_NOT_CONVERGED_MSG.format(info=info))
        return self.ops.from_array(np.asarray(x).reshape(b_arr.shape), b)
