"""mstep_engine adaptive variable-order implicit multistep ODE integrator."""

from __future__ import annotations

from .coefficients import AdamsFormula, BDFFormula, FormulaFamily, formula_for
from .config import (
    ControllerConfig,
    FailureConfig,
    IntegratorConfig,
    IntegratorSettings,
    LinearSolverConfig,
    NonlinearConfig,
    OrderConfig,
    StepSizeConfig,
    ToleranceConfig,
    load_settings,
)
from .error_estimator import ErrorEstimator
from .error_weights import ErrorWeights
from .errors import (
    FailureContext,
    IllegalInputError,
    IntegratorError,
    IntegratorFatalError,
    LinearSolverError,
    RecoverableCallbackError,
    RecoverableLinearSolveError,
    ResultCode,
    StepFailureExhaustedError,
    TooMuchWorkError,
    UserCallbackFatalError,
    VectorOpError,
    VectorOpFailureError,
)
from .failure_manager import FailureKind, FailureManager
from .history import HistoryStore, Prediction
from .integrator import Integrator, IntegratorStats, SolveResult
from .linear_solvers import DenseLinearSolver, KrylovLinearSolver, SparseLinearSolver
from .model_core import ModelCore, ModelCoreOptions
from .nls_driver import NlsFailureReason, NonlinearSolveDriver
from .nonlinear_solvers import FixedPointSolver, NewtonSolver
from .step_controller import (
    AttemptOutcome,
    IntegratorState,
    IntegratorStatus,
    StepAttemptRecord,
    StepController,
)
from .vector_ops import ComposedNumpyVectorOps, NumpyVectorOps, VectorOps

__all__ = [
    "AdamsFormula",
    "AttemptOutcome",
    "BDFFormula",
    "ComposedNumpyVectorOps",
    "ControllerConfig",
    "DenseLinearSolver",
    "ErrorEstimator",
    "ErrorWeights",
    "FailureConfig",
    "FailureContext",
    "FailureKind",
    "FailureManager",
    "FixedPointSolver",
    "FormulaFamily",
    "HistoryStore",
    "IllegalInputError",
    "Integrator",
    "IntegratorConfig",
    "IntegratorError",
    "IntegratorFatalError",
    "IntegratorSettings",
    "IntegratorState",
    "IntegratorStats",
    "IntegratorStatus",
    "KrylovLinearSolver",
    "LinearSolverConfig",
    "LinearSolverError",
    "ModelCore",
    "ModelCoreOptions",
    "NewtonSolver",
    "NlsFailureReason",
    "NonlinearConfig",
    "NonlinearSolveDriver",
    "NumpyVectorOps",
    "OrderConfig",
    "Prediction",
    "RecoverableCallbackError",
    "RecoverableLinearSolveError",
    "ResultCode",
    "SolveResult",
    "SparseLinearSolver",
    "StepAttemptRecord",
    "StepController",
    "StepFailureExhaustedError",
    "StepSizeConfig",
    "ToleranceConfig",
    "TooMuchWorkError",
    "UserCallbackFatalError",
    "VectorOpError",
    "VectorOpFailureError",
    "VectorOps",
    "formula_for",
    "load_settings",
]

__version__ = "0.1.0"
