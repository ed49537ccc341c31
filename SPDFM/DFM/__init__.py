from .errors import (
    DFMError,
    DimensionError,
    FilterSingularityError,
    DegenerateEstimateError,
    EmptyPathError,
    ConvergenceWarning,
)
from .model import ErrorModel, StateSpaceParams
from .dynamics import StateDynamics
from .kalman import KalmanConfig, KalmanMethod, KalmanState, kalman_smoother
from .em import EMConfig, EMEstimatorSDFM, EMResult
from .utils import InitConfig, InitializationResult, initialize_pca
from .selection import (
    PathStopReason,
    SparsePathResult,
    bic_function,
    print_path_summary,
    sparse_path_search,
)

__all__ = [
    "DFMError",
    "DimensionError",
    "FilterSingularityError",
    "DegenerateEstimateError",
    "EmptyPathError",
    "ConvergenceWarning",
    "ErrorModel",
    "StateSpaceParams",
    "StateDynamics",
    "KalmanConfig",
    "KalmanMethod",
    "KalmanState",
    "kalman_smoother",
    "EMConfig",
    "EMEstimatorSDFM",
    "EMResult",
    "InitConfig",
    "InitializationResult",
    "initialize_pca",
    "PathStopReason",
    "SparsePathResult",
    "bic_function",
    "print_path_summary",
    "sparse_path_search",
]
