__version__ = "0.0.1"

from .DFM import (
    StateSpaceParams,
    StateDynamics,
    kalman_smoother,
    EMEstimatorSDFM,
    initialize_pca,
    sparse_path_search,
    bic_function,
)
from .estimate import (
    standardize,
    unstandardize,
    logspace,
    fit_sparse_dfm,
    forecast_sparse_dfm,
    out_of_sample_rmse,
)

__all__ = [
    "StateSpaceParams",
    "StateDynamics",
    "kalman_smoother",
    "EMEstimatorSDFM",
    "initialize_pca",
    "sparse_path_search",
    "bic_function",
    "standardize",
    "unstandardize",
    "logspace",
    "fit_sparse_dfm",
    "forecast_sparse_dfm",
    "out_of_sample_rmse",
]
