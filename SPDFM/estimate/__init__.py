from .preprocess import standardize, unstandardize, logspace
from .fit import (
    Algorithm,
    SparseDFMConfig,
    SparseDFMResult,
    default_alphas,
    fit_sparse_dfm,
)
from .forecast import forecast_sparse_dfm, out_of_sample_rmse

__all__ = [
    "standardize",
    "unstandardize",
    "logspace",
    "Algorithm",
    "SparseDFMConfig",
    "SparseDFMResult",
    "default_alphas",
    "fit_sparse_dfm",
    "forecast_sparse_dfm",
    "out_of_sample_rmse",
]
