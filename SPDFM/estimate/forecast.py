from __future__ import annotations

import numpy as np

from ..DFM.dynamics import StateDynamics
from .fit import SparseDFMResult, fit_sparse_dfm
from .preprocess import unstandardize


# ---------------------------------------------------------------------------
def forecast_sparse_dfm(
    result: SparseDFMResult, steps: int, *, return_std: bool = False
):
    """Forecast the panel ``steps`` periods beyond the estimation sample.

    The last estimated state is propagated with the fitted transition and
    mapped to the observations, ``x_{n+h} = Lambda a_{n+h|n}``. Forecasts
    are returned on the original scale of the data.

    Parameters
    ----------
    result:
        Output of :func:`fit_sparse_dfm`.
    steps:
        Forecast horizon.
    return_std:
        Also return the forecast standard deviations of every series,
        including the observation noise.

    Returns
    -------
    fcst : ndarray, shape (steps, p)
    std : ndarray, shape (steps, p)
        Only if ``return_std`` is ``True``.
    """

    if steps <= 0:
        raise ValueError("steps must be positive")
    model = result.params.model
    kfs = result.state.kalman
    if kfs is not None:
        a_last, P_last = kfs.x_smooth[-1], kfs.P_smooth[-1]
    else:
        # PCA: start from the last principal component state
        a_last = result.state.factors[-1]
        if model.is_ar1:
            a_last = np.concatenate([a_last, result.state.errors[-1]])
        P_last = model.P0
    means, covs = StateDynamics(model).forecast(a_last, P_last, steps)
    L = model.Lambda
    fcst = means @ L.T
    var = np.einsum("ia,hab,ib->hi", L, covs, L) + np.diag(model.Sigma_eta)
    std = np.sqrt(np.maximum(var, 0.0))
    if result.data.standardize:
        fcst = unstandardize(fcst, result.data.mean, result.data.sd)
        std = std * result.data.sd
    if return_std:
        return fcst, std
    return fcst


# ---------------------------------------------------------------------------
def out_of_sample_rmse(X: np.ndarray, steps: int, r: int, **fit_options) -> float:
    """Compute out-of-sample RMSE of a sparse DFM forecast.

    The model is estimated on ``X`` excluding the last ``steps``
    observations. A forecast is produced for these periods and compared
    with the held-out data, ignoring missing entries.
    """

    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise ValueError("X must be a 2D array")
    if steps <= 0 or steps >= X.shape[0]:
        raise ValueError("steps must be between 1 and n-1")

    result = fit_sparse_dfm(X[:-steps], r, **fit_options)
    fcst = forecast_sparse_dfm(result, steps)
    err = fcst - X[-steps:]
    return float(np.sqrt(np.nanmean(err**2)))
