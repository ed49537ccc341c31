"""Estimate a (sparse) dynamic factor model from a raw panel.

``fit_sparse_dfm`` chains the building blocks of :mod:`SPDFM.DFM`:

* ``"PCA"``: principal components and a VAR(1) only.
* ``"2Stage"``: PCA starting values followed by one Kalman filter/smoother
  pass (Doz, Giannone and Reichlin, 2011).
* ``"EM"``: PCA starting values refined by EM (Banbura and Modugno, 2014).
* ``"EM-sparse"``: sparse EM along a grid of L1 strengths, selected by BIC
  (Mosley, Chan and Gibberd, 2023).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence
import numpy as np
import pandas as pd

from ..DFM.em import EMConfig, EMEstimatorSDFM
from ..DFM.kalman import KalmanMethod, KalmanState, make_kalman_smoother
from ..DFM.model import ErrorModel, StateSpaceParams
from ..DFM.selection import SparsePathResult, print_path_summary, sparse_path_search
from ..DFM.utils import initialize_pca
from .preprocess import logspace, standardize as standardize_panel, unstandardize


class Algorithm(str, Enum):
    PCA = "PCA"
    TWO_STAGE = "2Stage"
    EM = "EM"
    EM_SPARSE = "EM-sparse"


def default_alphas() -> np.ndarray:
    return logspace(-2, 3, 100)


@dataclass
class SparseDFMConfig:
    """Options of :func:`fit_sparse_dfm`.

    Parameters
    ----------
    r : int
        Number of factors.
    q : int, default 0
        The first ``q`` series are not regularised.
    alphas : sequence of float, optional
        L1 strengths for ``"EM-sparse"``; sorted ascending. Defaults to
        ``logspace(-2, 3, 100)``.
    alg : {"PCA", "2Stage", "EM", "EM-sparse"}, default "EM-sparse"
    err : {"AR1", "IID"}, default "AR1"
    kalman : {"univariate", "multivariate"}, default "univariate"
    standardize : bool, default True
        Scale every series to zero mean and unit variance before fitting.
    max_iter : int, default 100
    threshold : float, default 1e-4
    verbose : bool, default False
    n_jobs : int, optional
        ``joblib`` workers for the sparse loading rows.
    """

    r: int
    q: int = 0
    alphas: Sequence[float] | None = None
    alg: Algorithm = Algorithm.EM_SPARSE
    err: ErrorModel = ErrorModel.AR1
    kalman: KalmanMethod = KalmanMethod.UNIVARIATE
    standardize: bool = True
    max_iter: int = 100
    threshold: float = 1e-4
    verbose: bool = False
    n_jobs: int | None = None

    def __post_init__(self) -> None:
        try:
            self.alg = Algorithm(self.alg)
        except ValueError:
            raise ValueError(f"Incorrect alg input: {self.alg!r}") from None
        try:
            self.err = ErrorModel(self.err)
        except ValueError:
            raise ValueError(f"Incorrect err input: {self.err!r}") from None
        try:
            self.kalman = KalmanMethod(self.kalman)
        except ValueError:
            raise ValueError(f"Incorrect kalman input: {self.kalman!r}") from None
        if isinstance(self.r, bool) or not isinstance(self.r, (int, np.integer)) or self.r <= 0:
            raise ValueError("r needs to be an integer > 0")
        if isinstance(self.q, bool) or not isinstance(self.q, (int, np.integer)) or self.q < 0:
            raise ValueError("q needs to be an integer >= 0")
        if self.max_iter <= 0:
            raise ValueError("max_iter must be an integer > 0")
        if self.threshold <= 0:
            raise ValueError("threshold must be > 0")
        alphas = default_alphas() if self.alphas is None else np.asarray(self.alphas, dtype=float)
        alphas = np.atleast_1d(alphas)
        if alphas.size == 0 or not np.all(np.isfinite(alphas)):
            raise ValueError("alphas must be a numeric vector with no missing values")
        self.alphas = np.sort(alphas)

    def em_config(self) -> EMConfig:
        return EMConfig(
            max_iter=self.max_iter,
            threshold=self.threshold,
            kalman=self.kalman,
            n_jobs=self.n_jobs,
        )


@dataclass
class SparseDFMData:
    """Input panel and in-sample predictions.

    ``predict`` holds the smoothed (or PCA) reconstruction of the panel on
    the original scale; ``predict_filtered`` is only set for ``"2Stage"``.
    """

    X: np.ndarray
    standardize: bool
    mean: np.ndarray
    sd: np.ndarray
    X_bal: np.ndarray
    eigenvalues: np.ndarray
    eigenvectors: np.ndarray
    predict: np.ndarray
    predict_filtered: np.ndarray | None = None
    series_names: list[str] | None = None
    index: pd.Index | None = None


@dataclass
class SparseDFMParams:
    """Estimated parameters split into factor and idiosyncratic blocks."""

    A: np.ndarray
    Lambda: np.ndarray
    Sigma_u: np.ndarray
    Sigma_epsilon: np.ndarray
    Phi: np.ndarray | None
    model: StateSpaceParams


@dataclass
class SparseDFMState:
    """Estimated factors (and AR(1) errors) with their covariances.

    For ``"PCA"`` the covariances are the unconditional ``P0`` blocks; for
    the Kalman based algorithms they are stacked over time.
    """

    factors: np.ndarray
    factors_cov: np.ndarray
    errors: np.ndarray | None = None
    errors_cov: np.ndarray | None = None
    factors_filtered: np.ndarray | None = None
    factors_filtered_cov: np.ndarray | None = None
    errors_filtered: np.ndarray | None = None
    errors_filtered_cov: np.ndarray | None = None
    kalman: KalmanState | None = None


@dataclass
class SparseDFMConvergence:
    """EM diagnostics (``"EM"`` and ``"EM-sparse"`` only)."""

    converged: bool
    loglik: list[float]
    num_iter: int | list[int]
    tol: float
    max_iter: int
    alpha_grid: list[float] | None = None
    alpha_opt: float | None = None
    bic: list[float] | None = None
    stop_reason: str | None = None


@dataclass
class SparseDFMResult:
    config: SparseDFMConfig
    data: SparseDFMData
    params: SparseDFMParams
    state: SparseDFMState
    convergence: SparseDFMConvergence | None = None
    path: SparsePathResult | None = field(default=None, repr=False)

    # ------------------------------------------------------------------
    def _names(self) -> list[str]:
        p = self.params.Lambda.shape[0]
        return self.data.series_names or [f"x{i + 1}" for i in range(p)]

    # ------------------------------------------------------------------
    def loadings_frame(self) -> pd.DataFrame:
        """Factor loadings indexed by series name."""
        r = self.params.Lambda.shape[1]
        return pd.DataFrame(
            self.params.Lambda,
            index=self._names(),
            columns=[f"factor_{j + 1}" for j in range(r)],
        )

    # ------------------------------------------------------------------
    def factors_frame(self) -> pd.DataFrame:
        """Estimated factors indexed like the input panel."""
        r = self.params.Lambda.shape[1]
        return pd.DataFrame(
            self.state.factors,
            index=self.data.index,
            columns=[f"factor_{j + 1}" for j in range(r)],
        )

    # ------------------------------------------------------------------
    def summary(self) -> pd.DataFrame:
        """Per-series overview of the fitted model."""
        Lambda = self.params.Lambda
        table = pd.DataFrame(index=self._names())
        table["mean"] = self.data.mean
        table["sd"] = self.data.sd
        table["nonzero_loadings"] = np.count_nonzero(Lambda, axis=1)
        if self.params.Phi is not None:
            table["phi"] = np.diag(self.params.Phi)
        table["idio_var"] = np.diag(self.params.Sigma_epsilon)
        observed = ~np.isnan(self.data.X)
        resid = np.where(observed, self.data.X - self.data.predict, np.nan)
        table["rmse"] = np.sqrt(np.nanmean(resid**2, axis=0))
        return table


# ---------------------------------------------------------------------------
def _split_params(params: StateSpaceParams) -> SparseDFMParams:
    r = params.n_factors
    return SparseDFMParams(
        A=np.array(params.factor_transition),
        Lambda=np.array(params.factor_loadings),
        Sigma_u=np.array(params.factor_innovation_cov),
        Sigma_epsilon=np.array(params.idiosyncratic_cov),
        Phi=None if not params.is_ar1 else np.array(params.A[r:, r:]),
        model=params,
    )


def _split_state(x: np.ndarray, P: np.ndarray, params: StateSpaceParams):
    """Return ``factors, factors_cov, errors, errors_cov`` of a state path."""
    r = params.n_factors
    if not params.is_ar1:
        return x[:, :r], P[..., :r, :r], None, None
    return x[:, :r], P[..., :r, :r], x[:, r:], P[..., r:, r:]


def _to_original_scale(Z: np.ndarray, data_mean, data_sd, standardized: bool):
    return unstandardize(Z, data_mean, data_sd) if standardized else Z


def _smoothed_state(state: KalmanState, params: StateSpaceParams) -> SparseDFMState:
    f, f_cov, e, e_cov = _split_state(state.x_smooth, state.P_smooth, params)
    return SparseDFMState(factors=f, factors_cov=f_cov, errors=e, errors_cov=e_cov, kalman=state)


# ---------------------------------------------------------------------------
def fit_sparse_dfm(
    X: np.ndarray | pd.DataFrame,
    r: int,
    q: int = 0,
    alphas: Sequence[float] | None = None,
    alg: Algorithm | str = Algorithm.EM_SPARSE,
    err: ErrorModel | str = ErrorModel.AR1,
    kalman: KalmanMethod | str = KalmanMethod.UNIVARIATE,
    standardize: bool = True,
    max_iter: int = 100,
    threshold: float = 1e-4,
    *,
    verbose: bool = False,
    n_jobs: int | None = None,
) -> SparseDFMResult:
    """Fit a dynamic factor model to the ``(n, p)`` panel ``X``.

    Missing entries are marked by ``NaN``. A :class:`pandas.DataFrame`
    keeps its column names (``result.data.series_names``) and index.
    See :class:`SparseDFMConfig` for the options.

    Returns
    -------
    SparseDFMResult
    """

    cfg = SparseDFMConfig(
        r=r,
        q=q,
        alphas=alphas,
        alg=alg,
        err=err,
        kalman=kalman,
        standardize=standardize,
        max_iter=max_iter,
        threshold=threshold,
        verbose=verbose,
        n_jobs=n_jobs,
    )

    series_names = None
    index = None
    if isinstance(X, pd.DataFrame):
        series_names = [str(c) for c in X.columns]
        index = X.index
        X = X.to_numpy(dtype=float)
    X_raw = np.asarray(X, dtype=float)
    if X_raw.ndim != 2:
        raise ValueError("X must be a 2D array (n, p)")
    if cfg.q > X_raw.shape[1]:
        raise ValueError(f"q must not exceed the number of series p={X_raw.shape[1]}")

    if cfg.standardize:
        X_fit, mean, sd = standardize_panel(X_raw)
    else:
        X_fit = X_raw
        mean = np.nanmean(X_raw, axis=0)
        sd = np.nanstd(X_raw, axis=0, ddof=1)

    init = initialize_pca(X_fit, cfg.r, cfg.err)
    params = init.params

    def rescale(Z):
        return _to_original_scale(Z, mean, sd, cfg.standardize)

    data = SparseDFMData(
        X=X_raw,
        standardize=cfg.standardize,
        mean=mean,
        sd=sd,
        X_bal=init.X_bal,
        eigenvalues=init.eigenvalues,
        eigenvectors=init.eigenvectors,
        predict=np.empty(0),
        series_names=series_names,
        index=index,
    )
    convergence = None
    path = None

    if cfg.alg is Algorithm.PCA:
        data.predict = rescale(init.factors @ init.loadings.T)
        r = cfg.r
        state = SparseDFMState(
            factors=init.factors,
            factors_cov=params.P0[:r, :r],
            errors=init.errors if params.is_ar1 else None,
            errors_cov=params.P0[r:, r:] if params.is_ar1 else None,
        )

    elif cfg.alg is Algorithm.TWO_STAGE:
        kfs = make_kalman_smoother(cfg.kalman, params).run(X_fit)
        data.predict = rescale(kfs.x_smooth @ params.Lambda.T)
        data.predict_filtered = rescale(kfs.x_filt @ params.Lambda.T)
        state = _smoothed_state(kfs, params)
        f, f_cov, e, e_cov = _split_state(kfs.x_filt, kfs.P_filt, params)
        state.factors_filtered = f
        state.factors_filtered_cov = f_cov
        state.errors_filtered = e
        state.errors_filtered_cov = e_cov

    elif cfg.alg is Algorithm.EM:
        em_cfg = cfg.em_config()
        em_cfg.verbose = cfg.verbose
        em_result = EMEstimatorSDFM(em_cfg).fit(X_fit, params)
        params = em_result.params
        kfs = make_kalman_smoother(cfg.kalman, params).run(X_fit)
        data.predict = rescale(kfs.x_smooth @ params.Lambda.T)
        state = _smoothed_state(kfs, params)
        convergence = SparseDFMConvergence(
            converged=em_result.converged,
            loglik=em_result.loglik_trace,
            num_iter=em_result.num_iter,
            tol=cfg.threshold,
            max_iter=cfg.max_iter,
        )

    else:
        path = sparse_path_search(
            X_fit,
            params,
            cfg.alphas,
            q=cfg.q,
            config=cfg.em_config(),
            verbose=cfg.verbose,
        )
        if cfg.verbose:
            print_path_summary(path)
        params = path.best_params
        kfs = path.best_state
        data.predict = rescale(kfs.x_smooth @ params.Lambda.T)
        state = _smoothed_state(kfs, params)
        convergence = SparseDFMConvergence(
            converged=path.best_em_result.converged,
            loglik=path.best_em_result.loglik_trace,
            num_iter=path.num_iter,
            tol=cfg.threshold,
            max_iter=cfg.max_iter,
            alpha_grid=path.alphas,
            alpha_opt=path.best_alpha,
            bic=path.bic,
            stop_reason=path.stop_reason.value,
        )

    return SparseDFMResult(
        config=cfg,
        data=data,
        params=_split_params(params),
        state=state,
        convergence=convergence,
        path=path,
    )
