"""Principal-component initialisation of the state-space model."""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
import pandas as pd

from .dynamics import fit_ar1, fit_var1, stationary_covariance
from .errors import DimensionError
from .model import ErrorModel, StateSpaceParams


@dataclass
class InitConfig:
    """Settings of the PCA initialisation.

    Parameters
    ----------
    diffuse_variance : float, default 1e4
        Variance of the identity prior used for ``P0`` when the fitted
        transition does not admit a stationary covariance.
    obs_noise_floor : float, default 1e-4
        Fixed observation noise ``kappa`` of the AR(1) error model.
    """

    diffuse_variance: float = 1e4
    obs_noise_floor: float = 1e-4

    def __post_init__(self) -> None:
        if self.diffuse_variance <= 0:
            raise ValueError("diffuse_variance must be positive")
        if self.obs_noise_floor <= 0:
            raise ValueError("obs_noise_floor must be positive")


@dataclass
class InitializationResult:
    """Output of :func:`initialize_pca`.

    Attributes
    ----------
    params : StateSpaceParams
        Starting values for the Kalman filter and EM.
    X_bal : ndarray, shape (n, p)
        Panel with missing entries filled in.
    factors : ndarray, shape (n, r)
        Principal component factors.
    loadings : ndarray, shape (p, r)
        Principal component loadings.
    errors : ndarray, shape (n, p)
        ``X_bal - factors @ loadings.T``.
    eigenvalues, eigenvectors : ndarray
        Full eigen-decomposition of ``X_bal' X_bal`` in descending order.
    """

    params: StateSpaceParams
    X_bal: np.ndarray
    factors: np.ndarray
    loadings: np.ndarray
    errors: np.ndarray
    eigenvalues: np.ndarray
    eigenvectors: np.ndarray


def balance_panel(X: np.ndarray, mask: np.ndarray | None = None) -> np.ndarray:
    """Fill missing entries column by column.

    Interior gaps are interpolated linearly, leading and trailing gaps take
    the nearest observed value.
    """

    X = np.asarray(X, dtype=float)
    mask = ~np.isnan(X) if mask is None else np.asarray(mask, dtype=bool)
    observed = np.where(mask, X, np.nan)
    empty = ~mask.any(axis=0)
    if empty.any():
        cols = np.flatnonzero(empty).tolist()
        raise DimensionError(f"Series {cols} contain no observations")
    frame = pd.DataFrame(observed)
    filled = frame.interpolate(method="linear", axis=0, limit_direction="both")
    return filled.to_numpy(dtype=float)


def principal_components(
    X_bal: np.ndarray, r: int
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Return ``factors, loadings, eigenvalues, eigenvectors``.

    Loadings are ``sqrt(p)`` times the leading eigenvectors of
    ``X_bal' X_bal`` and factors are ``X_bal @ loadings / p``. Each
    eigenvector is signed so that its entries sum to a non-negative value.
    """

    p = X_bal.shape[1]
    S = X_bal.T @ X_bal
    S = 0.5 * (S + S.T)
    evals, evecs = np.linalg.eigh(S)
    order = np.argsort(evals)[::-1]
    evals = evals[order]
    evecs = evecs[:, order]
    signs = np.where(evecs.sum(axis=0) < 0, -1.0, 1.0)
    evecs = evecs * signs
    loadings = np.sqrt(p) * evecs[:, :r]
    factors = X_bal @ loadings / p
    return factors, loadings, evals, evecs


def initialize_pca(
    X: np.ndarray,
    r: int,
    err: ErrorModel | str = ErrorModel.AR1,
    *,
    mask: np.ndarray | None = None,
    config: InitConfig | None = None,
) -> InitializationResult:
    """Build starting values from principal components and a VAR(1).

    Parameters
    ----------
    X : ndarray, shape (n, p)
        Standardised panel, ``NaN`` for missing entries.
    r : int
        Number of factors.
    err : {"IID", "AR1"}
        Idiosyncratic error model. For ``"AR1"`` an AR(1) is fitted to each
        series' PCA residual and the state is augmented with the errors.
    mask : ndarray of bool, optional
        Observed entries; defaults to ``~np.isnan(X)``.
    config : InitConfig, optional
    """

    config = config or InitConfig()
    err = ErrorModel(err)
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise DimensionError(f"Expected 2D array (n, p), got {X.ndim}D")
    mask = ~np.isnan(X) if mask is None else np.asarray(mask, dtype=bool)
    if mask.shape != X.shape:
        raise DimensionError("mask shape must match X")
    n, p = X.shape
    if r < 1 or r > p:
        raise DimensionError(f"r must be between 1 and p={p}, got {r}")
    usable = int(mask.any(axis=1).sum())
    if n < 3 or usable < r + 2:
        raise DimensionError(
            f"Need at least {r + 2} time points with observations for r={r}, "
            f"got {usable}"
        )

    X_bal = balance_panel(X, mask)
    factors, loadings, evals, evecs = principal_components(X_bal, r)
    A_f, Sigma_f = fit_var1(factors)
    errors = X_bal - factors @ loadings.T

    if err is ErrorModel.AR1:
        phi, sigma2 = fit_ar1(errors)
        Sigma_eta = config.obs_noise_floor * np.eye(p)
        a0 = np.concatenate([factors[0], errors[0]])
        k = r + p
        A_t = np.zeros((k, k))
        A_t[:r, :r] = A_f
        A_t[r:, r:] = np.diag(phi)
        S_t = np.zeros((k, k))
        S_t[:r, :r] = Sigma_f
        S_t[r:, r:] = np.diag(sigma2)
        P0 = stationary_covariance(A_t, S_t, config.diffuse_variance)
        params = StateSpaceParams(
            A=A_t,
            Lambda=np.hstack([loadings, np.eye(p)]),
            Sigma_u=S_t,
            Sigma_eta=Sigma_eta,
            a0=a0,
            P0=P0,
            n_factors=r,
            error_model=err,
        )
    else:
        Sigma_eta = np.diag(np.var(errors, axis=0, ddof=1))
        P0 = stationary_covariance(A_f, Sigma_f, config.diffuse_variance)
        params = StateSpaceParams(
            A=A_f,
            Lambda=loadings,
            Sigma_u=Sigma_f,
            Sigma_eta=Sigma_eta,
            a0=factors[0],
            P0=P0,
            n_factors=r,
            error_model=err,
        )

    return InitializationResult(
        params=params,
        X_bal=X_bal,
        factors=factors,
        loadings=loadings,
        errors=errors,
        eigenvalues=evals,
        eigenvectors=evecs,
    )
