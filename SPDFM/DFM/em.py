"""EM algorithm for the (sparse) dynamic factor model.

The E-step runs the Kalman smoother under the current parameters. The
M-step re-estimates all matrices in closed form following Banbura and
Modugno (2014) for arbitrary patterns of missing data. In sparse mode the
loadings of the regularised series are obtained by coordinate descent on
the expected log-likelihood plus an L1 penalty (Mosley, Chan and Gibberd,
2023).
"""

from __future__ import annotations

from dataclasses import dataclass, field
import warnings
import numpy as np
from joblib import Parallel, delayed

from .errors import ConvergenceWarning, DegenerateEstimateError, DimensionError
from .kalman import KalmanConfig, KalmanMethod, KalmanState, make_kalman_smoother
from .model import StateSpaceParams, check_psd, symmetrize


@dataclass
class EMConfig:
    """Settings of the EM iterations.

    Parameters
    ----------
    max_iter : int, default 100
        Maximum number of EM iterations.
    threshold : float, default 1e-4
        Convergence tolerance on the change in log-likelihood.
    kalman : {"univariate", "multivariate"}, default "univariate"
        Filter formulation used in the E-step.
    cd_max_iter : int, default 100
        Maximum coordinate descent sweeps per sparse loading row.
    cd_tol : float, default 1e-6
        Coordinate descent stops once no loading moves by more than this.
    obs_noise_floor : float, default 1e-4
        Lower bound of the observation noise variances for AR(1) errors.
    full_obs_noise : bool, default False
        Estimate an unrestricted ``Sigma_eta`` (IID errors only).
    normalize_factors : bool, default True
        Rescale the factors to unit smoothed second moment after every
        M-step. The likelihood is unaffected, but the L1 penalty can then
        no longer be evaded by shrinking the loadings and inflating the
        factors.
    n_jobs : int, optional
        Number of ``joblib`` workers for the sparse loading rows.
    verbose : bool, default False
        Print the log-likelihood at every iteration.
    kalman_config : KalmanConfig
        Numerical settings passed to the filter.
    """

    max_iter: int = 100
    threshold: float = 1e-4
    kalman: KalmanMethod = KalmanMethod.UNIVARIATE
    cd_max_iter: int = 100
    cd_tol: float = 1e-6
    obs_noise_floor: float = 1e-4
    full_obs_noise: bool = False
    normalize_factors: bool = True
    n_jobs: int | None = None
    verbose: bool = False
    kalman_config: KalmanConfig = field(default_factory=KalmanConfig)

    def __post_init__(self) -> None:
        self.kalman = KalmanMethod(self.kalman)
        if self.max_iter <= 0:
            raise ValueError("max_iter must be a positive integer")
        if self.threshold <= 0:
            raise ValueError("threshold must be positive")
        if self.cd_max_iter <= 0:
            raise ValueError("cd_max_iter must be a positive integer")
        if self.cd_tol <= 0:
            raise ValueError("cd_tol must be positive")
        if self.obs_noise_floor < 0:
            raise ValueError("obs_noise_floor must be non-negative")


@dataclass
class EMResult:
    """Outcome of one EM run.

    Attributes
    ----------
    params : StateSpaceParams
        Parameters after the last M-step.
    converged : bool
        Whether the convergence threshold was met before ``max_iter``.
    num_iter : int
        Number of EM iterations performed.
    loglik_trace : list of float
        Log-likelihood evaluated in each E-step.
    state : KalmanState, optional
        Smoother output of the last E-step.
    """

    params: StateSpaceParams
    converged: bool
    num_iter: int
    loglik_trace: list[float]
    state: KalmanState | None = None

    @property
    def final_loglik(self) -> float:
        return self.loglik_trace[-1] if self.loglik_trace else float("nan")


class EMEstimatorSDFM:
    """Estimate the state-space parameters by EM."""

    def __init__(self, config: EMConfig | None = None) -> None:
        self.config = config or EMConfig()

    # ------------------------------------------------------------------
    def fit(
        self,
        X: np.ndarray,
        params: StateSpaceParams,
        alpha: np.ndarray | None = None,
        mask: np.ndarray | None = None,
    ) -> EMResult:
        """Run EM from ``params`` until convergence or ``max_iter``.

        Parameters
        ----------
        X : ndarray, shape (n, p)
            Standardised panel with ``NaN`` for missing entries.
        params : StateSpaceParams
            Starting values (left untouched).
        alpha : ndarray, shape (p, r), optional
            Per-entry L1 penalties on the factor loadings. Passing it turns
            on the sparse loadings update; rows of zeros are estimated by
            plain least squares.
        mask : ndarray of bool, optional
            Observed entries, defaults to ``~np.isnan(X)``.
        """

        cfg = self.config
        X, mask = _prepare_data(X, mask, params)
        alpha = _check_alpha(alpha, params)
        sparse = alpha is not None

        loglik_trace: list[float] = []
        converged = False
        state = None
        for it in range(cfg.max_iter):
            new_params, state = em_step(X, mask, params, alpha=alpha, config=cfg)
            ll = float(state.loglik)
            if loglik_trace:
                conv, decreased = em_converged(ll, loglik_trace[-1], cfg.threshold)
                if decreased and not sparse:
                    warnings.warn(
                        f"Log-likelihood decreased from {loglik_trace[-1]:.4f} "
                        f"to {ll:.4f} at iteration {it + 1}."
                    )
            else:
                conv = False
            loglik_trace.append(ll)
            params = new_params
            if cfg.verbose:
                print(f"EM iteration {it + 1}: loglik={ll:.4f}")
            if conv:
                converged = True
                break

        if not converged:
            warnings.warn(
                f"EM did not converge within {cfg.max_iter} iterations",
                ConvergenceWarning,
            )
        return EMResult(
            params=params,
            converged=converged,
            num_iter=len(loglik_trace),
            loglik_trace=loglik_trace,
            state=state,
        )


# ----------------------------------------------------------------------
# E- and M-step building blocks
# ----------------------------------------------------------------------

def em_converged(
    loglik: float, previous_loglik: float, threshold: float = 1e-4
) -> tuple[bool, bool]:
    """Return ``(converged, decreased)`` for two successive log-likelihoods.

    Convergence holds when either the absolute change or the change
    relative to the average magnitude ``(|f_t| + |f_{t-1}|) / 2`` falls
    below ``threshold``.
    """

    delta = loglik - previous_loglik
    decreased = delta < -1e-6 * max(1.0, abs(previous_loglik))
    avg = (abs(loglik) + abs(previous_loglik) + np.finfo(float).eps) / 2
    converged = abs(delta) < threshold or abs(delta) / avg < threshold
    return bool(converged), bool(decreased)


def soft_threshold(z, gamma):
    """Proximal operator of ``gamma * |.|``."""
    return np.sign(z) * np.maximum(np.abs(z) - gamma, 0.0)


def em_step(
    X: np.ndarray,
    mask: np.ndarray,
    params: StateSpaceParams,
    *,
    alpha: np.ndarray | None = None,
    config: EMConfig | None = None,
) -> tuple[StateSpaceParams, KalmanState]:
    """Perform one E-step and M-step.

    Returns the updated parameters and the smoother output computed under
    the *incoming* parameters (whose ``loglik`` is the log-likelihood of
    ``params``). With ``config.normalize_factors`` the updated parameters
    are expressed in factors of unit smoothed second moment.
    """

    cfg = config or EMConfig()
    state = make_kalman_smoother(cfg.kalman, params, cfg.kalman_config).run(X, mask)

    r = params.n_factors
    n = X.shape[0]
    S11, S10, S00 = _smoothed_moments(state)

    A_f, Sigma_f = _update_transition(S11[:r, :r], S10[:r, :r], S00[:r, :r], n)
    A_new = np.zeros_like(params.A)
    Sigma_u_new = np.zeros_like(params.Sigma_u)
    A_new[:r, :r] = A_f
    Sigma_u_new[:r, :r] = Sigma_f
    if params.is_ar1:
        phi, sigma2 = _update_idiosyncratic_ar1(S11[r:, r:], S10[r:, r:], S00[r:, r:], n)
        A_new[r:, r:] = np.diag(phi)
        Sigma_u_new[r:, r:] = np.diag(sigma2)
    Sigma_u_new = check_psd(Sigma_u_new, "Sigma_u")

    Lambda_f = _update_loadings(X, mask, state, params, alpha, cfg)
    Lambda_new = params.Lambda.copy()
    Lambda_new[:, :r] = Lambda_f

    Sigma_eta_new = _update_obs_noise(X, mask, state, Lambda_new, params, cfg)
    P0_new = check_psd(state.P0_smooth, "P0")

    new_params = params.replace(
        A=A_new,
        Lambda=Lambda_new,
        Sigma_u=Sigma_u_new,
        Sigma_eta=Sigma_eta_new,
        a0=state.x0_smooth,
        P0=P0_new,
    )
    if cfg.normalize_factors:
        new_params = new_params.rescale_factors(_factor_scale(S11[:r, :r], n))
    return new_params, state


def _prepare_data(
    X: np.ndarray, mask: np.ndarray | None, params: StateSpaceParams
) -> tuple[np.ndarray, np.ndarray]:
    X = np.asarray(X, dtype=float)
    if X.ndim != 2 or X.shape[1] != params.n_series:
        raise DimensionError(
            f"X must have shape (n, {params.n_series}), got {X.shape}"
        )
    if mask is None:
        mask = ~np.isnan(X)
    else:
        mask = np.asarray(mask, dtype=bool) & ~np.isnan(X)
    return X, mask


def _check_alpha(alpha: np.ndarray | None, params: StateSpaceParams) -> np.ndarray | None:
    if alpha is None:
        return None
    alpha = np.asarray(alpha, dtype=float)
    shape = (params.n_series, params.n_factors)
    if alpha.ndim == 0:
        alpha = np.full(shape, float(alpha))
    if alpha.shape != shape:
        raise DimensionError(f"alpha must have shape {shape}, got {alpha.shape}")
    if np.any(alpha < 0) or not np.all(np.isfinite(alpha)):
        raise ValueError("alpha must be finite and non-negative")
    return alpha


def _smoothed_moments(state: KalmanState) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return ``sum_t E[a_t a_t']``, ``E[a_t a_{t-1}']``, ``E[a_{t-1} a_{t-1}']``."""
    xs, Vs = state.x_smooth, state.P_smooth
    x_prev = np.vstack([state.x0_smooth[None, :], xs[:-1]])
    V_prev = np.concatenate([state.P0_smooth[None], Vs[:-1]], axis=0)
    S11 = xs.T @ xs + Vs.sum(axis=0)
    S10 = xs.T @ x_prev + state.P_smooth_lag.sum(axis=0)
    S00 = x_prev.T @ x_prev + V_prev.sum(axis=0)
    return S11, S10, S00


def _factor_scale(S11_f, n):
    """Root mean smoothed second moment of each factor (1 where it vanishes)."""
    scale = np.sqrt(np.maximum(np.diag(S11_f), 0.0) / n)
    return np.where(scale > 0, scale, 1.0)


def _update_transition(S11, S10, S00, n):
    try:
        A = np.linalg.solve(S00, S10.T).T
    except np.linalg.LinAlgError as exc:
        raise DegenerateEstimateError("A") from exc
    Sigma = symmetrize((S11 - A @ S10.T) / n)
    return A, Sigma


def _update_idiosyncratic_ar1(S11, S10, S00, n):
    d11, d10, d00 = np.diag(S11), np.diag(S10), np.diag(S00)
    phi = np.divide(d10, d00, out=np.zeros_like(d10), where=d00 > 0)
    sigma2 = (d11 - phi * d10) / n
    return phi, sigma2


def _loading_moments(X, mask, state, params):
    """Per-series normal equations ``S_i lambda_i = b_i`` of the loadings."""
    r = params.n_factors
    W = mask.astype(float)
    Xz = np.where(mask, X, 0.0)
    Ef = state.x_smooth[:, :r]
    Eff = np.einsum("ta,tb->tab", Ef, Ef) + state.P_smooth[:, :r, :r]
    S = np.einsum("ti,tab->iab", W, Eff)
    b = Xz.T @ Ef
    if params.is_ar1:
        Ee = state.x_smooth[:, r:]
        cross = np.einsum("ti,ta->ia", W * Ee, Ef)
        cross += np.einsum("ti,tai->ia", W, state.P_smooth[:, :r, r:])
        b = b - cross
    return S, b


def _lasso_row(
    S: np.ndarray,
    b: np.ndarray,
    start: np.ndarray,
    penalty: np.ndarray,
    max_iter: int,
    tol: float,
) -> np.ndarray:
    """Minimise ``0.5 l'Sl - b'l + sum_j penalty_j |l_j|`` by coordinate descent."""
    lam = np.array(start, dtype=float)
    diag = np.diag(S)
    for _ in range(max_iter):
        max_delta = 0.0
        for j in range(lam.size):
            if diag[j] <= 0:
                continue
            rho = b[j] - S[j] @ lam + diag[j] * lam[j]
            new = soft_threshold(rho, penalty[j]) / diag[j]
            max_delta = max(max_delta, abs(new - lam[j]))
            lam[j] = new
        if max_delta < tol:
            break
    return lam


def _update_loadings(X, mask, state, params, alpha, cfg):
    S, b = _loading_moments(X, mask, state, params)
    old = params.factor_loadings
    p = old.shape[0]
    Lambda = old.copy()
    has_data = mask.any(axis=0)
    sparse_rows = []
    for i in range(p):
        if not has_data[i]:
            continue
        if alpha is not None and np.any(alpha[i] > 0):
            sparse_rows.append(i)
        else:
            Lambda[i] = np.linalg.lstsq(S[i], b[i], rcond=None)[0]

    if sparse_rows:
        # alpha penalises the mean squared error over the observed entries
        n_obs = mask.sum(axis=0)
        jobs = [
            (S[i], b[i], old[i], n_obs[i] * alpha[i], cfg.cd_max_iter, cfg.cd_tol)
            for i in sparse_rows
        ]
        if cfg.n_jobs is not None and cfg.n_jobs != 1:
            rows = Parallel(n_jobs=cfg.n_jobs)(delayed(_lasso_row)(*job) for job in jobs)
        else:
            rows = [_lasso_row(*job) for job in jobs]
        for i, row in zip(sparse_rows, rows):
            Lambda[i] = row
    return Lambda


def _update_obs_noise(X, mask, state, Lambda, params, cfg):
    """Banbura-Modugno update of ``Sigma_eta`` given the new loadings."""
    n = X.shape[0]
    W = mask.astype(float)
    Xz = np.where(mask, X, 0.0)
    xs, Vs = state.x_smooth, state.P_smooth
    resid = Xz - W * (xs @ Lambda.T)
    R_old = params.Sigma_eta

    if cfg.full_obs_noise and not params.is_ar1:
        LVL = np.einsum("ia,tab,jb->tij", Lambda, Vs, Lambda)
        R = resid.T @ resid
        R += np.einsum("ti,tij,tj->ij", W, LVL, W)
        R += ((1.0 - W).T @ (1.0 - W)) * R_old
        return check_psd(symmetrize(R / n), "Sigma_eta")

    lvl = np.einsum("ia,tab,ib->ti", Lambda, Vs, Lambda)
    d = np.sum(resid * resid, axis=0)
    d += np.sum(W * lvl, axis=0)
    d += np.sum(1.0 - W, axis=0) * np.diag(R_old)
    d /= n
    if params.is_ar1:
        d = np.maximum(d, cfg.obs_noise_floor)
    return check_psd(np.diag(d), "Sigma_eta")
