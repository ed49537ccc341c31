"""Kalman filtering and smoothing for the sparse DFM.

Two interchangeable formulations share the prediction step and the
Rauch-Tung-Striebel smoother:

* :class:`MultivariateKalmanSmoother` updates all observed series of a time
  step jointly.
* :class:`UnivariateKalmanSmoother` processes the observed series one at a
  time (Durbin and Koopman, 2012, section 6.4), which avoids inverting the
  innovation covariance and copes well with sparse observation patterns.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
import numpy as np
from scipy.linalg import cho_factor, cho_solve, solve_triangular

from .errors import DimensionError, FilterSingularityError
from .model import StateSpaceParams, symmetrize

LOG_2PI = np.log(2.0 * np.pi)


class KalmanMethod(str, Enum):
    """Numerical formulation of the observation update."""

    MULTIVARIATE = "multivariate"
    UNIVARIATE = "univariate"


@dataclass
class KalmanConfig:
    """Numerical settings of the filter.

    Parameters
    ----------
    singularity_tol : float, default 1e-12
        Scalar innovation variances at or below this value are treated as
        singular by the per-series formulation.
    """

    singularity_tol: float = 1e-12

    def __post_init__(self) -> None:
        if self.singularity_tol < 0:
            raise ValueError("singularity_tol must be non-negative")


@dataclass
class KalmanState:
    """Filtered and smoothed moments of the state.

    ``P_smooth_lag[t]`` is ``Cov(a_t, a_{t-1} | X)``; for ``t = 0`` the lag
    refers to the initial state ``a_0`` whose smoothed moments are stored in
    ``x0_smooth`` and ``P0_smooth``.
    """

    x_pred: np.ndarray
    P_pred: np.ndarray
    x_filt: np.ndarray
    P_filt: np.ndarray
    loglik: float | None = None
    x_smooth: np.ndarray | None = None
    P_smooth: np.ndarray | None = None
    P_smooth_lag: np.ndarray | None = None
    x0_smooth: np.ndarray | None = None
    P0_smooth: np.ndarray | None = None

    @property
    def is_smoothed(self) -> bool:
        return self.x_smooth is not None


class KalmanSmoother(ABC):
    """Filter/smoother for a fixed :class:`StateSpaceParams` snapshot.

    Subclasses implement :meth:`_update`, the measurement update of one
    time step restricted to the observed series.
    """

    method: KalmanMethod

    def __init__(
        self, params: StateSpaceParams, config: KalmanConfig | None = None
    ) -> None:
        self.params = params
        self.config = config or KalmanConfig()

    # ------------------------------------------------------------------
    def _check_data(
        self, X: np.ndarray, mask: np.ndarray | None
    ) -> tuple[np.ndarray, np.ndarray]:
        X = np.asarray(X, dtype=float)
        if X.ndim != 2:
            raise DimensionError(f"Expected 2D array (n, p), got {X.ndim}D")
        if X.shape[1] != self.params.n_series:
            raise DimensionError(
                f"Data has {X.shape[1]} series, model expects {self.params.n_series}"
            )
        if mask is None:
            mask = ~np.isnan(X)
        else:
            mask = np.asarray(mask, dtype=bool)
            if mask.shape != X.shape:
                raise DimensionError("mask shape must match X")
            mask = mask & ~np.isnan(X)
        return X, mask

    # ------------------------------------------------------------------
    @abstractmethod
    def _update(
        self, t: int, a: np.ndarray, P: np.ndarray, y: np.ndarray,
        Z: np.ndarray, H: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray, float]:
        """Condition the predicted moments ``(a, P)`` on ``y`` at time ``t``."""

    # ------------------------------------------------------------------
    def filter(self, X: np.ndarray, mask: np.ndarray | None = None) -> KalmanState:
        """Run the forward pass and accumulate the log-likelihood."""
        X, mask = self._check_data(X, mask)
        m = self.params
        A, Q, L, R = m.A, m.Sigma_u, m.Lambda, m.Sigma_eta
        n, k = X.shape[0], m.n_states
        xp = np.zeros((n, k))
        Pp = np.zeros((n, k, k))
        xf = np.zeros((n, k))
        Pf = np.zeros((n, k, k))
        a, P = m.a0, m.P0
        loglik = 0.0
        for t in range(n):
            a = A @ a
            P = symmetrize(A @ P @ A.T + Q)
            xp[t] = a
            Pp[t] = P
            idx = np.flatnonzero(mask[t])
            if idx.size > 0:
                a, P, ll = self._update(
                    t, a, P, X[t, idx], L[idx, :], R[np.ix_(idx, idx)]
                )
                P = symmetrize(P)
                loglik += ll
            xf[t] = a
            Pf[t] = P
        return KalmanState(x_pred=xp, P_pred=Pp, x_filt=xf, P_filt=Pf, loglik=float(loglik))

    # ------------------------------------------------------------------
    def smooth(self, state: KalmanState) -> KalmanState:
        """Run the RTS backward pass on a filtered ``state`` (in place)."""
        A = self.params.A
        xp, Pp, xf, Pf = state.x_pred, state.P_pred, state.x_filt, state.P_filt
        n, k = xf.shape
        xs = np.zeros_like(xf)
        Vs = np.zeros_like(Pf)
        Vlag = np.zeros_like(Pf)
        xs[-1] = xf[-1]
        Vs[-1] = Pf[-1]
        for t in range(n - 1, -1, -1):
            if t > 0:
                a_prev, P_prev = xf[t - 1], Pf[t - 1]
            else:
                a_prev, P_prev = self.params.a0, self.params.P0
            J = _smoother_gain(t, P_prev, A, Pp[t])
            Vlag[t] = Vs[t] @ J.T
            a_s = a_prev + J @ (xs[t] - xp[t])
            P_s = symmetrize(P_prev + J @ (Vs[t] - Pp[t]) @ J.T)
            if t > 0:
                xs[t - 1] = a_s
                Vs[t - 1] = P_s
            else:
                state.x0_smooth = a_s
                state.P0_smooth = P_s
        state.x_smooth = xs
        state.P_smooth = Vs
        state.P_smooth_lag = Vlag
        return state

    # ------------------------------------------------------------------
    def run(self, X: np.ndarray, mask: np.ndarray | None = None) -> KalmanState:
        """Filter and smooth ``X``."""
        return self.smooth(self.filter(X, mask))


def _smoother_gain(
    t: int, P_filt: np.ndarray, A: np.ndarray, P_pred: np.ndarray
) -> np.ndarray:
    """Return ``J = P_filt A' P_pred^{-1}`` for the step into time ``t``."""
    rhs = A @ P_filt
    try:
        return np.linalg.solve(P_pred, rhs).T
    except np.linalg.LinAlgError as exc:
        raise FilterSingularityError(
            t, f"Predicted state covariance is singular at time step {t}"
        ) from exc


class MultivariateKalmanSmoother(KalmanSmoother):
    """Joint update of all observed series at each time step."""

    method = KalmanMethod.MULTIVARIATE

    def _update(self, t, a, P, y, Z, H):
        PZ = P @ Z.T
        F = symmetrize(Z @ PZ + H)
        try:
            c = cho_factor(F, lower=True)
        except np.linalg.LinAlgError as exc:
            raise FilterSingularityError(t) from exc
        v = y - Z @ a
        Finv_v = cho_solve(c, v)
        K = cho_solve(c, PZ.T).T
        a = a + PZ @ Finv_v
        P = P - K @ PZ.T
        logdet = 2.0 * np.sum(np.log(np.diag(c[0])))
        ll = -0.5 * (y.size * LOG_2PI + logdet + v @ Finv_v)
        return a, P, ll


class UnivariateKalmanSmoother(KalmanSmoother):
    """Sequential scalar updates, one observed series at a time."""

    method = KalmanMethod.UNIVARIATE

    def _update(self, t, a, P, y, Z, H):
        ll = 0.0
        h = np.diag(H)
        if np.count_nonzero(H - np.diag(h)):
            # correlated noise: rotate the block so the scalar updates are exact
            try:
                C = np.linalg.cholesky(H)
            except np.linalg.LinAlgError as exc:
                raise FilterSingularityError(t) from exc
            y = solve_triangular(C, y, lower=True)
            Z = solve_triangular(C, Z, lower=True)
            h = np.ones(y.size)
            ll -= np.sum(np.log(np.diag(C)))
        tol = self.config.singularity_tol
        for i in range(y.size):
            z = Z[i]
            Pz = P @ z
            f = float(z @ Pz) + h[i]
            if not f > tol:
                raise FilterSingularityError(
                    t, f"Innovation variance of series {i} is {f:.3e} at time step {t}"
                )
            v = y[i] - z @ a
            a = a + Pz * (v / f)
            P = P - np.outer(Pz, Pz) / f
            ll -= 0.5 * (LOG_2PI + np.log(f) + v * v / f)
        return a, P, ll


_SMOOTHERS: dict[KalmanMethod, type[KalmanSmoother]] = {
    KalmanMethod.MULTIVARIATE: MultivariateKalmanSmoother,
    KalmanMethod.UNIVARIATE: UnivariateKalmanSmoother,
}


def make_kalman_smoother(
    method: KalmanMethod | str,
    params: StateSpaceParams,
    config: KalmanConfig | None = None,
) -> KalmanSmoother:
    """Return the smoother implementing ``method`` for ``params``."""
    return _SMOOTHERS[KalmanMethod(method)](params, config)


def kalman_smoother(
    X: np.ndarray,
    params: StateSpaceParams,
    method: KalmanMethod | str = KalmanMethod.UNIVARIATE,
    *,
    mask: np.ndarray | None = None,
    config: KalmanConfig | None = None,
) -> KalmanState:
    """Filter and smooth ``X`` under ``params`` with the chosen formulation."""
    return make_kalman_smoother(method, params, config).run(X, mask)
