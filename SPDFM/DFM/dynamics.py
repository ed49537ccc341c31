"""VAR(1) dynamics of the latent state."""

from __future__ import annotations

import numpy as np
from scipy.linalg import solve_discrete_lyapunov

from .model import StateSpaceParams, symmetrize


def fit_var1(F: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Fit ``F_t = A F_{t-1} + u_t`` by least squares without intercept.

    Parameters
    ----------
    F : ndarray, shape (n, r)
        Factor path.

    Returns
    -------
    A : ndarray, shape (r, r)
    Sigma_u : ndarray, shape (r, r)
        Residual second moment divided by ``n - 1``.
    """

    F = np.asarray(F, dtype=float)
    Y, Z = F[1:], F[:-1]
    coeff = np.linalg.lstsq(Z, Y, rcond=None)[0]
    A = coeff.T
    resid = Y - Z @ coeff
    Sigma_u = symmetrize(resid.T @ resid / max(1, Y.shape[0]))
    return A, Sigma_u


def fit_ar1(E: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Fit an independent AR(1) to each column of ``E``.

    Returns the AR coefficients ``phi`` and innovation variances, both of
    shape ``(p,)``. A column with no variation gets ``phi = 0`` and zero
    variance.
    """

    E = np.asarray(E, dtype=float)
    y, z = E[1:], E[:-1]
    den = np.sum(z * z, axis=0)
    num = np.sum(y * z, axis=0)
    phi = np.divide(num, den, out=np.zeros_like(num), where=den > 0)
    resid = y - z * phi
    sigma2 = np.sum(resid * resid, axis=0) / max(1, y.shape[0])
    return phi, sigma2


def spectral_radius(A: np.ndarray) -> float:
    return float(np.max(np.abs(np.linalg.eigvals(A)))) if A.size else 0.0


def stationary_covariance(
    A: np.ndarray, Sigma_u: np.ndarray, diffuse_variance: float = 1e4
) -> np.ndarray:
    """Return the unconditional covariance ``P = A P A' + Sigma_u``.

    Falls back to ``diffuse_variance * I`` when ``A`` is not stable or the
    Lyapunov solution is not a finite positive semi-definite matrix.
    """

    k = A.shape[0]
    diffuse = diffuse_variance * np.eye(k)
    if spectral_radius(A) >= 1.0:
        return diffuse
    try:
        P = symmetrize(solve_discrete_lyapunov(A, Sigma_u))
    except (np.linalg.LinAlgError, ValueError):
        return diffuse
    if not np.all(np.isfinite(P)):
        return diffuse
    eig = np.linalg.eigvalsh(P)
    if eig[0] < -1e-10 * max(1.0, eig[-1]):
        return diffuse
    return P


class StateDynamics:
    """Deterministic propagation of the state under a fitted transition."""

    def __init__(self, params: StateSpaceParams) -> None:
        self.params = params

    # ------------------------------------------------------------------
    def evolve(self, a: np.ndarray) -> np.ndarray:
        """Return ``E[a_{t+1} | a_t = a]``."""
        return self.params.A @ a

    # ------------------------------------------------------------------
    def forecast(
        self, a_last: np.ndarray, P_last: np.ndarray, steps: int
    ) -> tuple[np.ndarray, np.ndarray]:
        """Iterate the transition ``steps`` periods ahead.

        Returns the predicted state means ``(steps, k)`` and covariances
        ``(steps, k, k)``.
        """

        if steps <= 0:
            raise ValueError("steps must be positive")
        A, Q = self.params.A, self.params.Sigma_u
        k = A.shape[0]
        means = np.zeros((steps, k))
        covs = np.zeros((steps, k, k))
        a, P = np.asarray(a_last, dtype=float), np.asarray(P_last, dtype=float)
        for h in range(steps):
            a = self.evolve(a)
            P = symmetrize(A @ P @ A.T + Q)
            means[h] = a
            covs[h] = P
        return means, covs
