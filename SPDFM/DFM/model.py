"""State-space representation of the (sparse) dynamic factor model."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from enum import Enum
import numpy as np

from .errors import DegenerateEstimateError, DimensionError


class ErrorModel(str, Enum):
    """Structure of the idiosyncratic errors."""

    IID = "IID"  # eta_t white noise, state holds the factors only
    AR1 = "AR1"  # e_t = Phi e_{t-1} + eps_t, stacked into the state


def symmetrize(M: np.ndarray) -> np.ndarray:
    """Return the symmetric part of a square matrix (or a stack of them)."""
    return 0.5 * (M + np.swapaxes(M, -1, -2))


def check_psd(M: np.ndarray, name: str, rtol: float = 1e-8) -> np.ndarray:
    """Return ``M`` symmetrized, raising if it is not positive semi-definite.

    Negative eigenvalues are tolerated up to ``rtol`` times the largest
    absolute eigenvalue, which absorbs floating point round-off.
    """

    M = np.asarray(M, dtype=float)
    if not np.all(np.isfinite(M)):
        raise DegenerateEstimateError(name)
    if M.size == 0:
        return M
    if not np.allclose(M, M.T, rtol=1e-6, atol=1e-10):
        raise DegenerateEstimateError(name)
    M = symmetrize(M)
    eig = np.linalg.eigvalsh(M)
    scale = max(1.0, float(np.max(np.abs(eig))))
    if eig[0] < -rtol * scale:
        raise DegenerateEstimateError(name, float(eig[0]))
    return M


def _diagonal_block(M) -> np.ndarray:
    """Diagonal matrix from a vector of entries or from a square matrix."""
    M = np.asarray(M, dtype=float)
    if M.ndim <= 1:
        return np.diag(np.atleast_1d(M))
    return np.diag(np.diag(M))


def _frozen_copy(M) -> np.ndarray:
    M = np.array(M, dtype=float, copy=True)
    M.setflags(write=False)
    return M


@dataclass(frozen=True)
class StateSpaceParams:
    """Immutable parameter snapshot ``(A, Lambda, Sigma_u, Sigma_eta, a0, P0)``.

    The model reads

    ``x_t = Lambda a_t + eta_t``,  ``eta_t ~ N(0, Sigma_eta)``

    ``a_t = A a_{t-1} + u_t``,  ``u_t ~ N(0, Sigma_u)``,  ``a_0 ~ N(a0, P0)``

    For ``error_model == "IID"`` the state holds the ``r`` factors. For
    ``"AR1"`` it holds the factors followed by the ``p`` idiosyncratic
    errors, so ``A = blockdiag(A_f, Phi)``, ``Lambda = [Lambda_f, I_p]`` and
    ``Sigma_u = blockdiag(Sigma_u_f, Sigma_epsilon)``.

    Arrays are copied on construction and made read-only. Use
    :meth:`replace` to derive a modified snapshot.
    """

    A: np.ndarray
    Lambda: np.ndarray
    Sigma_u: np.ndarray
    Sigma_eta: np.ndarray
    a0: np.ndarray
    P0: np.ndarray
    n_factors: int
    error_model: ErrorModel = ErrorModel.IID

    def __post_init__(self) -> None:
        for f in fields(self):
            if f.name in ("n_factors", "error_model"):
                continue
            object.__setattr__(self, f.name, _frozen_copy(getattr(self, f.name)))
        object.__setattr__(self, "error_model", ErrorModel(self.error_model))
        object.__setattr__(self, "n_factors", int(self.n_factors))
        self._validate()

    # ------------------------------------------------------------------
    def _validate(self) -> None:
        k = self.A.shape[0] if self.A.ndim == 2 else -1
        p = self.Lambda.shape[0] if self.Lambda.ndim == 2 else -1
        r = self.n_factors
        if k < 1 or self.A.shape != (k, k):
            raise DimensionError(f"A must be square, got shape {self.A.shape}")
        if self.Lambda.shape != (p, k):
            raise DimensionError(
                f"Lambda must have shape (p, {k}), got {self.Lambda.shape}"
            )
        if self.Sigma_u.shape != (k, k):
            raise DimensionError(f"Sigma_u must have shape ({k}, {k})")
        if self.Sigma_eta.shape != (p, p):
            raise DimensionError(f"Sigma_eta must have shape ({p}, {p})")
        if self.a0.shape != (k,):
            raise DimensionError(f"a0 must have shape ({k},)")
        if self.P0.shape != (k, k):
            raise DimensionError(f"P0 must have shape ({k}, {k})")
        expected_k = r if self.error_model is ErrorModel.IID else r + p
        if r < 1 or k != expected_k:
            raise DimensionError(
                f"State dimension {k} inconsistent with r={r} and "
                f"error model {self.error_model.value}"
            )
        for name in ("Sigma_u", "Sigma_eta", "P0"):
            check_psd(getattr(self, name), name)

    # ------------------------------------------------------------------
    def replace(self, **changes) -> "StateSpaceParams":
        """Return a new validated snapshot with ``changes`` applied."""
        return replace(self, **changes)

    # ------------------------------------------------------------------
    def rescale_factors(self, scale: np.ndarray) -> "StateSpaceParams":
        """Return the equivalent snapshot with factors divided by ``scale``.

        The factor block of the state becomes ``f_t / scale`` and the
        loadings, transition, innovation covariance and initial state are
        adjusted so that the distribution of the observations (and hence
        the likelihood) is unchanged.

        Parameters
        ----------
        scale : ndarray, shape (r,)
            Positive scale of each factor.
        """

        scale = np.asarray(scale, dtype=float)
        r = self.n_factors
        if scale.shape != (r,):
            raise DimensionError(f"scale must have shape ({r},), got {scale.shape}")
        if np.any(scale <= 0) or not np.all(np.isfinite(scale)):
            raise ValueError("scale must be finite and positive")
        t = np.ones(self.n_states)
        t[:r] = scale
        outer = np.outer(t, t)
        return self.replace(
            A=self.A * t[None, :] / t[:, None],
            Lambda=self.Lambda * t[None, :],
            Sigma_u=self.Sigma_u / outer,
            a0=self.a0 / t,
            P0=self.P0 / outer,
        )

    # ------------------------------------------------------------------
    @property
    def n_states(self) -> int:
        return self.A.shape[0]

    @property
    def n_series(self) -> int:
        return self.Lambda.shape[0]

    @property
    def is_ar1(self) -> bool:
        return self.error_model is ErrorModel.AR1

    @property
    def factor_transition(self) -> np.ndarray:
        r = self.n_factors
        return self.A[:r, :r]

    @property
    def factor_loadings(self) -> np.ndarray:
        return self.Lambda[:, : self.n_factors]

    @property
    def factor_innovation_cov(self) -> np.ndarray:
        r = self.n_factors
        return self.Sigma_u[:r, :r]

    @property
    def idiosyncratic_transition(self) -> np.ndarray | None:
        """Diagonal AR(1) matrix ``Phi`` (``None`` for IID errors)."""
        if not self.is_ar1:
            return None
        r = self.n_factors
        return self.A[r:, r:]

    @property
    def idiosyncratic_cov(self) -> np.ndarray:
        """``Sigma_epsilon`` for AR(1) errors, ``Sigma_eta`` otherwise."""
        if not self.is_ar1:
            return self.Sigma_eta
        r = self.n_factors
        return self.Sigma_u[r:, r:]

    # ------------------------------------------------------------------
    @classmethod
    def from_blocks(
        cls,
        A: np.ndarray,
        Lambda: np.ndarray,
        Sigma_u: np.ndarray,
        Sigma_eta: np.ndarray,
        a0: np.ndarray,
        P0: np.ndarray,
        *,
        Phi: np.ndarray | None = None,
        Sigma_epsilon: np.ndarray | None = None,
    ) -> "StateSpaceParams":
        """Assemble a snapshot from the factor-level blocks.

        When ``Phi`` and ``Sigma_epsilon`` are given the AR(1) augmented
        state is built; ``a0`` and ``P0`` must then already have dimension
        ``r + p``.
        """

        A = np.atleast_2d(np.asarray(A, dtype=float))
        Lambda = np.atleast_2d(np.asarray(Lambda, dtype=float))
        r = A.shape[0]
        p = Lambda.shape[0]
        if (Phi is None) != (Sigma_epsilon is None):
            raise ValueError("Phi and Sigma_epsilon must be given together")
        if Phi is None:
            return cls(A, Lambda, Sigma_u, Sigma_eta, a0, P0, r, ErrorModel.IID)
        k = r + p
        A_t = np.zeros((k, k))
        A_t[:r, :r] = A
        A_t[r:, r:] = _diagonal_block(Phi)
        S_t = np.zeros((k, k))
        S_t[:r, :r] = Sigma_u
        S_t[r:, r:] = _diagonal_block(Sigma_epsilon)
        L_t = np.hstack([Lambda, np.eye(p)])
        return cls(A_t, L_t, S_t, Sigma_eta, a0, P0, r, ErrorModel.AR1)
