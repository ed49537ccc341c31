"""Exceptions raised by the sparse DFM estimation core."""

from __future__ import annotations

import numpy as np


class DFMError(Exception):
    """Base class for all estimation errors."""


class DimensionError(DFMError, ValueError):
    """Insufficient data for the requested model or mismatched shapes."""


class FilterSingularityError(DFMError, np.linalg.LinAlgError):
    """The innovation covariance of the observed series is not invertible.

    Parameters
    ----------
    t : int
        Time index at which the singularity was detected.
    """

    def __init__(self, t: int, message: str | None = None) -> None:
        self.t = t
        super().__init__(
            message or f"Innovation covariance is singular at time step {t}"
        )


class DegenerateEstimateError(DFMError):
    """A covariance estimate is not symmetric positive semi-definite."""

    def __init__(self, name: str, min_eig: float | None = None) -> None:
        self.name = name
        self.min_eig = min_eig
        detail = f" (smallest eigenvalue {min_eig:.3e})" if min_eig is not None else ""
        super().__init__(f"{name} is not positive semi-definite{detail}")


class EmptyPathError(DFMError):
    """The regularisation path stopped before any strength was accepted."""


class ConvergenceWarning(UserWarning):
    """EM reached ``max_iter`` without meeting the convergence threshold."""
