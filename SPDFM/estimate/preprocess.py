from __future__ import annotations

import numpy as np


# ---------------------------------------------------------------------------
def standardize(X: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return ``(Z, mean, sd)`` with every column of ``X`` scaled to zero mean
    and unit sample variance, ignoring ``NaN`` entries."""
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise ValueError("X must be a 2D array")
    mean = np.nanmean(X, axis=0)
    sd = np.nanstd(X, axis=0, ddof=1)
    if np.any(~np.isfinite(sd)) or np.any(sd <= 0):
        raise ValueError("Every series needs at least two distinct observations")
    return (X - mean) / sd, mean, sd


# ---------------------------------------------------------------------------
def unstandardize(Z: np.ndarray, mean: np.ndarray, sd: np.ndarray) -> np.ndarray:
    """Map standardised values back to the original scale."""
    return np.asarray(Z, dtype=float) * sd + mean


# ---------------------------------------------------------------------------
def logspace(start: float, stop: float, num: int) -> np.ndarray:
    """Return ``num`` points evenly spaced between ``10**start`` and ``10**stop``."""
    if num <= 0:
        raise ValueError("num must be positive")
    return np.logspace(start, stop, num)
