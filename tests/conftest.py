"""Shared pytest fixtures for SPDFM tests.

This module provides common fixtures used across all test modules,
including data generators and parameter factories.
"""

import numpy as np
import pytest

# ---------------------------------------------------------------------------
# Data generation fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def rng():
    """Provide a seeded random number generator for reproducibility."""
    return np.random.default_rng(42)


@pytest.fixture
def small_dims():
    """Small dimensions for fast tests."""
    return {"n": 60, "p": 6, "r": 2}


@pytest.fixture
def medium_dims():
    """Dimensions of the EM and sparse path scenarios."""
    return {"n": 200, "p": 10, "r": 2}


def sparse_loadings(p: int, r: int, rng: np.random.Generator) -> np.ndarray:
    """Block loadings: series are split evenly across factors.

    Each series loads on exactly one factor. Later factors load less
    strongly so that the principal components separate the blocks.
    """
    Lambda = np.zeros((p, r))
    blocks = np.array_split(np.arange(p), r)
    for j, rows in enumerate(blocks):
        strength = 1.0 - 0.4 * j / max(r - 1, 1)
        Lambda[rows, j] = strength * rng.uniform(0.8, 1.2, size=rows.size)
    return Lambda


def simulate_dfm(
    n: int,
    p: int,
    r: int,
    rng: np.random.Generator,
    Lambda: np.ndarray | None = None,
    noise_scale: float = 0.5,
    dynamics_scale: float = 0.7,
    phi: float | None = None,
    missing: float = 0.0,
) -> dict:
    """Generate data from a DFM with VAR(1) factors.

    Parameters
    ----------
    n, p, r : int
        Time points, series and factors.
    rng : np.random.Generator
        Random number generator.
    Lambda : ndarray, optional
        Loadings; dense standard normal by default.
    noise_scale : float, default 0.5
        Standard deviation of the idiosyncratic innovations.
    dynamics_scale : float, default 0.7
        Diagonal of the factor transition matrix.
    phi : float, optional
        AR(1) coefficient of the idiosyncratic errors; white noise if None.
    missing : float, default 0.0
        Fraction of entries set to ``NaN`` at random.

    Returns
    -------
    dict
        Dictionary with keys: X, X_full, F, E, Lambda, A, mask.
    """
    if Lambda is None:
        Lambda = rng.normal(size=(p, r))
    A = dynamics_scale * np.eye(r)

    F = np.zeros((n, r))
    F[0] = rng.normal(size=r)
    for t in range(1, n):
        F[t] = A @ F[t - 1] + rng.normal(size=r)

    E = np.zeros((n, p))
    E[0] = noise_scale * rng.normal(size=p)
    for t in range(1, n):
        carry = phi * E[t - 1] if phi is not None else 0.0
        E[t] = carry + noise_scale * rng.normal(size=p)

    X_full = F @ Lambda.T + E
    mask = rng.uniform(size=(n, p)) >= missing
    X = np.where(mask, X_full, np.nan)
    return {
        "X": X,
        "X_full": X_full,
        "F": F,
        "E": E,
        "Lambda": Lambda,
        "A": A,
        "mask": mask,
    }


def standardized(X: np.ndarray) -> np.ndarray:
    """Column-wise standardisation ignoring NaN."""
    return (X - np.nanmean(X, axis=0)) / np.nanstd(X, axis=0, ddof=1)


@pytest.fixture
def dfm_data(rng, small_dims):
    """Generate a small fully observed DFM dataset."""
    return simulate_dfm(small_dims["n"], small_dims["p"], small_dims["r"], rng)


@pytest.fixture
def missing_data(rng, small_dims):
    """Generate a small DFM dataset with 20% missing entries."""
    return simulate_dfm(
        small_dims["n"], small_dims["p"], small_dims["r"], rng, missing=0.2
    )


# ---------------------------------------------------------------------------
# Parameter fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def iid_params(dfm_data, small_dims):
    """PCA starting values for IID errors."""
    from SPDFM.DFM import initialize_pca

    X = standardized(dfm_data["X"])
    return initialize_pca(X, small_dims["r"], "IID").params


@pytest.fixture
def ar1_params(dfm_data, small_dims):
    """PCA starting values for AR(1) errors."""
    from SPDFM.DFM import initialize_pca

    X = standardized(dfm_data["X"])
    return initialize_pca(X, small_dims["r"], "AR1").params
