"""Regularisation path and BIC selection for the sparse DFM.

The L1 penalty on the loadings is increased along an ascending grid. Each
EM run is warm-started from the previous accepted solution and scored by
BIC; the path stops as soon as a factor loses all of its regularised
loadings, since stronger penalties only remove factors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Sequence
import numpy as np

from .em import EMConfig, EMEstimatorSDFM, EMResult
from .errors import DegenerateEstimateError, DimensionError, EmptyPathError
from .kalman import KalmanState, make_kalman_smoother
from .model import StateSpaceParams


class PathStopReason(str, Enum):
    """Why the regularisation path ended."""

    GRID_EXHAUSTED = "grid_exhausted"
    ZERO_COLUMN = "zero_column"  # a factor lost all regularised loadings
    DEGENERATE = "degenerate"  # EM produced a non-PSD covariance


@dataclass
class SparsePathResult:
    """Results from the regularisation path.

    Attributes
    ----------
    alphas : list of float
        Strengths actually evaluated (the grid up to the stopping point).
    bic : list of float
        BIC for each evaluated strength.
    num_iter : list of int
        EM iterations used at each evaluated strength.
    n_zero : list of int
        Number of zero factor loadings at each evaluated strength.
    best_index : int
        Position of the selected strength in ``alphas``.
    best_params : StateSpaceParams
        Parameters at the selected strength.
    best_state : KalmanState
        Smoother output at the selected strength.
    best_em_result : EMResult
        EM record at the selected strength.
    stop_reason : PathStopReason
        Why the path ended.
    """

    alphas: list[float]
    bic: list[float]
    num_iter: list[int]
    n_zero: list[int]
    best_index: int
    best_params: StateSpaceParams
    best_state: KalmanState
    best_em_result: EMResult
    stop_reason: PathStopReason

    @property
    def best_alpha(self) -> float:
        return self.alphas[self.best_index]

    @property
    def best_bic(self) -> float:
        return self.bic[self.best_index]


@dataclass
class _PathAccumulator:
    """Carried state of the fold over the strength grid."""

    warm_start: StateSpaceParams
    alphas: list[float] = field(default_factory=list)
    bic: list[float] = field(default_factory=list)
    num_iter: list[int] = field(default_factory=list)
    n_zero: list[int] = field(default_factory=list)
    best_index: int | None = None
    best_params: StateSpaceParams | None = None
    best_state: KalmanState | None = None
    best_em_result: EMResult | None = None
    last_em_result: EMResult | None = None


def bic_function(X: np.ndarray, F: np.ndarray, Lambda: np.ndarray) -> float:
    """BIC of the factor fit ``F @ Lambda'`` on the observed entries of ``X``.

    ``BIC = log(RSS / N) + df * log(N) / N`` where ``N`` is the number of
    observed entries and ``df`` the number of non-zero loadings.
    """

    X = np.asarray(X, dtype=float)
    obs = ~np.isnan(X)
    N = int(obs.sum())
    if N == 0:
        raise DimensionError("X has no observed entries")
    resid = np.where(obs, X - F @ Lambda.T, 0.0)
    rss = float(np.sum(resid**2))
    df = int(np.count_nonzero(Lambda))
    return float(np.log(rss / N) + df * np.log(N) / N)


def regularization_matrix(alpha: float, p: int, r: int, q: int = 0) -> np.ndarray:
    """Broadcast ``alpha`` to ``(p, r)`` with the first ``q`` rows unpenalised."""
    mat = np.full((p, r), float(alpha))
    mat[:q] = 0.0
    return mat


def has_zero_column(Lambda_f: np.ndarray, q: int) -> bool:
    """Whether a factor has no non-zero loading among series ``q, ..., p-1``."""
    block = Lambda_f[q:]
    if block.shape[0] == 0:
        return False
    return bool(np.any(np.all(block == 0, axis=0)))


def _path_step(
    acc: _PathAccumulator,
    alpha: float,
    X: np.ndarray,
    mask: np.ndarray,
    q: int,
    estimator: EMEstimatorSDFM,
) -> PathStopReason | None:
    """Evaluate one strength; return a stop reason or ``None`` to continue."""
    params = acc.warm_start
    p, r = params.n_series, params.n_factors
    alpha_mat = regularization_matrix(alpha, p, r, q)
    try:
        em_result = estimator.fit(X, params, alpha=alpha_mat, mask=mask)
    except DegenerateEstimateError:
        return PathStopReason.DEGENERATE

    fitted = em_result.params
    if has_zero_column(fitted.factor_loadings, q):
        return PathStopReason.ZERO_COLUMN

    smoother = make_kalman_smoother(
        estimator.config.kalman, fitted, estimator.config.kalman_config
    )
    state = smoother.run(X, mask)
    Lambda_f = fitted.factor_loadings
    X_obs = np.where(mask, X, np.nan)
    bic = bic_function(X_obs, state.x_smooth[:, :r], Lambda_f)

    acc.alphas.append(float(alpha))
    acc.bic.append(bic)
    acc.num_iter.append(em_result.num_iter)
    acc.n_zero.append(int(Lambda_f.size - np.count_nonzero(Lambda_f)))
    acc.warm_start = fitted
    acc.last_em_result = em_result
    if acc.best_index is None or bic < acc.bic[acc.best_index]:
        acc.best_index = len(acc.bic) - 1
        acc.best_params = fitted
        acc.best_state = state
        acc.best_em_result = em_result
    return None


def sparse_path_search(
    X: np.ndarray,
    params: StateSpaceParams,
    alphas: Sequence[float],
    q: int = 0,
    config: EMConfig | None = None,
    *,
    mask: np.ndarray | None = None,
    verbose: bool = False,
    callback: Callable[[float, float, EMResult], None] | None = None,
) -> SparsePathResult:
    """Fit sparse EM along ``alphas`` and select the strength with minimum BIC.

    Parameters
    ----------
    X : ndarray, shape (n, p)
        Standardised panel with ``NaN`` for missing entries.
    params : StateSpaceParams
        Starting values for the first strength (usually from
        :func:`~SPDFM.DFM.utils.initialize_pca`).
    alphas : sequence of float
        Ascending, non-negative regularisation strengths.
    q : int, default 0
        The first ``q`` series are never penalised.
    config : EMConfig, optional
        EM settings shared by every strength.
    verbose : bool, default False
        Whether to print progress.
    callback : callable, optional
        Called after each accepted strength as ``callback(alpha, bic, em_result)``.

    Returns
    -------
    SparsePathResult

    Raises
    ------
    EmptyPathError
        If the path stops at the first strength.
    """

    X = np.asarray(X, dtype=float)
    mask = ~np.isnan(X) if mask is None else np.asarray(mask, dtype=bool)
    alphas = [float(a) for a in alphas]
    if not alphas:
        raise ValueError("alphas must contain at least one value")
    if any(a < 0 or not np.isfinite(a) for a in alphas):
        raise ValueError("alphas must be finite and non-negative")
    if any(b < a for a, b in zip(alphas, alphas[1:])):
        raise ValueError("alphas must be sorted in ascending order")
    if q < 0 or q > params.n_series:
        raise DimensionError(f"q must be between 0 and p={params.n_series}, got {q}")

    estimator = EMEstimatorSDFM(config)
    acc = _PathAccumulator(warm_start=params)
    stop_reason = PathStopReason.GRID_EXHAUSTED
    total = len(alphas)
    for count, alpha in enumerate(alphas, start=1):
        if verbose:
            print(f"[{count}/{total}] Fitting alpha={alpha:.4g}...")
        stop = _path_step(acc, alpha, X, mask, q, estimator)
        if stop is not None:
            stop_reason = stop
            if verbose:
                print(f"    Path stopped: {stop.value}")
            break
        if verbose:
            print(
                f"    BIC={acc.bic[-1]:.4f}, zero loadings={acc.n_zero[-1]}, "
                f"iterations={acc.num_iter[-1]}"
            )
        if callback is not None:
            callback(alpha, acc.bic[-1], acc.last_em_result)

    if acc.best_index is None:
        raise EmptyPathError(
            f"Path stopped at the first strength alpha={alphas[0]:.4g} "
            f"({stop_reason.value}); use smaller regularisation strengths"
        )

    if verbose:
        print(
            f"\nSelected: alpha={acc.alphas[acc.best_index]:.4g} "
            f"(BIC={acc.bic[acc.best_index]:.4f})"
        )

    return SparsePathResult(
        alphas=acc.alphas,
        bic=acc.bic,
        num_iter=acc.num_iter,
        n_zero=acc.n_zero,
        best_index=acc.best_index,
        best_params=acc.best_params,
        best_state=acc.best_state,
        best_em_result=acc.best_em_result,
        stop_reason=stop_reason,
    )


def print_path_summary(result: SparsePathResult) -> None:
    """Print a table of the evaluated regularisation strengths.

    Parameters
    ----------
    result : SparsePathResult
        Results from sparse_path_search().
    """
    print("\nSparse Path Summary (criterion: BIC)")
    print("=" * 52)
    print(f"{'alpha':>12} {'BIC':>12} {'zeros':>10} {'n_iter':>10}")
    print("-" * 52)
    for i, (alpha, bic, zeros, iters) in enumerate(
        zip(result.alphas, result.bic, result.n_zero, result.num_iter)
    ):
        marker = " *" if i == result.best_index else ""
        print(f"{alpha:>12.4g} {bic:>12.4f} {zeros:>10} {iters:>10}{marker}")
    print("-" * 52)
    print(f"Selected: alpha={result.best_alpha:.4g}")
    print(f"Best BIC: {result.best_bic:.4f}")
    print(f"Stop reason: {result.stop_reason.value}")
