"""Tests for SPDFM.estimate (preprocessing, fitting and forecasting)."""

import warnings

import numpy as np
import pandas as pd
import pytest

from SPDFM.DFM import ConvergenceWarning
from SPDFM.estimate import (
    Algorithm,
    SparseDFMConfig,
    SparseDFMResult,
    default_alphas,
    fit_sparse_dfm,
    forecast_sparse_dfm,
    logspace,
    out_of_sample_rmse,
    standardize,
    unstandardize,
)

from conftest import simulate_dfm, sparse_loadings


@pytest.fixture(autouse=True)
def _quiet_convergence():
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        yield


@pytest.fixture
def raw_panel(rng):
    Lambda = sparse_loadings(8, 2, rng)
    data = simulate_dfm(120, 8, 2, rng, Lambda=Lambda, missing=0.05)
    # put the series on different scales
    scale = np.linspace(1.0, 50.0, 8)
    data["X"] = 10.0 + data["X"] * scale
    return data


# ---------------------------------------------------------------------------
# Preprocessing
# ---------------------------------------------------------------------------


class TestPreprocess:
    """Tests for standardize, unstandardize and logspace."""

    def test_standardize_roundtrip(self, raw_panel):
        Z, mean, sd = standardize(raw_panel["X"])
        np.testing.assert_allclose(np.nanmean(Z, axis=0), 0.0, atol=1e-12)
        np.testing.assert_allclose(np.nanstd(Z, axis=0, ddof=1), 1.0)
        np.testing.assert_allclose(unstandardize(Z, mean, sd), raw_panel["X"])

    def test_standardize_keeps_nan(self, raw_panel):
        Z, _, _ = standardize(raw_panel["X"])
        np.testing.assert_array_equal(np.isnan(Z), np.isnan(raw_panel["X"]))

    def test_constant_series_raises(self):
        X = np.ones((5, 2))
        X[:, 1] = np.arange(5.0)
        with pytest.raises(ValueError, match="distinct"):
            standardize(X)

    def test_logspace(self):
        grid = logspace(-2, 3, 6)
        np.testing.assert_allclose(grid, [1e-2, 1e-1, 1.0, 10.0, 100.0, 1000.0])

    def test_default_alphas(self):
        grid = default_alphas()
        assert grid.size == 100
        assert grid[0] == pytest.approx(1e-2)
        assert grid[-1] == pytest.approx(1e3)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestSparseDFMConfig:
    """Tests for SparseDFMConfig validation."""

    def test_defaults(self):
        cfg = SparseDFMConfig(r=2)
        assert cfg.alg is Algorithm.EM_SPARSE
        assert cfg.err.value == "AR1"
        assert cfg.kalman.value == "univariate"
        assert cfg.alphas.size == 100

    def test_alphas_sorted(self):
        cfg = SparseDFMConfig(r=1, alphas=[1.0, 0.1, 10.0])
        np.testing.assert_array_equal(cfg.alphas, [0.1, 1.0, 10.0])

    @pytest.mark.parametrize(
        "kwargs,match",
        [
            ({"alg": "ML"}, "Incorrect alg"),
            ({"err": "ARMA"}, "Incorrect err"),
            ({"kalman": "ensemble"}, "Incorrect kalman"),
            ({"r": 0}, "r needs"),
            ({"r": 1.5}, "r needs"),
            ({"q": -1}, "q needs"),
            ({"alphas": [0.1, np.nan]}, "alphas"),
            ({"max_iter": 0}, "max_iter"),
            ({"threshold": 0.0}, "threshold"),
        ],
    )
    def test_invalid(self, kwargs, match):
        options = {"r": 2, **kwargs}
        with pytest.raises(ValueError, match=match):
            SparseDFMConfig(**options)


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------


class TestFitSparseDFM:
    """Tests for fit_sparse_dfm across algorithms."""

    @pytest.mark.parametrize("err", ["AR1", "IID"])
    def test_pca(self, raw_panel, err):
        res = fit_sparse_dfm(raw_panel["X"], 2, alg="PCA", err=err)
        assert isinstance(res, SparseDFMResult)
        assert res.convergence is None
        assert res.data.predict.shape == raw_panel["X"].shape
        assert res.state.factors.shape == (120, 2)
        assert res.params.Lambda.shape == (8, 2)
        if err == "AR1":
            assert res.params.Phi.shape == (8, 8)
            assert res.state.errors.shape == (120, 8)
        else:
            assert res.params.Phi is None
            assert res.state.errors is None

    def test_pca_predictions_on_original_scale(self, raw_panel):
        res = fit_sparse_dfm(raw_panel["X"], 2, alg="PCA", err="IID")
        obs = ~np.isnan(raw_panel["X"])
        assert abs(np.mean(res.data.predict[obs]) - np.nanmean(raw_panel["X"])) < 2.0
        resid = raw_panel["X"] - res.data.predict
        assert np.nanstd(resid) < np.nanstd(raw_panel["X"])

    def test_two_stage(self, raw_panel):
        res = fit_sparse_dfm(raw_panel["X"], 2, alg="2Stage", err="AR1")
        assert res.data.predict_filtered is not None
        assert res.state.factors_filtered.shape == (120, 2)
        assert res.state.factors_cov.shape == (120, 2, 2)
        assert res.state.errors_filtered_cov.shape == (120, 8, 8)

    @pytest.mark.parametrize("kalman", ["univariate", "multivariate"])
    def test_em(self, raw_panel, kalman):
        res = fit_sparse_dfm(raw_panel["X"], 2, alg="EM", err="IID", kalman=kalman, max_iter=30)
        conv = res.convergence
        assert conv.num_iter == len(conv.loglik)
        assert conv.tol == 1e-4
        assert conv.alpha_grid is None
        assert res.state.kalman.is_smoothed

    def test_em_sparse(self, raw_panel):
        res = fit_sparse_dfm(
            raw_panel["X"], 2, q=1, alphas=np.logspace(-3, -1, 4),
            err="IID", max_iter=20,
        )
        conv = res.convergence
        assert conv.alpha_opt in conv.alpha_grid
        assert len(conv.bic) == len(conv.alpha_grid)
        assert conv.stop_reason in {"grid_exhausted", "zero_column", "degenerate"}
        assert res.path is not None
        np.testing.assert_array_equal(res.params.Lambda, res.path.best_params.factor_loadings)

    def test_no_standardize(self, raw_panel):
        Z, _, _ = standardize(raw_panel["X"])
        res = fit_sparse_dfm(Z, 1, alg="PCA", err="IID", standardize=False)
        assert res.data.standardize is False
        np.testing.assert_allclose(res.data.predict, res.state.factors @ res.params.Lambda.T)

    def test_dataframe_input(self, raw_panel):
        names = [f"s{i}" for i in range(8)]
        index = pd.date_range("2000-01-01", periods=120, freq="MS")
        frame = pd.DataFrame(raw_panel["X"], columns=names, index=index)
        res = fit_sparse_dfm(frame, 2, alg="EM", err="IID", max_iter=10)
        assert res.data.series_names == names
        loadings = res.loadings_frame()
        assert list(loadings.index) == names
        assert list(loadings.columns) == ["factor_1", "factor_2"]
        assert res.factors_frame().index.equals(index)
        summary = res.summary()
        assert list(summary.index) == names
        assert {"mean", "sd", "nonzero_loadings", "idio_var", "rmse"} <= set(summary.columns)

    def test_summary_ar1_has_phi(self, raw_panel):
        res = fit_sparse_dfm(raw_panel["X"], 2, alg="PCA")
        assert "phi" in res.summary().columns

    def test_q_larger_than_p_raises(self, raw_panel):
        with pytest.raises(ValueError, match="q must not exceed"):
            fit_sparse_dfm(raw_panel["X"], 2, q=9)

    def test_verbose_em_sparse_prints_summary(self, raw_panel, capsys):
        fit_sparse_dfm(
            raw_panel["X"], 1, alphas=[0.001, 0.01], err="IID",
            max_iter=5, verbose=True,
        )
        assert "Sparse Path Summary" in capsys.readouterr().out


# ---------------------------------------------------------------------------
# Forecasting
# ---------------------------------------------------------------------------


class TestForecast:
    """Tests for forecast_sparse_dfm and out_of_sample_rmse."""

    @pytest.mark.parametrize("alg", ["PCA", "2Stage", "EM"])
    def test_shapes(self, raw_panel, alg):
        res = fit_sparse_dfm(raw_panel["X"], 2, alg=alg, max_iter=10)
        fcst, std = forecast_sparse_dfm(res, 5, return_std=True)
        assert fcst.shape == (5, 8)
        assert std.shape == (5, 8)
        assert np.all(std > 0)

    def test_forecast_reverts_to_mean(self, raw_panel):
        res = fit_sparse_dfm(raw_panel["X"], 2, alg="EM", err="IID", max_iter=20)
        fcst = forecast_sparse_dfm(res, 200)
        np.testing.assert_allclose(fcst[-1], res.data.mean, atol=0.05 * res.data.sd.max())

    def test_invalid_steps(self, raw_panel):
        res = fit_sparse_dfm(raw_panel["X"], 1, alg="PCA")
        with pytest.raises(ValueError, match="steps"):
            forecast_sparse_dfm(res, 0)

    def test_out_of_sample_rmse(self, raw_panel):
        rmse = out_of_sample_rmse(
            raw_panel["X"], 4, 2, alg="EM", err="IID", max_iter=10
        )
        assert np.isfinite(rmse)
        assert rmse > 0

    def test_out_of_sample_rmse_invalid_steps(self, raw_panel):
        with pytest.raises(ValueError, match="steps"):
            out_of_sample_rmse(raw_panel["X"], 120, 2)
