import numpy as np
import pytest

from SPDFM.DFM import StateDynamics, StateSpaceParams
from SPDFM.DFM.dynamics import (
    fit_ar1,
    fit_var1,
    spectral_radius,
    stationary_covariance,
)


def test_fit_var1_recovers_transition(rng):
    n = 3000
    A_true = np.array([[0.6, 0.1], [0.0, 0.3]])
    F = np.zeros((n, 2))
    for t in range(1, n):
        F[t] = A_true @ F[t - 1] + rng.normal(size=2)
    A, Sigma = fit_var1(F)
    np.testing.assert_allclose(A, A_true, atol=0.06)
    np.testing.assert_allclose(Sigma, np.eye(2), atol=0.1)
    np.testing.assert_array_equal(Sigma, Sigma.T)


def test_fit_ar1_recovers_coefficients(rng):
    n = 3000
    phi_true = np.array([0.5, -0.3, 0.0])
    E = np.zeros((n, 3))
    for t in range(1, n):
        E[t] = phi_true * E[t - 1] + 0.5 * rng.normal(size=3)
    phi, sigma2 = fit_ar1(E)
    np.testing.assert_allclose(phi, phi_true, atol=0.06)
    np.testing.assert_allclose(sigma2, 0.25, atol=0.03)


def test_fit_ar1_constant_column():
    E = np.zeros((10, 2))
    E[:, 1] = np.arange(10.0)
    phi, sigma2 = fit_ar1(E)
    assert phi[0] == 0.0
    assert sigma2[0] == 0.0


def test_stationary_covariance_solves_lyapunov():
    A = np.array([[0.5, 0.2], [0.0, 0.4]])
    Q = np.array([[1.0, 0.3], [0.3, 2.0]])
    P = stationary_covariance(A, Q)
    np.testing.assert_allclose(P, A @ P @ A.T + Q, atol=1e-10)


def test_stationary_covariance_unstable_falls_back():
    A = np.array([[1.2]])
    P = stationary_covariance(A, np.eye(1), diffuse_variance=1e4)
    np.testing.assert_array_equal(P, 1e4 * np.eye(1))
    assert spectral_radius(A) == pytest.approx(1.2)


class TestStateDynamics:
    """Tests for the forecast recursion."""

    def make_params(self):
        return StateSpaceParams(
            A=0.5 * np.eye(2),
            Lambda=np.ones((3, 2)),
            Sigma_u=np.eye(2),
            Sigma_eta=np.eye(3),
            a0=np.zeros(2),
            P0=np.eye(2),
            n_factors=2,
        )

    def test_forecast_means_decay(self):
        dyn = StateDynamics(self.make_params())
        means, covs = dyn.forecast(np.array([1.0, -2.0]), np.zeros((2, 2)), steps=3)
        assert means.shape == (3, 2)
        assert covs.shape == (3, 2, 2)
        np.testing.assert_allclose(means[2], 0.125 * np.array([1.0, -2.0]))
        # P_1 = Q, P_2 = A Q A' + Q
        np.testing.assert_allclose(covs[0], np.eye(2))
        np.testing.assert_allclose(covs[1], 1.25 * np.eye(2))

    def test_evolve(self):
        dyn = StateDynamics(self.make_params())
        np.testing.assert_allclose(dyn.evolve(np.array([2.0, 4.0])), [1.0, 2.0])

    @pytest.mark.parametrize("steps", [0, -1])
    def test_invalid_steps(self, steps):
        dyn = StateDynamics(self.make_params())
        with pytest.raises(ValueError, match="steps must be positive"):
            dyn.forecast(np.zeros(2), np.eye(2), steps)
