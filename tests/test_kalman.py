# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Tests for smcfilters.kalman.

Cross-validates against the Dynamax Kalman filter and against the
closed-form posterior of a static Gaussian mean.
"""

import jax
import jax.numpy as jnp
import jax.random as jr
import jax.scipy.stats as jstats
import pytest

from smcfilters.containers import KalmanState
from smcfilters.exceptions import ConfigurationError, NonPositiveDefiniteError
from smcfilters.kalman import (
    KalmanSubFilter,
    LinearGaussianParams,
    check_kalman_state,
    kalman_filter,
    kalman_init,
    kalman_predict,
    kalman_update,
    predicted_emission,
    validate_params,
)


def _params(lgssm_params):
    return LinearGaussianParams(
        dynamics_weights=lgssm_params['dynamics_weights'],
        dynamics_cov=lgssm_params['dynamics_cov'],
        emissions_weights=lgssm_params['emissions_weights'],
        emissions_cov=lgssm_params['emissions_cov'],
    )


def _two_dim_params():
    return dict(
        initial_mean=jnp.array([0.5, -1.0]),
        initial_cov=jnp.array([[1.0, 0.2], [0.2, 0.5]]),
        dynamics_weights=jnp.array([[0.9, 0.1], [-0.2, 0.8]]),
        dynamics_cov=jnp.array([[0.3, 0.05], [0.05, 0.2]]),
        dynamics_bias=jnp.array([0.1, 0.0]),
        emissions_weights=jnp.array([[1.0, 0.0], [0.5, 1.0], [0.0, 2.0]]),
        emissions_cov=0.4 * jnp.eye(3),
        emissions_bias=jnp.array([0.0, 1.0, -1.0]),
    )


class TestKalmanVsDynamax:
    """The batch filter reproduces Dynamax's ``lgssm_filter``."""

    def test_one_dimensional(self, lgssm_params, lgssm_data, kalman_reference):
        _, emissions = lgssm_data
        post = kalman_filter(
            _params(lgssm_params),
            lgssm_params['initial_mean'],
            lgssm_params['initial_cov'],
            emissions,
        )
        assert jnp.allclose(
            post.marginal_loglik, kalman_reference.marginal_loglik, atol=1e-8
        )
        assert jnp.allclose(
            post.filtered_means, kalman_reference.filtered_means, atol=1e-8
        )
        assert jnp.allclose(
            post.filtered_covariances,
            kalman_reference.filtered_covariances,
            atol=1e-8,
        )
        assert jnp.allclose(
            jnp.sum(post.log_likelihood_increments), post.marginal_loglik
        )

    def test_two_dimensional_with_biases(self):
        from dynamax.linear_gaussian_ssm.inference import (
            lgssm_filter,
            lgssm_joint_sample,
            make_lgssm_params,
        )

        p = _two_dim_params()
        dx_params = make_lgssm_params(**p)
        _, emissions = lgssm_joint_sample(dx_params, jr.PRNGKey(0), 30)
        reference = lgssm_filter(dx_params, emissions)

        params = LinearGaussianParams(
            **{k: v for k, v in p.items() if not k.startswith('initial')}
        )
        post = kalman_filter(
            params, p['initial_mean'], p['initial_cov'], emissions
        )
        assert jnp.allclose(
            post.marginal_loglik, reference.marginal_loglik, atol=1e-6
        )
        assert jnp.allclose(
            post.filtered_means, reference.filtered_means, atol=1e-6
        )
        assert jnp.allclose(
            post.filtered_covariances,
            reference.filtered_covariances,
            atol=1e-6,
        )


class TestStaticMeanPosterior:
    """With F = 1 and Q = 0 the state is a constant with a Gaussian prior."""

    def test_matches_conjugate_posterior(self):
        m0, p0, r = 1.0, 4.0, 0.5
        params = LinearGaussianParams(
            dynamics_weights=jnp.eye(1),
            dynamics_cov=jnp.zeros((1, 1)),
            emissions_weights=jnp.eye(1),
            emissions_cov=jnp.array([[r]]),
        )
        ys = jnp.array([[0.3], [1.7], [0.9], [1.2], [0.4]])
        post = kalman_filter(params, jnp.array([m0]), jnp.array([[p0]]), ys)

        for k in range(1, 6):
            precision = 1.0 / p0 + k / r
            mean = (m0 / p0 + jnp.sum(ys[:k]) / r) / precision
            assert float(post.filtered_means[k - 1, 0]) == pytest.approx(
                float(mean)
            )
            assert float(
                post.filtered_covariances[k - 1, 0, 0]
            ) == pytest.approx(1.0 / precision)

        first = jstats.norm.logpdf(ys[0, 0], m0, jnp.sqrt(p0 + r))
        assert float(post.log_likelihood_increments[0]) == pytest.approx(
            float(first)
        )


class TestKalmanSteps:
    """Single predict/update steps."""

    def test_predict(self):
        p = _two_dim_params()
        params = LinearGaussianParams(
            **{k: v for k, v in p.items() if not k.startswith('initial')}
        )
        state = kalman_init(p['initial_mean'], p['initial_cov'])
        pred = kalman_predict(state, params)
        F, Q = p['dynamics_weights'], p['dynamics_cov']
        assert jnp.allclose(
            pred.mean, F @ p['initial_mean'] + p['dynamics_bias']
        )
        assert jnp.allclose(pred.cov, F @ p['initial_cov'] @ F.T + Q)

    def test_update_is_symmetric_and_psd(self):
        p = _two_dim_params()
        params = LinearGaussianParams(
            **{k: v for k, v in p.items() if not k.startswith('initial')}
        )
        state = kalman_init(p['initial_mean'], p['initial_cov'])
        for y in jr.normal(jr.PRNGKey(1), (20, 3)):
            state = kalman_update(kalman_predict(state, params), params, y)
            assert jnp.array_equal(state.cov, state.cov.T)
            assert jnp.all(jnp.linalg.eigvalsh(state.cov) > 0)
        check_kalman_state(state)

    def test_log_likelihood_is_predictive_density(self):
        p = _two_dim_params()
        params = LinearGaussianParams(
            **{k: v for k, v in p.items() if not k.startswith('initial')}
        )
        state = kalman_init(p['initial_mean'], p['initial_cov'])
        y = jnp.array([0.2, 0.4, -0.7])
        mean, cov = predicted_emission(state, params)
        updated = kalman_update(state, params, y)
        expected = jstats.multivariate_normal.logpdf(y, mean, cov)
        assert float(updated.log_likelihood) == pytest.approx(float(expected))


class TestKalmanErrors:
    """Invalid parameters and beliefs are reported."""

    def test_shape_mismatch(self, lgssm_params):
        params = _params(lgssm_params)._replace(dynamics_cov=jnp.eye(2))
        with pytest.raises(ConfigurationError, match='dynamics_cov'):
            validate_params(params)

    def test_initial_mean_shape(self, lgssm_params):
        with pytest.raises(ConfigurationError, match='initial_mean'):
            validate_params(_params(lgssm_params), jnp.zeros(2))

    def test_negative_noise_raises(self, lgssm_params):
        params = _params(lgssm_params)._replace(
            emissions_cov=jnp.array([[-5.0]])
        )
        with pytest.raises(NonPositiveDefiniteError) as excinfo:
            kalman_filter(
                params, jnp.zeros(1), jnp.array([[0.1]]), jnp.ones((4, 1))
            )
        assert excinfo.value.time_step == 0

    def test_indefinite_innovation_keeps_prior_belief(self):
        params = LinearGaussianParams(
            dynamics_weights=jnp.eye(2),
            dynamics_cov=0.1 * jnp.eye(2),
            emissions_weights=jnp.eye(2),
            emissions_cov=-5.0 * jnp.eye(2),
        )
        state = kalman_init(jnp.array([0.3, -0.2]), 0.5 * jnp.eye(2))
        updated = kalman_update(state, params, jnp.array([1.0, 2.0]))
        assert jnp.isnan(updated.log_likelihood)
        assert jnp.array_equal(updated.mean, state.mean)
        assert jnp.array_equal(updated.cov, state.cov)

    def test_check_state_rejects_indefinite_covariance(self):
        state = KalmanState(
            jnp.zeros(2), jnp.array([[1.0, 0.0], [0.0, -1.0]]), 0.0
        )
        with pytest.raises(NonPositiveDefiniteError):
            check_kalman_state(state, time_step=3)

    def test_check_state_rejects_nan(self):
        state = KalmanState(jnp.zeros(1), jnp.array([[jnp.nan]]), 0.0)
        with pytest.raises(NonPositiveDefiniteError):
            check_kalman_state(state)


class TestKalmanSubFilter:
    """The per-particle adapter used by the Rao-Blackwellized filters."""

    def _sub_filter(self, lgssm_params):
        def initial_fn(x):
            return lgssm_params['initial_mean'], lgssm_params['initial_cov']

        def params_fn(x):
            # The sampled state scales the observation matrix.
            return _params(lgssm_params)._replace(
                emissions_weights=x[None, :]
            )

        return KalmanSubFilter(initial_fn, params_fn)

    def test_vmapped_update_matches_direct(self, lgssm_params):
        sub = self._sub_filter(lgssm_params)
        sampled = jnp.array([[0.5], [1.0], [2.0]])
        states = jax.vmap(sub.init)(sampled)
        y = jnp.array([0.7])
        updated = jax.vmap(lambda s, x: sub.update(s, x, y))(states, sampled)

        direct = kalman_update(
            kalman_init(
                lgssm_params['initial_mean'], lgssm_params['initial_cov']
            ),
            _params(lgssm_params)._replace(emissions_weights=jnp.eye(1)),
            y,
        )
        assert jnp.allclose(updated.mean[1], direct.mean)
        assert jnp.allclose(updated.cov[1], direct.cov)
        assert jnp.allclose(sub.point_estimate(direct), direct.mean)

    def test_validate_rejects_bad_shapes(self, lgssm_params):
        sub = KalmanSubFilter(
            lambda x: (jnp.zeros(3), jnp.eye(3)),
            lambda x: _params(lgssm_params),
        )
        with pytest.raises(ConfigurationError):
            sub.validate(jnp.zeros(1))
