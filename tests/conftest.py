# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Shared test fixtures for smcfilters."""

import jax
import jax.numpy as jnp
import jax.random as jr
import jax.scipy.stats as jstats
import pytest

import smcfilters
from smcfilters.model import StateSpaceModel


@pytest.fixture
def package():
    """Return the top-level package module for introspection."""
    return smcfilters


@pytest.fixture
def key():
    """Fixed JAX PRNG key for reproducibility."""
    return jr.PRNGKey(42)


@pytest.fixture
def lgssm_params():
    """Simple 1-D linear Gaussian SSM parameters.

    Model:
        z_0  ~ N(0, 1)
        z_t  = 0.9 * z_{t-1} + eps,  eps ~ N(0, 0.5^2)
        y_t  = z_t + eta,             eta ~ N(0, 1.0^2)

    Returns a dict with keys matching Dynamax ``make_lgssm_params``.
    """
    return dict(
        initial_mean=jnp.array([0.0]),
        initial_cov=jnp.array([[1.0]]),
        dynamics_weights=jnp.array([[0.9]]),
        dynamics_cov=jnp.array([[0.25]]),  # 0.5^2
        emissions_weights=jnp.array([[1.0]]),
        emissions_cov=jnp.array([[1.0]]),
    )


@pytest.fixture
def lgssm_data(key, lgssm_params):
    """Simulate T=50 observations from the 1-D LGSSM.

    Returns (states, emissions) each of shape (50, 1).
    """
    from dynamax.linear_gaussian_ssm.inference import (
        lgssm_joint_sample,
        make_lgssm_params,
    )

    params = make_lgssm_params(**lgssm_params)
    states, emissions = lgssm_joint_sample(params, key, num_timesteps=50)
    return states, emissions


@pytest.fixture
def lgssm_model(lgssm_params):
    """The 1-D LGSSM as a :class:`StateSpaceModel`."""
    m0 = lgssm_params['initial_mean']
    P0 = lgssm_params['initial_cov']
    F = lgssm_params['dynamics_weights']
    Q = lgssm_params['dynamics_cov']
    H = lgssm_params['emissions_weights']
    R = lgssm_params['emissions_cov']

    def initial_sampler(key, n):
        return jr.multivariate_normal(key, m0, P0, shape=(n,))

    def transition_sampler(key, state):
        return jr.multivariate_normal(key, F @ state, Q)

    def log_transition_fn(new_state, state):
        return jstats.multivariate_normal.logpdf(new_state, F @ state, Q)

    def log_observation_fn(emission, state):
        return jstats.multivariate_normal.logpdf(emission, H @ state, R)

    def emission_sampler(key, state):
        return jr.multivariate_normal(key, H @ state, R)

    return StateSpaceModel(
        initial_sampler=initial_sampler,
        transition_sampler=transition_sampler,
        log_observation_fn=log_observation_fn,
        log_transition_fn=log_transition_fn,
        emission_sampler=emission_sampler,
        state_dim=1,
        emission_dim=1,
    )


@pytest.fixture
def initial_posterior(lgssm_params):
    """The exact ``p(z_1 | y_1)`` of the 1-D LGSSM as initial proposal.

    Importance weights under this proposal all equal ``p(y_1)``, so a
    filter's first evidence increment is exact.  Returns a dict with
    ``log_initial_fn``, ``sampler``, ``log_density`` and
    ``log_evidence``.
    """
    m0 = lgssm_params['initial_mean']
    P0 = lgssm_params['initial_cov']
    H = lgssm_params['emissions_weights']
    R = lgssm_params['emissions_cov']
    S = H @ P0 @ H.T + R
    K = P0 @ H.T @ jnp.linalg.inv(S)
    cov = P0 - K @ H @ P0

    def mean(emission):
        return m0 + K @ (emission - H @ m0)

    def log_initial_fn(state):
        return jstats.multivariate_normal.logpdf(state, m0, P0)

    def sampler(key, emission):
        return jr.multivariate_normal(key, mean(emission), cov)

    def log_density(state, emission):
        return jstats.multivariate_normal.logpdf(state, mean(emission), cov)

    def log_evidence(emission):
        return jstats.multivariate_normal.logpdf(emission, H @ m0, S)

    return dict(
        log_initial_fn=log_initial_fn,
        sampler=sampler,
        log_density=log_density,
        log_evidence=log_evidence,
    )


@pytest.fixture
def kalman_reference(lgssm_params, lgssm_data):
    """Exact Dynamax Kalman filter posterior for ``lgssm_data``."""
    from dynamax.linear_gaussian_ssm.inference import (
        lgssm_filter,
        make_lgssm_params,
    )

    _, emissions = lgssm_data
    return lgssm_filter(make_lgssm_params(**lgssm_params), emissions)


# Configure JAX to use 64-bit floats for higher precision in tests.
jax.config.update('jax_enable_x64', True)
