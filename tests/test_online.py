# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Tests for smcfilters.online."""

import logging

import jax.numpy as jnp
import jax.random as jr
import jax.scipy.stats as jstats
import pytest

from smcfilters.bootstrap import BootstrapFilter
from smcfilters.crn import CRNFilter
from smcfilters.exceptions import ConfigurationError, FilterCollapseError
from smcfilters.model import StateSpaceModel
from smcfilters.online import OnlineFilter


@pytest.fixture
def online(lgssm_model):
    return OnlineFilter(BootstrapFilter(lgssm_model, 200), jr.PRNGKey(0))


def _impossible_above(model, limit):
    """*model* with zero likelihood for emissions beyond *limit*."""

    def log_observation_fn(emission, state):
        return jnp.where(
            emission[0] > limit,
            -jnp.inf,
            model.log_observation_fn(emission, state),
        )

    return model._replace(log_observation_fn=log_observation_fn)


class TestOnlineStepping:
    """Steps advance the state and expose the current ensemble."""

    def test_before_first_step(self, online):
        assert online.time_step == 0
        assert online.last_info is None
        assert online.ess == 200.0
        assert online.log_marginal_likelihood == 0.0
        assert online.particle_states().shape == (200, 1)

    def test_steps_accumulate_evidence(self, online, lgssm_data):
        _, emissions = lgssm_data
        total = 0.0
        for t in range(5):
            info = online.step(emissions[t])
            total += float(info.log_likelihood_increment)
        assert online.time_step == 5
        assert online.last_info is info
        assert online.log_marginal_likelihood == pytest.approx(total)

    def test_matches_manual_key_splitting(self, lgssm_model, lgssm_data):
        _, emissions = lgssm_data
        pf = BootstrapFilter(lgssm_model, 100)
        online = OnlineFilter(pf, jr.PRNGKey(3))
        init_key, key = jr.split(jr.PRNGKey(3))
        state = pf.init(init_key)
        for t in range(4):
            step_key, key = jr.split(key)
            state, _ = pf.step(step_key, state, emissions[t])
            online.step(emissions[t])
        assert jnp.allclose(online.state.particles, state.particles)
        assert online.log_marginal_likelihood == pytest.approx(
            float(state.log_marginal_likelihood)
        )

    def test_weights_and_summaries(self, online, lgssm_data):
        _, emissions = lgssm_data
        online.step(emissions[0])
        weights = online.particle_weights()
        assert float(jnp.sum(weights)) == pytest.approx(1.0)
        particles = online.particle_states()
        assert jnp.allclose(
            online.filter_mean(), jnp.sum(weights[:, None] * particles, 0)
        )
        cov = online.filter_covariance()
        assert cov.shape == (1, 1)
        assert float(cov[0, 0]) > 0.0

    def test_ess_reports_last_step(self, online, lgssm_data):
        _, emissions = lgssm_data
        info = online.step(emissions[0])
        assert online.ess == pytest.approx(float(info.ess))
        assert 1.0 <= online.ess <= 200.0

    def test_check_invariants_passes_on_healthy_run(
        self, lgssm_model, lgssm_data
    ):
        _, emissions = lgssm_data
        online = OnlineFilter(
            BootstrapFilter(lgssm_model, 100, resampling_threshold=1.0),
            jr.PRNGKey(1),
            check_invariants=True,
        )
        for t in range(10):
            online.step(emissions[t])
        assert online.time_step == 10


class TestOnlineFailure:
    """A failed step leaves the filter usable."""

    def test_collapse_keeps_state_and_key(self, lgssm_model, lgssm_data):
        _, emissions = lgssm_data
        model = _impossible_above(lgssm_model, 100.0)
        online = OnlineFilter(BootstrapFilter(model, 50), jr.PRNGKey(2))
        online.step(emissions[0])
        state_before = online.state
        key_before = online._key

        with pytest.raises(FilterCollapseError) as excinfo:
            online.step(jnp.array([1e4]))
        assert excinfo.value.time_step == 1
        assert online.state is state_before
        assert jnp.array_equal(online._key, key_before)
        assert online.time_step == 1

        # The filter continues from the retained ensemble.
        online.step(emissions[1])
        assert online.time_step == 2


class TestOnlineLogging:
    """Initialization, steps and failures are logged."""

    def test_log_messages(self, lgssm_model, lgssm_data, caplog):
        _, emissions = lgssm_data
        caplog.set_level(logging.DEBUG, logger='smcfilters.online')
        model = _impossible_above(lgssm_model, 100.0)
        online = OnlineFilter(BootstrapFilter(model, 20), jr.PRNGKey(0))
        online.step(emissions[0])
        with pytest.raises(FilterCollapseError):
            online.step(jnp.array([1e4]))

        records = [
            (r.levelno, r.getMessage())
            for r in caplog.records
            if r.name == 'smcfilters.online'
        ]
        assert any(
            level == logging.INFO and 'Initialized' in msg
            for level, msg in records
        )
        assert any(
            level == logging.DEBUG and msg.startswith('Step 0: ess=')
            for level, msg in records
        )
        assert any(
            level == logging.WARNING and msg.startswith('Step 1 aborted')
            for level, msg in records
        )


class TestOnlineCRN:
    """CRN filters run from an explicit initial state, without a key."""

    def test_crn_from_initial_state(self, lgssm_data):
        _, emissions = lgssm_data

        def log_observation_fn(emission, state):
            return jstats.norm.logpdf(emission[0], state[0], 1.0)

        def log_transition_fn(new_state, state):
            return jstats.norm.logpdf(new_state[0], 0.9 * state[0], 0.5)

        model = StateSpaceModel(
            initial_sampler=None,
            log_transition_fn=log_transition_fn,
            log_observation_fn=log_observation_fn,
        )
        pf = CRNFilter(
            model,
            64,
            initial_map=lambda noise: noise,
            proposal_map=lambda noise, x, y: 0.9 * x + 0.5 * noise,
            log_proposal_fn=lambda x_new, x, y: log_transition_fn(x_new, x),
        )
        k0, k1, k2 = jr.split(jr.PRNGKey(7), 3)
        initial_noise = jr.normal(k0, (64, 1))
        noises = jr.normal(k1, (3, 64, 1))
        resampling_noises = jr.normal(k2, (3,))

        online = OnlineFilter(pf, initial_state=pf.init(initial_noise))
        for t in range(3):
            online.step(emissions[t], noises[t], resampling_noises[t])

        batch = pf.filter(
            emissions[:3], initial_noise, noises, resampling_noises
        )
        assert online.log_marginal_likelihood == pytest.approx(
            float(batch.marginal_loglik), rel=1e-6
        )


class TestOnlineConfiguration:
    def test_requires_key_or_state(self, lgssm_model):
        with pytest.raises(ConfigurationError, match='key'):
            OnlineFilter(BootstrapFilter(lgssm_model, 10))
