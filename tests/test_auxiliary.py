# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Tests for smcfilters.auxiliary.

Cross-validates against:
1. The Kalman filter (exact solution for linear Gaussian SSMs)
2. The bootstrap filter (APF with flat auxiliary = bootstrap)
"""

import jax.numpy as jnp
import jax.random as jr
import jax.scipy.stats as jstats
import pytest

from smcfilters.auxiliary import AuxiliaryFilter, auxiliary_filter
from smcfilters.bootstrap import bootstrap_filter
from smcfilters.exceptions import ConfigurationError, FilterCollapseError
from smcfilters.model import StateSpaceModel


@pytest.fixture
def look_ahead(lgssm_params):
    """``(log_auxiliary_fn, point_predictor)`` for the 1-D LGSSM."""
    F = lgssm_params['dynamics_weights']
    H = lgssm_params['emissions_weights']
    R = lgssm_params['emissions_cov']

    def log_auxiliary_fn(emission, state):
        """p(y_{t+1} | mu_{t+1}) where mu = F @ x_t."""
        return jstats.multivariate_normal.logpdf(emission, H @ F @ state, R)

    def point_predictor(state):
        return F @ state

    return log_auxiliary_fn, point_predictor


class TestAuxiliaryVsKalman:
    """APF on a linear Gaussian SSM should approximate Kalman."""

    def test_log_ml_with_auxiliary_fn(
        self, lgssm_model, lgssm_data, kalman_reference, look_ahead
    ):
        _, emissions = lgssm_data
        exact_ll = float(kalman_reference.marginal_loglik)
        post = auxiliary_filter(
            jr.PRNGKey(123),
            lgssm_model,
            emissions,
            num_particles=10_000,
            log_auxiliary_fn=look_ahead[0],
        )
        pf_ll = float(post.marginal_loglik)
        assert pf_ll == pytest.approx(exact_ll, rel=0.05), (
            f'APF log-ML {pf_ll:.2f} vs Kalman {exact_ll:.2f}'
        )

    def test_log_ml_with_point_predictor(
        self, lgssm_model, lgssm_data, kalman_reference, look_ahead
    ):
        _, emissions = lgssm_data
        exact_ll = float(kalman_reference.marginal_loglik)
        post = auxiliary_filter(
            jr.PRNGKey(321),
            lgssm_model,
            emissions,
            num_particles=10_000,
            point_predictor=look_ahead[1],
        )
        assert float(post.marginal_loglik) == pytest.approx(
            exact_ll, rel=0.05
        )

    def test_point_predictor_equals_auxiliary_fn(
        self, lgssm_model, lgssm_data, look_ahead
    ):
        """Both ways of giving the same look-ahead yield the same run."""
        _, emissions = lgssm_data
        runs = [
            auxiliary_filter(
                jr.PRNGKey(5), lgssm_model, emissions[:20], 500, **kwargs
            )
            for kwargs in (
                {'log_auxiliary_fn': look_ahead[0]},
                {'point_predictor': look_ahead[1]},
            )
        ]
        assert jnp.allclose(
            runs[0].marginal_loglik, runs[1].marginal_loglik, rtol=1e-8
        )


class TestAuxiliaryFlatMatchesBootstrap:
    """APF with log_auxiliary_fn=0 should match bootstrap."""

    def test_flat_auxiliary(self, lgssm_model, lgssm_data):
        _, emissions = lgssm_data

        def flat_auxiliary_fn(emission, state):
            return 0.0 * state[0]

        key = jr.PRNGKey(42)
        n = 5_000
        bpf_ll = float(
            bootstrap_filter(key, lgssm_model, emissions, n).marginal_loglik
        )
        apf_ll = float(
            auxiliary_filter(
                key,
                lgssm_model,
                emissions,
                n,
                log_auxiliary_fn=flat_auxiliary_fn,
            ).marginal_loglik
        )
        # Both are Monte Carlo estimates; the log-ML std is O(1) here.
        assert apf_ll == pytest.approx(bpf_ll, abs=3.0), (
            f'APF {apf_ll:.2f} vs bootstrap {bpf_ll:.2f}'
        )


class TestAuxiliaryStructure:
    """Resampling placement and configuration."""

    def test_no_resampling_on_first_observation(
        self, lgssm_model, lgssm_data, look_ahead
    ):
        _, emissions = lgssm_data
        post = auxiliary_filter(
            jr.PRNGKey(1), lgssm_model, emissions, 200,
            log_auxiliary_fn=look_ahead[0], resampling_threshold=1.0,
        )  # fmt: skip
        assert not bool(post.resampled[0])
        assert jnp.all(post.resampled[1:])
        assert jnp.array_equal(post.ancestors[0], jnp.arange(200))

    @pytest.mark.parametrize('both', [True, False])
    def test_exactly_one_look_ahead(self, lgssm_model, look_ahead, both):
        kwargs = (
            dict(log_auxiliary_fn=look_ahead[0], point_predictor=look_ahead[1])
            if both
            else {}
        )
        with pytest.raises(ConfigurationError, match='exactly one'):
            AuxiliaryFilter(lgssm_model, 100, **kwargs)


class TestAuxiliaryTraces:
    """ESS and evidence increments are consistent."""

    def test_ess_bounded(self, lgssm_model, lgssm_data, look_ahead):
        _, emissions = lgssm_data
        n = 1_000
        post = auxiliary_filter(
            jr.PRNGKey(111), lgssm_model, emissions, n,
            log_auxiliary_fn=look_ahead[0],
        )  # fmt: skip
        assert jnp.all(post.ess >= 1.0)
        assert jnp.all(post.ess <= n)

    def test_increments(self, lgssm_model, lgssm_data, look_ahead):
        _, emissions = lgssm_data
        post = auxiliary_filter(
            jr.PRNGKey(0), lgssm_model, emissions, 1_000,
            log_auxiliary_fn=look_ahead[0],
        )  # fmt: skip
        assert post.log_evidence_increments.shape == (emissions.shape[0],)
        assert jnp.all(jnp.isfinite(post.log_evidence_increments))
        total = float(jnp.sum(post.log_evidence_increments))
        assert total == pytest.approx(float(post.marginal_loglik), abs=1e-6)


def _bounded_noise_model():
    """Slow random walk observed with uniform noise on ``x +- 1``."""

    def initial_sampler(key, n):
        return 0.1 * jr.normal(key, (n, 1))

    def transition_sampler(key, state):
        return state + 0.1 * jr.normal(key, (1,))

    def log_observation_fn(emission, state):
        inside = jnp.abs(emission[0] - state[0]) < 1.0
        return jnp.where(inside, -jnp.log(2.0), -jnp.inf)

    return StateSpaceModel(
        initial_sampler=initial_sampler,
        transition_sampler=transition_sampler,
        log_observation_fn=log_observation_fn,
    )


class TestAuxiliaryCollapse:
    """An observation no particle can explain is a collapse."""

    @pytest.mark.parametrize('threshold', [0.5, 1.0])
    def test_impossible_second_observation(self, threshold):
        emissions = jnp.array([[0.0], [50.0], [0.0]])
        with pytest.raises(FilterCollapseError) as excinfo:
            auxiliary_filter(
                jr.PRNGKey(0), _bounded_noise_model(), emissions, 100,
                point_predictor=lambda x: x,
                resampling_threshold=threshold,
            )  # fmt: skip
        assert excinfo.value.time_step == 1

    def test_online_step_collapses(self):
        pf = AuxiliaryFilter(
            _bounded_noise_model(), 100,
            point_predictor=lambda x: x, resampling_threshold=1.0,
        )  # fmt: skip
        state = pf.init(jr.PRNGKey(0))
        state, _ = pf.step(jr.PRNGKey(1), state, jnp.array([0.0]))
        with pytest.raises(FilterCollapseError):
            pf.step(jr.PRNGKey(2), state, jnp.array([50.0]))
        assert int(state.time_step) == 1

    def test_unreachable_look_ahead_skips_resampling(self):
        """A look-ahead ruling out every particle leaves them in place."""
        pf = AuxiliaryFilter(
            _bounded_noise_model(), 50,
            log_auxiliary_fn=lambda emission, x: -jnp.inf * jnp.ones(()),
            resampling_threshold=1.0,
        )  # fmt: skip
        state = pf.init(jr.PRNGKey(0))
        state, _ = pf.step(jr.PRNGKey(1), state, jnp.array([0.0]))
        state, info = pf.step(jr.PRNGKey(2), state, jnp.array([0.05]))
        assert not bool(info.resampled)
        assert jnp.array_equal(info.ancestors, jnp.arange(50))
        assert jnp.isfinite(info.log_likelihood_increment)


class TestAuxiliaryInitialProposal:
    """The first ensemble can be drawn from ``q(x_1 | y_1)``."""

    def test_optimal_proposal_gives_exact_first_increment(
        self, lgssm_model, lgssm_data, look_ahead, initial_posterior
    ):
        _, emissions = lgssm_data
        model = lgssm_model._replace(
            log_initial_fn=initial_posterior['log_initial_fn']
        )
        post = auxiliary_filter(
            jr.PRNGKey(3), model, emissions[:10], 200,
            log_auxiliary_fn=look_ahead[0],
            initial_proposal_sampler=initial_posterior['sampler'],
            log_initial_proposal_fn=initial_posterior['log_density'],
        )  # fmt: skip
        expected = initial_posterior['log_evidence'](emissions[0])
        assert float(post.log_evidence_increments[0]) == pytest.approx(
            float(expected), rel=1e-8
        )
        assert float(post.ess[0]) == pytest.approx(200.0)

    def test_requires_log_initial_fn(self, lgssm_model, initial_posterior):
        with pytest.raises(ConfigurationError, match='log_initial_fn'):
            AuxiliaryFilter(
                lgssm_model, 10,
                point_predictor=lambda x: x,
                initial_proposal_sampler=initial_posterior['sampler'],
                log_initial_proposal_fn=initial_posterior['log_density'],
            )  # fmt: skip
