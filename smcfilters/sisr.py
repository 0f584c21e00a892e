# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Sequential importance sampling with resampling (SISR).

Generalizes the bootstrap filter to an arbitrary importance proposal
:math:`q(x_t \mid x_{t-1}, y_t)`.  The incremental log weight is

.. math::

    \log g(y_t \mid x_t) + \log f(x_t \mid x_{t-1})
        - \log q(x_t \mid x_{t-1}, y_t).

With ``proposal_sampler`` equal to the transition sampler and a
``log_proposal_fn`` equal to the transition density, the filter
reproduces :class:`~smcfilters.bootstrap.BootstrapFilter` draw for draw.
Covariates, if given, are appended to every model and proposal call.
"""

from collections.abc import Callable, Sequence
from typing import Optional

import jax
import jax.random as jr
from jax import lax
from jaxtyping import Array, Float

from smcfilters.base import ParticleFilter
from smcfilters.containers import ParticleFilterPosterior
from smcfilters.kernels import propagate
from smcfilters.model import StateSpaceModel, with_covariate
from smcfilters.resampling import systematic
from smcfilters.types import PRNGKeyT


class SISRFilter(ParticleFilter):
    r"""Particle filter with a user-supplied importance proposal.

    Args:
        model: Model providing ``initial_sampler``,
            ``log_transition_fn`` and ``log_observation_fn``.
        num_particles: Number of particles :math:`N`.
        proposal_sampler: Function ``(key, state, emission) -> state``
            drawing from :math:`q(x_t \mid x_{t-1}, y_t)`.
        log_proposal_fn: Function ``(new_state, state, emission) ->
            log_prob`` evaluating the proposal density.
        resampling_fn: Resampling algorithm.
        resampling_threshold: Fraction of ``num_particles`` below which
            resampling is triggered.
        test_functions: Functions whose weighted means are recorded.
        initial_proposal_sampler: Optional function ``(key, emission)
            -> state`` drawing the first ensemble from
            :math:`q(x_1 \mid y_1)` instead of the prior.  Requires
            the model's ``log_initial_fn``.
        log_initial_proposal_fn: Function ``(state, emission) ->
            log_prob`` evaluating the initial proposal density.
    """

    required_model_fns = (
        'initial_sampler',
        'log_transition_fn',
        'log_observation_fn',
    )

    def __init__(
        self,
        model: StateSpaceModel,
        num_particles: int,
        proposal_sampler: Callable,
        log_proposal_fn: Callable,
        resampling_fn: Callable = systematic,
        resampling_threshold: float = 0.5,
        test_functions: Sequence[Callable] = (),
        initial_proposal_sampler: Optional[Callable] = None,
        log_initial_proposal_fn: Optional[Callable] = None,
    ):
        self.proposal_sampler = proposal_sampler
        self.log_proposal_fn = log_proposal_fn
        super().__init__(
            model,
            num_particles,
            resampling_fn=resampling_fn,
            resampling_threshold=resampling_threshold,
            test_functions=test_functions,
        )
        self._set_initial_proposal(
            initial_proposal_sampler, log_initial_proposal_fn
        )

    def _step(self, key, state, emission, covariate=None):
        k_prop, k_res = jr.split(key)
        proposal_sampler = with_covariate(self.proposal_sampler, covariate)
        log_proposal_fn = with_covariate(self.log_proposal_fn, covariate)
        log_transition_fn = with_covariate(
            self.model.log_transition_fn, covariate
        )
        log_observation_fn = with_covariate(
            self.model.log_observation_fn, covariate
        )

        def _move():
            new = propagate(
                k_prop, proposal_sampler, state.particles, emission
            )
            log_correction = jax.vmap(
                lambda x1, x0: log_transition_fn(x1, x0)
                - log_proposal_fn(x1, x0, emission)
            )(new, state.particles)
            return new, log_correction

        particles, log_correction = lax.cond(
            state.time_step == 0,
            lambda: self._initial_draws(
                k_prop, state.particles, emission, covariate
            ),
            _move,
        )
        log_obs = jax.vmap(lambda z: log_observation_fn(emission, z))(
            particles
        )
        return self._reweight(
            k_res, state, particles, log_obs + log_correction
        )


def sisr_filter(
    key: PRNGKeyT,
    model: StateSpaceModel,
    emissions: Float[Array, 'ntime emission_dim'],
    num_particles: int,
    proposal_sampler: Callable,
    log_proposal_fn: Callable,
    resampling_fn: Callable = systematic,
    resampling_threshold: float = 0.5,
    covariates: Optional[Array] = None,
    test_functions: Sequence[Callable] = (),
    check_finite: bool = True,
    initial_proposal_sampler: Optional[Callable] = None,
    log_initial_proposal_fn: Optional[Callable] = None,
) -> ParticleFilterPosterior:
    """Run a SISR particle filter; see :class:`SISRFilter`."""
    pf = SISRFilter(
        model,
        num_particles,
        proposal_sampler,
        log_proposal_fn,
        resampling_fn=resampling_fn,
        resampling_threshold=resampling_threshold,
        test_functions=test_functions,
        initial_proposal_sampler=initial_proposal_sampler,
        log_initial_proposal_fn=log_initial_proposal_fn,
    )
    return pf.filter(key, emissions, covariates, check_finite=check_finite)
