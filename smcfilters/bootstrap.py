# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Bootstrap (SIR) particle filter.

The bootstrap filter [Gordon *et al.*, 1993] is the simplest Sequential
Monte Carlo algorithm.  At each time step it:

1. **Propagates** particles through the transition prior (the prior
   draws are used as-is for the first observation).
2. **Weights** particles by the observation likelihood.
3. **Resamples** when the ESS drops below the configured fraction of
   the ensemble size, resetting the weights to uniform.

When covariates are given, the covariate of each step is passed as a
trailing argument to ``transition_sampler`` and ``log_observation_fn``.
"""

from collections.abc import Callable, Sequence
from typing import Optional

import jax
import jax.random as jr
from jaxtyping import Array, Float

from smcfilters.base import ParticleFilter
from smcfilters.containers import ParticleFilterPosterior
from smcfilters.kernels import propagate, unless_first
from smcfilters.model import StateSpaceModel, with_covariate
from smcfilters.resampling import systematic
from smcfilters.types import PRNGKeyT


class BootstrapFilter(ParticleFilter):
    """Bootstrap particle filter.

    The model must provide ``initial_sampler``, ``transition_sampler``
    and ``log_observation_fn``.  ``step`` and ``filter`` accept an
    optional covariate (sequence).
    """

    required_model_fns = (
        'initial_sampler',
        'transition_sampler',
        'log_observation_fn',
    )

    def _step(self, key, state, emission, covariate=None):
        k_prop, k_res = jr.split(key)
        transition_sampler = with_covariate(
            self.model.transition_sampler, covariate
        )
        log_observation_fn = with_covariate(
            self.model.log_observation_fn, covariate
        )

        particles = unless_first(
            state.time_step,
            state.particles,
            lambda: propagate(k_prop, transition_sampler, state.particles),
        )
        log_obs = jax.vmap(lambda z: log_observation_fn(emission, z))(
            particles
        )
        return self._reweight(k_res, state, particles, log_obs)


def bootstrap_filter(
    key: PRNGKeyT,
    model: StateSpaceModel,
    emissions: Float[Array, 'ntime emission_dim'],
    num_particles: int,
    resampling_fn: Callable = systematic,
    resampling_threshold: float = 0.5,
    covariates: Optional[Array] = None,
    test_functions: Sequence[Callable] = (),
    check_finite: bool = True,
) -> ParticleFilterPosterior:
    r"""Run a bootstrap (SIR) particle filter.

    Args:
        key: JAX PRNG key.
        model: Model providing ``initial_sampler`` ``(key, num_particles)
            -> particles``, ``transition_sampler`` ``(key, state) ->
            state`` and ``log_observation_fn`` ``(emission, state) ->
            log_prob``.  Single-particle functions are ``vmap``-ped
            internally.
        emissions: Observed emissions, shape ``(T, D)``.
        num_particles: Number of particles :math:`N`.
        resampling_fn: Resampling algorithm, see
            :mod:`smcfilters.resampling`.
        resampling_threshold: Fraction of ``num_particles`` below which
            resampling is triggered.
        covariates: Optional covariates, leading dimension ``T``.
        test_functions: Functions whose weighted means are recorded.
        check_finite: Raise on the first non-finite step.

    Returns:
        :class:`~smcfilters.containers.ParticleFilterPosterior` containing
        filtered particles, log weights, ancestor indices, the
        marginal log-likelihood estimate, and ESS trace.
    """
    pf = BootstrapFilter(
        model,
        num_particles,
        resampling_fn=resampling_fn,
        resampling_threshold=resampling_threshold,
        test_functions=test_functions,
    )
    return pf.filter(key, emissions, covariates, check_finite=check_finite)
