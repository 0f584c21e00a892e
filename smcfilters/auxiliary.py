# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Auxiliary particle filter (Pitt & Shephard, 1999).

The auxiliary particle filter (APF) improves on the bootstrap filter by
using a *look-ahead* step that biases resampling towards particles
likely to match the next observation **before** propagation.

At each time step after the first the APF:

1. **First-stage weights**: combines the current normalised weights
   with the look-ahead log-density
   :math:`\log g(y_{t+1} \mid x_t^i)` to form first-stage weights.
2. **Resamples** (conditionally on their ESS) using the first-stage
   weights.
3. **Propagates** resampled particles through the transition prior.
4. **Second-stage weights**: corrects for the look-ahead bias,
   :math:`w_t^{(2)} = p(y_{t+1} \mid x_{t+1}^i) / g(y_{t+1} \mid
   x_t^{a_i})`.

The look-ahead is either given directly as ``log_auxiliary_fn`` or
derived from a ``point_predictor`` (typically the transition mean) as
:math:`g(y \mid x) = p(y \mid \hat{x}(x))`.  When ``log_auxiliary_fn``
returns zero for all inputs, the APF reduces to a bootstrap filter that
resamples before propagating.
"""

import math
from collections.abc import Callable, Sequence
from typing import Optional

import jax
import jax.numpy as jnp
import jax.random as jr
from jax import lax
from jaxtyping import Array, Float

from smcfilters.base import ParticleFilter
from smcfilters.containers import (
    ParticleFilterPosterior,
    ParticleState,
    StepInfo,
)
from smcfilters.ess import ess
from smcfilters.exceptions import ConfigurationError
from smcfilters.kernels import (
    draw_ancestors,
    expectations,
    gather,
    propagate,
    should_resample,
    unless_first,
)
from smcfilters.model import StateSpaceModel
from smcfilters.resampling import systematic
from smcfilters.types import PRNGKeyT
from smcfilters.weights import log_normalize


class AuxiliaryFilter(ParticleFilter):
    r"""Auxiliary particle filter.

    Args:
        model: Model providing ``initial_sampler``,
            ``transition_sampler`` and ``log_observation_fn``.
        num_particles: Number of particles :math:`N`.
        log_auxiliary_fn: Function ``(emission, state) -> log_prob``
            approximating :math:`\log p(y_{t+1} \mid x_t)`.
        point_predictor: Alternative to ``log_auxiliary_fn``: a function
            ``state -> state`` summarising the next state, plugged into
            ``log_observation_fn``.
        resampling_fn: Resampling algorithm.
        resampling_threshold: Resample when the first-stage ESS falls
            below ``resampling_threshold * num_particles``.
        test_functions: Functions whose weighted means are recorded.
        initial_proposal_sampler: Optional function ``(key, emission)
            -> state`` drawing the first ensemble from
            :math:`q(x_1 \mid y_1)`; needs the model's
            ``log_initial_fn``.
        log_initial_proposal_fn: Function ``(state, emission) ->
            log_prob``.

    Raises:
        ConfigurationError: Unless exactly one of ``log_auxiliary_fn``
            and ``point_predictor`` is given.
    """

    required_model_fns = (
        'initial_sampler',
        'transition_sampler',
        'log_observation_fn',
    )

    def __init__(
        self,
        model: StateSpaceModel,
        num_particles: int,
        log_auxiliary_fn: Optional[Callable] = None,
        point_predictor: Optional[Callable] = None,
        resampling_fn: Callable = systematic,
        resampling_threshold: float = 0.5,
        test_functions: Sequence[Callable] = (),
        initial_proposal_sampler: Optional[Callable] = None,
        log_initial_proposal_fn: Optional[Callable] = None,
    ):
        if (log_auxiliary_fn is None) == (point_predictor is None):
            raise ConfigurationError(
                'pass exactly one of log_auxiliary_fn and point_predictor'
            )
        if log_auxiliary_fn is None:

            def log_auxiliary_fn(emission, state):
                return model.log_observation_fn(
                    emission, point_predictor(state)
                )

        self.log_auxiliary_fn = log_auxiliary_fn
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

    def _step(self, key, state, emission):
        k_res, k_prop = jr.split(key)
        n = self.num_particles
        first = state.time_step == 0

        # 1. First-stage weights (no look-ahead for the prior draws)
        log_aux = unless_first(
            state.time_step,
            jnp.zeros_like(state.log_weights),
            lambda: jax.vmap(lambda z: self.log_auxiliary_fn(emission, z))(
                state.particles
            ),
        )
        log_first, log_first_sum = log_normalize(state.log_weights + log_aux)

        # 2. Conditionally resample on the first-stage weights; a
        # look-ahead that rules out every particle leaves them in place
        do_resample = (
            ~first
            & jnp.isfinite(log_first_sum)
            & should_resample(self.config, ess(log_first))
        )
        ancestors = draw_ancestors(
            k_res, self.config, log_first, state.particles, do_resample
        )
        resampled = gather(state.particles, ancestors)

        # 3. Propagate through transition
        particles, log_correction = lax.cond(
            first,
            lambda: self._initial_draws(k_prop, resampled, emission),
            lambda: (
                propagate(k_prop, self.model.transition_sampler, resampled),
                jnp.zeros_like(state.log_weights),
            ),
        )

        # 4. Second-stage weights
        log_obs = jax.vmap(
            lambda z: self.model.log_observation_fn(emission, z)
        )(particles)
        log_w_unnorm = jnp.where(
            do_resample,
            log_obs - log_aux[ancestors],
            state.log_weights + log_obs + log_correction,
        )
        log_weights, log_sum = log_normalize(log_w_unnorm)
        # If resampled: p(y) ~ sum_i W_i g_i * mean_j(w2_j)
        log_increment = jnp.where(
            do_resample,
            log_first_sum + log_sum - math.log(n),
            log_sum,
        )

        new_state = ParticleState(
            particles=particles,
            log_weights=log_weights,
            log_marginal_likelihood=(
                state.log_marginal_likelihood + log_increment
            ),
            time_step=state.time_step + 1,
        )
        info = StepInfo(
            ess=ess(log_weights),
            resampled=do_resample,
            ancestors=ancestors,
            log_likelihood_increment=log_increment,
            expectations=expectations(
                self.test_functions, log_weights, particles
            ),
        )
        return new_state, info, new_state


def auxiliary_filter(
    key: PRNGKeyT,
    model: StateSpaceModel,
    emissions: Float[Array, 'ntime emission_dim'],
    num_particles: int,
    log_auxiliary_fn: Optional[Callable] = None,
    point_predictor: Optional[Callable] = None,
    resampling_fn: Callable = systematic,
    resampling_threshold: float = 0.5,
    test_functions: Sequence[Callable] = (),
    check_finite: bool = True,
    initial_proposal_sampler: Optional[Callable] = None,
    log_initial_proposal_fn: Optional[Callable] = None,
) -> ParticleFilterPosterior:
    r"""Run an auxiliary particle filter (Pitt & Shephard, 1999).

    Convenience wrapper around :meth:`AuxiliaryFilter.filter`; see
    :class:`AuxiliaryFilter` for the arguments.

    Returns:
        :class:`~smcfilters.containers.ParticleFilterPosterior` containing
        filtered particles, log weights, ancestor indices, the
        marginal log-likelihood estimate, and ESS trace.
    """
    pf = AuxiliaryFilter(
        model,
        num_particles,
        log_auxiliary_fn=log_auxiliary_fn,
        point_predictor=point_predictor,
        resampling_fn=resampling_fn,
        resampling_threshold=resampling_threshold,
        test_functions=test_functions,
        initial_proposal_sampler=initial_proposal_sampler,
        log_initial_proposal_fn=log_initial_proposal_fn,
    )
    return pf.filter(key, emissions, check_finite=check_finite)
