# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Building blocks shared by the particle filter step functions.

The step functions themselves are pure and JIT-compiled; nothing in
here raises while traced.  The ``check_*`` helpers run on the host
after a step and turn non-finite results into exceptions.
"""

import math
from typing import Callable, Sequence

import jax
import jax.numpy as jnp
import jax.random as jr
from jax import lax
from jaxtyping import Array, Float, Int

from smcfilters.config import FilterConfig
from smcfilters.containers import ParticleFilterPosterior, StepInfo
from smcfilters.ess import ess
from smcfilters.exceptions import FilterCollapseError, FilterDegenerateError
from smcfilters.resampling import resample
from smcfilters.types import PRNGKeyT, Scalar
from smcfilters.weights import uniform_log_weights


def propagate(
    key: PRNGKeyT,
    sampler: Callable,
    particles: Float[Array, 'num_particles state_dim'],
    *args,
) -> Float[Array, 'num_particles state_dim']:
    """Draw one new state per particle with an independent key each."""
    keys = jr.split(key, particles.shape[0])
    return jax.vmap(lambda k, x: sampler(k, x, *args))(keys, particles)


def propagate_initial(
    key: PRNGKeyT,
    sampler: Callable,
    log_proposal_fn: Callable,
    log_initial_fn: Callable,
    emission,
    num_particles: int,
):
    """Draw a first ensemble from an observation-aware proposal.

    Returns:
        ``(particles, log_correction)`` where the correction is
        ``log_initial_fn(x) - log_proposal_fn(x, emission)``.
    """
    keys = jr.split(key, num_particles)
    particles = jax.vmap(lambda k: sampler(k, emission))(keys)
    log_correction = jax.vmap(
        lambda x: log_initial_fn(x) - log_proposal_fn(x, emission)
    )(particles)
    return particles, log_correction


def unless_first(time_step, current, advance: Callable):
    """Return *current* at time zero and ``advance()`` afterwards.

    The prior draws made by ``init`` are weighted by the first
    observation without being moved.
    """
    return lax.cond(time_step == 0, lambda: current, advance)


def expectations(
    test_functions: Sequence[Callable],
    log_weights: Float[Array, ' num_particles'],
    *particle_args,
) -> tuple:
    """Weighted means of each test function over the ensemble."""
    weights = jnp.exp(log_weights)
    return tuple(
        jnp.tensordot(weights, jax.vmap(h)(*particle_args), axes=1)
        for h in test_functions
    )


def should_resample(config: FilterConfig, current_ess: Scalar):
    """Resampling decision for the configured threshold."""
    if config.always_resample:
        return jnp.array(True)
    return current_ess < config.resampling_threshold * config.num_particles


def draw_ancestors(
    key: PRNGKeyT,
    config: FilterConfig,
    log_weights: Float[Array, ' num_particles'],
    locations: Float[Array, 'num_particles ...'],
    do_resample,
) -> Int[Array, ' num_particles']:
    """Resampled ancestor indices, or the identity if not resampling."""
    n = config.num_particles

    def _resample():
        weights = jnp.exp(log_weights)
        return resample(config.resampling_fn, key, weights, n, locations)

    def _keep():
        return jnp.arange(n, dtype=jnp.int32)

    return lax.cond(do_resample, _resample, _keep)


def gather(ensemble, ancestors: Int[Array, ' num_particles']):
    """Copy whole particles (every leaf of *ensemble*) by ancestor."""
    return jax.tree_util.tree_map(lambda x: x[ancestors], ensemble)


def resample_if_needed(
    key: PRNGKeyT,
    config: FilterConfig,
    ensemble,
    locations: Float[Array, 'num_particles ...'],
    log_weights: Float[Array, ' num_particles'],
    log_increment: Scalar,
    step_expectations: tuple = (),
):
    """Compute the ESS and resample the ensemble when it is too low.

    Args:
        key: PRNG key for the resampling draw.
        config: Filter configuration.
        ensemble: PyTree whose leaves have a leading particle axis;
            every leaf is gathered with the same ancestor indices.
        locations: Particle positions handed to location-aware
            resamplers.
        log_weights: Normalized log weights.
        log_increment: Log-likelihood increment of this step.
        step_expectations: Test-function expectations of this step.

    Returns:
        ``(ensemble, log_weights, info)`` after resampling.
    """
    n = config.num_particles
    current_ess = ess(log_weights)
    do_resample = should_resample(config, current_ess)
    ancestors = draw_ancestors(
        key, config, log_weights, locations, do_resample
    )
    ensemble = gather(ensemble, ancestors)
    log_weights = jnp.where(do_resample, uniform_log_weights(n), log_weights)
    info = StepInfo(
        ess=current_ess,
        resampled=do_resample,
        ancestors=ancestors,
        log_likelihood_increment=log_increment,
        expectations=step_expectations,
    )
    return ensemble, log_weights, info


def scan_steps(kernel: Callable, state, key: PRNGKeyT, emissions, *extras):
    """Run *kernel* over every observation with ``lax.scan``.

    Args:
        kernel: ``(key, state, emission, *extra) -> (state, info,
            filtered)``.
        state: Initial filter state.
        key: PRNG key, split once per step.
        emissions: Observations with a leading time axis.
        *extras: Per-step inputs with a leading time axis (or ``None``).

    Returns:
        ``(final_state, filtered, infos)`` with the last two stacked over
        time.
    """
    num_timesteps = jax.tree_util.tree_leaves(emissions)[0].shape[0]
    keys = jr.split(key, num_timesteps)

    def _step(carry, inputs):
        step_key, emission, *rest = inputs
        new_state, info, filtered = kernel(step_key, carry, emission, *rest)
        return new_state, (filtered, info)

    final_state, (filtered, infos) = lax.scan(
        _step, state, (keys, emissions, *extras)
    )
    return final_state, filtered, infos


def check_increment(log_increment: Scalar, time_step: int) -> None:
    """Raise if a step's log-likelihood increment is not finite.

    Raises:
        FilterCollapseError: Every particle has zero weight.
        FilterDegenerateError: The increment is NaN or ``+inf``.
    """
    value = float(log_increment)
    if value == -math.inf:
        raise FilterCollapseError(
            'all particles have zero weight', time_step
        )
    if not math.isfinite(value):
        raise FilterDegenerateError(
            f'log-likelihood increment is {value}', time_step
        )


def build_posterior(final_state, filtered, infos) -> ParticleFilterPosterior:
    """Assemble the batch output of a bootstrap/APF/SISR run."""
    return ParticleFilterPosterior(
        marginal_loglik=final_state.log_marginal_likelihood,
        filtered_particles=filtered.particles,
        filtered_log_weights=filtered.log_weights,
        ancestors=infos.ancestors,
        ess=infos.ess,
        log_evidence_increments=infos.log_likelihood_increment,
        resampled=infos.resampled,
        expectations=infos.expectations,
    )
