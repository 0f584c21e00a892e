# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Diagnostic utilities for particle filter output.

Summaries of a single weighted ensemble:

- :func:`filter_mean`: weighted mean of the particles
- :func:`filter_covariance`: weighted covariance of the particles

Posterior summaries over a whole run:

- :func:`weighted_mean`: weighted posterior mean at each time step
- :func:`weighted_variance`: weighted posterior variance
- :func:`weighted_quantile`: weighted quantiles for credible
  intervals

Computational faithfulness:

- :func:`particle_diversity`: fraction of unique ancestors per step
- :func:`log_ml_increments`: per-step evidence contributions

Model comparison:

- :func:`log_bayes_factor`: log Bayes factor between two models
- :func:`replicated_log_ml`: Monte Carlo variability of log-ML

The run-level functions accept a
:class:`~smcfilters.containers.ParticleFilterPosterior` or an
:class:`~smcfilters.containers.RBPFPosterior` (whose particles are the
sampled sub-states).  All functions are pure and JIT-compatible.
"""

from collections.abc import Callable
from typing import Union

import jax.numpy as jnp
import jax.random as jr
from jax import vmap
from jaxtyping import Array, Float, Int

from smcfilters.containers import ParticleFilterPosterior, RBPFPosterior
from smcfilters.types import PRNGKeyT, Scalar
from smcfilters.weights import normalize

Posterior = Union[ParticleFilterPosterior, RBPFPosterior]


def filter_mean(
    particles: Float[Array, 'num_particles state_dim'],
    log_weights: Float[Array, ' num_particles'],
) -> Float[Array, ' state_dim']:
    r"""Weighted mean :math:`\sum_i w_i x_i` of one ensemble."""
    return jnp.tensordot(normalize(log_weights), particles, axes=1)


def filter_covariance(
    particles: Float[Array, 'num_particles state_dim'],
    log_weights: Float[Array, ' num_particles'],
) -> Float[Array, 'state_dim state_dim']:
    r"""Weighted covariance of one ensemble.

    .. math::

        \Sigma = \sum_i w_i (x_i - \mu)(x_i - \mu)^T

    No small-sample correction is applied, so a single distinct
    particle gives a zero matrix.
    """
    weights = normalize(log_weights)
    deviations = particles - jnp.tensordot(weights, particles, axes=1)
    return jnp.einsum('n,ni,nj->ij', weights, deviations, deviations)


def weighted_mean(
    posterior: Posterior,
) -> Float[Array, 'ntime state_dim']:
    r"""Compute the weighted mean of particles at each time step.

    Args:
        posterior: Particle filter posterior output.

    Returns:
        Weighted means, shape ``(ntime, state_dim)``.
    """
    # weights: (ntime, num_particles)
    weights = vmap(normalize)(posterior.filtered_log_weights)
    # particles: (ntime, num_particles, state_dim)
    return jnp.einsum('tn,tnd->td', weights, posterior.filtered_particles)


def weighted_variance(
    posterior: Posterior,
) -> Float[Array, 'ntime state_dim']:
    r"""Compute the weighted variance of particles at each time step.

    Uses the formula :math:`V = \sum_i w_i (x_i - \mu)^2` where
    :math:`\mu` is the weighted mean.

    Args:
        posterior: Particle filter posterior output.

    Returns:
        Weighted variances, shape ``(ntime, state_dim)``.
    """
    weights = vmap(normalize)(posterior.filtered_log_weights)
    means = weighted_mean(posterior)
    deviations = posterior.filtered_particles - means[:, None, :]
    return jnp.einsum('tn,tnd->td', weights, deviations**2)


def weighted_quantile(
    posterior: Posterior,
    q: Float[Array, ' num_quantiles'],
) -> Float[Array, 'ntime num_quantiles state_dim']:
    r"""Compute weighted quantiles of particles at each time step.

    Particles are sorted per coordinate and the quantile levels are
    interpolated against the cumulative weights.

    Args:
        posterior: Particle filter posterior output.
        q: Quantile levels in [0, 1], e.g. ``jnp.array([0.025, 0.975])``
            for a 95% credible interval.

    Returns:
        Weighted quantiles, shape ``(ntime, num_quantiles, state_dim)``.
    """
    weights = vmap(normalize)(posterior.filtered_log_weights)

    def _one_coordinate(
        p: Float[Array, ' num_particles'],
        w: Float[Array, ' num_particles'],
    ) -> Float[Array, ' num_quantiles']:
        order = jnp.argsort(p)
        return jnp.interp(q, jnp.cumsum(w[order]), p[order])

    def _one_time(
        particles_t: Float[Array, 'num_particles state_dim'],
        weights_t: Float[Array, ' num_particles'],
    ) -> Float[Array, 'num_quantiles state_dim']:
        return vmap(_one_coordinate, in_axes=(1, None))(
            particles_t, weights_t
        ).T

    return vmap(_one_time)(posterior.filtered_particles, weights)


def log_ml_increments(posterior: Posterior) -> Float[Array, ' ntime']:
    r"""Extract per-step log marginal likelihood increments.

    .. math::

        \log p(y_{1:T}) = \sum_{t=1}^T
            \log p(y_t \mid y_{1:t-1})

    The increments show which observations are hardest for the model;
    they sum to ``posterior.marginal_loglik``.
    """
    return posterior.log_evidence_increments


def particle_diversity(posterior: Posterior) -> Float[Array, ' ntime']:
    r"""Compute the fraction of distinct ancestors at each time step.

    A value near 1 means most particles survived resampling, while a
    value near 0 means heavy duplication.  Steps without resampling
    have the identity as ancestors and score exactly 1.

    Counts the sorted indices that differ from their predecessor
    instead of calling ``jnp.unique``, for JIT compatibility.

    Returns:
        Diversity fraction in [0, 1] at each time step,
        shape ``(ntime,)``.
    """
    ancestors = posterior.ancestors
    num_particles = ancestors.shape[1]

    def _diversity_one_step(
        anc: Int[Array, ' num_particles'],
    ) -> Float[Array, '']:
        sorted_anc = jnp.sort(anc)
        is_new = jnp.concatenate(
            [jnp.array([True]), sorted_anc[1:] != sorted_anc[:-1]]
        )
        return jnp.sum(is_new) / num_particles

    return vmap(_diversity_one_step)(ancestors)


def log_bayes_factor(log_ml_1: Scalar, log_ml_2: Scalar) -> Scalar:
    r"""Compute the log Bayes factor between two models.

    .. math::

        \log BF_{12} = \log p(y_{1:T} \mid M_1)
                     - \log p(y_{1:T} \mid M_2)

    Positive values favour model 1; negative values favour model 2.
    """
    return jnp.asarray(log_ml_1) - jnp.asarray(log_ml_2)


def replicated_log_ml(
    key: PRNGKeyT,
    filter_fn: Callable[[PRNGKeyT], Scalar],
    num_replicates: int,
) -> Float[Array, ' num_replicates']:
    r"""Run a particle filter multiple times to assess log-ML variability.

    Uses :func:`jax.vmap` over PRNG keys.  The filter run inside
    *filter_fn* must be traceable, i.e. called with
    ``check_finite=False``.

    Args:
        key: JAX PRNG key.
        filter_fn: Function ``(key) -> scalar`` that runs a particle
            filter and returns the marginal log-likelihood.
        num_replicates: Number of independent filter runs.

    Returns:
        Array of log-ML estimates, shape ``(num_replicates,)``.
    """
    keys = jr.split(key, num_replicates)
    return jnp.asarray(vmap(filter_fn)(keys))
