# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Importance weights, kept in log space.

Every filter stores normalized log weights, so the normalizer returned
by :func:`log_normalize` after a reweighting is exactly the log evidence
increment of that step.
"""

import math

import jax.numpy as jnp
from jax.scipy.special import logsumexp
from jaxtyping import Array, Float

from smcfilters.types import Scalar


def log_normalize(
    log_weights: Float[Array, ' num_particles'],
) -> tuple[Float[Array, ' num_particles'], Scalar]:
    """Split log weights into normalized weights and their log total.

    A collapsed ensemble (all weights ``-inf``) yields a ``-inf`` total
    and NaN weights.  Nothing is raised here; the filters inspect the
    total on the host.

    Returns:
        ``(log_normalized, log_total)`` with
        ``logsumexp(log_normalized) == 0``.
    """
    log_total = logsumexp(log_weights)
    return log_weights - log_total, log_total


def normalize(
    log_weights: Float[Array, ' num_particles'],
) -> Float[Array, ' num_particles']:
    """Probabilities proportional to ``exp(log_weights)``."""
    log_normalized, _ = log_normalize(log_weights)
    return jnp.exp(log_normalized)


def uniform_log_weights(num_particles: int) -> Float[Array, ' num_particles']:
    """Log weights of a uniformly weighted ensemble, ``-log N`` each."""
    return jnp.full((num_particles,), -math.log(num_particles))
