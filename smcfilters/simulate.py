# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Forward simulation from a state-space model.

Generates a single trajectory of latent states and observed emissions
by drawing from the initial, transition, and emission distributions
sequentially.  Uses the same :class:`~smcfilters.model.StateSpaceModel`
as the particle filters so that model definitions are reusable.

The implementation uses :func:`jax.lax.scan` so the full time-loop is
compiled into a single XLA program.
"""

from typing import Optional

import jax
import jax.numpy as jnp
import jax.random as jr
from jax import lax
from jaxtyping import Array, Float

from smcfilters.model import StateSpaceModel, with_covariate
from smcfilters.types import PRNGKeyT


def simulate(
    key: PRNGKeyT,
    model: StateSpaceModel,
    num_timesteps: int,
    covariates: Optional[Array] = None,
) -> tuple[
    Float[Array, 'ntime state_dim'],
    Float[Array, 'ntime emission_dim'],
]:
    r"""Simulate a single trajectory from a state-space model.

    Args:
        key: JAX PRNG key.
        model: Model providing ``initial_sampler``,
            ``transition_sampler`` and ``emission_sampler``.  The
            initial state is the single draw
            ``initial_sampler(key, 1)[0]``.
        num_timesteps: Number of time steps :math:`T` to simulate.
        covariates: Optional per-step covariates with leading dimension
            :math:`T`, appended to the transition and emission calls
            the way the covariate filters append them.

    Returns:
        A tuple ``(states, emissions)`` where *states* has shape
        ``(T, state_dim)`` and *emissions* has shape
        ``(T, emission_dim)``.

    Raises:
        ConfigurationError: If the model lacks one of the samplers.
    """
    model.require('initial_sampler', 'transition_sampler', 'emission_sampler')
    k_init, k_rest = jr.split(key)
    first_covariate = (
        None
        if covariates is None
        else jax.tree_util.tree_map(lambda c: c[0], covariates)
    )

    # --- t = 0 --------------------------------------------------------------
    k_z0, k_y0 = jr.split(k_init)
    z_0 = model.initial_sampler(k_z0, 1)[0]
    y_0 = with_covariate(model.emission_sampler, first_covariate)(k_y0, z_0)

    # --- Scan body for t = 1, ..., T-1 --------------------------------------
    def _step(z_prev, inputs):
        step_key, covariate = inputs
        k_z, k_y = jr.split(step_key)
        z_t = with_covariate(model.transition_sampler, covariate)(k_z, z_prev)
        y_t = with_covariate(model.emission_sampler, covariate)(k_y, z_t)
        return z_t, (z_t, y_t)

    step_keys = jr.split(k_rest, num_timesteps - 1)
    rest_covariates = (
        None
        if covariates is None
        else jax.tree_util.tree_map(lambda c: c[1:], covariates)
    )
    _, (states_rest, emissions_rest) = lax.scan(
        _step, z_0, (step_keys, rest_covariates)
    )

    def _prepend(first: Array, rest: Array) -> Array:
        return jnp.concatenate([jnp.expand_dims(first, 0), rest], axis=0)

    return _prepend(z_0, states_rest), _prepend(y_0, emissions_rest)
