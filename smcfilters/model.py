# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""The state-space model interface consumed by the filters."""

from typing import Callable, NamedTuple, Optional

import jax.numpy as jnp

from smcfilters.exceptions import ConfigurationError


class StateSpaceModel(NamedTuple):
    """User-supplied model callables.

    Single-particle functions are ``jax.vmap``-ed by the filters.  When
    a filter is run with covariates, the covariate of the current step
    is appended as a trailing argument to every callable except
    ``initial_sampler`` and ``log_initial_fn``.

    Attributes:
        initial_sampler: ``(key, num_particles) -> particles`` drawing
            the whole ensemble from the prior.
        transition_sampler: ``(key, state) -> state``.
        log_observation_fn: ``(emission, state) -> log p(y | x)``.
        log_transition_fn: ``(new_state, old_state) -> log f(x' | x)``,
            needed by importance-proposal filters.
        emission_sampler: ``(key, state) -> emission``, used by
            :func:`smcfilters.simulate.simulate`.
        state_dim: Expected trailing dimension of the particles.
        emission_dim: Expected trailing dimension of the observations.
        log_initial_fn: ``state -> log p_0(x)``, needed when a filter
            draws its first ensemble from an initial proposal.
    """

    initial_sampler: Callable
    transition_sampler: Optional[Callable] = None
    log_observation_fn: Optional[Callable] = None
    log_transition_fn: Optional[Callable] = None
    emission_sampler: Optional[Callable] = None
    state_dim: Optional[int] = None
    emission_dim: Optional[int] = None
    log_initial_fn: Optional[Callable] = None

    def require(self, *names: str) -> 'StateSpaceModel':
        """Return ``self`` after checking the named callables are set."""
        missing = [name for name in names if getattr(self, name) is None]
        if missing:
            raise ConfigurationError(
                f'model is missing {", ".join(missing)}'
            )
        return self

    def check_particles(self, particles, num_particles: int) -> None:
        """Check a prior draw has the configured ensemble shape."""
        if particles.shape[0] != num_particles:
            raise ConfigurationError(
                f'initial_sampler returned {particles.shape[0]} particles, '
                f'expected {num_particles}'
            )
        if self.state_dim is not None and (
            particles.ndim != 2 or particles.shape[1] != self.state_dim
        ):
            raise ConfigurationError(
                f'particles have shape {particles.shape}, expected '
                f'({num_particles}, {self.state_dim})'
            )

    def check_emission(self, emission) -> None:
        """Check an observation matches ``emission_dim``."""
        if self.emission_dim is None:
            return
        shape = jnp.shape(emission)
        if shape[-1:] != (self.emission_dim,):
            raise ConfigurationError(
                f'emission has shape {shape}, expected trailing dimension '
                f'{self.emission_dim}'
            )


def with_covariate(fn: Callable, covariate) -> Callable:
    """Bind *covariate* as the trailing argument of *fn* if given."""
    if covariate is None:
        return fn

    def bound(*args):
        return fn(*args, covariate)

    return bound
