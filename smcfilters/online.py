# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Stateful wrapper for feeding observations one at a time.

The filter classes are functional: ``step`` takes and returns an
immutable state.  :class:`OnlineFilter` owns the current state and the
PRNG key, so callers can write::

    online = OnlineFilter(BootstrapFilter(model, 1000), jr.PRNGKey(0))
    for y in stream:
        info = online.step(y)
        print(online.filter_mean(), info.ess)

A step that raises leaves the state and key untouched, so the previous
ensemble stays available to the caller.
"""

import logging
import math
from typing import Optional

import jax.numpy as jnp
import jax.random as jr
from jaxtyping import Array, Float

from smcfilters.base import ParticleFilter
from smcfilters.containers import StepInfo
from smcfilters.diagnostics import filter_covariance, filter_mean
from smcfilters.exceptions import (
    ConfigurationError,
    FilterDegenerateError,
    InvariantViolationError,
)
from smcfilters.types import PRNGKeyT
from smcfilters.weights import normalize

logger = logging.getLogger(__name__)


class OnlineFilter:
    """Run a particle filter step by step.

    Args:
        algorithm: Any :class:`~smcfilters.base.ParticleFilter`.
        key: PRNG key.  Part of it draws the initial ensemble and the
            rest is split once per step.  Omit it for
            :class:`~smcfilters.crn.CRNFilter`, which takes its
            randomness as step arguments.
        initial_state: Start from this state instead of calling
            ``algorithm.init``.  Required when *key* is omitted.
        check_invariants: After every step also verify that the weights
            sum to one, that ``1 <= ESS <= N`` and that the ancestor
            indices are in range.

    Raises:
        ConfigurationError: If neither *key* nor *initial_state* is
            given.
    """

    def __init__(
        self,
        algorithm: ParticleFilter,
        key: Optional[PRNGKeyT] = None,
        initial_state=None,
        check_invariants: bool = False,
    ):
        if key is None and initial_state is None:
            raise ConfigurationError('pass a key or an initial_state')
        self.algorithm = algorithm
        self.check_invariants = check_invariants
        self._key = key
        if initial_state is None:
            init_key, self._key = jr.split(key)
            initial_state = algorithm.init(init_key)
        self._state = initial_state
        self._last_info: Optional[StepInfo] = None
        logger.info(
            'Initialized %r (check_invariants=%s)', algorithm, check_invariants
        )

    def step(
        self, emission: Float[Array, ' emission_dim'], *extra
    ) -> StepInfo:
        """Absorb one observation and return the step diagnostics.

        Args:
            emission: The new observation.
            *extra: Additional per-step arguments of the algorithm, e.g.
                a covariate, or the normals of a CRN filter.

        Raises:
            FilterDegenerateError: If the step produced invalid weights;
                the state is left as it was before the call.
        """
        time_step = self.time_step
        try:
            if self._key is None:
                new_state, info = self.algorithm.step(
                    self._state, emission, *extra
                )
                next_key = None
            else:
                step_key, next_key = jr.split(self._key)
                new_state, info = self.algorithm.step(
                    step_key, self._state, emission, *extra
                )
            if self.check_invariants:
                self._verify(new_state, info, time_step)
        except FilterDegenerateError as err:
            logger.warning('Step %d aborted: %s', time_step, err)
            raise
        self._state, self._key, self._last_info = new_state, next_key, info
        logger.debug(
            'Step %d: ess=%.1f resampled=%s increment=%.4f',
            time_step,
            float(info.ess),
            bool(info.resampled),
            float(info.log_likelihood_increment),
        )
        return info

    @property
    def state(self):
        """The current (possibly resampled) ensemble."""
        return self._state

    @property
    def time_step(self) -> int:
        return int(self._state.time_step)

    @property
    def last_info(self) -> Optional[StepInfo]:
        """Diagnostics of the most recent step, ``None`` before any."""
        return self._last_info

    @property
    def ess(self) -> float:
        """ESS of the most recent step, before resampling.

        Before the first step this is the ESS of the uniform prior
        weights, i.e. the number of particles.
        """
        if self._last_info is None:
            return float(self.algorithm.num_particles)
        return float(self._last_info.ess)

    @property
    def log_marginal_likelihood(self) -> float:
        """Running estimate of the log evidence of all observations."""
        return float(self._state.log_marginal_likelihood)

    def particle_states(self) -> Array:
        """The current particles (the sampled sub-states for an RBPF)."""
        return self._state.particles

    def particle_weights(self) -> Float[Array, ' num_particles']:
        """The current normalized weights."""
        return normalize(self._state.log_weights)

    def filter_mean(self) -> Float[Array, ' state_dim']:
        return filter_mean(self._state.particles, self._state.log_weights)

    def filter_covariance(self) -> Float[Array, 'state_dim state_dim']:
        return filter_covariance(
            self._state.particles, self._state.log_weights
        )

    def _verify(self, state, info: StepInfo, time_step: int) -> None:
        n = self.algorithm.num_particles
        total = float(jnp.sum(jnp.exp(state.log_weights)))
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise InvariantViolationError(
                f'weights sum to {total}', time_step
            )
        current_ess = float(info.ess)
        if not 1.0 - 1e-9 <= current_ess <= n + 1e-9:
            raise InvariantViolationError(
                f'ESS {current_ess} outside [1, {n}]', time_step
            )
        ancestors = info.ancestors
        if bool(jnp.any(ancestors < 0)) or bool(jnp.any(ancestors >= n)):
            raise InvariantViolationError(
                'ancestor index out of range', time_step
            )
