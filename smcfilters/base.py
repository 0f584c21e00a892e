# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Driver shared by the particle filters.

Subclasses implement ``_step(key, state, emission, *extra)``, a pure
function returning ``(new_state, info, filtered)`` where *filtered* is
the reweighted ensemble before resampling.  This class JIT-compiles it,
runs it online (:meth:`ParticleFilter.step`) or over a whole sequence
(:meth:`ParticleFilter.filter`), and raises on non-finite results.
"""

from collections.abc import Callable, Sequence
from typing import Optional

import jax
import jax.numpy as jnp
import jax.random as jr
from jaxtyping import Array, Float

from smcfilters.config import FilterConfig
from smcfilters.containers import (
    ParticleFilterPosterior,
    ParticleState,
    StepInfo,
)
from smcfilters.exceptions import ConfigurationError
from smcfilters.kernels import (
    build_posterior,
    check_increment,
    expectations,
    propagate_initial,
    resample_if_needed,
    scan_steps,
)
from smcfilters.model import StateSpaceModel, with_covariate
from smcfilters.resampling import systematic
from smcfilters.types import PRNGKeyT
from smcfilters.weights import log_normalize, uniform_log_weights


class ParticleFilter:
    r"""Base class for filters over a :class:`StateSpaceModel`.

    Args:
        model: The state-space model.
        num_particles: Number of particles :math:`N`.
        resampling_fn: Resampling algorithm matching the Blackjax
            signature ``(key, weights, num_samples) -> indices``.
            Defaults to :func:`~smcfilters.resampling.systematic`.
        resampling_threshold: Fraction of ``num_particles`` below which
            resampling is triggered (e.g. 0.5 means resample when
            ``ESS < 0.5 * N``).  ``1.0`` resamples every step.
        test_functions: Functions of a single particle whose weighted
            means are reported in :attr:`StepInfo.expectations`.

    Raises:
        ConfigurationError: If the model or configuration is invalid.
    """

    required_model_fns: tuple = ('initial_sampler', 'log_observation_fn')
    initial_proposal_sampler: Optional[Callable] = None
    log_initial_proposal_fn: Optional[Callable] = None

    def __init__(
        self,
        model: StateSpaceModel,
        num_particles: int,
        resampling_fn: Callable = systematic,
        resampling_threshold: float = 0.5,
        test_functions: Sequence[Callable] = (),
    ):
        self.model = model.require(*self.required_model_fns)
        self.config = FilterConfig(
            num_particles, resampling_fn, resampling_threshold
        ).validated()
        self.test_functions = tuple(test_functions)
        self._kernel = jax.jit(self._step)

    def __repr__(self) -> str:
        return (
            f'{type(self).__name__}(num_particles={self.num_particles}, '
            f'resampling_threshold={self.config.resampling_threshold})'
        )

    @property
    def num_particles(self) -> int:
        return self.config.num_particles

    def init(self, key: PRNGKeyT) -> ParticleState:
        """Draw the prior ensemble with uniform weights."""
        particles = self.model.initial_sampler(key, self.num_particles)
        self.model.check_particles(particles, self.num_particles)
        return ParticleState(
            particles=particles,
            log_weights=uniform_log_weights(self.num_particles),
            log_marginal_likelihood=jnp.zeros(()),
            time_step=jnp.zeros((), dtype=jnp.int32),
        )

    def step(
        self,
        key: PRNGKeyT,
        state: ParticleState,
        emission: Float[Array, ' emission_dim'],
        *extra,
    ) -> tuple[ParticleState, StepInfo]:
        """Absorb one observation.

        Args:
            key: JAX PRNG key for this step.
            state: Ensemble after the previous step (or :meth:`init`).
            emission: The new observation.
            *extra: Per-step inputs such as a covariate.

        Returns:
            The new ensemble and the step diagnostics.

        Raises:
            FilterCollapseError: If every particle gets zero weight.
            FilterDegenerateError: If the weights are not finite.
        """
        self.model.check_emission(emission)
        new_state, info, filtered = self._kernel(key, state, emission, *extra)
        self._check(info, filtered, int(state.time_step))
        return new_state, info

    def filter(
        self,
        key: PRNGKeyT,
        emissions: Float[Array, 'ntime emission_dim'],
        *extras: Optional[Array],
        check_finite: bool = True,
    ) -> ParticleFilterPosterior:
        """Run the filter over a whole observation sequence.

        Args:
            key: JAX PRNG key.
            emissions: Observed emissions, shape ``(T, D)``.
            *extras: Per-step inputs with leading dimension ``T``
                (e.g. covariates), or ``None``.
            check_finite: Raise on the first non-finite step.  Pass
                ``False`` when tracing this call under :func:`jax.jit`.

        Returns:
            :class:`~smcfilters.containers.ParticleFilterPosterior`.
        """
        init_key, key = jr.split(key)
        state = self.init(init_key)
        self.model.check_emission(emissions[0])
        final_state, filtered, infos = scan_steps(
            self._step, state, key, emissions, *extras
        )
        if check_finite:
            self._check_all(infos, filtered)
        return self._posterior(final_state, filtered, infos)

    def _check(self, info: StepInfo, filtered, time_step: int) -> None:
        check_increment(info.log_likelihood_increment, time_step)

    def _check_all(self, infos: StepInfo, filtered) -> None:
        """Run :meth:`_check` on the first non-finite step of a batch run."""
        bad = ~jnp.isfinite(infos.log_likelihood_increment)
        if bool(jnp.any(bad)):
            t = int(jnp.argmax(bad))
            at_t = jax.tree_util.tree_map(lambda x: x[t], (infos, filtered))
            self._check(*at_t, t)

    def _posterior(self, final_state, filtered, infos):
        return build_posterior(final_state, filtered, infos)

    def _step(self, key, state, emission, *extra):
        raise NotImplementedError

    def _set_initial_proposal(
        self,
        sampler: Optional[Callable],
        log_density: Optional[Callable],
    ) -> None:
        """Use ``q(x_1 | y_1)`` in place of the prior at the first step.

        Args:
            sampler: Function ``(key, emission) -> state``, or ``None``
                to weight the prior draws of :meth:`init` directly.
            log_density: Function ``(state, emission) -> log_prob``.

        Raises:
            ConfigurationError: If only one of the two is given, or the
                model lacks ``log_initial_fn``.
        """
        if (sampler is None) != (log_density is None):
            raise ConfigurationError(
                'pass an initial proposal together with '
                'log_initial_proposal_fn, or neither'
            )
        if sampler is not None:
            self.model.require('log_initial_fn')
        self.initial_proposal_sampler = sampler
        self.log_initial_proposal_fn = log_density

    def _initial_draws(self, key, particles, emission, covariate=None):
        r"""Particles weighted by the first observation.

        Returns the prior draws of :meth:`init` with a zero correction,
        or fresh draws from the initial proposal with the correction
        :math:`\log p_0(x) - \log q(x \mid y_1)`.
        """
        if self.initial_proposal_sampler is None:
            return particles, jnp.zeros(
                self.num_particles, jnp.result_type(float)
            )
        return propagate_initial(
            key,
            with_covariate(self.initial_proposal_sampler, covariate),
            with_covariate(self.log_initial_proposal_fn, covariate),
            self.model.log_initial_fn,
            emission,
            self.num_particles,
        )

    def _reweight(self, key, state, particles, log_increments):
        """Add *log_increments* to the weights, then resample if needed.

        Returns ``(new_state, info, filtered)`` as expected of
        ``_step``.
        """
        # Stored weights are normalized, so the normalizer is the
        # evidence increment.
        log_weights, log_increment = log_normalize(
            state.log_weights + log_increments
        )
        filtered = ParticleState(
            particles=particles,
            log_weights=log_weights,
            log_marginal_likelihood=(
                state.log_marginal_likelihood + log_increment
            ),
            time_step=state.time_step + 1,
        )
        step_expectations = expectations(
            self.test_functions, log_weights, particles
        )
        particles, log_weights, info = resample_if_needed(
            key,
            self.config,
            particles,
            particles,
            log_weights,
            log_increment,
            step_expectations,
        )
        new_state = filtered._replace(
            particles=particles, log_weights=log_weights
        )
        return new_state, info, filtered
