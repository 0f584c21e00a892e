# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""SISR driven by common random numbers (CRN).

Instead of consuming a PRNG key, every random quantity of the filter is
a deterministic function of caller-supplied standard normals: particles
are moved by ``proposal_map(noise, state, emission)`` and the resampling
offset is the normal CDF of a single normal draw per step.  Running the
filter for two parameter settings on the same noise therefore gives
strongly correlated log-likelihood estimates, which is what
finite-difference sensitivity studies and simulated-likelihood
optimizers need.

Systematic resampling is used, optionally over particles sorted along a
Hilbert curve (``hilbert_bits``) so that the estimate is also
continuous in the particle locations for multi-dimensional states.
"""

from collections.abc import Callable, Sequence
from typing import Optional

import jax
import jax.numpy as jnp
from jax import lax
from jaxtyping import Array, Float

from smcfilters.base import ParticleFilter
from smcfilters.containers import (
    ParticleFilterPosterior,
    ParticleState,
    StepInfo,
)
from smcfilters.ess import ess
from smcfilters.kernels import (
    build_posterior,
    expectations,
    gather,
    should_resample,
)
from smcfilters.model import StateSpaceModel
from smcfilters.resampling import (
    HilbertSystematic,
    normal_to_uniform,
    systematic,
    systematic_from_uniform,
)
from smcfilters.weights import log_normalize, uniform_log_weights


class CRNFilter(ParticleFilter):
    r"""SISR particle filter with common random numbers.

    Args:
        model: Model providing ``log_transition_fn`` and
            ``log_observation_fn``.
        num_particles: Number of particles :math:`N`.
        initial_map: Function ``noise -> state`` turning one particle's
            standard normals into a prior draw.
        proposal_map: Function ``(noise, state, emission) -> state``
            turning standard normals into a proposal draw.
        log_proposal_fn: Function ``(new_state, state, emission) ->
            log_prob``.
        resampling_threshold: Fraction of ``num_particles`` below which
            resampling is triggered.
        hilbert_bits: If given, sort particles along a Hilbert curve of
            this resolution before resampling.
        test_functions: Functions whose weighted means are recorded.
        initial_proposal_map: Optional function ``(noise, emission) ->
            state`` drawing the first ensemble from
            :math:`q(x_1 \mid y_1)` with the first step's noise instead
            of using :meth:`init`'s prior draws.  Needs the model's
            ``log_initial_fn``.
        log_initial_proposal_fn: Function ``(state, emission) ->
            log_prob``.
    """

    required_model_fns = ('log_transition_fn', 'log_observation_fn')

    def __init__(
        self,
        model: StateSpaceModel,
        num_particles: int,
        initial_map: Callable,
        proposal_map: Callable,
        log_proposal_fn: Callable,
        resampling_threshold: float = 0.5,
        hilbert_bits: Optional[int] = None,
        test_functions: Sequence[Callable] = (),
        initial_proposal_map: Optional[Callable] = None,
        log_initial_proposal_fn: Optional[Callable] = None,
    ):
        self.initial_map = initial_map
        self.proposal_map = proposal_map
        self.log_proposal_fn = log_proposal_fn
        self.hilbert = (
            None if hilbert_bits is None else HilbertSystematic(hilbert_bits)
        )
        super().__init__(
            model,
            num_particles,
            resampling_fn=self.hilbert or systematic,
            resampling_threshold=resampling_threshold,
            test_functions=test_functions,
        )
        self._set_initial_proposal(
            initial_proposal_map, log_initial_proposal_fn
        )

    def init(
        self, noise: Float[Array, 'num_particles noise_dim']
    ) -> ParticleState:
        """Map the initial noise to the prior ensemble."""
        particles = jax.vmap(self.initial_map)(noise)
        self.model.check_particles(particles, self.num_particles)
        return ParticleState(
            particles=particles,
            log_weights=uniform_log_weights(self.num_particles),
            log_marginal_likelihood=jnp.zeros(()),
            time_step=jnp.zeros((), dtype=jnp.int32),
        )

    def step(
        self,
        state: ParticleState,
        emission: Float[Array, ' emission_dim'],
        noise: Float[Array, 'num_particles noise_dim'],
        resampling_noise: Float[Array, ''],
    ) -> tuple[ParticleState, StepInfo]:
        """Absorb one observation using the given normals.

        At the first step ``noise`` is only used by an initial proposal
        map; otherwise the particles come from :meth:`init`.
        """
        self.model.check_emission(emission)
        new_state, info, filtered = self._kernel(
            noise, state, emission, resampling_noise
        )
        self._check(info, filtered, int(state.time_step))
        return new_state, info

    def filter(
        self,
        emissions: Float[Array, 'ntime emission_dim'],
        initial_noise: Float[Array, 'num_particles noise_dim'],
        noises: Float[Array, 'ntime num_particles noise_dim'],
        resampling_noises: Float[Array, ' ntime'],
        check_finite: bool = True,
    ) -> ParticleFilterPosterior:
        """Run the filter over a whole sequence of observations."""
        state = self.init(initial_noise)
        self.model.check_emission(emissions[0])

        def _body(carry, inputs):
            noise, emission, resampling_noise = inputs
            new_state, info, filtered = self._step(
                noise, carry, emission, resampling_noise
            )
            return new_state, (filtered, info)

        final_state, (filtered, infos) = lax.scan(
            _body, state, (noises, emissions, resampling_noises)
        )
        if check_finite:
            self._check_all(infos, filtered)
        return build_posterior(final_state, filtered, infos)

    def _first_draws(self, noise, state, emission):
        """Prior draws, or the initial proposal map applied to *noise*."""
        if self.initial_proposal_sampler is None:
            return state.particles, jnp.zeros_like(state.log_weights)
        proposal_map = self.initial_proposal_sampler
        particles = jax.vmap(lambda e: proposal_map(e, emission))(noise)
        log_correction = jax.vmap(
            lambda x: self.model.log_initial_fn(x)
            - self.log_initial_proposal_fn(x, emission)
        )(particles)
        return particles, log_correction

    def _step(self, noise, state, emission, resampling_noise):
        model = self.model

        def _move():
            new = jax.vmap(lambda e, x: self.proposal_map(e, x, emission))(
                noise, state.particles
            )
            log_correction = jax.vmap(
                lambda x1, x0: model.log_transition_fn(x1, x0)
                - self.log_proposal_fn(x1, x0, emission)
            )(new, state.particles)
            return new, log_correction

        particles, log_correction = lax.cond(
            state.time_step == 0,
            lambda: self._first_draws(noise, state, emission),
            _move,
        )
        log_obs = jax.vmap(lambda z: model.log_observation_fn(emission, z))(
            particles
        )
        log_weights, log_increment = log_normalize(
            state.log_weights + log_obs + log_correction
        )
        filtered = ParticleState(
            particles=particles,
            log_weights=log_weights,
            log_marginal_likelihood=(
                state.log_marginal_likelihood + log_increment
            ),
            time_step=state.time_step + 1,
        )

        current_ess = ess(log_weights)
        do_resample = should_resample(self.config, current_ess)
        u = normal_to_uniform(resampling_noise)
        weights = jnp.exp(log_weights)
        n = self.num_particles

        def _resample():
            if self.hilbert is None:
                return systematic_from_uniform(u, weights, n)
            return self.hilbert.from_uniform(u, weights, n, particles)

        ancestors = lax.cond(
            do_resample, _resample, lambda: jnp.arange(n, dtype=jnp.int32)
        )
        new_state = filtered._replace(
            particles=gather(particles, ancestors),
            log_weights=jnp.where(
                do_resample, uniform_log_weights(n), log_weights
            ),
        )
        info = StepInfo(
            ess=current_ess,
            resampled=do_resample,
            ancestors=ancestors,
            log_likelihood_increment=log_increment,
            expectations=expectations(
                self.test_functions, log_weights, particles
            ),
        )
        return new_state, info, filtered


def crn_filter(
    model: StateSpaceModel,
    emissions: Float[Array, 'ntime emission_dim'],
    initial_noise: Float[Array, 'num_particles noise_dim'],
    noises: Float[Array, 'ntime num_particles noise_dim'],
    resampling_noises: Float[Array, ' ntime'],
    initial_map: Callable,
    proposal_map: Callable,
    log_proposal_fn: Callable,
    resampling_threshold: float = 0.5,
    hilbert_bits: Optional[int] = None,
    test_functions: Sequence[Callable] = (),
    check_finite: bool = True,
    initial_proposal_map: Optional[Callable] = None,
    log_initial_proposal_fn: Optional[Callable] = None,
) -> ParticleFilterPosterior:
    """Run a :class:`CRNFilter`; the ensemble size is ``initial_noise``'s."""
    pf = CRNFilter(
        model,
        initial_noise.shape[0],
        initial_map,
        proposal_map,
        log_proposal_fn,
        resampling_threshold=resampling_threshold,
        hilbert_bits=hilbert_bits,
        test_functions=test_functions,
        initial_proposal_map=initial_proposal_map,
        log_initial_proposal_fn=log_initial_proposal_fn,
    )
    return pf.filter(
        emissions,
        initial_noise,
        noises,
        resampling_noises,
        check_finite=check_finite,
    )
