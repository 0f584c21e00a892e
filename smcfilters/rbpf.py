# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Rao-Blackwellized particle filters (RBPF).

The state splits into a *sampled* sub-state :math:`x_t`, handled by
particles, and an *analytic* sub-state :math:`z_t` whose posterior
given :math:`x_{1:t}` is available in closed form.  Every particle
carries its sampled sub-state and the closed-form belief over
:math:`z_t`, held by a sub-filter
(:class:`~smcfilters.kalman.KalmanSubFilter` or
:class:`~smcfilters.hmm.HMMSubFilter`).

At each step after the first the sampled sub-state is moved, the
sub-filter predicts and updates conditioned on the *new* sampled
sub-state, and the weight is multiplied by the sub-filter's
observation likelihood :math:`p(y_t \mid x_{1:t}, y_{1:t-1})`, which
already integrates out :math:`z_t`.  Resampling copies the sampled
sub-state together with the whole belief of the chosen ancestor.

Two proposal styles are provided:

- :class:`BootstrapRBPF` moves :math:`x_t` with the model's
  ``transition_sampler``.
- :class:`SISRRBPF` moves it with a user proposal :math:`q` and adds
  :math:`\log f(x_t \mid x_{t-1}) - \log q(x_t \mid x_{t-1}, y_t)` to
  the weight.

Test functions of an RBPF take ``(sampled_state, analytic_state)``.
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
from smcfilters.containers import RBParticleState, RBPFPosterior, StepInfo
from smcfilters.exceptions import ConfigurationError
from smcfilters.kernels import (
    check_increment,
    expectations,
    propagate,
    resample_if_needed,
)
from smcfilters.model import StateSpaceModel
from smcfilters.resampling import systematic
from smcfilters.types import PRNGKeyT
from smcfilters.weights import log_normalize, normalize, uniform_log_weights


class RaoBlackwellizedFilter(ParticleFilter):
    r"""Base class of the Rao-Blackwellized filters.

    Subclasses implement ``_propose(key, sampled, emission)`` returning
    the moved sampled sub-states and a per-particle log-weight
    correction.

    Args:
        model: Model whose ``initial_sampler`` draws the sampled
            sub-states.  ``log_observation_fn`` is not used; the
            observation enters through the sub-filter.
        sub_filter: Closed-form sub-filter conditioned on the sampled
            sub-state.
        num_particles: Number of particles :math:`N`.
        resampling_fn: Resampling algorithm.
        resampling_threshold: Fraction of ``num_particles`` below which
            resampling is triggered.
        test_functions: Functions ``(sampled, analytic) -> value`` whose
            weighted means are recorded.
        initial_proposal_sampler: Optional function ``(key, emission)
            -> sampled_state`` drawing the first sampled sub-states
            instead of the prior; needs the model's ``log_initial_fn``.
        log_initial_proposal_fn: Function ``(sampled_state, emission)
            -> log_prob``.
    """

    required_model_fns = ('initial_sampler',)

    def __init__(
        self,
        model: StateSpaceModel,
        sub_filter,
        num_particles: int,
        resampling_fn: Callable = systematic,
        resampling_threshold: float = 0.5,
        test_functions: Sequence[Callable] = (),
        initial_proposal_sampler: Optional[Callable] = None,
        log_initial_proposal_fn: Optional[Callable] = None,
    ):
        self.sub_filter = sub_filter
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

    def init(self, key: PRNGKeyT) -> RBParticleState:
        """Draw the sampled sub-states and start every sub-filter."""
        sampled = self.model.initial_sampler(key, self.num_particles)
        self.model.check_particles(sampled, self.num_particles)
        self.sub_filter.validate(sampled[0])
        return RBParticleState(
            sampled=sampled,
            analytic=jax.vmap(self.sub_filter.init)(sampled),
            log_weights=uniform_log_weights(self.num_particles),
            log_marginal_likelihood=jnp.zeros(()),
            time_step=jnp.zeros((), dtype=jnp.int32),
        )

    def analytic_mean(self, state: RBParticleState) -> Array:
        """Weighted mean of the sub-filters' point estimates.

        For a Kalman sub-filter this is the filtered mean of the
        analytic sub-state; for an HMM sub-filter it is the filtered
        distribution over the discrete states.
        """
        estimates = jax.vmap(self.sub_filter.point_estimate)(state.analytic)
        return jnp.tensordot(normalize(state.log_weights), estimates, axes=1)

    def analytic_means(self, posterior: RBPFPosterior) -> Array:
        """:meth:`analytic_mean` at every step of a batch run."""

        def _one_time(analytic, log_weights):
            estimates = jax.vmap(self.sub_filter.point_estimate)(analytic)
            return jnp.tensordot(normalize(log_weights), estimates, axes=1)

        return jax.vmap(_one_time)(
            posterior.filtered_analytic, posterior.filtered_log_weights
        )

    def _propose(self, key, sampled, emission):
        raise NotImplementedError

    def _step(self, key, state, emission):
        k_prop, k_res = jr.split(key)
        sub = self.sub_filter

        first = state.time_step == 0

        sampled, log_correction = lax.cond(
            first,
            lambda: self._initial_draws(k_prop, state.sampled, emission),
            lambda: self._propose(k_prop, state.sampled, emission),
        )
        # Redrawn first sub-states start fresh sub-filters
        analytic = lax.cond(
            first,
            lambda: jax.vmap(sub.init)(sampled),
            lambda: jax.vmap(sub.predict)(state.analytic, sampled),
        )
        analytic = jax.vmap(lambda a, x: sub.update(a, x, emission))(
            analytic, sampled
        )

        log_weights, log_increment = log_normalize(
            state.log_weights + analytic.log_likelihood + log_correction
        )
        filtered = RBParticleState(
            sampled=sampled,
            analytic=analytic,
            log_weights=log_weights,
            log_marginal_likelihood=(
                state.log_marginal_likelihood + log_increment
            ),
            time_step=state.time_step + 1,
        )
        step_expectations = expectations(
            self.test_functions, log_weights, sampled, analytic
        )
        (sampled, analytic), log_weights, info = resample_if_needed(
            k_res,
            self.config,
            (sampled, analytic),
            sampled,
            log_weights,
            log_increment,
            step_expectations,
        )
        new_state = filtered._replace(
            sampled=sampled, analytic=analytic, log_weights=log_weights
        )
        return new_state, info, filtered

    def _check(
        self, info: StepInfo, filtered: RBParticleState, time_step: int
    ) -> None:
        # Sub-filter errors take precedence over the generic ones.
        if not math.isfinite(float(info.log_likelihood_increment)):
            self.sub_filter.diagnose(filtered.analytic, time_step)
        check_increment(info.log_likelihood_increment, time_step)

    def _posterior(self, final_state, filtered, infos) -> RBPFPosterior:
        return RBPFPosterior(
            marginal_loglik=final_state.log_marginal_likelihood,
            filtered_particles=filtered.sampled,
            filtered_log_weights=filtered.log_weights,
            ancestors=infos.ancestors,
            ess=infos.ess,
            log_evidence_increments=infos.log_likelihood_increment,
            resampled=infos.resampled,
            filtered_analytic=filtered.analytic,
            expectations=infos.expectations,
        )


class BootstrapRBPF(RaoBlackwellizedFilter):
    """RBPF moving the sampled sub-state with its transition."""

    required_model_fns = ('initial_sampler', 'transition_sampler')

    def _propose(self, key, sampled, emission):
        moved = propagate(key, self.model.transition_sampler, sampled)
        return moved, jnp.zeros(sampled.shape[0], jnp.result_type(float))


class SISRRBPF(RaoBlackwellizedFilter):
    r"""RBPF moving the sampled sub-state with an importance proposal.

    Args:
        model: Model providing ``initial_sampler`` and
            ``log_transition_fn`` for the sampled sub-state.
        sub_filter: Closed-form sub-filter.
        num_particles: Number of particles :math:`N`.
        proposal_sampler: Function ``(key, state, emission) -> state``.
        log_proposal_fn: Function ``(new_state, state, emission) ->
            log_prob``.
        resampling_fn: Resampling algorithm.
        resampling_threshold: Fraction of ``num_particles`` below which
            resampling is triggered.
        test_functions: Functions ``(sampled, analytic) -> value``.
        initial_proposal_sampler: See :class:`RaoBlackwellizedFilter`.
        log_initial_proposal_fn: See :class:`RaoBlackwellizedFilter`.
    """

    required_model_fns = ('initial_sampler', 'log_transition_fn')

    def __init__(
        self,
        model: StateSpaceModel,
        sub_filter,
        num_particles: int,
        proposal_sampler: Callable,
        log_proposal_fn: Callable,
        resampling_fn: Callable = systematic,
        resampling_threshold: float = 0.5,
        test_functions: Sequence[Callable] = (),
        initial_proposal_sampler: Optional[Callable] = None,
        log_initial_proposal_fn: Optional[Callable] = None,
    ):
        self.proposal_sampler = proposal_sampler
        self.log_proposal_fn = log_proposal_fn
        super().__init__(
            model,
            sub_filter,
            num_particles,
            resampling_fn=resampling_fn,
            resampling_threshold=resampling_threshold,
            test_functions=test_functions,
            initial_proposal_sampler=initial_proposal_sampler,
            log_initial_proposal_fn=log_initial_proposal_fn,
        )

    def _propose(self, key, sampled, emission):
        moved = propagate(key, self.proposal_sampler, sampled, emission)
        log_correction = jax.vmap(
            lambda x1, x0: self.model.log_transition_fn(x1, x0)
            - self.log_proposal_fn(x1, x0, emission)
        )(moved, sampled)
        return moved, log_correction


def rbpf_filter(
    key: PRNGKeyT,
    model: StateSpaceModel,
    sub_filter,
    emissions: Float[Array, 'ntime emission_dim'],
    num_particles: int,
    proposal_sampler: Optional[Callable] = None,
    log_proposal_fn: Optional[Callable] = None,
    resampling_fn: Callable = systematic,
    resampling_threshold: float = 0.5,
    test_functions: Sequence[Callable] = (),
    check_finite: bool = True,
    initial_proposal_sampler: Optional[Callable] = None,
    log_initial_proposal_fn: Optional[Callable] = None,
) -> RBPFPosterior:
    """Run a Rao-Blackwellized particle filter.

    Uses :class:`SISRRBPF` when a proposal is given and
    :class:`BootstrapRBPF` otherwise.

    Raises:
        ConfigurationError: If only one of ``proposal_sampler`` and
            ``log_proposal_fn`` is given.
    """
    if (proposal_sampler is None) != (log_proposal_fn is None):
        raise ConfigurationError(
            'pass both proposal_sampler and log_proposal_fn, or neither'
        )
    options = dict(
        resampling_fn=resampling_fn,
        resampling_threshold=resampling_threshold,
        test_functions=test_functions,
        initial_proposal_sampler=initial_proposal_sampler,
        log_initial_proposal_fn=log_initial_proposal_fn,
    )
    if proposal_sampler is None:
        pf = BootstrapRBPF(model, sub_filter, num_particles, **options)
    else:
        pf = SISRRBPF(
            model,
            sub_filter,
            num_particles,
            proposal_sampler,
            log_proposal_fn,
            **options,
        )
    return pf.filter(key, emissions, check_finite=check_finite)
