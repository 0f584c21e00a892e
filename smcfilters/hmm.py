# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Forward filter for discrete hidden Markov models, in log space.

The belief over ``K`` hidden states is stored as normalized log
probabilities.  ``hmm_predict`` multiplies it by the row-stochastic
transition matrix and ``hmm_update`` multiplies it element-wise by the
observation likelihoods before renormalizing.

An observation that has zero likelihood under every state with
positive belief gives ``log_likelihood == -inf``.  The belief is then
left unchanged instead of becoming NaN, and batch or particle filters
report :class:`~smcfilters.exceptions.ImpossibleObservationError`.
"""

from collections.abc import Callable
from typing import Optional

import jax
import jax.numpy as jnp
from jax import lax
from jax.scipy.special import logsumexp
from jaxtyping import Array, Float

from smcfilters.containers import HMMPosterior, HMMState
from smcfilters.exceptions import (
    ConfigurationError,
    FilterDegenerateError,
    ImpossibleObservationError,
)


def validate_hmm_params(
    initial_probs: Float[Array, ' num_states'],
    transition_matrix: Float[Array, 'num_states num_states'],
    atol: float = 1e-3,
) -> None:
    """Check shapes and that the distributions are normalized.

    Raises:
        ConfigurationError: On mismatched shapes, negative entries, or
            probabilities that do not sum to one within *atol*.
    """
    check_hmm_shapes(initial_probs, transition_matrix)
    if bool(jnp.any(initial_probs < 0)) or bool(
        jnp.any(transition_matrix < 0)
    ):
        raise ConfigurationError('probabilities must be non-negative')
    if abs(float(jnp.sum(initial_probs)) - 1.0) > atol:
        raise ConfigurationError('initial_probs must sum to one')
    row_sums = jnp.sum(transition_matrix, axis=-1)
    if bool(jnp.any(jnp.abs(row_sums - 1.0) > atol)):
        raise ConfigurationError('transition_matrix rows must sum to one')


def check_hmm_shapes(initial_probs, transition_matrix) -> None:
    """Raise :class:`ConfigurationError` unless the shapes agree."""
    k = jnp.shape(initial_probs)[-1]
    if jnp.shape(transition_matrix) != (k, k):
        raise ConfigurationError(
            f'transition_matrix has shape {jnp.shape(transition_matrix)}, '
            f'expected {(k, k)}'
        )


def hmm_init(initial_probs: Float[Array, ' num_states']) -> HMMState:
    """Belief before any observation."""
    log_probs = jnp.log(jnp.asarray(initial_probs))
    return HMMState(log_probs, jnp.zeros((), log_probs.dtype))


def hmm_predict(
    state: HMMState,
    transition_matrix: Float[Array, 'num_states num_states'],
) -> HMMState:
    r"""One-step prediction :math:`p_j = \sum_i p_i A_{ij}`."""
    log_probs = logsumexp(
        state.log_probs[:, None] + jnp.log(transition_matrix), axis=0
    )
    return state._replace(log_probs=log_probs)


def hmm_update(
    state: HMMState,
    log_likelihoods: Float[Array, ' num_states'],
) -> HMMState:
    r"""Condition the belief on one observation.

    Args:
        state: Predicted belief.
        log_likelihoods: :math:`\log p(y_t \mid z_t = k)` for every
            state ``k``.

    Returns:
        The posterior belief with ``log_likelihood`` set to
        :math:`\log p(y_t \mid y_{1:t-1})`.
    """
    joint = state.log_probs + log_likelihoods
    log_norm = logsumexp(joint)
    log_probs = jnp.where(
        jnp.isfinite(log_norm), joint - log_norm, state.log_probs
    )
    return HMMState(log_probs, log_norm)


def hmm_filter(
    initial_probs: Float[Array, ' num_states'],
    transition_matrix: Float[Array, 'num_states num_states'],
    log_likelihoods: Float[Array, 'ntime num_states'],
) -> HMMPosterior:
    """Run the forward filter over precomputed log-likelihoods.

    Matches ``dynamax.hidden_markov_model.hmm_filter``: the first
    observation updates the initial distribution directly.

    Raises:
        ConfigurationError: If the parameters are invalid.
        ImpossibleObservationError: If an observation has zero
            likelihood under the current belief.
    """
    validate_hmm_params(initial_probs, transition_matrix)

    def _step(state, args):
        t, ll_t = args
        state = lax.cond(
            t == 0,
            lambda: state,
            lambda: hmm_predict(state, transition_matrix),
        )
        state = hmm_update(state, ll_t)
        return state, state

    _, filtered = lax.scan(
        _step,
        hmm_init(initial_probs),
        (jnp.arange(log_likelihoods.shape[0]), log_likelihoods),
    )
    check_hmm_state(filtered)
    return HMMPosterior(
        marginal_loglik=jnp.sum(filtered.log_likelihood),
        filtered_probs=jnp.exp(filtered.log_probs),
        log_likelihood_increments=filtered.log_likelihood,
    )


def check_hmm_state(state: HMMState, time_step: Optional[int] = None) -> None:
    """Raise if a (possibly time-stacked) belief saw a bad observation.

    Raises:
        ImpossibleObservationError: If a log-likelihood is ``-inf``.
        FilterDegenerateError: If a log-likelihood is NaN or ``+inf``,
            which only an invalid likelihood vector can produce.
    """
    ll = jnp.atleast_1d(state.log_likelihood)
    impossible = ll == -jnp.inf
    if bool(jnp.any(impossible)):
        t = time_step if time_step is not None else int(jnp.argmax(impossible))
        raise ImpossibleObservationError(
            'observation has zero likelihood under the current belief', t
        )
    if not bool(jnp.all(jnp.isfinite(ll))):
        raise FilterDegenerateError(
            'observation log-likelihoods are not finite', time_step
        )


class HMMSubFilter:
    """HMM sub-filter conditioned on a sampled sub-state.

    Args:
        initial_fn: ``sampled_state -> initial_probs``.
        transition_fn: ``sampled_state -> transition_matrix``.
        log_likelihood_fn: ``(emission, sampled_state) -> log
            p(y | z = k, x)`` for every discrete state ``k``.
    """

    def __init__(
        self,
        initial_fn: Callable,
        transition_fn: Callable,
        log_likelihood_fn: Callable,
    ):
        self.initial_fn = initial_fn
        self.transition_fn = transition_fn
        self.log_likelihood_fn = log_likelihood_fn

    def validate(self, sampled_state: Float[Array, ' state_dim']) -> None:
        """Check the parameters for one representative sampled state.

        Only the shapes are checked when the parameters are traced,
        e.g. when the filter runs under :func:`jax.vmap`.
        """
        initial_probs = self.initial_fn(sampled_state)
        transition_matrix = self.transition_fn(sampled_state)
        if isinstance(initial_probs, jax.core.Tracer) or isinstance(
            transition_matrix, jax.core.Tracer
        ):
            check_hmm_shapes(initial_probs, transition_matrix)
        else:
            validate_hmm_params(initial_probs, transition_matrix)

    def init(self, sampled_state) -> HMMState:
        return hmm_init(self.initial_fn(sampled_state))

    def predict(self, state: HMMState, sampled_state) -> HMMState:
        return hmm_predict(state, self.transition_fn(sampled_state))

    def update(self, state: HMMState, sampled_state, emission) -> HMMState:
        return hmm_update(
            state, self.log_likelihood_fn(emission, sampled_state)
        )

    def point_estimate(self, state: HMMState) -> Float[Array, ' num_states']:
        return jnp.exp(state.log_probs)

    def diagnose(self, states: HMMState, time_step: int) -> None:
        """Raise if the observation is impossible for every particle."""
        if bool(jnp.all(states.log_likelihood == -jnp.inf)):
            raise ImpossibleObservationError(
                'observation has zero likelihood for every particle',
                time_step,
            )
