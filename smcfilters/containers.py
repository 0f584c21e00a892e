# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Containers for particle filter state, sub-filter state and posteriors.

All containers are :class:`~typing.NamedTuple` subclasses so they are
registered as JAX PyTrees by default.
"""

from typing import Any, NamedTuple

from jaxtyping import Array, Bool, Float, Int

from smcfilters.types import IntScalar, Scalar


class ParticleState(NamedTuple):
    r"""State of a particle cloud at a single time step.

    Attributes:
        particles: Particle values, shape ``(num_particles, state_dim)``.
        log_weights: Normalized log importance weights,
            shape ``(num_particles,)``.
        log_marginal_likelihood: Running log marginal likelihood estimate.
        time_step: Number of observations absorbed so far.
    """

    particles: Float[Array, 'num_particles state_dim']
    log_weights: Float[Array, ' num_particles']
    log_marginal_likelihood: Scalar
    time_step: IntScalar


class RBParticleState(NamedTuple):
    r"""State of a Rao-Blackwellized particle cloud.

    Attributes:
        sampled: Sampled sub-states, shape ``(num_particles, state_dim)``.
        analytic: Per-particle closed-form posterior (a stacked
            :class:`KalmanState` or :class:`HMMState`).
        log_weights: Normalized log importance weights.
        log_marginal_likelihood: Running log marginal likelihood estimate.
        time_step: Number of observations absorbed so far.
    """

    sampled: Float[Array, 'num_particles state_dim']
    analytic: Any
    log_weights: Float[Array, ' num_particles']
    log_marginal_likelihood: Scalar
    time_step: IntScalar

    @property
    def particles(self) -> Float[Array, 'num_particles state_dim']:
        """The sampled sub-states."""
        return self.sampled


class StepInfo(NamedTuple):
    r"""Diagnostics of one filter step.

    Attributes:
        ess: Effective sample size after reweighting, before resampling.
        resampled: Whether the ensemble was resampled.
        ancestors: Ancestor index of every particle (identity when no
            resampling happened).
        log_likelihood_increment: Estimate of
            :math:`\log p(y_t \mid y_{1:t-1})`.
        expectations: Weighted means of the filter's test functions,
            computed before resampling.
    """

    ess: Scalar
    resampled: Bool[Array, '']
    ancestors: Int[Array, ' num_particles']
    log_likelihood_increment: Scalar
    expectations: tuple


class ParticleFilterPosterior(NamedTuple):
    r"""Full output of a particle filter run.

    Follows the Dynamax ``PosteriorGSSMFiltered`` convention of storing
    the marginal log-likelihood as a scalar summary alongside the
    time-indexed arrays.  Particles and weights are recorded after
    reweighting and before resampling.

    Attributes:
        marginal_loglik: Scalar estimate of
            :math:`\log p(y_{1:T})`.
        filtered_particles: Particle values at each time step,
            shape ``(ntime, num_particles, state_dim)``.
        filtered_log_weights: Normalized log weights at each time step,
            shape ``(ntime, num_particles)``.
        ancestors: Resampled ancestor indices at each time step,
            shape ``(ntime, num_particles)``.
        ess: Effective sample size at each time step,
            shape ``(ntime,)``.
        log_evidence_increments: Per-step log-likelihood increments,
            shape ``(ntime,)``.
        resampled: Resampling flags, shape ``(ntime,)``.
        expectations: Test-function expectations stacked over time.
    """

    marginal_loglik: Scalar
    filtered_particles: Float[Array, 'ntime num_particles state_dim']
    filtered_log_weights: Float[Array, 'ntime num_particles']
    ancestors: Int[Array, 'ntime num_particles']
    ess: Float[Array, ' ntime']
    log_evidence_increments: Float[Array, ' ntime']
    resampled: Bool[Array, ' ntime']
    expectations: tuple = ()


class RBPFPosterior(NamedTuple):
    r"""Full output of a Rao-Blackwellized particle filter run.

    Same layout as :class:`ParticleFilterPosterior` plus the stacked
    per-particle closed-form posteriors in ``filtered_analytic``.
    """

    marginal_loglik: Scalar
    filtered_particles: Float[Array, 'ntime num_particles state_dim']
    filtered_log_weights: Float[Array, 'ntime num_particles']
    ancestors: Int[Array, 'ntime num_particles']
    ess: Float[Array, ' ntime']
    log_evidence_increments: Float[Array, ' ntime']
    resampled: Bool[Array, ' ntime']
    filtered_analytic: Any
    expectations: tuple = ()


class KalmanState(NamedTuple):
    r"""Gaussian belief over a linear sub-state.

    Attributes:
        mean: Mean vector, shape ``(state_dim,)``.
        cov: Covariance matrix, shape ``(state_dim, state_dim)``.
        log_likelihood: Log-likelihood of the most recent observation,
            zero before the first update.
    """

    mean: Float[Array, ' state_dim']
    cov: Float[Array, 'state_dim state_dim']
    log_likelihood: Scalar


class KalmanPosterior(NamedTuple):
    """Output of :func:`smcfilters.kalman.kalman_filter`."""

    marginal_loglik: Scalar
    filtered_means: Float[Array, 'ntime state_dim']
    filtered_covariances: Float[Array, 'ntime state_dim state_dim']
    log_likelihood_increments: Float[Array, ' ntime']


class HMMState(NamedTuple):
    r"""Belief over the hidden state of a finite HMM.

    Attributes:
        log_probs: Normalized log probabilities, shape ``(num_states,)``.
        log_likelihood: Log-likelihood of the most recent observation.
    """

    log_probs: Float[Array, ' num_states']
    log_likelihood: Scalar


class HMMPosterior(NamedTuple):
    """Output of :func:`smcfilters.hmm.hmm_filter`."""

    marginal_loglik: Scalar
    filtered_probs: Float[Array, 'ntime num_states']
    log_likelihood_increments: Float[Array, ' ntime']


class GammaState(NamedTuple):
    r"""Gamma belief over an observation precision multiplier.

    The precision :math:`\phi` has a Gamma(``shape / 2``, ``rate / 2``)
    posterior, so ``shape`` doubles as the Student-t degrees of
    freedom of the predictive distribution.

    Attributes:
        shape: Degrees of freedom ``n``.
        rate: Accumulated scaled sum of squares ``d``.
        log_likelihood: Log-likelihood of the most recent observation.
    """

    shape: Scalar
    rate: Scalar
    log_likelihood: Scalar
