# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Kalman filter for linear-Gaussian state-space models.

.. math::

    z_t = F z_{t-1} + b + \epsilon_t, \quad \epsilon_t \sim N(0, Q)

    y_t = H z_t + d + \eta_t, \quad \eta_t \sim N(0, R)

Parameter names follow Dynamax (``make_lgssm_params``).  The update
uses the Joseph form followed by explicit symmetrization, and the
innovation covariance is factored with a Cholesky decomposition.  A
covariance that is not positive definite turns the Cholesky factor,
and with it the log-likelihood, into NaN; :func:`check_kalman_state`
converts that into :class:`~smcfilters.exceptions.NonPositiveDefiniteError`.

:class:`KalmanSubFilter` adapts these functions to the
Rao-Blackwellized particle filter, where the parameters may depend on
each particle's sampled sub-state.
"""

import math
from collections.abc import Callable
from typing import NamedTuple, Optional

import jax
import jax.numpy as jnp
from jax import lax
from jax.scipy.linalg import cho_solve, solve_triangular
from jaxtyping import Array, Float

from smcfilters.containers import KalmanPosterior, KalmanState
from smcfilters.exceptions import ConfigurationError, NonPositiveDefiniteError
from smcfilters.types import Scalar


class LinearGaussianParams(NamedTuple):
    """Parameters of a linear-Gaussian state-space model.

    Attributes:
        dynamics_weights: Transition matrix ``F``.
        dynamics_cov: Process noise covariance ``Q``.
        emissions_weights: Observation matrix ``H``.
        emissions_cov: Observation noise covariance ``R``.
        dynamics_bias: Optional transition offset ``b``.
        emissions_bias: Optional observation offset ``d``.
    """

    dynamics_weights: Float[Array, 'state_dim state_dim']
    dynamics_cov: Float[Array, 'state_dim state_dim']
    emissions_weights: Float[Array, 'emission_dim state_dim']
    emissions_cov: Float[Array, 'emission_dim emission_dim']
    dynamics_bias: Optional[Float[Array, ' state_dim']] = None
    emissions_bias: Optional[Float[Array, ' emission_dim']] = None


def validate_params(
    params: LinearGaussianParams,
    initial_mean: Optional[Float[Array, ' state_dim']] = None,
    initial_cov: Optional[Float[Array, 'state_dim state_dim']] = None,
) -> None:
    """Check that the parameter shapes agree with each other.

    Raises:
        ConfigurationError: On any shape mismatch.
    """
    state_dim = params.dynamics_weights.shape[-1]
    emission_dim = params.emissions_weights.shape[0]
    expected = {
        'dynamics_weights': (state_dim, state_dim),
        'dynamics_cov': (state_dim, state_dim),
        'emissions_weights': (emission_dim, state_dim),
        'emissions_cov': (emission_dim, emission_dim),
        'dynamics_bias': (state_dim,),
        'emissions_bias': (emission_dim,),
    }
    values = params._asdict()
    if initial_mean is not None:
        expected['initial_mean'] = (state_dim,)
        values['initial_mean'] = initial_mean
    if initial_cov is not None:
        expected['initial_cov'] = (state_dim, state_dim)
        values['initial_cov'] = initial_cov
    for name, shape in expected.items():
        value = values[name]
        if value is not None and jnp.shape(value) != shape:
            raise ConfigurationError(
                f'{name} has shape {jnp.shape(value)}, expected {shape}'
            )


def kalman_init(
    mean: Float[Array, ' state_dim'],
    cov: Float[Array, 'state_dim state_dim'],
) -> KalmanState:
    """Belief before any observation."""
    mean = jnp.asarray(mean)
    return KalmanState(mean, jnp.asarray(cov), jnp.zeros((), mean.dtype))


def kalman_predict(
    state: KalmanState, params: LinearGaussianParams
) -> KalmanState:
    """Propagate the belief through the transition."""
    F, Q = params.dynamics_weights, params.dynamics_cov
    mean = F @ state.mean
    if params.dynamics_bias is not None:
        mean = mean + params.dynamics_bias
    cov = _symmetrize(F @ state.cov @ F.T + Q)
    return state._replace(mean=mean, cov=cov)


def kalman_update(
    state: KalmanState,
    params: LinearGaussianParams,
    emission: Float[Array, ' emission_dim'],
) -> KalmanState:
    r"""Condition the belief on one observation.

    Returns:
        The posterior belief, with ``log_likelihood`` set to
        :math:`\log N(y; H m + d, H P H^T + R)`.  If the innovation
        covariance is not positive definite the log-likelihood is NaN
        and the prior belief is returned unchanged.
    """
    H, R = params.emissions_weights, params.emissions_cov
    pred_mean, pred_cov = predicted_emission(state, params)
    chol = jnp.linalg.cholesky(pred_cov)
    residual = emission - pred_mean

    # K = P H^T S^{-1}
    gain = cho_solve((chol, True), H @ state.cov).T
    mean = state.mean + gain @ residual
    i_kh = jnp.eye(state.mean.shape[-1], dtype=state.cov.dtype) - gain @ H
    cov = i_kh @ state.cov @ i_kh.T + gain @ R @ gain.T
    log_likelihood = _mvn_logpdf_chol(residual, chol)
    ok = jnp.isfinite(log_likelihood)
    return KalmanState(
        mean=jnp.where(ok, mean, state.mean),
        cov=jnp.where(ok, _symmetrize(cov), state.cov),
        log_likelihood=log_likelihood,
    )


def predicted_emission(
    state: KalmanState, params: LinearGaussianParams
) -> tuple[
    Float[Array, ' emission_dim'], Float[Array, 'emission_dim emission_dim']
]:
    """Mean and covariance of the next observation given the belief."""
    H, R = params.emissions_weights, params.emissions_cov
    mean = H @ state.mean
    if params.emissions_bias is not None:
        mean = mean + params.emissions_bias
    return mean, _symmetrize(H @ state.cov @ H.T + R)


def kalman_filter(
    params: LinearGaussianParams,
    initial_mean: Float[Array, ' state_dim'],
    initial_cov: Float[Array, 'state_dim state_dim'],
    emissions: Float[Array, 'ntime emission_dim'],
) -> KalmanPosterior:
    """Run the Kalman filter over a sequence of observations.

    The first observation updates the prior directly; every later one
    is preceded by a predict step (the Dynamax convention).

    Raises:
        ConfigurationError: If the parameter shapes disagree.
        NonPositiveDefiniteError: If a covariance stops being positive
            definite.
    """
    validate_params(params, initial_mean, initial_cov)

    def _step(state, args):
        t, y_t = args
        state = lax.cond(
            t == 0, lambda: state, lambda: kalman_predict(state, params)
        )
        state = kalman_update(state, params, y_t)
        return state, state

    _, filtered = lax.scan(
        _step,
        kalman_init(initial_mean, initial_cov),
        (jnp.arange(emissions.shape[0]), emissions),
    )
    bad = ~jnp.isfinite(filtered.log_likelihood)
    if bool(jnp.any(bad)):
        t = int(jnp.argmax(bad))
        raise NonPositiveDefiniteError(
            'innovation covariance is not positive definite', t
        )
    return KalmanPosterior(
        marginal_loglik=jnp.sum(filtered.log_likelihood),
        filtered_means=filtered.mean,
        filtered_covariances=filtered.cov,
        log_likelihood_increments=filtered.log_likelihood,
    )


def check_kalman_state(
    state: KalmanState, time_step: Optional[int] = None, atol: float = 1e-8
) -> None:
    """Raise unless *state* (possibly stacked) is finite and PSD.

    Raises:
        NonPositiveDefiniteError: On non-finite values or a covariance
            with an eigenvalue below ``-atol``.
    """
    finite = jnp.all(jnp.isfinite(state.cov)) & jnp.all(
        jnp.isfinite(state.log_likelihood)
    )
    if not bool(finite):
        raise NonPositiveDefiniteError(
            'Kalman belief is not finite', time_step
        )
    min_eig = jnp.min(jnp.linalg.eigvalsh(state.cov))
    if float(min_eig) < -atol:
        raise NonPositiveDefiniteError(
            f'covariance has eigenvalue {float(min_eig):.3g}', time_step
        )


class KalmanSubFilter:
    """Kalman sub-filter conditioned on a sampled sub-state.

    Args:
        initial_fn: ``sampled_state -> (mean, cov)`` giving the prior of
            the linear sub-state.
        params_fn: ``sampled_state -> LinearGaussianParams``.
    """

    def __init__(self, initial_fn: Callable, params_fn: Callable):
        self.initial_fn = initial_fn
        self.params_fn = params_fn

    def validate(self, sampled_state: Float[Array, ' state_dim']) -> None:
        """Check parameter shapes for one representative sampled state."""
        mean, cov = jax.eval_shape(self.initial_fn, sampled_state)
        params = jax.eval_shape(self.params_fn, sampled_state)
        validate_params(params, mean, cov)

    def init(self, sampled_state) -> KalmanState:
        return kalman_init(*self.initial_fn(sampled_state))

    def predict(self, state: KalmanState, sampled_state) -> KalmanState:
        return kalman_predict(state, self.params_fn(sampled_state))

    def update(
        self, state: KalmanState, sampled_state, emission
    ) -> KalmanState:
        return kalman_update(state, self.params_fn(sampled_state), emission)

    def point_estimate(self, state: KalmanState) -> Float[Array, ' state_dim']:
        return state.mean

    def diagnose(self, states: KalmanState, time_step: int) -> None:
        """Raise if any particle's belief became invalid."""
        check_kalman_state(states, time_step)


# --- Internal helpers -------------------------------------------------------


def _symmetrize(m: Float[Array, 'n n']) -> Float[Array, 'n n']:
    return 0.5 * (m + m.T)


def _mvn_logpdf_chol(
    residual: Float[Array, ' n'], chol: Float[Array, 'n n']
) -> Scalar:
    """Gaussian log-density of *residual* given the covariance's Cholesky."""
    z = solve_triangular(chol, residual, lower=True)
    return (
        -0.5 * (residual.shape[-1] * math.log(2 * math.pi) + z @ z)
        - jnp.sum(jnp.log(jnp.diag(chol)))
    )
