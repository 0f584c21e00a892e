# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
r"""Discount-factor gamma filters for an unknown observation precision.

The observation model is a regression with a time-varying precision
multiplier :math:`\phi_t`,

.. math::

    y_t \mid \phi_t \sim N(B x_t, \Sigma / \phi_t), \qquad
    \phi_t \mid y_{1:t-1} \sim \mathrm{Gamma}(n_t / 2, d_t / 2),

where :math:`B` and :math:`\Sigma` are known and :math:`x_t` is a
vector of predictors.  Between observations the precision evolves by
discounting, :math:`n \to \delta n`, :math:`d \to \delta d` with
:math:`0 < \delta \le 1`.  The one-step predictive distribution is a
(multivariate) Student-t with :math:`n` degrees of freedom, location
:math:`B x_t` and scale :math:`\Sigma d / n`; after observing
:math:`y_t` the shape grows by the observation dimension and the rate by
the squared Mahalanobis residual.

The univariate functions take a coefficient vector :math:`\beta` and a
variance :math:`\sigma^2`; the ``multivariate_`` ones take a coefficient
matrix and a scale matrix.
"""

import math
from typing import NamedTuple, Union

import jax.numpy as jnp
from jax import lax
from jax.scipy.linalg import solve_triangular
from jax.scipy.special import gammaln
from jax.scipy.stats import t as student_t
from jaxtyping import Array, Float

from smcfilters.containers import GammaState
from smcfilters.exceptions import ConfigurationError, FilterDegenerateError
from smcfilters.types import Scalar


class GammaParams(NamedTuple):
    r"""Known quantities of the gamma filter.

    Attributes:
        coefficients: :math:`\beta`, shape ``(num_predictors,)``, or
            :math:`B`, shape ``(emission_dim, num_predictors)``.
        scale: :math:`\sigma^2` (scalar) or :math:`\Sigma`
            (``(emission_dim, emission_dim)``).
        discount: Discount factor :math:`\delta \in (0, 1]`.
    """

    coefficients: Union[
        Float[Array, ' num_predictors'],
        Float[Array, 'emission_dim num_predictors'],
    ]
    scale: Union[Scalar, Float[Array, 'emission_dim emission_dim']]
    discount: Scalar = 1.0


def validate_gamma_params(params: GammaParams) -> None:
    """Raises :class:`ConfigurationError` on a bad scale or discount."""
    if not 0.0 < float(params.discount) <= 1.0:
        raise ConfigurationError(
            f'discount must be in (0, 1], got {float(params.discount)}'
        )
    scale = jnp.asarray(params.scale)
    if scale.ndim == 0:
        if not float(scale) > 0.0:
            raise ConfigurationError('scale must be positive')
    elif not bool(jnp.all(jnp.isfinite(jnp.linalg.cholesky(scale)))):
        raise ConfigurationError('scale matrix must be positive definite')


def gamma_init(shape: Scalar, rate: Scalar) -> GammaState:
    r"""Prior belief :math:`\mathrm{Gamma}(n / 2, d / 2)`."""
    dtype = jnp.result_type(float)
    shape = jnp.asarray(shape, dtype=dtype)
    rate = jnp.asarray(rate, dtype=dtype)
    return GammaState(shape, rate, jnp.zeros_like(shape))


def gamma_predict(state: GammaState, params: GammaParams) -> GammaState:
    """Discount the belief ahead of the next observation."""
    return state._replace(
        shape=state.shape * params.discount, rate=state.rate * params.discount
    )


def gamma_update(
    state: GammaState,
    params: GammaParams,
    emission: Scalar,
    predictors: Float[Array, ' num_predictors'],
) -> GammaState:
    """Condition a univariate belief on one observation.

    The belief is left unchanged when the log-likelihood is not finite.
    """
    loc = jnp.dot(predictors, params.coefficients)
    scale = jnp.sqrt(params.scale * state.rate / state.shape)
    log_likelihood = student_t.logpdf(emission, state.shape, loc, scale)
    residual = emission - loc
    ok = jnp.isfinite(log_likelihood)
    return GammaState(
        shape=jnp.where(ok, state.shape + 1.0, state.shape),
        rate=jnp.where(
            ok, state.rate + residual**2 / params.scale, state.rate
        ),
        log_likelihood=log_likelihood,
    )


def multivariate_gamma_update(
    state: GammaState,
    params: GammaParams,
    emission: Float[Array, ' emission_dim'],
    predictors: Float[Array, ' num_predictors'],
) -> GammaState:
    """Condition a multivariate belief on one observation.

    As :func:`gamma_update`, a non-finite log-likelihood leaves the
    belief unchanged.
    """
    loc = params.coefficients @ predictors
    shape_matrix = params.scale * state.rate / state.shape
    log_likelihood = multivariate_t_logpdf(
        emission, loc, shape_matrix, state.shape
    )
    chol = jnp.linalg.cholesky(params.scale)
    z = solve_triangular(chol, emission - loc, lower=True)
    ok = jnp.isfinite(log_likelihood)
    return GammaState(
        shape=jnp.where(ok, state.shape + emission.shape[-1], state.shape),
        rate=jnp.where(ok, state.rate + z @ z, state.rate),
        log_likelihood=log_likelihood,
    )


def gamma_filter(
    params: GammaParams,
    shape: Scalar,
    rate: Scalar,
    emissions: Union[
        Float[Array, ' ntime'], Float[Array, 'ntime emission_dim']
    ],
    predictors: Float[Array, 'ntime num_predictors'],
) -> GammaState:
    """Run the gamma filter over a sequence.

    Two-dimensional *emissions* select the multivariate filter.  The
    first observation updates the prior directly; later ones are
    discounted first.

    Returns:
        The belief after each observation, stacked over time.

    Raises:
        ConfigurationError: On an invalid scale or discount.
        FilterDegenerateError: If an observation's predictive
            log-density is not finite.
    """
    validate_gamma_params(params)
    update = multivariate_gamma_update if emissions.ndim == 2 else gamma_update

    def _step(state, args):
        t, y_t, x_t = args
        state = lax.cond(
            t == 0, lambda: state, lambda: gamma_predict(state, params)
        )
        state = update(state, params, y_t, x_t)
        return state, state

    _, filtered = lax.scan(
        _step,
        gamma_init(shape, rate),
        (jnp.arange(emissions.shape[0]), emissions, predictors),
    )
    bad = ~jnp.isfinite(filtered.log_likelihood)
    if bool(jnp.any(bad)):
        t = int(jnp.argmax(bad))
        raise FilterDegenerateError(
            'predictive log-likelihood is not finite', t
        )
    return filtered


def gamma_forecast_mean(
    state: GammaState,
    params: GammaParams,
    predictors: Float[Array, ' num_predictors'],
):
    """Mean of the next observation; NaN unless ``discount * n > 1``."""
    coefficients = jnp.asarray(params.coefficients)
    if coefficients.ndim == 1:
        mean = jnp.dot(predictors, coefficients)
    else:
        mean = coefficients @ predictors
    return jnp.where(state.shape * params.discount > 1.0, mean, jnp.nan)


def gamma_forecast_cov(state: GammaState, params: GammaParams):
    """(Co)variance of the next observation; NaN unless ``discount * n > 2``.

    The predictive is a Student-t, whose variance only exists for more
    than two degrees of freedom.
    """
    n = state.shape * params.discount
    d = state.rate * params.discount
    cov = jnp.asarray(params.scale) * d / (n - 2.0)
    return jnp.where(n > 2.0, cov, jnp.nan)


def multivariate_t_logpdf(
    x: Float[Array, ' dim'],
    loc: Float[Array, ' dim'],
    shape_matrix: Float[Array, 'dim dim'],
    df: Scalar,
) -> Scalar:
    """Log-density of a multivariate Student-t distribution."""
    dim = x.shape[-1]
    chol = jnp.linalg.cholesky(shape_matrix)
    z = solve_triangular(chol, x - loc, lower=True)
    log_det = 2.0 * jnp.sum(jnp.log(jnp.diag(chol)))
    return (
        gammaln(0.5 * (df + dim))
        - gammaln(0.5 * df)
        - 0.5 * dim * jnp.log(df)
        - 0.5 * dim * math.log(math.pi)
        - 0.5 * log_det
        - 0.5 * (df + dim) * jnp.log1p(z @ z / df)
    )
