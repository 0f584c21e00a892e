# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Effective sample size (ESS) computation.

The log-ESS is Blackjax's (``blackjax.smc.ess.log_ess``), re-exported
here; :func:`ess` clips its exponential to the valid range.
"""

import jax.numpy as jnp
from blackjax.smc.ess import log_ess
from jaxtyping import Array, Float

from smcfilters.types import Scalar

__all__ = ['ess', 'ess_from_weights', 'log_ess']


def ess(log_weights: Float[Array, ' num_particles']) -> Scalar:
    r"""Compute the effective sample size from unnormalized log weights.

    .. math::

        \mathrm{ESS} = \frac{(\sum_i w_i)^2}{\sum_i w_i^2}
            = \exp\!\bigl(2\,\mathrm{LSE}(\mathbf{lw})
                         - \mathrm{LSE}(2\,\mathbf{lw})\bigr)

    This is equivalent to :math:`1 / \sum_i \tilde{w}_i^2` where
    :math:`\tilde{w}_i` are the *normalized* weights.  The result is
    clipped to ``[1, N]`` to absorb rounding; NaN weights give NaN.

    Args:
        log_weights: Unnormalized log importance weights.

    Returns:
        The effective sample size (scalar).
    """
    num_particles = log_weights.shape[0]
    return jnp.clip(jnp.exp(log_ess(log_weights)), 1.0, num_particles)


def ess_from_weights(weights: Float[Array, ' num_particles']) -> Scalar:
    """ESS of already-normalized weights, ``1 / sum(w**2)``."""
    return 1.0 / jnp.sum(weights**2)
