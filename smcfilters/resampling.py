# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Particle resampling schemes.

All public functions share the signature
``(rng_key, weights, num_samples) -> indices`` where *weights* are
**normalized** (i.e. sum to one), the same convention used by
Blackjax (``blackjax.smc.resampling``).  Strategies that need the
particle locations (Hilbert ordering) set ``requires_particles`` and
take them as a fourth argument; :func:`resample` dispatches on it.

Every scheme inverts the same cumulative-weight CDF, so a particle
with weight exactly zero is never selected and a one-hot weight
vector yields that index ``num_samples`` times.
"""

from dataclasses import dataclass
from typing import ClassVar, Optional

import jax
import jax.numpy as jnp
from jax.scipy.stats import norm
from jaxtyping import Array, Float, Int, UInt32

from smcfilters.exceptions import ConfigurationError
from smcfilters.types import PRNGKeyT, ResamplingFn, Scalar

# --- Public resampling functions -------------------------------------------


def systematic(
    rng_key: PRNGKeyT,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
) -> Int[Array, ' num_samples']:
    """Systematic resampling.

    A single uniform offset ``u`` is shared by the evenly spaced
    points ``(k + u) / num_samples``.

    Args:
        rng_key: JAX PRNG key.
        weights: Normalized importance weights (sum to 1).
        num_samples: Number of indices to draw.

    Returns:
        Resampled ancestor indices.
    """
    u = jax.random.uniform(rng_key, (), dtype=weights.dtype)
    return systematic_from_uniform(u, weights, num_samples)


def systematic_from_uniform(
    u: Scalar,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
) -> Int[Array, ' num_samples']:
    """Systematic resampling driven by a caller-supplied uniform ``u``.

    Used by the common-random-numbers filter, where the offset must be
    shared across runs.
    """
    points = (jnp.arange(num_samples, dtype=weights.dtype) + u) / num_samples
    return _inverse_cdf(weights, points)


def stratified(
    rng_key: PRNGKeyT,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
) -> Int[Array, ' num_samples']:
    """Stratified resampling.

    One uniform draw per stratum ``[k/num_samples, (k+1)/num_samples)``.

    Args:
        rng_key: JAX PRNG key.
        weights: Normalized importance weights (sum to 1).
        num_samples: Number of indices to draw.

    Returns:
        Resampled ancestor indices.
    """
    u = jax.random.uniform(rng_key, (num_samples,), dtype=weights.dtype)
    points = (jnp.arange(num_samples, dtype=weights.dtype) + u) / num_samples
    return _inverse_cdf(weights, points)


def multinomial(
    rng_key: PRNGKeyT,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
) -> Int[Array, ' num_samples']:
    """Multinomial resampling with i.i.d. uniforms.

    Higher variance than systematic/stratified; included for
    completeness and reference comparisons.

    Args:
        rng_key: JAX PRNG key.
        weights: Normalized importance weights (sum to 1).
        num_samples: Number of indices to draw.

    Returns:
        Resampled ancestor indices.
    """
    u = jax.random.uniform(rng_key, (num_samples,), dtype=weights.dtype)
    return _inverse_cdf(weights, u)


def multinomial_sorted(
    rng_key: PRNGKeyT,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
) -> Int[Array, ' num_samples']:
    """Multinomial resampling from a pre-sorted batch of uniforms.

    Same law as :func:`multinomial`, but the uniforms are generated
    already sorted so the CDF can be inverted in a single merge pass.
    The returned indices are non-decreasing.

    Args:
        rng_key: JAX PRNG key.
        weights: Normalized importance weights (sum to 1).
        num_samples: Number of indices to draw.

    Returns:
        Resampled ancestor indices.
    """
    u = _sorted_uniforms(rng_key, num_samples, weights.dtype)
    return _inverse_cdf(weights, u, method='sort')


def residual(
    rng_key: PRNGKeyT,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
) -> Int[Array, ' num_samples']:
    """Residual resampling.

    Deterministically copies the integer part of each expected count,
    then resamples the residuals via multinomial.

    Args:
        rng_key: JAX PRNG key.
        weights: Normalized importance weights (sum to 1).
        num_samples: Number of indices to draw.

    Returns:
        Resampled ancestor indices.
    """
    return _residual(rng_key, weights, num_samples, multinomial)


def residual_systematic(
    rng_key: PRNGKeyT,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
) -> Int[Array, ' num_samples']:
    """Residual resampling with the residuals drawn systematically."""
    return _residual(rng_key, weights, num_samples, systematic)


@dataclass(frozen=True)
class HilbertSystematic:
    """Systematic resampling over particles sorted along a Hilbert curve.

    Particles are mapped onto a ``2**num_bits`` grid per axis, ordered
    by their position on the Hilbert space-filling curve and then
    resampled systematically, so neighbouring resampled indices point
    at neighbouring states.

    Attributes:
        num_bits: Grid resolution per state dimension.
    """

    num_bits: int = 8
    requires_particles: ClassVar[bool] = True

    def __post_init__(self):
        if not 1 <= self.num_bits <= 31:
            raise ConfigurationError(
                f'num_bits must be in [1, 31], got {self.num_bits}'
            )

    def __call__(
        self,
        rng_key: PRNGKeyT,
        weights: Float[Array, ' num_particles'],
        num_samples: int,
        particles: Float[Array, 'num_particles ...'],
    ) -> Int[Array, ' num_samples']:
        u = jax.random.uniform(rng_key, (), dtype=weights.dtype)
        return self.from_uniform(u, weights, num_samples, particles)

    def from_uniform(
        self,
        u: Scalar,
        weights: Float[Array, ' num_particles'],
        num_samples: int,
        particles: Float[Array, 'num_particles ...'],
    ) -> Int[Array, ' num_samples']:
        """Hilbert-ordered systematic resampling for a given offset ``u``."""
        order = hilbert_order(particles, self.num_bits)
        idx = systematic_from_uniform(u, weights[order], num_samples)
        return order[idx]


def resample(
    resampling_fn: ResamplingFn,
    rng_key: PRNGKeyT,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
    particles: Optional[Float[Array, 'num_particles ...']] = None,
) -> Int[Array, ' num_samples']:
    """Call *resampling_fn*, passing *particles* only if it needs them."""
    if getattr(resampling_fn, 'requires_particles', False):
        if particles is None:
            raise ConfigurationError(
                f'{resampling_fn!r} needs particle locations'
            )
        return resampling_fn(rng_key, weights, num_samples, particles)
    return resampling_fn(rng_key, weights, num_samples)


def normal_to_uniform(z: Scalar) -> Scalar:
    """Map a standard normal draw to a uniform on ``[0, 1)``."""
    u = norm.cdf(z)
    return jnp.minimum(u, jnp.nextafter(jnp.ones_like(u), jnp.zeros_like(u)))


# --- Hilbert curve ----------------------------------------------------------


def hilbert_index(
    coords: UInt32[Array, 'num_points num_dims'],
    num_bits: int,
) -> UInt32[Array, ' num_points']:
    """Hilbert-curve index of integer grid coordinates.

    Only valid when ``num_bits * num_dims <= 32``; use
    :func:`hilbert_order` for anything larger.

    Args:
        coords: Grid coordinates in ``[0, 2**num_bits)``.
        num_bits: Bits per coordinate.

    Returns:
        Position of each point along the curve.
    """
    num_dims = coords.shape[-1]
    if num_bits * num_dims > 32:
        raise ConfigurationError(
            f'{num_bits} bits x {num_dims} dims does not fit in 32 bits'
        )
    (key,) = _pack_bits(_hilbert_bits(coords, num_bits), chunk=32)
    return key


def hilbert_order(
    particles: Float[Array, 'num_particles ...'],
    num_bits: int,
) -> Int[Array, ' num_particles']:
    """Permutation sorting *particles* along the Hilbert curve.

    Each coordinate is squashed into ``(0, 2**num_bits)`` with
    ``c * tanh(x / 2) + c``, ``c = 2**(num_bits - 1)``, and floored.
    Keys longer than 31 bits are compared chunk by chunk.
    """
    x = particles.reshape(particles.shape[0], -1)
    half = 2.0 ** (num_bits - 1)
    scaled = jnp.floor(half * jnp.tanh(x / 2.0) + half)
    scaled = jnp.clip(scaled, 0, 2**num_bits - 1)
    coords = scaled.astype(jnp.uint32)
    chunks = _pack_bits(_hilbert_bits(coords, num_bits), chunk=31)
    # lexsort uses the last key as the primary one.
    return jnp.lexsort(chunks[::-1]).astype(jnp.int32)


# --- Internal helpers -------------------------------------------------------


def _inverse_cdf(
    weights: Float[Array, ' num_particles'],
    points: Float[Array, ' num_samples'],
    method: str = 'scan',
) -> Int[Array, ' num_samples']:
    """Map points in ``[0, 1)`` through the inverse weight CDF.

    ``side='right'`` skips zero-weight particles.  The result is capped
    at the last positive weight so that rounding in the cumulative sum
    cannot select a trailing zero-weight particle.
    """
    n = weights.shape[0]
    cumsum = jnp.cumsum(weights)
    cumsum = cumsum / cumsum[-1]
    idx = jnp.searchsorted(cumsum, points, side='right', method=method)
    last_positive = n - 1 - jnp.argmax(weights[::-1] > 0)
    return jnp.minimum(idx, last_positive).astype(jnp.int32)


def _residual(
    rng_key: PRNGKeyT,
    weights: Float[Array, ' num_particles'],
    num_samples: int,
    residual_fn: ResamplingFn,
) -> Int[Array, ' num_samples']:
    """Shared implementation for the residual schemes."""
    key1, key2 = jax.random.split(rng_key)
    n = weights.shape[0]
    n_sample_weights = num_samples * weights
    idx = jnp.arange(num_samples)

    integer_part = jnp.floor(n_sample_weights).astype(jnp.int32)
    sum_integer_part = jnp.sum(integer_part)
    num_residual = num_samples - sum_integer_part

    residual_part = n_sample_weights - integer_part
    residual_total = jnp.sum(residual_part)
    # With no slots left the residual draw is unused; keep it finite.
    residual_weights = jnp.where(
        residual_total > 0,
        residual_part / jnp.where(residual_total > 0, residual_total, 1.0),
        weights,
    )
    residual_sample = residual_fn(key1, residual_weights, num_samples)
    residual_sample = jax.random.permutation(key2, residual_sample)

    integer_idx = jnp.repeat(
        jnp.arange(n + 1),
        jnp.concatenate([integer_part, jnp.array([num_residual])], 0),
        total_repeat_length=num_samples,
    )

    return jnp.where(
        idx >= sum_integer_part, residual_sample, integer_idx
    ).astype(jnp.int32)


def _sorted_uniforms(
    rng_key: PRNGKeyT,
    n: int,
    dtype=jnp.float32,
) -> Float[Array, ' n']:
    """Generate *n* sorted uniform random variates in [0, 1).

    Uses the exponential spacings trick (credit: Nicolas Chopin).
    """
    z = jnp.cumsum(jax.random.exponential(rng_key, (n + 1,), dtype=dtype))
    return z[:-1] / z[-1]


def _hilbert_bits(
    coords: UInt32[Array, 'num_points num_dims'],
    num_bits: int,
) -> list:
    """Skilling's axes-to-transpose transform, returned as a bit list.

    Bits are ordered most significant first: bit ``num_bits - 1`` of
    every axis, then bit ``num_bits - 2`` of every axis, and so on.
    """
    num_dims = coords.shape[-1]
    x = [coords[:, i].astype(jnp.uint32) for i in range(num_dims)]
    m = 1 << (num_bits - 1)

    # Inverse undo.
    q = m
    while q > 1:
        p = jnp.uint32(q - 1)
        for i in range(num_dims):
            has_q = (x[i] & q) != 0
            t = (x[0] ^ x[i]) & p
            new_x0 = jnp.where(has_q, x[0] ^ p, x[0] ^ t)
            if i > 0:
                x[i] = jnp.where(has_q, x[i], x[i] ^ t)
            x[0] = new_x0
        q >>= 1

    # Gray encode.
    for i in range(1, num_dims):
        x[i] = x[i] ^ x[i - 1]
    t = jnp.zeros_like(x[0])
    q = m
    while q > 1:
        t = jnp.where((x[num_dims - 1] & q) != 0, t ^ jnp.uint32(q - 1), t)
        q >>= 1
    x = [xi ^ t for xi in x]

    return [
        (x[i] >> b) & 1
        for b in range(num_bits - 1, -1, -1)
        for i in range(num_dims)
    ]


def _pack_bits(bits: list, chunk: int) -> list:
    """Pack a most-significant-first bit list into uint32 words."""
    words = []
    for start in range(0, len(bits), chunk):
        word = jnp.zeros_like(bits[0])
        for bit in bits[start:start + chunk]:
            word = (word << 1) | bit
        words.append(word)
    return words
