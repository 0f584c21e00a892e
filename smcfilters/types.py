# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Type aliases for smcfilters.

Matches the conventions used by Dynamax (``dynamax.types``).
"""

from typing import Callable, Union

from jaxtyping import Array, Float, Int, PRNGKeyArray

PRNGKeyT = PRNGKeyArray
"""JAX PRNG key (handles both old and new JAX key formats)."""

Scalar = Union[float, Float[Array, ""]]
"""Python float or scalar JAX array with float dtype."""

IntScalar = Union[int, Int[Array, ""]]
"""Python int or scalar JAX array with int dtype."""

ResamplingFn = Callable[..., Int[Array, " num_samples"]]
"""``(rng_key, weights, num_samples[, particles]) -> ancestor indices``."""
