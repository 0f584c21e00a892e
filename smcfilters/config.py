# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Filter configuration shared by every particle filter."""

import numbers
from typing import NamedTuple

from smcfilters.exceptions import ConfigurationError
from smcfilters.resampling import systematic
from smcfilters.types import ResamplingFn


class FilterConfig(NamedTuple):
    """Particle count and resampling policy.

    Attributes:
        num_particles: Ensemble size, fixed for the filter's lifetime.
        resampling_fn: Resampling strategy (see
            :mod:`smcfilters.resampling`).
        resampling_threshold: Resample when ``ESS < threshold * N``.
            ``1.0`` resamples at every step.
    """

    num_particles: int
    resampling_fn: ResamplingFn = systematic
    resampling_threshold: float = 0.5

    def validated(self) -> 'FilterConfig':
        """Return a checked copy with ``num_particles`` as a plain int.

        Raises:
            ConfigurationError: On a non-positive particle count, a
                threshold outside ``(0, 1]`` or a non-callable
                resampling strategy.
        """
        if isinstance(self.num_particles, bool) or not isinstance(
            self.num_particles, numbers.Integral
        ):
            raise ConfigurationError(
                f'num_particles must be an int, got {self.num_particles!r}'
            )
        if self.num_particles <= 0:
            raise ConfigurationError(
                f'num_particles must be positive, got {self.num_particles}'
            )
        if not 0.0 < self.resampling_threshold <= 1.0:
            raise ConfigurationError(
                'resampling_threshold must be in (0, 1], '
                f'got {self.resampling_threshold}'
            )
        if not callable(self.resampling_fn):
            raise ConfigurationError(
                f'resampling_fn must be callable, got {self.resampling_fn!r}'
            )
        return self._replace(num_particles=int(self.num_particles))

    @property
    def always_resample(self) -> bool:
        """True when the threshold requests resampling at every step."""
        return self.resampling_threshold >= 1.0
