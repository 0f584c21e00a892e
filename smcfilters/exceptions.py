# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Exceptions raised by smcfilters.

Configuration problems are reported when a filter is built.  Numerical
failures are detected on the host after a step has been computed, so a
raised :class:`FilterDegenerateError` never replaces the caller's
previous ensemble.
"""

from typing import Optional


class SMCFiltersError(Exception):
    """Base class for all smcfilters errors."""


class ConfigurationError(SMCFiltersError, ValueError):
    """Invalid filter, model or resampler configuration."""


class FilterDegenerateError(SMCFiltersError, ArithmeticError):
    """A filter step produced a numerically invalid result.

    Attributes:
        time_step: Index of the observation being processed when the
            failure was detected, or ``None`` if unknown.
    """

    def __init__(self, message: str, time_step: Optional[int] = None):
        if time_step is not None:
            message = f'{message} (time step {time_step})'
        super().__init__(message)
        self.time_step = time_step


class FilterCollapseError(FilterDegenerateError):
    """Every particle was assigned zero weight."""


class NonPositiveDefiniteError(FilterDegenerateError):
    """A Kalman covariance lost positive definiteness."""


class ImpossibleObservationError(FilterDegenerateError):
    """An observation has zero likelihood under the HMM belief."""


class InvariantViolationError(FilterDegenerateError):
    """A runtime invariant check failed (``check_invariants=True``)."""
