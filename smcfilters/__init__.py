# Copyright 2026 Michael Ellis
# SPDX-License-Identifier: Apache-2.0
"""Sequential Monte Carlo filters and closed-form sub-filters in JAX."""

from importlib.metadata import PackageNotFoundError as _PackageNotFoundError
from importlib.metadata import version as _version

from smcfilters.auxiliary import AuxiliaryFilter, auxiliary_filter
from smcfilters.bootstrap import BootstrapFilter, bootstrap_filter
from smcfilters.containers import (
    ParticleFilterPosterior,
    ParticleState,
    RBParticleState,
    RBPFPosterior,
    StepInfo,
)
from smcfilters.crn import CRNFilter, crn_filter
from smcfilters.diagnostics import (
    log_bayes_factor,
    log_ml_increments,
    particle_diversity,
    replicated_log_ml,
    weighted_mean,
    weighted_quantile,
    weighted_variance,
)
from smcfilters.ess import ess, log_ess
from smcfilters.exceptions import (
    ConfigurationError,
    FilterCollapseError,
    FilterDegenerateError,
    ImpossibleObservationError,
    InvariantViolationError,
    NonPositiveDefiniteError,
    SMCFiltersError,
)
from smcfilters.hmm import HMMSubFilter, hmm_filter
from smcfilters.kalman import (
    KalmanSubFilter,
    LinearGaussianParams,
    kalman_filter,
)
from smcfilters.model import StateSpaceModel
from smcfilters.online import OnlineFilter
from smcfilters.rbpf import BootstrapRBPF, SISRRBPF, rbpf_filter
from smcfilters.resampling import (
    HilbertSystematic,
    multinomial,
    multinomial_sorted,
    residual,
    residual_systematic,
    stratified,
    systematic,
)
from smcfilters.simulate import simulate
from smcfilters.sisr import SISRFilter, sisr_filter
from smcfilters.weights import log_normalize, normalize

try:
    __version__ = _version('smcfilters')
except _PackageNotFoundError:
    __version__ = '0.0.0'

__all__ = [
    'AuxiliaryFilter',
    'BootstrapFilter',
    'BootstrapRBPF',
    'CRNFilter',
    'ConfigurationError',
    'FilterCollapseError',
    'FilterDegenerateError',
    'HMMSubFilter',
    'HilbertSystematic',
    'ImpossibleObservationError',
    'InvariantViolationError',
    'KalmanSubFilter',
    'LinearGaussianParams',
    'NonPositiveDefiniteError',
    'OnlineFilter',
    'ParticleFilterPosterior',
    'ParticleState',
    'RBPFPosterior',
    'RBParticleState',
    'SISRFilter',
    'SISRRBPF',
    'SMCFiltersError',
    'StateSpaceModel',
    'StepInfo',
    '__version__',
    'auxiliary_filter',
    'bootstrap_filter',
    'crn_filter',
    'ess',
    'hmm_filter',
    'kalman_filter',
    'log_bayes_factor',
    'log_ess',
    'log_ml_increments',
    'log_normalize',
    'multinomial',
    'multinomial_sorted',
    'normalize',
    'particle_diversity',
    'rbpf_filter',
    'replicated_log_ml',
    'residual',
    'residual_systematic',
    'simulate',
    'sisr_filter',
    'stratified',
    'systematic',
    'weighted_mean',
    'weighted_quantile',
    'weighted_variance',
]
