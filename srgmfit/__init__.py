# srgmfit/__init__.py

# Import key classes and functions to expose them at the top level

# --- Import Datatypes ---
from .datatypes import (
    PENALTY,
    DefectDataset,
    OptimizationResult,
    OptimizerComparison,
    ConvergencePrediction,
    HoldoutMetrics,
    FitResult,
)

# --- Import Settings ---
from .config import (
    DESettings,
    CMAESSettings,
    PSOSettings,
    GWOSettings,
    NelderMeadSettings,
    GridGradientSettings,
    MultiStartSettings,
    AutoSelectSettings,
    ModelInitSettings,
    FitSettings,
    settings_from_dict,
)

# --- Import Optimizers & Strategies ---
from .optimizers import (
    BaseOptimizer,
    DifferentialEvolution,
    CMAES,
    ParticleSwarm,
    GreyWolf,
    NelderMead,
    GridSearchGradient,
    OPTIMIZERS,
    create_optimizer,
)
from .strategies import AutoSelect, MultiStart, compare_optimizers

# --- Import Models & Losses ---
from .effort import EFFORT_FUNCTIONS, get_effort_function
from .models import GrowthModel, GROWTH_MODELS, get_model, get_models, list_models
from .losses import LossFunction, SSELoss, MLELoss, create_loss

# --- Import Core Functions ---
from .core import (
    fit_growth_model,
    fit_all_models,
    get_best_model,
    rank_models,
    predict_convergence,
    refit_from,
)

from .utils import FitWarning, DataQualityWarning, SelectionWarning, LossFallbackWarning

# --- Exposed Modules ---
from . import models
from . import utils


# Define __all__ to control 'from srgmfit import *' behavior
__all__ = [
    # Datatypes
    'PENALTY',
    'DefectDataset',
    'OptimizationResult',
    'OptimizerComparison',
    'ConvergencePrediction',
    'HoldoutMetrics',
    'FitResult',

    # Settings
    'DESettings',
    'CMAESSettings',
    'PSOSettings',
    'GWOSettings',
    'NelderMeadSettings',
    'GridGradientSettings',
    'MultiStartSettings',
    'AutoSelectSettings',
    'ModelInitSettings',
    'FitSettings',
    'settings_from_dict',

    # Optimizers
    'BaseOptimizer',
    'DifferentialEvolution',
    'CMAES',
    'ParticleSwarm',
    'GreyWolf',
    'NelderMead',
    'GridSearchGradient',
    'OPTIMIZERS',
    'create_optimizer',
    'AutoSelect',
    'MultiStart',
    'compare_optimizers',

    # Models & losses
    'EFFORT_FUNCTIONS',
    'get_effort_function',
    'GrowthModel',
    'GROWTH_MODELS',
    'get_model',
    'get_models',
    'list_models',
    'LossFunction',
    'SSELoss',
    'MLELoss',
    'create_loss',

    # Core functions
    'fit_growth_model',
    'fit_all_models',
    'get_best_model',
    'rank_models',
    'predict_convergence',
    'refit_from',

    # Warnings
    'FitWarning',
    'DataQualityWarning',
    'SelectionWarning',
    'LossFallbackWarning',

    # Exposed Modules
    'models',
    'utils',
]

__version__ = "0.1.0"
