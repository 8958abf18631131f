# config.py
"""
Explicit settings values passed into optimizer and model factories.

Nothing here is global: callers build a settings object (or take the
defaults) and hand it to the constructor that needs it.
"""
import dataclasses
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

# --- Optimizer Hyperparameters ---

@dataclass
class DESettings:
    population_size: int = 50
    max_iterations: int = 500
    F: float = 0.8 # Differential weight
    CR: float = 0.9 # Crossover rate
    tolerance: float = 1e-10
    stagnation_limit: int = 50
    F_jitter: float = 0.1 # F += F_jitter * (u - 0.5) each generation

@dataclass
class CMAESSettings:
    max_iterations: int = 500
    initial_sigma: float = 0.5
    tolerance: float = 1e-10
    stagnation_limit: int = 50
    min_sigma: float = 1e-8 # Step-size collapse floor
    sigma_range: Tuple[float, float] = (1e-10, 10.0)

@dataclass
class PSOSettings:
    swarm_size: int = 30
    max_iterations: int = 500
    inertia: float = 0.729
    min_inertia: float = 0.4 # Inertia decays linearly toward this value
    cognitive: float = 1.49445
    social: float = 1.49445
    tolerance: float = 1e-10
    stagnation_limit: int = 50
    max_velocity_ratio: float = 0.2 # Fraction of each range

@dataclass
class GWOSettings:
    pack_size: int = 30
    max_iterations: int = 500
    tolerance: float = 1e-10
    stagnation_limit: int = 50

@dataclass
class NelderMeadSettings:
    max_iterations: int = 1000
    tolerance: float = 1e-10
    alpha: float = 1.0 # Reflection
    gamma: float = 2.0 # Expansion
    rho: float = 0.5 # Contraction
    sigma: float = 0.5 # Shrink
    initial_step_ratio: float = 0.05 # Vertex offset as a fraction of each range
    stagnation_limit: int = 100

@dataclass
class GridGradientSettings:
    grid_size: Optional[int] = None # None: 20 (n<=2), 10 (n==3), 8 otherwise
    max_grid_points: int = 50_000
    gradient_iterations: int = 2000
    learning_rate: float = 5e-5
    gradient_delta: float = 1e-4
    history_every: int = 100
    tolerance: float = 1e-10

# --- Composition Strategies ---

@dataclass
class MultiStartSettings:
    n_starts: int = 5
    optimizer: str = "nelder_mead" # Engine run from each start
    boundary_quantiles: Tuple[float, float] = (0.1, 0.9)

@dataclass
class AutoSelectSettings:
    optimizers: Tuple[str, ...] = ("de", "cmaes", "pso", "gwo", "nelder_mead", "grid_gradient")
    max_workers: Optional[int] = None # >1 runs the algorithms in a thread pool

# --- Model Initialisation ---

@dataclass
class ModelInitSettings:
    """Heuristics for turning observed data into starting parameter values."""
    converged_scale: Tuple[float, float] = (1.1, 1.4) # a / max(y) when growth has flattened
    growing_scale: Tuple[float, float] = (1.5, 1.9) # a / max(y) when still growing
    scale_position: float = 0.3 # Where in the scale range to start
    convergence_threshold: float = 1.0 # Last increase at or below this counts as converged
    slope_thresholds: Tuple[float, float, float] = (0.1, 0.5, 1.0)
    exponential_rates: Tuple[float, float, float, float] = (0.05, 0.1, 0.2, 0.3)
    s_curve_rates: Tuple[float, float, float, float] = (0.08, 0.15, 0.25, 0.35)
    # Imperfect debugging
    p0: float = 0.1 # Fault introduction rate
    eta0: float = 0.8 # Initial removal efficiency
    eta_inf: float = 0.95 # Asymptotic removal efficiency
    alpha0: float = 0.1 # Error generation rate
    change_point_ratio: float = 0.5 # Initial tau as a fraction of the observed span

# --- Fitting ---

@dataclass
class FitSettings:
    loss: str = "sse" # "sse" or "mle"
    optimizer: str = "de" # Registry key, "auto" or "multistart"
    holdout: int = 0 # Trailing points reserved for validation
    seed: Optional[int] = None
    milestones: Tuple[float, ...] = (0.90, 0.95, 0.99, 0.999)
    aicc_ratio: float = 40.0 # Use AICc while n/k is below this
    optimizer_settings: Dict[str, Any] = field(default_factory=dict) # Per-algorithm settings objects
    multistart: MultiStartSettings = field(default_factory=MultiStartSettings)
    autoselect: AutoSelectSettings = field(default_factory=AutoSelectSettings)
    model_init: ModelInitSettings = field(default_factory=ModelInitSettings)


def settings_from_dict(cls: Type[T], mapping: Optional[Dict[str, Any]]) -> T:
    """
    Builds a settings dataclass from a plain mapping.
    Unknown keys are rejected; tuple-typed fields accept lists.
    """
    if mapping is None:
        return cls()
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls!r} is not a settings dataclass.")
    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = sorted(set(mapping) - set(known))
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {unknown}")
    values = {}
    for key, value in mapping.items():
        if isinstance(value, list):
            value = tuple(value)
        values[key] = value
    return cls(**values)
