# datatypes.py
import datetime
import numpy as np
from dataclasses import dataclass, field
from typing import List, Dict, Tuple, Optional, Callable, Any

# Finite value handed to optimizers in place of NaN/Inf or a failed evaluation
PENALTY = 1e30

# --- Core Data Structures ---

@dataclass
class DefectDataset:
    """Observed cumulative defect counts for a single test campaign."""
    # --- Non-Defaults ---
    time: np.ndarray # Observation times, strictly increasing (usually day 1..N)
    cumulative_found: np.ndarray # Cumulative defects found, non-decreasing
    # --- Defaults ---
    secondary: Dict[str, np.ndarray] = field(default_factory=dict) # e.g. "corrected", "effort"
    start_date: Optional[datetime.date] = None # Calendar date of time == 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        t = np.array(self.time, dtype=float).ravel()
        y = np.array(self.cumulative_found, dtype=float).ravel()
        if len(t) < 1:
            raise ValueError("Dataset needs at least one observation.")
        if len(t) != len(y):
            raise ValueError(f"time ({len(t)}) and cumulative_found ({len(y)}) must have the same length.")
        if not (np.all(np.isfinite(t)) and np.all(np.isfinite(y))):
            raise ValueError("time and cumulative_found must be finite.")
        if np.any(np.diff(t) <= 0):
            raise ValueError("time must be strictly increasing.")
        if np.any(np.diff(y) < 0):
            raise ValueError("cumulative_found must be non-decreasing.")

        series = {}
        for name, values in self.secondary.items():
            arr = np.array(values, dtype=float).ravel()
            if len(arr) != len(t):
                raise ValueError(f"Secondary series '{name}' has length {len(arr)}, expected {len(t)}.")
            arr.flags.writeable = False
            series[name] = arr

        # Read-only for the lifetime of a fit
        t.flags.writeable = False
        y.flags.writeable = False
        self.time = t
        self.cumulative_found = y
        self.secondary = series

    @classmethod
    def from_daily_counts(
        cls,
        found: List[float],
        fixed: Optional[List[float]] = None,
        effort: Optional[List[float]] = None,
        start_date: Optional[datetime.date] = None,
    ) -> "DefectDataset":
        """Builds cumulative series over days 1..N from per-day counts."""
        found = np.asarray(found, dtype=float)
        secondary = {}
        if fixed is not None:
            secondary["corrected"] = np.cumsum(np.asarray(fixed, dtype=float))
        # All-zero effort means no effort was recorded
        if effort is not None and np.any(np.asarray(effort, dtype=float) > 0):
            secondary["effort"] = np.cumsum(np.asarray(effort, dtype=float))
        return cls(
            time=np.arange(1, len(found) + 1, dtype=float),
            cumulative_found=np.cumsum(found),
            secondary=secondary,
            start_date=start_date,
        )

    @property
    def n_points(self) -> int:
        return len(self.time)

    @property
    def total_found(self) -> float:
        return float(self.cumulative_found[-1])

    def head(self, n: int) -> "DefectDataset":
        """First n observations (training slice); secondary series are sliced alongside."""
        return DefectDataset(
            time=self.time[:n],
            cumulative_found=self.cumulative_found[:n],
            secondary={k: v[:n] for k, v in self.secondary.items()},
            start_date=self.start_date,
            metadata=dict(self.metadata),
        )

# --- Optimization Results ---

@dataclass(frozen=True)
class OptimizationResult:
    """Outcome of one optimizer run. Produced once, never mutated."""
    # --- Non-Defaults ---
    parameters: np.ndarray # Best parameter vector, inside the bounds
    objective_value: float
    success: bool
    algorithm_name: str
    # --- Defaults ---
    iterations: int = 0
    function_evaluations: int = 0
    elapsed_ms: float = 0.0
    convergence_history: Tuple[float, ...] = () # Best-so-far objective, non-increasing
    message: str = ""

    @classmethod
    def failed(cls, algorithm_name: str, message: str, n_params: int = 0, **kwargs) -> "OptimizationResult":
        return cls(
            parameters=np.full(n_params, np.nan),
            objective_value=PENALTY,
            success=False,
            algorithm_name=algorithm_name,
            message=message,
            **kwargs,
        )

@dataclass
class OptimizerComparison:
    """Per-algorithm results of running several optimizers on the same objective."""
    results: List[OptimizationResult] # Sorted by objective, successful runs first
    best: Optional[OptimizationResult] = None
    objective_spread: float = np.nan # max - min objective among successful runs

    def summary_rows(self) -> List[Dict[str, Any]]:
        return [
            {
                "algorithm": r.algorithm_name,
                "objective": r.objective_value,
                "success": r.success,
                "evaluations": r.function_evaluations,
                "iterations": r.iterations,
                "elapsed_ms": r.elapsed_ms,
                "message": r.message,
            }
            for r in self.results
        ]

# --- Fitting Results ---

@dataclass
class ConvergencePrediction:
    """When a fitted curve reaches a given share of the estimated total defects."""
    # --- Non-Defaults ---
    milestone: str # e.g. "90%"
    ratio: float
    target_count: float # ratio * asymptotic total
    already_reached: bool
    # --- Defaults ---
    predicted_time: Optional[float] = None # None if already reached or never reached
    remaining_time: Optional[float] = None
    predicted_date: Optional[datetime.date] = None

@dataclass
class HoldoutMetrics:
    """Prediction error on the held-out tail of the series."""
    n_train: int
    n_test: int
    mse: float
    mae: float
    mape: float # Percent; nan if every actual value was ~0

@dataclass
class FitResult:
    """Structure for one (model, dataset) fitting outcome."""
    # --- Non-Defaults ---
    model_name: str
    category: str
    success: bool
    message: str
    # --- Defaults ---
    parameters: Dict[str, float] = field(default_factory=dict) # Named view of parameter_vector
    parameter_vector: Optional[np.ndarray] = None # Ordered as model.param_names
    n_datapoints: int = 0
    n_parameters: int = 0
    loss_name: str = "sse"
    sse: Optional[float] = None # On the full primary series
    mse: Optional[float] = None
    r_squared: Optional[float] = None
    log_likelihood: Optional[float] = None
    aic: Optional[float] = None
    aicc: Optional[float] = None # None when n <= k + 1
    bic: Optional[float] = None
    selection_criterion: str = "invalid" # "AIC", "AICc" or "invalid"
    selection_score: Optional[float] = None
    estimated_total: Optional[float] = None # Asymptotic defect count
    prediction_times: Optional[np.ndarray] = None
    predicted_values: Optional[np.ndarray] = None
    convergence_predictions: Dict[str, ConvergencePrediction] = field(default_factory=dict)
    holdout: Optional[HoldoutMetrics] = None
    optimizer_used: str = ""
    function_evaluations: int = 0
    optimization_time_ms: float = 0.0
    warnings: List[str] = field(default_factory=list) # Append-only

    def add_warning(self, message: str):
        self.warnings.append(message)

# --- Type Hints ---

# Objective consumed by every optimizer: parameter vector -> scalar
ObjectiveCallable = Callable[[np.ndarray], float]

# Per-iteration hook: (iteration, best_parameters, best_value) -> True to stop
IterationCallback = Callable[[int, np.ndarray, float], Optional[bool]]

# Bounds pair (lower, upper)
BoundsTuple = Tuple[np.ndarray, np.ndarray]
