# effort.py
"""
Test-effort functions W(t): cumulative testing effort consumed by time t.

Growth models in the "tef" family hold one of these and run their curve on
the effort axis instead of calendar time (m(t) = f(W(t))). Parameters are
ordered as `param_names`; bounds and initial values come from the observed
cumulative effort series when one is available, otherwise from the defect
counts themselves.
"""
import numpy as np
from abc import ABC, abstractmethod
from typing import Dict, Tuple, Type

from .datatypes import BoundsTuple


class EffortFunction(ABC):
    key: str = ""
    display_name: str = ""
    formula: str = ""
    param_names: Tuple[str, ...] = ()

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    @abstractmethod
    def evaluate(self, t, p) -> np.ndarray:
        """Cumulative effort W(t)."""

    @abstractmethod
    def rate(self, t, p) -> np.ndarray:
        """Effort consumption rate w(t) = dW/dt."""

    @abstractmethod
    def initial_parameters(self, t: np.ndarray, effort: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def bounds(self, t: np.ndarray, effort: np.ndarray) -> BoundsTuple:
        ...

    def __repr__(self):
        return f"{type(self).__name__}()"


def _max_effort(effort: np.ndarray) -> float:
    return max(float(np.max(effort)), 1.0)


class ExponentialEffort(EffortFunction):
    """Monotonically decreasing consumption rate."""
    key = "exponential"
    display_name = "Exponential TEF"
    formula = "W(t) = N(1 - e^(-beta*t))"
    param_names = ("N", "beta")

    def evaluate(self, t, p):
        N, beta = p[0], p[1]
        return N * (1 - np.exp(-beta * np.asarray(t, dtype=float)))

    def rate(self, t, p):
        N, beta = p[0], p[1]
        return N * beta * np.exp(-beta * np.asarray(t, dtype=float))

    def initial_parameters(self, t, effort):
        return np.array([_max_effort(effort) * 1.2, 0.1])

    def bounds(self, t, effort):
        w = _max_effort(effort)
        return np.array([w, 0.001]), np.array([w * 5, 2.0])


class RayleighEffort(EffortFunction):
    """Consumption rate rises, peaks, then decays."""
    key = "rayleigh"
    display_name = "Rayleigh TEF"
    formula = "W(t) = N(1 - e^(-(t/beta)^2))"
    param_names = ("N", "beta")

    def evaluate(self, t, p):
        N, beta = p[0], p[1]
        ratio = np.asarray(t, dtype=float) / beta
        return N * (1 - np.exp(-ratio ** 2))

    def rate(self, t, p):
        N, beta = p[0], p[1]
        t = np.asarray(t, dtype=float)
        return (2 * N * t / beta ** 2) * np.exp(-(t / beta) ** 2)

    def initial_parameters(self, t, effort):
        return np.array([_max_effort(effort) * 1.2, len(t) / 2.0])

    def bounds(self, t, effort):
        w = _max_effort(effort)
        return np.array([w, 1.0]), np.array([w * 5, max(len(t) * 2.0, 1.0)])


class WeibullEffort(EffortFunction):
    """General shape: m=1 is exponential, m=2 is Rayleigh."""
    key = "weibull"
    display_name = "Weibull TEF"
    formula = "W(t) = N(1 - e^(-(t/beta)^m))"
    param_names = ("N", "beta", "m")

    def evaluate(self, t, p):
        N, beta, m = p[0], p[1], p[2]
        ratio = np.asarray(t, dtype=float) / beta
        return N * (1 - np.exp(-np.power(ratio, m)))

    def rate(self, t, p):
        N, beta, m = p[0], p[1], p[2]
        ratio = np.asarray(t, dtype=float) / beta
        return (N * m / beta) * np.power(ratio, m - 1) * np.exp(-np.power(ratio, m))

    def initial_parameters(self, t, effort):
        return np.array([_max_effort(effort) * 1.2, len(t) / 2.0, 1.5])

    def bounds(self, t, effort):
        w = _max_effort(effort)
        return np.array([w, 1.0, 0.5]), np.array([w * 5, max(len(t) * 2.0, 1.0), 5.0])


class LogisticEffort(EffortFunction):
    """Non-zero effort at t = 0."""
    key = "logistic"
    display_name = "Logistic TEF"
    formula = "W(t) = N / (1 + A*e^(-alpha*t))"
    param_names = ("N", "A", "alpha")

    def evaluate(self, t, p):
        N, A, alpha = p[0], p[1], p[2]
        return N / (1 + A * np.exp(-alpha * np.asarray(t, dtype=float)))

    def rate(self, t, p):
        N, A, alpha = p[0], p[1], p[2]
        e = np.exp(-alpha * np.asarray(t, dtype=float))
        return N * A * alpha * e / (1 + A * e) ** 2

    def initial_parameters(self, t, effort):
        return np.array([_max_effort(effort) * 1.2, 5.0, 0.2])

    def bounds(self, t, effort):
        w = _max_effort(effort)
        return np.array([w, 1.0, 0.01]), np.array([w * 5, 50.0, 2.0])


class LogPowerEffort(EffortFunction):
    """Unbounded effort: W -> inf as t -> inf."""
    key = "log_power"
    display_name = "Log-power TEF"
    formula = "W(t) = a*ln(1 + t^b)"
    param_names = ("a", "b")

    def evaluate(self, t, p):
        a, b = p[0], p[1]
        return a * np.log1p(np.power(np.asarray(t, dtype=float), b))

    def rate(self, t, p):
        a, b = p[0], p[1]
        t = np.asarray(t, dtype=float)
        return a * b * np.power(t, b - 1) / (1 + np.power(t, b))

    def initial_parameters(self, t, effort):
        return np.array([_max_effort(effort) / np.log1p(len(t)), 1.0])

    def bounds(self, t, effort):
        w = _max_effort(effort)
        return np.array([1.0, 0.5]), np.array([max(w * 2, 1.0), 3.0])

# --- Registry of effort functions ---
EFFORT_FUNCTIONS: Dict[str, Type[EffortFunction]] = {
    cls.key: cls
    for cls in (ExponentialEffort, RayleighEffort, WeibullEffort, LogisticEffort, LogPowerEffort)
}


def get_effort_function(name: str) -> EffortFunction:
    if name not in EFFORT_FUNCTIONS:
        raise ValueError(f"Unknown effort function '{name}'. Available: {sorted(EFFORT_FUNCTIONS)}")
    return EFFORT_FUNCTIONS[name]()
