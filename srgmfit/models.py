# models.py
import numpy as np
from abc import ABC, abstractmethod
from scipy.optimize import brentq
from typing import Dict, List, Tuple, Optional, Union, Type, Any

from .config import ModelInitSettings
from .datatypes import BoundsTuple
from .effort import EffortFunction, get_effort_function
from .utils import r_squared

# Latest time searched when predicting milestone dates
PREDICTION_HORIZON = 10000.0

# ==============================================================================
# <<< Growth-Model Contract >>>
# ==============================================================================

class GrowthModel(ABC):
    """
    Mean value function m(t): expected cumulative defects found by time t.

    Every model exposes the same capability set: evaluate, propose initial
    parameters, propose bounds and report the asymptotic total. Models that also
    predict a secondary observed series (corrected counts, cumulative effort)
    return it from `secondary_predictions` and declare its kind in
    `secondary_kinds` ("count" or "continuous").

    Instances hold no fitting state and can be shared across evaluations.
    """
    name: str = "" # Registry key
    display_name: str = ""
    category: str = ""
    formula: str = ""
    description: str = ""
    param_names: Tuple[str, ...] = ()
    secondary_kinds: Dict[str, str] = {}
    supports_mle: bool = True # False falls back to SSE when MLE is requested

    def __init__(self, init_settings: Optional[ModelInitSettings] = None):
        self.init_settings = init_settings if init_settings is not None else ModelInitSettings()

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    @abstractmethod
    def evaluate(self, t, p) -> np.ndarray:
        """m(t) for scalar or array t."""

    @abstractmethod
    def initial_parameters(self, t: np.ndarray, y: np.ndarray, secondary: Optional[Dict[str, np.ndarray]] = None) -> np.ndarray:
        ...

    @abstractmethod
    def bounds(self, t: np.ndarray, y: np.ndarray, secondary: Optional[Dict[str, np.ndarray]] = None) -> BoundsTuple:
        ...

    def asymptotic_total(self, p) -> float:
        """Estimated total defects, lim m(t) as t -> inf."""
        return float(p[0])

    def secondary_predictions(self, t, p) -> Dict[str, np.ndarray]:
        return {}

    # --- Derived helpers ---

    def sse(self, t, y, p) -> float:
        residuals = np.asarray(y, dtype=float) - self.evaluate(t, p)
        return float(np.sum(residuals ** 2))

    def r_squared(self, t, y, p) -> float:
        return r_squared(y, self.evaluate(t, p))

    def predict_time_for_ratio(self, ratio: float, p, current_time: float) -> Optional[float]:
        """
        Time at which m(t) reaches ratio * asymptotic_total.
        Returns None if already reached by current_time, inf if not reached
        by PREDICTION_HORIZON.
        """
        target = ratio * self.asymptotic_total(p)
        if not np.isfinite(target):
            return np.inf

        def gap(x):
            return float(self.evaluate(x, p)) - target

        low_gap = gap(current_time)
        if not np.isfinite(low_gap):
            return np.inf
        if low_gap >= 0:
            return None
        if current_time >= PREDICTION_HORIZON:
            return np.inf
        # Bracket never extends past the horizon
        t_high = min(max(current_time * 10.0, current_time + 1.0), PREDICTION_HORIZON)
        while gap(t_high) < 0 and t_high < PREDICTION_HORIZON:
            t_high = min(t_high * 2.0, PREDICTION_HORIZON)
        high_gap = gap(t_high)
        if not np.isfinite(high_gap) or high_gap < 0:
            return np.inf
        return float(brentq(gap, current_time, t_high, xtol=1e-8))

    # --- Initial-value heuristics (driven by init_settings) ---

    def _is_converged(self, y: np.ndarray) -> bool:
        if len(y) < 2:
            return False
        return (y[-1] - y[-2]) <= self.init_settings.convergence_threshold

    def _scale_a(self, y: np.ndarray) -> float:
        s = self.init_settings
        low, high = s.converged_scale if self._is_converged(y) else s.growing_scale
        return _max_y(y) * (low + s.scale_position * (high - low))

    @staticmethod
    def _growth_slope(y: np.ndarray) -> float:
        """Recent mean increase relative to the overall mean increase (1 = steady, 0 = flat)."""
        if len(y) < 3 or y[-1] - y[0] <= 0:
            return 0.0
        overall = (y[-1] - y[0]) / (len(y) - 1)
        k = min(3, len(y) - 1)
        recent = (y[-1] - y[-1 - k]) / k
        return recent / overall

    def _rate_b(self, y: np.ndarray, s_curve: bool = False) -> float:
        s = self.init_settings
        rates = s.s_curve_rates if s_curve else s.exponential_rates
        very_low, low, medium = s.slope_thresholds
        slope = self._growth_slope(y)
        # A flattened curve implies a fast detection rate
        if slope < very_low: return rates[3]
        if slope < low: return rates[2]
        if slope < medium: return rates[1]
        return rates[0]

    def _tau0(self, t: np.ndarray) -> float:
        low, high = _tau_bounds(t)
        tau = t[0] + self.init_settings.change_point_ratio * (t[-1] - t[0])
        return float(np.clip(tau, low, high))

    def __repr__(self):
        return f"{type(self).__name__}()"


def _max_y(y) -> float:
    return max(float(np.max(y)), 1.0)


def _tau_bounds(t: np.ndarray) -> Tuple[float, float]:
    """Change points may sit between the second and the third-from-last observation."""
    n = len(t)
    low = float(t[min(1, n - 1)])
    high = float(t[max(n - 3, 0)])
    return low, max(low, high)


def _as_t(t) -> np.ndarray:
    return np.asarray(t, dtype=float)

# ==============================================================================
# <<< Basic Models >>>
# ==============================================================================

class ExponentialModel(GrowthModel):
    """Goel-Okumoto NHPP model."""
    name = "exponential"
    display_name = "Exponential (Goel-Okumoto)"
    category = "basic"
    formula = "m(t) = a(1 - e^(-bt))"
    param_names = ("a", "b")

    def evaluate(self, t, p):
        a, b = p[0], p[1]
        return a * (1 - np.exp(-b * _as_t(t)))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([self._scale_a(y), self._rate_b(y)])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001]), np.array([m * 5, 1.0])


class DelayedSModel(GrowthModel):
    """Yamada delayed S-shaped model."""
    name = "delayed_s"
    display_name = "Delayed S-shaped"
    category = "basic"
    formula = "m(t) = a(1 - (1+bt)e^(-bt))"
    param_names = ("a", "b")

    def evaluate(self, t, p):
        a, b = p[0], p[1]
        bt = b * _as_t(t)
        return a * (1 - (1 + bt) * np.exp(-bt))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([self._scale_a(y), self._rate_b(y, s_curve=True)])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001]), np.array([m * 5, 1.0])


class GompertzModel(GrowthModel):
    name = "gompertz"
    display_name = "Gompertz"
    category = "basic"
    formula = "m(t) = a*e^(-b*e^(-ct))"
    param_names = ("a", "b", "c")

    def evaluate(self, t, p):
        a, b, c = p[0], p[1], p[2]
        return a * np.exp(-b * np.exp(-c * _as_t(t)))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.5, 2.0, 0.15])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.1, 0.001]), np.array([m * 5, 10.0, 1.0])


class ModifiedGompertzModel(GrowthModel):
    name = "modified_gompertz"
    display_name = "Modified Gompertz"
    category = "basic"
    formula = "m(t) = a(c - e^(-bt))"
    param_names = ("a", "b", "c")

    def evaluate(self, t, p):
        a, b, c = p[0], p[1], p[2]
        return a * (c - np.exp(-b * _as_t(t)))

    def asymptotic_total(self, p):
        return float(p[0] * p[2])

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y), 0.1, 1.2])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([1.0, 0.001, 1.01]), np.array([m * 5, 1.0, 2.0])


class LogisticModel(GrowthModel):
    name = "logistic"
    display_name = "Logistic"
    category = "basic"
    formula = "m(t) = a / (1 + e^(-b(t-c)))"
    param_names = ("a", "b", "c")

    def evaluate(self, t, p):
        a, b, c = p[0], p[1], p[2]
        return a / (1 + np.exp(-b * (_as_t(t) - c)))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.5, 0.3, (t[0] + t[-1]) / 2.0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.01, float(t[0])]), np.array([m * 5, 2.0, max(2.0 * t[-1], float(t[0]))])


class WeibullModel(GrowthModel):
    """Goel generalized (Weibull-type) NHPP model."""
    name = "weibull"
    display_name = "Weibull (Goel generalized)"
    category = "basic"
    formula = "m(t) = a(1 - e^(-b*t^c))"
    param_names = ("a", "b", "c")

    def evaluate(self, t, p):
        a, b, c = p[0], p[1], p[2]
        return a * (1 - np.exp(-b * np.power(_as_t(t), c)))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([self._scale_a(y), self._rate_b(y), 1.0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001, 0.5]), np.array([m * 5, 1.0, 3.0])

# ==============================================================================
# <<< Imperfect Debugging Models >>>
# ==============================================================================

class PhamExponentialModel(GrowthModel):
    """Pham imperfect-debugging model with fault introduction rate p."""
    name = "pham_exponential"
    display_name = "Pham imperfect debugging (exponential)"
    category = "imperfect_debug"
    formula = "m(t) = a(1-e^(-bt)) / (1+p*e^(-bt))"
    param_names = ("a", "b", "p")

    def evaluate(self, t, p):
        a, b, q = p[0], p[1], p[2]
        e = np.exp(-b * _as_t(t))
        return a * (1 - e) / (1 + q * e)

    def initial_parameters(self, t, y, secondary=None):
        return np.array([self._scale_a(y), self._rate_b(y), self.init_settings.p0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        # p = 0 reduces to the exponential model
        return np.array([m, 0.001, 0.0]), np.array([m * 5, 1.0, 0.99])


class PhamWeibullModel(GrowthModel):
    name = "pham_weibull"
    display_name = "Weibull imperfect debugging"
    category = "imperfect_debug"
    formula = "m(t) = a(1-e^(-bt^c)) / (1+p(1-e^(-bt^c)))"
    param_names = ("a", "b", "c", "p")

    def evaluate(self, t, p):
        a, b, c, q = p[0], p[1], p[2], p[3]
        detected = 1 - np.exp(-b * np.power(_as_t(t), c))
        return a * detected / (1 + q * detected)

    def asymptotic_total(self, p):
        return float(p[0] / (1 + p[3]))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([self._scale_a(y), self._rate_b(y), 1.0, self.init_settings.p0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001, 0.5, 0.0]), np.array([m * 5, 1.0, 2.0, 0.99])

# ==============================================================================
# <<< Test-Coverage Models >>>
# ==============================================================================

class CoverageModel(GrowthModel):
    """m(t) = a * C(t), where C(t) is the fraction of code covered by time t."""
    category = "coverage"

    @abstractmethod
    def coverage(self, t, p) -> np.ndarray:
        ...

    def evaluate(self, t, p):
        return p[0] * self.coverage(t, p)


class WeibullCoverageModel(CoverageModel):
    name = "coverage_weibull"
    display_name = "Weibull coverage"
    formula = "m(t) = a(1-e^(-(beta*t)^gamma))"
    param_names = ("a", "beta", "gamma")

    def coverage(self, t, p):
        beta, gamma = p[1], p[2]
        x = np.maximum(beta * _as_t(t), 0.0)
        return 1.0 - np.exp(-np.power(x, gamma))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.5, 2.0 / max(len(t), 1), 1.0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 1e-8, 0.1]), np.array([m * 100, 10.0, 5.0])


class LogisticCoverageModel(CoverageModel):
    name = "coverage_logistic"
    display_name = "Logistic coverage"
    formula = "m(t) = a/(1+e^(-beta(t-tau)))"
    param_names = ("a", "beta", "tau")

    def coverage(self, t, p):
        beta, tau = p[1], p[2]
        return 1.0 / (1.0 + np.exp(-beta * (_as_t(t) - tau)))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.5, 0.2, (t[0] + t[-1]) / 2.0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.01, float(t[0])]), np.array([m * 100, 2.0, max(2.0 * t[-1], float(t[0]))])


class GompertzCoverageModel(CoverageModel):
    name = "coverage_gompertz"
    display_name = "Gompertz coverage"
    formula = "m(t) = a*exp(-e^(-beta(t-tau)))"
    param_names = ("a", "beta", "tau")

    def coverage(self, t, p):
        beta, tau = p[1], p[2]
        return np.exp(-np.exp(-beta * (_as_t(t) - tau)))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.5, 0.15, (t[0] + t[-1]) / 2.0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001, float(t[0])]), np.array([m * 100, 1.0, max(2.0 * t[-1], float(t[0]))])

# ==============================================================================
# <<< Change-Point Models >>>
# ==============================================================================

def _imperfect_curve(a, b, alpha, t):
    """Imperfect-debugging mean value a(1-E)/(1-alpha(1-E)), E = e^(-b(1-alpha)t); tends to a/(1-alpha)."""
    alpha = np.minimum(alpha, 0.99)
    e = np.exp(-b * (1 - alpha) * t)
    denominator = 1 - alpha * (1 - e)
    return np.where(denominator > 0, a * (1 - e) / np.where(denominator > 0, denominator, 1.0), a)


class ExponentialChangePointModel(GrowthModel):
    name = "cp_exponential"
    display_name = "Exponential with change point"
    category = "change_point"
    formula = "m(t) = a1(1-e^(-b1 t)) [t<=tau], m(tau)+a2(1-e^(-b2(t-tau))) [t>tau]"
    param_names = ("a1", "b1", "a2", "b2", "tau")

    def evaluate(self, t, p):
        a1, b1, a2, b2, tau = p[0], p[1], p[2], p[3], p[4]
        t = _as_t(t)
        m_tau = a1 * (1 - np.exp(-b1 * tau))
        after = m_tau + a2 * (1 - np.exp(-b2 * np.maximum(t - tau, 0.0)))
        return np.where(t <= tau, a1 * (1 - np.exp(-b1 * t)), after)

    def asymptotic_total(self, p):
        return float(p[0] * (1 - np.exp(-p[1] * p[4])) + p[2])

    def initial_parameters(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m * 0.6, 0.15, m * 0.6, 0.15, self._tau0(t)])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        tau_low, tau_high = _tau_bounds(t)
        return np.array([1.0, 0.001, 1.0, 0.001, tau_low]), np.array([m * 3, 1.0, m * 3, 1.0, tau_high])


class DelayedSChangePointModel(GrowthModel):
    name = "cp_delayed_s"
    display_name = "Delayed S-shaped with change point"
    category = "change_point"
    formula = "m(t) = a1(1-(1+b1 t)e^(-b1 t)) [t<=tau], m(tau)+a2(1-(1+b2 dt)e^(-b2 dt)) [t>tau]"
    param_names = ("a1", "b1", "a2", "b2", "tau")

    @staticmethod
    def _s(a, b, t):
        return a * (1 - (1 + b * t) * np.exp(-b * t))

    def evaluate(self, t, p):
        a1, b1, a2, b2, tau = p[0], p[1], p[2], p[3], p[4]
        t = _as_t(t)
        after = self._s(a1, b1, tau) + self._s(a2, b2, np.maximum(t - tau, 0.0))
        return np.where(t <= tau, self._s(a1, b1, t), after)

    def asymptotic_total(self, p):
        return float(self._s(p[0], p[1], p[4]) + p[2])

    def initial_parameters(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m * 0.6, 0.2, m * 0.6, 0.2, self._tau0(t)])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        tau_low, tau_high = _tau_bounds(t)
        return np.array([1.0, 0.001, 1.0, 0.001, tau_low]), np.array([m * 3, 1.0, m * 3, 1.0, tau_high])


class ImperfectDebugChangePointModel(GrowthModel):
    """Imperfect debugging whose detection rate switches from b1 to b2 at tau."""
    name = "cp_imperfect_debug"
    display_name = "Imperfect debugging with change point"
    category = "change_point"
    formula = "m(t) = a(1-E)/(1-alpha(1-E)), E = e^(-b1(1-alpha)t) [t<=tau]; restarts from m(tau) with rate b2 [t>tau]"
    param_names = ("a", "b1", "b2", "alpha", "tau")

    def evaluate(self, t, p):
        a, b1, b2, alpha, tau = p[0], p[1], p[2], p[3], p[4]
        t = _as_t(t)
        m_tau = _imperfect_curve(a, b1, alpha, tau)
        remaining = a + min(alpha, 0.99) * m_tau - m_tau
        increment = np.maximum(_imperfect_curve(np.maximum(remaining, 0.0), b2, alpha, np.maximum(t - tau, 0.0)), 0.0)
        after = m_tau + np.where(remaining > 0, increment, 0.0)
        return np.where(t <= tau, _imperfect_curve(a, b1, alpha, t), after)

    def asymptotic_total(self, p):
        return float(p[0] / (1 - min(p[3], 0.99)))

    def initial_parameters(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m * 1.2, 0.1, 0.15, self.init_settings.alpha0, self._tau0(t)])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        tau_low, tau_high = _tau_bounds(t)
        return np.array([m, 0.001, 0.001, 0.0, tau_low]), np.array([m * 5, 1.0, 1.0, 0.5, tau_high])


class PNZChangePointModel(GrowthModel):
    """Pham-Nordmann-Zhang form with a piecewise-linear detection exponent."""
    name = "cp_pnz"
    display_name = "PNZ with change point"
    category = "change_point"
    formula = "m(t) = a(1-e^(-u))/(1+p*e^(-u)), u = b1 t [t<=tau], b1 tau + b2(t-tau) [t>tau]"
    param_names = ("a", "b1", "b2", "p", "tau")

    def evaluate(self, t, p):
        a, b1, b2, q, tau = p[0], p[1], p[2], p[3], p[4]
        t = _as_t(t)
        u = np.where(t <= tau, b1 * t, b1 * tau + b2 * (t - tau))
        e = np.exp(-u)
        denominator = 1 + q * e
        safe = np.abs(denominator) >= 1e-10
        return np.where(safe, a * (1 - e) / np.where(safe, denominator, 1.0), a)

    def initial_parameters(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m * 1.5, 0.1, 0.1, self.init_settings.p0, self._tau0(t)])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        tau_low, tau_high = _tau_bounds(t)
        return np.array([m, 1e-8, 1e-8, -0.5, tau_low]), np.array([m * 5, 1.0, 1.0, 5.0, tau_high])


class MultipleChangePointModel(GrowthModel):
    """Exponential segments joined at several change points (1 to 3)."""
    name = "cp_multiple"
    display_name = "Exponential with multiple change points"
    category = "change_point"
    formula = "m(t) = sum_i a_i(1 - e^(-b_i * dt_i)), segments split at tau_1..tau_k"

    def __init__(self, init_settings: Optional[ModelInitSettings] = None, n_change_points: int = 2):
        super().__init__(init_settings)
        self.n_change_points = min(3, max(1, int(n_change_points)))
        n_segments = self.n_change_points + 1
        names = []
        for i in range(n_segments):
            names += [f"a{i + 1}", f"b{i + 1}"]
        names += [f"tau{i + 1}" for i in range(self.n_change_points)]
        self.param_names = tuple(names)

    def _split(self, p):
        k = self.n_change_points + 1
        p = np.asarray(p, dtype=float)
        return p[0:2 * k:2], p[1:2 * k:2], np.sort(p[2 * k:])

    def evaluate(self, t, p):
        a, b, tau = self._split(p)
        t = _as_t(t)
        starts = np.concatenate(([0.0], tau))
        ends = np.concatenate((tau, [np.inf]))
        total = np.zeros_like(t, dtype=float)
        for a_i, b_i, start, end in zip(a, b, starts, ends):
            dt = np.clip(t - start, 0.0, end - start)
            total = total + a_i * (1 - np.exp(-b_i * dt))
        return total

    def asymptotic_total(self, p):
        a, b, tau = self._split(p)
        widths = np.diff(np.concatenate(([0.0], tau)))
        closed = np.sum(a[:-1] * (1 - np.exp(-b[:-1] * widths)))
        return float(closed + a[-1])

    def initial_parameters(self, t, y, secondary=None):
        n_segments = self.n_change_points + 1
        values = []
        for _ in range(n_segments):
            values += [_max_y(y) / n_segments, 0.15]
        tau_low, tau_high = _tau_bounds(t)
        for i in range(1, n_segments):
            values.append(float(np.clip(t[0] + (t[-1] - t[0]) * i / n_segments, tau_low, tau_high)))
        return np.array(values)

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        tau_low, tau_high = _tau_bounds(t)
        lower, upper = [], []
        for _ in range(self.n_change_points + 1):
            lower += [1.0, 0.001]
            upper += [m * 2, 1.0]
        lower += [tau_low] * self.n_change_points
        upper += [tau_high] * self.n_change_points
        return np.array(lower), np.array(upper)

    def __repr__(self):
        return f"{type(self).__name__}(n_change_points={self.n_change_points})"

# ==============================================================================
# <<< Test-Effort (TEF) Models >>>
# ==============================================================================

class EffortModel(GrowthModel):
    """
    Growth curve driven by a test-effort function: m(t) = g(W(t)).

    The effort function is a component, not a base class; its parameters are
    appended after the curve's own (`curve_params`). The model also predicts
    the cumulative effort series so it can be fitted against observed effort.
    """
    category = "tef"
    curve_params: Tuple[str, ...] = ()
    secondary_kinds = {"effort": "continuous"}

    def __init__(self, init_settings: Optional[ModelInitSettings] = None, effort: Union[str, EffortFunction] = "weibull"):
        super().__init__(init_settings)
        self.effort = get_effort_function(effort) if isinstance(effort, str) else effort
        self.param_names = tuple(self.curve_params) + tuple(f"TEF_{n}" for n in self.effort.param_names)
        self.base_name = type(self).name
        self.name = self.base_name if self.effort.key == "weibull" else f"{self.base_name}_{self.effort.key}"
        self.display_name = f"{type(self).display_name} ({self.effort.display_name})"

    def _split(self, p):
        k = len(self.curve_params)
        return p[:k], p[k:]

    @abstractmethod
    def _on_effort(self, W, curve_p):
        """Curve value at cumulative effort W."""

    @abstractmethod
    def _curve_initial(self, y) -> List[float]:
        ...

    @abstractmethod
    def _curve_bounds(self, y) -> Tuple[List[float], List[float]]:
        ...

    def _limit_at_infinite_effort(self, curve_p) -> float:
        return float(curve_p[0])

    def evaluate(self, t, p):
        curve_p, effort_p = self._split(p)
        return self._on_effort(self.effort.evaluate(t, effort_p), curve_p)

    def secondary_predictions(self, t, p):
        _, effort_p = self._split(p)
        return {"effort": self.effort.evaluate(t, effort_p)}

    def asymptotic_total(self, p):
        curve_p, effort_p = self._split(p)
        w_inf = float(self.effort.evaluate(np.inf, effort_p))
        if not np.isfinite(w_inf):
            return self._limit_at_infinite_effort(curve_p)
        return float(self._on_effort(w_inf, curve_p))

    @staticmethod
    def _effort_data(y, secondary):
        if secondary and "effort" in secondary:
            return np.asarray(secondary["effort"], dtype=float)
        return np.asarray(y, dtype=float)

    def initial_parameters(self, t, y, secondary=None):
        effort_init = self.effort.initial_parameters(t, self._effort_data(y, secondary))
        return np.concatenate((self._curve_initial(y), effort_init))

    def bounds(self, t, y, secondary=None):
        curve_lower, curve_upper = self._curve_bounds(y)
        effort_lower, effort_upper = self.effort.bounds(t, self._effort_data(y, secondary))
        return np.concatenate((curve_lower, effort_lower)), np.concatenate((curve_upper, effort_upper))

    def __repr__(self):
        return f"{type(self).__name__}(effort={self.effort!r})"


class EffortExponentialModel(EffortModel):
    name = "tef_exponential"
    display_name = "TEF exponential"
    formula = "m(t) = a(1 - e^(-b*W(t)))"
    curve_params = ("a", "b")

    def _on_effort(self, W, curve_p):
        a, b = curve_p[0], curve_p[1]
        return a * (1 - np.exp(-b * W))

    def _curve_initial(self, y):
        return [_max_y(y) * 1.5, 0.01]

    def _curve_bounds(self, y):
        m = _max_y(y)
        return [m, 0.0001], [m * 5, 1.0]


class EffortDelayedSModel(EffortModel):
    name = "tef_delayed_s"
    display_name = "TEF delayed S-shaped"
    formula = "m(t) = a(1 - (1+b*W)e^(-b*W))"
    curve_params = ("a", "b")

    def _on_effort(self, W, curve_p):
        a, b = curve_p[0], curve_p[1]
        bW = b * W
        return a * (1 - (1 + bW) * np.exp(-bW))

    def _curve_initial(self, y):
        return [_max_y(y) * 1.5, 0.02]

    def _curve_bounds(self, y):
        m = _max_y(y)
        return [m, 0.0001], [m * 5, 1.0]


class EffortImperfectDebugModel(EffortModel):
    name = "tef_imperfect_debug"
    display_name = "TEF imperfect debugging"
    formula = "m(t) = a(1-E)/(1-alpha(1-E)), E = e^(-b(1-alpha)W(t))"
    curve_params = ("a", "b", "alpha")

    def _on_effort(self, W, curve_p):
        a, b, alpha = curve_p[0], curve_p[1], curve_p[2]
        return _imperfect_curve(a, b, alpha, W)

    def _limit_at_infinite_effort(self, curve_p):
        return float(curve_p[0] / (1 - min(curve_p[2], 0.99)))

    def _curve_initial(self, y):
        return [_max_y(y) * 1.5, 0.01, self.init_settings.alpha0]

    def _curve_bounds(self, y):
        m = _max_y(y)
        return [m, 0.0001, 0.0], [m * 5, 1.0, 0.5]

# ==============================================================================
# <<< Fault-Removal-Efficiency (FRE) Models >>>
# ==============================================================================

class RemovalEfficiencyModel(GrowthModel):
    """
    Separates detected and corrected defects. `evaluate` is the detected curve;
    `corrected` is predicted as the secondary "corrected" count series.
    """
    category = "fre"
    secondary_kinds = {"corrected": "count"}

    @abstractmethod
    def corrected(self, t, p) -> np.ndarray:
        ...

    @abstractmethod
    def removal_efficiency(self, t, p) -> np.ndarray:
        ...

    def remaining(self, t, p) -> np.ndarray:
        """Latent defects still in the product at time t."""
        return self.asymptotic_total(p) - self.corrected(t, p)

    def secondary_predictions(self, t, p):
        return {"corrected": self.corrected(t, p)}


class ConstantFREModel(RemovalEfficiencyModel):
    name = "fre_constant"
    display_name = "Constant FRE"
    formula = "m_c(t) = eta*m_d(t), m_d(t) = a(1-e^(-bt))"
    param_names = ("a", "b", "eta")

    def evaluate(self, t, p):
        a, b = p[0], p[1]
        return a * (1 - np.exp(-b * _as_t(t)))

    def corrected(self, t, p):
        return p[2] * self.evaluate(t, p)

    def removal_efficiency(self, t, p):
        return np.full_like(_as_t(t), p[2], dtype=float)

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.5, 0.1, self.init_settings.eta0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001, 0.3]), np.array([m * 5, 1.0, 1.0])


class LearningFREModel(RemovalEfficiencyModel):
    """Removal efficiency improves with experience: eta(t) = eta_inf - (eta_inf - eta0)e^(-lambda t)."""
    name = "fre_learning"
    display_name = "Learning FRE"
    formula = "m_c(t) = integral_0^t eta(s) dm_d(s), eta(t) = eta_inf - (eta_inf - eta0)e^(-lambda t)"
    param_names = ("a", "b", "eta0", "eta_inf", "lambda")

    def evaluate(self, t, p):
        a, b = p[0], p[1]
        return a * (1 - np.exp(-b * _as_t(t)))

    def corrected(self, t, p):
        a, b, eta0, eta_inf, lam = p[0], p[1], p[2], p[3], p[4]
        t = _as_t(t)
        steady = eta_inf * a * (1 - np.exp(-b * t))
        transient = (eta_inf - eta0) * a * b * (1 - np.exp(-(lam + b) * t)) / (lam + b)
        return steady - transient

    def removal_efficiency(self, t, p):
        eta0, eta_inf, lam = p[2], p[3], p[4]
        return eta_inf - (eta_inf - eta0) * np.exp(-lam * _as_t(t))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.5, 0.1, 0.5, self.init_settings.eta_inf, 0.1])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001, 0.1, 0.7, 0.01]), np.array([m * 5, 1.0, 0.9, 1.0, 1.0])


def _error_generation_detected(a0, b, alpha, t):
    alpha = min(alpha, 0.99)
    factor = 1 - alpha
    return a0 * (1 - np.exp(-b * factor * t)) / factor


class ErrorGenerationModel(RemovalEfficiencyModel):
    """New defects are introduced at rate alpha per detected defect; all detected defects are fixed."""
    name = "error_generation"
    display_name = "Error generation"
    formula = "a(t) = a0 + alpha*m_d(t), m_d(t) = a0(1-e^(-b(1-alpha)t))/(1-alpha)"
    param_names = ("a0", "b", "alpha")

    def evaluate(self, t, p):
        return _error_generation_detected(p[0], p[1], p[2], _as_t(t))

    def corrected(self, t, p):
        return self.evaluate(t, p)

    def removal_efficiency(self, t, p):
        return np.ones_like(_as_t(t), dtype=float)

    def remaining(self, t, p):
        return p[0] - (1 - p[2]) * self.evaluate(t, p)

    def asymptotic_total(self, p):
        return float(p[0] / (1 - min(p[2], 0.99)))

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.2, 0.1, self.init_settings.alpha0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001, 0.0]), np.array([m * 3, 1.0, 0.5])


class FREErrorGenerationModel(RemovalEfficiencyModel):
    name = "fre_error_generation"
    display_name = "FRE with error generation"
    formula = "m_c = eta*m_d, a(t) = a0 + alpha*m_d"
    param_names = ("a0", "b", "eta", "alpha")

    def evaluate(self, t, p):
        return _error_generation_detected(p[0], p[1], p[3], _as_t(t))

    def corrected(self, t, p):
        return p[2] * self.evaluate(t, p)

    def removal_efficiency(self, t, p):
        return np.full_like(_as_t(t), p[2], dtype=float)

    def remaining(self, t, p):
        detected = self.evaluate(t, p)
        return p[0] + p[3] * detected - p[2] * detected

    def asymptotic_total(self, p):
        return float(p[0] / (1 - min(p[3], 0.99)))

    def initial_parameters(self, t, y, secondary=None):
        s = self.init_settings
        return np.array([_max_y(y) * 1.2, 0.1, s.eta0, s.alpha0])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001, 0.3, 0.0]), np.array([m * 3, 1.0, 1.0, 0.5])


class LogisticFRFModel(RemovalEfficiencyModel):
    """S-shaped fault reduction factor applied to exponential detection."""
    name = "fre_logistic"
    display_name = "Logistic FRF"
    formula = "m_c(t) = m_d(t)/(1+beta*e^(-gamma t)), m_d(t) = a(1-e^(-bt))"
    param_names = ("a", "b", "beta", "gamma")

    def evaluate(self, t, p):
        a, b = p[0], p[1]
        return a * (1 - np.exp(-b * _as_t(t)))

    def removal_efficiency(self, t, p):
        beta, gamma = p[2], p[3]
        return 1.0 / (1 + beta * np.exp(-gamma * _as_t(t)))

    def corrected(self, t, p):
        return self.removal_efficiency(t, p) * self.evaluate(t, p)

    def initial_parameters(self, t, y, secondary=None):
        return np.array([_max_y(y) * 1.5, 0.1, 5.0, 0.2])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        return np.array([m, 0.001, 0.5, 0.01]), np.array([m * 5, 1.0, 50.0, 2.0])


class IntegratedFREModel(RemovalEfficiencyModel):
    """Removal efficiency, error generation and a detection-rate change point combined."""
    name = "fre_integrated"
    display_name = "Integrated FRE"
    formula = "FRE + error generation + change point"
    param_names = ("a", "b1", "b2", "eta", "alpha", "tau")

    def evaluate(self, t, p):
        a, b1, b2, alpha, tau = p[0], p[1], p[2], min(p[4], 0.99), p[5]
        t = _as_t(t)
        factor = 1 - alpha
        m_tau = a * (1 - np.exp(-b1 * factor * tau)) / factor
        remaining = a - factor * m_tau
        increment = np.maximum(remaining * (1 - np.exp(-b2 * factor * np.maximum(t - tau, 0.0))) / factor, 0.0)
        after = m_tau + (increment if remaining > 0 else 0.0)
        return np.where(t <= tau, a * (1 - np.exp(-b1 * factor * t)) / factor, after)

    def corrected(self, t, p):
        return p[3] * self.evaluate(t, p)

    def removal_efficiency(self, t, p):
        return np.full_like(_as_t(t), p[3], dtype=float)

    def asymptotic_total(self, p):
        return float(p[0] / (1 - min(p[4], 0.99)))

    def initial_parameters(self, t, y, secondary=None):
        s = self.init_settings
        return np.array([_max_y(y) * 1.5, 0.1, 0.15, s.eta0, s.alpha0, self._tau0(t)])

    def bounds(self, t, y, secondary=None):
        m = _max_y(y)
        tau_low, tau_high = _tau_bounds(t)
        return np.array([m, 0.001, 0.001, 0.3, 0.0, tau_low]), np.array([m * 5, 1.0, 1.0, 1.0, 0.5, tau_high])

# --- Registry of growth models ---
GROWTH_MODELS: Dict[str, Type[GrowthModel]] = {
    cls.name: cls
    for cls in (
        ExponentialModel, DelayedSModel, GompertzModel, ModifiedGompertzModel, LogisticModel, WeibullModel,
        PhamExponentialModel, PhamWeibullModel,
        WeibullCoverageModel, LogisticCoverageModel, GompertzCoverageModel,
        ExponentialChangePointModel, DelayedSChangePointModel, ImperfectDebugChangePointModel,
        PNZChangePointModel, MultipleChangePointModel,
        EffortExponentialModel, EffortDelayedSModel, EffortImperfectDebugModel,
        ConstantFREModel, LearningFREModel, ErrorGenerationModel, FREErrorGenerationModel,
        LogisticFRFModel, IntegratedFREModel,
    )
}

MODEL_CATEGORIES: Tuple[str, ...] = ("basic", "imperfect_debug", "coverage", "change_point", "tef", "fre")


def get_model(name: str, init_settings: Optional[ModelInitSettings] = None, **kwargs) -> GrowthModel:
    """
    Instantiates a growth model by registry key.
    Extra keyword arguments go to the model (e.g. effort="rayleigh" for TEF
    models, n_change_points=3 for cp_multiple).
    """
    if name not in GROWTH_MODELS:
        raise ValueError(f"Unknown growth model '{name}'. Available: {sorted(GROWTH_MODELS)}")
    return GROWTH_MODELS[name](init_settings=init_settings, **kwargs)


def get_models(
    categories: Optional[List[str]] = None,
    init_settings: Optional[ModelInitSettings] = None,
) -> List[GrowthModel]:
    """One fresh instance of every registered model, optionally filtered by category."""
    if categories is not None:
        unknown = sorted(set(categories) - set(MODEL_CATEGORIES))
        if unknown:
            raise ValueError(f"Unknown model categories {unknown}. Available: {list(MODEL_CATEGORIES)}")
    return [
        cls(init_settings=init_settings)
        for cls in GROWTH_MODELS.values()
        if categories is None or cls.category in categories
    ]


def list_models() -> List[Dict[str, Any]]:
    models = []
    for model in get_models():
        models.append({
            "name": model.name,
            "display_name": model.display_name,
            "category": model.category,
            "formula": model.formula,
            "param_names": list(model.param_names),
        })
    return models
