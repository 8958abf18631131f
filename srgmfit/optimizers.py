# optimizers.py
import numpy as np
import copy
import itertools
import time
import warnings
from abc import ABC, abstractmethod
from scipy import linalg
from scipy.special import expit, logit
from typing import Dict, Tuple, Optional, Any, Type, Union

from .config import (
    DESettings,
    CMAESSettings,
    PSOSettings,
    GWOSettings,
    NelderMeadSettings,
    GridGradientSettings,
    settings_from_dict,
)
from .datatypes import (
    PENALTY,
    OptimizationResult,
    ObjectiveCallable,
    IterationCallback,
)

# ==============================================================================
# <<< Optimizer Contract >>>
# ==============================================================================

class SafeObjective:
    """
    Wraps an objective so the optimizer only ever sees finite values.

    Exceptions and NaN/Inf results are replaced by PENALTY. Each call gets its
    own copy of the candidate so the objective cannot mutate optimizer buffers.
    """
    def __init__(self, objective: ObjectiveCallable):
        self.objective = objective
        self.evaluations = 0

    def __call__(self, x: np.ndarray) -> float:
        self.evaluations += 1
        try:
            value = float(self.objective(np.array(x, dtype=float)))
        except Exception:
            return PENALTY
        if not np.isfinite(value):
            return PENALTY
        return value


def validate_bounds(
    lower, upper, initial=None
) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
    """
    Checks a box-constrained problem and returns float copies.
    Raises ValueError on mismatched lengths, non-finite or inverted bounds.
    The initial guess, if given, is clamped into the box.
    """
    lower = np.array(lower, dtype=float).ravel()
    upper = np.array(upper, dtype=float).ravel()
    if lower.size == 0:
        raise ValueError("Bounds are empty.")
    if lower.shape != upper.shape:
        raise ValueError(f"Bound length mismatch: lower has {lower.size}, upper has {upper.size}.")
    if not (np.all(np.isfinite(lower)) and np.all(np.isfinite(upper))):
        raise ValueError("Bounds must be finite.")
    inverted = np.flatnonzero(lower > upper)
    if inverted.size:
        raise ValueError(f"lower > upper at indices {inverted.tolist()}.")
    if initial is not None:
        initial = np.array(initial, dtype=float).ravel()
        if initial.shape != lower.shape:
            raise ValueError(f"Initial guess has length {initial.size}, expected {lower.size}.")
        if not np.all(np.isfinite(initial)):
            raise ValueError("Initial guess must be finite.")
        initial = np.clip(initial, lower, upper)
    return lower, upper, initial


class _Stagnation:
    """Counts consecutive iterations without improvement beyond a tolerance."""
    def __init__(self, tolerance: float, limit: int, relative: bool = False):
        self.tolerance = tolerance
        self.limit = limit
        self.relative = relative
        self.count = 0

    def update(self, previous_best: float, best: float) -> bool:
        change = abs(previous_best - best)
        if self.relative:
            change /= abs(previous_best) + 1e-10
        if change < self.tolerance:
            self.count += 1
        else:
            self.count = 0
        return self.count > self.limit


class BaseOptimizer(ABC):
    """
    Bounded minimizer: optimize(objective, lower, upper, initial) -> OptimizationResult.

    Subclasses implement `_run`, which must keep every candidate inside the box
    and return (best_x, best_f, iterations, history). The base class handles
    input checks, safe evaluation, timing and result packaging.
    Each instance owns a private random generator built from `seed`.
    """
    key: str = "base" # Registry key
    name: str = "Base" # Label reported in results
    settings_class: Type = object

    def __init__(self, settings: Union[None, Dict[str, Any], Any] = None, seed: Optional[int] = None):
        if settings is None:
            settings = self.settings_class()
        elif isinstance(settings, dict):
            settings = settings_from_dict(self.settings_class, settings)
        self.settings = settings
        self.seed = seed
        self.rng = np.random.default_rng(seed)

    def spawn(self, seed=None) -> "BaseOptimizer":
        """Fresh instance with the same settings and an independent random stream."""
        return type(self)(settings=copy.deepcopy(self.settings), seed=seed)

    def optimize(
        self,
        objective: ObjectiveCallable,
        lower,
        upper,
        initial=None,
        callback: Optional[IterationCallback] = None,
    ) -> OptimizationResult:
        start = time.perf_counter()
        try:
            lower, upper, initial = validate_bounds(lower, upper, initial)
        except ValueError as e:
            n = np.size(lower)
            return OptimizationResult.failed(self.name, f"Invalid problem: {e}", n_params=n)

        safe_objective = SafeObjective(objective)
        try:
            best_x, best_f, iterations, history = self._run(safe_objective, lower, upper, initial, callback)
        except Exception as e:
            warnings.warn(f"{self.name} failed with exception: {type(e).__name__}: {e}")
            return OptimizationResult.failed(
                self.name, f"{type(e).__name__}: {e}", n_params=len(lower),
                function_evaluations=safe_objective.evaluations,
                elapsed_ms=(time.perf_counter() - start) * 1000.0,
            )

        best_x = np.clip(np.asarray(best_x, dtype=float), lower, upper)
        success = bool(np.isfinite(best_f) and best_f < PENALTY)
        return OptimizationResult(
            parameters=best_x,
            objective_value=float(best_f),
            success=success,
            algorithm_name=self.name,
            iterations=int(iterations),
            function_evaluations=safe_objective.evaluations,
            elapsed_ms=(time.perf_counter() - start) * 1000.0,
            convergence_history=tuple(float(v) for v in history),
            message="" if success else "No feasible objective value found.",
        )

    @abstractmethod
    def _run(self, f: SafeObjective, lower: np.ndarray, upper: np.ndarray,
             initial: Optional[np.ndarray], callback: Optional[IterationCallback]):
        ...

    def _uniform(self, lower: np.ndarray, upper: np.ndarray, size: int) -> np.ndarray:
        return lower + self.rng.random((size, len(lower))) * (upper - lower)

    def __repr__(self):
        return f"{type(self).__name__}(settings={self.settings!r}, seed={self.seed!r})"


def _stop_requested(callback: Optional[IterationCallback], iteration: int, x: np.ndarray, fx: float) -> bool:
    if callback is None:
        return False
    return bool(callback(iteration, x.copy(), fx))

# ==============================================================================
# <<< Population-Based Optimizers >>>
# ==============================================================================

class DifferentialEvolution(BaseOptimizer):
    """DE/rand/1/bin with per-generation F jitter and bounce-back boundary handling."""
    key = "de"
    name = "DE"
    settings_class = DESettings

    def _run(self, f, lower, upper, initial, callback):
        s = self.settings
        rng = self.rng
        n = len(lower)
        pop_size = max(4, int(s.population_size)) # r1, r2, r3 and the target must differ

        population = self._uniform(lower, upper, pop_size)
        if initial is not None:
            population[0] = initial
        fitness = np.array([f(x) for x in population])
        best_idx = int(np.argmin(fitness))
        best_x = population[best_idx].copy(); best_f = float(fitness[best_idx])
        history = [best_f]
        stagnation = _Stagnation(s.tolerance, s.stagnation_limit)

        iterations = 0
        for generation in range(s.max_iterations):
            iterations = generation + 1
            previous_best = best_f
            F = s.F + s.F_jitter * (rng.random() - 0.5)

            for i in range(pop_size):
                others = rng.choice(pop_size - 1, size=3, replace=False)
                others[others >= i] += 1
                r1, r2, r3 = others
                target = population[i]
                mutant = population[r1] + F * (population[r2] - population[r3])

                cross = rng.random(n) < s.CR
                cross[rng.integers(n)] = True
                trial = np.where(cross, mutant, target)

                # Bounce back between the violated bound and the target's own value
                below = trial < lower
                if np.any(below):
                    trial[below] = lower[below] + rng.random(below.sum()) * (target[below] - lower[below])
                above = trial > upper
                if np.any(above):
                    trial[above] = upper[above] - rng.random(above.sum()) * (upper[above] - target[above])

                trial_f = f(trial)
                if trial_f <= fitness[i]:
                    population[i] = trial
                    fitness[i] = trial_f
                    if trial_f < best_f:
                        best_f = trial_f
                        best_x = trial.copy()

            history.append(best_f)
            if stagnation.update(previous_best, best_f):
                break
            if _stop_requested(callback, iterations, best_x, best_f):
                break

        return best_x, best_f, iterations, history


def to_bounded(z: np.ndarray, lower: np.ndarray, upper: np.ndarray) -> np.ndarray:
    """Sigmoid map from the real line into [lower, upper]; fixed axes return lower."""
    span = upper - lower
    x = lower + span * expit(z) # expit is overflow-safe for large |z|
    return np.where(span > 0, np.clip(x, lower, upper), lower)


def to_unbounded(x: np.ndarray, lower: np.ndarray, upper: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Inverse of to_bounded (logit). The ratio is clipped to [eps, 1-eps]; fixed axes map to 0."""
    span = upper - lower
    safe_span = np.where(span > 0, span, 1.0)
    ratio = np.clip((np.asarray(x, dtype=float) - lower) / safe_span, eps, 1.0 - eps)
    return np.where(span > 0, logit(ratio), 0.0)


class CMAES(BaseOptimizer):
    """
    (mu/mu_w, lambda)-CMA-ES in a sigmoid-transformed space.

    Search happens on the unbounded coordinates z; candidates are mapped into
    the box with `to_bounded` before evaluation, so no repair step is needed.
    """
    key = "cmaes"
    name = "CMA-ES"
    settings_class = CMAESSettings

    @staticmethod
    def _factor(C: np.ndarray):
        """Eigen-factorisation C = B diag(D^2) B^T; resets to identity if C is degenerate."""
        n = C.shape[0]
        C = (C + C.T) / 2.0
        try:
            eigenvalues, B = linalg.eigh(C)
        except (linalg.LinAlgError, ValueError):
            return np.eye(n), np.eye(n), np.ones(n), True
        if not np.all(np.isfinite(eigenvalues)) or np.any(eigenvalues <= 0):
            return np.eye(n), np.eye(n), np.ones(n), True
        return C, B, np.sqrt(eigenvalues), False

    def _run(self, f, lower, upper, initial, callback):
        s = self.settings
        rng = self.rng
        n = len(lower)

        # --- Strategy parameters ---
        lam = max(6, 4 + int(np.floor(3 * np.log(n))))
        mu = lam // 2
        weights = np.log(mu + 0.5) - np.log(np.arange(1, mu + 1))
        weights /= weights.sum()
        mueff = 1.0 / np.sum(weights ** 2)

        cs = (mueff + 2) / (n + mueff + 5)
        ds = 1 + 2 * max(0.0, np.sqrt((mueff - 1) / (n + 1)) - 1) + cs
        cc = (4 + mueff / n) / (n + 4 + 2 * mueff / n)
        c1 = 2 / ((n + 1.3) ** 2 + mueff)
        cmu = min(1 - c1, 2 * (mueff - 2 + 1 / mueff) / ((n + 2) ** 2 + mueff))
        chi_n = np.sqrt(n) * (1 - 1 / (4 * n) + 1 / (21 * n * n))
        eigen_every = max(1, n // 5)
        sigma_min, sigma_max = s.sigma_range

        # --- State ---
        start = initial if initial is not None else (lower + upper) / 2.0
        mean = to_unbounded(start, lower, upper)
        sigma = float(s.initial_sigma)
        p_sigma = np.zeros(n); p_c = np.zeros(n)
        C = np.eye(n); B = np.eye(n); D = np.ones(n)

        best_x = to_bounded(mean, lower, upper)
        best_f = f(best_x)
        history = [best_f]
        stagnation = _Stagnation(s.tolerance, s.stagnation_limit)
        n_resets = 0

        iterations = 0
        for iteration in range(s.max_iterations):
            iterations = iteration + 1
            previous_best = best_f

            Z = rng.standard_normal((lam, n))
            Y = (Z * D) @ B.T # rows are B @ (D * z)
            X = np.array([to_bounded(mean + sigma * y, lower, upper) for y in Y])
            fitness = np.array([f(x) for x in X])
            order = np.argsort(fitness, kind="stable")
            if fitness[order[0]] < best_f:
                best_f = float(fitness[order[0]])
                best_x = X[order[0]].copy()

            selected_y = Y[order[:mu]]
            selected_z = Z[order[:mu]]
            y_w = weights @ selected_y
            z_w = weights @ selected_z
            mean = mean + sigma * y_w

            # --- Evolution paths ---
            p_sigma = (1 - cs) * p_sigma + np.sqrt(cs * (2 - cs) * mueff) * (B @ z_w)
            ps_norm = np.linalg.norm(p_sigma)
            h_sigma = ps_norm / np.sqrt(1 - (1 - cs) ** (2 * (iteration + 1))) < (1.4 + 2 / (n + 1)) * chi_n
            p_c = (1 - cc) * p_c + (np.sqrt(cc * (2 - cc) * mueff) * y_w if h_sigma else 0.0)
            delta_h = 0.0 if h_sigma else cc * (2 - cc)

            # --- Covariance adaptation (rank-one + rank-mu) ---
            rank_one = np.outer(p_c, p_c)
            rank_mu = (selected_y.T * weights) @ selected_y
            C = (1 - c1 - cmu + delta_h * c1) * C + c1 * rank_one + cmu * rank_mu

            sigma *= np.exp((cs / ds) * (ps_norm / chi_n - 1))
            sigma = float(np.clip(sigma, sigma_min, sigma_max)) if np.isfinite(sigma) else float(s.initial_sigma)

            if iteration == 0 or (iteration + 1) % eigen_every == 0:
                C, B, D, reset = self._factor(C)
                n_resets += int(reset)

            if not np.all(np.isfinite(mean)):
                mean = to_unbounded(best_x, lower, upper)

            history.append(best_f)
            if stagnation.update(previous_best, best_f) or sigma < s.min_sigma:
                break
            if _stop_requested(callback, iterations, best_x, best_f):
                break

        if n_resets:
            warnings.warn(f"CMA-ES covariance reset to identity {n_resets} time(s) after a degenerate eigendecomposition.")
        return best_x, best_f, iterations, history


class ParticleSwarm(BaseOptimizer):
    """Inertia-weight PSO with linearly decaying inertia and velocity clamping."""
    key = "pso"
    name = "PSO"
    settings_class = PSOSettings

    def _run(self, f, lower, upper, initial, callback):
        s = self.settings
        rng = self.rng
        n = len(lower)
        swarm_size = max(1, int(s.swarm_size))
        span = upper - lower
        v_max = s.max_velocity_ratio * span

        positions = self._uniform(lower, upper, swarm_size)
        if initial is not None:
            positions[0] = initial
        velocities = (rng.random((swarm_size, n)) - 0.5) * span * 0.1
        fitness = np.array([f(x) for x in positions])
        personal_best = positions.copy(); personal_best_f = fitness.copy()
        g = int(np.argmin(fitness))
        best_x = positions[g].copy(); best_f = float(fitness[g])
        history = [best_f]
        stagnation = _Stagnation(s.tolerance, s.stagnation_limit, relative=True)

        iterations = 0
        for iteration in range(s.max_iterations):
            iterations = iteration + 1
            previous_best = best_f
            w = s.inertia - (s.inertia - s.min_inertia) * iteration / s.max_iterations

            for i in range(swarm_size):
                r1 = rng.random(n); r2 = rng.random(n)
                velocities[i] = (w * velocities[i]
                                 + s.cognitive * r1 * (personal_best[i] - positions[i])
                                 + s.social * r2 * (best_x - positions[i]))
                velocities[i] = np.clip(velocities[i], -v_max, v_max)
                moved = positions[i] + velocities[i]
                outside = (moved < lower) | (moved > upper)
                positions[i] = np.clip(moved, lower, upper)
                velocities[i][outside] *= -0.5

                value = f(positions[i])
                if value < personal_best_f[i]:
                    personal_best_f[i] = value
                    personal_best[i] = positions[i].copy()
                    if value < best_f:
                        best_f = value
                        best_x = positions[i].copy()

            history.append(best_f)
            if stagnation.update(previous_best, best_f):
                break
            if _stop_requested(callback, iterations, best_x, best_f):
                break

        return best_x, best_f, iterations, history


class GreyWolf(BaseOptimizer):
    """Grey Wolf Optimizer: wolves encircle the alpha/beta/delta leaders."""
    key = "gwo"
    name = "GWO"
    settings_class = GWOSettings

    def _run(self, f, lower, upper, initial, callback):
        s = self.settings
        rng = self.rng
        n = len(lower)
        pack_size = max(3, int(s.pack_size))

        wolves = self._uniform(lower, upper, pack_size)
        if initial is not None:
            wolves[0] = initial
        fitness = np.array([f(x) for x in wolves])
        order = np.argsort(fitness, kind="stable")
        leaders = [wolves[order[k]].copy() for k in range(3)] # alpha, beta, delta
        leader_f = [float(fitness[order[k]]) for k in range(3)]
        history = [leader_f[0]]
        stagnation = _Stagnation(s.tolerance, s.stagnation_limit)

        iterations = 0
        for iteration in range(s.max_iterations):
            iterations = iteration + 1
            previous_best = leader_f[0]
            a = 2.0 - iteration * 2.0 / s.max_iterations

            for i in range(pack_size):
                position = np.zeros(n)
                for leader in leaders:
                    A = 2 * a * rng.random(n) - a
                    C = 2 * rng.random(n)
                    distance = np.abs(C * leader - wolves[i])
                    position += leader - A * distance
                wolves[i] = np.clip(position / 3.0, lower, upper)

                value = f(wolves[i])
                if value < leader_f[0]:
                    leaders = [wolves[i].copy(), leaders[0], leaders[1]]
                    leader_f = [value, leader_f[0], leader_f[1]]
                elif value < leader_f[1]:
                    leaders = [leaders[0], wolves[i].copy(), leaders[1]]
                    leader_f = [leader_f[0], value, leader_f[1]]
                elif value < leader_f[2]:
                    leaders[2] = wolves[i].copy()
                    leader_f[2] = value

            history.append(leader_f[0])
            if stagnation.update(previous_best, leader_f[0]):
                break
            if _stop_requested(callback, iterations, leaders[0], leader_f[0]):
                break

        return leaders[0], leader_f[0], iterations, history

# ==============================================================================
# <<< Local Optimizers >>>
# ==============================================================================

class NelderMead(BaseOptimizer):
    """
    Bounded Nelder-Mead simplex. Every trial point is clipped into the box.

    Deterministic given its start point, which makes it the warm-start engine
    for repeated re-fits (see core.refit_from).
    """
    key = "nelder_mead"
    name = "NelderMead"
    settings_class = NelderMeadSettings

    def _run(self, f, lower, upper, initial, callback):
        s = self.settings
        n = len(lower)
        span = upper - lower
        x0 = initial if initial is not None else (lower + upper) / 2.0

        simplex = np.empty((n + 1, n))
        simplex[0] = x0
        for j in range(n):
            step = max(s.initial_step_ratio * span[j], 1e-8)
            if x0[j] + step > upper[j]:
                step = -step
            vertex = x0.copy()
            vertex[j] += step
            simplex[j + 1] = np.clip(vertex, lower, upper)
        values = np.array([f(x) for x in simplex])

        def clipped(x):
            return np.clip(x, lower, upper)

        history = [float(values.min())]
        stagnation = _Stagnation(s.tolerance, s.stagnation_limit)
        iterations = 0
        for iteration in range(s.max_iterations):
            iterations = iteration + 1
            order = np.argsort(values, kind="stable")
            simplex = simplex[order]; values = values[order]
            previous_best = values[0]

            if abs(values[-1] - values[0]) < s.tolerance:
                break

            centroid = simplex[:-1].mean(axis=0)
            worst = simplex[-1]
            reflected = clipped(centroid + s.alpha * (centroid - worst))
            f_reflected = f(reflected)

            if values[0] <= f_reflected < values[-2]:
                simplex[-1] = reflected; values[-1] = f_reflected
            elif f_reflected < values[0]:
                expanded = clipped(centroid + s.gamma * (reflected - centroid))
                f_expanded = f(expanded)
                if f_expanded < f_reflected:
                    simplex[-1] = expanded; values[-1] = f_expanded
                else:
                    simplex[-1] = reflected; values[-1] = f_reflected
            else:
                if f_reflected < values[-1]:
                    contracted = clipped(centroid + s.rho * (reflected - centroid)) # Outside
                    f_contracted = f(contracted)
                    accept = f_contracted <= f_reflected
                else:
                    contracted = clipped(centroid + s.rho * (worst - centroid)) # Inside
                    f_contracted = f(contracted)
                    accept = f_contracted < values[-1]

                if accept:
                    simplex[-1] = contracted; values[-1] = f_contracted
                else:
                    for j in range(1, n + 1):
                        simplex[j] = clipped(simplex[0] + s.sigma * (simplex[j] - simplex[0]))
                        values[j] = f(simplex[j])

            best = float(values.min())
            history.append(min(best, history[-1]))
            if stagnation.update(previous_best, best):
                break
            if _stop_requested(callback, iterations, simplex[int(np.argmin(values))], best):
                break

        best_idx = int(np.argmin(values))
        return simplex[best_idx].copy(), float(values[best_idx]), iterations, history


class GridSearchGradient(BaseOptimizer):
    """Coarse grid scan of the box followed by fixed-step central-difference gradient descent."""
    key = "grid_gradient"
    name = "GridSearch+Gradient"
    settings_class = GridGradientSettings

    def _grid_size(self, n_free: int) -> int:
        g = self.settings.grid_size
        if g is None:
            g = 20 if n_free <= 2 else (10 if n_free == 3 else 8)
        g = max(2, int(g))
        while g > 2 and g ** n_free > self.settings.max_grid_points:
            g -= 1
        return g

    def _run(self, f, lower, upper, initial, callback):
        s = self.settings
        n = len(lower)
        span = upper - lower
        free = span > 0
        g = self._grid_size(int(free.sum()))

        # --- Grid scan ---
        axes = [np.minimum(lower[j] + (span[j] / g) * np.arange(1, g + 1), upper[j]) if free[j] else np.array([lower[j]])
                for j in range(n)]
        best_x = None; best_f = np.inf
        for node in itertools.product(*axes):
            x = np.array(node)
            value = f(x)
            if value < best_f:
                best_f = value; best_x = x
        if initial is not None:
            value = f(initial)
            if value < best_f:
                best_f = value; best_x = initial.copy()
        history = [best_f]
        if _stop_requested(callback, 0, best_x, best_f):
            return best_x, best_f, 0, history

        # --- Gradient refinement ---
        x = best_x.copy()
        h = s.gradient_delta
        iterations = 0
        for iteration in range(s.gradient_iterations):
            iterations = iteration + 1
            gradient = np.zeros(n)
            for j in np.flatnonzero(free):
                x_plus = x.copy(); x_minus = x.copy()
                x_plus[j] = min(x[j] + h, upper[j])
                x_minus[j] = max(x[j] - h, lower[j])
                width = x_plus[j] - x_minus[j]
                if width > 0:
                    gradient[j] = (f(x_plus) - f(x_minus)) / width

            x_new = np.clip(x - s.learning_rate * gradient, lower, upper)
            value = f(x_new)
            if value < best_f:
                best_f = value; best_x = x_new.copy()
            moved = np.linalg.norm(x_new - x)
            x = x_new

            if iterations % s.history_every == 0:
                history.append(best_f)
            if moved < s.tolerance:
                break
            if _stop_requested(callback, iterations, best_x, best_f):
                break

        if history[-1] != best_f:
            history.append(best_f)
        return best_x, best_f, iterations, history

# --- Registry of optimizers ---
OPTIMIZERS: Dict[str, Type[BaseOptimizer]] = {
    cls.key: cls
    for cls in (DifferentialEvolution, CMAES, ParticleSwarm, GreyWolf, NelderMead, GridSearchGradient)
}

OPTIMIZER_ALIASES: Dict[str, str] = {
    "differential_evolution": "de",
    "cma_es": "cmaes",
    "cma-es": "cmaes",
    "particle_swarm": "pso",
    "grey_wolf": "gwo",
    "neldermead": "nelder_mead",
    "nelder-mead": "nelder_mead",
    "gridsearch_gradient": "grid_gradient",
}


def optimizer_key(name: str) -> str:
    """Registry key for a name or alias ("cma-es" -> "cmaes"); settings are looked up by this key."""
    key = name.lower()
    return OPTIMIZER_ALIASES.get(key, key)


def create_optimizer(name: str, settings=None, seed: Optional[int] = None) -> BaseOptimizer:
    """Instantiates an optimizer by registry key (or alias)."""
    key = optimizer_key(name)
    if key not in OPTIMIZERS:
        raise ValueError(f"Unknown optimizer '{name}'. Available: {sorted(OPTIMIZERS)}")
    return OPTIMIZERS[key](settings=settings, seed=seed)
