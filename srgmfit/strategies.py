# strategies.py
"""
Optimizer composition: run several optimizers (AutoSelect) or one optimizer
from several starting points (MultiStart) and keep the best feasible result.

Both expose the same `optimize(objective, lower, upper, initial)` contract as
the individual algorithms in optimizers.py, so the fitting code does not need
to know which one it was given.
"""
import dataclasses
import concurrent.futures
import time
import numpy as np
from scipy.stats import qmc
from tqdm import tqdm
from typing import List, Dict, Optional, Any, Union, Sequence

from .config import AutoSelectSettings, MultiStartSettings, settings_from_dict
from .datatypes import OptimizationResult, OptimizerComparison, ObjectiveCallable, IterationCallback
from .optimizers import BaseOptimizer, create_optimizer, optimizer_key, validate_bounds


def _pick_best(results: Sequence[OptimizationResult]) -> Optional[OptimizationResult]:
    successful = [r for r in results if r.success]
    if not successful:
        return None
    return min(successful, key=lambda r: r.objective_value)


def _failure_summary(results: Sequence[OptimizationResult]) -> str:
    return "; ".join(f"{r.algorithm_name}: {r.message or 'failed'}" for r in results)

# --- Auto-Select ---

class AutoSelect:
    """Runs every configured optimizer once and returns the lowest feasible objective."""
    key = "auto"
    name = "AutoSelect"

    def __init__(
        self,
        settings: Union[None, Dict[str, Any], AutoSelectSettings] = None,
        seed=None,
        optimizer_settings: Optional[Dict[str, Any]] = None,
        verbose: bool = False,
    ):
        if settings is None or isinstance(settings, dict):
            settings = settings_from_dict(AutoSelectSettings, settings)
        self.settings = settings
        self.seed = seed
        self.rng = np.random.default_rng(seed)
        self.optimizer_settings = dict(optimizer_settings or {})
        self.verbose = verbose

    def spawn(self, seed=None) -> "AutoSelect":
        return AutoSelect(dataclasses.replace(self.settings), seed, self.optimizer_settings, self.verbose)

    def members(self) -> List[BaseOptimizer]:
        """One optimizer per configured key, each on its own child random stream."""
        keys = list(self.settings.optimizers)
        streams = self.rng.spawn(len(keys))
        return [
            create_optimizer(k, self.optimizer_settings.get(optimizer_key(k)), seed=stream)
            for k, stream in zip(keys, streams)
        ]

    def run_all(
        self,
        objective: ObjectiveCallable,
        lower,
        upper,
        initial=None,
        callback: Optional[IterationCallback] = None,
    ) -> List[OptimizationResult]:
        members = self.members()
        max_workers = self.settings.max_workers
        if max_workers is not None and max_workers > 1 and len(members) > 1:
            # Members share only read-only inputs; each owns its population buffers
            with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = [executor.submit(m.optimize, objective, lower, upper, initial, callback) for m in members]
                return [future.result() for future in futures]

        results = []
        for optimizer in members:
            if self.verbose:
                print(f"  Running {optimizer.name}...")
            result = optimizer.optimize(objective, lower, upper, initial, callback)
            if self.verbose:
                status = f"objective={result.objective_value:.6g}" if result.success else f"failed ({result.message})"
                print(f"    -> {status}, evaluations={result.function_evaluations}, time={result.elapsed_ms:.0f}ms")
            results.append(result)
        return results

    def optimize(
        self,
        objective: ObjectiveCallable,
        lower,
        upper,
        initial=None,
        callback: Optional[IterationCallback] = None,
    ) -> OptimizationResult:
        start = time.perf_counter()
        results = self.run_all(objective, lower, upper, initial, callback)
        evaluations = sum(r.function_evaluations for r in results)
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        best = _pick_best(results)
        if best is None:
            return OptimizationResult.failed(
                self.name, f"All optimizers failed: {_failure_summary(results)}",
                n_params=np.size(lower), function_evaluations=evaluations, elapsed_ms=elapsed_ms,
            )
        return dataclasses.replace(
            best,
            algorithm_name=f"{self.name}({best.algorithm_name})",
            function_evaluations=evaluations,
            elapsed_ms=elapsed_ms,
        )

# --- Multi-Start ---

def generate_starting_points(
    lower,
    upper,
    n_starts: int,
    initial=None,
    rng: Optional[np.random.Generator] = None,
    quantiles=(0.1, 0.9),
) -> np.ndarray:
    """
    Diverse starting points inside the box, in priority order:
    the initial guess (if any), the box center, the low and high quantile
    points, then Latin-hypercube samples for the rest. Returns (n_starts, n).
    """
    lower, upper, initial = validate_bounds(lower, upper, initial)
    if n_starts < 1:
        raise ValueError("n_starts must be at least 1.")
    rng = rng if rng is not None else np.random.default_rng()
    span = upper - lower
    q_low, q_high = quantiles

    points = []
    if initial is not None:
        points.append(initial)
    points.append(lower + 0.5 * span)
    points.append(lower + q_low * span)
    points.append(lower + q_high * span)

    remaining = n_starts - len(points)
    if remaining > 0:
        # qmc.scale rejects zero-width axes, so scale by hand
        sample = qmc.LatinHypercube(d=len(lower), rng=rng).random(remaining)
        points.extend(lower + sample * span)
    return np.array(points[:n_starts])


class MultiStart:
    """Runs one optimizer from several diverse starting points and keeps the best."""
    key = "multistart"
    name = "MultiStart"

    def __init__(
        self,
        optimizer: Union[None, str, BaseOptimizer] = None,
        settings: Union[None, Dict[str, Any], MultiStartSettings] = None,
        seed=None,
        optimizer_settings: Optional[Dict[str, Any]] = None,
        verbose: bool = False,
    ):
        if settings is None or isinstance(settings, dict):
            settings = settings_from_dict(MultiStartSettings, settings)
        self.settings = settings
        self.seed = seed
        self.rng = np.random.default_rng(seed)
        self.optimizer_settings = dict(optimizer_settings or {})
        if optimizer is None:
            optimizer = settings.optimizer
        if isinstance(optimizer, str):
            optimizer = create_optimizer(optimizer, self.optimizer_settings.get(optimizer_key(optimizer)))
        self.optimizer = optimizer
        self.verbose = verbose

    def spawn(self, seed=None) -> "MultiStart":
        return MultiStart(self.optimizer, dataclasses.replace(self.settings), seed, self.optimizer_settings, self.verbose)

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
            starts = generate_starting_points(
                lower, upper, self.settings.n_starts, initial,
                rng=self.rng, quantiles=self.settings.boundary_quantiles,
            )
        except ValueError as e:
            return OptimizationResult.failed(self.name, f"Invalid problem: {e}", n_params=np.size(lower))

        streams = self.rng.spawn(len(starts))
        results = []
        for point, stream in tqdm(list(zip(starts, streams)), desc=f"Multi-start {self.optimizer.name}", disable=not self.verbose):
            results.append(self.optimizer.spawn(stream).optimize(objective, lower, upper, point, callback))

        evaluations = sum(r.function_evaluations for r in results)
        iterations = sum(r.iterations for r in results)
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        best = _pick_best(results)
        if best is None:
            return OptimizationResult.failed(
                self.name, f"All {len(results)} starts failed: {_failure_summary(results)}",
                n_params=np.size(lower), function_evaluations=evaluations, elapsed_ms=elapsed_ms,
            )
        return dataclasses.replace(
            best,
            algorithm_name=f"{self.name}({best.algorithm_name})",
            iterations=iterations,
            function_evaluations=evaluations,
            elapsed_ms=elapsed_ms,
        )

# --- Comparison Report ---

def compare_optimizers(
    objective: ObjectiveCallable,
    lower,
    upper,
    initial=None,
    optimizers: Optional[Sequence[str]] = None,
    seed=None,
    max_workers: Optional[int] = None,
    optimizer_settings: Optional[Dict[str, Any]] = None,
    verbose: bool = False,
) -> OptimizerComparison:
    """Runs each optimizer on the same problem and reports them side by side."""
    settings = AutoSelectSettings(max_workers=max_workers)
    if optimizers is not None:
        settings.optimizers = tuple(optimizers)
    runner = AutoSelect(settings, seed=seed, optimizer_settings=optimizer_settings, verbose=verbose)
    if verbose:
        print(f"--- Comparing {len(settings.optimizers)} optimizers ---")
    results = runner.run_all(objective, lower, upper, initial)

    ordered = sorted(results, key=lambda r: (not r.success, r.objective_value))
    successful = [r.objective_value for r in ordered if r.success]
    spread = float(max(successful) - min(successful)) if successful else np.nan
    best = ordered[0] if ordered and ordered[0].success else None
    return OptimizerComparison(results=ordered, best=best, objective_spread=spread)
