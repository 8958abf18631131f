# core.py
import datetime
import numpy as np
import warnings
import traceback
import concurrent.futures
from tqdm import tqdm
from typing import List, Dict, Optional, Union, Any, Sequence

from .config import FitSettings, settings_from_dict
from .datatypes import PENALTY, DefectDataset, FitResult, ConvergencePrediction, OptimizationResult
from .losses import LossFunction, create_loss
from .models import GrowthModel, get_model, get_models
from .optimizers import BaseOptimizer, NelderMead, create_optimizer, optimizer_key
from .strategies import AutoSelect, MultiStart
from .utils import (
    SelectionWarning, mean_squared_error, calculate_aic, calculate_aicc, calculate_bic,
    select_criterion, split_holdout, holdout_metrics, check_data_quality,
)

OptimizerLike = Union[str, BaseOptimizer, AutoSelect, MultiStart]
ModelLike = Union[str, GrowthModel]

# ==============================================================================
# <<< Helpers >>>
# ==============================================================================

def _resolve_settings(settings: Union[None, Dict[str, Any], FitSettings]) -> FitSettings:
    if settings is None:
        return FitSettings()
    if isinstance(settings, dict):
        return settings_from_dict(FitSettings, settings)
    return settings


def resolve_optimizer(
    optimizer: OptimizerLike,
    settings: Optional[FitSettings] = None,
    seed=None,
    verbose: bool = False,
):
    """
    Turns a name ("de", "cmaes", ..., "auto", "multistart") or an optimizer
    instance into a ready-to-run optimizer. Instances are re-seeded via
    `spawn` when a seed is given.
    """
    settings = _resolve_settings(settings)
    if not isinstance(optimizer, str):
        return optimizer.spawn(seed) if seed is not None else optimizer

    key = optimizer.lower()
    if key in ("auto", "autoselect", "auto_select"):
        return AutoSelect(settings.autoselect, seed=seed, optimizer_settings=settings.optimizer_settings, verbose=verbose)
    if key in ("multistart", "multi_start"):
        return MultiStart(None, settings.multistart, seed=seed, optimizer_settings=settings.optimizer_settings, verbose=verbose)
    key = optimizer_key(key)
    return create_optimizer(key, settings.optimizer_settings.get(key), seed=seed)


def _model_label(model: ModelLike) -> str:
    return model if isinstance(model, str) else getattr(model, "name", type(model).__name__)


def _replay_warnings(result: FitResult, caught) -> None:
    """Copies recorded warnings onto the result (once per message) and re-emits them."""
    seen = set(result.warnings)
    for w in caught:
        message = str(w.message)
        if message not in seen:
            seen.add(message)
            result.add_warning(message)
        warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

# ==============================================================================
# <<< Convergence Predictions >>>
# ==============================================================================

def _milestone_label(ratio: float) -> str:
    return f"{ratio * 100:g}%"


def predict_convergence(
    model: GrowthModel,
    parameters,
    dataset: DefectDataset,
    milestones: Sequence[float] = (0.90, 0.95, 0.99, 0.999),
) -> Dict[str, ConvergencePrediction]:
    """
    For each milestone ratio, when the fitted curve reaches that share of the
    estimated total. A milestone counts as reached once the observed count
    meets its target.
    """
    p = np.asarray(parameters, dtype=float)
    total = model.asymptotic_total(p)
    current_time = float(dataset.time[-1])
    current_count = dataset.total_found

    predictions = {}
    for ratio in milestones:
        label = _milestone_label(ratio)
        target = ratio * total
        if current_count >= target:
            predictions[label] = ConvergencePrediction(
                milestone=label, ratio=ratio, target_count=target, already_reached=True, remaining_time=0.0,
            )
            continue

        with np.errstate(all="ignore"):
            predicted_time = model.predict_time_for_ratio(ratio, p, current_time)
        if predicted_time is None:
            # Curve is past the target although the observed count is not
            predicted_time = current_time
        if not np.isfinite(predicted_time):
            predictions[label] = ConvergencePrediction(
                milestone=label, ratio=ratio, target_count=target, already_reached=False,
            )
            continue

        predicted_date = None
        if dataset.start_date is not None:
            # start_date is the calendar date of time == 1
            predicted_date = dataset.start_date + datetime.timedelta(days=int(np.ceil(predicted_time - 1)))
        predictions[label] = ConvergencePrediction(
            milestone=label, ratio=ratio, target_count=target, already_reached=False,
            predicted_time=predicted_time, remaining_time=predicted_time - current_time,
            predicted_date=predicted_date,
        )
    return predictions

# ==============================================================================
# <<< Single-Model Fitting >>>
# ==============================================================================

def _run_fit(
    result: FitResult,
    model: ModelLike,
    dataset: DefectDataset,
    optimizer: OptimizerLike,
    loss: str,
    holdout: int,
    settings: FitSettings,
    verbose: bool,
    seed,
    initial=None,
) -> None:
    """Fills `result` in place. Raises on any failure; the caller converts that."""
    if isinstance(model, str):
        model = get_model(model, init_settings=settings.model_init)
    result.model_name = model.name
    result.category = model.category
    result.n_parameters = model.n_params
    result.n_datapoints = dataset.n_points

    # --- 1. Loss ---
    loss_fn: LossFunction = create_loss(loss, model)
    result.loss_name = loss_fn.name

    # --- 2. Holdout split ---
    train, test = split_holdout(dataset, holdout)

    # --- 3. Bounds and starting point from the training slice ---
    t, y = train.time, train.cumulative_found
    lower, upper = model.bounds(t, y, train.secondary)
    if initial is None:
        initial = model.initial_parameters(t, y, train.secondary)
    initial = np.asarray(initial, dtype=float)
    if not (len(lower) == len(upper) == len(initial) == model.n_params):
        raise ValueError(
            f"Model '{model.name}' declares {model.n_params} parameters but produced "
            f"bounds of length {len(lower)}/{len(upper)} and an initial vector of length {len(initial)}."
        )
    initial = np.clip(initial, lower, upper)

    # --- 4. Objective ---
    def objective(p):
        value = loss_fn.evaluate(model, train, p)
        return value if np.isfinite(value) else PENALTY

    # --- 5. Optimize ---
    engine = resolve_optimizer(optimizer, settings, seed=seed, verbose=verbose)
    if verbose:
        print(f"--- Fitting {model.name} ({loss_fn.name.upper()}, {engine.name}, {train.n_points} points) ---")
    opt: OptimizationResult = engine.optimize(objective, lower, upper, initial)
    result.optimizer_used = opt.algorithm_name
    result.function_evaluations = opt.function_evaluations
    result.optimization_time_ms = opt.elapsed_ms
    if not opt.success:
        result.message = f"Optimization failed: {opt.message}"
        return

    # --- 6. Statistics on the full series ---
    p = np.asarray(opt.parameters, dtype=float)
    result.parameter_vector = p.copy()
    result.parameters = {name: float(v) for name, v in zip(model.param_names, p)}

    k, n = model.n_params, dataset.n_points
    with np.errstate(all="ignore"):
        predicted = model.evaluate(dataset.time, p)
        result.sse = model.sse(dataset.time, dataset.cumulative_found, p)
        result.r_squared = model.r_squared(dataset.time, dataset.cumulative_found, p)
    result.mse = mean_squared_error(dataset.cumulative_found, predicted)
    result.log_likelihood = float(loss_fn.log_likelihood(model, dataset, p))
    result.aic = float(calculate_aic(result.log_likelihood, k))
    result.aicc = calculate_aicc(result.aic, k, n)
    result.bic = float(calculate_bic(result.log_likelihood, k, n))
    result.selection_criterion, result.selection_score = select_criterion(
        result.aic, result.aicc, n, k, settings.aicc_ratio,
    )
    result.estimated_total = float(model.asymptotic_total(p))
    result.prediction_times = dataset.time.copy()
    result.predicted_values = np.asarray(predicted, dtype=float)

    if test is not None:
        with np.errstate(all="ignore"):
            test_predicted = model.evaluate(test.time, p)
        result.holdout = holdout_metrics(test.cumulative_found, test_predicted, n_train=train.n_points, warn=False)

    result.convergence_predictions = predict_convergence(model, p, dataset, settings.milestones)
    check_data_quality(dataset, k, result.holdout)

    result.success = True
    result.message = opt.message or "Fit converged."
    if verbose:
        print(f"  {result.selection_criterion}={result.selection_score}, R^2={result.r_squared:.4f}, "
              f"estimated total={result.estimated_total:.1f}")


def fit_growth_model(
    model: ModelLike,
    dataset: DefectDataset,
    optimizer: Optional[OptimizerLike] = None,
    loss: Optional[str] = None,
    holdout: Optional[int] = None,
    settings: Union[None, Dict[str, Any], FitSettings] = None,
    verbose: bool = False,
    seed=None,
    initial=None,
) -> FitResult:
    """
    Fits one growth model to a defect dataset.

    optimizer, loss, holdout and seed default to the values in `settings`
    ("de", "sse", 0 and None unless configured otherwise). `initial` overrides
    the model's own starting point.

    Never raises: any failure is reported as FitResult(success=False, message=...).
    Warnings raised during the fit are also stored on FitResult.warnings.
    """
    result = FitResult(model_name=_model_label(model), category=getattr(model, "category", ""), success=False, message="")
    caught = []
    try:
        settings = _resolve_settings(settings)
        optimizer = settings.optimizer if optimizer is None else optimizer
        loss = settings.loss if loss is None else loss
        holdout = settings.holdout if holdout is None else holdout
        seed = settings.seed if seed is None else seed
        result.loss_name = str(loss)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            _run_fit(result, model, dataset, optimizer, loss, holdout, settings, verbose, seed, initial)
    except Exception as e:
        result.success = False
        result.message = f"{type(e).__name__}: {e}"
        if verbose:
            print(f"--- Fit of {result.model_name} failed ---")
            traceback.print_exc()
    _replay_warnings(result, caught)
    return result


def refit_from(
    model: ModelLike,
    dataset: DefectDataset,
    parameters,
    loss: str = "sse",
    seed=None,
    settings: Union[None, Dict[str, Any], FitSettings] = None,
) -> FitResult:
    """
    Re-fits with Nelder-Mead started at a previous optimum. Cheap enough to run
    once per resampled dataset.
    """
    settings = _resolve_settings(settings)
    if isinstance(model, str):
        model = get_model(model, init_settings=settings.model_init)
    parameters = np.asarray(parameters, dtype=float).ravel()
    if len(parameters) != model.n_params:
        raise ValueError(f"Model '{model.name}' has {model.n_params} parameters, got a vector of length {len(parameters)}.")
    optimizer = NelderMead(settings=settings.optimizer_settings.get("nelder_mead"), seed=seed)
    return fit_growth_model(model, dataset, optimizer=optimizer, loss=loss, holdout=0, settings=settings, initial=parameters)

# ==============================================================================
# <<< Batch Fitting & Selection >>>
# ==============================================================================

def fit_all_models(
    dataset: DefectDataset,
    models: Optional[Sequence[ModelLike]] = None,
    optimizer: Optional[OptimizerLike] = None,
    loss: Optional[str] = None,
    holdout: Optional[int] = None,
    settings: Union[None, Dict[str, Any], FitSettings] = None,
    verbose: bool = False,
    max_workers: Optional[int] = None,
    categories: Optional[List[str]] = None,
) -> List[FitResult]:
    """
    Fits every model (default: the whole registry, optionally filtered by
    category). One result per model, in input order; never raises.

    Each model gets its own seed spawned from settings.seed, so results do not
    depend on max_workers. max_workers > 1 fans out over processes.
    """
    settings = _resolve_settings(settings)
    if models is None:
        models = get_models(categories, init_settings=settings.model_init)
    models = list(models)
    seeds = np.random.SeedSequence(settings.seed).spawn(len(models))

    if verbose:
        print(f"--- Fitting {len(models)} models on {dataset.n_points} points ---")

    if max_workers is not None and max_workers > 1 and len(models) > 1:
        results: List[Optional[FitResult]] = [None] * len(models)
        try:
            with concurrent.futures.ProcessPoolExecutor(max_workers=max_workers) as executor:
                futures = {
                    executor.submit(fit_growth_model, model, dataset, optimizer, loss, holdout, settings, False, seed): i
                    for i, (model, seed) in enumerate(zip(models, seeds))
                }
                for future in tqdm(concurrent.futures.as_completed(futures), total=len(futures), desc="Fitting models", disable=not verbose):
                    i = futures[future]
                    try:
                        results[i] = future.result()
                    except Exception as e:
                        warnings.warn(f"Fit of '{_model_label(models[i])}' failed in worker: {type(e).__name__}: {e}")
        except Exception as e_pool:
            warnings.warn(f"Error during parallel model fitting: {type(e_pool).__name__}: {e_pool}")
        for i, res in enumerate(results):
            if res is None:
                model = models[i]
                results[i] = FitResult(
                    model_name=_model_label(model), category=getattr(model, "category", ""),
                    success=False, message="Worker process failed before returning a result.",
                )
        return results

    return [
        fit_growth_model(model, dataset, optimizer, loss, holdout, settings, False, seed)
        for model, seed in tqdm(list(zip(models, seeds)), desc="Fitting models", disable=not verbose)
    ]


def _is_rankable(result: FitResult) -> bool:
    return result.success and result.selection_criterion != "invalid" and result.selection_score is not None


def get_best_model(results: Sequence[FitResult], category: Optional[str] = None) -> Optional[FitResult]:
    """Successful result with the lowest selection score; None if nothing qualifies."""
    candidates = [r for r in results if _is_rankable(r) and (category is None or r.category == category)]
    if not candidates:
        return None
    return min(candidates, key=lambda r: r.selection_score)


def rank_models(results: Sequence[FitResult]) -> List[Dict[str, Any]]:
    """
    Successful fits ordered by selection score, each with its AIC difference
    to the best AIC in the set. Fits without a valid criterion are skipped.
    """
    ranked = []
    for res in results:
        if not res.success:
            continue
        if not _is_rankable(res):
            warnings.warn(f"Model '{res.model_name}' has no valid selection criterion "
                          f"(n={res.n_datapoints}, k={res.n_parameters}). Skipping.", SelectionWarning)
            continue
        ranked.append(res)
    if not ranked:
        return []

    ranked.sort(key=lambda r: (r.selection_score, r.n_parameters))
    best_aic = min(r.aic for r in ranked)
    return [
        {
            "rank": i + 1,
            "model_name": r.model_name,
            "category": r.category,
            "criterion": r.selection_criterion,
            "score": r.selection_score,
            "aic": r.aic,
            "delta_aic": r.aic - best_aic,
            "r_squared": r.r_squared,
            "estimated_total": r.estimated_total,
            "n_params": r.n_parameters,
            "result": r,
        }
        for i, r in enumerate(ranked)
    ]
