# losses.py
"""
Objectives that turn (model, dataset, parameters) into the scalar an optimizer
minimises, plus the log-likelihood behind information criteria.

* SSE: least squares on the cumulative series (Gaussian likelihood).
* MLE: Poisson NHPP likelihood on per-interval increments.

Secondary series (corrected counts, cumulative effort) join the objective when
the model predicts them and the dataset carries them.
"""
import warnings
import numpy as np
from abc import ABC, abstractmethod
from typing import Dict, Optional, Type

from .datatypes import DefectDataset
from .models import GrowthModel
from .utils import LossFallbackWarning, calculate_aic, calculate_aicc, gaussian_log_likelihood

# Smallest expected increment used inside ln(lambda)
MIN_RATE = 1e-9

# ln(k!) for k = 0..20
_LOG_FACTORIAL_TABLE = np.concatenate(([0.0], np.cumsum(np.log(np.arange(1, 21, dtype=float)))))


def log_factorial(k) -> np.ndarray:
    """ln(k!) for non-negative counts: exact up to 20, Stirling's series above."""
    k = np.maximum(np.rint(np.asarray(k, dtype=float)), 0.0)
    exact = _LOG_FACTORIAL_TABLE[np.minimum(k, 20).astype(int)]
    n = np.maximum(k, 1.0)
    stirling = n * np.log(n) - n + 0.5 * np.log(2 * np.pi * n) + 1.0 / (12.0 * n)
    return np.where(k <= 20, exact, stirling)


def _increments(values: np.ndarray, start: float) -> np.ndarray:
    return np.diff(np.concatenate(([start], values)))


def poisson_log_likelihood(observed: np.ndarray, expected: np.ndarray, expected_at_zero: float = 0.0) -> float:
    """Sum of Poisson log-pmfs of observed increments given expected cumulative values."""
    counts = np.maximum(_increments(np.asarray(observed, dtype=float), 0.0), 0.0)
    rates = np.maximum(_increments(np.asarray(expected, dtype=float), expected_at_zero), MIN_RATE)
    return float(np.sum(counts * np.log(rates) - rates - log_factorial(counts)))


class LossFunction(ABC):
    name: str = ""
    description: str = ""

    @abstractmethod
    def evaluate(self, model: GrowthModel, dataset: DefectDataset, p) -> float:
        """Value minimised by the optimizer."""

    @abstractmethod
    def log_likelihood(self, model: GrowthModel, dataset: DefectDataset, p) -> float:
        ...

    def supports(self, model: GrowthModel) -> bool:
        return True

    def aic(self, model: GrowthModel, dataset: DefectDataset, p) -> float:
        return calculate_aic(self.log_likelihood(model, dataset, p), model.n_params)

    def aicc(self, model: GrowthModel, dataset: DefectDataset, p) -> Optional[float]:
        return calculate_aicc(self.aic(model, dataset, p), model.n_params, dataset.n_points)

    def __repr__(self):
        return f"{type(self).__name__}()"


class SSELoss(LossFunction):
    name = "sse"
    description = "Sum of squared residuals on the cumulative series"

    @staticmethod
    def primary_sse(model: GrowthModel, dataset: DefectDataset, p) -> float:
        residuals = dataset.cumulative_found - model.evaluate(dataset.time, p)
        return float(np.sum(residuals ** 2))

    def evaluate(self, model, dataset, p):
        with np.errstate(all="ignore"):
            total = self.primary_sse(model, dataset, p)
            if not dataset.secondary:
                return total
            primary_var = float(np.var(dataset.cumulative_found))
            for name, predicted in model.secondary_predictions(dataset.time, p).items():
                if name not in dataset.secondary:
                    continue
                observed = dataset.secondary[name]
                series_var = float(np.var(observed))
                # Rescale so each series counts as much as the primary one
                weight = primary_var / series_var if primary_var > 0 and series_var > 0 else 1.0
                total += weight * float(np.sum((observed - predicted) ** 2))
            return total

    def log_likelihood(self, model, dataset, p):
        with np.errstate(all="ignore"):
            return gaussian_log_likelihood(self.primary_sse(model, dataset, p), dataset.n_points)


class MLELoss(LossFunction):
    """
    Poisson NHPP: the defects found in (t_{i-1}, t_i] are Poisson with mean
    m(t_i) - m(t_{i-1}), starting from t = 0 with nothing found.
    Count-type secondary series add their own Poisson terms; continuous ones
    add a Gaussian term with the maximum-likelihood variance.
    """
    name = "mle"
    description = "Poisson NHPP maximum likelihood on interval counts"

    def supports(self, model):
        return model.supports_mle

    def evaluate(self, model, dataset, p):
        return -self.log_likelihood(model, dataset, p)

    def log_likelihood(self, model, dataset, p):
        with np.errstate(all="ignore"):
            t = dataset.time
            expected_at_zero = float(model.evaluate(0.0, p))
            log_l = poisson_log_likelihood(dataset.cumulative_found, model.evaluate(t, p), expected_at_zero)
            if not dataset.secondary:
                return log_l

            predictions = model.secondary_predictions(t, p)
            at_zero = model.secondary_predictions(np.zeros(1), p)
            for name, predicted in predictions.items():
                if name not in dataset.secondary:
                    continue
                observed = dataset.secondary[name]
                if model.secondary_kinds.get(name, "count") == "count":
                    log_l += poisson_log_likelihood(observed, predicted, float(at_zero[name][0]))
                else:
                    sse = float(np.sum((observed - predicted) ** 2))
                    log_l += gaussian_log_likelihood(sse, len(observed))
            return log_l

# --- Registry of loss functions ---
LOSS_FUNCTIONS: Dict[str, Type[LossFunction]] = {cls.name: cls for cls in (SSELoss, MLELoss)}


def create_loss(kind: str, model: Optional[GrowthModel] = None) -> LossFunction:
    """
    Loss of the requested kind for `model`. Falls back to SSE (with a
    LossFallbackWarning) when the model does not support the requested loss.
    """
    key = str(kind).lower()
    if key not in LOSS_FUNCTIONS:
        raise ValueError(f"Unknown loss '{kind}'. Available: {sorted(LOSS_FUNCTIONS)}")
    loss = LOSS_FUNCTIONS[key]()
    if model is not None and not loss.supports(model):
        warnings.warn(
            f"Model '{model.name}' does not support {loss.name.upper()}; falling back to SSE.",
            LossFallbackWarning,
        )
        return SSELoss()
    return loss
