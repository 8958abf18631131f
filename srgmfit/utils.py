# utils.py
import warnings
import numpy as np
from typing import List, Tuple, Optional

from .datatypes import DefectDataset, HoldoutMetrics

# --- Warning categories ---

class FitWarning(UserWarning):
    """A fit completed but something about it deserves attention."""

class DataQualityWarning(UserWarning):
    """The observed series is too short, too flat or too small to trust the estimates."""

class SelectionWarning(UserWarning):
    """An information criterion is undefined for this sample size."""

class LossFallbackWarning(UserWarning):
    """The requested loss does not support the model; SSE was used instead."""

# --- Goodness of fit ---

def r_squared(actual: np.ndarray, predicted: np.ndarray) -> float:
    """Coefficient of determination. 0 when the data has no variance."""
    actual = np.asarray(actual, dtype=float)
    ss_tot = float(np.sum((actual - actual.mean()) ** 2))
    if ss_tot == 0:
        return 0.0
    ss_res = float(np.sum((actual - np.asarray(predicted, dtype=float)) ** 2))
    return 1.0 - ss_res / ss_tot


def mean_squared_error(actual: np.ndarray, predicted: np.ndarray) -> float:
    residuals = np.asarray(actual, dtype=float) - np.asarray(predicted, dtype=float)
    return float(np.mean(residuals ** 2)) if len(residuals) else np.nan


def gaussian_log_likelihood(sse: float, n_datapoints: int) -> float:
    """Profile log-likelihood of normal residuals with variance SSE/n."""
    if n_datapoints <= 0:
        return -np.inf
    sse = max(sse, 1e-12) # Avoid log(0) on a perfect fit
    n = n_datapoints
    return -n / 2.0 * (np.log(2 * np.pi) + np.log(sse / n) + 1)

# --- Information criteria ---

def calculate_aic(log_likelihood: float, n_params: int) -> float:
    """AIC = 2k - 2 ln L."""
    if not np.isfinite(log_likelihood):
        return np.inf
    return 2 * n_params - 2 * log_likelihood


def calculate_aicc(aic: float, n_params: int, n_datapoints: int) -> Optional[float]:
    """
    Small-sample corrected AIC. Returns None when n <= k + 1, where the
    correction term is undefined.
    """
    k = n_params
    n = n_datapoints
    denominator = n - k - 1
    if denominator <= 0:
        warnings.warn(
            f"AICc is undefined for n={n} points and k={k} parameters (n <= k+1).",
            SelectionWarning,
        )
        return None
    return aic + (2 * k * (k + 1)) / denominator


def calculate_bic(log_likelihood: float, n_params: int, n_datapoints: int) -> float:
    """BIC = k ln(n) - 2 ln L."""
    if n_datapoints <= 0 or not np.isfinite(log_likelihood):
        return np.inf
    return n_params * np.log(n_datapoints) - 2 * log_likelihood


def select_criterion(
    aic: Optional[float],
    aicc: Optional[float],
    n_datapoints: int,
    n_params: int,
    aicc_ratio: float = 40.0,
) -> Tuple[str, Optional[float]]:
    """
    Which criterion ranks this fit, and its value.
    AICc while n/k is below aicc_ratio, AIC otherwise, "invalid" when n <= k+1.
    """
    if n_datapoints <= n_params + 1 or aicc is None:
        return "invalid", None
    if n_params > 0 and n_datapoints / n_params < aicc_ratio:
        return "AICc", aicc
    return "AIC", aic

# --- Holdout validation ---

def split_holdout(dataset: DefectDataset, holdout: int) -> Tuple[DefectDataset, Optional[DefectDataset]]:
    """
    Splits off the trailing `holdout` points for validation.
    Returns (train, test); test is None when holdout == 0.
    """
    n = dataset.n_points
    if holdout < 0:
        raise ValueError(f"holdout must be non-negative, got {holdout}.")
    if holdout == 0:
        return dataset, None
    n_train = n - holdout
    if n_train < 3:
        raise ValueError(f"Holdout of {holdout} leaves {n_train} training points; at least 3 are required.")

    if n_train < 5:
        warnings.warn(f"Only {n_train} training points after holdout; validation is very unreliable.", DataQualityWarning)
    elif n_train < 10:
        warnings.warn(f"Only {n_train} training points after holdout; validation may be unreliable.", DataQualityWarning)

    test = DefectDataset(
        time=dataset.time[n_train:],
        cumulative_found=dataset.cumulative_found[n_train:],
        secondary={k: v[n_train:] for k, v in dataset.secondary.items()},
        start_date=dataset.start_date,
        metadata=dict(dataset.metadata),
    )
    return dataset.head(n_train), test


def holdout_metrics(actual: np.ndarray, predicted: np.ndarray, n_train: int = 0, warn: bool = True) -> HoldoutMetrics:
    """MSE, MAE and MAPE (percent) of predictions on the held-out points."""
    actual = np.asarray(actual, dtype=float)
    predicted = np.asarray(predicted, dtype=float)
    errors = actual - predicted
    mse = float(np.mean(errors ** 2))
    mae = float(np.mean(np.abs(errors)))

    nonzero = np.abs(actual) >= 1e-6
    mape = float(np.mean(np.abs(errors[nonzero] / actual[nonzero])) * 100.0) if np.any(nonzero) else np.nan
    if warn and np.isfinite(mape) and mape > 50:
        warnings.warn(f"Holdout MAPE is {mape:.1f}%; predictions are unreliable.", FitWarning)
    return HoldoutMetrics(n_train=n_train, n_test=len(actual), mse=mse, mae=mae, mape=mape)

# --- Data quality ---

def check_data_quality(
    dataset: DefectDataset,
    n_params: int,
    holdout: Optional[HoldoutMetrics] = None,
) -> List[str]:
    """
    Emits a DataQualityWarning for each reason to distrust a fit of this data
    and returns the messages.
    """
    messages = []
    n = dataset.n_points
    y = dataset.cumulative_found

    if n < 7:
        messages.append(f"Only {n} data points; at least 7 are recommended.")
    if n_params > 0 and n < 3 * n_params:
        messages.append(f"{n} data points for {n_params} parameters; at least {3 * n_params} are recommended.")
    if dataset.total_found < 20:
        messages.append(f"Only {dataset.total_found:.0f} defects found; estimates of the total are unreliable.")
    if n >= 5 and y[-1] - y[-5] <= 0:
        messages.append("No new defects in the last 5 observations; the curve may already have converged.")
    if holdout is not None and np.isfinite(holdout.mape):
        if holdout.mape > 100:
            messages.append(f"Holdout MAPE {holdout.mape:.1f}% exceeds 100%; predictions should not be used.")
        elif holdout.mape > 50:
            messages.append(f"Holdout MAPE {holdout.mape:.1f}% exceeds 50%; treat predictions with caution.")

    for message in messages:
        warnings.warn(message, DataQualityWarning)
    return messages
