from __future__ import annotations

import datetime
import warnings

import numpy as np
import pytest

from srgmfit import (
    PENALTY,
    DataQualityWarning,
    DefectDataset,
    DESettings,
    FitWarning,
    HoldoutMetrics,
    MultiStartSettings,
    OptimizationResult,
    settings_from_dict,
)
from srgmfit.utils import (
    calculate_bic,
    check_data_quality,
    gaussian_log_likelihood,
    holdout_metrics,
    r_squared,
    select_criterion,
    split_holdout,
)


def _linear_dataset(n: int, step: float = 5.0, **kwargs) -> DefectDataset:
    t = np.arange(1.0, n + 1)
    return DefectDataset(t, step * t, **kwargs)


# --- Holdout ---

def test_split_holdout_slices_every_series():
    dataset = _linear_dataset(12, secondary={"corrected": np.arange(12.0)})
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        train, test = split_holdout(dataset, 2)
    assert train.n_points == 10 and test.n_points == 2
    assert test.time.tolist() == [11.0, 12.0]
    assert train.secondary["corrected"].tolist() == list(range(10))
    assert test.secondary["corrected"].tolist() == [10.0, 11.0]

    same, none = split_holdout(dataset, 0)
    assert same is dataset and none is None


def test_split_holdout_warns_on_short_training_sets():
    dataset = _linear_dataset(12)
    with pytest.warns(DataQualityWarning, match="may be unreliable"):
        split_holdout(dataset, 3)
    with pytest.warns(DataQualityWarning, match="very unreliable"):
        split_holdout(dataset, 8)


def test_split_holdout_rejects_bad_sizes():
    dataset = _linear_dataset(12)
    with pytest.raises(ValueError, match="at least 3"):
        split_holdout(dataset, 10)
    with pytest.raises(ValueError, match="non-negative"):
        split_holdout(dataset, -1)


def test_holdout_metrics():
    metrics = holdout_metrics([10.0, 0.0, 20.0], [12.0, 1.0, 18.0], n_train=7)
    assert (metrics.n_train, metrics.n_test) == (7, 3)
    assert metrics.mse == pytest.approx(3.0)
    assert metrics.mae == pytest.approx(5.0 / 3.0)
    # The zero actual is left out of MAPE
    assert metrics.mape == pytest.approx(15.0)


def test_holdout_metrics_flag_large_errors():
    with pytest.warns(FitWarning, match="MAPE"):
        metrics = holdout_metrics([10.0, 20.0], [20.0, 40.0])
    assert metrics.mape == pytest.approx(100.0)
    assert np.isnan(holdout_metrics([0.0], [1.0]).mape)


# --- Data quality ---

def test_data_quality_on_a_tiny_dataset():
    dataset = DefectDataset([1.0, 2.0, 3.0, 4.0, 5.0], [1.0, 2.0, 3.0, 3.0, 3.0])
    with pytest.warns(DataQualityWarning):
        messages = check_data_quality(dataset, n_params=2)
    assert len(messages) == 3
    assert messages[0].startswith("Only 5 data points")
    assert "at least 6 are recommended" in messages[1]
    assert "Only 3 defects found" in messages[2]


def test_data_quality_flags_flat_tail_and_poor_holdout():
    t = np.arange(1.0, 13.0)
    y = np.minimum(10.0 * t, 80.0)
    poor = HoldoutMetrics(n_train=9, n_test=3, mse=1.0, mae=1.0, mape=120.0)
    with pytest.warns(DataQualityWarning):
        messages = check_data_quality(DefectDataset(t, y), n_params=2, holdout=poor)
    assert any("No new defects in the last 5 observations" in m for m in messages)
    assert any("exceeds 100%" in m for m in messages)

    fair = HoldoutMetrics(n_train=9, n_test=3, mse=1.0, mae=1.0, mape=60.0)
    with pytest.warns(DataQualityWarning):
        messages = check_data_quality(_linear_dataset(20), n_params=2, holdout=fair)
    assert messages == ["Holdout MAPE 60.0% exceeds 50%; treat predictions with caution."]


def test_clean_dataset_has_no_quality_messages():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert check_data_quality(_linear_dataset(20), n_params=2) == []


# --- Statistics ---

def test_select_criterion():
    assert select_criterion(10.0, 12.0, n_datapoints=20, n_params=2) == ("AICc", 12.0)
    assert select_criterion(10.0, 12.0, n_datapoints=100, n_params=2) == ("AIC", 10.0)
    assert select_criterion(10.0, None, n_datapoints=3, n_params=2) == ("invalid", None)
    assert select_criterion(10.0, 12.0, n_datapoints=100, n_params=2, aicc_ratio=60.0) == ("AICc", 12.0)


def test_bic_and_gaussian_likelihood():
    assert calculate_bic(-10.0, 2, 10) == pytest.approx(2 * np.log(10.0) + 20.0)
    assert calculate_bic(-10.0, 2, 0) == np.inf
    assert np.isfinite(gaussian_log_likelihood(0.0, 10))
    assert gaussian_log_likelihood(5.0, 0) == -np.inf
    assert gaussian_log_likelihood(10.0, 10) == pytest.approx(-5.0 * (np.log(2 * np.pi) + 1))


def test_r_squared():
    assert r_squared([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == 1.0
    assert r_squared([2.0, 2.0], [1.0, 3.0]) == 0.0


# --- Settings and datatypes ---

def test_settings_from_dict():
    assert settings_from_dict(DESettings, None) == DESettings()
    assert settings_from_dict(DESettings, {"population_size": 10}).population_size == 10
    quantiles = settings_from_dict(MultiStartSettings, {"boundary_quantiles": [0.2, 0.8]}).boundary_quantiles
    assert quantiles == (0.2, 0.8)
    with pytest.raises(ValueError, match="Unknown DESettings keys"):
        settings_from_dict(DESettings, {"pop": 10})


def test_dataset_validation():
    with pytest.raises(ValueError, match="same length"):
        DefectDataset([1.0, 2.0], [1.0])
    with pytest.raises(ValueError, match="strictly increasing"):
        DefectDataset([1.0, 1.0], [1.0, 2.0])
    with pytest.raises(ValueError, match="non-decreasing"):
        DefectDataset([1.0, 2.0], [3.0, 2.0])
    with pytest.raises(ValueError, match="finite"):
        DefectDataset([1.0, 2.0], [1.0, np.nan])
    with pytest.raises(ValueError, match="Secondary series 'effort'"):
        DefectDataset([1.0, 2.0], [1.0, 2.0], secondary={"effort": [1.0]})


def test_dataset_arrays_are_read_only():
    dataset = _linear_dataset(4, secondary={"corrected": [0.0, 1.0, 2.0, 3.0]})
    with pytest.raises(ValueError):
        dataset.cumulative_found[0] = 100.0
    with pytest.raises(ValueError):
        dataset.secondary["corrected"][0] = 100.0


def test_dataset_from_daily_counts():
    start = datetime.date(2024, 1, 1)
    dataset = DefectDataset.from_daily_counts([1, 2, 0, 3], fixed=[0, 1, 1, 2], effort=[0, 0, 0, 0], start_date=start)
    assert dataset.time.tolist() == [1.0, 2.0, 3.0, 4.0]
    assert dataset.cumulative_found.tolist() == [1.0, 3.0, 3.0, 6.0]
    assert dataset.secondary["corrected"].tolist() == [0.0, 1.0, 2.0, 4.0]
    assert "effort" not in dataset.secondary
    assert dataset.total_found == 6.0
    assert dataset.start_date == start

    head = dataset.head(2)
    assert head.n_points == 2
    assert head.secondary["corrected"].tolist() == [0.0, 1.0]


def test_failed_optimization_result():
    result = OptimizationResult.failed("DE", "boom", n_params=3)
    assert not result.success
    assert result.objective_value == PENALTY
    assert result.parameters.shape == (3,)
    assert np.all(np.isnan(result.parameters))
