from __future__ import annotations

import datetime

import numpy as np
import pytest

from srgmfit import (
    AutoSelectSettings,
    DefectDataset,
    DESettings,
    FitResult,
    FitSettings,
    LossFallbackWarning,
    MultiStartSettings,
    SelectionWarning,
    fit_all_models,
    fit_growth_model,
    get_best_model,
    get_model,
    predict_convergence,
    rank_models,
    refit_from,
)
from srgmfit.models import ExponentialModel
from srgmfit.utils import r_squared

T = np.arange(1.0, 11.0)
Y = np.array([9.0, 16.0, 21.0, 25.0, 29.0, 31.0, 33.0, 35.0, 36.0, 37.0]) # round(40(1 - e^(-0.25t)))
SMALL_DE = {"de": DESettings(population_size=15, max_iterations=80)}


class BrokenModel(ExponentialModel):
    name = "broken"

    def evaluate(self, t, p):
        raise RuntimeError("evaluation failed")


class InvertedBoundsModel(ExponentialModel):
    name = "inverted"

    def bounds(self, t, y, secondary=None):
        return np.array([100.0, 1.0]), np.array([50.0, 0.001])


class NoLikelihoodModel(ExponentialModel):
    name = "no_likelihood"
    supports_mle = False


@pytest.fixture
def dataset() -> DefectDataset:
    return DefectDataset(T, Y)


def test_fit_exponential_recovers_parameters(dataset):
    result = fit_growth_model("exponential", dataset, optimizer="de", seed=1)
    assert result.success, result.message
    assert result.parameters["a"] == pytest.approx(40.0, abs=2.0)
    assert result.parameters["b"] == pytest.approx(0.25, abs=0.05)
    assert result.r_squared > 0.95
    assert result.r_squared == pytest.approx(r_squared(Y, result.predicted_values))
    assert result.optimizer_used == "DE"
    assert result.selection_criterion == "AICc"
    assert result.selection_score == result.aicc
    assert result.estimated_total == pytest.approx(result.parameters["a"])
    assert result.predicted_values.shape == T.shape
    assert result.warnings == []

    predictions = result.convergence_predictions
    assert list(predictions) == ["90%", "95%", "99%", "99.9%"]
    ninety = predictions["90%"]
    assert ninety.already_reached == (Y[-1] >= ninety.target_count)
    if ninety.already_reached:
        assert ninety.remaining_time == 0.0
    assert not predictions["99%"].already_reached
    assert predictions["99%"].predicted_time > T[-1]
    assert predictions["99%"].predicted_date is None


def test_fit_never_raises(dataset):
    unknown = fit_growth_model("musa_okumoto", dataset)
    assert not unknown.success
    assert unknown.message.startswith("ValueError: Unknown growth model")

    inverted = fit_growth_model(InvertedBoundsModel(), dataset, optimizer="nelder_mead")
    assert not inverted.success
    assert "Invalid problem" in inverted.message

    too_short = fit_growth_model("exponential", dataset, holdout=9)
    assert not too_short.success
    assert "at least 3" in too_short.message

    broken = fit_growth_model(BrokenModel(), dataset, optimizer="nelder_mead")
    assert not broken.success
    assert broken.message.startswith("Optimization failed")


def test_holdout_metrics_are_reported(dataset):
    with pytest.warns(UserWarning):
        result = fit_growth_model("exponential", dataset, optimizer="nelder_mead", holdout=3)
    assert result.success
    assert result.holdout.n_train == 7
    assert result.holdout.n_test == 3
    assert result.n_datapoints == 10
    assert any("may be unreliable" in w for w in result.warnings)


def test_fit_all_models_isolates_failures(dataset):
    names = ["exponential", "delayed_s", "gompertz", "modified_gompertz", "logistic", "weibull",
             "pham_exponential", "pham_weibull", "coverage_weibull"]
    results = fit_all_models(dataset, models=names + [BrokenModel()], optimizer="nelder_mead", settings=FitSettings(seed=0))
    assert len(results) == 10
    assert [r.model_name for r in results] == names + ["broken"]
    assert [r.success for r in results].count(False) == 1
    assert not results[-1].success


def test_invalid_problem_is_isolated_in_a_batch(dataset):
    names = ["exponential", "delayed_s", "gompertz", "modified_gompertz", "logistic", "weibull",
             "pham_exponential", "pham_weibull", "coverage_weibull"]
    results = fit_all_models(dataset, models=names + [InvertedBoundsModel()], optimizer="nelder_mead", settings=FitSettings(seed=0))
    assert [r.model_name for r in results] == names + ["inverted"]
    assert [r.success for r in results] == [True] * 9 + [False]
    assert "Invalid problem" in results[-1].message


def test_fit_all_models_by_category(dataset):
    results = fit_all_models(dataset, categories=["basic"], optimizer="nelder_mead")
    assert {r.category for r in results} == {"basic"}
    assert len(results) == 6


def test_parallel_fits_match_sequential(dataset):
    settings = FitSettings(seed=5, optimizer_settings=SMALL_DE)
    models = ["exponential", "delayed_s"]
    sequential = fit_all_models(dataset, models=models, settings=settings)
    parallel = fit_all_models(dataset, models=models, settings=settings, max_workers=2)
    for a, b in zip(sequential, parallel):
        assert a.success and b.success
        assert np.array_equal(a.parameter_vector, b.parameter_vector)


def _result(name, category, score, aic, k=2, criterion="AICc", success=True):
    return FitResult(
        model_name=name, category=category, success=success, message="",
        selection_criterion=criterion, selection_score=score, aic=aic, n_parameters=k, n_datapoints=20,
    )


def test_best_model_and_ranking():
    results = [
        _result("a", "basic", 10.0, 8.0),
        _result("b", "tef", 5.0, 6.0, k=5),
        _result("c", "basic", None, None, criterion="invalid"),
        _result("d", "basic", 1.0, 1.0, success=False),
        _result("e", "basic", 5.0, 7.0, k=2),
    ]
    assert get_best_model(results).model_name in ("b", "e")
    assert get_best_model(results, category="tef").model_name == "b"
    assert get_best_model(results, category="coverage") is None

    with pytest.warns(SelectionWarning, match="'c'"):
        ranked = rank_models(results)
    assert [r["model_name"] for r in ranked] == ["e", "b", "a"]
    assert [r["rank"] for r in ranked] == [1, 2, 3]
    assert [r["delta_aic"] for r in ranked] == [1.0, 0.0, 2.0]
    assert rank_models([]) == []


def test_predict_convergence_dates():
    t = np.arange(1.0, 11.0)
    dataset = DefectDataset(t, 100.0 * (1.0 - np.exp(-0.1 * t)), start_date=datetime.date(2024, 3, 1))
    predictions = predict_convergence(ExponentialModel(), [100.0, 0.1], dataset, milestones=(0.5, 0.9))

    assert predictions["50%"].already_reached
    ninety = predictions["90%"]
    assert ninety.target_count == pytest.approx(90.0)
    assert ninety.predicted_time == pytest.approx(np.log(10.0) / 0.1, rel=1e-6)
    assert ninety.remaining_time == pytest.approx(np.log(10.0) / 0.1 - 10.0, rel=1e-6)
    assert ninety.predicted_date == datetime.date(2024, 3, 24)


def test_unreachable_milestone_has_no_time():
    dataset = DefectDataset(T, Y)
    predictions = predict_convergence(ExponentialModel(), [100.0, 1e-6], dataset, milestones=(0.9,))
    assert predictions["90%"].predicted_time is None
    assert not predictions["90%"].already_reached


def test_refit_from_previous_optimum(dataset):
    first = fit_growth_model("exponential", dataset, optimizer="de", settings=FitSettings(seed=2, optimizer_settings=SMALL_DE))
    warm = refit_from("exponential", dataset, first.parameter_vector)
    assert warm.success
    assert warm.optimizer_used == "NelderMead"
    assert warm.sse <= first.sse + 1e-9
    with pytest.raises(ValueError, match="has 2 parameters"):
        refit_from("exponential", dataset, [40.0, 0.2, 1.0])


def test_mle_falls_back_for_unsupported_models(dataset):
    with pytest.warns(LossFallbackWarning):
        result = fit_growth_model(NoLikelihoodModel(), dataset, optimizer="nelder_mead", loss="mle")
    assert result.success
    assert result.loss_name == "sse"
    assert any("falling back to SSE" in w for w in result.warnings)


def test_fre_model_fits_with_mle():
    found = [5, 7, 8, 6, 6, 5, 4, 3, 3, 2, 2, 1, 1, 1]
    fixed = [3, 5, 7, 6, 6, 5, 4, 3, 3, 2, 2, 1, 1, 0]
    dataset = DefectDataset.from_daily_counts(found, fixed=fixed)
    result = fit_growth_model("fre_constant", dataset, optimizer="multistart", loss="mle",
                              settings=FitSettings(seed=0, multistart=MultiStartSettings(n_starts=3)))
    assert result.success, result.message
    assert result.loss_name == "mle"
    assert result.optimizer_used == "MultiStart(NelderMead)"
    assert result.estimated_total >= dataset.total_found
    assert 0.3 <= result.parameters["eta"] <= 1.0


def test_autoselect_by_name(dataset):
    settings = FitSettings(autoselect=AutoSelectSettings(optimizers=("nelder_mead", "grid_gradient")))
    result = fit_growth_model("delayed_s", dataset, optimizer="auto", settings=settings)
    assert result.success
    assert result.optimizer_used.startswith("AutoSelect(")


def test_too_few_points_make_criterion_invalid():
    dataset = DefectDataset([1.0, 2.0, 3.0, 4.0], [2.0, 5.0, 9.0, 12.0])
    with pytest.warns(SelectionWarning):
        result = fit_growth_model(get_model("gompertz"), dataset, optimizer="nelder_mead")
    assert result.success
    assert result.aicc is None
    assert result.selection_criterion == "invalid"
    assert result.selection_score is None
    assert len(result.warnings) == len(set(result.warnings))
    assert get_best_model([result]) is None


def test_settings_may_be_a_dict(dataset):
    result = fit_growth_model("exponential", dataset, settings={"optimizer": "nelder_mead", "milestones": [0.95]})
    assert result.success
    assert result.optimizer_used == "NelderMead"
    assert list(result.convergence_predictions) == ["95%"]
