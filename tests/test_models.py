from __future__ import annotations

import numpy as np
import pytest
from scipy.integrate import quad

from srgmfit import EFFORT_FUNCTIONS, GROWTH_MODELS, ModelInitSettings, get_effort_function, get_model, get_models, list_models
from srgmfit.models import (
    MODEL_CATEGORIES,
    PREDICTION_HORIZON,
    ExponentialModel,
    LearningFREModel,
    RemovalEfficiencyModel,
)
from srgmfit.utils import r_squared

T = np.arange(1.0, 21.0)
Y = np.round(50.0 * (1.0 - np.exp(-0.15 * T)))


def _mid_parameters(model):
    lower, upper = model.bounds(T, Y)
    return (lower + upper) / 2.0


def test_registry_covers_every_family():
    assert len(GROWTH_MODELS) == 25
    assert {cls.category for cls in GROWTH_MODELS.values()} == set(MODEL_CATEGORIES)
    assert len(get_models(["tef"])) == 3
    assert len(get_models(["fre"])) == 6
    names = [entry["name"] for entry in list_models()]
    assert names == list(GROWTH_MODELS)


def test_unknown_names_are_rejected():
    with pytest.raises(ValueError, match="Unknown growth model"):
        get_model("musa_okumoto")
    with pytest.raises(ValueError, match="Unknown model categories"):
        get_models(["bayesian"])


@pytest.mark.parametrize("name", sorted(GROWTH_MODELS))
def test_model_contract(name):
    model = get_model(name)
    lower, upper = model.bounds(T, Y)
    initial = model.initial_parameters(T, Y)
    assert len(lower) == len(upper) == len(initial) == model.n_params
    assert np.all(lower <= upper)
    assert np.all(np.isfinite(initial))

    p = (lower + upper) / 2.0
    grid = np.linspace(0.0, 40.0, 81)
    values = model.evaluate(grid, p)
    assert values.shape == grid.shape
    assert np.all(np.isfinite(values))
    assert np.all(np.diff(values) >= -1e-9)
    assert np.ndim(model.evaluate(5.0, p)) == 0


@pytest.mark.parametrize("name", sorted(GROWTH_MODELS))
def test_asymptotic_total_is_the_limit(name):
    model = get_model(name)
    p = _mid_parameters(model)
    assert model.asymptotic_total(p) == pytest.approx(float(model.evaluate(1e6, p)), rel=1e-6)


@pytest.mark.parametrize("name", ["cp_exponential", "cp_delayed_s", "cp_imperfect_debug", "cp_pnz", "cp_multiple", "fre_integrated"])
def test_change_point_curves_are_continuous(name):
    model = get_model(name)
    p = _mid_parameters(model)
    for i, param in enumerate(model.param_names):
        if not param.startswith("tau"):
            continue
        tau = p[i]
        left, right = model.evaluate(np.array([tau - 1e-7, tau + 1e-7]), p)
        assert right == pytest.approx(left, abs=1e-4)


def test_exponential_change_point_total():
    model = get_model("cp_exponential")
    p = np.array([30.0, 0.2, 25.0, 0.1, 8.0])
    assert model.asymptotic_total(p) == pytest.approx(30.0 * (1 - np.exp(-1.6)) + 25.0)


def test_multiple_change_points_sort_taus():
    model = get_model("cp_multiple", n_change_points=3)
    assert model.n_params == 11
    assert model.param_names[-3:] == ("tau1", "tau2", "tau3")
    assert get_model("cp_multiple", n_change_points=7).n_change_points == 3

    two = get_model("cp_multiple")
    p = np.array([20.0, 0.3, 15.0, 0.2, 10.0, 0.1, 5.0, 12.0])
    swapped = p.copy()
    swapped[6:] = [12.0, 5.0]
    assert np.allclose(two.evaluate(T, p), two.evaluate(T, swapped))


def test_learning_fre_closed_form_matches_integral():
    model = LearningFREModel()
    p = np.array([120.0, 0.15, 0.5, 0.95, 0.2])
    a, b = p[0], p[1]

    def integrand(s):
        return float(model.removal_efficiency(s, p)) * a * b * np.exp(-b * s)

    for t in (0.5, 5.0, 30.0):
        expected, _ = quad(integrand, 0.0, t)
        assert float(model.corrected(t, p)) == pytest.approx(expected, rel=1e-8)


def test_removal_efficiency_models_predict_corrected_series():
    for model in get_models(["fre"]):
        assert isinstance(model, RemovalEfficiencyModel)
        p = _mid_parameters(model)
        corrected = model.secondary_predictions(T, p)["corrected"]
        assert corrected.shape == T.shape
        assert np.all(corrected <= model.evaluate(T, p) + 1e-9)
        assert np.all(model.remaining(T, p) >= -1e-9)


def test_predict_time_for_ratio():
    model = ExponentialModel()
    p = np.array([100.0, 0.1])
    assert model.predict_time_for_ratio(0.9, p, current_time=5.0) == pytest.approx(np.log(10.0) / 0.1, rel=1e-6)
    assert model.predict_time_for_ratio(0.9, p, current_time=30.0) is None
    assert model.predict_time_for_ratio(0.9, np.array([100.0, 1e-6]), current_time=5.0) == np.inf


def test_effort_models_take_a_test_effort_function():
    default = get_model("tef_exponential")
    assert default.name == "tef_exponential"
    assert default.param_names == ("a", "b", "TEF_N", "TEF_beta", "TEF_m")

    rayleigh = get_model("tef_exponential", effort="rayleigh")
    assert rayleigh.name == "tef_exponential_rayleigh"
    assert rayleigh.param_names == ("a", "b", "TEF_N", "TEF_beta")
    assert "effort" in rayleigh.secondary_predictions(T, _mid_parameters(rayleigh))

    # Unbounded effort: total is the curve's own limit
    log_power = get_model("tef_imperfect_debug", effort="log_power")
    p = np.array([100.0, 0.05, 0.2, 10.0, 1.0])
    assert log_power.asymptotic_total(p) == pytest.approx(125.0)


def test_effort_bounds_follow_observed_effort():
    model = get_model("tef_delayed_s")
    effort = np.linspace(10.0, 400.0, len(T))
    lower, _ = model.bounds(T, Y, {"effort": effort})
    assert lower[2] == 400.0
    lower, _ = model.bounds(T, Y)
    assert lower[2] == Y.max()


def test_initial_scale_depends_on_convergence():
    model = ExponentialModel()
    converged = np.array([10.0, 20.0, 30.0, 35.0, 38.0, 39.0, 39.5])
    growing = np.arange(10.0, 101.0, 10.0)
    t_converged = np.arange(1.0, len(converged) + 1)
    t_growing = np.arange(1.0, len(growing) + 1)

    assert model.initial_parameters(t_converged, converged)[0] == pytest.approx(39.5 * 1.19)
    assert model.initial_parameters(t_growing, growing)[0] == pytest.approx(100.0 * 1.62)


def test_initial_rate_depends_on_recent_slope():
    model = ExponentialModel()
    flat_tail = np.array([10.0, 20.0, 30.0, 40.0, 50.0, 50.0, 50.0, 50.0])
    linear = np.arange(10.0, 101.0, 10.0)
    assert model.initial_parameters(np.arange(1.0, 9.0), flat_tail)[1] == 0.3
    assert model.initial_parameters(np.arange(1.0, 11.0), linear)[1] == 0.05


def test_init_settings_are_injected():
    settings = ModelInitSettings(alpha0=0.25, change_point_ratio=0.25)
    model = get_model("cp_imperfect_debug", init_settings=settings)
    initial = model.initial_parameters(T, Y)
    assert initial[3] == 0.25
    assert initial[4] == pytest.approx(1.0 + 0.25 * 19.0)


def test_milestones_past_the_horizon_are_unreachable():
    model = ExponentialModel()
    # Root at ln(10)/2e-4 ~ 11513, beyond PREDICTION_HORIZON
    assert model.predict_time_for_ratio(0.9, np.array([100.0, 2e-4]), current_time=10.0) == np.inf
    b = np.log(10.0) / 9000.0
    assert model.predict_time_for_ratio(0.9, np.array([100.0, b]), current_time=10.0) == pytest.approx(9000.0, rel=1e-6)
    assert model.predict_time_for_ratio(0.9, np.array([100.0, 1e-7]), current_time=PREDICTION_HORIZON + 1.0) == np.inf


@pytest.mark.parametrize("key", sorted(EFFORT_FUNCTIONS))
def test_effort_rate_is_the_derivative(key):
    effort = get_effort_function(key)
    observed = np.linspace(5.0, 300.0, len(T))
    lower, upper = effort.bounds(T, observed)
    p = (lower + upper) / 2.0
    t = np.linspace(0.5, 20.0, 40)
    h = 1e-5
    numeric = (effort.evaluate(t + h, p) - effort.evaluate(t - h, p)) / (2 * h)
    assert np.allclose(effort.rate(t, p), numeric, rtol=1e-5, atol=1e-6)


def test_goodness_of_fit_helpers():
    model = ExponentialModel()
    p = np.array([50.0, 0.15])
    predicted = model.evaluate(T, p)
    assert model.sse(T, Y, p) == pytest.approx(float(np.sum((Y - predicted) ** 2)))
    assert model.r_squared(T, Y, p) == pytest.approx(r_squared(Y, predicted))
    assert model.r_squared(T, np.full(len(T), 3.0), p) == 0.0
