from __future__ import annotations

import math

import numpy as np
import pytest
from scipy.special import gammaln

from srgmfit import DefectDataset, LossFallbackWarning, MLELoss, SSELoss, SelectionWarning, create_loss, get_model
from srgmfit.losses import log_factorial, poisson_log_likelihood
from srgmfit.models import ConstantFREModel, ExponentialModel
from srgmfit.utils import calculate_aic, calculate_aicc, gaussian_log_likelihood

T = np.arange(1.0, 11.0)
TRUE = np.array([100.0, 0.2])
M = 100.0 * (1.0 - np.exp(-0.2 * T))


class _NoLikelihoodModel(ExponentialModel):
    name = "no_likelihood"
    supports_mle = False


def test_sse_is_zero_on_noiseless_data():
    dataset = DefectDataset(T, M)
    assert SSELoss().evaluate(ExponentialModel(), dataset, TRUE) == pytest.approx(0.0, abs=1e-18)
    assert SSELoss().evaluate(ExponentialModel(), dataset, [100.0, 0.3]) > 0


def test_sse_weights_secondary_series_by_variance():
    model = ConstantFREModel()
    dataset = DefectDataset(T, M, secondary={"corrected": 0.5 * M})
    p = np.array([100.0, 0.2, 0.8])
    # var(primary) / var(corrected) = 4, residual = -0.3 * m
    assert SSELoss().evaluate(model, dataset, p) == pytest.approx(0.36 * np.sum(M ** 2), rel=1e-10)


def test_sse_weight_is_one_for_flat_series():
    model = ConstantFREModel()
    flat = np.full(len(T), 5.0)
    dataset = DefectDataset(T, M, secondary={"corrected": flat})
    p = np.array([100.0, 0.2, 0.8])
    assert SSELoss().evaluate(model, dataset, p) == pytest.approx(np.sum((flat - 0.8 * M) ** 2))


def test_series_the_model_does_not_predict_are_ignored():
    dataset = DefectDataset(T, M, secondary={"corrected": 0.5 * M})
    assert SSELoss().evaluate(ExponentialModel(), dataset, TRUE) == pytest.approx(0.0, abs=1e-18)


def test_sse_log_likelihood_uses_primary_series_only():
    model = ConstantFREModel()
    p = np.array([100.0, 0.25, 0.8])
    with_secondary = DefectDataset(T, M, secondary={"corrected": 0.5 * M})
    without = DefectDataset(T, M)
    assert SSELoss().log_likelihood(model, with_secondary, p) == SSELoss().log_likelihood(model, without, p)


def test_poisson_likelihood_by_hand():
    dataset = DefectDataset([1.0, 2.0], [3.0, 5.0])
    # m(1) = 5, m(2) = 7.5 -> increments 5 and 2.5
    p = np.array([10.0, np.log(2.0)])
    expected = (3 * math.log(5.0) - 5.0 - math.log(6.0)) + (2 * math.log(2.5) - 2.5 - math.log(2.0))
    assert MLELoss().log_likelihood(ExponentialModel(), dataset, p) == pytest.approx(expected)
    assert MLELoss().evaluate(ExponentialModel(), dataset, p) == pytest.approx(-expected)


def test_true_parameters_are_more_likely():
    dataset = DefectDataset(T, np.round(M))
    loss = MLELoss()
    assert loss.log_likelihood(ExponentialModel(), dataset, TRUE) > loss.log_likelihood(ExponentialModel(), dataset, [60.0, 0.5])


@pytest.mark.parametrize("scales", [(100.0, 150.0, 300.0), (100.0, 90.0, 60.0, 40.0)])
def test_likelihood_falls_as_the_scale_moves_away(scales):
    dataset = DefectDataset(T, np.round(M))
    loss = MLELoss()
    negative = [-loss.log_likelihood(ExponentialModel(), dataset, [a, 0.2]) for a in scales]
    assert np.all(np.diff(negative) > 0)


def test_negative_increments_are_clipped():
    log_l = poisson_log_likelihood([3.0, 2.0], [3.0, 5.0])
    assert log_l == pytest.approx(3 * math.log(3.0) - 3.0 - math.log(6.0) - 2.0)


def test_zero_expected_increment_is_floored():
    assert np.isfinite(poisson_log_likelihood([0.0, 4.0], [0.0, 0.0]))


def test_log_factorial_matches_gamma():
    k = np.arange(0, 60)
    values = log_factorial(k)
    assert np.allclose(values[:21], gammaln(k[:21] + 1.0), rtol=1e-12, atol=1e-12)
    assert np.allclose(values[21:], gammaln(k[21:] + 1.0), rtol=0.0, atol=1e-5)
    assert float(log_factorial(1000)) == pytest.approx(float(gammaln(1001.0)), abs=1e-5)


def test_information_criteria():
    assert calculate_aic(-10.0, 2) == 24.0
    assert calculate_aic(-np.inf, 2) == np.inf
    assert calculate_aicc(24.0, 2, 10) == pytest.approx(24.0 + 12.0 / 7.0)
    with pytest.warns(SelectionWarning, match="AICc is undefined"):
        assert calculate_aicc(24.0, 2, 3) is None


def test_loss_aic_helpers():
    dataset = DefectDataset(T, np.round(M))
    loss = create_loss("mle")
    log_l = loss.log_likelihood(ExponentialModel(), dataset, TRUE)
    assert loss.aic(ExponentialModel(), dataset, TRUE) == pytest.approx(4 - 2 * log_l)
    assert loss.aicc(ExponentialModel(), dataset, TRUE) == pytest.approx(4 - 2 * log_l + 12.0 / 7.0)


def test_create_loss_falls_back_to_sse():
    with pytest.warns(LossFallbackWarning, match="falling back to SSE"):
        loss = create_loss("mle", _NoLikelihoodModel())
    assert isinstance(loss, SSELoss)
    assert isinstance(create_loss("MLE", ExponentialModel()), MLELoss)
    with pytest.raises(ValueError, match="Unknown loss"):
        create_loss("huber")


def test_mle_adds_gaussian_term_for_effort():
    model = get_model("tef_exponential", effort="exponential")
    p = np.array([120.0, 0.01, 400.0, 0.1])
    effort = 380.0 * (1.0 - np.exp(-0.12 * T))
    with_effort = DefectDataset(T, np.round(M), secondary={"effort": effort})
    without = DefectDataset(T, np.round(M))

    predicted_effort = model.secondary_predictions(T, p)["effort"]
    extra = gaussian_log_likelihood(float(np.sum((effort - predicted_effort) ** 2)), len(T))
    loss = MLELoss()
    assert loss.log_likelihood(model, with_effort, p) == pytest.approx(loss.log_likelihood(model, without, p) + extra)


def test_mle_adds_poisson_term_for_corrected_counts():
    model = ConstantFREModel()
    p = np.array([100.0, 0.2, 0.8])
    corrected = np.round(0.8 * M)
    dataset = DefectDataset(T, np.round(M), secondary={"corrected": corrected})
    primary_only = DefectDataset(T, np.round(M))
    extra = poisson_log_likelihood(corrected, 0.8 * M)
    loss = MLELoss()
    assert loss.log_likelihood(model, dataset, p) == pytest.approx(loss.log_likelihood(model, primary_only, p) + extra)
