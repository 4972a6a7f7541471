"""Tests for standard errors and Wald tests."""

import numpy as np
import pytest

from latent_mixture import (
    CategoricalMixture,
    EstimationParams,
    InformationType,
    ProfileMixture,
    fit_mixture,
    standard_errors,
)
from latent_mixture.inference import condition_number, fit_standard_errors, numerical_derivatives


@pytest.fixture(scope="module")
def normal_sample():
    rng = np.random.default_rng(12)
    return 2.0 + 1.5 * rng.standard_normal((400, 1))


class TestOneClassNormal:
    """For K = 1 the estimates are the sample mean and ML variance."""

    @pytest.fixture(scope="class")
    def result(self, normal_sample):
        return fit_mixture(ProfileMixture(1, 1), normal_sample, params=EstimationParams(n_starts=1, n_final=1))

    def test_analytic_standard_errors(self, result, normal_sample):
        estimates = fit_standard_errors(result, normal_sample)
        n = len(normal_sample)
        variance = normal_sample.var()
        table = estimates.table.set_index("parameter")
        assert table.loc["Class 1 mean 1", "se"] == pytest.approx(np.sqrt(variance / n), rel=1e-3)
        assert table.loc["Variance 1", "se"] == pytest.approx(variance * np.sqrt(2.0 / n), rel=1e-3)

    def test_wald_statistics(self, result, normal_sample):
        table = standard_errors(result.model, normal_sample).table
        np.testing.assert_allclose(table["z"], table["estimate"] / table["se"])
        assert np.all((table["p_value"] >= 0) & (table["p_value"] <= 1))
        assert not table["fixed"].any()

    def test_scores_sum_to_zero_at_the_optimum(self, result, normal_sample):
        derivatives = numerical_derivatives(result.model, normal_sample)
        assert derivatives.scores.shape == (len(normal_sample), 2)
        np.testing.assert_allclose(derivatives.scores.sum(axis=0), 0.0, atol=1e-3)

    def test_sandwich_close_to_hessian_for_normal_data(self, result, normal_sample):
        hessian = standard_errors(result.model, normal_sample).table["se"]
        sandwich = standard_errors(result.model, normal_sample,
                                   information=InformationType.SANDWICH).table["se"]
        np.testing.assert_allclose(sandwich, hessian, rtol=0.25)

    def test_condition_number_in_unit_interval(self, result, normal_sample):
        estimates = standard_errors(result.model, normal_sample)
        assert 0.0 < estimates.condition_number <= 1.0


class TestMixtureStandardErrors:

    def test_two_class_profile(self, separated_profiles):
        data, _ = separated_profiles
        result = fit_mixture(ProfileMixture(2, 2), data,
                             params=EstimationParams(n_starts=4, n_final=2, seed=0))
        estimates = fit_standard_errors(result, data)
        assert len(estimates.table) == result.n_parameters
        assert np.all(np.isfinite(estimates.table["se"]))
        assert np.all(estimates.table["se"] > 0)
        assert estimates.covariance.shape == (result.n_parameters, result.n_parameters)

    def test_boundary_thresholds_have_no_standard_error(self):
        rng = np.random.default_rng(8)
        classes = np.repeat([0, 1], [150, 100])
        # The first item is answered with certainty in each class
        data = np.column_stack([
            classes.astype(float),
            (rng.random(250) < np.where(classes == 0, 0.8, 0.3)).astype(float),
            (rng.random(250) < np.where(classes == 0, 0.7, 0.2)).astype(float),
        ])
        model = CategoricalMixture(2, [2, 2, 2])
        result = fit_mixture(model, data, params=EstimationParams(n_starts=4, n_final=2, seed=1))
        table = standard_errors(result.model, data).table
        assert table["fixed"].any()
        assert table.loc[table["fixed"], "se"].isna().all()
        assert np.isfinite(table.loc[~table["fixed"], "se"]).all()


class TestConditionNumber:

    def test_identity(self):
        assert condition_number(np.eye(3)) == pytest.approx(1.0)

    def test_singular(self):
        assert condition_number(np.array([[1.0, 1.0], [1.0, 1.0]])) == pytest.approx(0.0, abs=1e-12)

    def test_ill_conditioned_warning(self, normal_sample, caplog):
        model = ProfileMixture(1, 1, means=np.array([[normal_sample.mean()]]),
                               variance_values=np.array([normal_sample.var()]))
        standard_errors(model, normal_sample, condition_warning=1.1)
        assert "ill-conditioned" in caplog.text
