"""Tests for the BCH distal outcome comparison."""

import numpy as np
import pytest

from latent_mixture import EstimationParams, ModelSpecificationError, ProfileMixture, bch_compare, fit_mixture
from latent_mixture.auxiliary import bch_weights, classification_error_matrix


@pytest.fixture(scope="module")
def fitted(separated_profiles):
    data, classes = separated_profiles
    result = fit_mixture(ProfileMixture(2, 2), data, params=EstimationParams(n_starts=4, n_final=2, seed=0))
    rng = np.random.default_rng(30)
    # Larger class (first after ordering) has outcome mean 1, the other 3
    outcome = 1.0 + 2.0 * classes + rng.standard_normal(len(classes))
    return result, outcome


class TestWeights:

    def test_error_matrix_rows_sum_to_one(self):
        posteriors = np.array([[0.9, 0.1], [0.6, 0.4], [0.2, 0.8], [0.3, 0.7]])
        d = classification_error_matrix(posteriors)
        np.testing.assert_allclose(d.sum(axis=1), 1.0)
        assert d[0, 0] == pytest.approx(1.5 / 2.0)

    def test_weights_sum_to_one_per_observation(self):
        rng = np.random.default_rng(2)
        posteriors = rng.dirichlet([5.0, 1.0], size=40)
        posteriors[::2] = posteriors[::2, ::-1]
        np.testing.assert_allclose(bch_weights(posteriors).sum(axis=1), 1.0)

    def test_certain_classification_gives_indicator_weights(self):
        posteriors = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]])
        np.testing.assert_allclose(bch_weights(posteriors), posteriors)


class TestBCHCompare:

    def test_class_means(self, fitted):
        result, outcome = fitted
        bch = bch_compare(result, outcome)
        np.testing.assert_allclose(bch.means, [1.0, 3.0], atol=0.2)
        np.testing.assert_allclose(bch.variances, [1.0, 1.0], atol=0.3)
        assert np.all(bch.standard_errors > 0)

    def test_overall_test_rejects_equal_means(self, fitted):
        result, outcome = fitted
        bch = bch_compare(result, outcome)
        assert bch.df == 1
        assert bch.p_value < 1e-6
        assert len(bch.pairwise) == 1
        assert bch.pairwise.loc[0, "chi_square"] == pytest.approx(bch.chi_square)

    def test_missing_outcomes_are_excluded(self, fitted):
        result, outcome = fitted
        outcome = outcome.copy()
        outcome[:10] = np.nan
        bch = bch_compare(result, outcome)
        assert bch.n_obs == len(outcome) - 10

    def test_class_identity_is_recorded(self, fitted):
        result, outcome = fitted
        bch = bch_compare(result, outcome)
        np.testing.assert_array_equal(np.sort(bch.class_order), [0, 1])

    def test_length_mismatch(self, fitted):
        result, outcome = fitted
        with pytest.raises(ModelSpecificationError):
            bch_compare(result, outcome[:-1])
