"""Tests for fit statistics."""

import numpy as np
import pytest

from latent_mixture.metrics import (
    class_counts,
    classification_probabilities,
    information_criteria,
    modal_classes,
    relative_entropy,
)


class TestInformationCriteria:

    def test_formulas(self):
        criteria = information_criteria(-100.0, 5, 50)
        assert criteria['aic'] == pytest.approx(210.0)
        assert criteria['bic'] == pytest.approx(200.0 + 5 * np.log(50))
        assert criteria['sabic'] == pytest.approx(200.0 + 5 * np.log(52 / 24))


class TestEntropy:

    def test_one_class_is_one(self):
        assert relative_entropy(np.ones((10, 1))) == 1.0

    def test_certain_assignment(self):
        posteriors = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]])
        assert relative_entropy(posteriors) == pytest.approx(1.0)

    def test_uniform_assignment(self):
        posteriors = np.full((4, 3), 1.0 / 3.0)
        assert relative_entropy(posteriors) == pytest.approx(0.0)

    def test_between_zero_and_one(self):
        rng = np.random.default_rng(0)
        posteriors = rng.dirichlet(np.ones(3), size=50)
        assert 0.0 <= relative_entropy(posteriors) <= 1.0


class TestClassification:

    @pytest.fixture
    def posteriors(self):
        return np.array([
            [0.9, 0.1],
            [0.7, 0.3],
            [0.2, 0.8],
            [0.4, 0.6],
        ])

    def test_modal_classes(self, posteriors):
        np.testing.assert_array_equal(modal_classes(posteriors), [0, 0, 1, 1])

    def test_average_posteriors_by_modal_class(self, posteriors):
        matrix = classification_probabilities(posteriors)
        np.testing.assert_allclose(matrix, [[0.8, 0.2], [0.3, 0.7]])
        np.testing.assert_allclose(matrix.sum(axis=1), 1.0)

    def test_empty_modal_class(self):
        matrix = classification_probabilities(np.array([[0.6, 0.4], [0.7, 0.3]]))
        assert np.all(np.isnan(matrix[1]))

    def test_three_count_bases(self, posteriors):
        counts = class_counts(np.array([0.55, 0.45]), posteriors)
        np.testing.assert_allclose(counts.model, [2.2, 1.8])
        np.testing.assert_allclose(counts.posterior, [2.2, 1.8])
        np.testing.assert_allclose(counts.modal, [2, 2])
        assert counts.n_obs == pytest.approx(4.0)
        np.testing.assert_allclose(counts.proportions("modal"), [0.5, 0.5])
