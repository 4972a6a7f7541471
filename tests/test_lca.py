"""Tests for the latent class (categorical indicator) model."""

import numpy as np
import pytest

from latent_mixture import CategoricalMixture, EstimationParams, fit_mixture
from latent_mixture.exceptions import ModelSpecificationError
from latent_mixture.models import probs_to_thresholds, thresholds_to_probs
from latent_mixture.models.lca import PROB_FLOOR, THRESHOLD_BOUND, one_hot


class TestThresholds:

    def test_probabilities_from_thresholds(self):
        probs = thresholds_to_probs(np.array([0.0]))
        np.testing.assert_allclose(probs, [0.5, 0.5])

    def test_three_category_conversion(self):
        probs = np.array([0.2, 0.5, 0.3])
        tau = probs_to_thresholds(probs)
        np.testing.assert_allclose(tau, [np.log(0.2 / 0.8), np.log(0.7 / 0.3)])
        np.testing.assert_allclose(thresholds_to_probs(tau), probs)

    def test_boundary_is_clipped(self):
        tau = probs_to_thresholds(np.array([0.0, 1.0]))
        np.testing.assert_allclose(tau, [-THRESHOLD_BOUND])


class TestCategoricalMixture:

    def test_one_hot_skips_missing(self):
        encoded = one_hot(np.array([[0.0, np.nan], [2.0, 1.0]]), 3)
        assert encoded.shape == (2, 2, 3)
        assert encoded[0, 1].sum() == 0
        assert encoded[1, 0, 2] == 1.0

    def test_one_hot_rejects_bad_codes(self):
        with pytest.raises(ModelSpecificationError):
            one_hot(np.array([[3.0]]), 3)

    def test_log_density(self):
        item_probs = np.array([
            [[0.8, 0.2, 0.0], [0.1, 0.3, 0.6]],
            [[0.3, 0.7, 0.0], [0.5, 0.25, 0.25]],
        ])
        model = CategoricalMixture(2, [2, 3], item_probs=item_probs)
        data = np.array([[1.0, 2.0], [np.nan, 0.0]])
        expected = np.log([[0.2 * 0.6, 0.7 * 0.25], [0.1, 0.5]])
        np.testing.assert_allclose(model.log_density(data), expected)

    def test_parameter_count(self):
        model = CategoricalMixture(3, [2, 3, 4])
        # 2 class logits + 3 classes x (1 + 2 + 3) thresholds
        assert model.n_parameters() == 2 + 18
        assert len(model.free_parameters()) == model.n_parameters()

    def test_m_step_respects_floor(self):
        data = np.array([[0.0], [0.0], [1.0], [1.0]])
        responsibilities = np.array([[1, 0], [1, 0], [0, 1], [0, 1]], dtype=float)
        model = CategoricalMixture(2, [2])
        model.m_step(data, responsibilities)
        assert model.item_probs[0, 0, 1] == pytest.approx(PROB_FLOOR / (1 + PROB_FLOOR))
        np.testing.assert_allclose(model.item_probs.sum(axis=2), 1.0)
        assert model.fixed_parameters()[1:].all()

    def test_free_parameter_round_trip(self):
        item_probs = np.array([[[0.2, 0.5, 0.3]], [[0.6, 0.3, 0.1]]])
        model = CategoricalMixture(2, [3], item_probs=item_probs, class_probs=np.array([0.4, 0.6]))
        rebuilt = model.with_free_parameters(model.free_parameters())
        np.testing.assert_allclose(rebuilt.item_probs, item_probs)
        np.testing.assert_allclose(rebuilt.class_probs, [0.4, 0.6])

    def test_simulate_codes_in_range(self):
        model = CategoricalMixture(2, [2, 4])
        data, _ = model.simulate(np.random.default_rng(1), 200)
        assert data[:, 0].max() <= 1 and data[:, 1].max() <= 3
        assert data.min() >= 0

    def test_unperturbed_orders_classes(self, binary_classes):
        data, _ = binary_classes
        start = CategoricalMixture(2, [2] * 6).unperturbed(data)
        # The first class starts as the "low threshold" class
        assert np.all(start.item_probs[0, :, 0] > start.item_probs[1, :, 0])

    def test_needs_two_categories(self):
        with pytest.raises(ModelSpecificationError):
            CategoricalMixture(2, [1, 2])


class TestBinaryRecovery:

    @pytest.fixture(scope="class")
    def result(self, binary_classes):
        data, _ = binary_classes
        params = EstimationParams(n_starts=8, n_final=3, seed=4, max_workers=2)
        return fit_mixture(CategoricalMixture(2, [2] * 6), data, params=params)

    def test_recovers_profiles(self, result):
        np.testing.assert_allclose(result.class_proportions, [0.6, 0.4], atol=0.05)
        # Probability of endorsing (category 1) per class
        endorse = result.model.item_probs[:, :, 1]
        assert np.all(np.abs(endorse[0] - 0.9) < 0.06) or np.all(np.abs(endorse[0] - 0.1) < 0.06)
        assert np.all(np.abs(endorse[0] - endorse[1]) > 0.6)

    def test_posteriors_and_entropy(self, result):
        np.testing.assert_allclose(result.posteriors.sum(axis=1), 1.0)
        assert result.entropy > 0.8

    def test_parameter_table(self, result):
        table = result.model.parameter_table()
        assert set(table["parameter"]) == {"proportion", "probability"}
        assert len(table) == 2 * (1 + 6 * 2)
