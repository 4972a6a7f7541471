"""Tests for starting values and clustering starts."""

import numpy as np

from latent_mixture import EstimationParams, ProfileMixture
from latent_mixture.initialization import (
    clustering_start,
    generate_starts,
    is_degenerate,
    pairwise_complete_distances,
    perform_kmeans_clustering,
)


class TestClusteringUtilities:

    def test_kmeans_separates_clusters(self, separated_profiles):
        data, classes = separated_profiles
        labels = perform_kmeans_clustering(data, 2, seed=0)['labels']
        # Same partition up to label switching
        agreement = np.mean(labels == classes)
        assert agreement > 0.98 or agreement < 0.02

    def test_pairwise_complete_distances(self):
        data = np.array([[0.0, 0.0], [3.0, np.nan], [np.nan, 4.0]])
        distances = pairwise_complete_distances(data)
        np.testing.assert_allclose(distances, distances.T)
        np.testing.assert_allclose(np.diag(distances), 0.0)
        # Only the first indicator is shared: 3^2 scaled by 2/1
        assert distances[0, 1] == np.sqrt(18.0)
        # No shared indicator: largest observed distance
        assert distances[1, 2] == distances.max()

    def test_is_degenerate(self):
        assert is_degenerate(np.array([0, 0, 0, 1]), 2)
        assert is_degenerate(np.array([0, 0, 0, 0]), 2)
        assert not is_degenerate(np.array([0, 1, 0, 1]), 2)


class TestClusteringStart:

    def test_kmeans_on_complete_data(self, separated_profiles):
        data, _ = separated_profiles
        model, strategy = clustering_start(ProfileMixture(2, 2), data, seed=0)
        assert strategy == "kmeans"
        means = np.sort(model.means[:, 0])
        np.testing.assert_allclose(means, [0.0, 6.0], atol=0.3)

    def test_hierarchical_fallback_without_complete_cases(self):
        rng = np.random.default_rng(5)
        classes = np.repeat([0, 1], 30)
        data = 6.0 * classes[:, np.newaxis] + rng.standard_normal((60, 3))
        # Every row misses exactly one indicator
        data[np.arange(60), np.arange(60) % 3] = np.nan
        model, strategy = clustering_start(ProfileMixture(2, 3), data, seed=0)
        assert strategy == "hierarchical"
        np.testing.assert_allclose(np.sort(model.means[:, 0]), [0.0, 6.0], atol=0.6)

    def test_unperturbed_when_clustering_degenerate(self, caplog):
        data = np.array([[1.0, np.nan], [np.nan, 2.0], [3.0, np.nan]])
        model, strategy = clustering_start(ProfileMixture(2, 2), data, seed=0)
        assert strategy == "unperturbed"
        assert "degenerate" in caplog.text


class TestGenerateStarts:

    def test_start_count_and_seeds(self, separated_profiles):
        data, _ = separated_profiles
        params = EstimationParams(n_starts=5, n_final=2, seed=10)
        starts = generate_starts(ProfileMixture(2, 2), data, params)
        assert [s.seed for s in starts] == [10, 11, 12, 13, 14]
        assert starts[0].strategy == "unperturbed"
        assert not np.allclose(starts[1].model.means, starts[2].model.means)

    def test_starts_are_reproducible(self, separated_profiles):
        data, _ = separated_profiles
        params = EstimationParams(n_starts=3, n_final=1, seed=4)
        first = generate_starts(ProfileMixture(2, 2), data, params)
        second = generate_starts(ProfileMixture(2, 2), data, params)
        for a, b in zip(first, second):
            np.testing.assert_array_equal(a.model.means, b.model.means)
            np.testing.assert_array_equal(a.model.class_probs, b.model.class_probs)

    def test_supplied_initial_model(self, separated_profiles):
        data, _ = separated_profiles
        initial = ProfileMixture(2, 2, means=np.array([[1.0, 1.0], [5.0, 5.0]]))
        starts = generate_starts(ProfileMixture(2, 2), data,
                                 EstimationParams(n_starts=2, n_final=1), initial_model=initial)
        assert starts[0].strategy == "supplied"
        np.testing.assert_array_equal(starts[0].model.means, initial.means)
        assert starts[0].model is not initial

    def test_one_class(self, separated_profiles):
        data, _ = separated_profiles
        starts = generate_starts(ProfileMixture(1, 2), data, EstimationParams(n_starts=5, n_final=1))
        assert len(starts) == 1
