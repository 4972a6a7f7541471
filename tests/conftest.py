"""Shared fixtures: simulated data sets with known latent structure."""

import numpy as np
import pandas as pd
import pytest
from scipy.stats import norm

from latent_mixture import Dataset, EstimationParams


@pytest.fixture(scope="session")
def two_class_profile():
    """
    One continuous indicator, two classes: means 0.93 / 2.33, shared variance
    0.32, proportions 0.43 / 0.57 (exact counts).

    Each class is a stratified sample (normal quantiles at (i + 0.5) / n_k),
    so sample statistics sit on their population values, e.g. relative
    entropy about 0.635 at the generating parameters.
    """
    rng = np.random.default_rng(20240601)
    n_small, n_large = 860, 1140
    classes = np.repeat([0, 1], [n_small, n_large])
    means = np.array([0.93, 2.33])
    z = np.concatenate([norm.ppf((np.arange(n) + 0.5) / n) for n in (n_small, n_large)])
    values = means[classes] + np.sqrt(0.32) * z
    order = rng.permutation(len(classes))
    return values[order][:, np.newaxis], classes[order]


@pytest.fixture(scope="session")
def separated_profiles():
    """Two indicators, two well-separated profiles (means 0 and 6), n = 400."""
    rng = np.random.default_rng(7)
    classes = np.repeat([0, 1], [240, 160])
    means = np.array([[0.0, 0.0], [6.0, 6.0]])
    values = means[classes] + rng.standard_normal((len(classes), 2))
    return values, classes


@pytest.fixture(scope="session")
def three_profiles():
    """Two indicators, three well-separated profiles, 100 observations each."""
    rng = np.random.default_rng(11)
    centers = np.array([[0.0, 0.0], [5.0, 0.0], [0.0, 5.0]])
    classes = np.repeat([0, 1, 2], 100)
    values = centers[classes] + rng.standard_normal((300, 2))
    frame = pd.DataFrame(values, columns=["y1", "y2"])
    return Dataset.from_frame(frame)


@pytest.fixture(scope="session")
def binary_classes():
    """Six binary items, two classes with response probabilities 0.9 / 0.1."""
    rng = np.random.default_rng(3)
    classes = np.repeat([0, 1], [600, 400])
    probs = np.array([[0.9] * 6, [0.1] * 6])
    values = (rng.random((1000, 6)) < probs[classes]).astype(float)
    return values, classes


@pytest.fixture
def fast_params():
    """A small start budget that keeps tests quick."""
    return EstimationParams(n_starts=6, n_final=3, initial_iterations=5,
                            max_iter=300, seed=1, max_workers=2)
