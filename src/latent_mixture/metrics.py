"""
Fit statistics computed from a single fitted mixture.

- Information criteria (AIC, BIC, sample-size adjusted BIC)
- Relative entropy of the posterior class probabilities
- Average posterior probabilities by most likely class
- Class counts and proportions based on the estimated model, on posterior
  probabilities, and on most likely class membership
"""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, eq=False)
class ClassCounts:
    """Class counts under the three standard bases."""
    model: np.ndarray
    posterior: np.ndarray
    modal: np.ndarray

    @property
    def n_obs(self) -> float:
        return float(self.posterior.sum())

    def proportions(self, basis: str = "model") -> np.ndarray:
        counts = getattr(self, basis)
        return counts / counts.sum()


def information_criteria(log_likelihood: float, n_parameters: int, n_obs: int) -> dict:
    """
    Compute AIC, BIC and sample-size adjusted BIC.

    AIC   = -2 LL + 2 p
    BIC   = -2 LL + p ln(n)
    SABIC = -2 LL + p ln((n + 2) / 24)
    """
    deviance = -2.0 * log_likelihood
    return {
        'aic': deviance + 2.0 * n_parameters,
        'bic': deviance + n_parameters * np.log(n_obs),
        'sabic': deviance + n_parameters * np.log((n_obs + 2.0) / 24.0),
    }


def relative_entropy(posteriors: np.ndarray) -> float:
    """
    Relative entropy of posterior class probabilities.

        E = 1 - sum_i sum_k (-p_ik ln p_ik) / (n ln K)

    1 means every observation is assigned with certainty; a one-class model
    has entropy 1 by definition.
    """
    n_obs, n_classes = posteriors.shape
    if n_classes == 1:
        return 1.0
    p = np.clip(posteriors, 1e-300, 1.0)
    h = -np.sum(posteriors * np.log(p))
    return float(1.0 - h / (n_obs * np.log(n_classes)))


def modal_classes(posteriors: np.ndarray) -> np.ndarray:
    """Most likely class per observation (ties go to the lower index)."""
    return np.argmax(posteriors, axis=1)


def classification_probabilities(posteriors: np.ndarray) -> np.ndarray:
    """
    Average posterior probabilities for most likely class membership.

    Row k averages the posterior vectors of the observations whose most
    likely class is k; a well-separated solution has a dominant diagonal.
    Rows for classes with no modal members are NaN.
    """
    n_classes = posteriors.shape[1]
    modal = modal_classes(posteriors)
    matrix = np.full((n_classes, n_classes), np.nan)
    for k in range(n_classes):
        members = modal == k
        if members.any():
            matrix[k] = posteriors[members].mean(axis=0)
    return matrix


def class_counts(class_probs: np.ndarray, posteriors: np.ndarray) -> ClassCounts:
    n_obs, n_classes = posteriors.shape
    return ClassCounts(
        model=np.asarray(class_probs, dtype=float) * n_obs,
        posterior=posteriors.sum(axis=0),
        modal=np.bincount(modal_classes(posteriors), minlength=n_classes).astype(float),
    )
