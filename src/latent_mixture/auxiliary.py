"""
BCH comparison of a continuous distal outcome across latent classes.

The most likely class assignment misclassifies some observations. The BCH
method corrects for this with observation weights derived from the
classification-error matrix

    D[k, s] = P(modal class = s | true class = k)
            = sum_i p_ik 1[modal_i = s] / sum_i p_ik

Each observation i gets weight w_ik = (D^-1)[modal_i, k] for class k. The
class-specific means of the outcome are weighted averages with these
(possibly negative) weights, and their covariance uses a sandwich estimator,
so class means can be compared with Wald tests.
"""

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import chi2

from .estimation import FitResult
from .exceptions import ModelSpecificationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class BCHResult:
    """Class-specific means of a distal outcome with Wald tests of equality."""
    means: np.ndarray
    variances: np.ndarray
    standard_errors: np.ndarray
    covariance: np.ndarray
    chi_square: float
    df: int
    p_value: float
    pairwise: pd.DataFrame
    class_order: np.ndarray
    n_obs: int


def classification_error_matrix(posteriors: np.ndarray) -> np.ndarray:
    """D[k, s]: probability that an observation of class k is assigned to class s."""
    n_classes = posteriors.shape[1]
    modal = np.argmax(posteriors, axis=1)
    assigned = np.eye(n_classes)[modal]
    totals = posteriors.sum(axis=0)
    return (posteriors.T @ assigned) / totals[:, np.newaxis]


def bch_weights(posteriors: np.ndarray) -> np.ndarray:
    """(n_obs, n_classes) BCH weights from posterior class probabilities."""
    d = classification_error_matrix(posteriors)
    try:
        d_inv = np.linalg.inv(d)
    except np.linalg.LinAlgError:
        raise ModelSpecificationError(
            "The classification-error matrix is singular; BCH weights are not defined"
        ) from None
    modal = np.argmax(posteriors, axis=1)
    return d_inv[modal]


def _wald(estimate: np.ndarray, covariance: np.ndarray):
    try:
        inverse = np.linalg.inv(covariance)
    except np.linalg.LinAlgError:
        inverse = np.linalg.pinv(covariance)
    return float(estimate @ inverse @ estimate)


def bch_compare(result: FitResult, outcome: np.ndarray,
                posteriors: Optional[np.ndarray] = None) -> BCHResult:
    """
    Compare the means of a continuous distal outcome across classes.

    Args:
        result: Fitted mixture supplying the posterior probabilities
        outcome: (n_obs,) outcome values, NaN where missing
        posteriors: Override for ``result.posteriors``

    Returns:
        BCHResult with class means, the overall test of equal means
        (df = K - 1) and all pairwise tests
    """
    posteriors = result.posteriors if posteriors is None else np.asarray(posteriors, dtype=float)
    outcome = np.asarray(outcome, dtype=float).ravel()
    if outcome.shape[0] != posteriors.shape[0]:
        raise ModelSpecificationError(
            f"Outcome has {outcome.shape[0]} values but the model was fit to {posteriors.shape[0]}"
        )
    n_classes = posteriors.shape[1]
    if n_classes < 2:
        raise ModelSpecificationError("BCH comparisons need at least two classes")

    weights = bch_weights(posteriors)
    observed = ~np.isnan(outcome)
    if not observed.all():
        logger.info(f"{int((~observed).sum())} observations with a missing outcome were excluded")
    weights, z = weights[observed], outcome[observed]

    totals = weights.sum(axis=0)
    means = (weights * z[:, np.newaxis]).sum(axis=0) / totals
    residuals = z[:, np.newaxis] - means
    variances = (weights * residuals ** 2).sum(axis=0) / totals

    scores = weights * residuals / totals
    covariance = scores.T @ scores
    standard_errors = np.sqrt(np.diag(covariance))

    contrast = np.zeros((n_classes - 1, n_classes))
    contrast[:, 0] = 1.0
    contrast[np.arange(n_classes - 1), np.arange(1, n_classes)] = -1.0
    chi_square = _wald(contrast @ means, contrast @ covariance @ contrast.T)
    df = n_classes - 1

    rows = []
    for k, l in combinations(range(n_classes), 2):
        difference = means[k] - means[l]
        var = covariance[k, k] + covariance[l, l] - 2.0 * covariance[k, l]
        statistic = difference ** 2 / var if var > 0 else np.nan
        rows.append({
            'class_a': k + 1,
            'class_b': l + 1,
            'difference': difference,
            'chi_square': statistic,
            'p_value': float(chi2.sf(statistic, 1)) if np.isfinite(statistic) else np.nan,
        })

    return BCHResult(
        means=means,
        variances=variances,
        standard_errors=standard_errors,
        covariance=covariance,
        chi_square=chi_square,
        df=df,
        p_value=float(chi2.sf(chi_square, df)),
        pairwise=pd.DataFrame(rows),
        class_order=result.model.class_order.copy(),
        n_obs=int(observed.sum()),
    )
