"""
Latent Class Analysis (LCA) for categorical indicators.

LCA posits that each observation belongs to one of K discrete classes, each
with its own response-probability profile across the indicators. Indicators
are coded 0..C-1 (ordered categories) and may have different numbers of
categories.

The model is fit using the Expectation-Maximization (EM) algorithm:
- E-step: Compute posterior probability of class membership for each observation
- M-step: Update class probabilities and item response probabilities

Response probabilities are also reported as ordered logistic thresholds:

    P(u_j <= c | class k) = 1 / (1 + exp(-tau_kjc)),   c = 0..C_j-2

Probabilities that reach the boundary are held at the threshold bound of
+/-15 (probability ~3e-7); those thresholds count as fixed parameters.

Key outputs:
- class_probs: Prior probability of each class (class sizes)
- item_probs: (n_classes, n_items, max_categories) response probabilities
- thresholds(): the same profiles on the logit scale
"""

from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..exceptions import ModelSpecificationError
from .base import MixtureModel

THRESHOLD_BOUND = 15.0
PROB_FLOOR = 1.0 / (1.0 + np.exp(THRESHOLD_BOUND))


def _logistic(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


def thresholds_to_probs(thresholds: np.ndarray) -> np.ndarray:
    """Convert ordered thresholds (..., C-1) to category probabilities (..., C)."""
    cumulative = _logistic(np.sort(thresholds, axis=-1))
    zeros = np.zeros(cumulative.shape[:-1] + (1,))
    ones = np.ones(cumulative.shape[:-1] + (1,))
    return np.diff(np.concatenate([zeros, cumulative, ones], axis=-1), axis=-1)


def probs_to_thresholds(probs: np.ndarray) -> np.ndarray:
    """Convert category probabilities (..., C) to ordered thresholds (..., C-1)."""
    cumulative = np.clip(np.cumsum(probs, axis=-1)[..., :-1], PROB_FLOOR, 1.0 - PROB_FLOOR)
    return np.log(cumulative / (1.0 - cumulative))


def one_hot(data: np.ndarray, max_categories: int) -> np.ndarray:
    """
    Encode a (n_obs, n_items) code matrix as (n_obs, n_items, max_categories).

    Missing entries (NaN) become all-zero rows so they drop out of every sum.
    """
    observed = ~np.isnan(data)
    codes = np.where(observed, data, 0).astype(int)
    if np.any(codes < 0) or np.any(codes >= max_categories):
        raise ModelSpecificationError(
            f"Categorical indicators must be coded 0..{max_categories - 1}"
        )
    encoded = np.zeros(data.shape + (max_categories,))
    rows, items = np.nonzero(observed)
    encoded[rows, items, codes[rows, items]] = 1.0
    return encoded


class CategoricalMixture(MixtureModel):
    """
    Latent class model for ordered-categorical indicators.

    Args:
        n_classes: Number of latent classes
        n_categories: Number of categories for each indicator (>= 2)
        item_probs: Optional (n_classes, n_items, max_categories) probabilities;
                    entries beyond an item's category count must be zero
        class_probs: Optional (n_classes,) mixing proportions
    """

    kind = "categorical"

    def __init__(self, n_classes: int, n_categories: Sequence[int],
                 item_probs: Optional[np.ndarray] = None,
                 class_probs: Optional[np.ndarray] = None,
                 beta: Optional[np.ndarray] = None):
        super().__init__(n_classes, class_probs=class_probs, beta=beta)
        self.n_categories = np.asarray(n_categories, dtype=int)
        if self.n_categories.ndim != 1 or len(self.n_categories) == 0:
            raise ModelSpecificationError("n_categories must list one count per indicator")
        if np.any(self.n_categories < 2):
            raise ModelSpecificationError("Every categorical indicator needs at least two categories")
        self.max_categories = int(self.n_categories.max())
        # valid[j, c] is True for categories that exist for item j
        self.valid = np.arange(self.max_categories)[np.newaxis, :] < self.n_categories[:, np.newaxis]
        if item_probs is None:
            item_probs = np.where(self.valid, 1.0 / self.n_categories[:, np.newaxis], 0.0)
            item_probs = np.broadcast_to(item_probs, (self.n_classes,) + item_probs.shape)
        self.item_probs = np.array(item_probs, dtype=float)

    @property
    def n_indicators(self) -> int:
        return len(self.n_categories)

    def thresholds(self) -> list:
        """Per-item (n_classes, C_j - 1) threshold arrays."""
        return [
            probs_to_thresholds(self.item_probs[:, j, :c])
            for j, c in enumerate(self.n_categories)
        ]

    # ------------------------------------------------------------------
    # EM steps
    # ------------------------------------------------------------------

    def log_density(self, data: np.ndarray) -> np.ndarray:
        encoded = one_hot(data, self.max_categories)
        # Unused (padding) categories never receive weight, so log(1) = 0 is safe there
        log_probs = np.log(np.where(self.valid[np.newaxis], np.maximum(self.item_probs, PROB_FLOOR), 1.0))
        return np.einsum("njc,kjc->nk", encoded, log_probs)

    def _m_step_measurement(self, data: np.ndarray, responsibilities: np.ndarray) -> None:
        encoded = one_hot(data, self.max_categories)
        counts = np.einsum("nk,njc->kjc", responsibilities, encoded)
        totals = counts.sum(axis=2, keepdims=True)
        has_data = totals > 1e-10
        probs = np.where(has_data, counts / np.where(has_data, totals, 1.0), self.item_probs)
        # Clip to the threshold bound, then renormalize over each item's categories
        probs = np.where(self.valid[np.newaxis], np.clip(probs, PROB_FLOOR, 1.0), 0.0)
        self.item_probs = probs / probs.sum(axis=2, keepdims=True)

    # ------------------------------------------------------------------
    # Starting values
    # ------------------------------------------------------------------

    def unperturbed(self, data: np.ndarray) -> "CategoricalMixture":
        """
        Deterministic start: class thresholds are the sample thresholds
        shifted by offsets evenly spaced in [-1, 1], so classes differ
        systematically from "low" to "high" responders.
        """
        encoded = one_hot(data, self.max_categories)
        marginal = encoded.sum(axis=0)
        marginal = np.where(self.valid, marginal + 0.5, 0.0)  # avoid empty categories
        marginal = marginal / marginal.sum(axis=1, keepdims=True)
        offsets = np.linspace(1.0, -1.0, self.n_classes) if self.n_classes > 1 else np.zeros(1)

        item_probs = np.zeros((self.n_classes, self.n_indicators, self.max_categories))
        for j, c in enumerate(self.n_categories):
            base = probs_to_thresholds(marginal[j, :c])
            for k, offset in enumerate(offsets):
                item_probs[k, j, :c] = thresholds_to_probs(base + offset)
        model = CategoricalMixture(self.n_classes, self.n_categories, item_probs=item_probs)
        if self.beta is not None:
            model.enable_covariates(self.beta.shape[0] - 1)
        return model

    def perturbed(self, rng: np.random.Generator, scale: float) -> "CategoricalMixture":
        """
        Random start around this model: every threshold moves uniformly within
        +/- scale/2 logits and proportions are drawn from a flat Dirichlet.
        """
        model = self.copy()
        if scale <= 0:
            return model
        for j, c in enumerate(self.n_categories):
            tau = probs_to_thresholds(self.item_probs[:, j, :c])
            tau = tau + rng.uniform(-scale / 2.0, scale / 2.0, size=tau.shape)
            model.item_probs[:, j, :c] = thresholds_to_probs(
                np.clip(tau, -THRESHOLD_BOUND, THRESHOLD_BOUND)
            )
        # Dirichlet with uniform concentration gives a valid probability simplex
        model.class_probs = rng.dirichlet(np.ones(self.n_classes))
        if model.beta is not None:
            model.beta = np.zeros_like(model.beta)
            logits = np.log(model.class_probs)
            model.beta[0] = logits - logits[-1]
        return model

    # ------------------------------------------------------------------
    # Parameter bookkeeping
    # ------------------------------------------------------------------

    def _n_measurement_parameters(self) -> int:
        # Number of parameters: K * sum_j (C_j - 1) thresholds
        return int(self.n_classes * (self.n_categories - 1).sum())

    def _measurement_parameters(self) -> Tuple[np.ndarray, list, np.ndarray]:
        values, names = [], []
        thresholds = self.thresholds()
        for k in range(self.n_classes):
            for j, tau in enumerate(thresholds):
                for c in range(tau.shape[1]):
                    values.append(tau[k, c])
                    names.append(f"Class {k + 1} item {j + 1} threshold {c + 1}")
        values = np.array(values)
        fixed = np.abs(values) >= THRESHOLD_BOUND - 1e-6
        return values, names, fixed

    def _set_measurement_parameters(self, values: np.ndarray) -> None:
        position = 0
        item_probs = np.zeros_like(self.item_probs)
        for k in range(self.n_classes):
            for j, c in enumerate(self.n_categories):
                tau = values[position:position + c - 1]
                position += c - 1
                item_probs[k, j, :c] = thresholds_to_probs(tau)
        self.item_probs = item_probs

    def _permute_measurement(self, order: np.ndarray) -> None:
        self.item_probs = self.item_probs[order]

    def _simulate_indicators(self, rng: np.random.Generator, classes: np.ndarray) -> np.ndarray:
        cumulative = np.cumsum(self.item_probs[classes], axis=2)  # (n, J, C)
        u = rng.random((len(classes), self.n_indicators))[:, :, np.newaxis]
        codes = (u > cumulative).sum(axis=2)
        return np.minimum(codes, self.n_categories[np.newaxis] - 1).astype(float)

    def parameter_table(self, indicator_names: Optional[list] = None) -> pd.DataFrame:
        """Long-format table of class proportions and response probabilities."""
        names = indicator_names or [f"U{j + 1}" for j in range(self.n_indicators)]
        rows = []
        for k in range(self.n_classes):
            rows.append({"class": k + 1, "parameter": "proportion", "variable": None,
                         "category": None, "estimate": float(self.class_probs[k])})
            for j, name in enumerate(names):
                for c in range(self.n_categories[j]):
                    rows.append({"class": k + 1, "parameter": "probability", "variable": name,
                                 "category": c, "estimate": float(self.item_probs[k, j, c])})
        return pd.DataFrame(rows)
