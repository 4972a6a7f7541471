"""
Latent Profile Analysis (LPA) for continuous indicators.

Each latent class ("profile") has its own mean for every indicator. Indicators
are conditionally independent given the class, with variances held equal
across classes by default (the usual LPA default) or estimated separately per
class.

The model is fit using the Expectation-Maximization (EM) algorithm:
- E-step: Compute posterior probability of profile membership per observation
- M-step: Update mixing proportions, means and variances from the weighted data

Missing indicator values drop out of both steps, which gives the
full-information maximum likelihood estimates under missing at random.
"""

from typing import Optional, Tuple

import numpy as np
import pandas as pd

from ..exceptions import ModelSpecificationError
from ..schemas import VarianceStructure
from .base import MixtureModel

LOG_2PI = np.log(2.0 * np.pi)


class ProfileMixture(MixtureModel):
    """
    Gaussian mixture with diagonal covariance.

    Args:
        n_classes: Number of latent profiles
        n_indicators: Number of continuous indicators
        variances: "equal" (shared across classes) or "varying"
        means: Optional (n_classes, n_indicators) starting means
        variance_values: Optional (n_classes, n_indicators) starting variances
        class_probs: Optional (n_classes,) mixing proportions
        variance_floor: Lower bound applied to variances in the M-step
    """

    kind = "profile"

    def __init__(self, n_classes: int, n_indicators: int,
                 variances: str = VarianceStructure.EQUAL,
                 means: Optional[np.ndarray] = None,
                 variance_values: Optional[np.ndarray] = None,
                 class_probs: Optional[np.ndarray] = None,
                 beta: Optional[np.ndarray] = None,
                 variance_floor: float = 1e-6):
        super().__init__(n_classes, class_probs=class_probs, beta=beta)
        if n_indicators < 1:
            raise ModelSpecificationError("A profile model needs at least one indicator")
        self._n_indicators = int(n_indicators)
        self.variance_structure = VarianceStructure(variances)
        self.variance_floor = variance_floor
        shape = (self.n_classes, self._n_indicators)
        self.means = np.zeros(shape) if means is None else np.asarray(means, dtype=float).reshape(shape)
        self.variances = (np.ones(shape) if variance_values is None
                          else np.broadcast_to(np.asarray(variance_values, dtype=float), shape).copy())

    @property
    def n_indicators(self) -> int:
        return self._n_indicators

    @property
    def equal_variances(self) -> bool:
        return self.variance_structure == VarianceStructure.EQUAL

    # ------------------------------------------------------------------
    # EM steps
    # ------------------------------------------------------------------

    def log_density(self, data: np.ndarray) -> np.ndarray:
        observed = ~np.isnan(data)
        x = np.where(observed, data, 0.0)
        mask = observed.astype(float)

        # (n_obs, n_classes, n_indicators) standardized squared deviations
        deviations = (x[:, np.newaxis, :] - self.means[np.newaxis]) ** 2 / self.variances[np.newaxis]
        terms = deviations + (LOG_2PI + np.log(self.variances))[np.newaxis]
        return -0.5 * np.einsum("nkj,nj->nk", terms, mask)

    def _m_step_measurement(self, data: np.ndarray, responsibilities: np.ndarray) -> None:
        observed = ~np.isnan(data)
        x = np.where(observed, data, 0.0)
        mask = observed.astype(float)

        # Expected number of observed values per class and indicator
        weight = responsibilities.T @ mask  # (K, J)
        has_data = weight > 1e-10
        means = (responsibilities.T @ (x * mask)) / np.where(has_data, weight, 1.0)
        self.means = np.where(has_data, means, self.means)

        squared = mask[:, np.newaxis, :] * (x[:, np.newaxis, :] - self.means[np.newaxis]) ** 2
        sum_squares = np.einsum("nk,nkj->kj", responsibilities, squared)
        if self.equal_variances:
            pooled = sum_squares.sum(axis=0) / np.maximum(weight.sum(axis=0), 1e-10)
            variances = np.broadcast_to(pooled, self.means.shape)
        else:
            variances = np.where(has_data, sum_squares / np.where(has_data, weight, 1.0), self.variances)
        self.variances = np.maximum(variances, self.variance_floor).copy()

    # ------------------------------------------------------------------
    # Starting values
    # ------------------------------------------------------------------

    def unperturbed(self, data: np.ndarray) -> "ProfileMixture":
        """
        Deterministic start: class means spread over the quantiles of each
        indicator, variances equal to the sample variances, equal proportions.
        """
        quantiles = (np.arange(self.n_classes) + 0.5) / self.n_classes
        means = np.nanquantile(data, quantiles, axis=0)
        variances = np.maximum(np.nanvar(data, axis=0), self.variance_floor)
        model = ProfileMixture(self.n_classes, self.n_indicators, self.variance_structure,
                               means=means, variance_values=variances,
                               variance_floor=self.variance_floor)
        if self.beta is not None:
            model.enable_covariates(self.beta.shape[0] - 1)
        return model

    def perturbed(self, rng: np.random.Generator, scale: float) -> "ProfileMixture":
        """
        Random start around this model: means move by up to ``0.4 * scale``
        pooled standard deviations and proportions are drawn from a flat
        Dirichlet.
        """
        model = self.copy()
        if scale <= 0:
            return model
        sd = np.sqrt(self.variances.mean(axis=0))
        shift = rng.uniform(-0.4 * scale, 0.4 * scale, size=self.means.shape)
        model.means = self.means + shift * sd[np.newaxis]
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
        n_means = self.n_classes * self.n_indicators
        n_variances = self.n_indicators if self.equal_variances else self.n_classes * self.n_indicators
        return n_means + n_variances

    def _measurement_parameters(self) -> Tuple[np.ndarray, list, np.ndarray]:
        names = [f"Class {k + 1} mean {j + 1}"
                 for k in range(self.n_classes) for j in range(self.n_indicators)]
        if self.equal_variances:
            variances = self.variances[0]
            names += [f"Variance {j + 1}" for j in range(self.n_indicators)]
        else:
            variances = self.variances.reshape(-1)
            names += [f"Class {k + 1} variance {j + 1}"
                      for k in range(self.n_classes) for j in range(self.n_indicators)]
        values = np.concatenate([self.means.reshape(-1), variances])
        fixed = np.concatenate([
            np.zeros(self.means.size, dtype=bool),
            variances <= self.variance_floor * (1 + 1e-9),
        ])
        return values, names, fixed

    def _set_measurement_parameters(self, values: np.ndarray) -> None:
        n_means = self.n_classes * self.n_indicators
        self.means = values[:n_means].reshape(self.n_classes, self.n_indicators).copy()
        variances = np.maximum(values[n_means:], 1e-300)
        if self.equal_variances:
            self.variances = np.tile(variances, (self.n_classes, 1))
        else:
            self.variances = variances.reshape(self.n_classes, self.n_indicators).copy()

    def _permute_measurement(self, order: np.ndarray) -> None:
        self.means = self.means[order]
        self.variances = self.variances[order]

    def _simulate_indicators(self, rng: np.random.Generator, classes: np.ndarray) -> np.ndarray:
        noise = rng.standard_normal((len(classes), self.n_indicators))
        return self.means[classes] + np.sqrt(self.variances[classes]) * noise

    def parameter_table(self, indicator_names: Optional[list] = None) -> pd.DataFrame:
        """Long-format table of class proportions, means and variances."""
        names = indicator_names or [f"Y{j + 1}" for j in range(self.n_indicators)]
        rows = []
        for k in range(self.n_classes):
            rows.append({"class": k + 1, "parameter": "proportion", "variable": None,
                         "estimate": float(self.class_probs[k])})
            for j, name in enumerate(names):
                rows.append({"class": k + 1, "parameter": "mean", "variable": name,
                             "estimate": float(self.means[k, j])})
                rows.append({"class": k + 1, "parameter": "variance", "variable": name,
                             "estimate": float(self.variances[k, j])})
        return pd.DataFrame(rows)
