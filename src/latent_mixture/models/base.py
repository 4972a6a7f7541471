"""
Shared machinery for finite mixture models.

A mixture model has two parts:

- The class-membership part: mixing proportions, or, when covariates are
  supplied, a multinomial logistic regression of class membership on the
  covariates (the last class is the reference category).
- The measurement part: class-specific distributions of the indicators,
  implemented by subclasses (profiles for continuous indicators, response
  probabilities for categorical indicators).

Indicators are assumed conditionally independent given the class, so a
missing indicator simply drops out of the class-conditional likelihood
(full-information maximum likelihood under MAR).
"""

import copy
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from ..exceptions import ModelSpecificationError

LOG_FLOOR = 1e-300


# =============================================================================
# CLASS-MEMBERSHIP REGRESSION
# =============================================================================

def softmax(x: np.ndarray) -> np.ndarray:
    """
    Compute softmax probabilities along the last axis.

    Uses the log-sum-exp trick for numerical stability: subtracting the max
    before exponentiating prevents overflow while producing the same result.
    """
    x_shifted = x - x.max(axis=-1, keepdims=True)
    exp_x = np.exp(x_shifted)
    return exp_x / exp_x.sum(axis=-1, keepdims=True)


def design_matrix(covariates: np.ndarray) -> np.ndarray:
    """Prepend an intercept column to a (n_obs, n_covariates) array."""
    covariates = np.asarray(covariates, dtype=float)
    if covariates.ndim == 1:
        covariates = covariates[:, np.newaxis]
    return np.column_stack([np.ones(covariates.shape[0]), covariates])


def compute_class_probs_from_covariates(design: np.ndarray, beta: np.ndarray) -> np.ndarray:
    """
    Compute observation-specific class probabilities from covariates.

    Args:
        design: (n_obs, n_features) covariates including the intercept column
        beta: (n_features, n_classes) coefficients, last column fixed at zero

    Returns:
        (n_obs, n_classes) class probabilities, each row summing to 1
    """
    return softmax(design @ beta)


def logsumexp_rows(log_joint: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Return (responsibilities, per-row log marginal) for a (n, K) log joint."""
    max_log_joint = log_joint.max(axis=1, keepdims=True)
    exp_log_joint = np.exp(log_joint - max_log_joint)
    sum_exp = exp_log_joint.sum(axis=1, keepdims=True)
    responsibilities = exp_log_joint / sum_exp
    log_marginal = max_log_joint[:, 0] + np.log(sum_exp[:, 0])
    return responsibilities, log_marginal


def m_step_beta(design: np.ndarray, responsibilities: np.ndarray, beta: np.ndarray,
                max_iter: int = 20, tol: float = 1e-6) -> np.ndarray:
    """
    M-step for the class-membership regression coefficients.

    Maximizes the expected complete-data log-likelihood
        Q(beta) = sum_i sum_c r_ic log P(c | Z_i, beta)
    by Newton-Raphson with step halving. The last class is the reference, so
    only the first K-1 columns of beta are free. Iteration stops when the
    largest gradient element (per observation) falls below ``tol`` or after
    ``max_iter`` Newton steps.
    """
    n_obs, n_features = design.shape
    n_classes = responsibilities.shape[1]
    beta = beta.copy()
    if n_classes == 1:
        return beta

    def objective(b):
        log_probs = np.log(np.maximum(compute_class_probs_from_covariates(design, b), LOG_FLOOR))
        return float((responsibilities * log_probs).sum())

    n_free = n_features * (n_classes - 1)
    current = objective(beta)
    for _ in range(max_iter):
        probs = compute_class_probs_from_covariates(design, beta)
        gradient = (design.T @ (responsibilities - probs))[:, :-1]  # (F, K-1)
        if np.max(np.abs(gradient)) / n_obs < tol:
            break

        # Negative Hessian blocks: sum_i p_ik (delta_kl - p_il) z_i z_i^T
        info = np.zeros((n_free, n_free))
        for k in range(n_classes - 1):
            for l in range(n_classes - 1):
                weight = probs[:, k] * ((k == l) - probs[:, l])
                block = (design * weight[:, np.newaxis]).T @ design
                info[k * n_features:(k + 1) * n_features, l * n_features:(l + 1) * n_features] = block
        info += 1e-8 * np.eye(n_free)
        step = np.linalg.solve(info, gradient.T.reshape(-1)).reshape(n_classes - 1, n_features).T

        scale = 1.0
        for _ in range(30):
            candidate = beta.copy()
            candidate[:, :-1] += scale * step
            value = objective(candidate)
            if value >= current - 1e-12:
                break
            scale *= 0.5
        else:
            break
        beta, current = candidate, value
    return beta


# =============================================================================
# BASE MODEL
# =============================================================================

class MixtureModel(ABC):
    """
    K-class finite mixture with an abstract measurement part.

    Instances are mutated in place by EM iterations. ``class_order`` records,
    for each current class position, the index the class had before any
    relabeling, so auxiliary comparisons can track class identity.
    """

    kind = "mixture"

    def __init__(self, n_classes: int, class_probs: Optional[np.ndarray] = None,
                 beta: Optional[np.ndarray] = None):
        if n_classes < 1:
            raise ModelSpecificationError(f"n_classes must be at least 1, got {n_classes}")
        self.n_classes = int(n_classes)
        if class_probs is None:
            class_probs = np.full(self.n_classes, 1.0 / self.n_classes)
        self.class_probs = np.asarray(class_probs, dtype=float)
        self.beta = None if beta is None else np.asarray(beta, dtype=float)
        self.class_order = np.arange(self.n_classes)

    # ------------------------------------------------------------------
    # Measurement part (implemented by subclasses)
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def n_indicators(self) -> int:
        ...

    @abstractmethod
    def log_density(self, data: np.ndarray) -> np.ndarray:
        """(n_obs, n_classes) log P(x_i | class k), missing indicators integrated out."""

    @abstractmethod
    def _m_step_measurement(self, data: np.ndarray, responsibilities: np.ndarray) -> None:
        ...

    @abstractmethod
    def _n_measurement_parameters(self) -> int:
        ...

    @abstractmethod
    def _measurement_parameters(self) -> Tuple[np.ndarray, list, np.ndarray]:
        """Return (values, names, fixed mask) of free measurement parameters."""

    @abstractmethod
    def _set_measurement_parameters(self, values: np.ndarray) -> None:
        ...

    @abstractmethod
    def _permute_measurement(self, order: np.ndarray) -> None:
        ...

    @abstractmethod
    def _simulate_indicators(self, rng: np.random.Generator, classes: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def unperturbed(self, data: np.ndarray) -> "MixtureModel":
        """Deterministic starting values derived from the data."""

    @abstractmethod
    def perturbed(self, rng: np.random.Generator, scale: float) -> "MixtureModel":
        """Randomly perturbed copy used as a random start."""

    @abstractmethod
    def parameter_table(self) -> pd.DataFrame:
        ...

    # ------------------------------------------------------------------
    # Class-membership part
    # ------------------------------------------------------------------

    @property
    def has_covariates(self) -> bool:
        return self.beta is not None

    def prior(self, covariates: Optional[np.ndarray] = None) -> np.ndarray:
        """Class probabilities: (n_classes,) or (n_obs, n_classes) with covariates."""
        if self.beta is None:
            return self.class_probs
        if covariates is None:
            raise ModelSpecificationError("Model has a covariate regression but no covariates were given")
        return compute_class_probs_from_covariates(design_matrix(covariates), self.beta)

    def log_joint(self, data: np.ndarray, covariates: Optional[np.ndarray] = None) -> np.ndarray:
        log_prior = np.log(np.maximum(self.prior(covariates), LOG_FLOOR))
        return log_prior + self.log_density(data)

    def e_step(self, data: np.ndarray,
               covariates: Optional[np.ndarray] = None) -> Tuple[np.ndarray, float]:
        """
        E-step: posterior class probabilities and the observed-data log-likelihood.

        Returns:
            responsibilities: (n_obs, n_classes), rows sum to 1
            log_likelihood: total log-likelihood under the current parameters
        """
        responsibilities, log_marginal = logsumexp_rows(self.log_joint(data, covariates))
        return responsibilities, float(log_marginal.sum())

    def log_likelihood_per_obs(self, data: np.ndarray,
                               covariates: Optional[np.ndarray] = None) -> np.ndarray:
        return logsumexp_rows(self.log_joint(data, covariates))[1]

    def log_likelihood(self, data: np.ndarray, covariates: Optional[np.ndarray] = None) -> float:
        return float(self.log_likelihood_per_obs(data, covariates).sum())

    def m_step(self, data: np.ndarray, responsibilities: np.ndarray,
               covariates: Optional[np.ndarray] = None,
               m_step_max_iter: int = 20, m_step_tol: float = 1e-6) -> None:
        """M-step: update all parameters in place from soft class assignments."""
        if self.beta is None:
            self.class_probs = responsibilities.sum(axis=0) / responsibilities.shape[0]
        else:
            design = design_matrix(covariates)
            self.beta = m_step_beta(design, responsibilities, self.beta,
                                    max_iter=m_step_max_iter, tol=m_step_tol)
            self.class_probs = compute_class_probs_from_covariates(design, self.beta).mean(axis=0)
        self._m_step_measurement(data, responsibilities)

    def enable_covariates(self, n_covariates: int) -> None:
        """Switch to a class-membership regression with zero slopes."""
        beta = np.zeros((n_covariates + 1, self.n_classes))
        logits = np.log(np.maximum(self.class_probs, LOG_FLOOR))
        beta[0] = logits - logits[-1]
        self.beta = beta

    # ------------------------------------------------------------------
    # Parameter bookkeeping
    # ------------------------------------------------------------------

    def n_parameters(self) -> int:
        if self.beta is None:
            n_class = self.n_classes - 1
        else:
            n_class = self.beta.shape[0] * (self.n_classes - 1)
        return n_class + self._n_measurement_parameters()

    def _class_parameters(self) -> Tuple[np.ndarray, list]:
        if self.n_classes == 1:
            return np.zeros(0), []
        if self.beta is None:
            logits = np.log(np.maximum(self.class_probs, LOG_FLOOR))
            values = (logits - logits[-1])[:-1]
            names = [f"Class {k + 1} logit" for k in range(self.n_classes - 1)]
            return values, names
        names = [
            f"Class {k + 1} on {'intercept' if f == 0 else f'covariate {f}'}"
            for k in range(self.n_classes - 1)
            for f in range(self.beta.shape[0])
        ]
        return self.beta[:, :-1].T.reshape(-1), names

    def free_parameters(self) -> np.ndarray:
        """Flat vector of free parameters (class logits first, then measurement)."""
        class_values, _ = self._class_parameters()
        measurement, _, _ = self._measurement_parameters()
        return np.concatenate([class_values, measurement])

    def parameter_names(self) -> list:
        _, class_names = self._class_parameters()
        _, measurement_names, _ = self._measurement_parameters()
        return class_names + measurement_names

    def fixed_parameters(self) -> np.ndarray:
        """Boolean mask of parameters sitting on a boundary (excluded from inference)."""
        class_values, _ = self._class_parameters()
        _, _, fixed = self._measurement_parameters()
        return np.concatenate([np.zeros(len(class_values), dtype=bool), fixed])

    def with_free_parameters(self, theta: np.ndarray) -> "MixtureModel":
        """Return a copy with parameters replaced by the flat vector ``theta``."""
        model = self.copy()
        theta = np.asarray(theta, dtype=float)
        n_class = len(self._class_parameters()[0])
        class_values, measurement = theta[:n_class], theta[n_class:]
        if model.n_classes > 1:
            if model.beta is None:
                model.class_probs = softmax(np.append(class_values, 0.0))
            else:
                n_features = model.beta.shape[0]
                model.beta = model.beta.copy()
                model.beta[:, :-1] = class_values.reshape(model.n_classes - 1, n_features).T
        model._set_measurement_parameters(measurement)
        return model

    # ------------------------------------------------------------------
    # Label switching
    # ------------------------------------------------------------------

    def relabel(self, proportions: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Reorder classes by descending proportion, in place.

        Args:
            proportions: Class sizes used for ordering. Defaults to the
                         model-estimated class probabilities.

        Returns:
            The permutation applied (new position -> previous position)
        """
        sizes = self.class_probs if proportions is None else np.asarray(proportions)
        order = np.argsort(-sizes, kind="stable")
        self.class_probs = self.class_probs[order]
        if self.beta is not None:
            beta = self.beta[:, order]
            self.beta = beta - beta[:, -1:]
        self._permute_measurement(order)
        self.class_order = self.class_order[order]
        return order

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def simulate(self, rng: np.random.Generator, n_obs: int,
                 covariates: Optional[np.ndarray] = None,
                 missing_mask: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Draw a data set from the model.

        Args:
            rng: Random generator owned by the caller
            n_obs: Number of observations
            covariates: Covariate values used for class probabilities
            missing_mask: (n_obs, n_indicators) pattern of values set to NaN

        Returns:
            Tuple of (data, classes)
        """
        prior = self.prior(covariates)
        if prior.ndim == 1:
            classes = rng.choice(self.n_classes, size=n_obs, p=prior / prior.sum())
        else:
            cumulative = np.cumsum(prior, axis=1)
            u = rng.random(n_obs)[:, np.newaxis]
            classes = np.minimum((u > cumulative).sum(axis=1), self.n_classes - 1)
        data = self._simulate_indicators(rng, classes)
        if missing_mask is not None:
            data = np.where(missing_mask, np.nan, data)
        return data, classes

    def copy(self) -> "MixtureModel":
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(n_classes={self.n_classes}, n_indicators={self.n_indicators})"
