"""
Standard errors and Wald tests for fitted mixture parameters.

Derivatives of the observed-data log-likelihood are taken numerically with
central differences over the model's free parameters (class logits or
class-membership regression coefficients, means and variances, thresholds).
Parameters sitting on a boundary (variances at the floor, thresholds at the
+/-15 bound) are treated as fixed and get no standard error.

The condition number of the information matrix (smallest over largest
eigenvalue) is reported with the estimates; a value near zero signals a
poorly identified solution. It is a diagnostic only.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
from scipy.stats import norm

from .config import get_settings
from .estimation import FitResult
from .models import MixtureModel
from .schemas import InformationType

logger = logging.getLogger(__name__)

EPS = np.finfo(float).eps


@dataclass(frozen=True, eq=False)
class Derivatives:
    """Numerical derivatives at the estimates for the free (non-fixed) parameters."""
    free: np.ndarray        # indices into model.free_parameters()
    scores: np.ndarray      # (n_obs, n_free) per-observation gradients
    hessian: np.ndarray     # (n_free, n_free) Hessian of the total log-likelihood


def _steps(theta: np.ndarray, power: float) -> np.ndarray:
    return EPS ** power * np.maximum(1.0, np.abs(theta))


def numerical_derivatives(model: MixtureModel, data: np.ndarray,
                          covariates: Optional[np.ndarray] = None) -> Derivatives:
    """
    Per-observation scores and the Hessian of the log-likelihood.

    Scores use central differences with step eps^(1/3); the Hessian uses the
    four-point second difference with step eps^(1/4).
    """
    theta = model.free_parameters()
    free = np.flatnonzero(~model.fixed_parameters())
    n_free = len(free)

    def per_obs(values):
        return model.with_free_parameters(values).log_likelihood_per_obs(data, covariates)

    def total(values):
        return float(per_obs(values).sum())

    h1 = _steps(theta, 1.0 / 3.0)
    scores = np.zeros((data.shape[0], n_free))
    for a, i in enumerate(free):
        up, down = theta.copy(), theta.copy()
        up[i] += h1[i]
        down[i] -= h1[i]
        scores[:, a] = (per_obs(up) - per_obs(down)) / (2.0 * h1[i])

    h2 = _steps(theta, 0.25)
    f0 = total(theta)
    hessian = np.zeros((n_free, n_free))
    for a, i in enumerate(free):
        up, down = theta.copy(), theta.copy()
        up[i] += 2.0 * h2[i]
        down[i] -= 2.0 * h2[i]
        hessian[a, a] = (total(up) - 2.0 * f0 + total(down)) / (4.0 * h2[i] ** 2)
        for b in range(a):
            j = free[b]
            corners = []
            for si, sj in ((1, 1), (1, -1), (-1, 1), (-1, -1)):
                point = theta.copy()
                point[i] += si * h2[i]
                point[j] += sj * h2[j]
                corners.append(total(point))
            value = (corners[0] - corners[1] - corners[2] + corners[3]) / (4.0 * h2[i] * h2[j])
            hessian[a, b] = hessian[b, a] = value

    return Derivatives(free=free, scores=scores, hessian=hessian)


def condition_number(information: np.ndarray) -> float:
    """Ratio of the smallest to the largest eigenvalue of the information matrix."""
    if information.size == 0:
        return 1.0
    eigenvalues = np.linalg.eigvalsh((information + information.T) / 2.0)
    largest = eigenvalues.max()
    if largest <= 0:
        return 0.0
    return float(max(eigenvalues.min(), 0.0) / largest)


@dataclass(frozen=True, eq=False)
class ParameterEstimates:
    """Estimates with standard errors, Wald z statistics and two-tailed p-values."""
    table: pd.DataFrame
    covariance: np.ndarray
    condition_number: float
    information: InformationType


def standard_errors(model: MixtureModel, data: np.ndarray,
                    covariates: Optional[np.ndarray] = None,
                    information: InformationType = InformationType.HESSIAN,
                    condition_warning: Optional[float] = None) -> ParameterEstimates:
    """
    Compute standard errors for every free parameter of a fitted model.

    Args:
        model: Fitted model (typically ``FitResult.model``)
        data: Indicator data used for the fit
        covariates: Covariates used for the fit, if any
        information: "hessian" for the inverse observed information, or
                     "sandwich" for H^-1 B H^-1 with B the outer product of scores
        condition_warning: Threshold below which an ill-conditioned
                           information matrix is logged (Settings default)

    Returns:
        ParameterEstimates with a table of
        [parameter, estimate, se, z, p_value, fixed]
    """
    information = InformationType(information)
    if condition_warning is None:
        condition_warning = get_settings().condition_warning
    data = np.asarray(data, dtype=float)

    theta = model.free_parameters()
    names = model.parameter_names()
    derivatives = numerical_derivatives(model, data, covariates)
    info_matrix = -derivatives.hessian

    cond = condition_number(info_matrix)
    if cond < condition_warning:
        logger.warning(
            f"The information matrix is ill-conditioned (condition number {cond:.3e}); "
            f"standard errors may not be trustworthy"
        )

    try:
        inverse = np.linalg.inv(info_matrix)
    except np.linalg.LinAlgError:
        logger.warning("The information matrix is singular; using the pseudo-inverse")
        inverse = np.linalg.pinv(info_matrix)

    if information == InformationType.SANDWICH:
        outer = derivatives.scores.T @ derivatives.scores
        covariance = inverse @ outer @ inverse
    else:
        covariance = inverse

    se = np.full(len(theta), np.nan)
    with np.errstate(invalid="ignore"):
        se[derivatives.free] = np.sqrt(np.diag(covariance))
    z = theta / se
    p_values = 2.0 * norm.sf(np.abs(z))

    fixed = np.ones(len(theta), dtype=bool)
    fixed[derivatives.free] = False
    table = pd.DataFrame({
        'parameter': names,
        'estimate': theta,
        'se': se,
        'z': z,
        'p_value': p_values,
        'fixed': fixed,
    })
    return ParameterEstimates(table=table, covariance=covariance,
                              condition_number=cond, information=information)


def fit_standard_errors(result: FitResult, data: np.ndarray,
                        covariates: Optional[np.ndarray] = None,
                        information: InformationType = InformationType.HESSIAN) -> ParameterEstimates:
    """Standard errors for the canonical solution stored in a FitResult."""
    return standard_errors(result.model, data, covariates, information)
