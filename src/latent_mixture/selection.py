"""
Class enumeration: fit K = k_min..k_max and compare the solutions.

The comparison table carries, for every K, the log-likelihood, parameter
count, information criteria, relative entropy, the likelihood-ratio tests
against K-1 classes and the replication/convergence flags. The suggested
number of classes is the one with the lowest BIC; the LR tests are reported
alongside for the analyst to weigh.

K values are fitted one after another; the random starts inside each K (and
the bootstrap draws) use the thread pool.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .data import Dataset
from .estimation import CancellationToken, FitResult, fit_mixture
from .exceptions import ModelSpecificationError
from .lrt import LRTResult, likelihood_ratio_tests
from .models import build_model
from .progress import EMProgressCallback
from .schemas import BootstrapParams, EstimationParams, ModelSpec

logger = logging.getLogger(__name__)


@dataclass
class Enumeration:
    """Fits and LR tests for a range of class counts."""
    spec: ModelSpec
    indicators: tuple
    fits: Dict[int, FitResult] = field(default_factory=dict)
    tests: Dict[int, LRTResult] = field(default_factory=dict)

    @property
    def k_values(self) -> list:
        return sorted(self.fits)

    @property
    def best_k(self) -> int:
        """Number of classes with the lowest BIC."""
        table = self.summary()
        return int(table.loc[table['BIC'].idxmin(), 'Classes'])

    @property
    def best(self) -> FitResult:
        return self.fits[self.best_k]

    def summary(self) -> pd.DataFrame:
        rows = []
        for k in self.k_values:
            fit = self.fits[k]
            test = self.tests.get(k)
            rows.append({
                'Classes': k,
                'Log-Likelihood': fit.log_likelihood,
                'Parameters': fit.n_parameters,
                'AIC': fit.aic,
                'BIC': fit.bic,
                'SABIC': fit.sabic,
                'Entropy': fit.entropy,
                'VLMR p': None if test is None else test.vlmr_p,
                'LMR p': None if test is None else test.lmr_p,
                'BLRT p': None if test is None else test.bootstrap_p,
                'Smallest Class': float(fit.class_proportions.min()),
                'Replicated': fit.replicated,
                'Converged': fit.converged,
            })
        return pd.DataFrame(rows)


def enumerate_classes(dataset: Dataset, indicators: Sequence[str], k_max: int,
                      spec: Optional[ModelSpec] = None,
                      params: Optional[EstimationParams] = None,
                      bootstrap: Optional[BootstrapParams] = None,
                      vlmr: bool = True,
                      k_min: int = 1,
                      cancel: Optional[CancellationToken] = None,
                      vlmr_draws: Optional[int] = None,
                      progress: bool = False) -> Enumeration:
    """
    Fit mixtures with k_min..k_max classes and compare them.

    Args:
        dataset: Loaded observations
        indicators: Indicator columns used by every model
        k_max: Largest number of classes
        spec: Indicator type, variance structure and covariates
        params: Start budget and convergence criteria for every K
        bootstrap: Budget for the bootstrap LRT; skipped when None
        vlmr: Whether to compute the VLMR test (needs numerical derivatives)
        k_min: Smallest number of classes
        cancel: Optional cancellation token shared by all fits
        vlmr_draws: Replications for the VLMR reference distribution
        progress: Log per-iteration progress at INFO level

    Returns:
        Enumeration with one FitResult per K and LR tests for each K > k_min
        whose K-1 model was also fitted
    """
    if k_min < 1 or k_max < k_min:
        raise ModelSpecificationError(f"Invalid class range {k_min}..{k_max}")
    spec = spec or ModelSpec()
    params = params or EstimationParams.from_settings()
    indicators = tuple(indicators)

    data = dataset.select(indicators)
    covariates = dataset.select(spec.covariates) if spec.covariates else None
    if covariates is not None and np.isnan(covariates).any():
        raise ModelSpecificationError("Covariates may not contain missing values")

    enumeration = Enumeration(spec=spec, indicators=indicators)
    for k in range(k_min, k_max + 1):
        if cancel is not None:
            cancel.check()
        template = build_model(spec, k, dataset, indicators, variance_floor=params.variance_floor)
        callback = EMProgressCallback(f"K={k}", params.max_iter, level=logging.INFO) if progress else None
        fit = fit_mixture(template, data, covariates, params, cancel=cancel, progress=callback)
        enumeration.fits[k] = fit
        logger.info(
            f"K={k}: LL={fit.log_likelihood:.3f}, BIC={fit.bic:.3f}, entropy={fit.entropy:.3f}, "
            f"replicated={fit.replicated}"
        )

        if k - 1 in enumeration.fits:
            null = enumeration.fits[k - 1]
            test = likelihood_ratio_tests(null, fit, data, covariates, vlmr=vlmr,
                                          bootstrap=bootstrap, estimation=params, cancel=cancel,
                                          vlmr_draws=vlmr_draws)
            enumeration.tests[k] = test
            logger.info(
                f"LR test {k - 1} vs {k} classes: LR={test.statistic:.3f}, "
                f"VLMR p={test.vlmr_p}, LMR p={test.lmr_p}, BLRT p={test.bootstrap_p}"
            )

    logger.info(f"Lowest BIC at K={enumeration.best_k}")
    return enumeration
