"""
Likelihood-ratio tests of K-1 versus K classes.

- Vuong-Lo-Mendell-Rubin (VLMR): the statistic LR = 2 (LL_K - LL_{K-1}) is
  compared with the weighted chi-square distribution sum_i lambda_i Z_i^2
  given by Vuong (1989) for possibly misspecified models. The weights are the
  eigenvalues of Vuong's W matrix, built from per-observation scores and
  Hessians of both models; the distribution is evaluated by simulation.
- Lo-Mendell-Rubin adjusted: LR / (1 + 1 / (d ln n)), d the difference in
  parameters, referred to the same simulated weighted chi-square as VLMR.
- Parametric bootstrap (BLRT): data sets are simulated from the K-1
  solution, both models are refit to every draw, and the p-value is the
  share of draws whose LR equals or exceeds the observed one.
"""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Optional, Tuple

import numpy as np
from .config import get_settings
from .estimation import CancellationToken, FitResult, fit_mixture, _map
from .exceptions import ModelSpecificationError
from .inference import numerical_derivatives
from .schemas import BootstrapParams, EstimationParams

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class LRTResult:
    """Likelihood-ratio comparison of a K-1 (null) and K (alternative) class model."""
    null_classes: int
    alt_classes: int
    statistic: float
    df: int
    vlmr_p: Optional[float] = None
    lmr_statistic: Optional[float] = None
    lmr_p: Optional[float] = None
    bootstrap_p: Optional[float] = None
    bootstrap_statistics: Optional[Tuple[float, ...]] = None

    def summary(self) -> dict:
        return {
            'null_classes': self.null_classes,
            'alt_classes': self.alt_classes,
            'lr_statistic': self.statistic,
            'df': self.df,
            'vlmr_p': self.vlmr_p,
            'lmr_statistic': self.lmr_statistic,
            'lmr_p': self.lmr_p,
            'bootstrap_p': self.bootstrap_p,
            'n_bootstrap': None if self.bootstrap_statistics is None else len(self.bootstrap_statistics),
        }


def _check_pair(null: FitResult, alt: FitResult):
    if alt.n_classes != null.n_classes + 1:
        raise ModelSpecificationError(
            f"LR tests compare K-1 and K classes, got {null.n_classes} and {alt.n_classes}"
        )
    if alt.n_obs != null.n_obs:
        raise ModelSpecificationError("Both models must be fit to the same observations")


def lr_statistic(null: FitResult, alt: FitResult) -> float:
    return 2.0 * (alt.log_likelihood - null.log_likelihood)


def _reference_p(reference: Optional[np.ndarray], value: float) -> float:
    if reference is None:
        return 1.0
    return float(np.mean(reference >= value))


def lo_mendell_rubin_adjusted(statistic: float, df: int, n_obs: int,
                              reference: Optional[np.ndarray] = None) -> Tuple[float, Optional[float]]:
    """
    Lo-Mendell-Rubin ad hoc adjustment of the LR statistic.

    The adjusted statistic is referred to ``reference``, draws from the
    weighted chi-square distribution of ``vuong_reference``. Without a
    reference only the statistic is computed.

    Returns:
        Tuple of (adjusted statistic, p-value or None)
    """
    if df <= 0:
        return statistic, float('nan')
    adjusted = float(statistic / (1.0 + 1.0 / (df * np.log(n_obs))))
    if reference is None:
        return adjusted, None
    return adjusted, float(np.mean(reference >= adjusted))


def vuong_weights(null: FitResult, alt: FitResult, data: np.ndarray,
                  covariates: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Eigenvalues of Vuong's W matrix for the K (f) versus K-1 (g) models.

        W = [[-B_f A_f^-1, -B_fg A_g^-1],
             [ B_gf A_f^-1,  B_g A_g^-1]]

    with A the average Hessian and B the average outer product of scores.
    """
    n_obs = data.shape[0]
    f = numerical_derivatives(alt.model, data, covariates)
    g = numerical_derivatives(null.model, data, covariates)

    a_f = f.hessian / n_obs
    a_g = g.hessian / n_obs
    b_f = f.scores.T @ f.scores / n_obs
    b_g = g.scores.T @ g.scores / n_obs
    b_fg = f.scores.T @ g.scores / n_obs

    a_f_inv = np.linalg.pinv(a_f)
    a_g_inv = np.linalg.pinv(a_g)
    w = np.block([
        [-b_f @ a_f_inv, -b_fg @ a_g_inv],
        [b_fg.T @ a_f_inv, b_g @ a_g_inv],
    ])
    return np.real(np.linalg.eigvals(w))


def vuong_reference(null: FitResult, alt: FitResult, data: np.ndarray,
                    covariates: Optional[np.ndarray] = None,
                    n_draws: Optional[int] = None, seed: int = 0) -> Optional[np.ndarray]:
    """
    Simulated draws of sum_i lambda_i Z_i^2 with Vuong's eigenvalue weights.

    Returns None when every weight vanishes.
    """
    n_draws = n_draws or get_settings().vlmr_draws
    weights = vuong_weights(null, alt, np.asarray(data, dtype=float), covariates)
    weights = weights[np.abs(weights) > 1e-8]
    if len(weights) == 0:
        logger.warning("VLMR weights are all zero; p-values set to 1")
        return None
    rng = np.random.default_rng(seed)
    return (rng.standard_normal((n_draws, len(weights))) ** 2) @ weights


def vuong_lo_mendell_rubin(null: FitResult, alt: FitResult, data: np.ndarray,
                           covariates: Optional[np.ndarray] = None,
                           n_draws: Optional[int] = None, seed: int = 0) -> Tuple[float, float]:
    """
    VLMR test of K-1 against K classes.

    Args:
        null: Fit with K-1 classes
        alt: Fit with K classes
        data: Indicator data used for both fits
        covariates: Covariates used for both fits, if any
        n_draws: Replications used to evaluate the weighted chi-square
                 distribution (Settings default if None)
        seed: Seed for those replications

    Returns:
        Tuple of (LR statistic, p-value)
    """
    _check_pair(null, alt)
    statistic = lr_statistic(null, alt)
    reference = vuong_reference(null, alt, data, covariates, n_draws=n_draws, seed=seed)
    return statistic, _reference_p(reference, statistic)


# =============================================================================
# PARAMETRIC BOOTSTRAP
# =============================================================================

def _bootstrap_draw(draw: int, null: FitResult, alt: FitResult, n_obs: int,
                    missing_mask: np.ndarray, covariates: Optional[np.ndarray],
                    params: BootstrapParams, estimation: EstimationParams,
                    cancel: Optional[CancellationToken]) -> float:
    if cancel is not None:
        cancel.check()
    rng = np.random.default_rng([params.seed, draw])
    simulated, _ = null.model.simulate(rng, n_obs, covariates=covariates, missing_mask=missing_mask)

    base_seed = int(rng.integers(0, 2 ** 31 - 1))
    null_params = estimation.model_copy(update={
        'n_starts': params.null_starts, 'n_final': params.null_final,
        'seed': base_seed, 'max_workers': 1,
    })
    alt_params = estimation.model_copy(update={
        'n_starts': params.alt_starts, 'n_final': params.alt_final,
        'seed': base_seed, 'max_workers': 1,
    })
    # The null refit starts from the generating values
    null_refit = fit_mixture(null.model, simulated, covariates, null_params,
                             initial_model=null.model, cancel=cancel, report=False)
    alt_refit = fit_mixture(alt.model, simulated, covariates, alt_params,
                            cancel=cancel, report=False)
    statistic = 2.0 * (alt_refit.log_likelihood - null_refit.log_likelihood)
    logger.debug(f"Bootstrap draw {draw + 1}: LR = {statistic:.3f}")
    return statistic


def bootstrap_lrt(null: FitResult, alt: FitResult, data: np.ndarray,
                  covariates: Optional[np.ndarray] = None,
                  params: Optional[BootstrapParams] = None,
                  estimation: Optional[EstimationParams] = None,
                  cancel: Optional[CancellationToken] = None) -> Tuple[float, float, np.ndarray]:
    """
    Parametric bootstrap likelihood-ratio test of K-1 against K classes.

    Every draw simulates a data set of the original size from the K-1
    solution, keeping the observed missing-data pattern and covariates,
    and refits both models with their own start budgets. Draws run in a
    thread pool; each refit runs its starts serially.

    Returns:
        Tuple of (observed LR statistic, p-value, bootstrap LR statistics)
    """
    _check_pair(null, alt)
    params = params or BootstrapParams.from_settings()
    estimation = estimation or EstimationParams.from_settings()
    data = np.asarray(data, dtype=float)
    observed = lr_statistic(null, alt)

    logger.info(
        f"Bootstrap LRT {null.n_classes} vs {alt.n_classes} classes: {params.n_bootstrap} draws"
    )
    run_draw = partial(
        _bootstrap_draw, null=null, alt=alt, n_obs=data.shape[0],
        missing_mask=np.isnan(data), covariates=covariates,
        params=params, estimation=estimation, cancel=cancel,
    )
    statistics = np.array(_map(run_draw, list(range(params.n_bootstrap)), params.max_workers))
    p_value = float(np.mean(statistics >= observed))
    return observed, p_value, statistics


def likelihood_ratio_tests(null: FitResult, alt: FitResult, data: np.ndarray,
                           covariates: Optional[np.ndarray] = None,
                           vlmr: bool = True,
                           bootstrap: Optional[BootstrapParams] = None,
                           estimation: Optional[EstimationParams] = None,
                           cancel: Optional[CancellationToken] = None,
                           vlmr_draws: Optional[int] = None) -> LRTResult:
    """
    Run the VLMR, LMR and (optionally) bootstrap tests for one K-1/K pair.

    The LMR p-value needs the VLMR reference distribution, so it is None
    when ``vlmr`` is False.
    """
    _check_pair(null, alt)
    data = np.asarray(data, dtype=float)
    statistic = lr_statistic(null, alt)
    df = alt.n_parameters - null.n_parameters
    lmr_statistic, lmr_p = lo_mendell_rubin_adjusted(statistic, df, alt.n_obs)

    vlmr_p = None
    if vlmr:
        # VLMR and LMR share one simulated reference distribution
        reference = vuong_reference(null, alt, data, covariates, n_draws=vlmr_draws)
        vlmr_p = _reference_p(reference, statistic)
        if df > 0:
            lmr_p = _reference_p(reference, lmr_statistic)

    bootstrap_p, bootstrap_statistics = None, None
    if bootstrap is not None:
        _, bootstrap_p, draws = bootstrap_lrt(null, alt, data, covariates, bootstrap, estimation, cancel)
        bootstrap_statistics = tuple(float(s) for s in draws)

    return LRTResult(
        null_classes=null.n_classes,
        alt_classes=alt.n_classes,
        statistic=statistic,
        df=df,
        vlmr_p=vlmr_p,
        lmr_statistic=lmr_statistic,
        lmr_p=lmr_p,
        bootstrap_p=bootstrap_p,
        bootstrap_statistics=bootstrap_statistics,
    )
