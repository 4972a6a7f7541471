"""
Multi-start EM estimation of finite mixture models.

For a given number of classes K the optimizer:

1. Generates ``n_starts`` starting models (one deterministic, the rest
   random perturbations, see ``initialization``).
2. Runs ``initial_iterations`` EM iterations from every start.
3. Carries the ``n_final`` starts with the highest initial-stage
   log-likelihood to convergence (or the iteration cap).
4. Reduces the completed starts to one canonical solution: the highest
   log-likelihood among converged starts, ties broken by the lowest seed.

Starts share no mutable state, so both stages run in a thread pool; the
ranking happens only after every start of a stage has finished. If the best
log-likelihood is reached by more than one start the solution is flagged as
replicated; otherwise a warning recommends a larger start budget.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from .data import Dataset
from .exceptions import DataFormatError, EstimationCancelled, ModelSpecificationError
from .initialization import RandomStart, generate_starts
from .metrics import (
    ClassCounts,
    class_counts,
    classification_probabilities,
    information_criteria,
    modal_classes,
    relative_entropy,
)
from .models import MixtureModel, build_model
from .schemas import EstimationParams, ModelSpec

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative cancellation for estimation loops.

    Loops call ``check()`` once per iteration; it raises
    ``EstimationCancelled`` after ``cancel()`` or once the optional deadline
    (seconds from creation) has passed.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = None if timeout is None else time.monotonic() + timeout

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def check(self):
        if self._event.is_set():
            raise EstimationCancelled("Estimation was cancelled")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise EstimationCancelled("Estimation deadline exceeded")


@dataclass(frozen=True, eq=False)
class StartResult:
    """Outcome of one random start."""
    seed: int
    strategy: str
    log_likelihood: float
    initial_log_likelihood: float
    n_iter: int
    converged: bool
    model: MixtureModel


@dataclass(frozen=True, eq=False)
class FitResult:
    """
    Immutable record of the canonical solution for one K.

    ``model`` is a private copy with classes ordered by descending size and
    ``posteriors`` is read-only; neither should be modified.
    """
    n_classes: int
    log_likelihood: float
    n_parameters: int
    n_obs: int
    aic: float
    bic: float
    sabic: float
    entropy: float
    counts: ClassCounts
    classification: np.ndarray
    seed: int
    converged: bool
    replicated: bool
    n_iter: int
    model: MixtureModel
    posteriors: np.ndarray
    starts: Tuple[StartResult, ...]

    @property
    def class_proportions(self) -> np.ndarray:
        return self.counts.proportions("model")

    @property
    def modal_classes(self) -> np.ndarray:
        return modal_classes(self.posteriors)

    @property
    def start_log_likelihoods(self) -> List[Tuple[int, float, bool]]:
        """(seed, log-likelihood, converged) for each final-stage start, best first."""
        ranked = sorted(self.starts, key=_rank_key)
        return [(s.seed, s.log_likelihood, s.converged) for s in ranked]

    def summary(self) -> dict:
        return {
            'n_classes': self.n_classes,
            'log_likelihood': self.log_likelihood,
            'n_parameters': self.n_parameters,
            'aic': self.aic,
            'bic': self.bic,
            'sabic': self.sabic,
            'entropy': self.entropy,
            'class_proportions': self.class_proportions.tolist(),
            'seed': self.seed,
            'converged': self.converged,
            'replicated': self.replicated,
            'n_iter': self.n_iter,
        }


# =============================================================================
# EM LOOP
# =============================================================================

def run_em(model: MixtureModel, data: np.ndarray, covariates: Optional[np.ndarray] = None,
           max_iter: int = 500, tol: float = 1e-6, rel_tol: float = 1e-7,
           m_step_max_iter: int = 20, m_step_tol: float = 1e-6,
           cancel: Optional[CancellationToken] = None,
           callback: Optional[Callable] = None,
           extra: Optional[dict] = None) -> Tuple[float, int, bool]:
    """
    Run EM iterations on ``model`` in place.

    Convergence requires both the absolute and the relative change in
    log-likelihood between successive E-steps to fall below ``tol`` and
    ``rel_tol``. The loop never exceeds ``max_iter`` iterations.

    Returns:
        Tuple of (log_likelihood, n_iter, converged) for the final parameters
    """
    prev_ll = -np.inf
    converged = False
    n_iter = 0

    for iteration in range(1, max_iter + 1):
        if cancel is not None:
            cancel.check()

        # E-step: compute responsibilities AND log-likelihood in one pass
        responsibilities, ll = model.e_step(data, covariates)
        n_iter = iteration
        if not np.isfinite(ll):
            logger.debug(f"Non-finite log-likelihood at iteration {iteration}")
            return -np.inf, n_iter, False

        delta = ll - prev_ll
        if callback is not None:
            callback(iteration=iteration, log_likelihood=ll,
                     delta=delta if np.isfinite(prev_ll) else None, extra=extra)

        if np.isfinite(prev_ll) and abs(delta) < tol and abs(delta) < rel_tol * abs(prev_ll):
            converged = True
            return ll, n_iter, converged

        model.m_step(data, responsibilities, covariates,
                     m_step_max_iter=m_step_max_iter, m_step_tol=m_step_tol)
        prev_ll = ll

    # The last M-step moved the parameters, so score them once more
    ll = model.log_likelihood(data, covariates)
    return (ll if np.isfinite(ll) else -np.inf), n_iter, converged


def _initial_stage(start: RandomStart, data, covariates, params: EstimationParams,
                   cancel, callback) -> StartResult:
    model = start.model.copy()
    ll, n_iter, converged = run_em(
        model, data, covariates,
        max_iter=min(params.initial_iterations, params.max_iter), tol=params.tol, rel_tol=params.rel_tol,
        m_step_max_iter=params.m_step_max_iter, m_step_tol=params.m_step_tol,
        cancel=cancel, callback=callback, extra={'seed': start.seed, 'stage': 'initial'},
    )
    return StartResult(start.seed, start.strategy, ll, ll, n_iter, converged, model)


def _final_stage(result: StartResult, data, covariates, params: EstimationParams,
                 cancel, callback) -> StartResult:
    remaining = params.max_iter - result.n_iter
    if result.converged or remaining <= 0 or not np.isfinite(result.log_likelihood):
        return result
    model = result.model.copy()
    ll, n_iter, converged = run_em(
        model, data, covariates,
        max_iter=remaining, tol=params.tol, rel_tol=params.rel_tol,
        m_step_max_iter=params.m_step_max_iter, m_step_tol=params.m_step_tol,
        cancel=cancel, callback=callback, extra={'seed': result.seed, 'stage': 'final'},
    )
    return StartResult(result.seed, result.strategy, ll, result.initial_log_likelihood,
                       result.n_iter + n_iter, converged, model)


def _rank_key(result: StartResult):
    ll = result.log_likelihood if np.isfinite(result.log_likelihood) else -np.inf
    return (-ll, result.seed)


def _map(func: Callable, items: Sequence, max_workers: int) -> list:
    """Apply ``func`` to every item, in a thread pool when it helps."""
    if max_workers <= 1 or len(items) <= 1:
        return [func(item) for item in items]
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as executor:
        return list(executor.map(func, items))


def select_best(results: Sequence[StartResult],
                replication_tol: float = 1e-3) -> Tuple[StartResult, bool]:
    """
    Reduce per-start results to the canonical one.

    Converged starts are preferred; among them the highest log-likelihood
    wins, ties broken by the lowest seed. The solution is replicated when
    another start reaches the same log-likelihood within ``replication_tol``.

    Returns:
        Tuple of (best result, replicated flag)
    """
    if not results:
        raise ValueError("No start results to select from")
    converged = [r for r in results if r.converged]
    pool = converged or list(results)
    best = min(pool, key=_rank_key)
    matches = sum(
        1 for r in pool
        if np.isfinite(r.log_likelihood) and abs(r.log_likelihood - best.log_likelihood) <= replication_tol
    )
    return best, matches > 1


# =============================================================================
# MAIN FITTING FUNCTION
# =============================================================================

def fit_mixture(template: MixtureModel, data: np.ndarray,
                covariates: Optional[np.ndarray] = None,
                params: Optional[EstimationParams] = None,
                initial_model: Optional[MixtureModel] = None,
                cancel: Optional[CancellationToken] = None,
                progress: Optional[Callable] = None,
                report: bool = True) -> FitResult:
    """
    Fit a K-class mixture with the two-stage multi-start EM strategy.

    Args:
        template: Unfitted model defining K and the model structure
        data: (n_obs, n_indicators) indicator values, NaN for missing
        covariates: (n_obs, n_covariates) predictors of class membership,
                    required when the template has a covariate regression
        params: Start budget and convergence criteria (Settings defaults if None)
        initial_model: Optional model used as the deterministic start
        cancel: Optional cancellation token checked every iteration
        progress: Optional callback receiving per-iteration progress
        report: Log convergence and replication warnings at WARNING level
                (DEBUG otherwise, e.g. for bootstrap refits)

    Returns:
        FitResult of the canonical solution, classes ordered by size
    """
    params = params or EstimationParams.from_settings()
    data = np.asarray(data, dtype=float)
    if data.ndim != 2 or data.shape[1] != template.n_indicators:
        raise ModelSpecificationError(
            f"Expected data with {template.n_indicators} indicator columns, got shape {data.shape}"
        )
    n_obs = data.shape[0]
    if template.n_classes >= n_obs:
        raise ModelSpecificationError(
            f"Cannot fit {template.n_classes} classes to {n_obs} observations"
        )
    empty = np.flatnonzero(np.isnan(data).all(axis=0))
    if empty.size:
        raise DataFormatError(f"Indicator columns {empty.tolist()} have no observed values")
    if template.has_covariates:
        if covariates is None:
            raise ModelSpecificationError("Model has a covariate regression but no covariates were given")
        covariates = np.asarray(covariates, dtype=float)
        if covariates.ndim == 1:
            covariates = covariates[:, np.newaxis]
        if covariates.shape[0] != n_obs or np.isnan(covariates).any():
            raise ModelSpecificationError("Covariates must have one complete row per observation")
    else:
        covariates = None

    level = logging.WARNING if report else logging.DEBUG
    k = template.n_classes
    starts = generate_starts(template, data, params, initial_model=initial_model)
    logger.info(f"Fitting K={k}: {len(starts)} starts, {min(params.n_final, len(starts))} final stage")

    initial = _map(partial(_initial_stage, data=data, covariates=covariates, params=params,
                           cancel=cancel, callback=progress),
                   starts, params.max_workers)
    selected = sorted(initial, key=_rank_key)[:params.n_final]
    final = _map(partial(_final_stage, data=data, covariates=covariates, params=params,
                         cancel=cancel, callback=progress),
                 selected, params.max_workers)

    for result in final:
        if not result.converged:
            logger.log(level, f"K={k} start with seed {result.seed} did not converge "
                              f"in {result.n_iter} iterations")

    best, replicated = select_best(final, params.replication_tol)
    if k == 1:
        replicated = True
    if not best.converged:
        logger.log(level, f"No start converged for K={k}; reporting the best non-converged solution. "
                          f"Consider raising max_iter or relaxing tol.")
    elif not replicated:
        logger.log(level, f"The best log-likelihood for K={k} ({best.log_likelihood:.3f}) was not "
                          f"replicated. Increase the number of random starts.")

    return _freeze(best, final, data, covariates, replicated)


def _freeze(best: StartResult, final: Sequence[StartResult], data: np.ndarray,
            covariates: Optional[np.ndarray], replicated: bool) -> FitResult:
    model = best.model.copy()
    model.relabel()
    posteriors, ll = model.e_step(data, covariates)
    posteriors.setflags(write=False)
    n_obs = data.shape[0]
    n_parameters = model.n_parameters()
    criteria = information_criteria(ll, n_parameters, n_obs)
    classification = classification_probabilities(posteriors)
    classification.setflags(write=False)

    return FitResult(
        n_classes=model.n_classes,
        log_likelihood=ll,
        n_parameters=n_parameters,
        n_obs=n_obs,
        aic=criteria['aic'],
        bic=criteria['bic'],
        sabic=criteria['sabic'],
        entropy=relative_entropy(posteriors),
        counts=class_counts(model.class_probs, posteriors),
        classification=classification,
        seed=best.seed,
        converged=best.converged,
        replicated=replicated,
        n_iter=best.n_iter,
        model=model,
        posteriors=posteriors,
        starts=tuple(final),
    )


def fit_dataset(dataset: Dataset, indicators: Sequence[str], n_classes: int,
                spec: Optional[ModelSpec] = None,
                params: Optional[EstimationParams] = None,
                **kwargs) -> FitResult:
    """
    Convenience wrapper: build the model for ``spec`` and fit it to ``dataset``.

    Extra keyword arguments are passed to ``fit_mixture``.
    """
    spec = spec or ModelSpec()
    params = params or EstimationParams.from_settings()
    template = build_model(spec, n_classes, dataset, indicators, variance_floor=params.variance_floor)
    covariates = dataset.select(spec.covariates) if spec.covariates else None
    return fit_mixture(template, dataset.select(indicators), covariates, params, **kwargs)
