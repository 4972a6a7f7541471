"""
Starting values for the multi-start EM optimizer.

Start 0 of every sweep is a deterministic start; the remaining starts are
random perturbations of it. The deterministic start is either:

- "unperturbed": derived from simple sample statistics by the model itself
- "kmeans": class parameters estimated from a hard clustering of the data.
  K-means needs complete observation vectors, so it runs on the complete
  cases; when that clustering is degenerate (too few complete cases, empty
  or singleton clusters) it falls back to average-linkage hierarchical
  clustering on pairwise-complete distances, and finally to "unperturbed".
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.spatial.distance import squareform
from sklearn.cluster import KMeans

from .models import MixtureModel
from .schemas import EstimationParams, StartStrategy

logger = logging.getLogger(__name__)

# Hierarchical clustering needs O(n^2) memory; larger samples are subsampled
MAX_HIERARCHICAL_OBS = 2000


@dataclass(frozen=True, eq=False)
class RandomStart:
    """A seed plus the starting model for one optimization attempt."""
    seed: int
    model: MixtureModel
    strategy: str


# =============================================================================
# CLUSTERING UTILITIES
# =============================================================================

def perform_kmeans_clustering(data: np.ndarray, n_clusters: int, seed: int = 42) -> dict:
    """
    Perform K-means clustering on complete observation vectors.

    Args:
        data: (n_obs, n_dimensions) array without missing values
        n_clusters: Number of clusters to form
        seed: Random state for the k-means initialization

    Returns:
        Dictionary with cluster labels, centroids and inertia
    """
    kmeans = KMeans(n_clusters=n_clusters, random_state=seed, n_init=10)
    labels = kmeans.fit_predict(data)

    return {
        'labels': labels,
        'centroids': kmeans.cluster_centers_,
        'inertia': kmeans.inertia_
    }


def pairwise_complete_distances(data: np.ndarray) -> np.ndarray:
    """
    Euclidean distances computed over the indicators observed in both rows.

    Squared differences are rescaled by (n_indicators / n_shared) so rows
    with different missing patterns remain comparable. Pairs without any
    shared indicator get the largest observed distance.
    """
    observed = ~np.isnan(data)
    mask = observed.astype(float)
    x = np.where(observed, data, 0.0)
    x_sq = x ** 2

    shared = mask @ mask.T
    sum_sq = x_sq @ mask.T + mask @ x_sq.T - 2.0 * (x @ x.T)
    with np.errstate(invalid="ignore", divide="ignore"):
        distances = np.sqrt(np.maximum(sum_sq, 0.0) * data.shape[1] / shared)
    no_overlap = shared == 0
    if no_overlap.any():
        finite_max = np.nanmax(np.where(no_overlap, np.nan, distances))
        distances[no_overlap] = finite_max if np.isfinite(finite_max) else 1.0
    np.fill_diagonal(distances, 0.0)
    return distances


def compute_hierarchical_clustering(distance_matrix: np.ndarray,
                                     method: str = 'average') -> np.ndarray:
    """
    Compute an agglomerative clustering linkage from a square distance matrix.

    Args:
        distance_matrix: Symmetric (n, n) distances with a zero diagonal
        method: Linkage method for scipy.cluster.hierarchy.linkage.
                'average' (UPGMA) is a good default for most applications.

    Returns:
        The scipy linkage matrix
    """
    condensed = squareform(distance_matrix, checks=False)
    return linkage(condensed, method=method)


def get_hierarchical_labels(linkage_matrix: np.ndarray, n_clusters: int) -> np.ndarray:
    """Cut a hierarchical clustering tree into ``n_clusters`` 0-indexed labels."""
    # fcluster returns 1-indexed labels, we convert to 0-indexed for consistency
    return fcluster(linkage_matrix, t=n_clusters, criterion='maxclust') - 1


def is_degenerate(labels: np.ndarray, n_clusters: int, min_size: int = 2) -> bool:
    """True if any of the requested clusters is empty or smaller than ``min_size``."""
    sizes = np.bincount(labels, minlength=n_clusters)
    return len(sizes) != n_clusters or bool(np.any(sizes < min_size))


# =============================================================================
# STARTING MODELS
# =============================================================================

def start_from_labels(template: MixtureModel, data: np.ndarray, labels: np.ndarray,
                      rows: Optional[np.ndarray] = None) -> MixtureModel:
    """
    Build starting parameters from hard class labels via one M-step.

    Args:
        template: Model providing the structure
        data: Full (n_obs, n_indicators) data
        labels: Class label per selected row
        rows: Indices of the labeled rows (all rows if None)
    """
    subset = data if rows is None else data[rows]
    model = template.unperturbed(data)
    responsibilities = np.eye(template.n_classes)[labels]
    covariate_beta = model.beta
    model.beta = None
    model.m_step(subset, responsibilities)
    if covariate_beta is not None:
        model.enable_covariates(covariate_beta.shape[0] - 1)
    return model


def clustering_start(template: MixtureModel, data: np.ndarray,
                     seed: int) -> Tuple[MixtureModel, str]:
    """
    Deterministic start from k-means, falling back to hierarchical clustering.

    Returns:
        Tuple of (starting model, name of the strategy that succeeded)
    """
    n_classes = template.n_classes
    complete = np.flatnonzero(~np.isnan(data).any(axis=1))

    if len(complete) >= 2 * n_classes:
        try:
            labels = perform_kmeans_clustering(data[complete], n_classes, seed=seed)['labels']
            if not is_degenerate(labels, n_classes):
                return start_from_labels(template, data, labels, rows=complete), "kmeans"
            logger.info(f"K-means start for K={n_classes} is degenerate; trying hierarchical clustering")
        except ValueError as e:
            logger.info(f"K-means start for K={n_classes} failed ({e}); trying hierarchical clustering")
    else:
        logger.info(
            f"Only {len(complete)} complete observations for a K={n_classes} k-means start; "
            f"trying hierarchical clustering"
        )

    rows = np.arange(data.shape[0])
    if len(rows) > MAX_HIERARCHICAL_OBS:
        rows = np.sort(np.random.default_rng(seed).choice(rows, MAX_HIERARCHICAL_OBS, replace=False))
    if len(rows) >= 2 * n_classes:
        linkage_matrix = compute_hierarchical_clustering(pairwise_complete_distances(data[rows]))
        labels = get_hierarchical_labels(linkage_matrix, n_classes)
        if not is_degenerate(labels, n_classes):
            return start_from_labels(template, data, labels, rows=rows), "hierarchical"

    logger.warning(f"Clustering starts are degenerate for K={n_classes}; using the unperturbed start")
    return template.unperturbed(data), "unperturbed"


def generate_starts(template: MixtureModel, data: np.ndarray, params: EstimationParams,
                    initial_model: Optional[MixtureModel] = None) -> List[RandomStart]:
    """
    Create the starting models for one K.

    Start 0 is deterministic; start i (i >= 1) perturbs it using a generator
    seeded with ``params.seed + i``. A one-class model has a single start.
    """
    if initial_model is not None:
        base, strategy = initial_model.copy(), "supplied"
    elif params.start_strategy == StartStrategy.KMEANS and template.n_classes > 1:
        base, strategy = clustering_start(template, data, params.seed)
    else:
        base, strategy = template.unperturbed(data), "unperturbed"

    starts = [RandomStart(seed=params.seed, model=base, strategy=strategy)]
    if template.n_classes == 1:
        return starts

    for i in range(1, params.n_starts):
        rng = np.random.default_rng(params.seed + i)
        starts.append(RandomStart(
            seed=params.seed + i,
            model=base.perturbed(rng, params.perturbation_scale),
            strategy="perturbed",
        ))
    return starts
