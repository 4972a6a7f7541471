"""
Finite mixture models for latent structure analysis.

Available Models:
- ProfileMixture (lpa.py): Latent Profile Analysis for continuous indicators
- CategoricalMixture (lca.py): Latent Class Analysis for ordered-categorical indicators

Both share the class-membership machinery in base.py (mixing proportions or a
multinomial logistic regression on covariates).
"""

from typing import Optional, Sequence

from ..data import Dataset
from ..exceptions import ModelSpecificationError
from ..schemas import IndicatorType, ModelSpec
from .base import (
    MixtureModel,
    softmax,
    design_matrix,
    compute_class_probs_from_covariates,
    m_step_beta,
)
from .lca import CategoricalMixture, thresholds_to_probs, probs_to_thresholds
from .lpa import ProfileMixture


def build_model(spec: ModelSpec, n_classes: int, dataset: Dataset,
                indicators: Sequence[str], variance_floor: Optional[float] = None) -> MixtureModel:
    """
    Create an unfitted model of the requested structure.

    Args:
        spec: Indicator roles and constraints
        n_classes: Number of latent classes
        dataset: Data providing category counts for categorical indicators
        indicators: Names of the indicator columns
        variance_floor: Optional lower bound for profile variances

    Returns:
        A ProfileMixture or CategoricalMixture with default parameters
    """
    if spec.indicators == IndicatorType.CONTINUOUS:
        kwargs = {} if variance_floor is None else {"variance_floor": variance_floor}
        model = ProfileMixture(n_classes, len(indicators), spec.variances, **kwargs)
    else:
        missing = [name for name in indicators if name not in dataset.category_labels]
        if missing:
            raise ModelSpecificationError(
                f"Indicators {missing} were not declared categorical when loading the data"
            )
        model = CategoricalMixture(n_classes, [dataset.n_categories(name) for name in indicators])
    if spec.covariates:
        model.enable_covariates(len(spec.covariates))
    return model


__all__ = [
    'MixtureModel',
    'ProfileMixture',
    'CategoricalMixture',
    'build_model',
    'softmax',
    'design_matrix',
    'compute_class_probs_from_covariates',
    'm_step_beta',
    'thresholds_to_probs',
    'probs_to_thresholds',
]
