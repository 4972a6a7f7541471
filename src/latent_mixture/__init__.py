"""
Latent Mixture
==============

Finite mixture estimation for latent structure analysis.

- **Latent Class Analysis (LCA)**: classes defined by response probabilities
  of ordered-categorical indicators
- **Latent Profile Analysis (LPA)**: profiles defined by the means (and
  variances) of continuous indicators

Models are fit by EM from many random starts, with missing indicator values
handled by full-information maximum likelihood. Candidate numbers of classes
are compared with information criteria, relative entropy, classification
diagnostics and likelihood-ratio tests (VLMR, LMR, parametric bootstrap).

Quick Start
-----------
```python
from latent_mixture import load_dataset, enumerate_classes, ModelSpec

data = load_dataset("scores.dat", variables=["y1", "y2", "y3", "y4"])
enumeration = enumerate_classes(data, ["y1", "y2", "y3", "y4"], k_max=4)
print(enumeration.summary())

best = enumeration.best
print(best.class_proportions, best.entropy)
```

Package Structure
-----------------
- `config`: Environment-driven estimation defaults
- `schemas`: Validated parameter objects
- `data`: Loading observation tables
- `models`: Profile and categorical mixture models
- `estimation`: Multi-start EM optimizer
- `selection` / `lrt`: Class enumeration and likelihood-ratio tests
- `inference`: Standard errors and Wald tests
- `auxiliary`: BCH comparison of distal outcomes
- `export`: Posterior tables and export archives
"""

__version__ = "0.1.0"

from .config import Settings, get_settings
from .exceptions import (
    LatentMixtureError,
    DataFormatError,
    ModelSpecificationError,
    EstimationCancelled,
)
from .schemas import (
    IndicatorType,
    VarianceStructure,
    StartStrategy,
    InformationType,
    ModelSpec,
    EstimationParams,
    BootstrapParams,
)
from .data import Dataset, load_dataset

from . import models
from .models import MixtureModel, ProfileMixture, CategoricalMixture, build_model

from .estimation import CancellationToken, FitResult, fit_mixture, fit_dataset
from .lrt import LRTResult, likelihood_ratio_tests, bootstrap_lrt, vuong_lo_mendell_rubin
from .selection import Enumeration, enumerate_classes
from .inference import ParameterEstimates, standard_errors
from .auxiliary import BCHResult, bch_compare
from .export import posterior_frame, write_posterior_table, create_export_zip
from .progress import EMProgressCallback

__all__ = [
    '__version__',
    # Config
    'Settings',
    'get_settings',
    # Errors
    'LatentMixtureError',
    'DataFormatError',
    'ModelSpecificationError',
    'EstimationCancelled',
    # Schemas
    'IndicatorType',
    'VarianceStructure',
    'StartStrategy',
    'InformationType',
    'ModelSpec',
    'EstimationParams',
    'BootstrapParams',
    # Data
    'Dataset',
    'load_dataset',
    # Models
    'models',
    'MixtureModel',
    'ProfileMixture',
    'CategoricalMixture',
    'build_model',
    # Estimation
    'CancellationToken',
    'FitResult',
    'fit_mixture',
    'fit_dataset',
    # Model selection
    'LRTResult',
    'likelihood_ratio_tests',
    'bootstrap_lrt',
    'vuong_lo_mendell_rubin',
    'Enumeration',
    'enumerate_classes',
    # Inference and auxiliary comparisons
    'ParameterEstimates',
    'standard_errors',
    'BCHResult',
    'bch_compare',
    # Export
    'posterior_frame',
    'write_posterior_table',
    'create_export_zip',
    'EMProgressCallback',
]
