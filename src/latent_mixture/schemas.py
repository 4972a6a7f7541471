"""
Pydantic schemas for estimation parameters.

These schemas validate the per-call options of the optimizer, the bootstrap
likelihood-ratio test and the model specification, so that invalid budgets
or tolerances fail before any estimation work starts.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, model_validator

from .config import Settings, get_settings


# =============================================================================
# ENUMS
# =============================================================================

class IndicatorType(str, Enum):
    """Measurement scale of the latent class indicators."""
    CONTINUOUS = "continuous"
    CATEGORICAL = "categorical"


class VarianceStructure(str, Enum):
    """Whether profile variances are held equal across classes."""
    EQUAL = "equal"
    VARYING = "varying"


class StartStrategy(str, Enum):
    """How starting values for the random starts are generated."""
    RANDOM = "random"
    KMEANS = "kmeans"


class InformationType(str, Enum):
    """Estimator of the parameter covariance matrix."""
    HESSIAN = "hessian"
    SANDWICH = "sandwich"


# =============================================================================
# MODEL SPECIFICATION
# =============================================================================

class ModelSpec(BaseModel):
    """Indicator roles and constraints shared by every K in a sweep."""
    model_config = ConfigDict(extra="forbid")

    indicators: IndicatorType = Field(default=IndicatorType.CONTINUOUS,
                                      description="Indicator measurement scale")
    variances: VarianceStructure = Field(default=VarianceStructure.EQUAL,
                                         description="Variance constraint across classes (profiles only)")
    covariates: Optional[list[str]] = Field(default=None,
                                            description="Columns predicting class membership")


# =============================================================================
# ESTIMATION PARAMETERS
# =============================================================================

class EstimationParams(BaseModel):
    """Random-start budget and convergence criteria for one K."""
    model_config = ConfigDict(extra="forbid")

    n_starts: int = Field(default=20, ge=1, description="Initial-stage random starts")
    n_final: int = Field(default=4, ge=1, description="Starts carried to full convergence")
    initial_iterations: int = Field(default=10, ge=1, description="EM iterations in the initial stage")
    max_iter: int = Field(default=500, ge=1, description="Maximum EM iterations")
    tol: float = Field(default=1e-6, gt=0, description="Absolute log-likelihood change criterion")
    rel_tol: float = Field(default=1e-7, gt=0, description="Relative log-likelihood change criterion")
    m_step_max_iter: int = Field(default=20, ge=1, description="Inner M-step iterations")
    m_step_tol: float = Field(default=1e-6, gt=0, description="Inner M-step gradient criterion")
    perturbation_scale: float = Field(default=5.0, ge=0, description="Scale of random start perturbations")
    replication_tol: float = Field(default=1e-3, gt=0, description="Tolerance for replicated log-likelihoods")
    variance_floor: float = Field(default=1e-6, gt=0, description="Lower bound for profile variances")
    start_strategy: StartStrategy = Field(default=StartStrategy.RANDOM)
    seed: int = Field(default=0, ge=0, description="Base seed; start i uses seed + i")
    max_workers: int = Field(default=4, ge=1, description="Threads used for random starts")

    @model_validator(mode="after")
    def _check_final_stage(self) -> "EstimationParams":
        if self.n_final > self.n_starts:
            raise ValueError(
                f"n_final ({self.n_final}) cannot exceed n_starts ({self.n_starts})"
            )
        return self

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "EstimationParams":
        """Build parameters from the environment defaults plus explicit overrides."""
        settings = settings or get_settings()
        values = {
            "n_starts": settings.n_starts,
            "n_final": min(settings.n_final, settings.n_starts),
            "initial_iterations": settings.initial_iterations,
            "max_iter": settings.max_iter,
            "tol": settings.tol,
            "rel_tol": settings.rel_tol,
            "m_step_max_iter": settings.m_step_max_iter,
            "m_step_tol": settings.m_step_tol,
            "perturbation_scale": settings.perturbation_scale,
            "replication_tol": settings.replication_tol,
            "variance_floor": settings.variance_floor,
            "max_workers": settings.max_workers,
        }
        values.update(overrides)
        return cls(**values)


class BootstrapParams(BaseModel):
    """Budget for the parametric bootstrap likelihood-ratio test."""
    model_config = ConfigDict(extra="forbid")

    n_bootstrap: int = Field(default=100, ge=1, description="Number of bootstrap draws")
    null_starts: int = Field(default=5, ge=1, description="Initial-stage starts for the K-1 refit")
    null_final: int = Field(default=1, ge=1, description="Final-stage starts for the K-1 refit")
    alt_starts: int = Field(default=20, ge=1, description="Initial-stage starts for the K refit")
    alt_final: int = Field(default=5, ge=1, description="Final-stage starts for the K refit")
    seed: int = Field(default=0, ge=0)
    max_workers: int = Field(default=4, ge=1, description="Threads used for bootstrap draws")

    @model_validator(mode="after")
    def _check_budgets(self) -> "BootstrapParams":
        if self.null_final > self.null_starts or self.alt_final > self.alt_starts:
            raise ValueError("final-stage starts cannot exceed initial-stage starts")
        return self

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "BootstrapParams":
        settings = settings or get_settings()
        values = {
            "n_bootstrap": settings.n_bootstrap,
            "null_starts": settings.bootstrap_null_starts,
            "null_final": min(settings.bootstrap_null_final, settings.bootstrap_null_starts),
            "alt_starts": settings.bootstrap_alt_starts,
            "alt_final": min(settings.bootstrap_alt_final, settings.bootstrap_alt_starts),
            "max_workers": settings.max_workers,
        }
        values.update(overrides)
        return cls(**values)
