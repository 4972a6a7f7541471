"""
Configuration and settings management.

Uses Pydantic settings for environment-based configuration so that the
estimation defaults (random-start budgets, convergence criteria, worker pool
size) can be tuned per machine without code changes. Every value can be
overridden with an environment variable prefixed by ``LATENT_MIXTURE_``,
e.g. ``LATENT_MIXTURE_N_STARTS=100``.
"""

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Estimation defaults loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LATENT_MIXTURE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Random starts
    n_starts: int = Field(default=20, ge=1)
    n_final: int = Field(default=4, ge=1)
    initial_iterations: int = Field(default=10, ge=1)
    perturbation_scale: float = Field(default=5.0, ge=0.0)
    replication_tol: float = 1e-3

    # EM convergence
    max_iter: int = Field(default=500, ge=1)
    tol: float = 1e-6
    rel_tol: float = 1e-7

    # Inner M-step for class-membership regression
    m_step_max_iter: int = Field(default=20, ge=1)
    m_step_tol: float = 1e-6

    # Numerical safeguards
    variance_floor: float = 1e-6
    condition_warning: float = 1e-10

    # Worker pool
    max_workers: int = Field(default=4, ge=1)

    # Likelihood-ratio tests
    n_bootstrap: int = Field(default=100, ge=1)
    bootstrap_null_starts: int = Field(default=5, ge=1)
    bootstrap_null_final: int = Field(default=1, ge=1)
    bootstrap_alt_starts: int = Field(default=20, ge=1)
    bootstrap_alt_final: int = Field(default=5, ge=1)
    vlmr_draws: int = Field(default=10000, ge=100)

    # Input data
    missing_token: str = "."


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
