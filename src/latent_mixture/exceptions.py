"""Exception types raised by the latent_mixture package."""


class LatentMixtureError(Exception):
    """Base class for all package errors."""


class DataFormatError(LatentMixtureError, ValueError):
    """Raised when an input table cannot be read as rectangular numeric data."""


class ModelSpecificationError(LatentMixtureError, ValueError):
    """Raised for invalid class counts, indicator roles or model options."""


class EstimationCancelled(LatentMixtureError):
    """Raised when an estimation loop is cancelled or passes its deadline."""
