"""
core/exceptions.py
------------------
Custom exception hierarchy for capsolve.
"""


class CapsolveError(Exception):
    """Root exception for all capsolve-specific errors."""


# --- Input ---

class DecodeError(CapsolveError):
    """Raised when image bytes cannot be decoded into a raster."""


class DimensionError(CapsolveError):
    """Raised when two images have incompatible dimensions."""


class InvalidRequestError(CapsolveError, ValueError):
    """Raised for malformed request parameters (colour filter, charset range)."""


# --- Inference ---

class ShapeError(CapsolveError):
    """Raised when a tensor does not have the layout a stage expects."""


class EngineError(CapsolveError):
    """Raised when the inference backend fails to load or run a model."""


# --- Configuration ---

class ConfigurationError(CapsolveError):
    """Raised when configuration, model or charset data is missing or invalid."""


# --- Service ---

class FeatureDisabledError(CapsolveError):
    """Raised when a request targets a feature that is switched off."""
