"""
Pipeline Errors
===============

Exception hierarchy shared by all stages. Stages raise the most specific
error; the pipeline catches ``LandChangeError`` at the time-period branch
boundary.
"""


class LandChangeError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(LandChangeError):
    """Configuration file is missing keys or holds invalid values."""


class UnsupportedSensorError(LandChangeError):
    """Band-role mapping of a sensor lacks a required canonical role."""


class MissingBandError(LandChangeError):
    """A raster lacks a band that an operation requires."""

    def __init__(self, band: str, available=None):
        self.band = band
        self.available = list(available or [])
        message = f"Required band '{band}' not found"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class InvalidGeometryError(LandChangeError):
    """Reference geometry does not overlap the raster extent."""


class EmptyCollectionError(LandChangeError):
    """No scenes matched the sensor, date range and region filters."""


class ClassifierTrainingError(LandChangeError):
    """The classifier capability failed to train a model."""


class ExportFailureError(LandChangeError):
    """An artifact could not be written to the export sink."""


class ClassificationError(LandChangeError):
    """A trained model failed to classify the feature raster."""
