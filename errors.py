#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class DrainerError(Exception):
    """Base class for errors raised by the drainer.

    Attributes:
        details: Optional payload for diagnostics (status codes, paths, ...).
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(DrainerError):
    """Required configuration is missing or unreadable. Aborts the run."""


class TrackingLoadError(DrainerError):
    """The tracking record could not be fetched from its storage backend."""


class TrackingSaveError(DrainerError):
    """The tracking record could not be written back to its storage backend."""


__all__ = ["DrainerError", "ConfigurationError", "TrackingLoadError", "TrackingSaveError"]
