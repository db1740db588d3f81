"""Utility functions for the image inventory engine."""

from .digest import calculate_digest, reference_key, validate_digest

__all__ = ["calculate_digest", "reference_key", "validate_digest"]
