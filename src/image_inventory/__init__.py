"""Image Inventory - installed-package inventory for container images."""

__version__ = "0.1.0"

from .cache import ArtifactCache
from .config import AnalysisConfig, ExtractorConfig, ProgressOrdering, RegistryConfig
from .exceptions import (
    AnalysisError,
    CacheError,
    DatabaseError,
    InvalidReferenceError,
    InventoryError,
    ResolutionError,
)
from .inventory import analyze_images, cache_path, clear_cache, list_cached_images, remove_cached_image
from .models import AnalysisResult, CacheEntry, ImageSource, PackageFormat, PackageRecord
from .orchestrator import Analyzer

__all__ = [
    "AnalysisConfig",
    "AnalysisError",
    "AnalysisResult",
    "Analyzer",
    "ArtifactCache",
    "CacheEntry",
    "CacheError",
    "DatabaseError",
    "ExtractorConfig",
    "ImageSource",
    "InvalidReferenceError",
    "InventoryError",
    "PackageFormat",
    "PackageRecord",
    "ProgressOrdering",
    "RegistryConfig",
    "ResolutionError",
    "analyze_images",
    "cache_path",
    "clear_cache",
    "list_cached_images",
    "remove_cached_image",
]
