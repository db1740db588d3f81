"""Async functional inventory operations."""

from pathlib import Path
from typing import Optional

from .cache import ArtifactCache
from .config import AnalysisConfig
from .models import AnalysisResult, CacheEntry
from .orchestrator import Analyzer
from .progress import Sink


async def analyze_images(
    images: list[str],
    config: Optional[AnalysisConfig] = None,
    sink: Optional[Sink] = None,
) -> list[AnalysisResult]:
    """Inventory the installed packages of one or more images.

    Args:
        images: Image references (e.g. ["alpine:3.20", "debian:12"])
        config: Analysis settings; read from the environment when omitted
        sink: Receiver of progress messages; logs them when omitted

    Returns:
        list[AnalysisResult]: One result per image, in request order

    Raises:
        AnalysisError: If ``config.fail_fast`` is set and an image failed

    Examples:
        results = await analyze_images(["alpine:3.20"])
        for pkg in results[0].records[:5]:
            print(pkg.name, pkg.size_mb)
    """
    return await Analyzer(config, sink=sink).run(images)


def list_cached_images(cache_dir: Optional[Path] = None) -> list[CacheEntry]:
    """List the images stored in the local cache.

    Args:
        cache_dir: Cache root; the default location when omitted

    Returns:
        list[CacheEntry]: Readable entries sorted by reference
    """
    return ArtifactCache(cache_dir).list_entries()


def remove_cached_image(image_ref: str, cache_dir: Optional[Path] = None) -> bool:
    """Remove one image from the cache.

    Args:
        image_ref: Reference exactly as it was analyzed
        cache_dir: Cache root; the default location when omitted

    Returns:
        bool: True if anything was deleted

    Raises:
        CacheError: If an existing file cannot be deleted
    """
    return ArtifactCache(cache_dir).remove(image_ref)


def clear_cache(cache_dir: Optional[Path] = None) -> int:
    """Delete every cached image.

    Args:
        cache_dir: Cache root; the default location when omitted

    Returns:
        int: Number of entries that were listed before clearing

    Raises:
        CacheError: If the cache directory cannot be removed
    """
    cache = ArtifactCache(cache_dir)
    count = len(cache.list_entries())
    cache.clear()
    return count


def cache_path(cache_dir: Optional[Path] = None) -> Path:
    """Return the cache root directory in use."""
    return ArtifactCache(cache_dir).root
