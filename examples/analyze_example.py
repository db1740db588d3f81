"""Example usage of the async inventory API."""

import asyncio
import logging
import sys

# Add parent directory to path
sys.path.insert(0, "src")

from image_inventory import (
    AnalysisConfig,
    InventoryError,
    ProgressOrdering,
    analyze_images,
    list_cached_images,
)

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    """Compare the package footprint of a few base images."""
    images = ["alpine:3.20", "debian:12-slim", "gcr.io/distroless/static-debian12"]
    config = AnalysisConfig.from_env(progress_ordering=ProgressOrdering.ORDERED)

    try:
        results = await analyze_images(images, config)
    except InventoryError as e:
        logger.error(f"Analysis failed: {e}")
        return

    for result in results:
        if not result.ok:
            logger.error(f"{result.image}: {result.error}")
            continue
        logger.info(
            f"{result.image}: {result.package_count} packages, "
            f"{result.installed_mb:.1f} MB installed, {result.compressed_mb:.1f} MB compressed "
            f"({result.source.value})"
        )
        for package in result.records[:5]:
            logger.info(f"  {package.name:<30} {package.version:<20} {package.size_mb:8.2f} MB")

    entries = list_cached_images()
    logger.info(f"Cache holds {len(entries)} images")


if __name__ == "__main__":
    asyncio.run(main())
