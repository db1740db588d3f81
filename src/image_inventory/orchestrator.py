"""Concurrent analysis of several images."""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .cache import ArtifactCache
from .config import AnalysisConfig
from .core.resolver import ImageResolver, ResolvedImage
from .exceptions import AnalysisError, InventoryError
from .extract import LayerExtractor
from .models import AnalysisResult, ImageSource, PackageRecord
from .parsers import collect_packages
from .progress import ProgressReporter, Sink, TaskProgress
from .reference import ImageReference, parse_reference
from .sbom import run_syft

logger = logging.getLogger(__name__)

SbomRunner = Callable[[str], Awaitable[List[PackageRecord]]]


class Analyzer:
    """Runs image analyses concurrently, bounded by ``config.concurrency``.

    Results are returned in request order. With ``config.fail_fast`` off a
    failing image yields a result with ``error`` set; with it on, the first
    failure in request order is raised once every task has finished.
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        cache: Optional[ArtifactCache] = None,
        resolver: Optional[ImageResolver] = None,
        reporter: Optional[ProgressReporter] = None,
        extractor: Optional[LayerExtractor] = None,
        sbom_runner: Optional[SbomRunner] = None,
        sink: Optional[Sink] = None,
    ) -> None:
        self.config = config or AnalysisConfig.from_env()
        self.cache = cache or ArtifactCache(self.config.resolved_cache_dir)
        self.resolver = resolver or ImageResolver(self.config, self.cache)
        self.reporter = reporter or ProgressReporter(sink, self.config.progress_ordering)
        self.extractor = extractor or LayerExtractor(self.config.extractor)
        self.sbom_runner = sbom_runner or run_syft

    async def run(self, images: List[str]) -> List[AnalysisResult]:
        """Analyze ``images`` and return one result per entry.

        Raises:
            AnalysisError: Only when ``config.fail_fast`` is set and an image failed
        """
        semaphore = asyncio.Semaphore(self.config.concurrency)
        total = len(images)

        async def run_one(index: int, image: str) -> AnalysisResult | InventoryError:
            async with semaphore:
                progress = self.reporter.task(index, image, total)
                try:
                    return await self.analyze(image, progress)
                except InventoryError as e:
                    logger.error(f"Analysis of {image} failed: {e}")
                    await progress.send(f"Failed: {e}")
                    return e
                finally:
                    await progress.finish()

        async with self.reporter:
            outcomes = await asyncio.gather(*(run_one(i, image) for i, image in enumerate(images)))

        results = []
        for image, outcome in zip(images, outcomes):
            if isinstance(outcome, InventoryError):
                if self.config.fail_fast:
                    raise AnalysisError(image, outcome) from outcome
                results.append(AnalysisResult(image=image, error=str(outcome)))
            else:
                results.append(outcome)
        return results

    async def analyze(self, image: str, progress: TaskProgress) -> AnalysisResult:
        """Resolve, extract and parse a single image.

        Raises:
            InventoryError: If the reference is invalid or the image cannot be resolved
        """
        reference = parse_reference(image)

        if self.config.use_syft:
            return await self._analyze_sbom(reference, progress)

        resolved = await self.resolver.resolve(reference, progress)
        try:
            loop = asyncio.get_running_loop()
            records = await loop.run_in_executor(None, self._inspect, resolved, progress)
        finally:
            resolved.close()

        await progress.send(f"Processing {len(records)} packages...")
        return AnalysisResult.from_records(
            image,
            records,
            compressed_bytes=resolved.compressed_size,
            source=resolved.source,
            digest=resolved.digest,
        )

    def _inspect(self, resolved: ResolvedImage, progress: TaskProgress) -> list[PackageRecord]:
        # Runs in a worker thread
        layers = resolved.image.layers()
        extraction = self.extractor.extract(layers, progress)
        return collect_packages(extraction, layers, self.extractor, progress)

    async def _analyze_sbom(self, reference: ImageReference, progress: TaskProgress) -> AnalysisResult:
        await progress.send("Fetching manifest...")
        compressed, digest = await self.resolver.manifest_size(reference)
        await progress.send("Scanning with syft...")
        records = await self.sbom_runner(reference.raw)
        await progress.send(f"Processing {len(records)} packages...")
        return AnalysisResult.from_records(
            reference.raw,
            records,
            compressed_bytes=compressed,
            source=ImageSource.SBOM,
            digest=digest,
        )

