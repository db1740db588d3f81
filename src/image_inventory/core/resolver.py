"""Turn an image reference into an opened image: cache, daemon or registry."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from ..cache import ArtifactCache
from ..config import AnalysisConfig
from ..exceptions import CacheError, DaemonError
from ..models import ImageSource
from ..progress import TaskProgress
from ..reference import ImageReference
from ..tar.models import Image
from ..utils.digest import calculate_digest
from .auth import DockerKeychain
from .daemon import DaemonClient
from .registry_client import RegistryClient

logger = logging.getLogger(__name__)


@dataclass
class ResolvedImage:
    """An opened image plus where it came from.

    ``compressed_size`` is the sum of the manifest layer sizes when the image
    was fetched from a registry during this run, and 0 otherwise.
    """

    image: Image
    source: ImageSource
    compressed_size: int = 0
    digest: str = ""

    def close(self) -> None:
        self.image.close()


class ImageResolver:
    """Resolution order: cache, then the Docker daemon (if enabled), then the registry."""

    def __init__(
        self,
        config: AnalysisConfig,
        cache: Optional[ArtifactCache] = None,
        keychain: Optional[DockerKeychain] = None,
        daemon_factory: Optional[Callable[[], DaemonClient]] = None,
    ) -> None:
        self.config = config
        self.cache = cache or ArtifactCache(config.resolved_cache_dir)
        self.keychain = keychain or DockerKeychain()
        self.daemon_factory = daemon_factory or (
            lambda: DaemonClient(config.docker_host, timeout=config.registry.timeout)
        )

    async def resolve(
        self, reference: ImageReference, progress: Optional[TaskProgress] = None
    ) -> ResolvedImage:
        """Open the image named by ``reference``.

        With caching enabled the whole lookup-fetch-store sequence runs under
        the cache lock for the reference, so concurrent requests for the same
        reference fetch it once.

        Raises:
            ResolutionError: If no source can provide the image
        """
        if not self.config.use_cache:
            return await self._fetch(reference, progress)

        async with self.cache.lock(reference.raw):
            cached = await self.cache.resolve(reference.raw)
            if cached is not None:
                image, entry = cached
                await self._notify(progress, "Loaded from cache")
                return ResolvedImage(image, ImageSource.CACHE, 0, entry.digest)

            resolved = await self._fetch(reference, progress)
            if resolved.source is not ImageSource.REMOTE:
                return resolved
            return await self._store(reference, resolved, progress)

    async def manifest_size(self, reference: ImageReference) -> tuple[int, str]:
        """Compressed size and digest of an image, from its manifest only.

        Raises:
            ResolutionError: If the manifest cannot be fetched
        """
        async with RegistryClient(reference, self.config.registry, self.keychain) as client:
            body, _, manifest = await client.resolve_manifest()
        size = sum(int(layer.get("size", 0)) for layer in manifest.get("layers", []))
        return size, calculate_digest(body)

    @staticmethod
    async def _notify(progress: Optional[TaskProgress], text: str) -> None:
        if progress is not None:
            await progress.send(text)

    async def _fetch(
        self, reference: ImageReference, progress: Optional[TaskProgress]
    ) -> ResolvedImage:
        if self.config.use_daemon:
            resolved = await self._from_daemon(reference, progress)
            if resolved is not None:
                return resolved

        await self._notify(progress, "Fetching from registry...")

        async def on_chunk(downloaded: int, total: int, digest: str) -> None:
            if total and downloaded >= total:
                await self._notify(progress, f"Downloaded {digest} ({total} bytes)")

        async with RegistryClient(reference, self.config.registry, self.keychain) as client:
            image = await client.pull(on_chunk)
        return ResolvedImage(image, ImageSource.REMOTE, image.compressed_size, image.digest)

    async def _from_daemon(
        self, reference: ImageReference, progress: Optional[TaskProgress]
    ) -> Optional[ResolvedImage]:
        try:
            async with self.daemon_factory() as daemon:
                if not daemon.available or not await daemon.has_image(reference.raw):
                    return None
                await self._notify(progress, "Exporting from Docker daemon...")
                image = await daemon.export_image(reference.raw)
        except DaemonError as e:
            logger.warning(f"Docker daemon unavailable for {reference.raw}, using registry: {e}")
            return None
        return ResolvedImage(image, ImageSource.DAEMON, 0, image.digest)

    async def _store(
        self,
        reference: ImageReference,
        resolved: ResolvedImage,
        progress: Optional[TaskProgress],
    ) -> ResolvedImage:
        await self._notify(progress, "Saving to cache...")
        try:
            entry = await self.cache.store(reference.raw, resolved.image)
        except CacheError as e:
            logger.warning(f"Cache save failed for {reference.raw}: {e}")
            await self._notify(progress, f"Cache save failed: {e}")
            return resolved

        reloaded = await self.cache.resolve(reference.raw)
        if reloaded is None:
            return resolved

        resolved.close()
        image, _ = reloaded
        return ResolvedImage(image, ImageSource.CACHED, resolved.compressed_size, entry.digest)
