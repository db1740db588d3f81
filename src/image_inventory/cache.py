"""Local artifact cache: whole-image tarballs with JSON side-car metadata."""

import asyncio
import json
import logging
import os
import shutil
import tarfile
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles

from .config import default_cache_dir
from .exceptions import CacheError, TarReadError
from .models import CacheEntry
from .tar.models import Image
from .tar.reader import TarballImage, open_tarball_image
from .tar.writer import write_image_tarball
from .utils.digest import reference_key

logger = logging.getLogger(__name__)


def sanitize_reference(image_ref: str) -> str:
    """Render a reference as a filename fragment."""
    return image_ref.replace("/", "_").replace(":", "_").replace("@", "_")


def cache_basename(image_ref: str) -> str:
    """``<sanitized-reference>_<16 hex chars of sha256(reference)>``."""
    return f"{sanitize_reference(image_ref)}_{reference_key(image_ref)}"


class ArtifactCache:
    """Content-keyed store of image tarballs under a single directory.

    Entries never expire: a cached tag keeps resolving to the cached image
    until it is removed explicitly, even if the tag has moved upstream.

    Writes go to a temporary file in the cache directory and are moved into
    place with ``os.replace``; metadata is written after the tarball, so a
    metadata file always pairs with a complete archive. Concurrent work on
    the same reference inside one process is serialized with :meth:`lock`.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self._root = Path(root) if root is not None else default_cache_dir()
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def paths(self, image_ref: str) -> tuple[Path, Path]:
        """Tarball and metadata paths for a reference."""
        base = cache_basename(image_ref)
        return self._root / f"{base}.tar", self._root / f"{base}.json"

    @asynccontextmanager
    async def lock(self, image_ref: str) -> AsyncIterator[None]:
        """Hold the in-process lock for one cache key."""
        key = cache_basename(image_ref)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            yield

    async def resolve(self, image_ref: str) -> Optional[tuple[TarballImage, CacheEntry]]:
        """Load a cached image.

        Returns:
            The image and its metadata, or None on any kind of miss
        """
        tar_path, meta_path = self.paths(image_ref)
        if not tar_path.is_file() or not meta_path.is_file():
            return None

        try:
            async with aiofiles.open(meta_path, "r", encoding="utf-8") as f:
                entry = CacheEntry.from_dict(json.loads(await f.read()))
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Unreadable cache metadata {meta_path}: {e}")
            return None

        try:
            image = await open_tarball_image(tar_path)
        except TarReadError as e:
            logger.warning(f"Cache read failed for {image_ref}: {e}")
            return None

        return image, entry

    async def store(self, image_ref: str, image: Image) -> CacheEntry:
        """Serialize ``image`` into the cache.

        Raises:
            CacheError: If the directory, tarball or metadata cannot be written
        """
        tar_path, meta_path = self.paths(image_ref)
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Cannot create cache directory {self._root}: {e}") from e

        suffix = f".{uuid.uuid4().hex[:8]}.tmp"
        tmp_tar = tar_path.with_name(tar_path.name + suffix)
        tmp_meta = meta_path.with_name(meta_path.name + suffix)

        loop = asyncio.get_running_loop()
        try:
            digest = await loop.run_in_executor(None, write_image_tarball, image, tmp_tar, image_ref)
            size = tmp_tar.stat().st_size
            # Old metadata must not pair with the new archive
            meta_path.unlink(missing_ok=True)
            os.replace(tmp_tar, tar_path)
        except (OSError, tarfile.TarError) as e:
            tmp_tar.unlink(missing_ok=True)
            raise CacheError(f"Cannot write cache tarball for {image_ref}: {e}") from e

        entry = CacheEntry(
            image_ref=image_ref,
            digest=digest,
            cached_at=datetime.now(timezone.utc),
            size_bytes=size,
        )
        try:
            async with aiofiles.open(tmp_meta, "w", encoding="utf-8") as f:
                await f.write(json.dumps(entry.to_dict(), indent=2))
            os.replace(tmp_meta, meta_path)
        except OSError as e:
            tmp_meta.unlink(missing_ok=True)
            raise CacheError(f"Cannot write cache metadata for {image_ref}: {e}") from e

        logger.debug(f"Cached {image_ref} ({size} bytes) at {tar_path}")
        return entry

    def list_entries(self) -> list[CacheEntry]:
        """All readable entries, sorted by reference.

        Metadata that cannot be parsed, or whose tarball is gone, is skipped.
        """
        if not self._root.is_dir():
            return []

        entries = []
        for meta_path in self._root.glob("*.json"):
            if not meta_path.with_suffix(".tar").is_file():
                continue
            try:
                with open(meta_path, encoding="utf-8") as f:
                    entries.append(CacheEntry.from_dict(json.load(f)))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping cache metadata {meta_path.name}: {e}")
        return sorted(entries, key=lambda e: (e.image_ref, e.digest))

    @staticmethod
    def total_size(entries: list[CacheEntry]) -> int:
        return sum(entry.size_bytes for entry in entries)

    def clear(self) -> None:
        """Delete the whole cache directory.

        Raises:
            CacheError: If the directory exists but cannot be removed
        """
        if not self._root.exists():
            return
        try:
            shutil.rmtree(self._root)
        except OSError as e:
            raise CacheError(f"Cannot clear cache {self._root}: {e}") from e

    def remove(self, image_ref: str) -> bool:
        """Delete one entry; returns whether anything was removed."""
        removed = False
        for path in self.paths(image_ref):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                pass
            except OSError as e:
                raise CacheError(f"Cannot remove {path}: {e}") from e
        return removed
