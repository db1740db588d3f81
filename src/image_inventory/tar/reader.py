"""Reader for image tarballs produced by ``docker save`` or the cache writer."""

import asyncio
import io
import json
import shutil
import tarfile
from pathlib import Path
from typing import Any, Optional

from ..exceptions import TarReadError
from ..utils.digest import calculate_digest
from .models import (
    DOCKER_LAYER_TAR,
    MANIFEST_MEDIA_TYPES,
    OCI_MANIFEST,
    BlobSlice,
    Image,
    Layer,
)


def _extract_json(tar: tarfile.TarFile, name: str) -> Any:
    try:
        member = tar.extractfile(name)
    except KeyError:
        return None
    if member is None:
        return None
    try:
        return json.loads(member.read().decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise TarReadError(f"Invalid JSON in {name}: {e}") from e


def _extract_bytes(tar: tarfile.TarFile, name: str) -> bytes | None:
    try:
        member = tar.extractfile(name)
    except KeyError:
        return None
    if member is None:
        return None
    return member.read()


def _digest_from_path(path: str) -> str:
    """Recover a digest from ``blobs/sha256/<hex>`` style member names."""
    parts = path.split("/")
    if len(parts) >= 3 and parts[-3] == "blobs":
        return f"{parts[-2]}:{parts[-1]}"
    return ""


class TarballImage(Image):
    """Image backed by a tar archive on disk.

    Understands both the legacy ``docker save`` layout (``<id>/layer.tar``)
    and the OCI layout written by newer Docker releases and by the cache.
    Only ``manifest.json`` is required; ``index.json`` supplies the
    manifest digest when present.
    """

    def __init__(self, tar_path: str | Path, cleanup_dir: Optional[Path] = None) -> None:
        """Open an image tarball.

        Args:
            tar_path: Path to the tar file
            cleanup_dir: Directory to delete on close (temporary exports)

        Raises:
            TarReadError: If the archive cannot be opened or has no usable manifest
        """
        self.tar_path = Path(tar_path)
        self._cleanup_dir = cleanup_dir
        if not self.tar_path.is_file():
            raise TarReadError(f"Tar file not found: {tar_path}")

        try:
            with tarfile.open(self.tar_path, "r") as tar:
                self._load(tar)
        except (tarfile.TarError, OSError, EOFError) as e:
            raise TarReadError(f"Cannot read tar file {self.tar_path}: {e}") from e

    def _load(self, tar: tarfile.TarFile) -> None:
        manifest_list = _extract_json(tar, "manifest.json")
        if not isinstance(manifest_list, list) or not manifest_list:
            raise TarReadError("manifest.json missing or empty")

        entry = manifest_list[0]
        if not isinstance(entry, dict) or "Config" not in entry or "Layers" not in entry:
            raise TarReadError("Invalid manifest.json entry")

        self.repo_tags: list[str] = list(entry.get("RepoTags") or [])

        config = _extract_bytes(tar, entry["Config"])
        if config is None:
            raise TarReadError(f"Config {entry['Config']} not found in tar")
        self._config = config

        layer_sources = entry.get("LayerSources") or {}
        self._layers: list[Layer] = []
        for index, layer_path in enumerate(entry["Layers"]):
            try:
                member = tar.getmember(layer_path)
            except KeyError as e:
                raise TarReadError(f"Layer {layer_path} not found in tar") from e
            if not member.isfile():
                raise TarReadError(f"Layer {layer_path} is not a regular file")

            digest = _digest_from_path(layer_path)
            source = layer_sources.get(digest, {})
            self._layers.append(
                Layer(
                    index=index,
                    digest=digest,
                    size=member.size,
                    media_type=source.get("mediaType", DOCKER_LAYER_TAR),
                    opener=self._opener(member.offset_data, member.size),
                )
            )

        self._manifest: bytes | None = None
        self._manifest_media_type = OCI_MANIFEST
        self._digest = calculate_digest(self._config)

        index = _extract_json(tar, "index.json")
        if isinstance(index, dict) and index.get("manifests"):
            descriptor = index["manifests"][0]
            self._digest = descriptor.get("digest", self._digest)
            media_type = descriptor.get("mediaType", OCI_MANIFEST)
            manifest = _extract_bytes(tar, "blobs/" + self._digest.replace(":", "/"))
            if manifest is not None and media_type in MANIFEST_MEDIA_TYPES:
                self._manifest = manifest
                self._manifest_media_type = media_type

    def _opener(self, offset: int, size: int):
        path = str(self.tar_path)

        def open_blob() -> io.BufferedReader:
            return io.BufferedReader(BlobSlice(path, offset, size))

        return open_blob

    @property
    def digest(self) -> str:
        return self._digest

    @property
    def config_bytes(self) -> bytes:
        return self._config

    @property
    def manifest_bytes(self) -> bytes | None:
        return self._manifest

    @property
    def manifest_media_type(self) -> str:
        return self._manifest_media_type

    def layers(self) -> list[Layer]:
        return list(self._layers)

    def close(self) -> None:
        if self._cleanup_dir is not None:
            shutil.rmtree(self._cleanup_dir, ignore_errors=True)
            self._cleanup_dir = None


async def open_tarball_image(
    tar_path: str | Path, cleanup_dir: Optional[Path] = None
) -> TarballImage:
    """Open a tarball image without blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, TarballImage, tar_path, cleanup_dir)
