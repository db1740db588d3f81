"""Image and layer handles shared by the registry, daemon and tarball sources."""

import io
import tarfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterator

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"
DOCKER_LAYER_TAR = "application/vnd.docker.image.rootfs.diff.tar"

INDEX_MEDIA_TYPES = (OCI_INDEX, DOCKER_MANIFEST_LIST)
MANIFEST_MEDIA_TYPES = (OCI_MANIFEST, DOCKER_MANIFEST)


@dataclass
class Layer:
    """One filesystem layer of an image.

    ``opener`` returns the blob exactly as stored (usually gzip-compressed);
    ``open()`` wraps it in a streaming tar reader over the uncompressed
    content, so every pass reads the layer once from start to end.
    """

    index: int
    digest: str
    size: int
    media_type: str
    opener: Callable[[], BinaryIO]

    def open_blob(self) -> BinaryIO:
        return self.opener()

    @contextmanager
    def open(self) -> Iterator[tarfile.TarFile]:
        blob = self.opener()
        try:
            # "r|*" detects gzip, bzip2 and xz from the stream header
            with tarfile.open(fileobj=blob, mode="r|*") as tar:
                yield tar
        finally:
            blob.close()


class Image(ABC):
    """A resolved image with an ordered layer list."""

    @property
    @abstractmethod
    def digest(self) -> str:
        """Manifest digest identifying this image."""

    @property
    @abstractmethod
    def config_bytes(self) -> bytes:
        """Raw image configuration JSON."""

    @property
    def manifest_bytes(self) -> bytes | None:
        """Raw manifest, when the source preserved it."""
        return None

    @property
    def manifest_media_type(self) -> str:
        return OCI_MANIFEST

    @abstractmethod
    def layers(self) -> list[Layer]:
        """Layers in application order (index 0 is the base)."""

    @property
    def compressed_size(self) -> int:
        return sum(layer.size for layer in self.layers())

    def close(self) -> None:
        """Release files held by the image."""


class BlobSlice(io.RawIOBase):
    """Read-only window onto a byte range of a file.

    Lets each layer of a tarball-backed image be read through its own file
    handle instead of sharing the position of one ``tarfile.TarFile``.
    """

    def __init__(self, path: str, offset: int, size: int) -> None:
        super().__init__()
        self._file = open(path, "rb")
        self._file.seek(offset)
        self._remaining = size

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        if self._remaining <= 0:
            return 0
        view = memoryview(buffer)[: self._remaining]
        count = self._file.readinto(view)
        if not count:
            return 0
        self._remaining -= count
        return count

    def close(self) -> None:
        if not self.closed:
            self._file.close()
        super().close()
