"""Serialize an image to a single tarball (OCI layout plus ``manifest.json``)."""

import io
import json
import tarfile
import time
from pathlib import Path

from ..utils.digest import DigestWriter, calculate_digest
from .models import (
    OCI_CONFIG,
    OCI_MANIFEST,
    Image,
    Layer,
)

OCI_LAYOUT = {"imageLayoutVersion": "1.0.0"}
COPY_BUFFER = 1024 * 1024


def _blob_path(digest: str) -> str:
    algorithm, hex_part = digest.split(":", 1)
    return f"blobs/{algorithm}/{hex_part}"


def _add_bytes(tar: tarfile.TarFile, name: str, data: bytes, mtime: float) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mtime = int(mtime)
    info.mode = 0o644
    tar.addfile(info, io.BytesIO(data))


def _layer_digest(layer: Layer) -> str:
    """Digest of the stored blob, hashing it when the source did not say."""
    if layer.digest:
        return layer.digest
    hasher = DigestWriter()
    with layer.open_blob() as blob:
        while chunk := blob.read(COPY_BUFFER):
            hasher.update(chunk)
    return hasher.digest


def _synthesize_manifest(image: Image, config_digest: str, layers: list[tuple[Layer, str]]) -> bytes:
    manifest = {
        "schemaVersion": 2,
        "mediaType": OCI_MANIFEST,
        "config": {
            "mediaType": OCI_CONFIG,
            "size": len(image.config_bytes),
            "digest": config_digest,
        },
        "layers": [
            {"mediaType": layer.media_type, "size": layer.size, "digest": digest}
            for layer, digest in layers
        ],
    }
    return json.dumps(manifest, separators=(",", ":"), sort_keys=True).encode("utf-8")


def write_image_tarball(image: Image, tar_path: str | Path, image_ref: str) -> str:
    """Write ``image`` to ``tar_path`` and return the stored manifest digest.

    The archive carries an OCI image layout (``oci-layout``, ``index.json``,
    ``blobs/``) and a Docker ``manifest.json`` so ``docker load`` and
    :class:`~image_inventory.tar.reader.TarballImage` can both read it.

    Args:
        image: Image to serialize
        tar_path: Destination path (overwritten)
        image_ref: Reference recorded in ``RepoTags`` and index annotations

    Returns:
        Digest of the manifest blob written to the archive

    Raises:
        OSError, tarfile.TarError: If the archive cannot be written
    """
    mtime = time.time()
    config = image.config_bytes
    config_digest = calculate_digest(config)

    layers = [(layer, _layer_digest(layer)) for layer in image.layers()]

    manifest = image.manifest_bytes
    media_type = image.manifest_media_type
    if manifest is None:
        manifest = _synthesize_manifest(image, config_digest, layers)
        media_type = OCI_MANIFEST
    manifest_digest = calculate_digest(manifest)

    annotations = {"io.containerd.image.name": image_ref}
    if "@" not in image_ref and ":" in image_ref.rsplit("/", 1)[-1]:
        annotations["org.opencontainers.image.ref.name"] = image_ref.rsplit(":", 1)[1]
    index = {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.index.v1+json",
        "manifests": [
            {
                "mediaType": media_type,
                "digest": manifest_digest,
                "size": len(manifest),
                "annotations": annotations,
            }
        ],
    }

    docker_manifest = [
        {
            "Config": _blob_path(config_digest),
            "RepoTags": [] if "@" in image_ref else [image_ref],
            "Layers": [_blob_path(digest) for _, digest in layers],
            "LayerSources": {
                digest: {
                    "mediaType": layer.media_type,
                    "size": layer.size,
                    "digest": digest,
                }
                for layer, digest in layers
            },
        }
    ]

    written: set[str] = set()
    with tarfile.open(tar_path, "w") as tar:
        _add_bytes(tar, "oci-layout", json.dumps(OCI_LAYOUT).encode("utf-8"), mtime)
        _add_bytes(tar, _blob_path(config_digest), config, mtime)
        written.add(config_digest)

        for layer, digest in layers:
            if digest in written:
                continue
            info = tarfile.TarInfo(_blob_path(digest))
            info.size = layer.size
            info.mtime = int(mtime)
            info.mode = 0o644
            with layer.open_blob() as blob:
                tar.addfile(info, blob)
            written.add(digest)

        if manifest_digest not in written:
            _add_bytes(tar, _blob_path(manifest_digest), manifest, mtime)
        _add_bytes(tar, "index.json", json.dumps(index, indent=2).encode("utf-8"), mtime)
        _add_bytes(
            tar, "manifest.json", json.dumps(docker_manifest, indent=2).encode("utf-8"), mtime
        )

    return manifest_digest

