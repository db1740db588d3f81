"""Synthetic images, layers and package databases for tests."""

import gzip
import io
import json
import os
import sqlite3
import struct
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from aiohttp import web

from image_inventory.tar.models import DOCKER_LAYER_GZIP, OCI_CONFIG, OCI_MANIFEST, Image, Layer
from image_inventory.tar.writer import write_image_tarball
from image_inventory.utils.digest import calculate_digest


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


@dataclass
class Entry:
    """One member of a synthetic layer. ``data=None`` means a directory."""

    name: str
    data: Optional[bytes] = b""
    mode: int = 0o644
    link: Optional[str] = None


def file(name: str, data: bytes, mode: int = 0o644) -> Entry:
    return Entry(name, data, mode)


def executable(name: str, data: bytes) -> Entry:
    return Entry(name, data, 0o755)


def directory(name: str) -> Entry:
    return Entry(name, None, 0o755)


def symlink(name: str, target: str) -> Entry:
    return Entry(name, None, 0o777, link=target)


def whiteout(path: str) -> Entry:
    parent, _, base = path.rpartition("/")
    return Entry(f"{parent}/.wh.{base}" if parent else f".wh.{base}", b"")


def opaque(directory_path: str) -> Entry:
    return Entry(f"{directory_path}/.wh..wh..opq", b"")


def build_layer(entries: list[Entry], compress: bool = True) -> bytes:
    """Tar (and gzip) ``entries`` in order."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for entry in entries:
            info = tarfile.TarInfo(entry.name)
            info.mode = entry.mode
            if entry.link is not None:
                info.type = tarfile.SYMTYPE
                info.linkname = entry.link
                tar.addfile(info)
            elif entry.data is None:
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            else:
                info.size = len(entry.data)
                tar.addfile(info, io.BytesIO(entry.data))
    raw = buffer.getvalue()
    return gzip.compress(raw) if compress else raw


def memory_layer(index: int, blob: bytes) -> Layer:
    return Layer(
        index=index,
        digest=calculate_digest(blob),
        size=len(blob),
        media_type=DOCKER_LAYER_GZIP,
        opener=lambda: io.BytesIO(blob),
    )


class MemoryImage(Image):
    """Image assembled from in-memory layer blobs."""

    def __init__(self, blobs: list[bytes], config: Optional[dict] = None) -> None:
        self._config = json.dumps(
            config or {"architecture": "amd64", "os": "linux", "rootfs": {"type": "layers"}}
        ).encode("utf-8")
        self.blobs = blobs
        self.closed = False

    @property
    def digest(self) -> str:
        return calculate_digest(self.manifest)

    @property
    def config_bytes(self) -> bytes:
        return self._config

    @property
    def manifest(self) -> bytes:
        return build_manifest(self._config, self.blobs)

    def layers(self) -> list[Layer]:
        return [memory_layer(i, blob) for i, blob in enumerate(self.blobs)]

    def close(self) -> None:
        self.closed = True


def build_manifest(config: bytes, blobs: list[bytes]) -> bytes:
    manifest = {
        "schemaVersion": 2,
        "mediaType": OCI_MANIFEST,
        "config": {"mediaType": OCI_CONFIG, "size": len(config), "digest": calculate_digest(config)},
        "layers": [
            {"mediaType": DOCKER_LAYER_GZIP, "size": len(blob), "digest": calculate_digest(blob)}
            for blob in blobs
        ],
    }
    return json.dumps(manifest).encode("utf-8")


def build_image_tarball(path: Path, blobs: list[bytes], image_ref: str = "test/image:latest") -> str:
    """Write an OCI-layout image tarball and return its manifest digest."""
    return write_image_tarball(MemoryImage(blobs), path, image_ref)


def build_legacy_tarball(path: Path, layer_tars: list[bytes], repo_tag: str = "legacy:1") -> None:
    """Write a pre-OCI ``docker save`` archive with ``<id>/layer.tar`` members."""
    config = json.dumps({"architecture": "amd64", "os": "linux"}).encode("utf-8")
    config_name = calculate_digest(config).split(":", 1)[1] + ".json"
    layer_names = [f"layer{i}/layer.tar" for i in range(len(layer_tars))]
    manifest = [{"Config": config_name, "RepoTags": [repo_tag], "Layers": layer_names}]

    with tarfile.open(path, "w") as tar:
        for name, data in [(config_name, config), *zip(layer_names, layer_tars)]:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        data = json.dumps(manifest).encode("utf-8")
        info = tarfile.TarInfo("manifest.json")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))


# ---------------------------------------------------------------------------
# Package databases
# ---------------------------------------------------------------------------


def apk_database(packages: list[dict]) -> bytes:
    """``packages`` items map single-letter keys to values, e.g. {"P": "musl"}."""
    blocks = []
    for package in packages:
        blocks.append("".join(f"{key}:{value}\n" for key, value in package.items()))
    return "\n".join(blocks).encode("utf-8")


def dpkg_status(packages: list[dict]) -> bytes:
    blocks = []
    for package in packages:
        blocks.append("".join(f"{key}: {value}\n" for key, value in package.items()))
    return "\n".join(blocks).encode("utf-8")


RPM_TAG_NAME = 1000
RPM_TAG_VERSION = 1001
RPM_TAG_RELEASE = 1002
RPM_TAG_EPOCH = 1003
RPM_TAG_SIZE = 1009
RPM_TAG_LONGSIZE = 5009


def rpm_header(
    name: str,
    version: str,
    release: str,
    size: int,
    epoch: Optional[int] = None,
    longsize: Optional[int] = None,
    with_magic: bool = False,
) -> bytes:
    """Encode a minimal RPM header blob."""
    entries = []
    store = bytearray()

    for tag, value in ((RPM_TAG_NAME, name), (RPM_TAG_VERSION, version), (RPM_TAG_RELEASE, release)):
        entries.append((tag, 6, len(store), 1))
        store.extend(value.encode("utf-8") + b"\x00")

    ints = [(RPM_TAG_SIZE, 4, size)]
    if epoch is not None:
        ints.append((RPM_TAG_EPOCH, 4, epoch))
    if longsize is not None:
        ints.append((RPM_TAG_LONGSIZE, 5, longsize))
    for tag, kind, value in ints:
        width = 4 if kind == 4 else 8
        while len(store) % width:
            store.append(0)
        entries.append((tag, kind, len(store), 1))
        store.extend(struct.pack(">I" if width == 4 else ">Q", value))

    blob = struct.pack(">II", len(entries), len(store))
    blob += b"".join(struct.pack(">iIiI", *entry) for entry in entries)
    blob += bytes(store)
    if with_magic:
        blob = b"\x8e\xad\xe8\x01\x00\x00\x00\x00" + blob
    return blob


def rpm_sqlite_database(blobs: list[bytes]) -> bytes:
    fd, path = tempfile.mkstemp(suffix=".sqlite")
    os.close(fd)
    try:
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE Packages (hnum INTEGER PRIMARY KEY AUTOINCREMENT, blob BLOB NOT NULL)")
        conn.executemany("INSERT INTO Packages (blob) VALUES (?)", [(b,) for b in blobs])
        conn.commit()
        conn.close()
        return Path(path).read_bytes()
    finally:
        os.unlink(path)


def rpm_bdb_database(blobs: list[bytes], order: str = "<", page_size: int = 512) -> bytes:
    """Berkeley DB hash file holding each blob in an overflow chain."""
    item_space = page_size - 26

    # Page 1 is the hash page; overflow chains start at page 2
    next_free = 2
    overflow_pages: list[bytes] = []
    offpage_items = []
    for blob in blobs:
        chunks = [blob[i : i + item_space] for i in range(0, len(blob), item_space)] or [b""]
        first = next_free
        for n, chunk in enumerate(chunks):
            pgno = next_free + n
            last = n == len(chunks) - 1
            header = struct.pack(
                order + "8xIIIHHBB",
                pgno,
                pgno - 1 if n else 0,
                0 if last else pgno + 1,
                1,
                len(chunk),
                0,
                7,
            )
            overflow_pages.append((header + chunk).ljust(page_size, b"\x00"))
        next_free += len(chunks)
        offpage_items.append((first, len(blob)))

    # Hash page: key/value index pairs, items packed from the end
    page = bytearray(page_size)
    indexes = []
    cursor = page_size
    for n, (pgno, length) in enumerate(offpage_items):
        key = b"\x01" + struct.pack(order + "I", n + 1)
        cursor -= len(key)
        page[cursor : cursor + len(key)] = key
        key_at = cursor
        value = struct.pack(order + "B3xII", 3, pgno, length)
        cursor -= len(value)
        page[cursor : cursor + len(value)] = value
        indexes.extend([key_at, cursor])
    page[0:26] = struct.pack(order + "8xIIIHHBB", 1, 0, 0, len(indexes), cursor, 0, 13)
    struct.pack_into(f"{order}{len(indexes)}H", page, 26, *indexes)

    last_pgno = next_free - 1
    meta = bytearray(page_size)
    struct.pack_into(order + "I", meta, 8, 0)
    struct.pack_into(order + "I", meta, 12, 0x061561)
    struct.pack_into(order + "I", meta, 16, 9)
    struct.pack_into(order + "I", meta, 20, page_size)
    meta[24] = 0
    meta[25] = 8
    struct.pack_into(order + "I", meta, 32, last_pgno)

    pages = [bytes(meta), bytes(page), *overflow_pages]
    return b"".join(pages)


def rpm_ndb_database(blobs: list[bytes]) -> bytes:
    slots_per_page = 4096 // 16
    header = struct.pack("<4I", int.from_bytes(b"RpmP", "little"), 0, 1, 1).ljust(32, b"\x00")

    slots = bytearray()
    body = bytearray()
    offset = 4096
    for pkg_index, blob in enumerate(blobs, start=1):
        blob_header = struct.pack("<4I", int.from_bytes(b"BlbS", "little"), pkg_index, 0, len(blob))
        record = (blob_header + blob).ljust(-(-(16 + len(blob)) // 16) * 16, b"\x00")
        slots.extend(struct.pack("<4I", int.from_bytes(b"Slot", "little"), pkg_index, offset // 16, len(record) // 16))
        body.extend(record)
        offset += len(record)
    while len(slots) < (slots_per_page - 2) * 16:
        slots.extend(struct.pack("<4I", int.from_bytes(b"Slot", "little"), 0, 0, 0))

    return header + bytes(slots) + bytes(body)


# ---------------------------------------------------------------------------
# Go executables
# ---------------------------------------------------------------------------

MODINFO_START = bytes.fromhex("3077af0c9274080241e1c107e6d618e6")
MODINFO_END = bytes.fromhex("f932433186182072008242104116d8f2")


def _uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def go_modinfo(path: str, main_path: str, main_version: str) -> bytes:
    lines = f"path\t{path}\nmod\t{main_path}\t{main_version}\th1:abc=\n"
    return MODINFO_START + lines.encode("utf-8") + MODINFO_END


def go_inline_binary(go_version: str, modinfo: bytes, size: int = 4096) -> bytes:
    """Executable with Go >= 1.18 style inline build info."""
    header = (b"\xff Go buildinf:" + bytes([8, 0x2])).ljust(32, b"\x00")
    payload = header + _uvarint(len(go_version)) + go_version.encode("utf-8")
    payload += _uvarint(len(modinfo)) + modinfo
    data = b"\x7fELF".ljust(64, b"\x00") + payload
    return data.ljust(size, b"\x00")


def go_pointer_binary(go_version: str, modinfo: bytes, size: int = 4096) -> bytes:
    """64-bit little-endian ELF with pre-1.18 pointer-format build info."""
    base = 0x400000
    header_at = 128
    vers_hdr_at = header_at + 32
    mod_hdr_at = vers_hdr_at + 16
    vers_at = mod_hdr_at + 16
    mod_at = vers_at + len(go_version)
    total = max(size, mod_at + len(modinfo))

    data = bytearray(total)
    data[0:16] = b"\x7fELF\x02\x01\x01".ljust(16, b"\x00")
    struct.pack_into("<Q", data, 32, 64)
    struct.pack_into("<HH", data, 54, 56, 1)
    struct.pack_into("<IIQQQQQQ", data, 64, 1, 5, 0, base, base, total, total, 0x1000)

    data[header_at : header_at + 16] = b"\xff Go buildinf:" + bytes([8, 0])
    struct.pack_into("<QQ", data, header_at + 16, base + vers_hdr_at, base + mod_hdr_at)
    struct.pack_into("<QQ", data, vers_hdr_at, base + vers_at, len(go_version))
    struct.pack_into("<QQ", data, mod_hdr_at, base + mod_at, len(modinfo))
    data[vers_at:mod_at] = go_version.encode("utf-8")
    data[mod_at : mod_at + len(modinfo)] = modinfo
    return bytes(data)


# ---------------------------------------------------------------------------
# Fake registry
# ---------------------------------------------------------------------------


@dataclass
class FakeRegistry:
    """Registry API v2 test double serving in-memory images.

    With ``token`` set, every ``/v2/`` request needs ``Bearer <token>``,
    obtainable from ``/token``.
    """

    manifests: dict[tuple[str, str], tuple[bytes, str]] = field(default_factory=dict)
    blobs: dict[str, bytes] = field(default_factory=dict)
    token: Optional[str] = None
    manifest_requests: int = 0
    blob_requests: int = 0
    token_requests: int = 0

    def add_image(self, repository: str, tag: str, blobs: list[bytes]) -> str:
        """Publish an image and return its manifest digest."""
        config = json.dumps({"architecture": "amd64", "os": "linux"}).encode("utf-8")
        manifest = build_manifest(config, blobs)
        digest = calculate_digest(manifest)
        self.blobs[calculate_digest(config)] = config
        for blob in blobs:
            self.blobs[calculate_digest(blob)] = blob
        self.manifests[(repository, tag)] = (manifest, OCI_MANIFEST)
        self.manifests[(repository, digest)] = (manifest, OCI_MANIFEST)
        return digest

    def add_index(self, repository: str, tag: str, platforms: dict[str, str]) -> None:
        """Publish an image index mapping "os/arch" to manifest digests."""
        manifests = []
        for platform, digest in platforms.items():
            os_name, arch = platform.split("/")[:2]
            body, media_type = self.manifests[(repository, digest)]
            manifests.append(
                {
                    "mediaType": media_type,
                    "digest": digest,
                    "size": len(body),
                    "platform": {"os": os_name, "architecture": arch},
                }
            )
        index = {
            "schemaVersion": 2,
            "mediaType": "application/vnd.oci.image.index.v1+json",
            "manifests": manifests,
        }
        self.manifests[(repository, tag)] = (
            json.dumps(index).encode("utf-8"),
            "application/vnd.oci.image.index.v1+json",
        )

    def _authorized(self, request: web.Request) -> bool:
        return self.token is None or request.headers.get("Authorization") == f"Bearer {self.token}"

    def _challenge(self, request: web.Request) -> web.Response:
        realm = f"http://{request.host}/token"
        return web.Response(
            status=401,
            headers={"WWW-Authenticate": f'Bearer realm="{realm}",service="fake-registry"'},
        )

    async def handle_token(self, request: web.Request) -> web.Response:
        self.token_requests += 1
        return web.json_response({"token": self.token})

    async def handle_manifest(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._challenge(request)
        self.manifest_requests += 1
        key = (request.match_info["name"], request.match_info["reference"])
        if key not in self.manifests:
            return web.json_response({"errors": [{"code": "MANIFEST_UNKNOWN"}]}, status=404)
        body, media_type = self.manifests[key]
        return web.Response(
            body=body,
            headers={"Content-Type": media_type, "Docker-Content-Digest": calculate_digest(body)},
        )

    async def handle_blob(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return self._challenge(request)
        self.blob_requests += 1
        digest = request.match_info["digest"]
        if digest not in self.blobs:
            return web.json_response({"errors": [{"code": "BLOB_UNKNOWN"}]}, status=404)
        return web.Response(body=self.blobs[digest], content_type="application/octet-stream")

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/token", self.handle_token)
        app.router.add_get("/v2/{name:.+}/manifests/{reference}", self.handle_manifest)
        app.router.add_get("/v2/{name:.+}/blobs/{digest}", self.handle_blob)
        return app
