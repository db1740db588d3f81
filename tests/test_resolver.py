"""Tests for image resolution across cache, daemon and registry."""

import dataclasses

import pytest

from image_inventory.cache import ArtifactCache
from image_inventory.config import AnalysisConfig
from image_inventory.core.resolver import ImageResolver
from image_inventory.exceptions import DaemonError, ManifestError
from image_inventory.models import ImageSource
from image_inventory.reference import parse_reference
from image_inventory.tar.reader import TarballImage
from tests.helpers import build_image_tarball, build_layer, file


class FakeDaemon:
    """Stands in for DaemonClient with a fixed set of exportable images."""

    def __init__(self, images=None, error=None):
        self.images = images or {}
        self.error = error
        self.exports = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    @property
    def available(self):
        return True

    async def has_image(self, name):
        if self.error:
            raise self.error
        return name in self.images

    async def export_image(self, name):
        self.exports += 1
        return TarballImage(self.images[name])


def _blobs():
    return [build_layer([file("lib/apk/db/installed", b"P:busybox\nV:1\nI:4096\n")])]


@pytest.mark.asyncio
async def test_registry_fetch_is_stored_then_served_from_cache(resolver, fake_registry, registry_server, cache):
    """The first resolution stores the pull, the second loads it."""
    fake_registry.add_image("library/busybox", "1.37", _blobs())
    reference = parse_reference(f"{registry_server}/library/busybox:1.37")

    first = await resolver.resolve(reference)
    first.close()
    assert first.source is ImageSource.CACHED
    assert first.compressed_size == len(_blobs()[0])
    assert [e.image_ref for e in cache.list_entries()] == [reference.raw]

    second = await resolver.resolve(reference)
    second.close()
    assert second.source is ImageSource.CACHE
    assert second.compressed_size == 0
    assert second.digest == first.digest
    assert fake_registry.manifest_requests == 1


@pytest.mark.asyncio
async def test_cache_disabled(fake_registry, registry_server, cache, keychain, cache_dir):
    fake_registry.add_image("app", "1", _blobs())
    config = AnalysisConfig(use_cache=False, cache_dir=cache_dir)
    resolved = await ImageResolver(config, cache, keychain).resolve(parse_reference(f"{registry_server}/app:1"))
    resolved.close()
    assert resolved.source is ImageSource.REMOTE
    assert cache.list_entries() == []


@pytest.mark.asyncio
async def test_cache_write_failure_falls_back_to_remote(fake_registry, registry_server, keychain, tmp_path):
    """A cache that cannot be written still yields the pulled image."""
    fake_registry.add_image("app", "1", _blobs())
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    cache = ArtifactCache(blocker / "cache")
    config = AnalysisConfig(cache_dir=cache.root)

    resolved = await ImageResolver(config, cache, keychain).resolve(parse_reference(f"{registry_server}/app:1"))
    try:
        assert resolved.source is ImageSource.REMOTE
        assert len(resolved.image.layers()) == 1
    finally:
        resolved.close()


@pytest.mark.asyncio
async def test_daemon_images_are_not_cached(tmp_path, cache, keychain, cache_dir):
    tarball = tmp_path / "saved.tar"
    build_image_tarball(tarball, _blobs(), "local/app:dev")
    daemon = FakeDaemon({"local/app:dev": tarball})
    config = AnalysisConfig(use_daemon=True, cache_dir=cache_dir)

    resolver = ImageResolver(config, cache, keychain, daemon_factory=lambda: daemon)
    resolved = await resolver.resolve(parse_reference("local/app:dev"))
    resolved.close()
    assert resolved.source is ImageSource.DAEMON
    assert resolved.compressed_size == 0
    assert daemon.exports == 1
    assert cache.list_entries() == []


@pytest.mark.asyncio
async def test_daemon_failure_falls_back_to_registry(fake_registry, registry_server, cache, keychain, cache_dir):
    fake_registry.add_image("app", "1", _blobs())
    config = AnalysisConfig(use_daemon=True, cache_dir=cache_dir)
    daemon = FakeDaemon(error=DaemonError("connection refused"))

    resolver = ImageResolver(config, cache, keychain, daemon_factory=lambda: daemon)
    resolved = await resolver.resolve(parse_reference(f"{registry_server}/app:1"))
    resolved.close()
    assert resolved.source is ImageSource.CACHED


@pytest.mark.asyncio
async def test_image_missing_from_daemon_is_pulled(fake_registry, registry_server, cache, keychain, cache_dir):
    fake_registry.add_image("app", "1", _blobs())
    config = AnalysisConfig(use_daemon=True, use_cache=False, cache_dir=cache_dir)
    resolver = ImageResolver(config, cache, keychain, daemon_factory=lambda: FakeDaemon())
    resolved = await resolver.resolve(parse_reference(f"{registry_server}/app:1"))
    resolved.close()
    assert resolved.source is ImageSource.REMOTE


@pytest.mark.asyncio
async def test_resolution_failure_propagates(resolver, registry_server):
    with pytest.raises(ManifestError):
        await resolver.resolve(parse_reference(f"{registry_server}/missing:1"))


@pytest.mark.asyncio
async def test_manifest_size(resolver, fake_registry, registry_server):
    blobs = [build_layer([file("a", b"1" * 5000)]), build_layer([file("b", b"2")])]
    digest = fake_registry.add_image("sized", "1", blobs)

    size, manifest_digest = await resolver.manifest_size(parse_reference(f"{registry_server}/sized:1"))
    assert size == sum(len(b) for b in blobs)
    assert manifest_digest == digest
    assert fake_registry.blob_requests == 0


@pytest.mark.asyncio
async def test_platform_override(fake_registry, registry_server, cache, keychain, analysis_config):
    amd = fake_registry.add_image("multi", "amd", [build_layer([file("x", b"amd")])])
    arm = fake_registry.add_image("multi", "arm", [build_layer([file("x", b"arm")])])
    fake_registry.add_index("multi", "latest", {"linux/amd64": amd, "linux/arm64": arm})

    registry = dataclasses.replace(analysis_config.registry, platform="linux/arm64")
    config = dataclasses.replace(analysis_config, registry=registry, use_cache=False)
    resolved = await ImageResolver(config, cache, keychain).resolve(parse_reference(f"{registry_server}/multi"))
    resolved.close()
    assert resolved.digest == arm
