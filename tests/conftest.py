"""Test configuration and fixtures."""

import logging

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from image_inventory.cache import ArtifactCache
from image_inventory.config import AnalysisConfig
from image_inventory.core.auth import DockerKeychain
from image_inventory.core.resolver import ImageResolver
from tests.helpers import FakeRegistry


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Keep tests away from the real Docker config and user cache."""
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path / "docker-config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "xdg-cache"))
    monkeypatch.delenv("IMAGE_INVENTORY_CACHE_DIR", raising=False)
    monkeypatch.delenv("IMAGE_INVENTORY_CONCURRENCY", raising=False)
    monkeypatch.delenv("DOCKER_HOST", raising=False)


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo the handler the CLI installs on the package logger."""
    logger = logging.getLogger("image_inventory")
    yield
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def cache(cache_dir):
    return ArtifactCache(cache_dir)


@pytest.fixture
def keychain(tmp_path):
    return DockerKeychain(tmp_path / "docker-config" / "config.json")


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest_asyncio.fixture
async def registry_server(fake_registry):
    """Serve ``fake_registry`` on 127.0.0.1 and yield its host:port."""
    server = TestServer(fake_registry.make_app(), host="127.0.0.1")
    await server.start_server()
    try:
        yield f"127.0.0.1:{server.port}"
    finally:
        await server.close()


@pytest.fixture
def analysis_config(cache_dir):
    return AnalysisConfig(concurrency=2, cache_dir=cache_dir)


@pytest.fixture
def resolver(analysis_config, cache, keychain):
    return ImageResolver(analysis_config, cache, keychain)
