"""Tests for the Docker daemon export client."""

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from image_inventory.core.daemon import DaemonClient
from image_inventory.exceptions import DaemonError
from tests.helpers import build_image_tarball, build_layer, file


@pytest_asyncio.fixture
async def daemon_host(tmp_path):
    """Serve a fake Engine API knowing one image, ``alpine:3.20``."""
    tarball = tmp_path / "saved.tar"
    build_image_tarball(tarball, [build_layer([file("lib/apk/db/installed", b"P:busybox\n")])], "alpine:3.20")
    images = {"alpine:3.20": tarball.read_bytes(), "broken:1": b"not a tarball"}

    async def inspect(request):
        if request.match_info["name"] not in images:
            return web.json_response({"message": "No such image"}, status=404)
        return web.json_response({"Id": "sha256:abc"})

    async def get(request):
        name = request.match_info["name"]
        if name not in images:
            return web.json_response({"message": "No such image"}, status=404)
        return web.Response(body=images[name], content_type="application/x-tar")

    app = web.Application()
    app.router.add_get("/images/{name}/json", inspect)
    app.router.add_get("/images/{name}/get", get)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    try:
        yield f"tcp://127.0.0.1:{server.port}"
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_export_image(daemon_host):
    async with DaemonClient(daemon_host) as daemon:
        assert daemon.available
        assert await daemon.has_image("alpine:3.20")
        image = await daemon.export_image("alpine:3.20")
    try:
        assert image.repo_tags == ["alpine:3.20"]
        assert len(image.layers()) == 1
        workdir = image.tar_path.parent
    finally:
        image.close()
    assert not workdir.exists()


@pytest.mark.asyncio
async def test_unknown_image(daemon_host):
    async with DaemonClient(daemon_host) as daemon:
        assert not await daemon.has_image("missing:1")
        with pytest.raises(DaemonError, match="not found"):
            await daemon.export_image("missing:1")


@pytest.mark.asyncio
async def test_unreadable_export(daemon_host):
    async with DaemonClient(daemon_host) as daemon:
        with pytest.raises(DaemonError, match="unreadable"):
            await daemon.export_image("broken:1")


@pytest.mark.asyncio
async def test_unreachable_daemon():
    async with DaemonClient("tcp://127.0.0.1:1") as daemon:
        with pytest.raises(DaemonError, match="unreachable"):
            await daemon.has_image("alpine:3.20")


def test_missing_socket_is_unavailable(tmp_path):
    assert not DaemonClient(f"unix://{tmp_path / 'docker.sock'}").available


def test_unsupported_host():
    with pytest.raises(DaemonError):
        DaemonClient("ssh://user@host")
