"""Export images from the local Docker daemon over its HTTP API."""

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import aiofiles
import aiohttp

from ..exceptions import DaemonError, TarReadError
from ..tar.reader import TarballImage, open_tarball_image

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"


class DaemonClient:
    """Minimal Docker Engine API client: image lookup and ``docker save``."""

    def __init__(self, docker_host: Optional[str] = None, timeout: int = 600) -> None:
        """Initialize the daemon client.

        Args:
            docker_host: ``unix://`` socket or ``tcp://host:port``; defaults to
                the standard socket path
            timeout: Request timeout in seconds
        """
        self.docker_host = docker_host or DEFAULT_DOCKER_HOST
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

        if self.docker_host.startswith("unix://"):
            self.socket_path: Optional[str] = self.docker_host[len("unix://") :]
            self.base_url = "http://docker"
        elif self.docker_host.startswith("tcp://"):
            self.socket_path = None
            self.base_url = "http://" + self.docker_host[len("tcp://") :]
        else:
            raise DaemonError(f"Unsupported DOCKER_HOST: {self.docker_host}")

    async def __aenter__(self) -> "DaemonClient":
        if not self.session:
            connector = (
                aiohttp.UnixConnector(path=self.socket_path) if self.socket_path else None
            )
            self.session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    @property
    def available(self) -> bool:
        """Whether a daemon endpoint plausibly exists (socket file present)."""
        return self.socket_path is None or Path(self.socket_path).exists()

    async def has_image(self, name: str) -> bool:
        """Check whether the daemon knows ``name``.

        Raises:
            DaemonError: If the daemon cannot be reached
        """
        url = f"{self.base_url}/images/{quote(name, safe='')}/json"
        try:
            async with self.session.get(url) as resp:
                if resp.status == 404:
                    return False
                resp.raise_for_status()
                return True
        except aiohttp.ClientError as e:
            raise DaemonError(f"Docker daemon unreachable at {self.docker_host}: {e}") from e
        except asyncio.TimeoutError as e:
            raise DaemonError(f"Timed out talking to Docker daemon at {self.docker_host}") from e

    async def export_image(self, name: str) -> TarballImage:
        """Stream ``docker save`` output to a temp file and open it.

        The temporary directory is deleted when the returned image is closed.

        Raises:
            DaemonError: If the export fails or produces an unreadable archive
        """
        work_dir = Path(tempfile.mkdtemp(prefix="image-inventory-daemon-"))
        tar_path = work_dir / "image.tar"
        url = f"{self.base_url}/images/{quote(name, safe='')}/get"
        try:
            async with self.session.get(url) as resp:
                if resp.status == 404:
                    raise DaemonError(f"Image {name} not found in Docker daemon")
                resp.raise_for_status()
                async with aiofiles.open(tar_path, "wb") as f:
                    async for chunk in resp.content.iter_chunked(1024 * 1024):
                        await f.write(chunk)
            return await open_tarball_image(tar_path, cleanup_dir=work_dir)
        except aiohttp.ClientError as e:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise DaemonError(f"Failed to export {name} from Docker daemon: {e}") from e
        except asyncio.TimeoutError as e:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise DaemonError(f"Timed out exporting {name} from Docker daemon") from e
        except TarReadError as e:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise DaemonError(f"Docker daemon produced an unreadable archive for {name}: {e}") from e
        except OSError as e:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise DaemonError(f"Cannot write export of {name}: {e}") from e
        except DaemonError:
            shutil.rmtree(work_dir, ignore_errors=True)
            raise
