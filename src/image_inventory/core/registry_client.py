"""Registry API v2 async pull client."""

import asyncio
import json
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles
import aiohttp

from ..config import RegistryConfig
from ..exceptions import (
    AuthenticationError,
    BlobDownloadError,
    ManifestError,
    RegistryConnectionError,
    ResolutionError,
)
from ..reference import ImageReference
from ..tar.models import (
    DOCKER_LAYER_GZIP,
    INDEX_MEDIA_TYPES,
    MANIFEST_MEDIA_TYPES,
    Image,
    Layer,
)
from ..utils.digest import DigestWriter, calculate_digest, digest_hex, validate_digest
from .auth import Credentials, DockerKeychain, parse_challenge

logger = logging.getLogger(__name__)

ACCEPT_MANIFESTS = ", ".join(MANIFEST_MEDIA_TYPES + INDEX_MEDIA_TYPES)


class RemoteImage(Image):
    """Image pulled from a registry, with layer blobs spooled to a temp dir."""

    def __init__(
        self,
        manifest: bytes,
        media_type: str,
        config: bytes,
        blob_dir: Path,
    ) -> None:
        self._manifest = manifest
        self._media_type = media_type
        self._config = config
        self._digest = calculate_digest(manifest)
        self.blob_dir = blob_dir

        data = json.loads(manifest)
        self._layers: list[Layer] = []
        for index, descriptor in enumerate(data.get("layers", [])):
            path = blob_dir / digest_hex(descriptor["digest"])
            self._layers.append(
                Layer(
                    index=index,
                    digest=descriptor["digest"],
                    size=int(descriptor.get("size", 0)),
                    media_type=descriptor.get("mediaType", DOCKER_LAYER_GZIP),
                    opener=lambda path=path: open(path, "rb"),
                )
            )

    @property
    def digest(self) -> str:
        return self._digest

    @property
    def config_bytes(self) -> bytes:
        return self._config

    @property
    def manifest_bytes(self) -> bytes:
        return self._manifest

    @property
    def manifest_media_type(self) -> str:
        return self._media_type

    def layers(self) -> list[Layer]:
        return list(self._layers)

    def close(self) -> None:
        shutil.rmtree(self.blob_dir, ignore_errors=True)


def select_platform(index: Dict[str, Any], config: RegistryConfig) -> Dict[str, Any]:
    """Pick the manifest descriptor matching the configured platform.

    Raises:
        ManifestError: If no entry matches
    """
    candidates = []
    for descriptor in index.get("manifests", []):
        platform = descriptor.get("platform") or {}
        if platform.get("os") != config.os:
            continue
        if platform.get("architecture") != config.architecture:
            continue
        candidates.append(descriptor)

    if config.variant:
        exact = [d for d in candidates if d.get("platform", {}).get("variant") == config.variant]
        if exact:
            return exact[0]
    if candidates:
        return candidates[0]
    raise ManifestError(f"No manifest for platform {config.platform} in image index")


class RegistryClient:
    """Docker Registry API v2 async pull client with token authentication."""

    def __init__(
        self,
        reference: ImageReference,
        config: Optional[RegistryConfig] = None,
        keychain: Optional[DockerKeychain] = None,
        connector: Optional[aiohttp.BaseConnector] = None,
        concurrent_downloads: int = 3,
    ) -> None:
        """Initialize the registry client.

        Args:
            reference: Image reference whose repository is pulled
            config: Registry configuration (timeout, platform, chunk size)
            keychain: Credential source; defaults to the Docker CLI config
            connector: aiohttp connector for connection pooling
            concurrent_downloads: Number of concurrent layer downloads
        """
        self.reference = reference
        self.config = config or RegistryConfig()
        self.keychain = keychain or DockerKeychain()
        self.connector = connector
        self.concurrent_downloads = concurrent_downloads
        self.session: Optional[aiohttp.ClientSession] = None
        self._authorization: Optional[str] = None
        self._credentials: Optional[Credentials] = None
        self._credentials_loaded = False

        insecure = reference.is_local_registry or reference.registry in self.config.insecure_registries
        scheme = "http" if insecure else "https"
        self.registry_url = f"{scheme}://{reference.registry_host}"

    async def __aenter__(self) -> "RegistryClient":
        """Enter async context manager."""
        if not self.session:
            self.session = aiohttp.ClientSession(
                connector=self.connector,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self.session and not self.session.closed:
            await self.session.close()

    async def _get_credentials(self) -> Optional[Credentials]:
        if not self._credentials_loaded:
            self._credentials = await self.keychain.resolve(self.reference.registry)
            self._credentials_loaded = True
        return self._credentials

    async def _authenticate(self, header: str) -> None:
        """Answer a 401 challenge by setting the Authorization header to use."""
        challenge = parse_challenge(header)
        credentials = await self._get_credentials()

        if challenge.scheme == "basic":
            if credentials is None or not credentials.username:
                raise AuthenticationError(
                    f"{self.reference.registry} requires credentials and none were found"
                )
            self._authorization = credentials.basic_header
            return

        if challenge.scheme != "bearer" or not challenge.realm:
            raise AuthenticationError(f"Unsupported auth challenge: {header}")

        scope = challenge.params.get("scope") or f"repository:{self.reference.repository}:pull"
        service = challenge.params.get("service", "")
        try:
            if credentials is not None and credentials.identity_token:
                form = {
                    "grant_type": "refresh_token",
                    "refresh_token": credentials.identity_token,
                    "service": service,
                    "scope": scope,
                    "client_id": "image-inventory",
                }
                request = self.session.post(challenge.realm, data=form)
            else:
                headers = {}
                if credentials is not None and credentials.username:
                    headers["Authorization"] = credentials.basic_header
                params = {"scope": scope}
                if service:
                    params["service"] = service
                request = self.session.get(challenge.realm, params=params, headers=headers)

            async with request as resp:
                if resp.status in (401, 403):
                    raise AuthenticationError(
                        f"Token request to {challenge.realm} was rejected ({resp.status})"
                    )
                resp.raise_for_status()
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise AuthenticationError(f"Failed to obtain registry token: {e}") from e
        except asyncio.TimeoutError as e:
            raise AuthenticationError(f"Timed out requesting a token from {challenge.realm}") from e
        except json.JSONDecodeError as e:
            raise AuthenticationError(f"Token response from {challenge.realm} is not JSON: {e}") from e

        if not isinstance(data, dict):
            raise AuthenticationError(f"Token response from {challenge.realm} is not an object")
        token = data.get("token") or data.get("access_token")
        if not token:
            raise AuthenticationError(f"Token response from {challenge.realm} carried no token")
        self._authorization = f"Bearer {token}"

    async def _send(self, url: str, headers: Optional[Dict[str, str]] = None) -> aiohttp.ClientResponse:
        """GET ``url``, answering one auth challenge if the registry asks.

        The caller owns the returned response and must release it.
        """
        headers = dict(headers or {})
        for attempt in range(2):
            if self._authorization:
                headers["Authorization"] = self._authorization
            try:
                resp = await self.session.get(url, headers=headers)
            except aiohttp.ClientError as e:
                raise RegistryConnectionError(
                    f"Cannot connect to registry {self.registry_url}: {e}"
                ) from e
            except asyncio.TimeoutError as e:
                raise RegistryConnectionError(f"Timed out talking to {self.registry_url}") from e

            if resp.status != 401:
                return resp

            challenge = resp.headers.get("WWW-Authenticate", "")
            resp.release()
            if attempt == 1 or not challenge:
                break
            await self._authenticate(challenge)

        raise AuthenticationError(f"Unauthorized: {url}")

    async def get_manifest(self, reference: str) -> tuple[bytes, str]:
        """Retrieve a manifest or image index.

        Args:
            reference: Tag or digest reference

        Returns:
            Raw manifest bytes and their media type

        Raises:
            ManifestError: If retrieval fails
        """
        url = f"{self.registry_url}/v2/{self.reference.repository}/manifests/{reference}"
        resp = await self._send(url, headers={"Accept": ACCEPT_MANIFESTS})
        try:
            if resp.status == 404:
                raise ManifestError(f"Manifest not found: {self.reference.name}:{reference}")
            resp.raise_for_status()
            body = await resp.read()
            media_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        except aiohttp.ClientError as e:
            raise ManifestError(f"Failed to get manifest: {e}") from e
        except asyncio.TimeoutError as e:
            raise ManifestError(f"Timed out reading manifest {self.reference.name}:{reference}") from e
        finally:
            resp.release()

        if media_type not in MANIFEST_MEDIA_TYPES + INDEX_MEDIA_TYPES:
            try:
                media_type = json.loads(body).get("mediaType", media_type)
            except (json.JSONDecodeError, AttributeError) as e:
                raise ManifestError(f"Manifest is not valid JSON: {e}") from e

        if validate_digest(reference) and calculate_digest(body) != reference:
            raise ManifestError(f"Manifest digest mismatch for {reference}")
        return body, media_type

    async def resolve_manifest(self) -> tuple[bytes, str, Dict[str, Any]]:
        """Fetch the image manifest, descending through an index by platform.

        Returns:
            Raw manifest bytes, media type and the decoded manifest

        Raises:
            ManifestError: If the manifest is missing, malformed or unsupported
        """
        body, media_type = await self.get_manifest(self.reference.reference)

        if media_type in INDEX_MEDIA_TYPES:
            try:
                index = json.loads(body)
            except json.JSONDecodeError as e:
                raise ManifestError(f"Image index is not valid JSON: {e}") from e
            descriptor = select_platform(index, self.config)
            body, media_type = await self.get_manifest(descriptor["digest"])

        if media_type not in MANIFEST_MEDIA_TYPES:
            raise ManifestError(f"Unsupported manifest media type: {media_type or 'unknown'}")

        try:
            manifest = json.loads(body)
            manifest["config"]["digest"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise ManifestError(f"Malformed manifest: {e}") from e
        return body, media_type, manifest

    async def fetch_blob(self, digest: str) -> bytes:
        """Download a small blob (the image config) into memory.

        Raises:
            BlobDownloadError: If download fails or the digest does not match
        """
        url = f"{self.registry_url}/v2/{self.reference.repository}/blobs/{digest}"
        resp = await self._send(url)
        try:
            resp.raise_for_status()
            data = await resp.read()
        except aiohttp.ClientError as e:
            raise BlobDownloadError(f"Failed to download blob {digest[:19]}: {e}") from e
        except asyncio.TimeoutError as e:
            raise BlobDownloadError(f"Timed out downloading blob {digest[:19]}") from e
        finally:
            resp.release()

        if calculate_digest(data) != digest:
            raise BlobDownloadError(f"Digest mismatch for blob {digest}")
        return data

    async def download_blob(
        self,
        digest: str,
        destination: Path,
        progress_callback: Optional[Callable] = None,
    ) -> int:
        """Stream a blob to ``destination`` in chunks, verifying its digest.

        Args:
            digest: Blob digest
            destination: File to write
            progress_callback: Optional callback(downloaded, total, description)

        Returns:
            Number of bytes written

        Raises:
            BlobDownloadError: If download fails or the digest does not match
        """
        url = f"{self.registry_url}/v2/{self.reference.repository}/blobs/{digest}"
        if not validate_digest(digest):
            raise BlobDownloadError(f"Unsupported or malformed blob digest: {digest}")
        hasher = DigestWriter(digest.split(":", 1)[0])
        resp = await self._send(url)
        try:
            resp.raise_for_status()
            total = resp.content_length or 0
            async with aiofiles.open(destination, "wb") as f:
                async for chunk in resp.content.iter_chunked(self.config.chunk_size):
                    hasher.update(chunk)
                    await f.write(chunk)
                    if progress_callback:
                        if asyncio.iscoroutinefunction(progress_callback):
                            await progress_callback(hasher.size, total, digest[:19])
                        else:
                            progress_callback(hasher.size, total, digest[:19])
        except aiohttp.ClientError as e:
            raise BlobDownloadError(f"Failed to download blob {digest[:19]}: {e}") from e
        except asyncio.TimeoutError as e:
            raise BlobDownloadError(f"Timed out downloading blob {digest[:19]}") from e
        except OSError as e:
            raise BlobDownloadError(f"Cannot write blob {digest[:19]}: {e}") from e
        finally:
            resp.release()

        if hasher.digest != digest:
            raise BlobDownloadError(f"Digest mismatch for blob {digest}")
        return hasher.size

    async def pull(self, progress_callback: Optional[Callable] = None) -> RemoteImage:
        """Pull manifest, config and all layers of the referenced image.

        Layers are spooled to a temporary directory owned by the returned
        image and deleted when it is closed.

        Raises:
            ResolutionError: If any part of the image cannot be fetched
        """
        body, media_type, manifest = await self.resolve_manifest()
        config_digest = manifest["config"]["digest"]
        layers: List[Dict[str, Any]] = manifest.get("layers", [])

        config = await self.fetch_blob(config_digest)

        blob_dir = Path(tempfile.mkdtemp(prefix="image-inventory-"))
        semaphore = asyncio.Semaphore(self.concurrent_downloads)

        async def download_layer(descriptor: Dict[str, Any]) -> None:
            """Download a single layer with concurrency control."""
            async with semaphore:
                destination = blob_dir / digest_hex(descriptor["digest"])
                await self.download_blob(descriptor["digest"], destination, progress_callback)

        unique = {d["digest"]: d for d in layers}
        outcomes = await asyncio.gather(
            *(download_layer(d) for d in unique.values()), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                shutil.rmtree(blob_dir, ignore_errors=True)
                if isinstance(outcome, (ResolutionError, OSError)):
                    raise outcome
                raise BlobDownloadError(f"Layer download failed: {outcome}") from outcome

        return RemoteImage(body, media_type, config, blob_dir)

