"""Registry credentials from the local Docker keychain, and auth challenges."""

import asyncio
import base64
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..exceptions import AuthenticationError

logger = logging.getLogger(__name__)

DOCKER_HUB_ALIASES = (
    "docker.io",
    "index.docker.io",
    "registry-1.docker.io",
    "https://index.docker.io/v1/",
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class Credentials:
    """Username/password pair, or an identity (refresh) token."""

    username: str = ""
    password: str = ""
    identity_token: str = ""

    @property
    def basic_header(self) -> str:
        raw = f"{self.username}:{self.password}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")


@dataclass(frozen=True)
class Challenge:
    """Parsed ``WWW-Authenticate`` header."""

    scheme: str
    params: dict[str, str]

    @property
    def realm(self) -> str:
        return self.params.get("realm", "")


def parse_challenge(header: str) -> Challenge:
    """Parse ``Bearer realm="...",service="...",scope="..."``.

    Raises:
        AuthenticationError: If the header carries no scheme
    """
    header = header.strip()
    if not header:
        raise AuthenticationError("Empty WWW-Authenticate header")
    scheme, _, rest = header.partition(" ")
    params = {key.lower(): value for key, value in _CHALLENGE_PARAM.findall(rest)}
    return Challenge(scheme=scheme.lower(), params=params)


def _config_path() -> Path:
    config_dir = os.getenv("DOCKER_CONFIG")
    if config_dir:
        return Path(config_dir).expanduser() / "config.json"
    return Path.home() / ".docker" / "config.json"


def _registry_keys(registry: str) -> list[str]:
    if registry in DOCKER_HUB_ALIASES:
        return list(DOCKER_HUB_ALIASES)
    return [registry, f"https://{registry}", f"http://{registry}"]


class DockerKeychain:
    """Read-only view of the Docker CLI credential store.

    Looks at ``credHelpers`` first, then inline ``auths`` entries, then the
    global ``credsStore``. Anything it cannot find means anonymous access.
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        self.config_path = config_path or _config_path()

    def _load_config(self) -> dict[str, Any]:
        try:
            with open(self.config_path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable Docker config {self.config_path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    async def resolve(self, registry: str) -> Optional[Credentials]:
        """Find credentials for a registry host.

        Args:
            registry: Registry host as written in the reference, e.g. "ghcr.io"

        Returns:
            Credentials, or None for anonymous access
        """
        config = self._load_config()
        keys = _registry_keys(registry)

        helpers = config.get("credHelpers") or {}
        for key in keys:
            if key in helpers:
                return await self._from_helper(helpers[key], key)

        auths = config.get("auths") or {}
        for key in keys:
            entry = auths.get(key)
            if entry:
                creds = self._from_auth_entry(entry)
                if creds:
                    return creds

        store = config.get("credsStore")
        if store:
            for key in keys:
                creds = await self._from_helper(store, key)
                if creds:
                    return creds
        return None

    @staticmethod
    def _from_auth_entry(entry: dict[str, Any]) -> Optional[Credentials]:
        if entry.get("identitytoken"):
            return Credentials(
                username=entry.get("username", ""), identity_token=entry["identitytoken"]
            )
        if entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode("utf-8")
            except (ValueError, UnicodeDecodeError):
                logger.warning("Ignoring malformed auth entry in Docker config")
                return None
            username, _, password = decoded.partition(":")
            return Credentials(username=username, password=password)
        if entry.get("username"):
            return Credentials(username=entry["username"], password=entry.get("password", ""))
        return None

    async def _from_helper(self, helper: str, server: str) -> Optional[Credentials]:
        program = f"docker-credential-{helper}"
        try:
            proc = await asyncio.create_subprocess_exec(
                program,
                "get",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.debug(f"Credential helper {program} unavailable: {e}")
            return None

        stdout, stderr = await proc.communicate(server.encode("utf-8"))
        if proc.returncode != 0:
            # Helpers exit non-zero with "credentials not found" for unknown servers
            logger.debug(f"{program} returned {proc.returncode}: {stderr.decode(errors='replace').strip()}")
            return None

        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            logger.warning(f"{program} produced invalid JSON")
            return None
        if not isinstance(data, dict):
            logger.warning(f"{program} produced JSON that is not an object")
            return None

        username = data.get("Username", "")
        secret = data.get("Secret", "")
        if username == "<token>":
            return Credentials(identity_token=secret)
        return Credentials(username=username, password=secret)
