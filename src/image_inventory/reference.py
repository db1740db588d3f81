"""Image reference parsing."""

import re
from dataclasses import dataclass

from .exceptions import InvalidReferenceError
from .utils.digest import validate_digest

DOCKER_HUB = "docker.io"
DOCKER_HUB_REGISTRY = "registry-1.docker.io"
DEFAULT_TAG = "latest"

_COMPONENT_PATTERN = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$")
_LOCAL_HOSTS = ("localhost", "127.0.0.1", "[::1]")


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference.

    ``raw`` is kept exactly as the caller supplied it; the cache keys on it.
    """

    raw: str
    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @property
    def reference(self) -> str:
        """Tag or digest to request from the registry (digest wins)."""
        return self.digest or self.tag or DEFAULT_TAG

    @property
    def registry_host(self) -> str:
        """Host to contact for the registry API."""
        if self.registry == DOCKER_HUB:
            return DOCKER_HUB_REGISTRY
        return self.registry

    @property
    def is_local_registry(self) -> bool:
        if self.registry.startswith("["):
            host = self.registry[: self.registry.find("]") + 1]
        else:
            host = self.registry.split(":", 1)[0]
        return host in _LOCAL_HOSTS

    @property
    def name(self) -> str:
        """Fully qualified repository name without tag or digest."""
        return f"{self.registry}/{self.repository}"

    def __str__(self) -> str:
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag or DEFAULT_TAG}"


def _split_registry(name: str) -> tuple[str, str]:
    """Split off a registry host if the first component looks like one."""
    if "/" not in name:
        return DOCKER_HUB, name

    first, rest = name.split("/", 1)
    if "." in first or ":" in first or first == "localhost" or first.startswith("["):
        if first in ("index.docker.io", DOCKER_HUB_REGISTRY):
            first = DOCKER_HUB
        return first, rest
    return DOCKER_HUB, name


def parse_reference(raw: str) -> ImageReference:
    """Parse ``[registry/]repository[:tag][@digest]`` into its components.

    Args:
        raw: Reference as typed by the user, e.g. "alpine",
            "ghcr.io/org/app:v1", "localhost:5000/app@sha256:..."

    Returns:
        ImageReference with Docker Hub defaults applied

    Raises:
        InvalidReferenceError: If the reference is malformed

    Examples:
        ref = parse_reference("alpine")
        # ImageReference(registry="docker.io", repository="library/alpine", tag="latest")
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidReferenceError("Empty image reference")
    if raw != raw.strip() or any(c.isspace() for c in raw):
        raise InvalidReferenceError(f"Image reference contains whitespace: {raw!r}")

    remainder = raw
    digest: str | None = None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not validate_digest(digest):
            raise InvalidReferenceError(f"Invalid digest in reference: {raw}")

    tag: str | None = None
    # Split only on a ':' after the last '/' so registry ports survive
    last_slash = remainder.rfind("/")
    colon = remainder.rfind(":")
    if colon > last_slash:
        remainder, tag = remainder[:colon], remainder[colon + 1 :]
        if not _TAG_PATTERN.match(tag):
            raise InvalidReferenceError(f"Invalid tag in reference: {raw}")

    registry, repository = _split_registry(remainder)
    if not repository:
        raise InvalidReferenceError(f"Missing repository in reference: {raw}")

    components = repository.split("/")
    for component in components:
        if not _COMPONENT_PATTERN.match(component):
            raise InvalidReferenceError(
                f"Invalid repository name component {component!r} in reference: {raw}"
            )

    if registry == DOCKER_HUB and len(components) == 1:
        repository = f"library/{repository}"

    if tag is None and digest is None:
        tag = DEFAULT_TAG

    return ImageReference(
        raw=raw, registry=registry, repository=repository, tag=tag, digest=digest
    )
