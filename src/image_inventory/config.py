"""Configuration for registry access, extraction and analysis runs."""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .models import DatabaseKind

CACHE_DIR_NAME = "image-inventory"
CACHE_DIR_ENV = "IMAGE_INVENTORY_CACHE_DIR"
CONCURRENCY_ENV = "IMAGE_INVENTORY_CONCURRENCY"

DEFAULT_CONCURRENCY = 5

DEFAULT_DATABASE_PATHS: dict[DatabaseKind, str] = {
    DatabaseKind.APK: "lib/apk/db/installed",
    DatabaseKind.DPKG: "var/lib/dpkg/status",
    DatabaseKind.RPM_SQLITE: "var/lib/rpm/rpmdb.sqlite",
    DatabaseKind.RPM_BDB: "var/lib/rpm/Packages",
    DatabaseKind.RPM_NDB: "var/lib/rpm/Packages.db",
}

DEFAULT_BINARY_DIRS = frozenset(
    {"bin", "sbin", "usr/bin", "usr/sbin", "usr/local/bin"}
)


class ProgressOrdering(Enum):
    """Delivery order of progress messages across images."""

    INTERLEAVED = "interleaved"
    ORDERED = "ordered"


def default_cache_dir() -> Path:
    """Resolve the cache root following the XDG user-cache convention."""
    override = os.getenv(CACHE_DIR_ENV)
    if override:
        return Path(override).expanduser()

    base = os.getenv("XDG_CACHE_HOME")
    if base:
        return Path(base).expanduser() / CACHE_DIR_NAME
    return Path.home() / ".cache" / CACHE_DIR_NAME


@dataclass(frozen=True)
class RegistryConfig:
    """Registry client configuration."""

    timeout: int = 300
    platform: str = "linux/amd64"
    chunk_size: int = 1024 * 1024
    insecure_registries: tuple[str, ...] = ()

    @property
    def os(self) -> str:
        return self.platform.split("/")[0]

    @property
    def architecture(self) -> str:
        parts = self.platform.split("/")
        return parts[1] if len(parts) > 1 else "amd64"

    @property
    def variant(self) -> str | None:
        parts = self.platform.split("/")
        return parts[2] if len(parts) > 2 else None


@dataclass(frozen=True)
class ExtractorConfig:
    """Which paths the layer extractor captures."""

    database_paths: dict[DatabaseKind, str] = field(
        default_factory=lambda: dict(DEFAULT_DATABASE_PATHS)
    )
    binary_dirs: frozenset[str] = DEFAULT_BINARY_DIRS


@dataclass
class AnalysisConfig:
    """Settings for one analysis run over a set of images."""

    concurrency: int = DEFAULT_CONCURRENCY
    use_cache: bool = True
    cache_dir: Path | None = None
    use_daemon: bool = False
    docker_host: str | None = None
    use_syft: bool = False
    fail_fast: bool = False
    progress_ordering: ProgressOrdering = ProgressOrdering.INTERLEAVED
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    extractor: ExtractorConfig = field(default_factory=ExtractorConfig)

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")

    @property
    def resolved_cache_dir(self) -> Path:
        return self.cache_dir if self.cache_dir is not None else default_cache_dir()

    @classmethod
    def from_env(cls, **overrides) -> "AnalysisConfig":
        """Build a config from the environment, then apply keyword overrides."""
        values: dict = {}
        concurrency = os.getenv(CONCURRENCY_ENV)
        if concurrency:
            try:
                values["concurrency"] = int(concurrency)
            except ValueError as e:
                raise ValueError(
                    f"{CONCURRENCY_ENV} must be an integer, got {concurrency!r}"
                ) from e
        docker_host = os.getenv("DOCKER_HOST")
        if docker_host:
            values["docker_host"] = docker_host
        values.update(overrides)
        return cls(**values)
