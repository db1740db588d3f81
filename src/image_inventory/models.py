"""Data models shared across the inventory engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class PackageFormat(Enum):
    """Where a package record came from."""

    APK = "apk"
    DEB = "deb"
    RPM = "rpm"
    BINARY = "binary"
    OTHER = "other"


class DatabaseKind(Enum):
    """Package database files the extractor knows how to capture."""

    APK = "apk"
    DPKG = "dpkg"
    RPM_SQLITE = "rpm-sqlite"
    RPM_BDB = "rpm-bdb"
    RPM_NDB = "rpm-ndb"

    @property
    def package_format(self) -> PackageFormat:
        match self:
            case DatabaseKind.APK:
                return PackageFormat.APK
            case DatabaseKind.DPKG:
                return PackageFormat.DEB
            case DatabaseKind.RPM_SQLITE | DatabaseKind.RPM_BDB | DatabaseKind.RPM_NDB:
                return PackageFormat.RPM

    @property
    def is_rpm(self) -> bool:
        return self.package_format is PackageFormat.RPM


class ImageSource(Enum):
    """How the image analysed for a result was obtained."""

    CACHE = "cache"
    REMOTE = "remote"
    CACHED = "cached"
    DAEMON = "daemon"
    SBOM = "sbom"


@dataclass(frozen=True)
class PackageRecord:
    """A single installed package, normalized to kilobytes."""

    name: str
    version: str
    size_kb: int
    format: PackageFormat

    @property
    def size_mb(self) -> float:
        return self.size_kb / 1024.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "size_kb": self.size_kb,
            "type": self.format.value,
        }


@dataclass
class CacheEntry:
    """Side-car metadata stored next to a cached image tarball."""

    image_ref: str
    digest: str
    cached_at: datetime
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "image_ref": self.image_ref,
            "digest": self.digest,
            "cached_at": self.cached_at.isoformat(),
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        """Build an entry from decoded JSON.

        Raises:
            KeyError, TypeError, ValueError: If a field is missing or malformed
        """
        cached_at = datetime.fromisoformat(str(data["cached_at"]).replace("Z", "+00:00"))
        size_bytes = data["size_bytes"]
        if not isinstance(size_bytes, int) or isinstance(size_bytes, bool):
            raise TypeError("size_bytes must be an integer")
        return cls(
            image_ref=str(data["image_ref"]),
            digest=str(data["digest"]),
            cached_at=cached_at,
            size_bytes=size_bytes,
        )


@dataclass
class AnalysisResult:
    """Per-image aggregate produced by the orchestrator."""

    image: str
    compressed_kb: int = 0
    installed_kb: int = 0
    records: list[PackageRecord] = field(default_factory=list)
    packages: dict[str, PackageRecord] = field(default_factory=dict)
    source: ImageSource | None = None
    digest: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def package_count(self) -> int:
        return len(self.records)

    @property
    def compressed_mb(self) -> float:
        return self.compressed_kb / 1024.0

    @property
    def installed_mb(self) -> float:
        return self.installed_kb / 1024.0

    @classmethod
    def from_records(
        cls,
        image: str,
        records: list[PackageRecord],
        compressed_bytes: int = 0,
        source: ImageSource | None = None,
        digest: str = "",
    ) -> "AnalysisResult":
        """Aggregate records.

        Records without a size are left out; among the rest, a later record
        with the same name replaces an earlier one.
        """
        packages: dict[str, PackageRecord] = {}
        for record in records:
            if record.size_kb > 0:
                packages[record.name] = record

        ordered = sorted(packages.values(), key=lambda r: (-r.size_kb, r.name))
        return cls(
            image=image,
            compressed_kb=compressed_bytes // 1024,
            installed_kb=sum(r.size_kb for r in ordered),
            records=ordered,
            packages=packages,
            source=source,
            digest=digest,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "source": self.source.value if self.source else None,
            "digest": self.digest,
            "compressed_kb": self.compressed_kb,
            "installed_kb": self.installed_kb,
            "package_count": self.package_count,
            "packages": [r.to_dict() for r in self.records],
            "error": self.error,
        }
