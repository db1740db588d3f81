"""Walk image layers and capture the final state of package databases.

Layers are applied in ascending order. Within a layer, deletions (whiteout
files and opaque-directory markers) act on what lower layers produced, and
only then are the layer's own files applied. This is how overlay
filesystems materialize an image, so a path's captured content always comes
from the highest layer that wrote it, unless a higher layer deleted it.
"""

import logging
import posixpath
import tarfile
import zlib
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from .config import ExtractorConfig
from .models import DatabaseKind
from .progress import ProgressCallback, null_progress
from .tar.models import Layer

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"

# Preference when several RPM databases survive in the same layer
RPM_PREFERENCE = (DatabaseKind.RPM_SQLITE, DatabaseKind.RPM_NDB, DatabaseKind.RPM_BDB)

_STREAM_ERRORS = (tarfile.TarError, OSError, EOFError, zlib.error)


def normalize_path(name: str) -> str:
    """Canonical relative form of a tar member name ("./usr//bin/" -> "usr/bin")."""
    path = posixpath.normpath("/" + name)
    return path.lstrip("/")


def _covered(path: str, prefixes: Iterable[str]) -> bool:
    for prefix in prefixes:
        if prefix == "" or path == prefix or path.startswith(prefix + "/"):
            return True
    return False


@dataclass(frozen=True)
class BinaryCandidate:
    """An executable that may carry Go build information."""

    path: str
    size: int
    layer_index: int

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)


@dataclass
class ExtractionResult:
    databases: dict[DatabaseKind, bytes] = field(default_factory=dict)
    database_layers: dict[DatabaseKind, int] = field(default_factory=dict)
    candidates: dict[str, BinaryCandidate] = field(default_factory=dict)
    layer_count: int = 0
    skipped_layers: list[int] = field(default_factory=list)

    def rpm_database(self) -> Optional[tuple[DatabaseKind, bytes]]:
        """The RPM database written by the highest layer, if any survived."""
        found = [kind for kind in self.databases if kind.is_rpm]
        if not found:
            return None
        kind = max(found, key=lambda k: (self.database_layers[k], -RPM_PREFERENCE.index(k)))
        return kind, self.databases[kind]


@dataclass
class _LayerChanges:
    deleted: set[str] = field(default_factory=set)
    opaque: set[str] = field(default_factory=set)
    writes: dict[DatabaseKind, bytes] = field(default_factory=dict)
    cleared: set[DatabaseKind] = field(default_factory=set)
    added: dict[str, BinaryCandidate] = field(default_factory=dict)
    replaced: set[str] = field(default_factory=set)


class LayerExtractor:
    """Captures package databases and binary candidates from ordered layers."""

    def __init__(self, config: Optional[ExtractorConfig] = None) -> None:
        self.config = config or ExtractorConfig()
        self._kinds = {path: kind for kind, path in self.config.database_paths.items()}

    def _is_candidate(self, path: str, member: tarfile.TarInfo) -> bool:
        return (
            member.isreg()
            and member.size > 0
            and member.mode & 0o111 != 0
            and posixpath.dirname(path) in self.config.binary_dirs
        )

    def _scan_layer(self, tar: tarfile.TarFile, index: int, changes: _LayerChanges) -> None:
        for member in tar:
            path = normalize_path(member.name)
            if not path:
                continue

            parent, base = posixpath.split(path)
            if base == OPAQUE_MARKER:
                changes.opaque.add(parent)
                continue
            if base.startswith(WHITEOUT_PREFIX):
                changes.deleted.add(posixpath.join(parent, base[len(WHITEOUT_PREFIX) :]))
                continue

            kind = self._kinds.get(path)
            if kind is not None:
                if member.isreg():
                    data = tar.extractfile(member)
                    changes.writes[kind] = data.read() if data is not None else b""
                    changes.cleared.discard(kind)
                else:
                    changes.writes.pop(kind, None)
                    changes.cleared.add(kind)
                continue

            if self._is_candidate(path, member):
                changes.added[path] = BinaryCandidate(path, member.size, index)
                changes.replaced.discard(path)
            elif path in changes.added or not member.isdir():
                changes.added.pop(path, None)
                changes.replaced.add(path)

    def _apply(self, result: ExtractionResult, index: int, changes: _LayerChanges) -> None:
        removals = changes.deleted | changes.opaque
        if removals:
            for kind in list(result.databases):
                if _covered(self.config.database_paths[kind], removals):
                    del result.databases[kind]
                    del result.database_layers[kind]
            for path in list(result.candidates):
                if _covered(path, removals):
                    del result.candidates[path]

        for kind in changes.cleared:
            result.databases.pop(kind, None)
            result.database_layers.pop(kind, None)
        for kind, data in changes.writes.items():
            result.databases[kind] = data
            result.database_layers[kind] = index

        for path in changes.replaced:
            result.candidates.pop(path, None)
        result.candidates.update(changes.added)

    def extract(
        self, layers: list[Layer], progress: ProgressCallback = null_progress
    ) -> ExtractionResult:
        """Walk ``layers`` once, in order, and return the final captures.

        A layer whose stream cannot be opened is skipped with a warning; a
        stream that breaks part-way keeps what was read before the error.
        """
        result = ExtractionResult(layer_count=len(layers))
        progress(f"Scanning {len(layers)} layers...")

        for position, layer in enumerate(layers):
            progress(f"Layer {position + 1}/{len(layers)}...")
            changes = _LayerChanges()
            try:
                with layer.open() as tar:
                    try:
                        self._scan_layer(tar, position, changes)
                    except _STREAM_ERRORS as e:
                        logger.warning(f"Layer {position} ({layer.digest[:19]}) truncated: {e}")
            except _STREAM_ERRORS as e:
                logger.warning(f"Skipping unreadable layer {position} ({layer.digest[:19]}): {e}")
                result.skipped_layers.append(position)
                continue

            self._apply(result, position, changes)

        return result

    def read_candidates(
        self, layers: list[Layer], candidates: dict[str, BinaryCandidate]
    ) -> Iterator[tuple[BinaryCandidate, bytes]]:
        """Yield the full bytes of each candidate from the layer that wrote it."""
        by_layer: dict[int, dict[str, BinaryCandidate]] = {}
        for candidate in candidates.values():
            by_layer.setdefault(candidate.layer_index, {})[candidate.path] = candidate

        for index in sorted(by_layer):
            wanted = by_layer[index]
            try:
                with layers[index].open() as tar:
                    for member in tar:
                        if not wanted:
                            break
                        candidate = wanted.pop(normalize_path(member.name), None)
                        if candidate is None or not member.isreg():
                            continue
                        data = tar.extractfile(member)
                        if data is not None:
                            yield candidate, data.read()
            except _STREAM_ERRORS as e:
                logger.warning(f"Cannot re-read layer {index} for binaries: {e}")
