"""Package database parsers and the per-image collection step."""

import logging
from typing import Optional

from ..exceptions import DatabaseError
from ..extract import ExtractionResult, LayerExtractor
from ..models import DatabaseKind, PackageRecord
from ..progress import ProgressCallback, null_progress
from ..tar.models import Layer
from .apk import parse_apk_database
from .dpkg import parse_dpkg_status
from .gobinary import BuildInfo, probe_binaries, read_build_info
from .rpm import read_rpm_database

logger = logging.getLogger(__name__)

__all__ = [
    "BuildInfo",
    "collect_packages",
    "parse_apk_database",
    "parse_database",
    "parse_dpkg_status",
    "probe_binaries",
    "read_build_info",
    "read_rpm_database",
]


def parse_database(kind: DatabaseKind, data: bytes) -> list[PackageRecord]:
    """Decode one captured database with the parser for its kind.

    Raises:
        DatabaseError: If an RPM database container is unreadable
    """
    match kind:
        case DatabaseKind.APK:
            return parse_apk_database(data)
        case DatabaseKind.DPKG:
            return parse_dpkg_status(data)
        case DatabaseKind.RPM_SQLITE | DatabaseKind.RPM_BDB | DatabaseKind.RPM_NDB:
            return read_rpm_database(kind, data)


def collect_packages(
    extraction: ExtractionResult,
    layers: list[Layer],
    extractor: Optional[LayerExtractor] = None,
    progress: ProgressCallback = null_progress,
) -> list[PackageRecord]:
    """Turn an extraction into package records.

    APK and dpkg databases are parsed when present, plus the RPM database
    written by the highest layer. Executables are probed for Go build info
    only when no OS package was found.
    """
    captured: list[tuple[DatabaseKind, bytes]] = [
        (kind, extraction.databases[kind])
        for kind in (DatabaseKind.APK, DatabaseKind.DPKG)
        if kind in extraction.databases
    ]
    rpm = extraction.rpm_database()
    if rpm is not None:
        captured.append(rpm)

    records: list[PackageRecord] = []
    for kind, data in captured:
        progress(f"Parsing {kind.value} database...")
        try:
            records.extend(parse_database(kind, data))
        except DatabaseError as e:
            logger.warning(f"Failed to parse {kind.value} database: {e}")

    if records or not extraction.candidates:
        return records

    progress(f"Probing {len(extraction.candidates)} binaries...")
    extractor = extractor or LayerExtractor()
    files = (
        (candidate.path, candidate.size, data)
        for candidate, data in extractor.read_candidates(layers, extraction.candidates)
    )
    return probe_binaries(files)
