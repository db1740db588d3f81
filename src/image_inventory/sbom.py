"""External SBOM generator fallback (``syft``)."""

import asyncio
import json
import logging
import shutil
from typing import Any

from .exceptions import SbomError
from .models import PackageFormat, PackageRecord

logger = logging.getLogger(__name__)

SYFT_BINARY = "syft"
SYFT_CATALOGERS = "apk,dpkg,rpm,binary"


def _int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) and value > 0 else 0


def _format(artifact_type: str) -> PackageFormat:
    try:
        return PackageFormat(artifact_type)
    except ValueError:
        return PackageFormat.OTHER


def artifact_size_kb(artifact: dict[str, Any], file_sizes: dict[str, int], evidence: dict[str, str]) -> int:
    """Normalize an artifact's size to kilobytes.

    Units differ per artifact type: apk and rpm sizes are bytes, deb
    ``installedSize`` is already kilobytes, binaries take the size of the
    file they were found in.
    """
    metadata = artifact.get("metadata") or {}
    installed = _int(metadata.get("installedSize"))
    size = _int(metadata.get("size"))

    match artifact.get("type"):
        case "apk":
            return (installed or size) // 1024
        case "rpm":
            return size // 1024
        case "deb":
            return installed
        case "binary":
            file_id = evidence.get(artifact.get("id", ""))
            return file_sizes.get(file_id, 0) // 1024 if file_id else 0
        case _:
            return installed if installed else size // 1024


def parse_syft_document(document: dict[str, Any]) -> list[PackageRecord]:
    """Turn a syft-json document into package records.

    Artifacts whose size cannot be determined are dropped.
    """
    file_sizes = {}
    for entry in document.get("files") or []:
        size = _int((entry.get("metadata") or {}).get("size"))
        if size:
            file_sizes[entry.get("id", "")] = size

    evidence = {
        rel.get("parent", ""): rel.get("child", "")
        for rel in document.get("artifactRelationships") or []
        if rel.get("type") == "evident-by"
    }

    records = []
    for artifact in document.get("artifacts") or []:
        size_kb = artifact_size_kb(artifact, file_sizes, evidence)
        if size_kb <= 0 or not artifact.get("name"):
            continue
        records.append(
            PackageRecord(
                name=artifact["name"],
                version=artifact.get("version", ""),
                size_kb=size_kb,
                format=_format(artifact.get("type", "")),
            )
        )
    return records


async def run_syft(image_ref: str, binary: str = SYFT_BINARY) -> list[PackageRecord]:
    """Scan ``image_ref`` with syft and decode its JSON output.

    Raises:
        SbomError: If syft is missing, fails, or prints invalid JSON
    """
    executable = shutil.which(binary)
    if executable is None:
        raise SbomError(f"{binary} not found on PATH")

    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            image_ref,
            "--scope",
            "squashed",
            "--select-catalogers",
            SYFT_CATALOGERS,
            "-o",
            "syft-json",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
    except OSError as e:
        raise SbomError(f"Cannot run {binary}: {e}") from e

    if process.returncode != 0:
        raise SbomError(
            f"{binary} exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
        )

    try:
        document = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise SbomError(f"{binary} produced invalid JSON: {e}") from e
    if not isinstance(document, dict):
        raise SbomError(f"{binary} produced an unexpected document")

    records = parse_syft_document(document)
    logger.debug(f"syft reported {len(records)} sized packages for {image_ref}")
    return records
