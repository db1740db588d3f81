"""Debian ``var/lib/dpkg/status`` decoder."""

import logging

from ..models import PackageFormat, PackageRecord

logger = logging.getLogger(__name__)


def _is_installed(status: str) -> bool:
    # "want flag state", e.g. "install ok installed"
    words = status.split()
    return len(words) >= 3 and words[2] == "installed"


def _emit(fields: dict[str, str]) -> PackageRecord | None:
    name = fields.get("Package")
    if not name or not _is_installed(fields.get("Status", "")):
        return None

    try:
        size_kb = int(fields.get("Installed-Size", "0"))
    except ValueError:
        size_kb = 0
    return PackageRecord(
        name=name,
        version=fields.get("Version", ""),
        size_kb=max(size_kb, 0),
        format=PackageFormat.DEB,
    )


def parse_dpkg_status(data: bytes) -> list[PackageRecord]:
    """Decode the status file, keeping only fully installed packages.

    ``Installed-Size`` is already expressed in kilobytes. Stanzas whose
    state is ``config-files``, ``half-installed`` and so on are dropped.
    """
    records = []
    fields: dict[str, str] = {}

    for line in data.decode("utf-8", errors="replace").splitlines():
        if not line.strip():
            record = _emit(fields)
            if record is not None:
                records.append(record)
            fields = {}
            continue

        if line[0] in " \t":
            continue
        key, sep, value = line.partition(":")
        if not sep:
            continue
        fields[key.strip()] = value.strip()

    record = _emit(fields)
    if record is not None:
        records.append(record)

    logger.debug(f"Parsed {len(records)} dpkg packages")
    return records
