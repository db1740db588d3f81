"""Alpine ``lib/apk/db/installed`` decoder."""

import logging

from ..models import PackageFormat, PackageRecord

logger = logging.getLogger(__name__)


def _emit(fields: dict[str, str]) -> PackageRecord | None:
    name = fields.get("P")
    if not name:
        return None

    raw_size = fields.get("I", fields.get("S", "0"))
    try:
        size = int(raw_size)
    except ValueError:
        size = 0
    return PackageRecord(
        name=name,
        version=fields.get("V", ""),
        size_kb=max(size, 0) // 1024,
        format=PackageFormat.APK,
    )


def parse_apk_database(data: bytes) -> list[PackageRecord]:
    """Decode the installed database into package records.

    Records are blank-line separated blocks of ``K:value`` lines. ``I`` (the
    installed size) is preferred over ``S`` (the archive size).

    Args:
        data: Raw database content

    Returns:
        One record per block that carries a package name
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

        if len(line) < 2 or line[1] != ":":
            continue
        fields.setdefault(line[0], line[2:].strip())

    record = _emit(fields)
    if record is not None:
        records.append(record)

    logger.debug(f"Parsed {len(records)} APK packages")
    return records
