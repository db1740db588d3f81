"""RPM package database decoding."""

import logging
from typing import Iterator

from ...exceptions import DatabaseError
from ...models import DatabaseKind, PackageRecord
from .bdb import iter_bdb_blobs
from .header import RpmHeader, parse_header
from .ndb import iter_ndb_blobs
from .sqlite import iter_sqlite_blobs

logger = logging.getLogger(__name__)

__all__ = ["RpmHeader", "parse_header", "read_rpm_database"]


def _blobs(kind: DatabaseKind, data: bytes) -> Iterator[bytes]:
    match kind:
        case DatabaseKind.RPM_SQLITE:
            return iter_sqlite_blobs(data)
        case DatabaseKind.RPM_BDB:
            return iter_bdb_blobs(data)
        case DatabaseKind.RPM_NDB:
            return iter_ndb_blobs(data)
        case _:
            raise DatabaseError(f"{kind.value} is not an RPM database")


def read_rpm_database(kind: DatabaseKind, data: bytes) -> list[PackageRecord]:
    """Decode every package header stored in an RPM database.

    A header that fails to decode is skipped.

    Raises:
        DatabaseError: If the database container itself is unreadable
    """
    records = []
    for blob in _blobs(kind, data):
        try:
            records.append(parse_header(blob).to_record())
        except DatabaseError as e:
            logger.debug(f"Skipping RPM header: {e}")
    logger.debug(f"Parsed {len(records)} RPM packages from {kind.value}")
    return records
