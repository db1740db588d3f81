"""NDB reader for ``var/lib/rpm/Packages.db`` (SUSE and some RPM >= 4.16 builds)."""

import logging
import struct
from typing import Iterator

from ...exceptions import DatabaseError

logger = logging.getLogger(__name__)

NDB_HEADER_MAGIC = int.from_bytes(b"RpmP", "little")
NDB_SLOT_MAGIC = int.from_bytes(b"Slot", "little")
NDB_BLOB_MAGIC = int.from_bytes(b"BlbS", "little")
NDB_DB_VERSION = 0

NDB_HEADER_SIZE = 32
NDB_SLOT_SIZE = 16
NDB_BLOB_HEADER_SIZE = 16
NDB_SLOT_ENTRIES_PER_PAGE = 4096 // NDB_SLOT_SIZE
NDB_MAX_SLOT_PAGES = 2048

_QUAD = struct.Struct("<4I")


def iter_ndb_blobs(data: bytes) -> Iterator[bytes]:
    """Yield header blobs referenced by the slot table.

    Raises:
        DatabaseError: If the file header is invalid
    """
    if len(data) < NDB_HEADER_SIZE:
        raise DatabaseError("NDB file too short")
    magic, version, _generation, npages = _QUAD.unpack_from(data, 0)
    if magic != NDB_HEADER_MAGIC:
        raise DatabaseError("Not an NDB package database (bad magic)")
    if version != NDB_DB_VERSION:
        raise DatabaseError(f"Unsupported NDB version {version}")
    if npages == 0 or npages > NDB_MAX_SLOT_PAGES:
        raise DatabaseError(f"Invalid NDB slot page count {npages}")

    # The first two slot positions of page 0 hold the file header
    slot_count = npages * NDB_SLOT_ENTRIES_PER_PAGE - 2
    for i in range(slot_count):
        offset = NDB_HEADER_SIZE + i * NDB_SLOT_SIZE
        if offset + NDB_SLOT_SIZE > len(data):
            break
        slot_magic, pkg_index, blk_offset, _blk_count = _QUAD.unpack_from(data, offset)
        if slot_magic != NDB_SLOT_MAGIC:
            logger.debug(f"Bad NDB slot magic at slot {i}")
            continue
        if pkg_index == 0:
            continue

        start = blk_offset * NDB_BLOB_HEADER_SIZE
        if start + NDB_BLOB_HEADER_SIZE > len(data):
            logger.debug(f"NDB blob for package {pkg_index} is beyond end of file")
            continue
        blob_magic, blob_index, _cksum, length = _QUAD.unpack_from(data, start)
        if blob_magic != NDB_BLOB_MAGIC or blob_index != pkg_index:
            logger.debug(f"Bad NDB blob header for package {pkg_index}")
            continue

        body = data[start + NDB_BLOB_HEADER_SIZE : start + NDB_BLOB_HEADER_SIZE + length]
        if len(body) != length:
            logger.debug(f"Truncated NDB blob for package {pkg_index}")
            continue
        yield body
