"""Berkeley DB hash reader for the legacy ``var/lib/rpm/Packages`` file.

Only what rpm stores is supported: a hash database whose values are header
blobs kept in off-page (overflow) chains. The byte order is detected from
the metadata page magic.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Iterator

from ...exceptions import DatabaseError

logger = logging.getLogger(__name__)

HASH_MAGIC = 0x061561
HASH_METADATA_PAGE_TYPE = 8
HASH_UNSORTED_PAGE_TYPE = 2
HASH_PAGE_TYPE = 13
HASH_OFF_INDEX_PAGE_TYPE = 3

METADATA_SIZE = 72
PAGE_HEADER_SIZE = 26


@dataclass(frozen=True)
class _PageHeader:
    pgno: int
    prev_pgno: int
    next_pgno: int
    entries: int
    hf_offset: int
    level: int
    page_type: int


class BerkeleyHashDB:
    """Read-only view over an in-memory hash database."""

    def __init__(self, data: bytes) -> None:
        if len(data) < METADATA_SIZE:
            raise DatabaseError("Berkeley DB file too short for a metadata page")
        self.data = data

        for order in ("<", ">"):
            if struct.unpack_from(order + "I", data, 12)[0] == HASH_MAGIC:
                self.order = order
                break
        else:
            raise DatabaseError("Not a Berkeley DB hash file (bad magic)")

        self.page_size = struct.unpack_from(self.order + "I", data, 20)[0]
        encrypt_alg = data[24]
        page_type = data[25]
        self.last_pgno = struct.unpack_from(self.order + "I", data, 32)[0]

        if page_type != HASH_METADATA_PAGE_TYPE:
            raise DatabaseError(f"Unexpected metadata page type {page_type}")
        if encrypt_alg != 0:
            raise DatabaseError("Encrypted Berkeley DB files are not supported")
        if self.page_size < 512 or self.page_size & (self.page_size - 1):
            raise DatabaseError(f"Invalid page size {self.page_size}")

    def _page(self, pgno: int) -> bytes:
        start = pgno * self.page_size
        page = self.data[start : start + self.page_size]
        if len(page) < PAGE_HEADER_SIZE:
            raise DatabaseError(f"Page {pgno} is beyond end of file")
        return page

    def _header(self, page: bytes) -> _PageHeader:
        pgno, prev_pgno, next_pgno, entries, hf_offset, level, page_type = struct.unpack_from(
            self.order + "IIIHHBB", page, 8
        )
        return _PageHeader(pgno, prev_pgno, next_pgno, entries, hf_offset, level, page_type)

    def _value_indexes(self, page: bytes, entries: int) -> list[int]:
        if entries % 2:
            raise DatabaseError(f"Odd number of hash entries ({entries})")
        end = PAGE_HEADER_SIZE + entries * 2
        if end > len(page):
            raise DatabaseError("Hash index runs past end of page")
        indexes = struct.unpack_from(f"{self.order}{entries}H", page, PAGE_HEADER_SIZE)
        # Keys and values alternate; values are at odd positions
        return list(indexes[1::2])

    def _overflow(self, pgno: int, length: int) -> bytes:
        chunks = []
        seen = set()
        while True:
            if pgno in seen:
                raise DatabaseError(f"Overflow chain loops at page {pgno}")
            seen.add(pgno)
            page = self._page(pgno)
            header = self._header(page)
            if header.next_pgno == 0:
                chunks.append(page[PAGE_HEADER_SIZE : PAGE_HEADER_SIZE + header.hf_offset])
                break
            chunks.append(page[PAGE_HEADER_SIZE:])
            pgno = header.next_pgno
        value = b"".join(chunks)
        return value[:length] if length else value

    def values(self) -> Iterator[bytes]:
        """Yield every off-page value stored in the hash pages."""
        for pgno in range(self.last_pgno + 1):
            page = self._page(pgno)
            header = self._header(page)
            if header.page_type not in (HASH_UNSORTED_PAGE_TYPE, HASH_PAGE_TYPE):
                continue

            for index in self._value_indexes(page, header.entries):
                if index + 12 > len(page) or page[index] != HASH_OFF_INDEX_PAGE_TYPE:
                    continue
                off_pgno, length = struct.unpack_from(self.order + "II", page, index + 4)
                try:
                    yield self._overflow(off_pgno, length)
                except DatabaseError as e:
                    logger.debug(f"Skipping value on page {pgno}: {e}")


def iter_bdb_blobs(data: bytes) -> Iterator[bytes]:
    """Yield header blobs from a ``Packages`` hash database.

    Raises:
        DatabaseError: If the file is not a readable hash database
    """
    yield from BerkeleyHashDB(data).values()
