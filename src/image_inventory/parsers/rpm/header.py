"""RPM header blob decoding.

A header blob is ``il`` (index entry count) and ``dl`` (data length) as
big-endian uint32, then ``il`` 16-byte index entries, then the data store.
Blobs read from a full header on disk may be prefixed by the 8-byte header
magic, which is stripped first.
"""

import struct
from dataclasses import dataclass

from ...exceptions import DatabaseError
from ...models import PackageFormat, PackageRecord

HEADER_MAGIC = b"\x8e\xad\xe8\x01\x00\x00\x00\x00"

RPMTAG_NAME = 1000
RPMTAG_VERSION = 1001
RPMTAG_RELEASE = 1002
RPMTAG_EPOCH = 1003
RPMTAG_SIZE = 1009
RPMTAG_LONGSIZE = 5009

RPM_INT32_TYPE = 4
RPM_INT64_TYPE = 5
RPM_STRING_TYPE = 6
RPM_STRING_ARRAY_TYPE = 8
RPM_I18NSTRING_TYPE = 9

_WANTED = {
    RPMTAG_NAME,
    RPMTAG_VERSION,
    RPMTAG_RELEASE,
    RPMTAG_EPOCH,
    RPMTAG_SIZE,
    RPMTAG_LONGSIZE,
}

_INDEX_ENTRY = struct.Struct(">iIiI")


@dataclass(frozen=True)
class RpmHeader:
    name: str
    version: str
    release: str
    epoch: int | None
    size: int

    @property
    def full_version(self) -> str:
        return f"{self.version}-{self.release}" if self.release else self.version

    def to_record(self) -> PackageRecord:
        return PackageRecord(
            name=self.name,
            version=self.full_version,
            size_kb=self.size // 1024,
            format=PackageFormat.RPM,
        )


def _read_string(store: bytes, offset: int) -> str:
    end = store.find(b"\x00", offset)
    if end < 0:
        raise DatabaseError(f"Unterminated string at data offset {offset}")
    return store[offset:end].decode("utf-8", errors="replace")


def _read_int(store: bytes, offset: int, width: int) -> int:
    fmt = ">I" if width == 4 else ">Q"
    if offset + width > len(store):
        raise DatabaseError(f"Integer at data offset {offset} exceeds data store")
    return struct.unpack_from(fmt, store, offset)[0]


def parse_header(blob: bytes) -> RpmHeader:
    """Decode the tags needed for a package record.

    Raises:
        DatabaseError: If the blob is truncated or has no NAME tag
    """
    if blob.startswith(HEADER_MAGIC):
        blob = blob[len(HEADER_MAGIC) :]
    if len(blob) < 8:
        raise DatabaseError("RPM header blob too short")

    il, dl = struct.unpack_from(">II", blob, 0)
    store_start = 8 + il * _INDEX_ENTRY.size
    if store_start + dl > len(blob):
        raise DatabaseError(f"RPM header declares {il} entries and {dl} data bytes beyond blob end")
    store = blob[store_start : store_start + dl]

    values: dict[int, str | int] = {}
    for i in range(il):
        tag, kind, offset, count = _INDEX_ENTRY.unpack_from(blob, 8 + i * _INDEX_ENTRY.size)
        if tag not in _WANTED:
            continue
        if offset < 0 or offset >= len(store):
            raise DatabaseError(f"Tag {tag} points outside the data store")

        if kind in (RPM_STRING_TYPE, RPM_I18NSTRING_TYPE, RPM_STRING_ARRAY_TYPE):
            values[tag] = _read_string(store, offset)
        elif kind == RPM_INT32_TYPE and count >= 1:
            values[tag] = _read_int(store, offset, 4)
        elif kind == RPM_INT64_TYPE and count >= 1:
            values[tag] = _read_int(store, offset, 8)

    name = values.get(RPMTAG_NAME)
    if not isinstance(name, str) or not name:
        raise DatabaseError("RPM header has no NAME tag")

    size = values.get(RPMTAG_LONGSIZE, values.get(RPMTAG_SIZE, 0))
    epoch = values.get(RPMTAG_EPOCH)
    return RpmHeader(
        name=name,
        version=str(values.get(RPMTAG_VERSION, "")),
        release=str(values.get(RPMTAG_RELEASE, "")),
        epoch=epoch if isinstance(epoch, int) else None,
        size=size if isinstance(size, int) else 0,
    )
