"""Go build-information probe for executables without a package database.

Go embeds a 32-byte header starting with ``\\xff Go buildinf:`` followed by
the pointer size and a flags byte. Since Go 1.18 the toolchain version and
module info follow inline as varint-prefixed strings; older toolchains
store two pointers to Go string headers, which are resolved through the ELF
program headers.
"""

import logging
import posixpath
import struct
from dataclasses import dataclass
from typing import Iterable, Optional

from ..models import PackageFormat, PackageRecord

logger = logging.getLogger(__name__)

BUILDINFO_MAGIC = b"\xff Go buildinf:"
BUILDINFO_HEADER_SIZE = 32
BUILDINFO_ALIGN = 16

FLAG_BIG_ENDIAN = 0x1
FLAG_VERSION_INLINE = 0x2

ELF_MAGIC = b"\x7fELF"
PT_LOAD = 1

DEVEL_VERSION = "(devel)"


class NotGoBinary(Exception):
    """Raised internally when a file carries no readable build info."""


@dataclass(frozen=True)
class BuildInfo:
    go_version: str
    path: str = ""
    main_path: str = ""
    main_version: str = ""

    @property
    def version(self) -> str:
        """Main module version, or the toolchain version for devel builds."""
        if self.main_version and self.main_version != DEVEL_VERSION:
            return self.main_version
        return self.go_version


def _uvarint(data: bytes, pos: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while pos < len(data):
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if byte < 0x80:
            return value, pos
        shift += 7
        if shift > 63:
            break
    raise NotGoBinary("bad varint")


def _varint_bytes(data: bytes, pos: int) -> tuple[bytes, int]:
    length, pos = _uvarint(data, pos)
    if pos + length > len(data):
        raise NotGoBinary("string runs past end of file")
    return data[pos : pos + length], pos + length


class _ElfMemory:
    """Maps virtual addresses to file content using PT_LOAD segments."""

    def __init__(self, data: bytes) -> None:
        if not data.startswith(ELF_MAGIC) or len(data) < 52:
            raise NotGoBinary("pointer-format build info requires an ELF file")
        elf_class, elf_data = data[4], data[5]
        order = "<" if elf_data == 1 else ">"
        self.data = data
        self.segments: list[tuple[int, int, int]] = []

        if elf_class == 2:
            phoff = struct.unpack_from(order + "Q", data, 32)[0]
            phentsize, phnum = struct.unpack_from(order + "HH", data, 54)
            layout = order + "IIQQQQ"
        elif elf_class == 1:
            phoff = struct.unpack_from(order + "I", data, 28)[0]
            phentsize, phnum = struct.unpack_from(order + "HH", data, 42)
            layout = order + "IIIII"
        else:
            raise NotGoBinary(f"unknown ELF class {elf_class}")

        for i in range(phnum):
            start = phoff + i * phentsize
            if start + struct.calcsize(layout) > len(data):
                raise NotGoBinary("program header table truncated")
            if elf_class == 2:
                p_type, _flags, p_offset, p_vaddr, _paddr, p_filesz = struct.unpack_from(
                    layout, data, start
                )
            else:
                p_type, p_offset, p_vaddr, _paddr, p_filesz = struct.unpack_from(
                    layout, data, start
                )
            if p_type == PT_LOAD:
                self.segments.append((p_vaddr, p_offset, p_filesz))

    def read(self, addr: int, size: int) -> bytes:
        for vaddr, offset, filesz in self.segments:
            if vaddr <= addr and addr + size <= vaddr + filesz:
                start = offset + (addr - vaddr)
                chunk = self.data[start : start + size]
                if len(chunk) == size:
                    return chunk
        raise NotGoBinary(f"address {addr:#x} is not mapped")


def _pointer_strings(data: bytes, offset: int, ptr_size: int, big_endian: bool) -> tuple[bytes, bytes]:
    if ptr_size not in (4, 8):
        raise NotGoBinary(f"unsupported pointer size {ptr_size}")
    fmt = (">" if big_endian else "<") + ("I" if ptr_size == 4 else "Q")
    memory = _ElfMemory(data)

    def read_ptr(raw: bytes, pos: int = 0) -> int:
        return struct.unpack_from(fmt, raw, pos)[0]

    def read_string(addr: int) -> bytes:
        header = memory.read(addr, 2 * ptr_size)
        str_addr, length = read_ptr(header), read_ptr(header, ptr_size)
        if length == 0:
            return b""
        return memory.read(str_addr, length)

    vers_addr = read_ptr(data, offset + 16)
    mod_addr = read_ptr(data, offset + 16 + ptr_size)
    return read_string(vers_addr), read_string(mod_addr)


def _find_header(data: bytes) -> int:
    pos = data.find(BUILDINFO_MAGIC)
    while pos >= 0:
        if pos % BUILDINFO_ALIGN == 0 and pos + BUILDINFO_HEADER_SIZE <= len(data):
            return pos
        pos = data.find(BUILDINFO_MAGIC, pos + 1)
    raise NotGoBinary("no build info header")


def _parse_modinfo(go_version: str, mod: bytes) -> BuildInfo:
    # Module info is wrapped in 16-byte sentinels
    if len(mod) >= 33 and mod[-17:-16] == b"\n":
        mod = mod[16:-16]

    path = main_path = main_version = ""
    for line in mod.decode("utf-8", errors="replace").splitlines():
        fields = line.split("\t")
        if fields[0] == "path" and len(fields) >= 2:
            path = fields[1]
        elif fields[0] == "mod" and len(fields) >= 3:
            main_path, main_version = fields[1], fields[2]
    return BuildInfo(go_version, path, main_path, main_version)


def read_build_info(data: bytes) -> BuildInfo:
    """Decode build info from a whole executable.

    Raises:
        NotGoBinary: If the file has no decodable build info
    """
    offset = _find_header(data)
    ptr_size = data[offset + 14]
    flags = data[offset + 15]

    if flags & FLAG_VERSION_INLINE:
        raw_version, pos = _varint_bytes(data, offset + BUILDINFO_HEADER_SIZE)
        mod, _ = _varint_bytes(data, pos)
    else:
        raw_version, mod = _pointer_strings(data, offset, ptr_size, bool(flags & FLAG_BIG_ENDIAN))

    go_version = raw_version.decode("utf-8", errors="replace")
    if not go_version:
        raise NotGoBinary("empty Go version")
    return _parse_modinfo(go_version, mod)


def probe_binary(path: str, size: int, data: bytes) -> Optional[PackageRecord]:
    """Build a record for one executable, or None if it is not a Go binary."""
    try:
        info = read_build_info(data)
    except (NotGoBinary, struct.error, IndexError) as e:
        logger.debug(f"{path}: {e}")
        return None
    return PackageRecord(
        name=posixpath.basename(path),
        version=info.version,
        size_kb=size // 1024,
        format=PackageFormat.BINARY,
    )


def probe_binaries(files: Iterable[tuple[str, int, bytes]]) -> list[PackageRecord]:
    """Probe ``(path, declared_size, content)`` triples, dropping non-Go files."""
    records = []
    for path, size, data in files:
        record = probe_binary(path, size, data)
        if record is not None:
            records.append(record)
    return records
