"""Reading, editing and writing of Anvil region files (.mca)."""

from __future__ import annotations

import logging
import os
import re
import struct
import time
from dataclasses import dataclass
from typing import BinaryIO, ClassVar

log = logging.getLogger(__name__)

SECTOR_LEN = 0x1000
HEADER_SECTORS = 2
HEADER_LEN = HEADER_SECTORS * SECTOR_LEN
MAX_CHUNK_LEN = SECTOR_LEN * 254
MAX_SECTORS = 2**24 - 1 - HEADER_SECTORS
CHUNKS_PER_REGION = 32 * 32

_META_LEN = 5
_TABLE = struct.Struct(f">{CHUNKS_PER_REGION}I")
_META = struct.Struct(">IB")
_U8 = re.compile(r"\+?[0-9]+", re.ASCII)
_ASCII_LOWER = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz"
)


def coords_to_idx(x: int, z: int) -> int:
    """Index of a chunk in the region header; coordinates wrap at 32."""
    return (x & 31) | ((z & 31) << 5)


def idx_to_coords(idx: int) -> tuple[int, int]:
    """Chunk coordinates of a header index."""
    return idx & 31, (idx >> 5) & 31


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


class ExternalChunkError(Exception):
    """A chunk is stored outside the region file, which is not supported."""


_LABELS = {1: "gzip", 2: "zlib", 3: "none", 4: "lz4", 53: "zstd"}
_CODES = {label: code for code, label in _LABELS.items()}


@dataclass(frozen=True)
class CompressionType:
    """Compression scheme of a chunk, identified by its one-byte code."""

    code: int

    GZIP: ClassVar[CompressionType]
    ZLIB: ClassVar[CompressionType]
    NONE: ClassVar[CompressionType]
    LZ4: ClassVar[CompressionType]
    ZSTD: ClassVar[CompressionType]

    def __post_init__(self) -> None:
        if not 0 <= self.code <= 0xFF:
            raise ValueError(f"compression code {self.code} does not fit in a byte")

    @classmethod
    def from_id(cls, code: int) -> CompressionType:
        return cls(code)

    @property
    def label(self) -> str | None:
        """Name of a known scheme, or None for an unknown code."""
        return _LABELS.get(self.code)

    @property
    def is_external(self) -> bool:
        """The high bit marks a chunk stored in a separate file."""
        return self.code >= 128

    def selector_string(self) -> str:
        """All choices on one line, the current one in brackets."""
        current = self.label
        parts = [f"[{label}]" if label == current else label for label in _LABELS.values()]
        parts.append("unknown(#)" if current is not None else f"[unknown({self.code})]")
        return " ".join(parts) + "\n"

    @classmethod
    def parse_selector(cls, selector: str) -> CompressionType:
        """Parse a name, a numeric code, or a selector line with one bracketed choice."""
        parsed = cls._parse(selector)
        if parsed is None:
            raise ValueError(f"not a compression selector: {selector!r}")
        return parsed

    @classmethod
    def _parse(cls, selector: str) -> CompressionType | None:
        selector = selector.translate(_ASCII_LOWER).strip()

        if selector in _CODES:
            return cls(_CODES[selector])

        number = selector
        if number.startswith("unknown(") and number.endswith(")"):
            number = number[8:-1]
        if _U8.fullmatch(number) and int(number) <= 0xFF:
            return cls(int(number))

        open_at = selector.find("[")
        if open_at < 0:
            return None
        start = open_at + 1
        close_at = selector.find("]", start)
        if close_at < 0 or close_at == start:
            return None
        part = selector[start:close_at]
        log.debug("Recursively parsing `%s` (from `%s`)", part, selector)
        return cls._parse(part)


CompressionType.GZIP = CompressionType(1)
CompressionType.ZLIB = CompressionType(2)
CompressionType.NONE = CompressionType(3)
CompressionType.LZ4 = CompressionType(4)
CompressionType.ZSTD = CompressionType(53)


@dataclass(frozen=True)
class ChunkAddress:
    """Location of a chunk in sectors; offset counts the header sectors."""

    offset: int
    length: int


@dataclass
class ChunkHeader:
    """Header entry of one chunk; address is None when the chunk is absent."""

    address: ChunkAddress | None
    mtime: int

    @classmethod
    def from_raw(cls, offset: int, length: int, mtime: int, sector_count: int) -> ChunkHeader:
        if offset >= HEADER_SECTORS and length > 0 and offset + length - HEADER_SECTORS <= sector_count:
            return cls(ChunkAddress(offset, length), mtime)
        return cls(None, mtime)

    @property
    def valid(self) -> bool:
        return self.address is not None

    def set_mtime(self, when: float) -> None:
        """Store a time given in epoch seconds, whole seconds only."""
        seconds = int(when) if when >= 0 else 0
        self.mtime = seconds & 0xFFFFFFFF


@dataclass(frozen=True)
class Chunk:
    """The stored (still compressed) payload of one chunk."""

    x: int
    z: int
    mtime: int
    compression_type: CompressionType
    data: bytes


def _read_meta(raw: bytes | bytearray | memoryview) -> tuple[int, CompressionType]:
    length, code = _META.unpack_from(raw, 0)
    return length, CompressionType(code)


class RegionFile:
    """An in-memory region file that tracks which sectors changed."""

    def __init__(self, data: bytes) -> None:
        if len(data) < HEADER_LEN:
            raise ValueError(
                f"region data is {len(data)} bytes, shorter than the {HEADER_LEN}-byte header"
            )
        header_data = bytes(data[:HEADER_LEN])
        chunk_data = bytearray(data[HEADER_LEN:])

        sector_count = _ceil_div(len(chunk_data), SECTOR_LEN)
        chunk_data.extend(bytes(sector_count * SECTOR_LEN - len(chunk_data)))

        self._chunk_data = chunk_data
        self._occupied = bytearray(sector_count)
        self._dirty = bytearray(sector_count)
        self._headers: list[ChunkHeader] = []

        locations = _TABLE.unpack_from(header_data, 0)
        stamps = _TABLE.unpack_from(header_data, SECTOR_LEN)

        for idx, (pos_info, mtime) in enumerate(zip(locations, stamps)):
            x, z = idx_to_coords(idx)
            offset = (pos_info >> 8) & 0xFFFFFF
            length = pos_info & 0xFF
            known_invalid = offset < HEADER_SECTORS or length == 0

            header = ChunkHeader.from_raw(offset, length, mtime, sector_count)
            if header.address is not None:
                start = (offset - HEADER_SECTORS) * SECTOR_LEN
                body = memoryview(chunk_data)[start:start + length * SECTOR_LEN]
                meta_len, compression = _read_meta(body)
                if compression.is_external:
                    raise ExternalChunkError(
                        f"Chunk [{x} {z}] is stored externally to the region file, "
                        "which cannot be handled"
                    )
                if meta_len <= 1 or meta_len + 4 > len(body):
                    header.address = None
                    log.warning("Chunk [%d %d] has an illegal length and will be deleted on write", x, z)
            elif not known_invalid:
                log.warning("Chunk [%d %d] has an invalid header and will be deleted on write", x, z)

            if header.valid:
                first = offset - HEADER_SECTORS
                self._occupied[first:first + length] = b"\x01" * length

            self._headers.append(header)

    def _header(self, x: int, z: int) -> ChunkHeader:
        return self._headers[coords_to_idx(x, z)]

    def lookup_chunk(self, x: int, z: int) -> Chunk | None:
        """The chunk at (x, z), or None when there is none."""
        header = self._header(x, z)
        addr = header.address
        if addr is None:
            return None

        start = (addr.offset - HEADER_SECTORS) * SECTOR_LEN
        body = memoryview(self._chunk_data)[start:start + addr.length * SECTOR_LEN]
        meta_len, compression = _read_meta(body)
        payload = bytes(body[_META_LEN:_META_LEN + meta_len - 1])

        return Chunk(x & 31, z & 31, header.mtime, compression, payload)

    def delete_chunk(self, x: int, z: int) -> None:
        """Remove a chunk and stamp its entry with the current time."""
        self._header(x, z).set_mtime(time.time())
        self.free_chunk(x, z)

    def free_chunk(self, x: int, z: int) -> None:
        """Release the sectors of a chunk without touching its timestamp."""
        header = self._header(x, z)
        addr, header.address = header.address, None
        if addr is None:
            return
        start = addr.offset - HEADER_SECTORS
        end = min(addr.offset + addr.length - HEADER_SECTORS, len(self._occupied))
        if start < end:
            self._occupied[start:end] = bytes(end - start)

    def _allocate_run(self, length: int) -> ChunkAddress | None:
        occupied = self._occupied
        start = 0
        while True:
            zero = occupied.find(0, start)
            if zero < 0:
                start = len(occupied)
                if start + length >= MAX_SECTORS:
                    return None
                occupied.extend(b"\x01" * length)
                return ChunkAddress(start + HEADER_SECTORS, length)

            start = zero
            search_end = min(start + length, len(occupied))
            one = occupied.find(1, start, search_end)
            if one >= 0:
                start = one
                continue

            end = start + length
            if end >= MAX_SECTORS:
                return None
            if end > len(occupied):
                occupied.extend(bytes(end - len(occupied)))
            occupied[start:end] = b"\x01" * length
            return ChunkAddress(start + HEADER_SECTORS, length)

    def write_chunk(
        self, x: int, z: int, data: bytes, compression_type: CompressionType, mtime: float
    ) -> None:
        """Store a chunk payload; a chunk that cannot be stored ends up deleted."""
        self.free_chunk(x, z)

        if len(data) >= MAX_CHUNK_LEN:
            log.warning("Chunk [%d %d] is too long, will silently be deleted", x, z)
            return

        container_len = len(data) + _META_LEN
        addr = self._allocate_run(_ceil_div(container_len, SECTOR_LEN))
        if addr is None:
            log.warning("Failed to allocate sectors for chunk [%d %d], will silently be deleted", x, z)
            return

        start = (addr.offset - HEADER_SECTORS) * SECTOR_LEN
        end = start + addr.length * SECTOR_LEN
        if end > len(self._chunk_data):
            self._chunk_data.extend(bytes(end - len(self._chunk_data)))
        container = _META.pack(len(data) + 1, compression_type.code) + bytes(data)
        self._chunk_data[start:end] = container + bytes(end - start - container_len)

        first = addr.offset - HEADER_SECTORS
        last = first + addr.length
        if last > len(self._dirty):
            self._dirty.extend(bytes(last - len(self._dirty)))
        self._dirty[first:last] = b"\x01" * addr.length

        header = self._header(x, z)
        header.set_mtime(mtime)
        header.address = addr

    def write_out(self, full_write: bool, file: BinaryIO) -> None:
        """Write the header and either every sector or only the changed ones."""
        sector_count = max(
            (
                h.address.offset + h.address.length - HEADER_SECTORS
                for h in self._headers
                if h.address is not None
            ),
            default=0,
        )
        file.truncate(HEADER_LEN + sector_count * SECTOR_LEN)

        locations = [
            ((h.address.offset & 0xFFFFFF) << 8) | (h.address.length & 0xFF) if h.address else 0
            for h in self._headers
        ]
        file.seek(0)
        file.write(_TABLE.pack(*locations))
        file.write(_TABLE.pack(*(h.mtime for h in self._headers)))

        if full_write:
            sectors = range(sector_count)
        else:
            sectors = (i for i, flag in enumerate(self._dirty[:sector_count]) if flag)

        for sector in sectors:
            if not full_write:
                log.info("> Writing sector %#06x", sector)
            start = sector * SECTOR_LEN
            file.seek(HEADER_LEN + start)
            file.write(self._chunk_data[start:start + SECTOR_LEN])

        file.flush()
        os.utime(file.fileno())
        os.fsync(file.fileno())

        self._dirty[:] = bytes(len(self._dirty))