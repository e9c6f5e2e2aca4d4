"""Files exposed by the mounted region: names, attributes, inodes and contents."""

from __future__ import annotations

import enum
import errno
import logging
import os
import time
from dataclasses import dataclass, field
from typing import ClassVar, Iterator

from smithy.anvil import MAX_CHUNK_LEN, SECTOR_LEN, Chunk, CompressionType

log = logging.getLogger(__name__)

FUSE_ROOT_ID = 1
TTL = 1.0

_DIGITS = "0123456789"


def _fs_error(code: int, detail: str = "") -> OSError:
    message = os.strerror(code)
    if detail:
        message = f"{message}: {detail}"
    return OSError(code, message)


class FileType(enum.Enum):
    DIRECTORY = "directory"
    REGULAR_FILE = "regular_file"


@dataclass(frozen=True)
class FileAttr:
    """Attributes reported for a file or directory."""

    ino: int
    size: int
    blocks: int
    atime: float
    mtime: float
    ctime: float
    crtime: float
    kind: FileType
    perm: int
    nlink: int
    uid: int
    gid: int
    rdev: int = 0
    blksize: int = SECTOR_LEN
    flags: int = 0


def make_attr(
    ino: int,
    size: int,
    time: float,
    kind: FileType,
    perm: int,
    nlink: int,
    uid: int,
    gid: int,
) -> FileAttr:
    """Attributes with every timestamp set to ``time``; blocks are 512-byte units."""
    return FileAttr(
        ino=ino,
        size=size,
        blocks=-(-size // 512),
        atime=time,
        mtime=time,
        ctime=time,
        crtime=time,
        kind=kind,
        perm=perm,
        nlink=nlink,
        uid=uid,
        gid=gid,
    )


ROOT_DIR_ATTR = make_attr(FUSE_ROOT_ID, 0, 0.0, FileType.DIRECTORY, 0o555, 2, 0, 0)


class FileKind(enum.IntEnum):
    CHUNK = 0
    COMPRESSION_INFO = 1

    @property
    def extension(self) -> str:
        return ".nbt" if self is FileKind.CHUNK else ".cmp"

    def make_fname(self, x: int, z: int) -> str:
        return f"x{x}z{z}{self.extension}"

    @classmethod
    def parse_extension(cls, fname: str) -> tuple[FileKind, str] | None:
        """Split a name into its kind and its stem, or None for another extension."""
        if len(fname) < 4:
            return None
        for kind in cls:
            if fname.endswith(kind.extension):
                return kind, fname[:-4]
        return None


@dataclass(frozen=True)
class FileKey:
    """A parsed file name: chunk coordinates (both below 32) and file kind."""

    x: int
    z: int
    kind: FileKind

    @classmethod
    def parse(cls, name: str) -> FileKey | None:
        """Parse names like ``x3z17.nbt``; leading zeros are not accepted."""
        split = FileKind.parse_extension(name)
        if split is None:
            return None
        kind, stem = split

        if not stem.startswith("x"):
            return None

        x, x_left = 0, 2
        rest = stem[1:]
        for pos, c in enumerate(rest):
            if c in _DIGITS:
                if x_left == 0 or (x_left < 2 and x == 0):
                    return None
                x, x_left = x * 10 + int(c), x_left - 1
            elif c == "z":
                z_part = rest[pos + 1:]
                break
            else:
                return None
        else:
            return None

        z, z_left = 0, 2
        for c in z_part:
            if z_left == 0 or (z_left < 2 and z == 0):
                return None
            if c not in _DIGITS:
                return None
            z, z_left = z * 10 + int(c), z_left - 1

        if z_left < 2 and x < 32 and z < 32:
            return cls(x, z, kind)
        return None


@dataclass(frozen=True)
class FileHandle:
    """Access granted by one open() call."""

    can_read: bool
    can_write: bool


class HandleAllocator:
    """Hands out file handle numbers, starting at 1."""

    def __init__(self) -> None:
        self._last = 0

    def alloc(self) -> int:
        self._last += 1
        return self._last


@dataclass(frozen=True)
class InoSet:
    """The pair of inode numbers belonging to one chunk."""

    chunk_ino: int
    info_ino: int

    def get(self, kind: FileKind) -> int:
        return self.chunk_ino if kind is FileKind.CHUNK else self.info_ino

    def __iter__(self) -> Iterator[int]:
        yield self.chunk_ino
        yield self.info_ino


class InoAllocator:
    """Hands out inode pairs: an even chunk inode followed by its info inode."""

    def __init__(self) -> None:
        self._next = FUSE_ROOT_ID + 1

    def allocate(self) -> InoSet:
        self._next = (self._next + 1) & ~1
        inos = InoSet(self._next, self._next + 1)
        self._next += 2
        return inos


def _slice(data: bytes | bytearray, offset: int, size: int) -> bytes:
    if offset < 0:
        raise _fs_error(errno.EINVAL, "negative offset")
    return bytes(data[offset:offset + size])


@dataclass
class ChunkContent:
    """The raw payload of a chunk file."""

    data: bytearray = field(default_factory=bytearray)

    kind: ClassVar[FileKind] = FileKind.CHUNK

    def __len__(self) -> int:
        return len(self.data)

    def read(self, offset: int, size: int) -> bytes:
        return _slice(self.data, offset, size)

    def write(self, offset: int, data: bytes) -> int:
        """Write at ``offset``, growing with zeros as needed; returns bytes written."""
        if offset < 0:
            raise _fs_error(errno.EINVAL, "negative offset")
        end = offset + len(data)
        if end >= MAX_CHUNK_LEN:
            raise _fs_error(errno.EFBIG)
        if end > len(self.data):
            self.data.extend(bytes(end - len(self.data)))
        self.data[offset:end] = data
        return len(data)

    def truncate(self, size: int) -> None:
        if size >= MAX_CHUNK_LEN:
            raise _fs_error(errno.EFBIG)
        if size < len(self.data):
            del self.data[size:]
        else:
            self.data.extend(bytes(size - len(self.data)))


@dataclass
class InfoContent:
    """The compression selector file of a chunk."""

    compression_type: CompressionType

    kind: ClassVar[FileKind] = FileKind.COMPRESSION_INFO

    def _text(self) -> bytes:
        return self.compression_type.selector_string().encode("ascii")

    def __len__(self) -> int:
        return len(self._text())

    def read(self, offset: int, size: int) -> bytes:
        return _slice(self._text(), offset, size)

    def write(self, offset: int, data: bytes) -> int:
        """Replace the compression type from a whole selector written at offset 0."""
        if offset != 0:
            raise _fs_error(errno.EINVAL, "selector must be written at offset 0")
        try:
            text = bytes(data).decode("utf-8")
            self.compression_type = CompressionType.parse_selector(text)
        except (UnicodeDecodeError, ValueError) as exc:
            raise _fs_error(errno.EINVAL, str(exc)) from exc
        return len(data)


def content_for(kind: FileKind, chunk: Chunk) -> ChunkContent | InfoContent:
    if kind is FileKind.CHUNK:
        return ChunkContent(bytearray(chunk.data))
    return InfoContent(chunk.compression_type)


def blank_content(kind: FileKind) -> ChunkContent | InfoContent:
    if kind is FileKind.CHUNK:
        return ChunkContent()
    return InfoContent(CompressionType(42))


@dataclass
class Inode:
    """One file of the mounted directory, with its lookup and open-handle state."""

    ino: int
    x: int
    z: int
    content: ChunkContent | InfoContent
    mtime: float
    open_handles: dict[int, FileHandle] = field(default_factory=dict)
    linked: bool = True
    nlookup: int = 0

    @classmethod
    def from_chunk(cls, chunk: Chunk, inos: InoSet, kind: FileKind) -> Inode:
        return cls(inos.get(kind), chunk.x, chunk.z, content_for(kind, chunk), float(chunk.mtime))

    @classmethod
    def blank(cls, x: int, z: int, inos: InoSet, kind: FileKind) -> Inode:
        return cls(inos.get(kind), x, z, blank_content(kind), time.time())

    @property
    def kind(self) -> FileKind:
        return self.content.kind

    @property
    def fname(self) -> str:
        return self.kind.make_fname(self.x, self.z)

    def attr(self, writable: bool, uid: int, gid: int) -> FileAttr:
        perm = 0o644 if writable else 0o444
        return make_attr(
            self.ino,
            len(self.content),
            self.mtime,
            FileType.REGULAR_FILE,
            perm,
            int(self.linked),
            uid,
            gid,
        )

    def inc_lookup(self) -> None:
        self.nlookup += 1

    def dec_lookup(self, count: int) -> int:
        """Drop ``count`` lookups and return how many remain."""
        if self.nlookup < count:
            log.error(
                "Lookup count mismatch detected in %s. "
                "It may be wise to remount the smithy filesystem.",
                self.fname,
            )
        self.nlookup = max(self.nlookup - count, 0)
        return self.nlookup

    def can_discard(self) -> bool:
        return not self.linked and self.nlookup == 0 and not self.open_handles