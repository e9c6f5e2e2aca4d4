"""The mounted directory: one chunk file and one compression file per stored chunk."""

from __future__ import annotations

import dataclasses
import errno
import logging
import os
import stat
import threading
import time
from dataclasses import dataclass
from typing import Callable

from smithy.anvil import RegionFile, coords_to_idx, idx_to_coords
from smithy.files import (
    FUSE_ROOT_ID,
    ROOT_DIR_ATTR,
    ChunkContent,
    FileAttr,
    FileHandle,
    FileKey,
    FileKind,
    FileType,
    HandleAllocator,
    InfoContent,
    Inode,
    InoAllocator,
    InoSet,
    _fs_error,
)
from smithy.util import GuardedFile

log = logging.getLogger(__name__)

_O_ACCMODE = os.O_RDONLY | os.O_WRONLY | os.O_RDWR

Notifier = Callable[[int, str], None]


@dataclass(frozen=True)
class DirEntry:
    """One directory listing entry; ``offset`` is where the next listing resumes."""

    ino: int
    offset: int
    kind: FileType
    name: str


@dataclass(frozen=True)
class _Deletion:
    ino: int
    x: int
    z: int
    kind: FileKind

    @property
    def fname(self) -> str:
        return self.kind.make_fname(self.x, self.z)


class SmithyFS:
    """Filesystem operations over a region file; failures raise OSError with an errno."""

    def __init__(
        self,
        region: RegionFile,
        uid: int,
        gid: int,
        writable: bool,
        backing_file: GuardedFile,
    ) -> None:
        self.region = region
        self.uid = uid
        self.gid = gid
        self.writable = writable
        self.root_dir_attr = dataclasses.replace(
            ROOT_DIR_ATTR, uid=uid, gid=gid, perm=0o755 if writable else 0o555
        )
        self.backing_file = backing_file

        self._links: dict[tuple[int, int], InoSet] = {}
        self._inodes: dict[int, Inode] = {}
        self._dirty_chunks: set[int] = set()
        self._dir_handles: dict[int, list[DirEntry]] = {}
        self._ino_alloc = InoAllocator()
        self._fh_alloc = HandleAllocator()

        self.notifier: Notifier | None = None
        self._notifier_lock = threading.Lock()

        for z in range(32):
            for x in range(32):
                chunk = region.lookup_chunk(x, z)
                if chunk is None:
                    continue
                inos = self._ino_alloc.allocate()
                self._links[(x, z)] = inos
                for kind in FileKind:
                    self._inodes[inos.get(kind)] = Inode.from_chunk(chunk, inos, kind)

    # -- internal helpers -------------------------------------------------

    def _inode(self, ino: int) -> Inode:
        inode = self._inodes.get(ino)
        if inode is None:
            raise _fs_error(errno.ENOENT)
        return inode

    def _key_inode(self, key: FileKey) -> Inode | None:
        inos = self._links.get((key.x, key.z))
        if inos is None:
            return None
        return self._inodes.get(inos.get(key.kind))

    def _attr(self, inode: Inode) -> FileAttr:
        return inode.attr(self.writable, self.uid, self.gid)

    def _handle(self, inode: Inode, fh: int) -> FileHandle:
        handle = inode.open_handles.get(fh)
        if handle is None:
            raise _fs_error(errno.EBADF)
        return handle

    def _gc(self, ino: int) -> Inode | None:
        inode = self._inodes.get(ino)
        if inode is None or not inode.can_discard():
            return None
        log.info("Discarding inode %d", ino)
        return self._inodes.pop(ino)

    def _notify_deletion(self, info: _Deletion) -> None:
        if not self._notifier_lock.acquire(blocking=False):
            log.warning(
                "Failed to acquire notifier lock. Deletion of inode %d will be silent.", info.ino
            )
            return
        try:
            if self.notifier is None:
                return
            log.info("Notifying deletion of inode %d", info.ino)
            try:
                self.notifier(FUSE_ROOT_ID, info.fname)
            except OSError as exc:
                log.warning("Failed to notify deletion of inode %d: %s", info.ino, exc)
            else:
                log.info("Notified deletion of inode %d", info.ino)
        finally:
            self._notifier_lock.release()

    def _mark_dirty(self, x: int, z: int) -> None:
        if not self.writable:
            return
        self._dirty_chunks.add(coords_to_idx(x, z))
        log.debug("Marked chunk [%d %d] as dirty", x, z)

    def _create_dir_handle(self) -> int:
        fh = self._fh_alloc.alloc()
        listing = [(FUSE_ROOT_ID, FileType.DIRECTORY, "."), (FUSE_ROOT_ID, FileType.DIRECTORY, "..")]
        for z in range(32):
            for x in range(32):
                inos = self._links.get((x, z))
                if inos is None:
                    continue
                listing.extend(
                    (inos.get(kind), FileType.REGULAR_FILE, kind.make_fname(x, z))
                    for kind in FileKind
                )
        self._dir_handles[fh] = [
            DirEntry(ino, pos + 1, kind, name) for pos, (ino, kind, name) in enumerate(listing)
        ]
        return fh

    def _write_back_if_writer(self, ino: int, fh: int) -> None:
        if not self.writable:
            raise _fs_error(errno.ENOSYS)
        inode = self._inodes.get(ino)
        handle = inode.open_handles.get(fh) if inode is not None else None
        if handle is not None and handle.can_write:
            self.write_back()

    # -- saving -----------------------------------------------------------

    def write_back(self) -> None:
        """Store every changed chunk in the region and write it to the backing file."""
        if not self.writable:
            log.warning("Read-only but asked to write???")
            return

        log.info("Writing all changes to mounted file")

        deleted: list[tuple[int, int]] = []
        modified: list[tuple[int, int, ChunkContent, InfoContent, float]] = []

        for idx in sorted(self._dirty_chunks):
            x, z = idx_to_coords(idx)
            inos = self._links.get((x, z))
            chunk_inode = info_inode = None
            if inos is not None:
                chunk_inode = self._inodes.get(inos.chunk_ino)
                info_inode = self._inodes.get(inos.info_ino)

            if chunk_inode is not None and info_inode is not None:
                chunk_content, info_content = chunk_inode.content, info_inode.content
                if isinstance(chunk_content, ChunkContent) and isinstance(info_content, InfoContent):
                    log.info("> Writing chunk [%d %d]", x, z)
                    modified.append((x, z, chunk_content, info_content, chunk_inode.mtime))
                else:
                    log.warning("> Chunk [%d %d] is broken and cannot be written", x, z)
            else:
                log.info("> Writing deletion of chunk [%d %d]", x, z)
                deleted.append((x, z))

        for x, z in deleted:
            self.region.delete_chunk(x, z)

        for x, z, *_ in modified:
            self.region.free_chunk(x, z)

        # Largest first, to reduce fragmentation.
        modified.sort(key=lambda entry: len(entry[2]), reverse=True)

        for x, z, chunk_content, info_content, mtime in modified:
            self.region.write_chunk(
                x, z, bytes(chunk_content.data), info_content.compression_type, mtime
            )

        full_write, file = self.backing_file.acquire()
        log.info("> Writing all sectors" if full_write else "> Writing changed sectors")
        try:
            self.region.write_out(full_write, file)
        except OSError as exc:
            log.error("Failed to write out region: %s", exc)
        else:
            self._dirty_chunks.clear()

    # -- filesystem operations -------------------------------------------

    def lookup(self, parent: int, name: str) -> FileAttr:
        if parent != FUSE_ROOT_ID:
            raise _fs_error(errno.ENOENT)
        key = FileKey.parse(name)
        inode = self._key_inode(key) if key is not None else None
        if inode is None:
            raise _fs_error(errno.ENOENT, name)
        inode.inc_lookup()
        return self._attr(inode)

    def forget(self, ino: int, nlookup: int) -> None:
        inode = self._inodes.get(ino)
        if inode is None:
            return
        if inode.dec_lookup(nlookup) == 0:
            self._gc(ino)

    def getattr(self, ino: int) -> FileAttr:
        if ino == FUSE_ROOT_ID:
            return self.root_dir_attr
        return self._attr(self._inode(ino))

    def mknod(self, parent: int, name: str, mode: int) -> FileAttr:
        if not self.writable:
            raise _fs_error(errno.EROFS)
        if parent != FUSE_ROOT_ID:
            raise _fs_error(errno.ENOENT)
        if stat.S_IFMT(mode) != stat.S_IFREG:
            raise _fs_error(errno.EPERM)
        key = FileKey.parse(name)
        if key is None:
            raise _fs_error(errno.EINVAL, name)
        if (key.x, key.z) in self._links:
            raise _fs_error(errno.EEXIST, name)

        inos = self._ino_alloc.allocate()
        chunk_inode = Inode.blank(key.x, key.z, inos, FileKind.CHUNK)
        info_inode = Inode.blank(key.x, key.z, inos, FileKind.COMPRESSION_INFO)
        log.warning("Make sure to set correct compression type in %s", info_inode.fname)

        self._links[(key.x, key.z)] = inos
        self._inodes[inos.chunk_ino] = chunk_inode
        self._inodes[inos.info_ino] = info_inode
        self._mark_dirty(key.x, key.z)

        return self._attr(self._inodes[inos.get(key.kind)])

    def open(self, ino: int, flags: int) -> int:
        access = flags & _O_ACCMODE
        if access == os.O_RDONLY:
            if flags & os.O_TRUNC:
                raise _fs_error(errno.EACCES)
            read, write = True, False
        elif access == os.O_WRONLY:
            read, write = False, True
        elif access == os.O_RDWR:
            read, write = True, True
        else:
            raise _fs_error(errno.EINVAL)

        if write and not self.writable:
            raise _fs_error(errno.EROFS)

        inode = self._inode(ino)
        fh = self._fh_alloc.alloc()
        inode.open_handles[fh] = FileHandle(read, write)
        return fh

    def opendir(self, ino: int) -> int:
        if ino != FUSE_ROOT_ID:
            raise _fs_error(errno.ENOTDIR)
        return self._create_dir_handle()

    def read(self, ino: int, fh: int, offset: int, size: int) -> bytes:
        inode = self._inode(ino)
        if not self._handle(inode, fh).can_read:
            raise _fs_error(errno.EACCES)
        return inode.content.read(offset, size)

    def write(self, ino: int, fh: int, offset: int, data: bytes) -> int:
        if not self.writable:
            raise _fs_error(errno.EROFS)
        inode = self._inode(ino)
        if not self._handle(inode, fh).can_write:
            raise _fs_error(errno.EACCES)
        try:
            return inode.content.write(offset, data)
        finally:
            inode.mtime = time.time()
            self._mark_dirty(inode.x, inode.z)

    def readdir(self, ino: int, fh: int, offset: int) -> list[DirEntry]:
        if ino != FUSE_ROOT_ID:
            raise _fs_error(errno.ENOENT)
        entries = self._dir_handles.get(fh)
        if entries is None:
            raise _fs_error(errno.EBADF)
        return entries[offset:]

    def releasedir(self, fh: int) -> None:
        if self._dir_handles.pop(fh, None) is None:
            raise _fs_error(errno.EBADF)

    def release(self, ino: int, fh: int, flush: bool = False) -> None:
        inode = self._inode(ino)
        if inode.open_handles.pop(fh, None) is None:
            raise _fs_error(errno.EBADF)
        self._gc(ino)
        if flush and self.writable:
            self.write_back()

    def setattr(self, ino: int, size: int | None = None, fh: int | None = None) -> FileAttr:
        """Only truncation is supported; anything else raises ENOSYS."""
        inode = self._inode(ino)

        if size is None:
            log.debug("[Not Implemented] setattr(ino: %#x, fh: %r)", ino, fh)
            raise _fs_error(errno.ENOSYS)

        if not self.writable:
            raise _fs_error(errno.EROFS)

        handle = inode.open_handles.get(fh) if fh is not None else None
        if handle is not None and not handle.can_write:
            raise _fs_error(errno.EACCES)

        if isinstance(inode.content, ChunkContent):
            inode.content.truncate(size)
            log.debug("Resized ino %#x to %d bytes", ino, size)

        attr = self._attr(inode)
        self._mark_dirty(inode.x, inode.z)
        return attr

    def unlink(self, parent: int, name: str) -> None:
        if parent != FUSE_ROOT_ID:
            raise _fs_error(errno.ENOENT)
        key = FileKey.parse(name)
        if key is None:
            raise _fs_error(errno.ENOENT, name)
        if key.kind is not FileKind.CHUNK:
            raise _fs_error(errno.EACCES, name)

        inos = self._links.pop((key.x, key.z), None)
        if inos is None:
            raise _fs_error(errno.ENOENT, name)

        to_delete: list[_Deletion] = []
        for ino in inos:
            inode = self._inodes.get(ino)
            if inode is None:
                continue
            inode.linked = False
            to_delete.append(_Deletion(inode.ino, inode.x, inode.z, inode.kind))
            self._gc(ino)
            self._mark_dirty(inode.x, inode.z)

        if not to_delete:
            raise _fs_error(errno.ENOENT, name)

        for info in to_delete:
            self._notify_deletion(info)
        self.write_back()

    def flush(self, ino: int, fh: int) -> None:
        self._write_back_if_writer(ino, fh)

    def fsync(self, ino: int, fh: int) -> None:
        self._write_back_if_writer(ino, fh)