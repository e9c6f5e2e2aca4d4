import errno
import os
import stat

import pytest

from smithy.anvil import HEADER_LEN, CompressionType, RegionFile
from smithy.files import FUSE_ROOT_ID, FileType
from smithy.filesystem import SmithyFS
from smithy.util import GuardedFile

ROOT = FUSE_ROOT_ID


@pytest.fixture
def make_fs(tmp_path):
    opened = []

    def factory(writable=True, chunks=((1, 2, b"payload"),)):
        path = tmp_path / "r.0.0.mca"
        path.write_bytes(bytes(HEADER_LEN))
        region = RegionFile(path.read_bytes())
        for x, z, data in chunks:
            region.write_chunk(x, z, data, CompressionType.ZLIB, 1000)
        backing = GuardedFile(path, writable)
        opened.append(backing)
        return SmithyFS(region, 1000, 1000, writable, backing), path

    yield factory
    for backing in opened:
        backing.close()


def reload(path, x, z):
    return RegionFile(path.read_bytes()).lookup_chunk(x, z)


def test_lookup_existing_chunk(make_fs):
    fs, _ = make_fs()
    attr = fs.lookup(ROOT, "x1z2.nbt")
    assert attr.size == len(b"payload")
    assert attr.kind is FileType.REGULAR_FILE
    assert attr.perm == 0o644
    assert attr.nlink == 1
    assert attr.mtime == 1000.0
    info = fs.lookup(ROOT, "x1z2.cmp")
    assert info.ino == attr.ino + 1
    assert info.size == len(CompressionType.ZLIB.selector_string())


def test_lookup_errors(make_fs):
    fs, _ = make_fs()
    with pytest.raises(OSError) as exc:
        fs.lookup(ROOT, "x5z5.nbt")
    assert exc.value.errno == errno.ENOENT
    with pytest.raises(OSError) as exc:
        fs.lookup(ROOT + 5, "x1z2.nbt")
    assert exc.value.errno == errno.ENOENT
    with pytest.raises(OSError) as exc:
        fs.lookup(ROOT, "junk")
    assert exc.value.errno == errno.ENOENT


def test_root_attr_depends_on_writable(make_fs):
    fs, _ = make_fs(writable=True)
    ro, _ = make_fs(writable=False)
    assert fs.getattr(ROOT).perm == 0o755
    assert ro.getattr(ROOT).perm == 0o555
    assert fs.getattr(ROOT).kind is FileType.DIRECTORY
    assert ro.getattr(ROOT).uid == 1000


def test_getattr_unknown_inode(make_fs):
    fs, _ = make_fs()
    with pytest.raises(OSError) as exc:
        fs.getattr(999)
    assert exc.value.errno == errno.ENOENT


def test_readdir_lists_entries(make_fs):
    fs, _ = make_fs()
    fh = fs.opendir(ROOT)
    entries = fs.readdir(ROOT, fh, 0)
    assert [e.name for e in entries] == [".", "..", "x1z2.nbt", "x1z2.cmp"]
    assert [e.offset for e in entries] == [1, 2, 3, 4]
    assert entries[2].ino == fs.lookup(ROOT, "x1z2.nbt").ino
    rest = fs.readdir(ROOT, fh, 2)
    assert [e.name for e in rest] == ["x1z2.nbt", "x1z2.cmp"]
    fs.releasedir(fh)
    with pytest.raises(OSError) as exc:
        fs.readdir(ROOT, fh, 0)
    assert exc.value.errno == errno.EBADF


def test_opendir_and_releasedir_errors(make_fs):
    fs, _ = make_fs()
    with pytest.raises(OSError) as exc:
        fs.opendir(ROOT + 1)
    assert exc.value.errno == errno.ENOTDIR
    with pytest.raises(OSError) as exc:
        fs.releasedir(77)
    assert exc.value.errno == errno.EBADF


def test_read_chunk_and_info(make_fs):
    fs, _ = make_fs(writable=False)
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    fh = fs.open(ino, os.O_RDONLY)
    assert fs.read(ino, fh, 0, 100) == b"payload"
    assert fs.read(ino, fh, 3, 2) == b"lo"
    info = fs.lookup(ROOT, "x1z2.cmp").ino
    ifh = fs.open(info, os.O_RDONLY)
    assert fs.read(info, ifh, 0, 4096) == CompressionType.ZLIB.selector_string().encode()


def test_open_errors(make_fs):
    ro, _ = make_fs(writable=False)
    ino = ro.lookup(ROOT, "x1z2.nbt").ino
    with pytest.raises(OSError) as exc:
        ro.open(ino, os.O_WRONLY)
    assert exc.value.errno == errno.EROFS
    with pytest.raises(OSError) as exc:
        ro.open(ino, os.O_RDONLY | os.O_TRUNC)
    assert exc.value.errno == errno.EACCES
    with pytest.raises(OSError) as exc:
        ro.open(999, os.O_RDONLY)
    assert exc.value.errno == errno.ENOENT


def test_read_permission_and_handle_errors(make_fs):
    fs, _ = make_fs()
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    fh = fs.open(ino, os.O_WRONLY)
    with pytest.raises(OSError) as exc:
        fs.read(ino, fh, 0, 10)
    assert exc.value.errno == errno.EACCES
    with pytest.raises(OSError) as exc:
        fs.read(ino, fh + 100, 0, 10)
    assert exc.value.errno == errno.EBADF
    rfh = fs.open(ino, os.O_RDONLY)
    with pytest.raises(OSError) as exc:
        fs.write(ino, rfh, 0, b"x")
    assert exc.value.errno == errno.EACCES


def test_write_then_flush_saves(make_fs):
    fs, path = make_fs()
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    fh = fs.open(ino, os.O_RDWR)
    assert fs.write(ino, fh, 0, b"PAY") == 3
    assert fs.read(ino, fh, 0, 100) == b"PAYload"
    fs.flush(ino, fh)
    chunk = reload(path, 1, 2)
    assert chunk.data == b"PAYload"
    assert chunk.compression_type == CompressionType.ZLIB


def test_flush_on_read_only_fs(make_fs):
    fs, _ = make_fs(writable=False)
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    fh = fs.open(ino, os.O_RDONLY)
    with pytest.raises(OSError) as exc:
        fs.flush(ino, fh)
    assert exc.value.errno == errno.ENOSYS
    with pytest.raises(OSError) as exc:
        fs.fsync(ino, fh)
    assert exc.value.errno == errno.ENOSYS


def test_mknod_and_release_with_flush(make_fs):
    fs, path = make_fs()
    attr = fs.mknod(ROOT, "x3z4.nbt", stat.S_IFREG | 0o644)
    assert attr.size == 0
    info = fs.lookup(ROOT, "x3z4.cmp")
    assert info.size == len(CompressionType(42).selector_string())

    ifh = fs.open(info.ino, os.O_WRONLY)
    assert fs.write(info.ino, ifh, 0, b"gzip\n") == 5
    fs.release(info.ino, ifh)

    fh = fs.open(attr.ino, os.O_WRONLY)
    fs.write(attr.ino, fh, 0, b"fresh data")
    fs.release(attr.ino, fh, flush=True)

    chunk = reload(path, 3, 4)
    assert chunk.data == b"fresh data"
    assert chunk.compression_type == CompressionType.GZIP
    assert reload(path, 1, 2).data == b"payload"


def test_mknod_errors(make_fs):
    fs, _ = make_fs()
    mode = stat.S_IFREG | 0o644
    with pytest.raises(OSError) as exc:
        fs.mknod(ROOT, "x1z2.cmp", mode)
    assert exc.value.errno == errno.EEXIST
    with pytest.raises(OSError) as exc:
        fs.mknod(ROOT, "bad.nbt", mode)
    assert exc.value.errno == errno.EINVAL
    with pytest.raises(OSError) as exc:
        fs.mknod(ROOT, "x7z7.nbt", stat.S_IFDIR | 0o755)
    assert exc.value.errno == errno.EPERM
    with pytest.raises(OSError) as exc:
        fs.mknod(ROOT + 1, "x7z7.nbt", mode)
    assert exc.value.errno == errno.ENOENT
    ro, _ = make_fs(writable=False)
    with pytest.raises(OSError) as exc:
        ro.mknod(ROOT, "x7z7.nbt", mode)
    assert exc.value.errno == errno.EROFS


def test_info_write_validation(make_fs):
    fs, _ = make_fs()
    ino = fs.lookup(ROOT, "x1z2.cmp").ino
    fh = fs.open(ino, os.O_RDWR)
    with pytest.raises(OSError) as exc:
        fs.write(ino, fh, 1, b"gzip")
    assert exc.value.errno == errno.EINVAL
    with pytest.raises(OSError) as exc:
        fs.write(ino, fh, 0, b"nonsense")
    assert exc.value.errno == errno.EINVAL
    fs.write(ino, fh, 0, b"gzip zlib none [lz4] zstd unknown(#)")
    assert fs.read(ino, fh, 0, 4096) == CompressionType.LZ4.selector_string().encode()


def test_unlink_deletes_and_notifies(make_fs):
    fs, path = make_fs()
    calls = []
    fs.notifier = lambda parent, name: calls.append((parent, name))
    fs.unlink(ROOT, "x1z2.nbt")
    assert calls == [(ROOT, "x1z2.nbt"), (ROOT, "x1z2.cmp")]
    assert reload(path, 1, 2) is None
    with pytest.raises(OSError) as exc:
        fs.lookup(ROOT, "x1z2.nbt")
    assert exc.value.errno == errno.ENOENT
    with pytest.raises(OSError) as exc:
        fs.unlink(ROOT, "x1z2.nbt")
    assert exc.value.errno == errno.ENOENT


def test_unlink_info_file_refused(make_fs):
    fs, _ = make_fs()
    with pytest.raises(OSError) as exc:
        fs.unlink(ROOT, "x1z2.cmp")
    assert exc.value.errno == errno.EACCES
    assert fs.lookup(ROOT, "x1z2.nbt").size == len(b"payload")


def test_forget_discards_unlinked_inode(make_fs):
    fs, _ = make_fs()
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    fs.unlink(ROOT, "x1z2.nbt")
    assert fs.getattr(ino).nlink == 0
    with pytest.raises(OSError) as exc:
        fs.getattr(ino + 1)
    assert exc.value.errno == errno.ENOENT
    fs.forget(ino, 1)
    with pytest.raises(OSError) as exc:
        fs.getattr(ino)
    assert exc.value.errno == errno.ENOENT


def test_open_handle_keeps_unlinked_inode(make_fs):
    fs, _ = make_fs()
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    fh = fs.open(ino, os.O_RDONLY)
    fs.unlink(ROOT, "x1z2.nbt")
    fs.forget(ino, 1)
    assert fs.read(ino, fh, 0, 100) == b"payload"
    fs.release(ino, fh)
    with pytest.raises(OSError) as exc:
        fs.getattr(ino)
    assert exc.value.errno == errno.ENOENT


def test_release_bad_handle(make_fs):
    fs, _ = make_fs()
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    with pytest.raises(OSError) as exc:
        fs.release(ino, 55)
    assert exc.value.errno == errno.EBADF
    with pytest.raises(OSError) as exc:
        fs.release(999, 1)
    assert exc.value.errno == errno.ENOENT


def test_setattr_truncates(make_fs):
    fs, path = make_fs()
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    attr = fs.setattr(ino, size=3)
    assert attr.size == 3
    fh = fs.open(ino, os.O_RDWR)
    assert fs.read(ino, fh, 0, 100) == b"pay"
    fs.fsync(ino, fh)
    assert reload(path, 1, 2).data == b"pay"


def test_setattr_errors(make_fs):
    fs, _ = make_fs()
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    with pytest.raises(OSError) as exc:
        fs.setattr(ino)
    assert exc.value.errno == errno.ENOSYS
    rfh = fs.open(ino, os.O_RDONLY)
    with pytest.raises(OSError) as exc:
        fs.setattr(ino, size=1, fh=rfh)
    assert exc.value.errno == errno.EACCES
    ro, _ = make_fs(writable=False)
    ro_ino = ro.lookup(ROOT, "x1z2.nbt").ino
    with pytest.raises(OSError) as exc:
        ro.setattr(ro_ino, size=1)
    assert exc.value.errno == errno.EROFS


def test_write_on_read_only_fs(make_fs):
    fs, _ = make_fs(writable=False)
    ino = fs.lookup(ROOT, "x1z2.nbt").ino
    fh = fs.open(ino, os.O_RDONLY)
    with pytest.raises(OSError) as exc:
        fs.write(ino, fh, 0, b"x")
    assert exc.value.errno == errno.EROFS