# smithy

Smithy works with Minecraft region files (`r.{x}.{z}.mca`, the "Anvil" format)
and presents them as a flat directory. Each of the up to 32 × 32 chunks stored
in a region appears as two files:

- `x{X}z{Z}.nbt`: the raw, still-compressed chunk payload.
- `x{X}z{Z}.cmp`: a one-line selector naming the payload's compression, for
  example `gzip [zlib] none lz4 zstd unknown(#)`.

Coordinates in file names are written without leading zeros (`x3z17.nbt`,
not `x03z17.nbt`) and must be below 32.

## Modules

- `smithy.anvil`: reading and writing region files. `RegionFile(data)` parses
  the header and sector table from the file's bytes; `lookup_chunk(x, z)`
  returns a `Chunk` (coordinates, modification time in epoch seconds,
  `CompressionType` and payload) or `None`; `write_chunk`, `free_chunk`,
  `delete_chunk` and `write_out` change the region and save it. Sector
  allocation reuses free gaps before growing the file. Chunks too large to
  store, or for which no sectors can be allocated, are dropped with a logged
  warning. Helper functions `coords_to_idx` and `idx_to_coords` convert
  between chunk coordinates and header indices.
- `smithy.util`: `GuardedFile(path, writable)`, an open region file that
  remembers when it was last known to be in sync. `read_all()` returns its
  content, `acquire()` returns whether the file was modified since then together
  with the file object. It is a context manager.
- `smithy.files`: the pieces of the directory view: file names (`FileKey`,
  `FileKind`), file attributes (`FileAttr`, `make_attr`), inodes (`Inode`,
  `InoSet`, `InoAllocator`), handles (`FileHandle`, `HandleAllocator`) and file
  contents (`ChunkContent`, `InfoContent`).
- `smithy.filesystem`: `SmithyFS`, the filesystem operations over one region:
  `lookup`, `forget`, `getattr`, `mknod`, `open`, `opendir`, `read`, `write`,
  `readdir`, `releasedir`, `release`, `setattr` (truncation only), `unlink`,
  `flush`, `fsync` and `write_back`. Failures raise `OSError` carrying the
  matching `errno` value (`ENOENT`, `EBADF`, `EROFS`, `EACCES`, `EFBIG`, ...).
- `smithy.cli`: an `argparse` parser (`build_parser`, `parse_args`) for the
  `mount` and `completion` subcommands, and `ExtendedFilename`, which checks
  that a path ends in `r.{x}.{z}.mca` and extracts the region coordinates.

## Reading a region

```python
from smithy.anvil import RegionFile
from smithy.util import GuardedFile

with GuardedFile("r.0.0.mca", False) as backing:
    region = RegionFile(backing.read_all())

chunk = region.lookup_chunk(3, 7)
if chunk is not None:
    print(chunk.compression_type.selector_string(), len(chunk.data))
```

## Editing through the directory view

```python
import os

from smithy.anvil import RegionFile
from smithy.filesystem import SmithyFS
from smithy.files import FUSE_ROOT_ID
from smithy.util import GuardedFile

backing = GuardedFile("r.0.0.mca", True)
fs = SmithyFS(RegionFile(backing.read_all()), os.geteuid(), os.getegid(), True, backing)

attr = fs.lookup(FUSE_ROOT_ID, "x3z7.nbt")
fh = fs.open(attr.ino, os.O_RDWR)
payload = fs.read(attr.ino, fh, 0, attr.size)
fs.write(attr.ino, fh, 0, payload)
fs.flush(attr.ino, fh)
fs.release(attr.ino, fh)
backing.close()
```

Changes are kept in memory and saved to the region file by `write_back`, which
runs on `flush` or `fsync` of a handle opened for writing, on `release` with
`flush=True`, and after `unlink`. Only changed sectors are rewritten, unless the
backing file was modified since it was last known to be in sync; then every
sector is written again. A read-only `SmithyFS` refuses writes with `EROFS`.

New chunks are created with `mknod` on a chunk or compression file name. Their
compression file starts as `unknown(42)`; write the correct selector to the
`.cmp` file before saving. Deleting a chunk is done by unlinking its `.nbt`
file; unlinking a `.cmp` file is refused with `EACCES`.

## Compression selectors

`CompressionType.parse_selector` accepts a bare name (`gzip`, `zlib`, `none`,
`lz4`, `zstd`, case-insensitive), a numeric id from 0 to 255, `unknown(N)`, or a
full selector line in which the chosen entry is wrapped in square brackets. It
raises `ValueError` for anything else.

```python
from smithy.anvil import CompressionType

CompressionType.parse_selector("gzip [zlib] none lz4 zstd unknown(#)")  # CompressionType.ZLIB
```

Chunks whose compression id has the high bit set are stored outside the region
file; `RegionFile` refuses those with `ExternalChunkError`.

## Region file names

```python
from smithy.cli import ExtendedFilename

name = ExtendedFilename.parse("world/region/r.-1.2.mca")
print(name.x, name.z)  # -1 2
```

Names that do not end in `r.{x}.{z}.mca` raise `ValueError`.

## What this package does not do

- It does not attach `SmithyFS` to the kernel. There is no FUSE binding: the
  operations are plain method calls, and mounting a region as a real directory
  needs a FUSE library to drive them.
- It installs no command. `smithy.cli` only parses arguments; nothing acts on
  a parsed `mount` or `completion` command, and no shell completion scripts
  are generated.
- It does not decompress or interpret chunk payloads; `.nbt` files hold the
  stored bytes exactly as they are in the region file.