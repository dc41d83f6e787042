"""Tar/gzip building blocks shared by the control and data archives"""
import gzip
import io
import os
import tarfile
import tempfile
import zlib
from contextlib import suppress
from typing import BinaryIO, Optional, Tuple, IO

from ipk.exceptions import IpkFormatError, IpkResourceError
from ipk.paths import slash
from ipk.util import _debug

# The user and group the special archive entries are owned by
ARCHIVE_OWNER = "root"

FILE_PERMISSION = 0o644
DIR_PERMISSION = 0o755

_COPY_CHUNK_SIZE = 64 * 1024


def special_header(name: str, size: int, mtime: int) -> tarfile.TarInfo:
    """Tar header for the "special" files and directories of the package

    A negative size yields a directory header, anything else a regular file.
    """
    tar_info = tarfile.TarInfo(name)
    tar_info.uname = ARCHIVE_OWNER
    tar_info.gname = ARCHIVE_OWNER
    tar_info.uid = 0
    tar_info.gid = 0
    tar_info.mtime = mtime
    if size >= 0:
        tar_info.type = tarfile.REGTYPE
        tar_info.size = size
        tar_info.mode = FILE_PERMISSION
    else:
        tar_info.type = tarfile.DIRTYPE
        tar_info.size = 0
        tar_info.mode = DIR_PERMISSION
    return tar_info


def file_header(name: str, size: int, mtime: int) -> tarfile.TarInfo:
    if size < 0:
        raise ValueError(f"Negative size for {name}: {size}")
    return special_header(name, size, mtime)


def directory_header(name: str, mtime: int) -> tarfile.TarInfo:
    return special_header(name, -1, mtime)


def compression_level(compress: bool) -> int:
    return 9 if compress else 0


def compress_stream(fileobj: IO[bytes]) -> Tuple[bytes, int]:
    """Read `fileobj` to the end

    Returns the content gzip'ed along with its uncompressed size.
    """
    buf = io.BytesIO()
    size = 0
    with gzip.GzipFile(fileobj=buf, mode="wb", compresslevel=9, mtime=0) as gzw:
        while True:
            chunk = fileobj.read(_COPY_CHUNK_SIZE)
            if not chunk:
                break
            gzw.write(chunk)
            size += len(chunk)
    return buf.getvalue(), size


def open_payload(payload: bytes) -> BinaryIO:
    return gzip.GzipFile(fileobj=io.BytesIO(payload), mode="rb")


def _add_member(
    tar_fd: tarfile.TarFile,
    tar_info: tarfile.TarInfo,
    fileobj: Optional[IO[bytes]] = None,
) -> None:
    try:
        tar_fd.addfile(tar_info, fileobj=fileobj)
    except (tarfile.TarError, gzip.BadGzipFile, ValueError, EOFError, zlib.error) as e:
        raise IpkFormatError(
            f'Unable to write tar entry "{tar_info.name}": {e}'
        ) from e
    except OSError as e:
        raise IpkResourceError(
            f'Unable to write tar entry "{tar_info.name}": {e}'
        ) from e


def add_archive_entry(
    tar_fd: tarfile.TarFile,
    tar_info: tarfile.TarInfo,
    payload: Optional[bytes] = None,
) -> None:
    """Add an entry to `tar_fd`, decompressing `payload` into it if present

    The name of `tar_info` is rewritten into its "./" form. Entries without a
    payload (directories, symlinks, ...) only get a header.
    """
    tar_info.name = slash(tar_info.name)
    if payload is None:
        _add_member(tar_fd, tar_info)
        return
    with open_payload(payload) as gzr:
        _add_member(tar_fd, tar_info, gzr)


class StagedArchiveWriter:
    """Write a tar.gz archive into an anonymous temporary file

    Entries are added via `add_entry`. Once done, `finish` hands over the
    finished archive as a readable stream together with its size. The
    backing file is unlinked at that point, so closing the stream releases
    the storage. If the archive is abandoned, `discard` must be called.

    There is deliberately no `close`; the only ways out are `finish` and
    `discard`.
    """

    def __init__(self, prefix: str, compress: bool) -> None:
        try:
            fd, self._path = tempfile.mkstemp(prefix=prefix, suffix=".tar.gz")
        except OSError as e:
            raise IpkResourceError(
                f"Unable to create temporary archive for {prefix}: {e}"
            ) from e
        self._file = os.fdopen(fd, "w+b")
        try:
            self._gzip = gzip.GzipFile(
                fileobj=self._file,
                mode="wb",
                compresslevel=compression_level(compress),
                mtime=0,
            )
            self._tar = tarfile.open(
                fileobj=self._gzip,
                mode="w|",
                # Entries may carry long names and link targets
                format=tarfile.GNU_FORMAT,
            )
        except (OSError, tarfile.TarError) as e:
            self._remove_backing_file()
            raise IpkResourceError(
                f'Unable to set up temporary archive "{self._path}": {e}'
            ) from e
        _debug(f"Staging archive in {self._path}")

    @property
    def path(self) -> str:
        return self._path

    def add_entry(
        self,
        tar_info: tarfile.TarInfo,
        payload: Optional[bytes] = None,
    ) -> None:
        add_archive_entry(self._tar, tar_info, payload)

    def add_bytes(self, tar_info: tarfile.TarInfo, data: bytes) -> None:
        tar_info.name = slash(tar_info.name)
        tar_info.size = len(data)
        _add_member(self._tar, tar_info, io.BytesIO(data))

    def finish(self) -> Tuple[BinaryIO, int]:
        """Complete the archive and return it for reading along with its size

        The caller owns (and must close) the returned stream. On failure, the
        temporary file is cleaned up before the error is raised.
        """
        error: Optional[Exception] = None
        message = ""
        size = -1
        steps = (
            ("close tar writer for", self._tar.close),
            ("close gzip writer for", self._gzip.close),
        )
        for description, step in steps:
            try:
                step()
            except (OSError, tarfile.TarError, zlib.error) as e:
                if error is None:
                    error, message = e, f'Unable to {description} "{self._path}": {e}'
        try:
            size = self._file.tell()
            self._file.seek(0, os.SEEK_SET)
        except OSError as e:
            if error is None:
                error, message = e, f'Unable to rewind "{self._path}": {e}'
        try:
            os.unlink(self._path)
        except OSError as e:
            if error is None:
                error, message = e, f'Unable to remove "{self._path}": {e}'
        if error is not None:
            self._remove_backing_file()
            raise IpkResourceError(message) from error
        _debug(f"Staged archive {self._path} finished with {size} bytes")
        return self._file, size

    def discard(self) -> None:
        """Throw away a partially written archive"""
        with suppress(OSError, tarfile.TarError, ValueError, zlib.error):
            self._tar.close()
        with suppress(OSError, ValueError, zlib.error):
            self._gzip.close()
        self._remove_backing_file()

    def _remove_backing_file(self) -> None:
        with suppress(OSError):
            self._file.close()
        with suppress(OSError):
            os.unlink(self._path)
