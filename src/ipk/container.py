"""The outer IPK container: debian-binary, control.tar.gz and data.tar.gz

The container is a POSIX tar archive, optionally gzip'ed. Only the tar
variants are supported; the ar-based variants are not.
"""
import enum
import gzip
import io
import os
import tarfile
import time
import zlib
from contextlib import suppress
from typing import BinaryIO, Callable, IO, Optional, Tuple, Union

from ipk.archive import file_header
from ipk.control import (
    CONTROL_ARCHIVE_NAME,
    create_control_archive,
    read_control_archive,
)
from ipk.data import DATA_ARCHIVE_NAME, create_data_archive, read_data_archive
from ipk.exceptions import (
    IpkConflictError,
    IpkFormatError,
    IpkResourceError,
    IpkValidationError,
)
from ipk.package import IpkPackage
from ipk.paths import slash, unslash
from ipk.util import _debug, assume_not_none

FORMAT_MARKER_NAME = "debian-binary"
FORMAT_MARKER_CONTENT = b"2.0\n"


class IpkFormat(enum.IntFlag):
    UNKNOWN = 0
    # Flag marking the container as gzip'ed
    GZIP = 1
    TAR = 2
    TAR_GZIP = TAR | GZIP

    @property
    def is_gzipped(self) -> bool:
        return bool(int(self) & int(IpkFormat.GZIP))


def _check_format(fmt: IpkFormat) -> None:
    if int(fmt) & ~int(IpkFormat.GZIP) != int(IpkFormat.TAR):
        raise IpkValidationError(f"Unsupported format: {fmt!r}")


def _add_stream(
    tar_fd: tarfile.TarFile,
    name: str,
    stream: IO[bytes],
    size: int,
    mtime: int,
) -> None:
    try:
        tar_fd.addfile(file_header(slash(name), size, mtime), fileobj=stream)
    except (tarfile.TarError, ValueError) as e:
        raise IpkFormatError(f'Unable to write "{name}": {e}') from e
    except OSError as e:
        raise IpkResourceError(f'Unable to write "{name}": {e}') from e


def _write_sub_archive(
    tar_fd: tarfile.TarFile,
    name: str,
    creator: Callable[[IpkPackage, bool, int], Tuple[BinaryIO, int]],
    pkg: IpkPackage,
    compress: bool,
    mtime: int,
) -> None:
    archive, size = creator(pkg, compress, mtime)
    with archive:
        _add_stream(tar_fd, name, archive, size, mtime)


def _write_tar(
    tar_fd: tarfile.TarFile, pkg: IpkPackage, compress: bool, mtime: int
) -> None:
    _add_stream(
        tar_fd,
        FORMAT_MARKER_NAME,
        io.BytesIO(FORMAT_MARKER_CONTENT),
        len(FORMAT_MARKER_CONTENT),
        mtime,
    )
    _write_sub_archive(
        tar_fd, CONTROL_ARCHIVE_NAME, create_control_archive, pkg, compress, mtime
    )
    _write_sub_archive(
        tar_fd, DATA_ARCHIVE_NAME, create_data_archive, pkg, compress, mtime
    )


def write_ipk(
    pkg: IpkPackage,
    fileobj: IO[bytes],
    fmt: IpkFormat,
    *,
    mtime: Optional[int] = None,
) -> None:
    """Write `pkg` to `fileobj` in the given format

    All entries share one modification time; `mtime` defaults to the
    current time. The inner archives are only compressed if the container
    itself is not.
    """
    if fileobj is None:
        raise IpkValidationError("No output stream supplied")
    _check_format(fmt)
    if mtime is None:
        mtime = int(time.time())
    try:
        if IpkFormat(fmt).is_gzipped:
            with gzip.GzipFile(
                fileobj=fileobj, mode="wb", compresslevel=9, mtime=mtime
            ) as gzw:
                _write_container(gzw, pkg, mtime, compress=False)
        else:
            _write_container(fileobj, pkg, mtime, compress=True)
    except (OSError, zlib.error) as e:
        raise IpkResourceError(f"Unable to write the package: {e}") from e


def _write_container(
    fileobj: IO[bytes], pkg: IpkPackage, mtime: int, *, compress: bool
) -> None:
    with tarfile.open(
        fileobj=fileobj, mode="w|", format=tarfile.USTAR_FORMAT
    ) as tar_fd:
        _write_tar(tar_fd, pkg, compress, mtime)


def write_ipk_path(
    pkg: IpkPackage,
    path: Union[str, "os.PathLike[str]"],
    fmt: IpkFormat,
    *,
    mtime: Optional[int] = None,
) -> None:
    """Write `pkg` to the file at `path`, which is created or truncated

    A partially written file is removed if writing fails.
    """
    try:
        fd = open(path, "wb")
    except OSError as e:
        raise IpkResourceError(f'Unable to create "{path}": {e}') from e
    try:
        with fd:
            write_ipk(pkg, fd, fmt, mtime=mtime)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(path)
        raise
    _debug(f"Wrote {path}")


def _read_tar(tar_fd: tarfile.TarFile) -> IpkPackage:
    pkg = IpkPackage()
    control_read = False
    data_read = False
    for member in tar_fd:
        if not member.isreg():
            continue
        name = unslash(member.name)
        if name == CONTROL_ARCHIVE_NAME:
            if control_read:
                raise IpkConflictError("Control archive has already been read")
            read_control_archive(pkg, assume_not_none(tar_fd.extractfile(member)))
            control_read = True
        elif name == DATA_ARCHIVE_NAME:
            if data_read:
                raise IpkConflictError("Data archive has already been read")
            read_data_archive(pkg, assume_not_none(tar_fd.extractfile(member)))
            data_read = True
        else:
            _debug(f'Ignoring "{member.name}" in the package')
    if not control_read:
        raise IpkConflictError("No control archive found in package")
    if not data_read:
        _debug("The package has no data archive")
    return pkg


def _read_plain_tar(fileobj: IO[bytes]) -> IpkPackage:
    try:
        with tarfile.open(fileobj=fileobj, mode="r|") as tar_fd:
            return _read_tar(tar_fd)
    except (tarfile.TarError, gzip.BadGzipFile, EOFError, zlib.error) as e:
        raise IpkFormatError(f"Unable to read the package: {e}") from e
    except OSError as e:
        raise IpkResourceError(f"Unable to read the package: {e}") from e


def read_ipk(fileobj: IO[bytes], fmt: IpkFormat) -> IpkPackage:
    """Read a package in the given format from `fileobj`"""
    if fileobj is None:
        raise IpkValidationError("No input stream supplied")
    _check_format(fmt)
    if not IpkFormat(fmt).is_gzipped:
        return _read_plain_tar(fileobj)
    with gzip.GzipFile(fileobj=fileobj, mode="rb") as gzr:
        return _read_plain_tar(gzr)


def read_ipk_detect_format(fileobj: IO[bytes]) -> IpkPackage:
    """Read a package from the seekable `fileobj`, detecting its format

    A gzip'ed container is tried first. If the stream is not gzip'ed, it is
    rewound and read as plain tar.
    """
    if fileobj is None:
        raise IpkValidationError("No input stream supplied")
    try:
        pos = fileobj.tell()
    except OSError as e:
        raise IpkResourceError(
            f"Unable to determine current stream position: {e}"
        ) from e
    gzr = gzip.GzipFile(fileobj=fileobj, mode="rb")
    try:
        gzr.peek(1)
    except (gzip.BadGzipFile, EOFError):
        gzr.close()
        try:
            fileobj.seek(pos, os.SEEK_SET)
        except OSError as e:
            raise IpkResourceError(
                f"Unable to rewind stream after failed gzip detection: {e}"
            ) from e
        _debug("Package is not gzip'ed; reading it as plain tar")
        return read_ipk(fileobj, IpkFormat.TAR)
    except zlib.error as e:
        gzr.close()
        raise IpkFormatError(f"Unable to read the package: {e}") from e
    except OSError as e:
        gzr.close()
        raise IpkResourceError(f"Unable to read the package: {e}") from e
    with gzr:
        return _read_plain_tar(gzr)


def read_ipk_path(path: Union[str, "os.PathLike[str]"]) -> IpkPackage:
    """Read the package at `path`, detecting its format"""
    try:
        fd = open(path, "rb")
    except OSError as e:
        raise IpkResourceError(f'Unable to open "{path}": {e}') from e
    with fd:
        return read_ipk_detect_format(fd)
