"""Reading and writing of the data archive (data.tar.gz)"""
import gzip
import tarfile
import zlib
from typing import BinaryIO, IO, Optional, Tuple

from ipk.archive import StagedArchiveWriter, compress_stream, directory_header
from ipk.exceptions import IpkFormatError, IpkResourceError
from ipk.package import FileEntry, IpkPackage, PathType
from ipk.paths import clean_path, unslash
from ipk.util import _warn, assume_not_none

DATA_ARCHIVE_NAME = "data.tar.gz"


def _member_key(member: tarfile.TarInfo) -> Optional[str]:
    """The file map key for `member` or None if it points outside the tree"""
    name = clean_path(unslash(member.name))
    if name in (".", "..") or name.startswith("../"):
        return None
    key = "/" + name
    if member.isdir():
        key += "/"
    return key


def read_data_archive(pkg: IpkPackage, fileobj: IO[bytes]) -> None:
    """Populate the file tree of `pkg` from the gzip'ed data archive

    Content of regular files is re-compressed, regardless of how the
    archive stored it.
    """
    member_name = "<start of archive>"
    try:
        with gzip.GzipFile(fileobj=fileobj, mode="rb") as gzr, tarfile.open(
            fileobj=gzr, mode="r|"
        ) as tar_fd:
            for member in tar_fd:
                member_name = member.name
                key = _member_key(member)
                if key is None:
                    if member.name not in (".", "./"):
                        _warn(f'Skipping "{member.name}" as it is outside the tree')
                    continue
                path_type = PathType.from_tar_info(member)
                if path_type is None:
                    _warn(
                        f'Skipping "{member.name}" due to unsupported type'
                        f" {member.type!r}"
                    )
                    continue
                payload = None
                size = 0
                if path_type == PathType.FILE:
                    member_fd = assume_not_none(tar_fd.extractfile(member))
                    payload, size = compress_stream(member_fd)
                pkg.set_file_entry(
                    FileEntry.from_tar_info(
                        key, path_type, member, payload=payload, size=size
                    )
                )
    except (tarfile.TarError, gzip.BadGzipFile, EOFError, zlib.error) as e:
        raise IpkFormatError(
            f'Unable to read data archive at "{member_name}": {e}'
        ) from e
    except OSError as e:
        raise IpkResourceError(
            f'Unable to read data archive at "{member_name}": {e}'
        ) from e


def fill_data_archive(
    pkg: IpkPackage, writer: StagedArchiveWriter, mtime: int
) -> None:
    writer.add_entry(directory_header("./", mtime))
    # Sorted by path
    for path in pkg.file_names():
        entry = pkg.get_file(path)
        writer.add_entry(entry.create_tar_info(), entry.payload)


def create_data_archive(
    pkg: IpkPackage, compress: bool, mtime: int
) -> Tuple[BinaryIO, int]:
    """Build the data archive in a temporary file

    Returns the archive for reading along with its size; the caller must
    close the stream. The `mtime` only applies to the root directory.
    """
    writer = StagedArchiveWriter("ipkdata", compress)
    try:
        fill_data_archive(pkg, writer, mtime)
    except BaseException:
        writer.discard()
        raise
    return writer.finish()
