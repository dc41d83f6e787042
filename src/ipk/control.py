"""Reading and writing of the control archive (control.tar.gz)"""
import gzip
import io
import tarfile
import zlib
from typing import BinaryIO, IO, Iterable, Tuple

from ipk.archive import (
    StagedArchiveWriter,
    directory_header,
    file_header,
)
from ipk.exceptions import (
    IpkConflictError,
    IpkFormatError,
    IpkInvalidScriptNameError,
    IpkMissingFieldError,
    IpkResourceError,
    IpkRuntimeError,
)
from ipk.package import CONFFILES_FILE_NAME, CONTROL_FILE_NAME, IpkPackage
from ipk.paths import clean_path, unslash
from ipk.util import _debug, assume_not_none

# Control fields
CONTROL_PACKAGE = "Package"
CONTROL_VERSION = "Version"
CONTROL_ARCH = "Architecture"
CONTROL_DEPENDS = "Depends"
CONTROL_MAINTAINER = "Maintainer"
CONTROL_DESCRIPTION = "Description"
CONTROL_HOMEPAGE = "Homepage"

MANDATORY_FIELDS = (
    CONTROL_PACKAGE,
    CONTROL_VERSION,
    CONTROL_ARCH,
    CONTROL_MAINTAINER,
    CONTROL_DESCRIPTION,
)

CONTROL_ARCHIVE_NAME = "control.tar.gz"


def _text_lines(fileobj: IO[bytes], what: str) -> Iterable[Tuple[int, str]]:
    try:
        for lineno, line in enumerate(
            io.TextIOWrapper(fileobj, encoding="utf-8", newline="\n"), start=1
        ):
            yield lineno, line.rstrip("\n").rstrip("\r")
    except UnicodeDecodeError as e:
        raise IpkFormatError(f"The {what} file is not valid UTF-8: {e}") from e


def read_control_file(pkg: IpkPackage, fileobj: IO[bytes]) -> None:
    """Parse "Key: value" lines into fields of `pkg`

    Lines without a colon are ignored; a repeated field is an error.
    """
    for lineno, line in _text_lines(fileobj, CONTROL_FILE_NAME):
        key, sep, value = line.partition(":")
        if not sep:
            continue
        try:
            pkg.add_field(key, value)
        except IpkRuntimeError as e:
            raise e.__class__(
                f"Error reading line {lineno} of control file: {e.message}"
            ) from e


def read_conffiles(pkg: IpkPackage, fileobj: IO[bytes]) -> None:
    for lineno, line in _text_lines(fileobj, CONFFILES_FILE_NAME):
        if line == "":
            continue
        try:
            pkg.add_conffile(line)
        except IpkRuntimeError as e:
            raise e.__class__(
                f"Error reading line {lineno} of conffiles: {e.message}"
            ) from e
    pkg.sort_conffiles()


def read_control_archive(pkg: IpkPackage, fileobj: IO[bytes]) -> None:
    """Populate `pkg` from the gzip'ed control archive in `fileobj`"""
    control_read = False
    conffiles_read = False
    member_name = "<start of archive>"
    try:
        with gzip.GzipFile(fileobj=fileobj, mode="rb") as gzr, tarfile.open(
            fileobj=gzr, mode="r|"
        ) as tar_fd:
            for member in tar_fd:
                member_name = member.name
                if not member.isreg():
                    continue
                name = clean_path(unslash(member.name))
                member_fd = assume_not_none(tar_fd.extractfile(member))
                if name == CONTROL_FILE_NAME:
                    if control_read:
                        raise IpkConflictError("Control file has already been read")
                    read_control_file(pkg, member_fd)
                    control_read = True
                elif name == CONFFILES_FILE_NAME:
                    if conffiles_read:
                        raise IpkConflictError("Conffiles have already been read")
                    read_conffiles(pkg, member_fd)
                    conffiles_read = True
                else:
                    try:
                        pkg.add_script(name, member_fd)
                    except IpkInvalidScriptNameError:
                        _debug(f'Ignoring "{member.name}" in the control archive')
    except (tarfile.TarError, gzip.BadGzipFile, EOFError, zlib.error) as e:
        raise IpkFormatError(
            f'Unable to read control archive at "{member_name}": {e}'
        ) from e
    except OSError as e:
        raise IpkResourceError(
            f'Unable to read control archive at "{member_name}": {e}'
        ) from e
    if not control_read:
        raise IpkConflictError("No control file found")


def render_control_file(pkg: IpkPackage) -> bytes:
    """Mandatory fields first (in fixed order), then the rest sorted by name"""
    fields = pkg.fields
    lines = []
    for field in MANDATORY_FIELDS:
        try:
            content = fields[field]
        except KeyError:
            raise IpkMissingFieldError(
                f'Mandatory control field "{field}" missing', field
            ) from None
        lines.append(f"{field}: {content}\n")
    for field in sorted(fields.keys() - set(MANDATORY_FIELDS)):
        lines.append(f"{field}: {fields[field]}\n")
    return "".join(lines).encode("utf-8")


def render_conffiles(pkg: IpkPackage) -> bytes:
    return "".join(f"{path}\n" for path in pkg.sort_conffiles()).encode("utf-8")


def fill_control_archive(
    pkg: IpkPackage, writer: StagedArchiveWriter, mtime: int
) -> None:
    writer.add_entry(directory_header("./", mtime))
    writer.add_bytes(
        file_header(CONTROL_FILE_NAME, 0, mtime), render_control_file(pkg)
    )
    if pkg.conffiles():
        writer.add_bytes(
            file_header(CONFFILES_FILE_NAME, 0, mtime), render_conffiles(pkg)
        )
    for script_name in pkg.script_names():
        script = pkg.script_entry(script_name)
        header = file_header(script_name, script.size, mtime)
        header.mode |= 0o111
        writer.add_entry(header, script.payload)


def create_control_archive(
    pkg: IpkPackage, compress: bool, mtime: int
) -> Tuple[BinaryIO, int]:
    """Build the control archive in a temporary file

    Returns the archive for reading along with its size; the caller must
    close the stream. Nothing is left behind on failure.
    """
    writer = StagedArchiveWriter("ipkcontrol", compress)
    try:
        fill_control_archive(pkg, writer, mtime)
    except BaseException:
        writer.discard()
        raise
    return writer.finish()
