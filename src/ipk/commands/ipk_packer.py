#!/usr/bin/python3 -B
import argparse
import os
import stat
import tarfile
import textwrap
from typing import Optional, Sequence

from debian.deb822 import Deb822

from ipk.container import IpkFormat, read_ipk_path, write_ipk_path
from ipk.control import CONTROL_ARCH, CONTROL_PACKAGE, CONTROL_VERSION
from ipk.exceptions import (
    IpkInvalidScriptNameError,
    IpkMissingFieldError,
    IpkResourceError,
    IpkRuntimeError,
)
from ipk.package import (
    CONFFILES_FILE_NAME,
    CONTROL_FILE_NAME,
    IpkPackage,
    PathType,
)
from ipk.util import (
    ColorizedArgumentParser,
    _debug,
    _error,
    _info,
    _warn,
    compute_output_filename,
    program_name,
    resolve_source_date_epoch,
    setup_logging,
)
from ipk.version import __version__

# Directory below the package root holding the control file, conffiles and scripts
CONTROL_DIR_NAME = "CONTROL"

FORMATS = {
    "tar": IpkFormat.TAR,
    "tar.gz": IpkFormat.TAR_GZIP,
}
DEFAULT_FORMAT = "tar.gz"

_PATH_TYPE2S_IFMT = {
    PathType.FILE: stat.S_IFREG,
    PathType.DIRECTORY: stat.S_IFDIR,
    PathType.SYMLINK: stat.S_IFLNK,
    PathType.HARDLINK: stat.S_IFREG,
    PathType.FIFO: stat.S_IFIFO,
    PathType.CHAR_DEVICE: stat.S_IFCHR,
    PathType.BLOCK_DEVICE: stat.S_IFBLK,
}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    default_format = os.environ.get("IPK_PACKER_FORMAT", DEFAULT_FORMAT)
    if default_format not in FORMATS:
        _warn(
            f'Ignoring unsupported IPK_PACKER_FORMAT "{default_format}".'
            f' Using "{DEFAULT_FORMAT}" instead.'
        )
        default_format = DEFAULT_FORMAT

    description = textwrap.dedent(
        """\
    Build and inspect IPK packages (as used by opkg)

    The packages are tar based (optionally gzip'ed) containers with a
    control.tar.gz and a data.tar.gz inside. The ar based variant is not
    supported.
    """
    )

    parser = ColorizedArgumentParser(
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        prog=program_name(),
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "-d",
        "--debug",
        dest="debug_mode",
        action="store_true",
        default=False,
        help="Enable debug logging and raw stack traces on errors",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser(
        "build",
        allow_abbrev=False,
        help="Build a package from a directory",
    )
    build_parser.add_argument(
        "package_root_dir",
        metavar="PACKAGE_ROOT_DIR",
        help="Root directory of the package."
        f" Must contain a {CONTROL_DIR_NAME} directory",
    )
    build_parser.add_argument(
        "package_output_path",
        metavar="PATH",
        help="Path where the package should be placed.  If it is directory,"
        " the base name will be determined from the package metadata",
    )
    build_parser.add_argument(
        "--format",
        dest="package_format",
        choices=FORMATS,
        default=default_format,
        help="Container format of the package (can also be given via the"
        " IPK_PACKER_FORMAT environ variable)",
    )
    build_parser.add_argument(
        "--source-date-epoch",
        dest="source_date_epoch",
        action="store",
        type=int,
        default=None,
        help="Source date epoch (can also be given via the SOURCE_DATE_EPOCH"
        " environ variable)",
    )
    build_parser.set_defaults(command_impl=_build_package)

    info_parser = subparsers.add_parser(
        "info",
        allow_abbrev=False,
        help="Show the control fields, conffiles and scripts of a package",
    )
    info_parser.add_argument("package_path", metavar="IPK")
    info_parser.set_defaults(command_impl=_show_info)

    contents_parser = subparsers.add_parser(
        "contents",
        allow_abbrev=False,
        help="List the file tree of a package",
    )
    contents_parser.add_argument("package_path", metavar="IPK")
    contents_parser.set_defaults(command_impl=_show_contents)

    return parser.parse_args(argv)


def _load_control_dir(pkg: IpkPackage, control_dir: str) -> None:
    control_path = os.path.join(control_dir, CONTROL_FILE_NAME)
    try:
        with open(control_path, encoding="utf-8") as fd:
            paragraph = Deb822(fd)
    except FileNotFoundError:
        _error(f'The package root must contain a "{control_path}" file')
    except (OSError, UnicodeDecodeError) as e:
        raise IpkResourceError(f'Unable to read "{control_path}": {e}') from e
    for name, content in paragraph.items():
        pkg.add_field(name, content)

    for basename in sorted(os.listdir(control_dir)):
        path = os.path.join(control_dir, basename)
        if basename == CONTROL_FILE_NAME or not os.path.isfile(path):
            continue
        if basename == CONFFILES_FILE_NAME:
            with open(path, encoding="utf-8") as fd:
                for line in fd:
                    line = line.strip()
                    if line:
                        pkg.add_conffile(line)
            continue
        with open(path, "rb") as fd:
            try:
                pkg.add_script(basename, fd)
            except IpkInvalidScriptNameError:
                _warn(f'Ignoring "{path}": Not a valid script name')


def _tar_info_for(
    fs_path: str, name: str, clamp_mtime: int
) -> Optional[tarfile.TarInfo]:
    st = os.lstat(fs_path)
    tar_info = tarfile.TarInfo(name)
    tar_info.mode = stat.S_IMODE(st.st_mode)
    tar_info.mtime = min(int(st.st_mtime), clamp_mtime)
    if stat.S_ISREG(st.st_mode):
        tar_info.type = tarfile.REGTYPE
    elif stat.S_ISDIR(st.st_mode):
        tar_info.type = tarfile.DIRTYPE
    elif stat.S_ISLNK(st.st_mode):
        tar_info.type = tarfile.SYMTYPE
        tar_info.linkname = os.readlink(fs_path)
    elif stat.S_ISFIFO(st.st_mode):
        tar_info.type = tarfile.FIFOTYPE
    elif stat.S_ISCHR(st.st_mode) or stat.S_ISBLK(st.st_mode):
        tar_info.type = (
            tarfile.CHRTYPE if stat.S_ISCHR(st.st_mode) else tarfile.BLKTYPE
        )
        tar_info.devmajor = os.major(st.st_rdev)
        tar_info.devminor = os.minor(st.st_rdev)
    else:
        return None
    return tar_info


def _add_path(
    pkg: IpkPackage, directory: str, fs_path: str, clamp_mtime: int
) -> None:
    name = os.path.basename(fs_path)
    tar_info = _tar_info_for(fs_path, name, clamp_mtime)
    if tar_info is None:
        _warn(f'Skipping "{fs_path}": Unsupported file type')
        return
    if tar_info.isreg():
        with open(fs_path, "rb") as fd:
            pkg.add_file(directory, tar_info, fd)
    else:
        pkg.add_file(directory, tar_info)


def _load_data_tree(pkg: IpkPackage, root_dir: str, clamp_mtime: int) -> None:
    for dirpath, dirnames, filenames in os.walk(root_dir):
        rel_dir = os.path.relpath(dirpath, root_dir)
        directory = "/" if rel_dir == "." else "/" + rel_dir.replace(os.sep, "/")
        if directory == "/" and CONTROL_DIR_NAME in dirnames:
            dirnames.remove(CONTROL_DIR_NAME)
        # Traversal order must not depend on the file system
        dirnames.sort()
        for basename in dirnames:
            _add_path(pkg, directory, os.path.join(dirpath, basename), clamp_mtime)
        for basename in sorted(filenames):
            _add_path(pkg, directory, os.path.join(dirpath, basename), clamp_mtime)


def _output_path(pkg: IpkPackage, package_output_path: str) -> str:
    if not os.path.isdir(package_output_path):
        return package_output_path
    for field in (CONTROL_PACKAGE, CONTROL_VERSION, CONTROL_ARCH):
        if pkg.get_field(field) is None:
            raise IpkMissingFieldError(
                f'Cannot compute the output file name: Missing field "{field}"',
                field,
            )
    return os.path.join(package_output_path, compute_output_filename(pkg.fields))


def _build_package(parsed_args: argparse.Namespace) -> None:
    root_dir = parsed_args.package_root_dir
    control_dir = os.path.join(root_dir, CONTROL_DIR_NAME)
    if not os.path.isdir(control_dir):
        _error(f'The package root must contain a "{CONTROL_DIR_NAME}" directory')
    mtime = resolve_source_date_epoch(parsed_args.source_date_epoch)

    pkg = IpkPackage()
    try:
        _load_control_dir(pkg, control_dir)
        _load_data_tree(pkg, root_dir, mtime)
    except OSError as e:
        raise IpkResourceError(f'Unable to read "{root_dir}": {e}') from e
    _debug(f"Loaded {pkg!r} from {root_dir}")

    output_path = _output_path(pkg, parsed_args.package_output_path)
    _info(f"Packing {len(pkg.file_names())} paths into {output_path}")
    write_ipk_path(
        pkg, output_path, FORMATS[parsed_args.package_format], mtime=mtime
    )
    print(f"Generated {output_path}")


def _show_info(parsed_args: argparse.Namespace) -> None:
    pkg = read_ipk_path(parsed_args.package_path)
    for name, content in pkg.fields.items():
        print(f"{name}: {content}")
    conffiles = pkg.conffiles()
    if conffiles:
        print("Conffiles:")
        for path in conffiles:
            print(f" {path}")
    scripts = pkg.script_names()
    if scripts:
        print("Scripts:")
        for script_name in scripts:
            size = pkg.script_entry(script_name).size
            print(f" {script_name} ({size} bytes)")


def _show_contents(parsed_args: argparse.Namespace) -> None:
    pkg = read_ipk_path(parsed_args.package_path)
    for path in pkg.file_names():
        entry = pkg.get_file(path)
        mode = stat.filemode(_PATH_TYPE2S_IFMT[entry.path_type] | entry.mode)
        line = f"{mode} {entry.owner}/{entry.group} {entry.size:>8} {path}"
        if entry.path_type == PathType.SYMLINK:
            line += f" -> {entry.link_target}"
        elif entry.path_type == PathType.HARDLINK:
            line += f" link to {entry.link_target}"
        print(line)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parsed_args = parse_args(argv)
    setup_logging(reconfigure_logging=True, verbose=parsed_args.debug_mode)
    try:
        parsed_args.command_impl(parsed_args)
    except IpkRuntimeError as e:
        if parsed_args.debug_mode:
            raise
        _error(e.message)


if __name__ == "__main__":
    main()
