import dataclasses
import posixpath
import re
import tarfile
import time
from enum import Enum
from typing import BinaryIO, Dict, IO, List, Mapping, Optional, Tuple

from ipk.archive import (
    ARCHIVE_OWNER,
    DIR_PERMISSION,
    FILE_PERMISSION,
    compress_stream,
    open_payload,
)
from ipk.exceptions import (
    IpkConflictError,
    IpkInvalidScriptNameError,
    IpkPathExistsError,
    IpkResourceError,
    IpkValidationError,
)
from ipk.paths import clean_path

# Name of the control file in the control archive
CONTROL_FILE_NAME = "control"
# Name of the conffiles file in the control archive
CONFFILES_FILE_NAME = "conffiles"

_FIELD_NAME_REGEX = re.compile(r"[A-Za-z-]+", re.ASCII)
# Does not exclude "control" and "conffiles"; those are checked separately
_SCRIPT_NAME_REGEX = re.compile(r"[a-z]+", re.ASCII)


class PathType(Enum):
    FILE = ("file", tarfile.REGTYPE)
    DIRECTORY = ("directory", tarfile.DIRTYPE)
    SYMLINK = ("symlink", tarfile.SYMTYPE)
    HARDLINK = ("hardlink", tarfile.LNKTYPE)
    FIFO = ("fifo", tarfile.FIFOTYPE)
    CHAR_DEVICE = ("char-device", tarfile.CHRTYPE)
    BLOCK_DEVICE = ("block-device", tarfile.BLKTYPE)

    @property
    def display_name(self) -> str:
        return self.value[0]

    @property
    def tarinfo_type(self) -> bytes:
        return self.value[1]

    @property
    def has_link_target(self) -> bool:
        return self in (PathType.SYMLINK, PathType.HARDLINK)

    @classmethod
    def from_tar_info(cls, tar_info: tarfile.TarInfo) -> Optional["PathType"]:
        if tar_info.isreg():
            # Also covers AREGTYPE and CONTTYPE
            return cls.FILE
        return _TARINFO_TYPE2PATH_TYPE.get(tar_info.type)


_TARINFO_TYPE2PATH_TYPE = {pt.tarinfo_type: pt for pt in PathType}


@dataclasses.dataclass(slots=True)
class FileEntry:
    """A single entry of the file tree (or a script)

    Regular files keep their content gzip'ed in `payload`; every other type
    has no payload.
    """

    name: str
    path_type: PathType
    size: int
    mode: int
    mtime: int
    link_target: str = ""
    owner: str = ARCHIVE_OWNER
    uid: int = 0
    group: str = ARCHIVE_OWNER
    gid: int = 0
    devmajor: int = 0
    devminor: int = 0
    payload: Optional[bytes] = dataclasses.field(default=None, repr=False)

    def create_tar_info(self) -> tarfile.TarInfo:
        tar_info = tarfile.TarInfo(self.name)
        tar_info.type = self.path_type.tarinfo_type
        tar_info.size = self.size if self.path_type == PathType.FILE else 0
        tar_info.mode = self.mode
        tar_info.mtime = self.mtime
        tar_info.linkname = self.link_target
        tar_info.uname = self.owner
        tar_info.uid = self.uid
        tar_info.gname = self.group
        tar_info.gid = self.gid
        tar_info.devmajor = self.devmajor
        tar_info.devminor = self.devminor
        return tar_info

    def open(self) -> BinaryIO:
        if self.payload is None:
            raise IpkValidationError(
                f'"{self.name}" is a {self.path_type.display_name} and has no content'
            )
        return open_payload(self.payload)

    @classmethod
    def from_tar_info(
        cls,
        name: str,
        path_type: PathType,
        tar_info: tarfile.TarInfo,
        *,
        payload: Optional[bytes] = None,
        size: int = 0,
    ) -> "FileEntry":
        return cls(
            name=name,
            path_type=path_type,
            size=size,
            mode=tar_info.mode & 0o7777,
            mtime=int(tar_info.mtime),
            link_target=tar_info.linkname if path_type.has_link_target else "",
            owner=tar_info.uname,
            uid=tar_info.uid,
            group=tar_info.gname,
            gid=tar_info.gid,
            devmajor=tar_info.devmajor,
            devminor=tar_info.devminor,
            payload=payload,
        )


def _compress(name: str, fileobj: IO[bytes]) -> Tuple[bytes, int]:
    try:
        return compress_stream(fileobj)
    except OSError as e:
        raise IpkResourceError(f'Unable to read content of "{name}": {e}') from e


class IpkPackage:
    """In-memory model of an IPK package

    Holds the control fields, the conffiles, the maintainer scripts and the
    file tree. The content of every regular file and script is kept gzip'ed
    in memory for the lifetime of the package.

    This class is NOT safe for concurrent mutation; use separate instances
    per thread or serialize the access.
    """

    def __init__(self) -> None:
        self._fields: Dict[str, str] = {}
        self._conffiles: List[str] = []
        self._scripts: Dict[str, FileEntry] = {}
        self._files: Dict[str, FileEntry] = {}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IpkPackage):
            return NotImplemented
        return (
            self._fields == other._fields
            and sorted(self._conffiles) == sorted(other._conffiles)
            and self._scripts == other._scripts
            and self._files == other._files
        )

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} {self._fields.get('Package')!r}:"
            f" {len(self._files)} files, {len(self._scripts)} scripts>"
        )

    @property
    def fields(self) -> Mapping[str, str]:
        return dict(self._fields)

    def add_field(self, name: str, content: str) -> None:
        if not _FIELD_NAME_REGEX.fullmatch(name):
            raise IpkValidationError(f'Invalid field name "{name}"')
        content = content.strip()
        if "\n" in content:
            raise IpkValidationError(f'Content of field "{name}" contains a newline')
        if name in self._fields:
            raise IpkConflictError(f'Field "{name}" already exists')
        self._fields[name] = content

    def get_field(self, name: str) -> Optional[str]:
        return self._fields.get(name)

    def add_conffile(self, path: str) -> None:
        """Add a configuration file, which must be absolute and not the root"""
        cleaned = clean_path(path)
        if not posixpath.isabs(cleaned):
            raise IpkValidationError(f'Not an absolute path: "{path}"')
        if cleaned == "/":
            raise IpkValidationError("The root directory cannot be a conffile")
        if "\n" in cleaned:
            raise IpkValidationError(f"Conffile path contains a newline: {path!r}")
        self._conffiles.append(cleaned)

    def conffiles(self) -> List[str]:
        return list(self._conffiles)

    def sort_conffiles(self) -> List[str]:
        self._conffiles.sort()
        return list(self._conffiles)

    def add_script(self, name: str, fileobj: IO[bytes]) -> None:
        if fileobj is None:
            raise IpkValidationError(f'No content supplied for script "{name}"')
        if (
            name in (CONTROL_FILE_NAME, CONFFILES_FILE_NAME)
            or not _SCRIPT_NAME_REGEX.fullmatch(name)
        ):
            raise IpkInvalidScriptNameError(f'Bad script name "{name}"')
        if name in self._scripts:
            raise IpkConflictError(f'Script "{name}" already exists')
        payload, size = _compress(name, fileobj)
        self._scripts[name] = FileEntry(
            name=name,
            path_type=PathType.FILE,
            size=size,
            mode=FILE_PERMISSION,
            mtime=0,
            payload=payload,
        )

    def script_names(self) -> List[str]:
        return sorted(self._scripts)

    def get_script(self, name: str) -> Tuple[BinaryIO, int]:
        """Return the named script as stream, along with its size

        The caller is responsible for closing the stream.
        """
        try:
            script = self._scripts[name]
        except KeyError:
            raise IpkValidationError(f'Script "{name}" does not exist') from None
        return script.open(), script.size

    def script_entry(self, name: str) -> FileEntry:
        return self._scripts[name]

    def add_file(
        self,
        directory: str,
        info: tarfile.TarInfo,
        fileobj: Optional[IO[bytes]] = None,
    ) -> None:
        """Add a file (of any supported type) to `directory`

        The `directory` must be absolute and is created recursively (mode
        0755, owned by root) if it is not present yet. The base name, type,
        permissions and modification time are taken from `info`. Regular
        files read their content from `fileobj`. Symlinks read their target
        from `fileobj` if present and otherwise use `info.linkname`.

        Raises IpkPathExistsError if there already is an entry for the path.
        """
        if info is None:
            raise IpkValidationError("No file info supplied")
        cleaned_dir = clean_path(directory)
        if not posixpath.isabs(cleaned_dir):
            raise IpkValidationError(f'Invalid directory "{directory}"')
        basename = posixpath.basename(info.name.rstrip("/"))
        if basename in ("", ".", ".."):
            raise IpkValidationError(f'Invalid file name "{info.name}"')
        full_path = posixpath.join(cleaned_dir, basename)
        entry = self._build_entry(full_path, info, fileobj)
        if self._find_entry(entry.name) is not None:
            raise IpkPathExistsError(f'"{entry.name}" already exists', entry.name)
        self._check_parent_directories(cleaned_dir)
        self._add_parent_directories(cleaned_dir)
        self._files[entry.name] = entry

    def _build_entry(
        self,
        full_path: str,
        info: tarfile.TarInfo,
        fileobj: Optional[IO[bytes]],
    ) -> FileEntry:
        path_type = PathType.from_tar_info(info)
        if path_type is None:
            raise IpkValidationError(
                f'Unsupported file type {info.type!r} for "{full_path}"'
            )
        entry = FileEntry(
            name=full_path,
            path_type=path_type,
            size=0,
            mode=info.mode & 0o7777,
            mtime=int(info.mtime),
            devmajor=info.devmajor,
            devminor=info.devminor,
        )
        if path_type == PathType.FILE:
            if fileobj is None:
                raise IpkValidationError(f'No content supplied for "{full_path}"')
            entry.payload, entry.size = _compress(full_path, fileobj)
        elif path_type == PathType.SYMLINK:
            if fileobj is not None:
                try:
                    entry.link_target = fileobj.read().decode("utf-8")
                except OSError as e:
                    raise IpkResourceError(
                        f'Unable to read link target of "{full_path}": {e}'
                    ) from e
                except UnicodeDecodeError as e:
                    raise IpkValidationError(
                        f'Link target of "{full_path}" is not valid UTF-8: {e}'
                    ) from e
            else:
                entry.link_target = info.linkname
            if not entry.link_target:
                raise IpkValidationError(f'No link target supplied for "{full_path}"')
        elif path_type == PathType.HARDLINK:
            if not info.linkname:
                raise IpkValidationError(f'No link target supplied for "{full_path}"')
            entry.link_target = info.linkname
        elif path_type == PathType.DIRECTORY:
            entry.name += "/"
        return entry

    def _find_entry(self, path: str) -> Optional[FileEntry]:
        """The entry for `path` whether it is stored as a directory or not"""
        bare = path.rstrip("/")
        entry = self._files.get(bare)
        if entry is None:
            entry = self._files.get(bare + "/")
        return entry

    def _check_parent_directories(self, directory: str) -> None:
        current = ""
        for segment in directory.split("/"):
            if not segment:
                continue
            current += "/" + segment
            # Directory keys end in a slash, so a bare key is never a directory
            if current in self._files:
                raise IpkPathExistsError(
                    f'"{current}" exists and is not a directory', current
                )

    def _add_parent_directories(self, directory: str) -> None:
        mtime = int(time.time())
        current = "/"
        for segment in directory.split("/"):
            if not segment:
                continue
            current += segment + "/"
            if current in self._files:
                continue
            self._files[current] = FileEntry(
                name=current,
                path_type=PathType.DIRECTORY,
                size=0,
                mode=DIR_PERMISSION,
                mtime=mtime,
            )

    def file_names(self) -> List[str]:
        """All paths of the file tree (root excluded), sorted"""
        return sorted(self._files)

    def get_file(self, path: str) -> FileEntry:
        try:
            return self._files[path]
        except KeyError:
            raise IpkValidationError(f'"{path}" is not part of the package') from None

    def open_file(self, path: str) -> BinaryIO:
        return self.get_file(path).open()

    def set_file_entry(self, entry: FileEntry) -> None:
        """Store an already canonicalized entry (used when reading archives)"""
        self._check_parent_directories(posixpath.dirname(entry.name.rstrip("/")))
        if self._find_entry(entry.name) is not None:
            raise IpkPathExistsError(
                f'Duplicate file data for "{entry.name}"', entry.name
            )
        self._files[entry.name] = entry
