import io
import tarfile

import pytest

from ipk.archive import compress_stream
from ipk.data import create_data_archive, read_data_archive
from ipk.exceptions import IpkFormatError, IpkPathExistsError
from ipk.package import IpkPackage, PathType
from tutil import MTIME, add_regular_file, build_tar_gz, regular_member, tar_info


def _write_and_read(pkg: IpkPackage) -> IpkPackage:
    stream, _ = create_data_archive(pkg, True, MTIME)
    result = IpkPackage()
    with stream:
        read_data_archive(result, stream)
    return result


def test_create_data_archive_is_sorted() -> None:
    pkg = IpkPackage()
    add_regular_file(pkg, "/usr/bin", "zz", b"z")
    add_regular_file(pkg, "/etc", "b.conf", b"b")
    add_regular_file(pkg, "/etc", "a.conf", b"a")
    stream, size = create_data_archive(pkg, True, MTIME)
    with stream:
        data = stream.read()
    assert len(data) == size
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar_fd:
        assert tar_fd.getnames() == [
            ".",
            "./etc",
            "./etc/a.conf",
            "./etc/b.conf",
            "./usr",
            "./usr/bin",
            "./usr/bin/zz",
        ]
        root = tar_fd.getmember(".")
        assert root.isdir()
        assert root.mtime == MTIME
        member_fd = tar_fd.extractfile("./usr/bin/zz")
        assert member_fd is not None
        assert member_fd.read() == b"z"


def test_create_data_archive_is_deterministic(populated_package: IpkPackage) -> None:
    first, _ = create_data_archive(populated_package, True, MTIME)
    second, _ = create_data_archive(populated_package, True, MTIME)
    with first, second:
        assert first.read() == second.read()


def test_data_round_trip(populated_package: IpkPackage) -> None:
    result = _write_and_read(populated_package)
    assert result.file_names() == populated_package.file_names()
    for path in populated_package.file_names():
        assert result.get_file(path) == populated_package.get_file(path)
    assert result.get_file("/var/lib/foo/").mode == 0o700
    assert result.get_file("/usr/bin/foo-link").link_target == "foo"


def test_read_data_archive_restores_directory_keys() -> None:
    archive = build_tar_gz(
        [
            (tar_info("./", PathType.DIRECTORY), None),
            (tar_info("./opt/", PathType.DIRECTORY, mode=0o750), None),
            regular_member("./opt/tool", b"#!/bin/sh\n"),
            (tar_info("./opt/link", PathType.SYMLINK, linkname="tool"), None),
        ]
    )
    pkg = IpkPackage()
    read_data_archive(pkg, archive)
    assert pkg.file_names() == ["/opt/", "/opt/link", "/opt/tool"]
    assert pkg.get_file("/opt/").path_type == PathType.DIRECTORY
    assert pkg.get_file("/opt/").mode == 0o750
    with pkg.open_file("/opt/tool") as fd:
        assert fd.read() == b"#!/bin/sh\n"


def test_read_data_archive_recompresses_content() -> None:
    content = b"some content\n" * 100
    pkg = IpkPackage()
    read_data_archive(
        pkg, build_tar_gz([regular_member("usr/share/foo/data", content)])
    )
    entry = pkg.get_file("/usr/share/foo/data")
    assert (entry.payload, entry.size) == compress_stream(io.BytesIO(content))


def test_read_data_archive_skips_entries_outside_the_tree() -> None:
    archive = build_tar_gz(
        [
            (tar_info(".", PathType.DIRECTORY), None),
            regular_member("../escape", b"evil"),
            regular_member("./usr/../../escape", b"evil"),
            regular_member("./etc/ok.conf", b"fine"),
        ]
    )
    pkg = IpkPackage()
    read_data_archive(pkg, archive)
    assert pkg.file_names() == ["/etc/ok.conf"]


def test_read_data_archive_duplicate_path() -> None:
    archive = build_tar_gz(
        [
            regular_member("./etc/foo.conf", b"one"),
            regular_member("etc/./foo.conf", b"two"),
        ]
    )
    with pytest.raises(IpkPathExistsError):
        read_data_archive(IpkPackage(), archive)


@pytest.mark.parametrize(
    "entries",
    [
        [
            regular_member("./etc", b"not a directory"),
            (tar_info("./etc/", PathType.DIRECTORY), None),
        ],
        [
            (tar_info("./etc/", PathType.DIRECTORY), None),
            regular_member("./etc", b"not a directory"),
        ],
        [
            regular_member("./etc", b"not a directory"),
            regular_member("./etc/foo.conf", b"below a file"),
        ],
    ],
)
def test_read_data_archive_file_and_directory_conflict(entries) -> None:
    with pytest.raises(IpkPathExistsError) as exc_info:
        read_data_archive(IpkPackage(), build_tar_gz(entries))
    assert exc_info.value.path in ("/etc", "/etc/")


def test_read_data_archive_truncated() -> None:
    data = build_tar_gz([regular_member("./etc/foo.conf", b"x" * 4096)]).getvalue()
    with pytest.raises(IpkFormatError):
        read_data_archive(IpkPackage(), io.BytesIO(data[: len(data) // 2]))
