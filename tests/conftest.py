import io
import tempfile

import pytest

from ipk.package import IpkPackage, PathType
from tutil import add_regular_file, foo_package, tar_info


@pytest.fixture
def populated_package() -> IpkPackage:
    pkg = foo_package(Depends="libc (>= 2.30)", Homepage="https://example.org/foo")
    pkg.add_conffile("/etc/foo/x.conf")
    pkg.add_conffile("/etc/foo/a.conf")
    pkg.add_script("postinst", io.BytesIO(b"#!/bin/sh\necho configured\n"))
    pkg.add_script("prerm", io.BytesIO(b"#!/bin/sh\nexit 0\n"))
    add_regular_file(pkg, "/etc/foo", "x.conf", b"x = 1\n")
    add_regular_file(pkg, "/etc/foo", "a.conf", b"a = 2\n")
    add_regular_file(
        pkg, "/usr/bin", "foo", b"\x7fELF" + bytes(range(256)), mode=0o755
    )
    pkg.add_file(
        "/usr/bin",
        tar_info("foo-link", PathType.SYMLINK, mode=0o777, linkname="foo"),
    )
    pkg.add_file("/var/lib", tar_info("foo", PathType.DIRECTORY, mode=0o700))
    add_regular_file(pkg, "/usr/share/doc/foo", "empty", b"")
    return pkg


@pytest.fixture
def private_tempdir(tmp_path, monkeypatch):
    """Redirect temporary files into a directory that tests can inspect"""
    tempdir = tmp_path / "tmp"
    tempdir.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(tempdir))
    return tempdir
