import os
import stat
from pathlib import Path

import pytest

from ipk.commands import ipk_packer
from ipk.container import read_ipk_path
from ipk.exceptions import IpkMissingFieldError
from ipk.package import PathType
from tutil import MTIME

FOO_CONTROL = """\
Package: foo
Version: 2:1.2.3
Architecture: all
Maintainer: A <a@b.c>
Description: d
Depends: libc (>= 2.30)
"""


def write_unpacked_ipk(root: Path, control: str = FOO_CONTROL) -> None:
    control_dir = root / "CONTROL"
    control_dir.mkdir(parents=True)
    (control_dir / "control").write_text(control)
    (control_dir / "conffiles").write_text("/etc/foo/x.conf\n\n")
    postinst = control_dir / "postinst"
    postinst.write_text("#!/bin/sh\necho configured\n")
    postinst.chmod(0o755)
    (control_dir / "README.md").write_text("Not a maintainer script")

    etc_dir = root / "etc" / "foo"
    etc_dir.mkdir(parents=True)
    (etc_dir / "x.conf").write_text("x = 1\n")
    (etc_dir / "x.conf").chmod(0o644)
    bin_dir = root / "usr" / "bin"
    bin_dir.mkdir(parents=True)
    (bin_dir / "foo").write_bytes(b"#!/bin/sh\nexit 0\n")
    (bin_dir / "foo").chmod(0o755)
    os.symlink("foo", bin_dir / "foo-link")
    (root / "var" / "lib" / "foo").mkdir(parents=True)


@pytest.mark.parametrize("package_format", ["tar", "tar.gz"])
def test_build(tmp_path, capsys, package_format: str) -> None:
    root_dir = tmp_path / "root"
    write_unpacked_ipk(root_dir)
    output_dir = tmp_path / "out"
    output_dir.mkdir()

    ipk_packer.main(
        [
            "build",
            str(root_dir),
            str(output_dir),
            "--format",
            package_format,
            "--source-date-epoch",
            str(MTIME),
        ]
    )

    ipk_file = output_dir / "foo_1.2.3_all.ipk"
    assert f"Generated {ipk_file}" in capsys.readouterr().out
    pkg = read_ipk_path(ipk_file)
    assert pkg.get_field("Package") == "foo"
    assert pkg.get_field("Depends") == "libc (>= 2.30)"
    assert pkg.conffiles() == ["/etc/foo/x.conf"]
    assert pkg.script_names() == ["postinst"]
    assert pkg.file_names() == [
        "/etc/",
        "/etc/foo/",
        "/etc/foo/x.conf",
        "/usr/",
        "/usr/bin/",
        "/usr/bin/foo",
        "/usr/bin/foo-link",
        "/var/",
        "/var/lib/",
        "/var/lib/foo/",
    ]
    for path in pkg.file_names():
        entry = pkg.get_file(path)
        # Everything on disk is newer than the source date epoch
        assert entry.mtime == MTIME
        assert (entry.owner, entry.uid) == ("root", 0)

    binary = pkg.get_file("/usr/bin/foo")
    assert binary.mode == 0o755
    with pkg.open_file("/usr/bin/foo") as fd:
        assert fd.read() == b"#!/bin/sh\nexit 0\n"
    link = pkg.get_file("/usr/bin/foo-link")
    assert link.path_type == PathType.SYMLINK
    assert link.link_target == "foo"


def test_build_to_file(tmp_path) -> None:
    root_dir = tmp_path / "root"
    write_unpacked_ipk(root_dir)
    ipk_file = tmp_path / "custom.ipk"
    ipk_packer.main(["build", str(root_dir), str(ipk_file)])
    assert read_ipk_path(ipk_file).get_field("Version") == "2:1.2.3"


def test_build_format_from_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("IPK_PACKER_FORMAT", "tar")
    root_dir = tmp_path / "root"
    write_unpacked_ipk(root_dir)
    ipk_file = tmp_path / "plain.ipk"
    ipk_packer.main(["build", str(root_dir), str(ipk_file)])
    assert ipk_file.read_bytes()[:2] != b"\x1f\x8b"
    assert read_ipk_path(ipk_file).get_field("Package") == "foo"


def test_build_missing_field(tmp_path) -> None:
    root_dir = tmp_path / "root"
    write_unpacked_ipk(root_dir, control="Package: foo\nVersion: 1.0\n")
    output_dir = tmp_path / "out"
    output_dir.mkdir()
    with pytest.raises(SystemExit) as exc_info:
        ipk_packer.main(["build", str(root_dir), str(output_dir)])
    assert exc_info.value.code == 1
    assert os.listdir(output_dir) == []

    with pytest.raises(IpkMissingFieldError):
        ipk_packer.main(["--debug", "build", str(root_dir), str(output_dir)])


def test_build_without_control_dir(tmp_path) -> None:
    with pytest.raises(SystemExit):
        ipk_packer.main(["build", str(tmp_path), str(tmp_path / "out.ipk")])


def test_info(tmp_path, capsys) -> None:
    root_dir = tmp_path / "root"
    write_unpacked_ipk(root_dir)
    ipk_file = tmp_path / "foo.ipk"
    ipk_packer.main(["build", str(root_dir), str(ipk_file)])
    capsys.readouterr()

    ipk_packer.main(["info", str(ipk_file)])
    out = capsys.readouterr().out
    assert "Package: foo\n" in out
    assert "Depends: libc (>= 2.30)\n" in out
    assert "Conffiles:\n /etc/foo/x.conf\n" in out
    assert "Scripts:\n postinst (26 bytes)\n" in out


def test_contents(tmp_path, capsys) -> None:
    root_dir = tmp_path / "root"
    write_unpacked_ipk(root_dir)
    ipk_file = tmp_path / "foo.ipk"
    ipk_packer.main(["build", str(root_dir), str(ipk_file)])
    capsys.readouterr()

    ipk_packer.main(["contents", str(ipk_file)])
    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 10
    assert lines[2] == f"-rw-r--r-- root/root {6:>8} /etc/foo/x.conf"
    assert lines[5] == f"-rwxr-xr-x root/root {17:>8} /usr/bin/foo"
    assert lines[6].startswith("l")
    assert lines[6].endswith(" /usr/bin/foo-link -> foo")
    assert lines[0].startswith("d")


def test_info_not_a_package(tmp_path) -> None:
    bogus = tmp_path / "bogus.ipk"
    bogus.write_bytes(b"not a package" * 100)
    with pytest.raises(SystemExit):
        ipk_packer.main(["info", str(bogus)])


def test_invalid_format_argument(tmp_path) -> None:
    with pytest.raises(SystemExit):
        ipk_packer.main(["build", str(tmp_path), str(tmp_path), "--format", "ar"])


def test_contents_mode_mapping() -> None:
    assert stat.S_ISLNK(ipk_packer._PATH_TYPE2S_IFMT[PathType.SYMLINK])
    assert set(ipk_packer._PATH_TYPE2S_IFMT) == set(PathType)
