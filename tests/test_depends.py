import pytest

from ipk.depends import (
    conjunctive_dependency,
    disjunctive_dependency,
    versioned_dependency,
)
from ipk.exceptions import IpkValidationError


@pytest.mark.parametrize(
    "name,relation,version,expected",
    [
        ("libc6", "", "", "libc6"),
        ("libc6", ">=", "", "libc6"),
        ("libc6", ">=", "2.30", "libc6 (>= 2.30)"),
        ("libc6", "", "2.30", "libc6 (= 2.30)"),
        ("libstdc++6", "<<", "1:10", "libstdc++6 (<< 1:10)"),
        ("python3.11", ">>", "3.11.0-1", "python3.11 (>> 3.11.0-1)"),
        ("busybox", "<=", "1.36", "busybox (<= 1.36)"),
    ],
)
def test_versioned_dependency(name, relation, version, expected) -> None:
    assert versioned_dependency(name, relation, version) == expected


@pytest.mark.parametrize("name", ["", "a", "Foo", "-foo", "foo bar", "foo_bar"])
def test_versioned_dependency_invalid_name(name: str) -> None:
    with pytest.raises(IpkValidationError):
        versioned_dependency(name, ">=", "1.0")


@pytest.mark.parametrize("relation", ["<", ">", "==", "!=", "~"])
def test_versioned_dependency_invalid_relation(relation: str) -> None:
    with pytest.raises(IpkValidationError):
        versioned_dependency("foo", relation, "1.0")


def test_disjunctive_dependency() -> None:
    assert disjunctive_dependency() == ""
    assert disjunctive_dependency("foo") == "foo"
    assert (
        disjunctive_dependency("foo", versioned_dependency("bar", ">=", "2"))
        == "foo | bar (>= 2)"
    )


def test_conjunctive_dependency() -> None:
    assert conjunctive_dependency() == ""
    assert conjunctive_dependency("", "") == ""
    assert (
        conjunctive_dependency(
            versioned_dependency("libc6", ">=", "2.30"),
            "",
            disjunctive_dependency("mawk", "gawk"),
        )
        == "libc6 (>= 2.30), mawk | gawk"
    )
