"""Builders for dependency field values (Depends, Recommends, ...)

The functions only format; they do not parse relationship strings.
"""
import re

from debian.deb822 import PkgRelation

from ipk.exceptions import IpkValidationError

# Dependency relationships
REL_STRICTLY_EARLIER = "<<"
REL_EARLIER_EQUAL = "<="
REL_EXACT = "="
REL_LATER_EQUAL = ">="
REL_STRICTLY_LATER = ">>"

RELATIONS = frozenset(
    {
        REL_STRICTLY_EARLIER,
        REL_EARLIER_EQUAL,
        REL_EXACT,
        REL_LATER_EQUAL,
        REL_STRICTLY_LATER,
    }
)

PKGNAME_REGEX = re.compile(r"[a-z0-9][-+.a-z0-9]+", re.ASCII)


def versioned_dependency(name: str, relation: str = "", version: str = "") -> str:
    """Format a (possibly versioned) dependency on package `name`

    Without a version, the relation is ignored and the bare name is returned.
    Without a relation, "=" is assumed.
    """
    if not PKGNAME_REGEX.fullmatch(name):
        raise IpkValidationError(f'Invalid package name "{name}"')
    if version == "":
        return name
    if relation == "":
        relation = REL_EXACT
    elif relation not in RELATIONS:
        raise IpkValidationError(f'Invalid relation "{relation}"')
    return PkgRelation.str([[{"name": name, "version": (relation, version)}]])


def disjunctive_dependency(*deps: str) -> str:
    """One of `deps` must be satisfied ("a | b")

    The arguments are not validated.
    """
    return " | ".join(deps)


def conjunctive_dependency(*deps: str) -> str:
    """All of `deps` must be satisfied ("a, b"); empty arguments are dropped"""
    return ", ".join(dep for dep in deps if dep)
