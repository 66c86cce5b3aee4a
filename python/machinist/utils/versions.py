"""
machinist/utils/versions.py

Version and upgrade policy. Versions are "[v]MAJOR.MINOR.PATCH"; a trailing
pre-release or build suffix (as some kubelets report, e.g. "v1.17.5-eks-1")
is accepted and ignored for ordering.

The skew rule: a running version may move to the same version, any later
patch of the same minor, or any patch of the next minor. Downgrades and
multi-minor jumps are rejected.
"""

from __future__ import annotations

import re
from typing import Tuple

from machinist.errors import InvalidVersionError, VersionPolicyError

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)(?:[-+].*)?$")

VersionTuple = Tuple[int, int, int]


def parse_version(version: str) -> VersionTuple:
    """
    Parse a version string into (major, minor, patch).

    Raises:
        InvalidVersionError: If the string is not of the form [v]X.Y.Z.
    """
    match = _VERSION_RE.match(version.strip())
    if not match:
        raise InvalidVersionError(f"invalid version: {version!r}")
    major, minor, patch = (int(g) for g in match.groups())
    return major, minor, patch


def node_style_version(version: str) -> str:
    """Return `version` with a leading 'v', as node objects report it."""
    return version if version.startswith("v") else f"v{version}"


def is_up_or_downgrade(a: str, b: str) -> bool:
    """True if the two versions differ once the leading 'v' is normalised."""
    return node_style_version(a.strip()) != node_style_version(b.strip())


def less_than(a: str, b: str) -> bool:
    return parse_version(a) < parse_version(b)


def is_version_jump(from_version: str, to_version: str) -> bool:
    """
    True when moving from `from_version` to `to_version` crosses more than one
    minor release, changes major, or goes back a minor. Patch-only changes are
    never a jump.
    """
    f_major, f_minor, _ = parse_version(from_version)
    t_major, t_minor, _ = parse_version(to_version)
    if f_major != t_major:
        return True
    return t_minor - f_minor > 1 or t_minor < f_minor


def check_for_version_jump(from_version: str, to_version: str) -> None:
    """
    Validate a version change against the skew rule.

    Args:
        from_version: The version the node currently runs.
        to_version: The version the machine declares.

    Raises:
        VersionPolicyError: On a downgrade or a jump of more than one minor.
        InvalidVersionError: If either version is malformed.
    """
    if less_than(to_version, from_version):
        raise VersionPolicyError(
            f"downgrade not supported: {from_version} -> {to_version}"
        )
    if is_version_jump(from_version, to_version):
        raise VersionPolicyError(
            "only single-minor-version or patch-level upgrades supported: "
            f"{from_version} -> {to_version}"
        )
