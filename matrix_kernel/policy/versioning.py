"""
Policy version arithmetic.

Versions are dotted integers (``major.minor`` or ``major.minor.patch``) and are
ordered numerically component by component, so "1.10" sorts above "1.9".
"""

import re
from typing import Iterable, List, Tuple

from matrix_kernel.errors import InvalidVersionError

VERSION_PATTERN = re.compile(r"^\d+\.\d+(?:\.\d+)?$")


def parse_version(version: str) -> Tuple[int, int, int]:
    """Parse a version string into a (major, minor, patch) tuple."""
    if not isinstance(version, str) or not VERSION_PATTERN.match(version):
        raise InvalidVersionError(
            f"Invalid policy version {version!r}: expected major.minor[.patch]",
            version=str(version),
        )
    parts = [int(p) for p in version.split(".")]
    while len(parts) < 3:
        parts.append(0)
    return parts[0], parts[1], parts[2]


def sort_versions(versions: Iterable[str], descending: bool = True) -> List[str]:
    """Sort version strings numerically. Latest first by default."""
    return sorted(versions, key=parse_version, reverse=descending)


def latest_version(versions: Iterable[str]) -> str:
    ordered = sort_versions(versions)
    if not ordered:
        raise ValueError("No versions to choose from")
    return ordered[0]


def next_minor_version(version: str) -> str:
    """
    The version that follows ``version`` in the learning loop.

    Always a minor bump with the patch component dropped: 1.2 -> 1.3,
    1.2.5 -> 1.3.
    """
    major, minor, _ = parse_version(version)
    return f"{major}.{minor + 1}"
