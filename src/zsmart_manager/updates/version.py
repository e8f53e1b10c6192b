"""
Version parsing and comparison.

Release versions are dot-separated non-negative integers ("1.12.3").
Comparison is numeric per component, and missing trailing components count
as zero, so "1.2" and "1.2.0" are equal. Release tags may carry a leading
"v" which normalize_tag removes before parsing.
"""

from __future__ import annotations

from enum import IntEnum
from itertools import zip_longest

from zsmart_manager.errors import InvalidVersionError


class VersionOrder(IntEnum):
    """Result of comparing two versions."""

    LESS = -1
    EQUAL = 0
    GREATER = 1


def normalize_tag(tag: str) -> str:
    """
    Convert a release tag to a version string.

    Args:
        tag: Release tag (e.g., "v2.1.0" or "2.1.0").

    Returns:
        The tag with surrounding whitespace and one leading "v" removed.
    """
    tag = tag.strip()
    if tag[:1] in ("v", "V"):
        return tag[1:]
    return tag


def parse_version(version: str) -> tuple[int, ...]:
    """
    Parse a version string into its numeric components.

    Args:
        version: Version string (e.g., "1.12.3").

    Returns:
        Tuple of integer components.

    Raises:
        InvalidVersionError: If the string is empty or any component is not
            a non-negative integer.
    """
    if not isinstance(version, str) or not version.strip():
        raise InvalidVersionError(
            "Version string cannot be empty",
            details={"version": version},
        )

    components = []
    for part in version.strip().split("."):
        # str.isdigit accepts superscripts and other non-ASCII digits
        if not part.isascii() or not part.isdigit():
            raise InvalidVersionError(
                f"Invalid version: {version}",
                details={
                    "version": version,
                    "component": part,
                    "format": "MAJOR[.MINOR[.PATCH...]]",
                },
            )
        components.append(int(part))

    return tuple(components)


def compare_versions(a: str, b: str) -> VersionOrder:
    """
    Compare two versions component-wise.

    Args:
        a: First version string.
        b: Second version string.

    Returns:
        VersionOrder.LESS, EQUAL or GREATER describing a relative to b.

    Raises:
        InvalidVersionError: If either version is invalid.

    Example:
        >>> compare_versions("1.2.0", "1.2")
        <VersionOrder.EQUAL: 0>
        >>> compare_versions("2.0.0", "1.9.9")
        <VersionOrder.GREATER: 1>
    """
    for left, right in zip_longest(parse_version(a), parse_version(b), fillvalue=0):
        if left < right:
            return VersionOrder.LESS
        if left > right:
            return VersionOrder.GREATER
    return VersionOrder.EQUAL


def is_valid_version(version: str | None) -> bool:
    """Return True if version parses."""
    if version is None:
        return False
    try:
        parse_version(version)
    except InvalidVersionError:
        return False
    return True
