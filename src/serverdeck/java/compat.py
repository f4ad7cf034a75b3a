"""Minecraft to Java compatibility rules."""

from __future__ import annotations

import re

from serverdeck.errors import ErrorKind, ServerDeckError

_TARGET_PREFIX = re.compile(r"^\s*(\d+)\.(\d+)(?:\.(\d+))?")
_JAVA_PREFIX = re.compile(r"^\s*(\d+)(?:\.(\d+))?")

Release = tuple[int, int, int]

# Half-open [lower, upper) ranges of Minecraft releases and their minimum Java major.
JAVA_REQUIREMENTS: tuple[tuple[Release, Release, int], ...] = (
    ((1, 0, 0), (1, 17, 0), 8),
    ((1, 17, 0), (1, 18, 0), 16),
    ((1, 18, 0), (1, 20, 5), 17),
    ((1, 20, 5), (2, 0, 0), 21),
)


def parse_release(target: str) -> Release:
    """Numeric prefix of a Minecraft version; ``1.20.5-pre1`` gives ``(1, 20, 5)``."""
    match = _TARGET_PREFIX.match(target or "")
    if match is None:
        raise ServerDeckError(
            f"Unrecognized Minecraft version: {target!r}",
            kind=ErrorKind.UNSUPPORTED_VERSION,
            hint="Use a release identifier such as 1.20.4.",
        )
    return int(match.group(1)), int(match.group(2)), int(match.group(3) or 0)


def required_major_version(target: str) -> int:
    release = parse_release(target)
    for lower, upper, major in JAVA_REQUIREMENTS:
        if lower <= release < upper:
            return major
    raise ServerDeckError(
        f"Minecraft {target} is outside the supported range.",
        kind=ErrorKind.UNSUPPORTED_VERSION,
        hint="Supported targets are 1.0 through 1.x releases.",
    )


def parse_major_version(version: str) -> int:
    """Leading Java major; legacy ``1.x`` strings map to ``x``."""
    match = _JAVA_PREFIX.match(version or "")
    if match is None:
        raise ServerDeckError(
            f"Unrecognized Java version: {version!r}",
            kind=ErrorKind.INVALID_REQUEST,
        )
    first = int(match.group(1))
    if first == 1 and match.group(2) is not None:
        return int(match.group(2))
    return first


def is_compatible(installed_version: str, target: str) -> bool:
    return parse_major_version(installed_version) >= required_major_version(target)
