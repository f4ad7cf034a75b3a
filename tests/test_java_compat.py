from __future__ import annotations

import pytest

from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.java.compat import is_compatible, parse_major_version, parse_release, required_major_version


@pytest.mark.parametrize(
    ("target", "major"),
    [
        ("1.8.9", 8),
        ("1.16.5", 8),
        ("1.17", 16),
        ("1.17.1", 16),
        ("1.18", 17),
        ("1.20.4", 17),
        ("1.20.5", 21),
        ("1.20.5-pre1", 21),
        ("1.21 Release Candidate 1", 21),
        ("1.21.4", 21),
    ],
)
def test_required_major_version_table(target: str, major: int) -> None:
    assert required_major_version(target) == major


@pytest.mark.parametrize("target", ["0.30", "2.0", "24w14a", "", "latest"])
def test_targets_outside_table_are_unsupported(target: str) -> None:
    with pytest.raises(ServerDeckError) as excinfo:
        required_major_version(target)
    assert excinfo.value.kind == ErrorKind.UNSUPPORTED_VERSION


@pytest.mark.parametrize(
    ("version", "major"),
    [("17.0.9", 17), ("1.8.0_392", 8), ("8.0.392", 8), ("21", 21), ("11.0.22+7", 11)],
)
def test_parse_major_version(version: str, major: int) -> None:
    assert parse_major_version(version) == major


def test_parse_major_version_rejects_garbage() -> None:
    with pytest.raises(ServerDeckError) as excinfo:
        parse_major_version("openjdk")
    assert excinfo.value.kind == ErrorKind.INVALID_REQUEST


def test_parse_release_uses_numeric_prefix() -> None:
    assert parse_release("1.20.5-pre1") == (1, 20, 5)
    assert parse_release("1.18") == (1, 18, 0)


def test_is_compatible_examples() -> None:
    assert is_compatible("17.0.9", "1.20.4") is True
    assert is_compatible("8.0.392", "1.20.4") is False
    assert is_compatible("21.0.1", "1.20.5") is True
    assert is_compatible("1.8.0_392", "1.12.2") is True
    assert is_compatible("17.0.9", "1.20.5") is False
