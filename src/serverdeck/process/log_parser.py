"""Minecraft console line helpers."""

from __future__ import annotations


def parse_log_level(line: str) -> str | None:
    lowered = line.lower()
    if "[warn]" in lowered or "/warn]" in lowered:
        return "warn"
    if "[error]" in lowered or "/error]" in lowered or "exception" in lowered:
        return "error"
    if "[info]" in lowered or "/info]" in lowered:
        return "info"
    return None


def decode_line(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


def is_ready_line(line: str) -> bool:
    """True for the banner a server prints once it accepts players."""
    lowered = line.lower()
    return (
        ("done" in lowered and "for help" in lowered)
        or "server started" in lowered
        or "server is running" in lowered
        or ("preparing start" in lowered and "done" in lowered)
    )
