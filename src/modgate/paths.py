from __future__ import annotations

import os
import posixpath
from pathlib import Path


def to_posix(value: str) -> str:
    return value.replace("\\", "/")


def normalize_absolute_path(value: str | Path) -> str:
    """Return an absolute, normalized path string (no ``..``, no trailing separator)."""
    return os.path.normpath(os.path.abspath(os.fspath(value)))


def relative_to_root(root: str | Path, target: str | Path) -> str:
    """Return *target* relative to *root* in POSIX form.

    The result starts with ``..`` when *target* lies outside *root*, mirroring
    ``os.path.relpath``.  Paths on different drives are returned unchanged.
    """
    root_norm = normalize_absolute_path(root)
    target_norm = normalize_absolute_path(target)
    try:
        relative = os.path.relpath(target_norm, root_norm)
    except ValueError:
        return to_posix(target_norm)
    if relative == ".":
        return ""
    return to_posix(relative)


def ensure_within_root(root: str | Path, target: str | Path) -> bool:
    """Return True when *target* is *root* itself or sits beneath it."""
    relative = relative_to_root(root, target)
    if os.path.isabs(relative):
        return False
    return relative != ".." and not relative.startswith("../")


def join_root(root: str | Path, relative: str) -> str:
    """Join *relative* onto *root*, refusing results that escape the root.

    Raises:
        ValueError: If the joined path resolves outside *root*.
    """
    cleaned = to_posix(relative).lstrip("/")
    joined = normalize_absolute_path(os.path.join(normalize_absolute_path(root), cleaned))
    if not ensure_within_root(root, joined):
        raise ValueError(f"path escapes root {root}: {relative!r}")
    return joined


def normalize_relative_path(value: str) -> str:
    """Return the canonical POSIX spelling of a root-relative path.

    ``./src/app.ts``, ``src\\app.ts`` and ``src/x/../app.ts`` all become
    ``src/app.ts``.

    Raises:
        ValueError: If *value* is empty, absolute, or escapes its root.
    """
    cleaned = to_posix(value).strip()
    if not cleaned:
        raise ValueError("relative path must be non-empty")
    if cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
        raise ValueError(f"path must be relative: {value!r}")
    normalized = posixpath.normpath(cleaned)
    if normalized in {".", ".."} or normalized.startswith("../"):
        raise ValueError(f"path escapes its root: {value!r}")
    return normalized
