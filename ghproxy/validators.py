# SPDX-License-Identifier: GPL-3.0-or-later
#
# Copyright (C) 2025 Mark Sholund
#
# This file is part of the ghproxy project.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

from pathlib import Path
from typing import Optional, Sequence
from urllib.parse import unquote


class ValidationError(ValueError):
    """Custom exception for validation failures"""
    pass


# Sub-paths of github.com/<owner>/<repo>/ that may be proxied
GITHUB_ALLOWED_PREFIXES = (
    ("raw",),
    ("archive",),
    ("tarball",),
    ("zipball",),
    ("releases", "download"),
    ("releases", "latest"),
    ("releases", "tag"),
    ("info", "refs"),
)


def has_dot_segments(parts: Sequence[str]) -> bool:
    """True when any segment is "." or "..", also in percent-encoded form."""
    return any(unquote(p) in (".", "..") for p in parts or ())


def _starts_with(parts: Sequence[str], prefix: Sequence[str]) -> bool:
    return tuple(parts[:len(prefix)]) == tuple(prefix)


def is_allowed_path(kind: Optional[str], parts: Sequence[str]) -> bool:
    """
    Decide whether the path shape of a target is servable for its kind.

    Rules:
    - raw: owner/repo/ref/path (at least 4 segments)
    - gist: owner/id/raw/... (at least 3 segments, third is "raw")
    - github: owner/repo followed by raw, archive, tarball, zipball,
      releases/download, releases/latest, releases/tag, info/refs,
      or exactly git-upload-pack
    - api: any shape (owner rules decide)
    - anything else, or any "." / ".." segment, is rejected

    Examples:
        >>> is_allowed_path("raw", ["o", "r", "main", "a.txt"])
        True
        >>> is_allowed_path("github", ["o", "r", "issues"])
        False
    """
    parts = list(parts or ())
    if has_dot_segments(parts):
        return False
    if kind == "raw":
        return len(parts) >= 4
    if kind == "gist":
        return len(parts) >= 3 and parts[2] == "raw"
    if kind == "github":
        if len(parts) < 3:
            return False
        rest = parts[2:]
        if rest == ["git-upload-pack"]:
            return True
        return any(_starts_with(rest, prefix) for prefix in GITHUB_ALLOWED_PREFIXES)
    if kind == "api":
        return True
    return False


def is_git_path(parts: Sequence[str]) -> bool:
    """True for git smart-HTTP endpoints (info/refs, git-upload-pack)."""
    parts = list(parts or ())
    if len(parts) < 3:
        return False
    rest = parts[2:]
    return _starts_with(rest, ("info", "refs")) or rest[0] == "git-upload-pack"


def is_release_latest(kind: Optional[str], parts: Sequence[str]) -> bool:
    parts = list(parts or ())
    return kind == "github" and len(parts) >= 4 and parts[2] == "releases" and parts[3] == "latest"


def safe_join_path(base: Path, *parts: str) -> Path:
    """
    Safely join path components and ensure result is within base directory.

    Args:
        base: Base directory path
        *parts: Path components to join

    Returns:
        Resolved path within base directory

    Raises:
        ValidationError: If resulting path is outside base directory
    """
    result = base
    for part in parts:
        if not part:
            continue
        if '..' in part or part.startswith('/') or '\\' in part or '\0' in part:
            raise ValidationError(f"Invalid path component: {part}")
        result = result / part

    try:
        resolved = result.resolve()
        base_resolved = base.resolve()
    except (OSError, RuntimeError) as e:
        raise ValidationError(f"Path resolution failed: {e}")

    try:
        resolved.relative_to(base_resolved)
    except ValueError:
        raise ValidationError(
            f"Path traversal detected: {resolved} is outside {base_resolved}"
        )

    return resolved
