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

from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit, urlunsplit
import re

import ghproxy.config as config
from ghproxy.validators import has_dot_segments

KINDS = ("raw", "api", "gist", "github")

# Leading path keywords that select a kind without a host
KIND_ALIASES = ("raw", "api", "gist")

_SCHEME_RE = re.compile(r"^(https?):/+", re.IGNORECASE)


@dataclass(frozen=True)
class UpstreamBases:
    """Upstream origin per kind, with a derived host -> kind index."""
    raw: str = "https://raw.githubusercontent.com"
    api: str = "https://api.github.com"
    gist: str = "https://gist.githubusercontent.com"
    github: str = "https://github.com"
    host_kinds: dict = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        index = {}
        for kind in KINDS:
            host = urlsplit(getattr(self, kind)).netloc.lower()
            if host:
                index[host] = kind
        object.__setattr__(self, "host_kinds", index)

    @classmethod
    def from_config(cls) -> "UpstreamBases":
        return cls(
            raw=config.GH_RAW_BASE.rstrip("/"),
            api=config.GH_API_BASE.rstrip("/"),
            gist=config.GH_GIST_BASE.rstrip("/"),
            github=config.GH_BASE.rstrip("/"),
        )

    def get(self, kind: Optional[str]) -> Optional[str]:
        if kind not in KINDS:
            return None
        return getattr(self, kind)

    def as_dict(self) -> dict[str, str]:
        return {kind: getattr(self, kind) for kind in KINDS}


@dataclass(frozen=True)
class Target:
    kind: Optional[str] = None
    path_parts: tuple[str, ...] = ()
    owner: Optional[str] = None
    repo: Optional[str] = None
    gist_id: Optional[str] = None
    base: Optional[str] = None
    upstream_url: Optional[str] = None


def _split_parts(path: str) -> list[str]:
    return [p for p in path.split("/") if p]


def _host_key(parsed) -> str:
    host = (parsed.hostname or "").lower()
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return host


def _extract_identity(kind: str, parts: list[str]):
    owner = repo = gist_id = None
    if kind in ("raw", "github"):
        owner = parts[0] if parts else None
        repo = parts[1] if len(parts) > 1 else None
        if repo and repo.endswith(".git"):
            repo = repo[:-4] or None
    elif kind == "gist":
        owner = parts[0] if parts else None
        gist_id = parts[1] if len(parts) > 1 else None
    elif kind == "api" and parts:
        root = parts[0]
        if root in ("repos", "users", "orgs") and len(parts) > 1:
            owner = parts[1]
        if root == "repos" and len(parts) > 2:
            repo = parts[2]
    return owner, repo, gist_id


def _parse_input(value, bases: UpstreamBases):
    """Return (kind, path_parts, upstream_url) for a path or absolute URL."""
    if not value or not isinstance(value, str):
        return None, [], None
    cleaned = value.strip().lstrip("/")
    if not cleaned:
        return None, [], None
    cleaned = _SCHEME_RE.sub(lambda m: f"{m.group(1)}://", cleaned)

    url = None
    if _SCHEME_RE.match(cleaned):
        url = cleaned
    elif cleaned.split("/", 1)[0].lower() in bases.host_kinds:
        url = f"https://{cleaned}"

    if url is not None:
        try:
            parsed = urlsplit(url)
            host = _host_key(parsed)
        except ValueError:
            return None, [], None
        if not host:
            return None, [], None
        kind = bases.host_kinds.get(host)
        parts = _split_parts(parsed.path)
        upstream = urlunsplit((parsed.scheme.lower(), parsed.netloc, parsed.path, parsed.query, ""))
        return kind, parts, upstream

    parts = _split_parts(cleaned.split("?", 1)[0])
    if not parts:
        return None, [], None
    if parts[0] in KIND_ALIASES:
        return parts[0], parts[1:], None
    return "github", parts, None


def resolve_target(value, bases: UpstreamBases) -> Target:
    """
    Parse a proxied path or absolute URL into a Target.

    Examples:
        >>> resolve_target("raw/owner/repo/main/a.txt", UpstreamBases()).kind
        'raw'
        >>> resolve_target("https://github.com/o/r.git/info/refs", UpstreamBases()).repo
        'r'
        >>> resolve_target("", UpstreamBases()).kind is None
        True
    """
    kind, parts, upstream_url = _parse_input(value, bases)
    # the upstream client would collapse these and escape the checked owner
    if kind is None or has_dot_segments(parts):
        return Target(path_parts=tuple(parts))
    base = bases.get(kind)
    owner, repo, gist_id = _extract_identity(kind, parts)
    if upstream_url is None and base and parts:
        upstream_url = f"{base}/{'/'.join(parts)}"
    return Target(
        kind=kind,
        path_parts=tuple(parts),
        owner=owner,
        repo=repo,
        gist_id=gist_id,
        base=base,
        upstream_url=upstream_url,
    )
