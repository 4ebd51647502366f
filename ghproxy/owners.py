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

from dataclasses import dataclass
from typing import Iterable, Optional

from ghproxy.rules import RuleCache, WILDCARD, load_rule_set, parse_rules, target_entries
from ghproxy.targets import Target
from ghproxy.validators import is_allowed_path

# Static allow-list shipped with the service; environment rules are added on top
DEFAULT_OWNERS: tuple[str, ...] = ()

ALLOW_RULES_KEY = "allow"


@dataclass(frozen=True)
class AuthorizationDecision:
    ok: bool
    reason: Optional[str] = None
    kind: Optional[str] = None
    path_parts: tuple[str, ...] = ()
    owner: Optional[str] = None
    repo: Optional[str] = None
    gist_id: Optional[str] = None
    base: Optional[str] = None
    upstream_url: Optional[str] = None


def resolve_default_owners(env: Optional[dict], fallback: Iterable[str] = DEFAULT_OWNERS) -> list[str]:
    """Static owners plus the comma list in GH_ALLOW_RULES."""
    env_owners = parse_rules((env or {}).get("GH_ALLOW_RULES"))
    return [*fallback, *env_owners]


async def load_allowed_owners(
    cache: RuleCache,
    *,
    default_owners: Iterable[str],
    store=None,
    ttl: float,
    key: str = ALLOW_RULES_KEY,
    now: Optional[float] = None,
) -> frozenset:
    return await load_rule_set(
        cache, defaults=default_owners, store=store, store_key=key, ttl=ttl, now=now
    )


def authorize_target(target: Target, allowed_owners) -> AuthorizationDecision:
    """
    Combine path policy with the owner allow-list.

    A target without kind/base is denied with reason "kind", a rejected path
    shape with "path", a target without owner with "owner" (regardless of
    the allow-list), and an owner missing from a non-wildcard list with
    "owners".
    """
    if not target.kind or not target.base:
        return AuthorizationDecision(ok=False, reason="kind", path_parts=target.path_parts)

    common = dict(kind=target.kind, path_parts=target.path_parts)
    if not is_allowed_path(target.kind, target.path_parts):
        return AuthorizationDecision(ok=False, reason="path", **common)
    if not target.owner:
        return AuthorizationDecision(ok=False, reason="owner", **common)

    identity = dict(owner=target.owner, repo=target.repo, gist_id=target.gist_id)
    allowed_owners = allowed_owners or frozenset()
    if WILDCARD not in allowed_owners:
        if not allowed_owners:
            return AuthorizationDecision(ok=False, reason="owners", **common, **identity)
        if not any(entry in allowed_owners for entry in target_entries(target)):
            return AuthorizationDecision(ok=False, reason="owners", **common, **identity)

    return AuthorizationDecision(
        ok=True,
        base=target.base,
        upstream_url=target.upstream_url,
        **common,
        **identity,
    )
