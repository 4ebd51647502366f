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
import logging
import time

from ghproxy.targets import Target

logger = logging.getLogger("uvicorn")

WILDCARD = "*"


def parse_rules(value) -> list[str]:
    """
    Split a comma separated rule string (or list) into entries.

    Examples:
        >>> parse_rules(" alice, bob/repo ,,")
        ['alice', 'bob/repo']
        >>> parse_rules(None)
        []
    """
    if not value:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v).strip() for v in value if str(v).strip()]
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return []


def merge_rules(base: Optional[Iterable[str]], extra: Optional[Iterable[str]]) -> list[str]:
    """Ordered union of two rule lists, dropping blanks and duplicates."""
    out: list[str] = []
    seen = set()
    for item in [*(base or ()), *(extra or ())]:
        key = str(item or "").strip()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(key)
    return out


def target_entries(target: Target) -> set[str]:
    """Candidate rule entries for a target: owner, owner/repo, owner/gist."""
    entries = set()
    if target.owner:
        entries.add(target.owner)
        if target.repo:
            entries.add(f"{target.owner}/{target.repo}")
        if target.gist_id:
            entries.add(f"{target.owner}/{target.gist_id}")
    return entries


def matches_rule_set(target: Target, rule_set) -> bool:
    """Fail-closed membership check: an empty set never matches."""
    if not rule_set:
        return False
    if WILDCARD in rule_set:
        return True
    return any(entry in rule_set for entry in target_entries(target))


@dataclass
class RuleCache:
    """In-process memo of a loaded rule set: (value, timestamp, key)."""
    value: Optional[frozenset] = None
    timestamp: float = 0.0
    key: str = ""

    def lookup(self, key: str, ttl: float, now: float) -> Optional[frozenset]:
        if self.value is None or key != self.key:
            return None
        if now - self.timestamp >= ttl:
            return None
        return self.value

    def store(self, key: str, value: frozenset, now: float) -> None:
        self.value = value
        self.timestamp = now
        self.key = key


async def load_rule_set(
    cache: RuleCache,
    *,
    defaults: Iterable[str],
    store=None,
    store_key: str,
    ttl: float,
    now: Optional[float] = None,
) -> frozenset:
    """
    Resolve a rule set from static defaults plus an optional external store.

    The cache key covers the defaults and whether a store is bound, so a
    configuration change invalidates the memoized value. Failures reading
    the store are treated as "no additional rules".
    """
    now = time.time() if now is None else now
    defaults = list(defaults)
    cache_key = f"{store_key}:{','.join(defaults)}:{store is not None}"
    cached = cache.lookup(cache_key, ttl, now)
    if cached is not None:
        return cached

    entries = set(defaults)
    if store is not None:
        try:
            raw = await store.get(store_key)
        except Exception as exc:
            logger.warning("Rule store read failed for %r: %s", store_key, exc)
            raw = None
        entries.update(parse_rules(raw))

    value = frozenset(entries)
    cache.store(cache_key, value, now)
    return value
