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

from ghproxy.rules import RuleCache, load_rule_set, matches_rule_set
from ghproxy.targets import Target

INJECT_RULES_KEY = "inject"

# Kinds the proxy may attach its own upstream credential to
INJECTABLE_KINDS = ("raw", "gist", "api")


@dataclass(frozen=True)
class InjectionDecision:
    inject: bool = False
    token: str = ""
    scheme: str = "bearer"


NO_INJECTION = InjectionDecision()


async def load_inject_rules(
    cache: RuleCache,
    *,
    rules: Iterable[str],
    store=None,
    ttl: float,
    key: str = INJECT_RULES_KEY,
    now: Optional[float] = None,
) -> frozenset:
    return await load_rule_set(cache, defaults=rules, store=store, store_key=key, ttl=ttl, now=now)


def decide_injection(
    target: Target,
    rule_set,
    *,
    inject_token: str = "",
    api_token: str = "",
) -> InjectionDecision:
    """
    Decide whether the server-held token goes upstream for this target.

    Unlike the owner allow-list, an empty rule set means never inject.
    raw/gist use the inject token over Basic, api prefers the API token
    over Bearer.
    """
    if target.kind not in INJECTABLE_KINDS:
        return NO_INJECTION
    if not matches_rule_set(target, rule_set):
        return NO_INJECTION
    if target.kind == "api":
        token = api_token or inject_token
        scheme = "bearer"
    else:
        token = inject_token
        scheme = "basic"
    if not token:
        return NO_INJECTION
    return InjectionDecision(inject=True, token=token, scheme=scheme)
