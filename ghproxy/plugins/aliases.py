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

from typing import Optional
import json
import re

import ghproxy.config as config
from ghproxy.config import ConfigurationError
from ghproxy.plugins.chain import Plugin, PluginContext, PluginPatch
from ghproxy.utils import strip_query

_TEMPLATE_RE = re.compile(r"\{(\w+)\}")


def parse_alias_table(value: str, name: str) -> dict[str, str]:
    """Decode a JSON object of alias -> template from the environment."""
    if not value or not value.strip():
        return {}
    try:
        table = json.loads(value)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} is not valid JSON: {e}")
    if not isinstance(table, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in table.items()
    ):
        raise ConfigurationError(f"{name} must be a JSON object of strings")
    return {k.lstrip("/"): v for k, v in table.items()}


def apply_template(template: str, bases: dict) -> str:
    return _TEMPLATE_RE.sub(lambda m: bases.get(m.group(1), ""), template)


def resolve_alias(path: str, *, bases: dict, aliases: dict, prefixes: dict) -> Optional[str]:
    """
    Expand an exact alias, or the first matching prefix alias.

    Examples:
        >>> resolve_alias("tool", bases={"raw": "https://r"}, aliases={"tool": "{raw}/o/r/main/t.sh"}, prefixes={})
        'https://r/o/r/main/t.sh'
    """
    pathname = strip_query(path).lstrip("/")
    if not pathname:
        return None
    if pathname in aliases:
        return apply_template(aliases[pathname], bases)
    for prefix, template in prefixes.items():
        if pathname.startswith(prefix):
            rest = pathname[len(prefix):].lstrip("/")
            return f"{apply_template(template, bases).rstrip('/')}/{rest}"
    return None


class AliasPlugin:
    def __init__(self, aliases: dict, prefixes: dict):
        self.aliases = aliases
        self.prefixes = prefixes

    @classmethod
    def from_config(cls) -> "AliasPlugin":
        return cls(
            parse_alias_table(config.ALIAS_URLS, "ALIAS_URLS"),
            parse_alias_table(config.PREFIX_URLS, "PREFIX_URLS"),
        )

    def applies_to(self, ctx: PluginContext) -> bool:
        return bool(self.aliases or self.prefixes)

    def handle_request(self, ctx: PluginContext):
        bases = ctx.bases.as_dict() if hasattr(ctx.bases, "as_dict") else dict(ctx.bases)
        resolved = resolve_alias(ctx.path["raw"], bases=bases, aliases=self.aliases, prefixes=self.prefixes)
        if resolved is None:
            return None
        return PluginPatch(resolved_path=resolved)


def build_plugin() -> Plugin:
    alias = AliasPlugin.from_config()
    return Plugin(
        name="aliases",
        handle_request=alias.handle_request,
        applies_to=alias.applies_to,
    )
