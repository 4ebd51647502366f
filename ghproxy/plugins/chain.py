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
from typing import Any, Awaitable, Callable, Optional, Union
import inspect
import logging

from fastapi import Request, Response

from ghproxy.rules import parse_rules

logger = logging.getLogger("uvicorn")

PLUGIN_API_VERSION = 1


@dataclass(frozen=True)
class PluginScope:
    """Apps/platforms a plugin runs for. Empty tuples match everything."""
    apps: tuple[str, ...] = ()
    platforms: tuple[str, ...] = ()

    def matches(self, app: str, platform: str) -> bool:
        if self.apps and app not in self.apps:
            return False
        if self.platforms and platform not in self.platforms:
            return False
        return True


@dataclass
class PluginPatch:
    """State changes a request hook asks the orchestrator to apply."""
    env: dict = field(default_factory=dict)
    resolved_path: str = ""
    extra_owners: list[str] = field(default_factory=list)
    extra_token_inject: list[str] = field(default_factory=list)
    extra_basic_rules: list[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, value: dict) -> "PluginPatch":
        env = value.get("env")
        resolved = value.get("resolved_path") or value.get("resolvedPath")
        return cls(
            env=dict(env) if isinstance(env, dict) else {},
            resolved_path=resolved if isinstance(resolved, str) else "",
            extra_owners=parse_rules(value.get("extra_owners") or value.get("extraOwners")),
            extra_token_inject=parse_rules(value.get("extra_token_inject") or value.get("extraTokenInject")),
            extra_basic_rules=parse_rules(value.get("extra_basic_rules") or value.get("extraBasicRules")),
        )

    @property
    def changes_state(self) -> bool:
        return bool(self.env or self.resolved_path or self.extra_token_inject or self.extra_basic_rules)

    def merge(self, other: "PluginPatch") -> None:
        self.env.update(other.env)
        if other.resolved_path:
            self.resolved_path = other.resolved_path
        self.extra_owners.extend(other.extra_owners)
        self.extra_token_inject.extend(other.extra_token_inject)
        self.extra_basic_rules.extend(other.extra_basic_rules)


@dataclass
class PluginContext:
    request: Request
    env: dict
    path: dict
    auth: dict
    bases: Any
    target: Any
    meta: dict
    response: Optional[Response] = None
    auth_result: Any = None
    proxy: Optional[dict] = None


HookResult = Union[Response, PluginPatch, dict, None]
Hook = Callable[[PluginContext], Union[HookResult, Awaitable[HookResult]]]
Predicate = Callable[[PluginContext], Union[bool, Awaitable[bool]]]


@dataclass
class Plugin:
    name: str
    handle_request: Optional[Hook] = None
    handle_response: Optional[Hook] = None
    scope: PluginScope = field(default_factory=PluginScope)
    applies_to: Optional[Predicate] = None


async def _call(fn, ctx: PluginContext):
    result = fn(ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


class PluginChain:
    """
    Ordered request/response interceptors.

    Request phase: a Response short-circuits the pipeline; a patch (a
    PluginPatch or a plain dict with the same keys) is merged and the next
    hook runs. Response phase: a Response, or a dict carrying one under
    "response", replaces the final response.
    """

    def __init__(self, plugins=None, *, app: str = "", platform: str = ""):
        self.plugins: list[Plugin] = list(plugins or [])
        self.app = app
        self.platform = platform

    def __len__(self) -> int:
        return len(self.plugins)

    def register(self, plugin: Plugin) -> None:
        self.plugins.append(plugin)

    async def _eligible(self, plugin: Plugin, hook, ctx: PluginContext) -> bool:
        if hook is None:
            return False
        if not plugin.scope.matches(self.app, self.platform):
            return False
        if plugin.applies_to is not None and not await _call(plugin.applies_to, ctx):
            return False
        return True

    async def run_request(
        self,
        ctx: PluginContext,
        on_patch: Optional[Callable[[PluginPatch], None]] = None,
    ) -> Union[Response, PluginPatch]:
        """
        Run request hooks in order. on_patch receives the merged patch after
        every state-affecting result so later hooks see a re-resolved target.
        """
        merged = PluginPatch()
        for plugin in self.plugins:
            if not await self._eligible(plugin, plugin.handle_request, ctx):
                continue
            result = await _call(plugin.handle_request, ctx)
            if not result:
                continue
            if isinstance(result, Response):
                logger.info("Plugin %s answered the request", plugin.name)
                return result
            if isinstance(result, dict):
                result = PluginPatch.from_mapping(result)
            if isinstance(result, PluginPatch):
                merged.merge(result)
                # later hooks see the patched env
                ctx.env.update(result.env)
                if result.resolved_path:
                    ctx.path["resolved"] = result.resolved_path
                if on_patch is not None and result.changes_state:
                    on_patch(merged)
            else:
                logger.warning("Plugin %s returned unsupported %s", plugin.name, type(result).__name__)
        return merged

    async def run_response(self, ctx: PluginContext) -> Optional[Response]:
        for plugin in self.plugins:
            if not await self._eligible(plugin, plugin.handle_response, ctx):
                continue
            result = await _call(plugin.handle_response, ctx)
            if isinstance(result, Response):
                return result
            if isinstance(result, dict) and isinstance(result.get("response"), Response):
                return result["response"]
        return None
