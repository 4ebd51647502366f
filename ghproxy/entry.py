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
import logging

import httpx
from fastapi import Request, Response

import ghproxy.config as config
from ghproxy.auth_guard import require_auth
from ghproxy.config import ConfigurationError
from ghproxy.injection import decide_injection, load_inject_rules
from ghproxy.kv import build_store
from ghproxy.owners import DEFAULT_OWNERS, authorize_target, load_allowed_owners, resolve_default_owners
from ghproxy.plugins.chain import PLUGIN_API_VERSION, PluginChain, PluginContext, PluginPatch
from ghproxy.plugins.registry import build_plugin_chain
from ghproxy.proxy import (
    DEFAULT_HEADER_ALLOWLIST,
    GIT_HEADER_ALLOWLIST,
    ProxyOptions,
    handle_proxy_request,
    strip_userinfo,
)
from ghproxy.rules import RuleCache, matches_rule_set, merge_rules, parse_rules
from ghproxy.targets import Target, UpstreamBases, resolve_target
from ghproxy.utils import forbidden, json_response, text_response
from ghproxy.validators import is_git_path, is_release_latest

logger = logging.getLogger("uvicorn")

SESSION_TOKEN_HEADER = "x-auth-token"


@dataclass
class ProxyEngine:
    """Long-lived state shared by every request: bases, caches, stores, plugins."""
    bases: UpstreamBases = field(default_factory=UpstreamBases.from_config)
    plugins: PluginChain = field(default_factory=PluginChain)
    rule_store: object = None
    auth_store: object = None
    owners_cache: RuleCache = field(default_factory=RuleCache)
    inject_cache: RuleCache = field(default_factory=RuleCache)
    default_owners: tuple[str, ...] = DEFAULT_OWNERS
    env: dict = field(default_factory=config.build_env)
    rules_ttl: float = field(default_factory=lambda: config.RULES_CACHE_TTL_SECONDS)
    max_redirects: int = field(default_factory=lambda: config.MAX_REDIRECTS)
    timeout: float = field(default_factory=lambda: config.REQUEST_TIMEOUT_SECONDS)
    mount_path: str = field(default_factory=lambda: config.MOUNT_PATH)
    transport: Optional[httpx.AsyncBaseTransport] = None


def build_engine() -> ProxyEngine:
    return ProxyEngine(
        plugins=build_plugin_chain(),
        rule_store=build_store("rules"),
        auth_store=build_store("auth"),
    )


@dataclass
class ResolvedState:
    resolved: str
    target: Target
    basic_match: bool


def resolve_state(engine: ProxyEngine, env: dict, path_raw: str, patch: Optional[PluginPatch] = None) -> ResolvedState:
    """Target plus local-auth rule match for the (possibly overridden) path."""
    patch = patch or PluginPatch()
    resolved = patch.resolved_path or path_raw
    target = resolve_target(resolved, engine.bases)
    basic_rules = frozenset(merge_rules(parse_rules(env.get("BASIC_AUTH_RULES")), patch.extra_basic_rules))
    return ResolvedState(resolved=resolved, target=target, basic_match=matches_rule_set(target, basic_rules))


def select_header_policy(kind: Optional[str], *, is_git: bool, has_auth_header: bool, requires_auth: bool) -> tuple[str, ...]:
    if is_git:
        return GIT_HEADER_ALLOWLIST
    # callers may bring their own API token unless the header is ours
    if kind == "api" and has_auth_header and not requires_auth:
        return (*DEFAULT_HEADER_ALLOWLIST, "authorization")
    return DEFAULT_HEADER_ALLOWLIST


def _auth_view(env: dict) -> dict:
    return {
        "gh_inject_token": env.get("GH_INJECT_TOKEN", ""),
        "gh_api_token": env.get("GH_API_TOKEN", ""),
        "basic_auth": env.get("BASIC_AUTH", ""),
    }


def _with_query(url: str, search: str) -> str:
    search = (search or "").lstrip("?")
    if not search:
        return url
    return f"{url}{'&' if '?' in url else '?'}{search}"


def proxy_origin(request: Request, mount_path: str = "") -> str:
    return str(request.base_url).rstrip("/") + mount_path


def status_response() -> Response:
    return json_response({"status": "ok", "message": "GitHub edge proxy"})


async def handle_proxy_entry(request: Request, engine: ProxyEngine, *, path: str = "", search: str = "") -> Response:
    """
    Run one proxied request through the whole pipeline:
    plugins (request) -> target -> owner/path policy -> local auth ->
    token injection -> forward -> plugins (response).
    """
    path_raw = (path or "").lstrip("/")
    if not path_raw:
        return status_response()

    env = dict(engine.env)
    state = resolve_state(engine, env, path_raw)
    meta = {"version": PLUGIN_API_VERSION, "app": engine.plugins.app, "platform": engine.plugins.platform}
    ctx = PluginContext(
        request=request,
        env=env,
        path={"raw": path_raw, "resolved": state.resolved, "search": search},
        auth=_auth_view(env),
        bases=engine.bases,
        target=state.target,
        meta=meta,
    )

    def refresh(merged: PluginPatch) -> None:
        nonlocal state
        state = resolve_state(engine, env, path_raw, merged)
        ctx.target = state.target
        ctx.path["resolved"] = state.resolved
        ctx.auth = _auth_view(env)

    patch = PluginPatch()
    if engine.plugins:
        try:
            result = await engine.plugins.run_request(ctx, on_patch=refresh)
        except Exception:
            logger.exception("Plugin request hook failed for %s", path_raw)
            return text_response("Internal Error", 500)
        if isinstance(result, Response):
            return result
        patch = result

    default_owners = merge_rules(resolve_default_owners(env, engine.default_owners), patch.extra_owners)
    allowed = await load_allowed_owners(
        engine.owners_cache, default_owners=default_owners, store=engine.rule_store, ttl=engine.rules_ttl
    )
    decision = authorize_target(state.target, allowed)
    if not decision.ok or not decision.upstream_url:
        logger.warning("Denied %s: %s", path_raw, decision.reason)
        return forbidden()

    requires_auth = state.basic_match
    basic_auth = env.get("BASIC_AUTH", "")
    session_token = ""
    if requires_auth:
        if not basic_auth:
            raise ConfigurationError("Missing BASIC_AUTH for a protected target")
        auth_res = await require_auth(
            request,
            store=engine.auth_store,
            path=path_raw,
            basic_auth=basic_auth,
            basic_realm=env.get("BASIC_REALM") or config.BASIC_REALM,
        )
        if not auth_res.ok:
            return auth_res.response
        session_token = auth_res.token

    inject_rules = await load_inject_rules(
        engine.inject_cache,
        rules=merge_rules(parse_rules(env.get("GH_INJECT_RULES")), patch.extra_token_inject),
        store=engine.rule_store,
        ttl=engine.rules_ttl,
    )
    injection = decide_injection(
        state.target,
        inject_rules,
        inject_token=env.get("GH_INJECT_TOKEN", ""),
        api_token=env.get("GH_API_TOKEN", ""),
    )

    kind = decision.kind
    is_git = kind == "github" and is_git_path(decision.path_parts)
    release_latest = is_release_latest(kind, decision.path_parts)
    upstream_url = _with_query(decision.upstream_url, search)
    opts = ProxyOptions(
        url=upstream_url,
        allowlist=select_header_policy(
            kind,
            is_git=is_git,
            has_auth_header="authorization" in request.headers,
            requires_auth=requires_auth,
        ),
        auth_scheme="basic" if kind == "raw" or is_git else "bearer",
        ignore_auth_header=requires_auth,
        inject_token=injection.token if injection.inject else "",
        inject_scheme=injection.scheme,
        return_redirect=release_latest,
        rewrite_redirect_to_proxy=release_latest,
        proxy_origin=proxy_origin(request, engine.mount_path),
        bases=engine.bases,
        # git needs upstream 401 + WWW-Authenticate to retry with credentials
        passthrough_errors=is_git,
        max_redirects=engine.max_redirects,
        timeout=engine.timeout,
        transport=engine.transport,
        response_headers={SESSION_TOKEN_HEADER: session_token} if session_token else {},
    )
    response = await handle_proxy_request(request, opts)

    if engine.plugins:
        ctx.response = response
        ctx.auth_result = decision
        ctx.proxy = {
            "upstream_url": strip_userinfo(upstream_url),
            "requires_auth": requires_auth,
            "inject_token": injection.inject,
            "session_token": session_token,
            "kind": kind,
            "is_git": is_git,
        }
        try:
            replaced = await engine.plugins.run_response(ctx)
        except Exception:
            logger.exception("Plugin response hook failed for %s", path_raw)
            if response.background is not None:
                await response.background()
            return text_response("Internal Error", 500)
        if replaced is not None:
            # the upstream stream is never sent; release it now
            if replaced is not response and response.background is not None:
                await response.background()
            return replaced

    return response
