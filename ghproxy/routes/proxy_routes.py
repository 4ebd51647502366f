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

from fastapi import APIRouter, Depends, HTTPException, Request, Response
import logging

import ghproxy.config as config
import ghproxy.entry as entry
from ghproxy.auth import check_basic
from ghproxy.auth_guard import require_auth
from ghproxy.config import ConfigurationError
from ghproxy.entry import SESSION_TOKEN_HEADER, ProxyEngine, build_engine
from ghproxy.kv import is_kv_store
from ghproxy.stats import collect_auth_stats
from ghproxy.utils import get_client_ip_info, json_response, text_response, unauthorized

logger = logging.getLogger("uvicorn")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

router = APIRouter(prefix=config.MOUNT_PATH, tags=["proxy"])


def get_engine(request: Request) -> ProxyEngine:
    """Engine built in the lifespan; built lazily when the app runs without one."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = build_engine()
        request.app.state.engine = engine
    return engine


def _realm(engine: ProxyEngine) -> str:
    return engine.env.get("BASIC_REALM") or config.BASIC_REALM


@router.get("/_/ip")
async def client_ip(request: Request):
    """Echo the caller's IP as seen by the proxy, and which header it came from."""
    ip, source = get_client_ip_info(request)
    return Response(
        content=ip,
        headers={
            "content-type": "text/plain; charset=UTF-8",
            "x-ip-source": source,
            "access-control-allow-origin": "*",
        },
    )


@router.api_route("/_/auth", methods=["GET", "HEAD", "POST"])
async def auth_check(request: Request, engine: ProxyEngine = Depends(get_engine)):
    """
    Validate credentials without proxying anything.
    On success the session token is returned in the X-Auth-Token header.
    """
    basic_auth = engine.env.get("BASIC_AUTH", "")
    if not basic_auth:
        raise HTTPException(status_code=500, detail="Missing env BASIC_AUTH")
    result = await require_auth(
        request,
        store=engine.auth_store,
        path="_/auth",
        basic_auth=basic_auth,
        basic_realm=_realm(engine),
    )
    if not result.ok:
        return result.response
    return text_response("OK", 200, {SESSION_TOKEN_HEADER: result.token})


@router.get("/__/stats")
async def auth_stats(request: Request, limit: str = "50", cursor: str = "", engine: ProxyEngine = Depends(get_engine)):
    """Auth failure/ban records, one page at a time (Basic protected)."""
    basic_auth = engine.env.get("BASIC_AUTH", "")
    if not basic_auth:
        raise HTTPException(status_code=500, detail="Missing env BASIC_AUTH")
    if not check_basic(request.headers.get("authorization"), basic_auth):
        return unauthorized(_realm(engine))

    ip, source = get_client_ip_info(request)
    bindings = {
        "auth_stats": is_kv_store(engine.auth_store),
        "gh_allow_kv": is_kv_store(engine.rule_store),
    }
    if not bindings["auth_stats"]:
        return json_response(
            {"ok": False, "error": "kv not bound", "client_ip": ip, "client_ip_source": source, **bindings},
            503,
        )

    try:
        page_size = int(limit)
    except ValueError:
        page_size = 50
    page_size = max(1, min(500, page_size))
    page = await collect_auth_stats(engine.auth_store, limit=page_size, cursor=cursor)
    return json_response({"ok": True, "client_ip": ip, "client_ip_source": source, **bindings, **page})


@router.api_route("/{path:path}", methods=PROXY_METHODS)
async def proxy_entry(path: str, request: Request, engine: ProxyEngine = Depends(get_engine)):
    """
    Proxy GitHub raw/api/gist/git requests.
    Example: GET /raw/owner/repo/main/README.md
    GET /owner/repo/releases/download/v1.0/app.zip
    GET /https://github.com/owner/repo.git/info/refs?service=git-upload-pack
    """
    try:
        return await entry.handle_proxy_entry(request, engine, path=path, search=request.url.query)
    except ConfigurationError as e:
        logger.error("Configuration error on %s: %s", path, e)
        raise HTTPException(status_code=500, detail=str(e))
