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
from typing import Optional
import logging

from fastapi import Request, Response

import ghproxy.config as config
from ghproxy.auth import auth_type, basic_password, bearer_token, build_token, check_basic, verify_token
from ghproxy.stats import get_auth_record, is_record_banned, record_auth_event
from ghproxy.utils import forbidden, get_client_ip, unauthorized

logger = logging.getLogger("uvicorn")


@dataclass
class AuthResult:
    ok: bool
    response: Optional[Response] = None
    token: str = ""


async def require_auth(
    request: Request,
    *,
    store=None,
    path: str = "",
    basic_auth: str = "",
    basic_realm: str = "gh-proxy",
    token_ttl_minutes: Optional[int] = None,
    record_success: Optional[bool] = None,
) -> AuthResult:
    """
    Validate the caller's bearer session token or Basic credential.

    A banned IP gets 403 before any credential is looked at. A failed
    attempt that presented some credential is recorded; if that tips the
    IP into a ban the answer is 403, otherwise 401 with a challenge for
    the attempted scheme. Success yields a session token (the verified
    bearer token, or a freshly built one).
    """
    ttl = config.TOKEN_TTL_MIN if token_ttl_minutes is None else token_ttl_minutes
    record_success = config.AUTH_RECORD_SUCCESS if record_success is None else record_success
    ip = get_client_ip(request)

    current = await get_auth_record(store, ip)
    if is_record_banned(current):
        logger.warning("Rejecting banned client %s on %s", ip, path)
        return AuthResult(ok=False, response=forbidden())

    header = request.headers.get("authorization")
    attempted = auth_type(header)
    secret = basic_password(basic_auth)
    presented = bearer_token(header)
    token_ok = attempted == "bearer" and verify_token(presented, secret, ttl)
    basic_ok = not token_ok and attempted == "basic" and check_basic(header, basic_auth)

    if not token_ok and not basic_ok:
        if attempted != "none":
            rec = await record_auth_event(store, ip=ip, kind="fail", path=path, auth=attempted)
            if is_record_banned(rec):
                logger.warning("Client %s banned after failed %s auth", ip, attempted)
                return AuthResult(ok=False, response=forbidden())
        scheme = "Bearer" if attempted == "bearer" else "Basic"
        return AuthResult(ok=False, response=unauthorized(basic_realm, scheme))

    if record_success:
        await record_auth_event(store, ip=ip, kind="ok", path=path, auth=attempted)
    token = presented if token_ok else build_token(secret)
    return AuthResult(ok=True, token=token)
