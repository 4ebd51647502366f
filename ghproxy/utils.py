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
from urllib.parse import urlsplit
import json

from fastapi import Request, Response

IP_HEADERS = (
    "eo-client-ip",
    "cf-connecting-ip",
    "x-forwarded-for",
)


# ----------------------------------------------------------------------
# Client identity
# ----------------------------------------------------------------------
def get_client_ip_info(request: Request) -> tuple[str, str]:
    """
    Return (ip, source) for the caller.
    Edge headers win over the socket peer; the first x-forwarded-for hop is used.
    """
    for name in IP_HEADERS:
        value = request.headers.get(name)
        if value:
            ip = value.split(",")[0].strip()
            if ip:
                return ip, name
    if request.client and request.client.host:
        return request.client.host, "client"
    return "0.0.0.0", "none"


def get_client_ip(request: Request) -> str:
    return get_client_ip_info(request)[0]


# ----------------------------------------------------------------------
# URL helpers
# ----------------------------------------------------------------------
def safe_url(value) -> Optional[str]:
    """Return value if it parses as an absolute http(s) URL, else None."""
    try:
        parsed = urlsplit(str(value or ""))
        parsed.port  # raises on a malformed port
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return str(value)


def strip_query(path: str) -> str:
    return path.split("?", 1)[0]


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------
def with_cors(extra: Optional[dict] = None) -> dict:
    return {"access-control-allow-origin": "*", **(extra or {})}


def text_response(body: str, status_code: int = 200, headers: Optional[dict] = None) -> Response:
    return Response(
        content=body,
        status_code=status_code,
        headers=with_cors({"content-type": "text/plain; charset=UTF-8", **(headers or {})}),
    )


def json_response(body, status_code: int = 200) -> Response:
    return Response(
        content=json.dumps(body),
        status_code=status_code,
        headers=with_cors({"content-type": "application/json; charset=utf-8"}),
    )


def forbidden(headers: Optional[dict] = None) -> Response:
    return text_response("Forbidden", 403, headers)


def unauthorized(realm: str, scheme: str = "Basic", headers: Optional[dict] = None) -> Response:
    return text_response(
        "Auth required",
        401,
        {"WWW-Authenticate": f'{scheme} realm="{realm}"', **(headers or {})},
    )
