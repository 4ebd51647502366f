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

import httpx
import pytest
from fastapi import Request
from fastapi.responses import StreamingResponse

from ghproxy.kv import MemoryKVStore


def build_request(
    method: str = "GET",
    path: str = "/",
    headers: dict | None = None,
    body: bytes = b"",
    client=("203.0.113.7", 50000),
    query: str = "",
) -> Request:
    """Starlette Request built from a raw ASGI scope."""
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "https",
        "server": ("proxy.example", 443),
        "path": path,
        "root_path": "",
        "query_string": query.encode(),
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()],
        "client": client,
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


class BodyStream(httpx.AsyncByteStream):
    """Unread async body, so the proxy can consume it with aiter_raw()."""

    def __init__(self, body: bytes = b""):
        self.body = body
        self.closed = False

    async def __aiter__(self):
        if self.body:
            yield self.body

    async def aclose(self):
        self.closed = True


def upstream_response(status: int = 200, headers=None, body: bytes = b"") -> httpx.Response:
    return httpx.Response(status, headers=headers, stream=BodyStream(body))


async def read_body(response) -> bytes:
    if isinstance(response, StreamingResponse):
        chunks = [chunk async for chunk in response.body_iterator]
        return b"".join(c if isinstance(c, bytes) else c.encode() for c in chunks)
    return response.body


@pytest.fixture
def make_request():
    return build_request


@pytest.fixture
def memory_store():
    return MemoryKVStore()
