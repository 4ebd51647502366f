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
from typing import Iterable, Optional
from urllib.parse import unquote, urljoin, urlsplit, urlunsplit
import logging

import httpx
from fastapi import Request, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders

import ghproxy.config as config
from ghproxy.auth import encode_basic
from ghproxy.targets import UpstreamBases
from ghproxy.utils import safe_url, text_response, with_cors

logger = logging.getLogger("uvicorn")

# Cacheable, read-only requests
DEFAULT_HEADER_ALLOWLIST = (
    "accept",
    "range",
    "if-none-match",
    "if-modified-since",
)

# Git smart-HTTP needs the body framing, protocol and credential headers
GIT_HEADER_ALLOWLIST = (
    *DEFAULT_HEADER_ALLOWLIST,
    "accept-encoding",
    "content-type",
    "content-encoding",
    "content-length",
    "git-protocol",
    "authorization",
)

# Describe a request body; dropped once a redirect turns the request into GET
BODY_HEADERS = ("content-length", "content-type", "content-encoding")

HOP_BY_HOP_HEADERS = frozenset({
    "host",
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

STRIPPED_RESPONSE_HEADERS = frozenset({
    "content-security-policy",
    "content-security-policy-report-only",
    "clear-site-data",
    "server-timing",
})

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

PREFLIGHT_HEADERS = {
    "access-control-allow-methods": "GET,POST,PUT,PATCH,TRACE,DELETE,HEAD,OPTIONS",
    "access-control-allow-headers": "*",
    "access-control-max-age": "1728000",
}

# Local path prefix per upstream kind, used when rewriting redirects
REDIRECT_PREFIXES = {
    "github": "",
    "raw": "raw",
    "api": "api",
    "gist": "gist",
}

GIT_BASIC_USER = "x-access-token"


@dataclass
class ProxyOptions:
    url: str
    allowlist: Optional[tuple[str, ...]] = DEFAULT_HEADER_ALLOWLIST
    auth_scheme: str = "bearer"
    ignore_auth_header: bool = False
    inject_token: str = ""
    inject_scheme: str = "bearer"
    return_redirect: bool = False
    rewrite_redirect_to_proxy: bool = False
    proxy_origin: str = ""
    bases: UpstreamBases = field(default_factory=UpstreamBases)
    passthrough_errors: bool = False
    max_redirects: int = 3
    user_agent: str = ""
    request_headers: dict = field(default_factory=dict)
    response_headers: dict = field(default_factory=dict)
    timeout: float = 30.0
    transport: Optional[httpx.AsyncBaseTransport] = None


# ----------------------------------------------------------------------
# URL credentials
# ----------------------------------------------------------------------
def userinfo_token(url: str) -> str:
    """'user:pass' or 'user' embedded in an absolute URL, else ''."""
    try:
        parsed = urlsplit(url or "")
    except ValueError:
        return ""
    if not parsed.username:
        return ""
    user = unquote(parsed.username)
    if parsed.password:
        return f"{user}:{unquote(parsed.password)}"
    return user


def strip_userinfo(url: str) -> str:
    parsed = urlsplit(url)
    if "@" not in parsed.netloc:
        return url
    netloc = parsed.netloc.rsplit("@", 1)[1]
    return urlunsplit((parsed.scheme, netloc, parsed.path, parsed.query, parsed.fragment))


def credential_header(credential: str, scheme: str) -> str:
    """Encode a URL/injected credential as an Authorization header value."""
    if scheme == "basic":
        if ":" not in credential:
            credential = f"{GIT_BASIC_USER}:{credential}"
        return encode_basic(credential)
    token = credential.split(":", 1)[1] if ":" in credential else credential
    return f"Bearer {token}"


# ----------------------------------------------------------------------
# Outbound headers
# ----------------------------------------------------------------------
def build_proxy_headers(
    request_headers,
    *,
    allowlist: Optional[Iterable[str]] = DEFAULT_HEADER_ALLOWLIST,
    user_agent: str = "",
    extra: Optional[dict] = None,
) -> dict[str, str]:
    """
    Copy allow-listed inbound headers. Hop-by-hop headers are never copied,
    even when allow-listed. With no allowlist every other header is copied
    except content-length.
    """
    headers: dict[str, str] = {}
    if allowlist:
        for name in allowlist:
            key = name.lower()
            if key in HOP_BY_HOP_HEADERS:
                continue
            value = request_headers.get(key)
            if value:
                headers[key] = value
    else:
        for key, value in request_headers.items():
            key = key.lower()
            if key in HOP_BY_HOP_HEADERS or key == "content-length":
                continue
            headers[key] = value
    if not headers.get("user-agent"):
        headers["user-agent"] = request_headers.get("user-agent") or user_agent or config.PROXY_USER_AGENT
    for key, value in (extra or {}).items():
        headers[key.lower()] = value
    return headers


def outbound_headers(request_headers, url: str, opts: ProxyOptions, *, same_origin: bool = True) -> dict[str, str]:
    """
    Headers for one hop. Authorization precedence: the caller's own header
    (allow-listed and not ignored), then the URL user-info credential, then
    the injected token (only while on the original upstream host).
    """
    headers = build_proxy_headers(
        request_headers,
        allowlist=opts.allowlist,
        user_agent=opts.user_agent,
        extra=opts.request_headers,
    )
    if opts.ignore_auth_header:
        headers.pop("authorization", None)
    if headers.get("authorization"):
        return headers

    url_credential = userinfo_token(url)
    if url_credential:
        headers["authorization"] = credential_header(url_credential, opts.auth_scheme)
    elif opts.inject_token and same_origin:
        headers["authorization"] = credential_header(opts.inject_token, opts.inject_scheme)
    return headers


# ----------------------------------------------------------------------
# Redirects
# ----------------------------------------------------------------------
def rewrite_redirect_location(location: str, *, current_url: str, proxy_origin: str, bases: UpstreamBases) -> str:
    """
    Map an upstream Location back onto the proxy's own origin.
    Hosts outside the known upstream bases are left untouched.

    Examples:
        >>> rewrite_redirect_location(
        ...     "https://github.com/o/r/releases/tag/v1",
        ...     current_url="https://github.com/o/r/releases/latest",
        ...     proxy_origin="https://proxy.example",
        ...     bases=UpstreamBases())
        'https://proxy.example/o/r/releases/tag/v1'
    """
    absolute = urljoin(current_url, location)
    parsed = urlsplit(absolute)
    kind = bases.host_kinds.get(parsed.netloc.lower())
    if kind is None or not proxy_origin:
        return absolute
    prefix = REDIRECT_PREFIXES.get(kind, kind)
    path = parsed.path.lstrip("/")
    local = f"{proxy_origin.rstrip('/')}/"
    if prefix:
        local += f"{prefix}/"
    local += path
    if parsed.query:
        local += f"?{parsed.query}"
    return local


# ----------------------------------------------------------------------
# Response sanitation
# ----------------------------------------------------------------------
def tweak_proxy_headers(headers: MutableHeaders, pathname: str) -> None:
    ext = pathname.rsplit(".", 1)[-1] if "." in pathname.rsplit("/", 1)[-1] else ""
    if ext == "js":
        headers["content-type"] = "application/javascript; charset=utf-8"
    elif ext == "cmd":
        headers["content-disposition"] = "attachment;"

    headers["access-control-expose-headers"] = "*"
    headers["access-control-allow-origin"] = "*"

    for key in {k.lower() for k in headers.keys()}:
        if key in STRIPPED_RESPONSE_HEADERS or key.startswith("x-debug-"):
            del headers[key]


def sanitize_response_headers(upstream_headers: httpx.Headers, *, pathname: str, extra: Optional[dict] = None) -> MutableHeaders:
    raw = [
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in upstream_headers.multi_items()
        if key.lower() not in HOP_BY_HOP_HEADERS
    ]
    headers = MutableHeaders(raw=raw)
    for key, value in (extra or {}).items():
        headers[key] = value
    tweak_proxy_headers(headers, pathname)
    return headers


def upstream_error_response(status_code: int, extra: Optional[dict] = None) -> Response:
    if status_code == 404:
        return text_response("Not Found", 404, extra)
    return text_response("Upstream Error", 502, extra)


# ----------------------------------------------------------------------
# Forwarding
# ----------------------------------------------------------------------
async def handle_proxy_request(request: Request, opts: ProxyOptions) -> Response:
    """Answer CORS pre-flight locally, otherwise forward upstream."""
    if request.method == "OPTIONS" and "access-control-request-headers" in request.headers:
        return Response(status_code=204, headers=with_cors(PREFLIGHT_HEADERS))
    return await proxy_request(request, opts)


async def proxy_request(request: Request, opts: ProxyOptions) -> Response:
    """
    Fetch opts.url with manual redirect handling and stream the result back.

    Redirects are either returned to the caller (optionally rewritten onto
    the proxy origin) or followed up to opts.max_redirects hops, rebuilding
    the outbound headers for every hop. Fetch errors, unusable redirects and
    exceeding the hop bound produce 502.
    """
    if safe_url(opts.url) is None:
        return text_response("bad url", 502)

    method = request.method.upper()
    is_head = method == "HEAD"
    upstream_method = "GET" if is_head else method
    body = b"" if method in ("GET", "HEAD") else await request.body()
    origin_host = urlsplit(opts.url).hostname
    body_dropped = False

    client = httpx.AsyncClient(transport=opts.transport, timeout=opts.timeout, follow_redirects=False)
    upstream = None
    try:
        url = opts.url
        redirects_left = opts.max_redirects
        while True:
            same_origin = urlsplit(url).hostname == origin_host
            headers = outbound_headers(request.headers, url, opts, same_origin=same_origin)
            if body_dropped:
                for name in BODY_HEADERS:
                    headers.pop(name, None)
            target = strip_userinfo(url)
            outbound = client.build_request(upstream_method, target, headers=headers, content=body or None)
            try:
                upstream = await client.send(outbound, stream=True)
            except httpx.HTTPError as exc:
                logger.warning("Upstream fetch failed for %s: %s", target, exc)
                return text_response(f"proxy fetch error: {type(exc).__name__}", 502)

            location = upstream.headers.get("location")
            if upstream.status_code not in REDIRECT_STATUSES or not location:
                break

            if opts.return_redirect:
                if opts.rewrite_redirect_to_proxy:
                    location = rewrite_redirect_location(
                        location, current_url=target, proxy_origin=opts.proxy_origin, bases=opts.bases
                    )
                headers = sanitize_response_headers(
                    upstream.headers, pathname=urlsplit(target).path, extra=opts.response_headers
                )
                headers["location"] = location
                if "content-length" in headers:
                    del headers["content-length"]
                return Response(status_code=upstream.status_code, headers=headers)

            status = upstream.status_code
            await upstream.aclose()
            upstream = None
            if redirects_left <= 0:
                logger.warning("Too many redirects from %s", strip_userinfo(opts.url))
                return text_response("too many redirects", 502)
            next_url = safe_url(urljoin(target, location))
            if next_url is None:
                return text_response("bad redirect", 502)
            # same method rewriting as browsers: 303 always, 301/302 only for POST
            if (status == 303 and upstream_method != "HEAD") or (status in (301, 302) and upstream_method == "POST"):
                upstream_method, body = "GET", b""
                body_dropped = True
            redirects_left -= 1
            url = next_url

        if upstream.status_code >= 400 and not opts.passthrough_errors:
            return upstream_error_response(upstream.status_code, opts.response_headers)

        headers = sanitize_response_headers(
            upstream.headers, pathname=urlsplit(target).path, extra=opts.response_headers
        )
        if is_head:
            return Response(status_code=upstream.status_code, headers=headers)

        response = StreamingResponse(
            _stream_body(upstream, client),
            status_code=upstream.status_code,
            headers=headers,
            background=BackgroundTask(_close, upstream, client),
        )
        upstream = client = None
        return response
    finally:
        if upstream is not None:
            await upstream.aclose()
        if client is not None:
            await client.aclose()


async def _stream_body(upstream: httpx.Response, client: httpx.AsyncClient):
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    finally:
        await _close(upstream, client)


async def _close(upstream: httpx.Response, client: httpx.AsyncClient) -> None:
    await upstream.aclose()
    await client.aclose()
