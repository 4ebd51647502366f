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
import base64
import binascii
import hashlib
import hmac
import time

DEFAULT_TOKEN_KEY = "edgeapps"


def _token_key(secret: str) -> str:
    return secret or DEFAULT_TOKEN_KEY


def _sign(secret: str, ts: int) -> str:
    key = _token_key(secret)
    digest = hmac.new(key.encode("utf-8"), f"{key}:{ts}".encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def basic_password(basic_auth: str) -> str:
    """Password half of a 'user:pass' credential, used as the token secret."""
    return basic_auth.split(":", 1)[1] if ":" in (basic_auth or "") else ""


def build_token(secret: str, now: Optional[float] = None) -> str:
    """Issue a session token '<ms-timestamp>.<signature>'."""
    ts = int((time.time() if now is None else now) * 1000)
    return f"{ts}.{_sign(secret, ts)}"


def verify_token(
    token: Optional[str],
    secret: str,
    ttl_minutes: int,
    now: Optional[float] = None,
) -> bool:
    if not token:
        return False
    ts_str, sep, sig = token.partition(".")
    if not sep or not ts_str or not sig:
        return False
    try:
        ts = int(ts_str)
    except ValueError:
        return False
    now_ms = int((time.time() if now is None else now) * 1000)
    age = now_ms - ts
    if age < 0 or age > ttl_minutes * 60 * 1000:
        return False
    return hmac.compare_digest(sig, _sign(secret, ts))


def auth_type(header: Optional[str]) -> str:
    """Classify an Authorization header as bearer, basic or none."""
    header = header or ""
    if header.startswith("Bearer "):
        return "bearer"
    if header.startswith("Basic "):
        return "basic"
    return "none"


def bearer_token(header: Optional[str]) -> Optional[str]:
    if header and header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


def check_basic(header: Optional[str], basic_auth: str) -> bool:
    """Compare a Basic header's decoded 'user:pass' with the configured one."""
    if not basic_auth or not header or not header.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(header[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    return hmac.compare_digest(decoded.encode("utf-8"), basic_auth.encode("utf-8"))


def encode_basic(credential: str) -> str:
    return "Basic " + base64.b64encode(credential.encode("utf-8")).decode("ascii")
