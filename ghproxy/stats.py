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
import asyncio
import logging
import time

from pydantic import BaseModel, ValidationError

import ghproxy.config as config
from ghproxy.kv import is_kv_store, normalize_kv_keys

logger = logging.getLogger("uvicorn")


class FailBucket(BaseModel):
    count: int = 0
    first_ts: int = 0
    last_ts: int = 0
    ban_until: int = 0
    last_path: str = ""
    last_auth: str = ""


class OkBucket(BaseModel):
    count: int = 0
    first_ts: int = 0
    last_ts: int = 0
    last_path: str = ""
    last_auth: str = ""


class ClientAuthRecord(BaseModel):
    ip: str
    fail: Optional[FailBucket] = None
    ok: Optional[OkBucket] = None


def now_ms() -> int:
    return int(time.time() * 1000)


def record_ttl_seconds() -> int:
    """Records outlive both the failure retention and any active ban."""
    fail_ttl = max(1, config.AUTH_FAIL_TTL_DAYS) * 86400
    ban_ttl = max(0, config.AUTH_BAN_TTL_MIN) * 60 + 60
    return max(fail_ttl, ban_ttl)


def record_key(ip: str) -> str:
    return config.AUTH_KV_PREFIX + ip


def parse_record(raw: Optional[str]) -> Optional[ClientAuthRecord]:
    if not raw:
        return None
    try:
        return ClientAuthRecord.model_validate_json(raw)
    except ValidationError:
        return None


async def get_auth_record(store, ip: str) -> Optional[ClientAuthRecord]:
    if not is_kv_store(store):
        return None
    try:
        raw = await store.get(record_key(ip))
    except Exception as exc:
        logger.warning("auth record read failed for %s: %s", ip, exc)
        return None
    return parse_record(raw)


def is_record_banned(rec: Optional[ClientAuthRecord], now: Optional[int] = None) -> bool:
    if rec is None or rec.fail is None:
        return False
    now = now_ms() if now is None else now
    return now < rec.fail.ban_until


async def record_auth_event(
    store,
    *,
    ip: str,
    kind: str,
    path: str = "",
    auth: str = "",
    now: Optional[int] = None,
) -> Optional[ClientAuthRecord]:
    """
    Count one auth success ("ok") or failure ("fail") for an IP.

    Failures use an approximate sliding window anchored at the first
    failure: once the window has elapsed the counter restarts. Reaching
    AUTH_BAN_AFTER failures sets ban_until. Successes never clear a ban.
    """
    if not is_kv_store(store):
        return None
    now = now_ms() if now is None else now
    is_fail = kind == "fail"
    rec = await get_auth_record(store, ip) or ClientAuthRecord(ip=ip)

    if is_fail:
        if rec.fail is None:
            rec.fail = FailBucket(first_ts=now, last_ts=now)
        bucket = rec.fail
        window_ms = max(0, config.AUTH_BAN_WINDOW_MIN) * 60 * 1000
        if window_ms > 0 and now - bucket.first_ts > window_ms:
            bucket.count = 0
            bucket.first_ts = now
            # an active ban outlives the window it was earned in
            if bucket.ban_until <= now:
                bucket.ban_until = 0
    else:
        if rec.ok is None:
            rec.ok = OkBucket(first_ts=now, last_ts=now)
        bucket = rec.ok

    bucket.count += 1
    bucket.last_ts = now
    bucket.last_path = path or bucket.last_path
    bucket.last_auth = auth or bucket.last_auth

    if is_fail and config.AUTH_BAN_AFTER > 0 and bucket.count >= config.AUTH_BAN_AFTER:
        bucket.ban_until = now + config.AUTH_BAN_TTL_MIN * 60 * 1000
        logger.info("Banning %s for %s minutes after %s auth failures", ip, config.AUTH_BAN_TTL_MIN, bucket.count)

    try:
        await store.put(record_key(ip), rec.model_dump_json(), ttl_seconds=record_ttl_seconds())
    except Exception as exc:
        logger.error("auth %s record put failed for %s: %s", kind, ip, exc)
    return rec


async def collect_auth_stats(store, *, limit: int = 50, cursor: str = "") -> dict:
    """One page of auth records, each annotated with its current ban state."""
    list_res = await store.list(prefix=config.AUTH_KV_PREFIX, limit=limit, cursor=cursor)
    keys = normalize_kv_keys(list_res)
    raws = await asyncio.gather(*(store.get(name) for name in keys))
    now = now_ms()
    items = []
    for raw in raws:
        rec = parse_record(raw)
        if rec is None:
            continue
        item = rec.model_dump()
        item["banned"] = is_record_banned(rec, now)
        items.append(item)
    return {"now": now, "next_cursor": list_res.get("cursor") or "", "items": items}
