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

import base64
import pytest

from ghproxy.auth import build_token
from ghproxy.auth_guard import require_auth
from ghproxy.stats import get_auth_record, is_record_banned, record_auth_event

BASIC_AUTH = "user:pass"


def _basic(credential: str) -> dict:
    return {"authorization": "Basic " + base64.b64encode(credential.encode()).decode()}


async def _guard(request, store):
    return await require_auth(request, store=store, path="o/r", basic_auth=BASIC_AUTH, basic_realm="gh-proxy")


@pytest.mark.asyncio
async def test_valid_basic_issues_token(make_request, memory_store):
    result = await _guard(make_request(headers=_basic(BASIC_AUTH)), memory_store)
    assert result.ok
    ts, sig = result.token.split(".")
    assert ts.isdigit() and sig


@pytest.mark.asyncio
async def test_valid_bearer_is_echoed(make_request, memory_store):
    token = build_token("pass")
    result = await _guard(make_request(headers={"authorization": f"Bearer {token}"}), memory_store)
    assert result.ok
    assert result.token == token


@pytest.mark.asyncio
async def test_missing_credentials_not_recorded(make_request, memory_store):
    result = await _guard(make_request(), memory_store)
    assert not result.ok
    assert result.response.status_code == 401
    assert result.response.headers["www-authenticate"] == 'Basic realm="gh-proxy"'
    assert await get_auth_record(memory_store, "203.0.113.7") is None


@pytest.mark.asyncio
async def test_bad_bearer_gets_bearer_challenge(make_request, memory_store):
    result = await _guard(make_request(headers={"authorization": "Bearer 1.bad"}), memory_store)
    assert result.response.status_code == 401
    assert result.response.headers["www-authenticate"].startswith("Bearer ")
    rec = await get_auth_record(memory_store, "203.0.113.7")
    assert rec.fail.count == 1
    assert rec.fail.last_auth == "bearer"


@pytest.mark.asyncio
async def test_scenario_c_ban_then_forbidden_even_with_good_credentials(make_request, memory_store):
    headers = {"x-forwarded-for": "9.9.9.9, 10.0.0.1"}
    statuses = []
    for _ in range(5):
        result = await _guard(make_request(headers={**headers, **_basic("user:wrong")}), memory_store)
        statuses.append(result.response.status_code)
    assert statuses == [401, 401, 401, 401, 403]

    result = await _guard(make_request(headers={**headers, **_basic(BASIC_AUTH)}), memory_store)
    assert not result.ok
    assert result.response.status_code == 403
    assert "www-authenticate" not in result.response.headers


@pytest.mark.asyncio
async def test_banned_ip_checked_before_credentials(make_request, memory_store):
    for i in range(5):
        await record_auth_event(memory_store, ip="203.0.113.7", kind="fail")
    result = await _guard(make_request(headers=_basic(BASIC_AUTH)), memory_store)
    assert result.response.status_code == 403


@pytest.mark.asyncio
async def test_success_recording_is_optional(make_request, memory_store):
    await require_auth(
        make_request(headers=_basic(BASIC_AUTH)),
        store=memory_store,
        basic_auth=BASIC_AUTH,
        record_success=True,
    )
    rec = await get_auth_record(memory_store, "203.0.113.7")
    assert rec.ok.count == 1
    assert not is_record_banned(rec)


@pytest.mark.asyncio
async def test_works_without_store(make_request):
    result = await require_auth(make_request(headers=_basic("user:wrong")), store=None, basic_auth=BASIC_AUTH)
    assert result.response.status_code == 401
