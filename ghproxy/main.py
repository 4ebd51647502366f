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

from fastapi import FastAPI
from ghproxy.routes import proxy_routes
from ghproxy.entry import build_engine, status_response
import ghproxy.config as config
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger('uvicorn')


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = build_engine()
    app.state.engine = engine
    logger.info(f"KV_BACKEND => {config.KV_BACKEND} ({config.DATA_DIR})")
    logger.info(f"PLUGINS => {[p.name for p in engine.plugins.plugins]}")
    logger.info(f"MOUNT_PATH => {config.MOUNT_PATH or '/'}")
    yield
    logger.info("Shutting down FastAPI app")

app = FastAPI(lifespan=lifespan)


@app.get("/")
async def root():
    return status_response()

app.include_router(proxy_routes.router)
