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

from typing import Callable, Optional

import ghproxy.config as config
from ghproxy.config import ConfigurationError
from ghproxy.plugins import aliases
from ghproxy.plugins.chain import Plugin, PluginChain
from ghproxy.rules import parse_rules

# Built-in plugins, resolved by name at start-up
AVAILABLE_PLUGINS: dict[str, Callable[[], Plugin]] = {
    "aliases": aliases.build_plugin,
}


def build_plugin_chain(
    names=None,
    *,
    app: Optional[str] = None,
    platform: Optional[str] = None,
) -> PluginChain:
    names = parse_rules(config.PLUGINS if names is None else names)
    plugins = []
    for name in names:
        factory = AVAILABLE_PLUGINS.get(name)
        if factory is None:
            raise ConfigurationError(f"Unknown plugin: {name}")
        plugins.append(factory())
    return PluginChain(
        plugins,
        app=config.APP_NAME if app is None else app,
        platform=config.PLATFORM if platform is None else platform,
    )
