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

from pathlib import Path
import os


class ConfigurationError(RuntimeError):
    """Raised when a required secret, store or plugin is not configured"""
    pass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# Base data directory (file backed key-value stores live here)
DATA_DIR = Path(os.environ.get("GHPROXY_DATA_DIR", "data"))

# Mount point of the proxied path, e.g. "/gh". Empty mounts at the root.
MOUNT_PATH: str = os.environ.get("MOUNT_PATH", "").rstrip("/")

# App / platform identity passed to plugins
APP_NAME: str = os.environ.get("APP_NAME", "gh-proxy")
PLATFORM: str = os.environ.get("PLATFORM", "uvicorn")

# Upstream bases (configurable)
GH_RAW_BASE: str = os.environ.get("GH_RAW_BASE", "https://raw.githubusercontent.com")
GH_API_BASE: str = os.environ.get("GH_API_BASE", "https://api.github.com")
GH_GIST_BASE: str = os.environ.get("GH_GIST_BASE", "https://gist.githubusercontent.com")
GH_BASE: str = os.environ.get("GH_BASE", "https://github.com")

# Rule / secret configuration. Empty string disables the feature.
GH_ALLOW_RULES: str = os.environ.get("GH_ALLOW_RULES", "")
GH_INJECT_RULES: str = os.environ.get("GH_INJECT_RULES", "")
GH_INJECT_TOKEN: str = os.environ.get("GH_INJECT_TOKEN", "")
GH_API_TOKEN: str = os.environ.get("GH_API_TOKEN", "")
BASIC_AUTH: str = os.environ.get("BASIC_AUTH", "")
BASIC_AUTH_RULES: str = os.environ.get("BASIC_AUTH_RULES", "")
BASIC_REALM: str = os.environ.get("BASIC_REALM", "gh-proxy")

# Plugins (comma separated names from the built-in registry)
PLUGINS: str = os.environ.get("PLUGINS", "")
ALIAS_URLS: str = os.environ.get("ALIAS_URLS", "")
PREFIX_URLS: str = os.environ.get("PREFIX_URLS", "")

# Key-value backend for allow rules and auth records: file, memory or none
KV_BACKEND: str = os.environ.get("KV_BACKEND", "file").strip().lower()

# Rule caches (owners, token injection)
RULES_CACHE_TTL_SECONDS: int = int(os.environ.get("RULES_CACHE_TTL_SECONDS", "60"))

# Session token lifetime (minutes)
TOKEN_TTL_MIN: int = int(os.environ.get("TOKEN_TTL_MIN", "60"))

# Auth failure tracking and automatic bans
AUTH_FAIL_TTL_DAYS: int = int(os.environ.get("AUTH_FAIL_TTL_DAYS", "7"))
AUTH_BAN_AFTER: int = int(os.environ.get("AUTH_BAN_AFTER", "5"))
AUTH_BAN_WINDOW_MIN: int = int(os.environ.get("AUTH_BAN_WINDOW_MIN", "15"))
AUTH_BAN_TTL_MIN: int = int(os.environ.get("AUTH_BAN_TTL_MIN", "1440"))
AUTH_KV_PREFIX: str = "auth:"
AUTH_RECORD_SUCCESS: bool = _env_bool("AUTH_RECORD_SUCCESS")

# Network settings
REQUEST_TIMEOUT_SECONDS: int = int(os.environ.get("REQUEST_TIMEOUT_SECONDS", "30"))
MAX_REDIRECTS: int = int(os.environ.get("MAX_REDIRECTS", "3"))
PROXY_USER_AGENT: str = os.environ.get("PROXY_USER_AGENT", "gh-proxy")


def build_env() -> dict[str, str]:
    """
    Snapshot of the rule/secret settings for one request.
    Plugins may patch the returned dict without touching module state.
    """
    return {
        "GH_ALLOW_RULES": GH_ALLOW_RULES,
        "GH_INJECT_RULES": GH_INJECT_RULES,
        "GH_INJECT_TOKEN": GH_INJECT_TOKEN,
        "GH_API_TOKEN": GH_API_TOKEN,
        "BASIC_AUTH": BASIC_AUTH,
        "BASIC_AUTH_RULES": BASIC_AUTH_RULES,
        "BASIC_REALM": BASIC_REALM,
    }
