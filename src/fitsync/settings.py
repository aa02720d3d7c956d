from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf

PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent


def _resolve_config_dir() -> Path | None:
    env_override = os.environ.get("FITSYNC_CONFIG_DIR")
    candidates: list[Path] = []

    if env_override:
        candidates.append(Path(env_override).expanduser())

    candidates.append(PROJECT_ROOT / "config")
    candidates.append(PROJECT_ROOT.parent / "config")

    for candidate in candidates:
        expanded = candidate.expanduser()
        if expanded.is_dir():
            return expanded.resolve()

    if env_override:
        searched = ", ".join(str(path) for path in candidates)
        raise RuntimeError(
            f"Unable to locate configuration directory. Searched: {searched}. "
            "Set FITSYNC_CONFIG_DIR to a valid directory."
        )
    return None


CONFIG_DIR = _resolve_config_dir()

MINUTE = 60

# (entity type, query kind) -> seconds. Every kind a key factory can produce
# must appear here; lookups for anything else are configuration errors.
DEFAULT_STALENESS: dict[str, dict[str, int]] = {
    "workouts": {
        "detail": 5 * MINUTE,
        "owner": 2 * MINUTE,
        "date_range": 1 * MINUTE,
        "templates": 10 * MINUTE,
        "recent": 1 * MINUTE,
    },
    "goals": {
        "detail": 5 * MINUTE,
        "owner": 3 * MINUTE,
        "active": 2 * MINUTE,
        "overdue": 1 * MINUTE,
        "completed": 10 * MINUTE,
        "category": 5 * MINUTE,
    },
    "routines": {
        "detail": 5 * MINUTE,
        "owner": 5 * MINUTE,
        "day": 2 * MINUTE,
        "category": 5 * MINUTE,
        "most_used": 5 * MINUTE,
        "public": 10 * MINUTE,
        "recommended": 15 * MINUTE,
    },
    "bmi_history": {
        "detail": 5 * MINUTE,
        "owner": 2 * MINUTE,
        "date_range": 1 * MINUTE,
        "latest": 1 * MINUTE,
        "recent": 2 * MINUTE,
        "category": 5 * MINUTE,
    },
}

DEFAULTS: dict[str, Any] = {
    "APP_NAME": "fitsync",
    "LOG_LEVEL": "INFO",
    "CACHE": {
        "maxsize": 512,
    },
    "STALENESS": DEFAULT_STALENESS,
    "REFETCH_INTERVALS": {
        "goals": {
            "overdue": 5 * MINUTE,
        },
    },
    "POLLER": {
        "tick_seconds": 15,
    },
    "MUTATIONS": {
        "serialize_same_key": False,
        "temp_id_prefix": "temp-",
    },
    "QUERIES": {
        "default_limit": 20,
        "bmi_default_limit": 30,
        "recent_limit": 10,
        "most_used_limit": 10,
        "completed_limit": 10,
    },
    "DATABASE": {
        "path": "fitsync.sqlite3",
        "pool_size": 5,
        "pool_acquire_timeout": 10,
        "timeout": 5.0,
        "busy_timeout": 5000,
    },
}


def _settings_files() -> list[Path]:
    if CONFIG_DIR is None:
        return []
    return [
        CONFIG_DIR / "settings.toml",
        CONFIG_DIR / ".secrets.toml",
        CONFIG_DIR / "settings.local.toml",
    ]


settings = Dynaconf(
    envvar_prefix="FITSYNC",
    settings_files=_settings_files(),
    environments=True,
    env_switcher="FITSYNC_ENV",
    load_dotenv=True,
    envvar_parse_values=True,
    merge_enabled=True,
    defaults=DEFAULTS,
)


_MISSING = object()


def _ensure_defaults(prefix: str, defaults: dict[str, Any]) -> None:
    for key, value in defaults.items():
        dotted = f"{prefix}.{key}" if prefix else key
        existing = settings.get(dotted, _MISSING)

        if isinstance(value, dict):
            if existing is _MISSING:
                settings.set(dotted, value.copy())
                existing = settings.get(dotted, _MISSING)
            # Only recurse into mappings so user-provided primitives survive.
            if isinstance(existing, Mapping):
                _ensure_defaults(dotted, value)
            continue

        if existing is _MISSING:
            settings.set(dotted, value)


_ensure_defaults("", DEFAULTS)


tick_raw = settings.get("POLLER.tick_seconds", DEFAULTS["POLLER"]["tick_seconds"])
try:
    tick_seconds = float(tick_raw)
except (TypeError, ValueError):
    tick_seconds = float(DEFAULTS["POLLER"]["tick_seconds"])
if tick_seconds <= 0:
    tick_seconds = float(DEFAULTS["POLLER"]["tick_seconds"])
settings.set("POLLER.tick_seconds", tick_seconds)

__all__ = ["settings", "DEFAULTS", "DEFAULT_STALENESS"]
