from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .paths import get_default_settings_paths
from .settings_schema import SETTINGS_VALIDATOR

__all__ = [
    "DEFAULT_SETTINGS",
    "ENV_OVERRIDES",
    "SETTINGS_VERSION",
    "apply_env_overrides",
    "load_settings",
    "merge_defaults",
    "save_settings",
]

LOGGER = logging.getLogger("crmbackup.settings")

SETTINGS_VERSION = 1


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "backup_dir": None,
    "retention_days": 7,
    "progress_interval_s": 5.0,
    "database": {
        "project_id": "atomic-crm-demo",
        "container": None,
        "cli": ["npx", "supabase"],
        "host": "localhost",
        "port": 5432,
        "user": "postgres",
        "dbname": "postgres",
        "password": "postgres",
        "mutable_schema": "public",
        "ledger_table": "supabase_migrations.schema_migrations",
        "require_healthy_status": False,
        "ready_timeout_s": 0,
        "ready_poll_s": 2.0,
    },
    "storage": {
        "container": None,
        "attachments_path": "/mnt/stub/stub/attachments",
        "transport": "copy",
        "api_url": "http://127.0.0.1:54321",
        "bucket": "attachments",
        "service_key": None,
        "upload_timeout_s": 60.0,
    },
    "filter": {
        "denied_tables": [
            "auth.schema_migrations",
            "storage.migrations",
            "supabase_functions.migrations",
            "supabase_functions.hooks",
            "supabase_migrations.schema_migrations",
            "realtime.schema_migrations",
            "realtime.subscription",
            "net._http_response",
            "net.http_request_queue",
            "pgsodium.key",
            "vault.secrets",
        ],
    },
    "rewrite": {
        "from": ["http://127.0.0.1:54321", "http://localhost:54321"],
        "to": None,
    },
}

# Environment variable -> dotted settings key.
ENV_OVERRIDES: Dict[str, str] = {
    "BACKUP_DIR": "backup_dir",
    "SUPABASE_PROJECT_ID": "database.project_id",
    "SUPABASE_DB_PASSWORD": "database.password",
    "SUPABASE_URL": "storage.api_url",
    "SUPABASE_SERVICE_ROLE_KEY": "storage.service_key",
    "SUPABASE_EXTERNAL_URL": "rewrite.to",
}


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    def _merge(default: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in default.items():
            if isinstance(value, dict):
                current = payload.get(key)
                if isinstance(current, dict):
                    result[key] = _merge(value, current)
                else:
                    result[key] = _merge(value, {})
            elif isinstance(value, list):
                current = payload.get(key)
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = payload.get(key, value)
        for key, value in payload.items():
            if key not in result:
                result[key] = value
        return result

    return _merge(DEFAULT_SETTINGS, data or {})


def _set_dotted(settings: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = settings
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def apply_env_overrides(settings: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    for name, dotted in ENV_OVERRIDES.items():
        value = env.get(name)
        if value is None or not value.strip():
            continue
        _set_dotted(settings, dotted, value.strip())
    return settings


def _log_unknown_keys(settings: Dict[str, Any], source: Optional[Path]) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return
    LOGGER.warning("Ignoring unknown settings keys in %s: %s", source or "<defaults>", ", ".join(unknown))


def load_settings(
    explicit: Optional[str | os.PathLike[str]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Load the first readable settings file, merge defaults, apply env overrides."""

    data: Dict[str, Any] = {}
    source: Optional[Path] = None
    for candidate in get_default_settings_paths(explicit, environ):
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as exc:
            LOGGER.warning("Skipping unreadable settings file %s: %s", candidate, exc)
            continue
        except OSError:
            continue
        if isinstance(loaded, dict):
            data = loaded
            source = candidate
            break
    merged = merge_defaults(data)
    merged["version"] = SETTINGS_VERSION
    _log_unknown_keys(merged, source)
    return apply_env_overrides(merged, environ)


def save_settings(settings: Dict[str, Any], path: Path) -> None:
    merged = merge_defaults(dict(settings))
    merged["version"] = SETTINGS_VERSION
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(merged, handle, ensure_ascii=False, indent=2)
