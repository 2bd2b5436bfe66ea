"""Global configuration for EventDesk."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

# Width of the event id columns; identifiers must fit in it.
EVENT_ID_WIDTH = 6

DEFAULTS: dict[str, Any] = {
    "event_id_length": EVENT_ID_WIDTH,
    "event_id_alphabet": "23456789ABCDEFGHJKMNPQRSTUVWXYZ",
    "event_id_max_attempts": 10,
    "event_insert_max_attempts": 3,
    "admission_max_attempts": 3,
    "sqlite_busy_timeout_seconds": 5.0,
    "required_profile_fields": ("full_name", "phone", "institution", "position", "city"),
    "notifications_enabled": True,
    "enable_scheduler": True,
    "auto_complete_interval_minutes": 15,
    "registrations_per_page": 50,
    "seed_organizers": 3,
    "seed_events_per_organizer": 2,
    "seed_participants": 20,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}


def _fields_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value)
    return tuple(item.strip() for item in items if str(item).strip())


TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "event_id_length": int,
    "event_id_alphabet": str,
    "event_id_max_attempts": int,
    "event_insert_max_attempts": int,
    "admission_max_attempts": int,
    "sqlite_busy_timeout_seconds": float,
    "required_profile_fields": _fields_tuple,
    "notifications_enabled": bool,
    "enable_scheduler": bool,
    "auto_complete_interval_minutes": int,
    "registrations_per_page": int,
    "seed_organizers": int,
    "seed_events_per_organizer": int,
    "seed_participants": int,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    database_url: str
    event_id_length: int
    event_id_alphabet: str
    event_id_max_attempts: int
    event_insert_max_attempts: int
    admission_max_attempts: int
    sqlite_busy_timeout_seconds: float
    required_profile_fields: tuple[str, ...]
    notifications_enabled: bool
    enable_scheduler: bool
    auto_complete_interval_minutes: int
    registrations_per_page: int
    seed_organizers: int
    seed_events_per_organizer: int
    seed_participants: int
    app_host: str
    app_port: int
    config_path: Path

    @property
    def auto_complete_interval(self) -> timedelta:
        return timedelta(minutes=self.auto_complete_interval_minutes)

    @property
    def event_id_keyspace(self) -> int:
        return len(self.event_id_alphabet) ** self.event_id_length


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"EVENTDESK_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return _cast_value(key, DEFAULTS[key])


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "eventdesk.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def _validate(settings: Settings) -> None:
    if not 1 <= settings.event_id_length <= EVENT_ID_WIDTH:
        raise ValueError(f"event_id_length must be between 1 and {EVENT_ID_WIDTH}")
    if settings.event_id_alphabet != settings.event_id_alphabet.upper():
        raise ValueError("event_id_alphabet must not contain lower-case letters")
    if len(set(settings.event_id_alphabet)) != len(settings.event_id_alphabet):
        raise ValueError("event_id_alphabet must not repeat characters")
    if len(settings.event_id_alphabet) < 2:
        raise ValueError("event_id_alphabet needs at least two characters")
    for key in (
        "event_id_max_attempts",
        "event_insert_max_attempts",
        "admission_max_attempts",
    ):
        if getattr(settings, key) < 1:
            raise ValueError(f"{key} must be at least 1")


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("EVENTDESK_BASE_DIR", Path.cwd()))
    env_config = os.getenv("EVENTDESK_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "eventdesk.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("EVENTDESK_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("EVENTDESK_DB", toml_config.get("database_path")),
    )
    database_url = os.getenv(
        "EVENTDESK_DATABASE_URL",
        toml_config.get("database_url") or f"sqlite:///{database_path_value}",
    )

    values = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        database_url=database_url,
        config_path=config_path,
        **values,
    )
    _validate(settings)
    if database_url.startswith("sqlite"):
        settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
        "database_url": settings.database_url,
    }
    for key in DEFAULTS:
        value = getattr(settings, key)
        payload[key] = list(value) if isinstance(value, tuple) else value
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_literal(item) for item in value) + "]"
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# EventDesk configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
