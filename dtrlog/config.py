from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from dtrlog.db import MEMORY_PATH
from dtrlog.errors import ConfigError


STORAGE_SQLITE = "sqlite"
STORAGE_MEMORY = "memory"

DEFAULTS: dict[str, Any] = {
    "data_dir": ".dtrlog",
    "storage": STORAGE_SQLITE,
    "store_url": "http://127.0.0.1:8020",
    "timeout_seconds": 15.0,
    "optimistic_updates": True,
    "seed": False,
    "allowed_hosts": ["localhost", "127.0.0.1"],
}

ENV_KEYS: dict[str, str] = {
    "data_dir": "DTRLOG_DATA_DIR",
    "storage": "DTRLOG_STORAGE",
    "store_url": "DTRLOG_STORE_URL",
    "timeout_seconds": "DTRLOG_TIMEOUT_SECONDS",
    "optimistic_updates": "DTRLOG_OPTIMISTIC",
    "seed": "DTRLOG_SEED",
    "allowed_hosts": "DTRLOG_ALLOWED_HOSTS",
}


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    storage: str
    store_url: str
    timeout_seconds: float
    optimistic_updates: bool
    seed: bool
    allowed_hosts: list[str]

    @property
    def db_path(self) -> Path | str:
        if self.storage == STORAGE_MEMORY:
            return MEMORY_PATH
        return self.data_dir / "dtrlog.sqlite3"


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_hosts(value: Any) -> list[str]:
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        raise ConfigError("allowed_hosts must be a list or a comma separated string.")
    out = [p.strip() for p in parts if p.strip() and p.strip() != "*"]
    return out or list(DEFAULTS["allowed_hosts"])


def resolve_data_dir(raw: Path | str) -> Path:
    p = Path(raw)
    if not p.is_absolute():
        p = (Path.cwd() / p).resolve()
    return p


def load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping (YAML dict).")
    unknown = sorted(set(raw) - set(DEFAULTS))
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
    return raw


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Defaults, then the YAML file, then ``DTRLOG_*`` environment variables."""
    merged: dict[str, Any] = dict(DEFAULTS)

    path_raw = config_path if config_path is not None else (os.getenv("DTRLOG_CONFIG", "") or "").strip()
    if path_raw:
        merged.update(load_config_file(Path(path_raw)))

    for key, env_name in ENV_KEYS.items():
        value = os.getenv(env_name)
        if value is not None and value.strip():
            merged[key] = value.strip()

    storage = str(merged["storage"] or "").strip().lower()
    if storage not in {STORAGE_SQLITE, STORAGE_MEMORY}:
        raise ConfigError(f"storage must be 'sqlite' or 'memory', got {merged['storage']!r}")

    try:
        timeout = float(merged["timeout_seconds"])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"timeout_seconds must be a number, got {merged['timeout_seconds']!r}") from exc
    if timeout <= 0:
        raise ConfigError("timeout_seconds must be positive.")

    store_url = str(merged["store_url"] or "").strip().rstrip("/")
    if not store_url.startswith(("http://", "https://")):
        raise ConfigError(f"store_url must be an http(s) URL, got {merged['store_url']!r}")

    return Settings(
        data_dir=resolve_data_dir(str(merged["data_dir"] or DEFAULTS["data_dir"])),
        storage=storage,
        store_url=store_url,
        timeout_seconds=timeout,
        optimistic_updates=_as_bool("optimistic_updates", merged["optimistic_updates"]),
        seed=_as_bool("seed", merged["seed"]),
        allowed_hosts=_as_hosts(merged["allowed_hosts"]),
    )
