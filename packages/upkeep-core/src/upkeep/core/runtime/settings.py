from __future__ import annotations

import os
from importlib import import_module
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from upkeep.core.platforms import OS


class Settings(BaseModel):
    # Defaults are static. Use load_settings(env=...) to read from an env snapshot.
    workers: int = Field(default=4, ge=1)
    abort_on_failure: bool = False
    verify_after_update: bool = True

    # Fetching
    http_timeout: float = 30.0
    http_retries: int = Field(default=2, ge=0)
    chunk_size: int = Field(default=64 * 1024, ge=1024)

    # None means the OS of the running process.
    target_os: Optional[OS] = None

    log_level: str = "INFO"
    # - log_format: "text" (default) or "json". When json, upkeep logs emit a single JSON
    #   object per line, suitable for log aggregation.
    log_format: str = "text"

    # Optional update handler module (exposes HANDLER: UpdateHandler)
    handler_module: str | None = None

    @classmethod
    def from_env(cls, env: dict[str, str], overrides: dict | None = None) -> "Settings":
        """Build Settings from an explicit env snapshot (does not read os.environ)."""
        def g(key: str, default: str | None = None) -> str | None:
            return env.get(key, default)  # type: ignore[return-value]

        def flag(key: str, default: str) -> bool:
            return (g(key, default) or default).strip().lower() in {"1", "true", "yes"}

        data = {
            "workers": int(g("UPKEEP_WORKERS", "4") or 4),
            "abort_on_failure": flag("UPKEEP_ABORT_ON_FAILURE", "false"),
            "verify_after_update": flag("UPKEEP_VERIFY_AFTER_UPDATE", "true"),
            "http_timeout": float(g("UPKEEP_HTTP_TIMEOUT", "30") or 30),
            "http_retries": int(g("UPKEEP_HTTP_RETRIES", "2") or 2),
            "chunk_size": int(g("UPKEEP_CHUNK_SIZE", str(64 * 1024)) or 64 * 1024),
            "target_os": OS.parse(g("UPKEEP_TARGET_OS")),
            "log_level": g("UPKEEP_LOG_LEVEL", "INFO"),
            "log_format": g("UPKEEP_LOG_FORMAT", "text"),
            "handler_module": g("UPKEEP_HANDLER_MODULE") or None,
        }
        if overrides:
            data.update(overrides)
        return cls(**data)


def load_settings(overrides: dict | None = None, *, env: dict[str, str] | None = None) -> Settings:
    """Load settings from (1) env snapshot, (2) optional settings module,
    (3) optional YAML settings file, (4) explicit overrides.

    If env is not provided, we build a snapshot from os.environ.
    """
    env2 = {k: str(v) for k, v in os.environ.items()} if env is None else env
    s = Settings.from_env(env2)
    mod = env2.get("UPKEEP_SETTINGS_MODULE")
    if mod:
        m = import_module(mod)
        data = getattr(m, "SETTINGS", {})
        if not isinstance(data, dict):
            raise TypeError("UPKEEP_SETTINGS_MODULE must expose SETTINGS: dict")
        s = s.model_copy(update=data)
    path = env2.get("UPKEEP_SETTINGS_FILE")
    if path:
        with open(Path(path).expanduser(), "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise TypeError("UPKEEP_SETTINGS_FILE must contain a YAML mapping")
        s = Settings.model_validate({**s.model_dump(), **data})
    if overrides:
        s = s.model_copy(update=overrides)
    return s
