"""
Configuration loader for the StepFlow engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./stepflow.db"              # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class EngineConfig:
    exit_on_disable: bool = True        # False → in-flight enrollments are paused instead
    allow_reentry: bool = True          # re-enroll after completed/exited on a fresh trigger
    sweep_interval_seconds: int = 60
    sweep_batch_size: int = 50
    sweep_concurrency: int = 5          # max enrollments advanced in parallel per sweep
    claim_ttl_seconds: int = 300        # lease on a per-enrollment claim
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 1       # transport retries live in the webhook client only
    webhook_accept_status: tuple[int, int] = (200, 399)


@dataclass
class LineConfig:
    channel_access_token: str = ""
    api_base: str = "https://api.line.me"


@dataclass
class Settings:
    app_name: str = "StepFlow"
    debug: bool = False
    timezone: str = "Asia/Tokyo"
    catalog_path: str = ""                             # tags, templates, rich menus, subjects (YAML)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    line: LineConfig = field(default_factory=LineConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any, default: bool) -> bool:
    # env-substituted values arrive as strings ("false", "0")
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "STEPFLOW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug"), settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        catalog_path = raw.get("catalog_path") or ""
        if catalog_path and not os.path.isabs(catalog_path):
            # relative to the settings file, not the working directory
            catalog_path = str(Path(config_path).parent / catalog_path)
        settings.catalog_path = catalog_path

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "engine" in raw:
            eng = raw["engine"]
            defaults = EngineConfig()
            accept = eng.get("webhook_accept_status", defaults.webhook_accept_status)
            settings.engine = EngineConfig(
                exit_on_disable=_as_bool(eng.get("exit_on_disable"), defaults.exit_on_disable),
                allow_reentry=_as_bool(eng.get("allow_reentry"), defaults.allow_reentry),
                sweep_interval_seconds=int(eng.get("sweep_interval_seconds", defaults.sweep_interval_seconds)),
                sweep_batch_size=int(eng.get("sweep_batch_size", defaults.sweep_batch_size)),
                sweep_concurrency=int(eng.get("sweep_concurrency", defaults.sweep_concurrency)),
                claim_ttl_seconds=int(eng.get("claim_ttl_seconds", defaults.claim_ttl_seconds)),
                webhook_timeout_seconds=float(eng.get("webhook_timeout_seconds", defaults.webhook_timeout_seconds)),
                webhook_max_attempts=int(eng.get("webhook_max_attempts", defaults.webhook_max_attempts)),
                webhook_accept_status=(int(accept[0]), int(accept[1])),
            )

        if "line" in raw:
            line = raw["line"]
            settings.line = LineConfig(
                channel_access_token=line.get("channel_access_token", ""),
                api_base=line.get("api_base", settings.line.api_base),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
