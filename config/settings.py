"""
Configuration loader for the LeadFlow engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from models.schemas import DayHours, DelayMode, WeeklyHours


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./leadflow.db"               # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class DripConfig:
    delay_mode: DelayMode = DelayMode.FROM_STEP
    sweep_interval_seconds: int = 60     # seconds between due-drip sweeps
    sweep_batch_size: int = 100          # max drips claimed per sweep


@dataclass
class SessionConfig:
    idle_timeout_minutes: int = 60 * 24          # active sessions idle this long are abandoned
    recovery_window_hours: Optional[int] = 168   # abandoned sessions older than this are not recovered
    idle_sweep_interval_seconds: int = 300
    no_response_days: int = 3                    # default silence before no-response events


@dataclass
class TransportConfig:
    webhook_url: str = ""
    auth_token: str = ""
    timeout_seconds: float = 10.0


@dataclass
class Settings:
    app_name: str = "LeadFlow"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    business_hours: WeeklyHours = field(default_factory=WeeklyHours.weekdays_9_to_5)
    drips: DripConfig = field(default_factory=DripConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    flows: list[dict[str, Any]] = field(default_factory=list)
    auto_tagging_rules: list[dict[str, Any]] = field(default_factory=list)


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


def _parse_business_hours(raw: dict[str, Any]) -> WeeklyHours:
    """
    Accepts either explicit per-day blocks or the shorthand
    `days: [mon, tue, ...]` with a shared open/close.
    """
    days = raw.get("days", {})
    if isinstance(days, list):
        days = {
            d: DayHours(open=raw.get("open", "09:00"), close=raw.get("close", "17:00"))
            for d in days
        }
    else:
        days = {d: DayHours(**(v or {})) for d, v in days.items()}
    return WeeklyHours(timezone=raw.get("timezone", "UTC"), days=days)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "LEADFLOW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "business_hours" in raw:
            settings.business_hours = _parse_business_hours(raw["business_hours"])

        if "drips" in raw:
            dr = raw["drips"]
            settings.drips = DripConfig(
                delay_mode=DelayMode(dr.get("delay_mode", "from_step")),
                sweep_interval_seconds=dr.get("sweep_interval_seconds", 60),
                sweep_batch_size=dr.get("sweep_batch_size", 100),
            )

        if "sessions" in raw:
            se = raw["sessions"]
            settings.sessions = SessionConfig(
                idle_timeout_minutes=se.get("idle_timeout_minutes", 60 * 24),
                recovery_window_hours=se.get("recovery_window_hours", 168),
                idle_sweep_interval_seconds=se.get("idle_sweep_interval_seconds", 300),
                no_response_days=se.get("no_response_days", 3),
            )

        if "transport" in raw:
            tr = raw["transport"]
            settings.transport = TransportConfig(
                webhook_url=tr.get("webhook_url", ""),
                auth_token=tr.get("auth_token", ""),
                timeout_seconds=float(tr.get("timeout_seconds", 10.0)),
            )

        settings.flows = raw.get("flows", [])
        settings.auto_tagging_rules = raw.get("auto_tagging_rules", [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
