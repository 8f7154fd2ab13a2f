"""
Settings for CourseNotify: typed sections read from YAML.

String values may reference the environment as ${VAR}; a .env file is
honoured where the entrypoint loads one with python-dotenv.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./course_platform.db"   # postgresql:// | sqlite://
    directory_backend: str = "memory"              # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "sql" or "redis" for durable queues
    redis_url: str = "redis://localhost:6379"
    name: str = "log-reminders"         # namespace for keys / rows
    consumer_concurrency: int = 1       # workers per job kind; 1 keeps strict FIFO
    poll_interval: float = 1.0          # idle sleep between claims (seconds)
    handler_timeout: float = 60.0       # upper bound for a single job execution
    max_attempts: int = 1               # 1 = failures are terminal
    retry_backoff_base: int = 30        # base seconds for exponential retry backoff
    stalled_after: float = 300.0        # active jobs older than this lost their worker and are re-run
    clean_interval: int = 3600          # seconds between janitor runs
    retention: int = 86400              # completed/failed jobs older than this are removed


@dataclass
class MailConfig:
    api_url: str = ""
    api_key: str = ""
    from_email: str = ""
    from_name: str = "Course Platform"
    timeout: float = 10.0
    send_attempts: int = 1              # >1 retries network errors, 5xx and 429 before failing
    retry_wait: float = 1.0             # multiplier for the exponential wait between tries


@dataclass
class SchedulerConfig:
    enabled: bool = True
    overdue_interval: int = 3600        # seconds between overdue scans
    weekly_weekday: int = 0             # Monday
    weekly_hour: int = 9
    weekly_interval: int = 7 * 24 * 3600


@dataclass
class Settings:
    app_name: str = "CourseNotify"
    debug: bool = False
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")

_SECTIONS = ("database", "queue", "mail", "scheduler")
_SCALARS = ("app_name", "debug", "timezone")


def _expand(value: Any) -> Any:
    """Resolve ${VAR} references in every string of a parsed YAML tree.

    Unset variables are left as written so a missing secret is visible.
    """
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {key: _expand(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand(item) for item in value]
    return value


def _merge(section: Any, overrides: dict[str, Any] | None) -> Any:
    """Copy of a config dataclass with the YAML keys it knows about applied."""
    known = section.__dataclass_fields__
    return replace(section, **{k: v for k, v in (overrides or {}).items() if k in known})


def _default_config_path() -> str:
    return os.environ.get("COURSE_NOTIFY_CONFIG", str(Path(__file__).with_name("settings.yaml")))


def load_settings(config_path: str = None) -> Settings:
    """
    Build Settings from a YAML file and cache them for get_settings().

    A missing file yields the defaults. Unknown keys are ignored.
    """
    global _settings
    path = Path(config_path or _default_config_path())
    settings = Settings()

    if path.is_file():
        raw = _expand(yaml.safe_load(path.read_text()) or {})
        for key in _SCALARS:
            if key in raw:
                setattr(settings, key, raw[key])
        for key in _SECTIONS:
            if key in raw:
                setattr(settings, key, _merge(getattr(settings, key), raw[key]))

    _settings = settings
    return settings


def get_settings() -> Settings:
    if _settings is None:
        return load_settings()
    return _settings


def reset_settings() -> None:
    """Forget cached settings; the next get_settings() reloads."""
    global _settings
    _settings = None
