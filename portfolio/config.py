from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_JQL = (
    'project in ("IT Portfolio") and "Technology Squad[Dropdown]" '
    'in ("Platform Development & Integration")'
)
KEY_INITIATIVE_JQL = DEFAULT_JQL + ' and "Key Initiative" is not EMPTY'


def _resolve_project_root() -> Path:
    override = os.getenv("PORTFOLIO_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if not raw:
        return default
    return raw.lower() in ("true", "1", "yes")


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")

    # Storage: cloud database first, local SQLite file as fallback
    database_url: str = ""
    local_db_path: Path | None = None

    # JIRA
    jira_domain: str = ""
    jira_email: str = ""
    jira_token: str = ""
    jira_jql: str = DEFAULT_JQL
    key_initiative_jql: str = KEY_INITIATIVE_JQL
    jira_proxy_url: str = "http://localhost:8080/proxy"
    jira_page_size: int = 100
    default_initiative_duration_days: int = 30

    # Risk detection
    approaching_deadline_days: int = 5
    risk_check_interval_seconds: float = 300.0
    auto_snapshot_interval_seconds: float = 0.0

    # Email relay
    relay_url: str = "http://localhost:3001"
    relay_port: int = 3001
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_secure: bool = False
    email_from: str = "noreply@portfolio-tracker.com"
    email_subject: str = "Portfolio Tracker - Weekly Summary"
    enable_real_email: bool = False

    http_timeout_seconds: float = 15.0

    @property
    def sqlite_path(self) -> Path:
        return self.local_db_path or (self.data_dir / "portfolio.db")


def settings_from_env() -> Settings:
    """Build settings from ``os.environ``; unset variables keep the model defaults."""
    values: dict[str, object] = {
        "database_url": _env("DATABASE_URL"),
        "jira_domain": _env("JIRA_DOMAIN"),
        "jira_email": _env("JIRA_EMAIL"),
        "jira_token": _env("JIRA_API_TOKEN"),
        "jira_jql": _env("JIRA_JQL") or DEFAULT_JQL,
        "jira_proxy_url": _env("JIRA_PROXY_URL", "http://localhost:8080/proxy"),
        "jira_page_size": _env_int("JIRA_PAGE_SIZE", 100),
        "default_initiative_duration_days": _env_int("DEFAULT_INITIATIVE_DURATION_DAYS", 30),
        "approaching_deadline_days": _env_int("APPROACHING_DEADLINE_DAYS", 5),
        "risk_check_interval_seconds": float(_env_int("RISK_CHECK_INTERVAL_SECONDS", 300)),
        "auto_snapshot_interval_seconds": float(_env_int("AUTO_SNAPSHOT_INTERVAL_SECONDS", 0)),
        "relay_url": _env("RELAY_URL", "http://localhost:3001"),
        "relay_port": _env_int("RELAY_PORT", _env_int("PORT", 3001)),
        "smtp_host": _env("SMTP_HOST"),
        "smtp_port": _env_int("SMTP_PORT", 587),
        "smtp_user": _env("SMTP_USER"),
        "smtp_password": _env("SMTP_PASS"),
        "smtp_secure": _env_bool("SMTP_SECURE"),
        "email_from": _env("EMAIL_FROM") or "noreply@portfolio-tracker.com",
        "enable_real_email": _env_bool("ENABLE_REAL_EMAIL"),
        "http_timeout_seconds": float(_env_int("HTTP_TIMEOUT_SECONDS", 15)),
    }
    db_path = _env("PORTFOLIO_DB_PATH")
    if db_path:
        values["local_db_path"] = Path(db_path).expanduser()
    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return settings_from_env()
