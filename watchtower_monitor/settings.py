"""Runtime configuration, assembled once from the environment at startup."""

from __future__ import annotations

import os
from typing import Literal, Mapping

from pydantic import BaseModel, Field, field_validator


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    raw = env.get(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


class StoreSettings(BaseModel):
    """Connection settings for the server record store."""
    url: str = Field(default="sqlite:///data/watchtower.db", description="Store connection string")
    timeout_seconds: float = Field(default=10.0, gt=0, description="Busy/connect timeout")

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        sqlite_path_from_url(value)
        return value.strip()

    @property
    def db_path(self) -> str:
        return sqlite_path_from_url(self.url)


class MailSettings(BaseModel):
    """SMTP credentials used to deliver alert emails."""
    host: str = Field(default="", description="SMTP server hostname")
    port: int = Field(default=587, ge=1, le=65535)
    username: str = Field(default="")
    password: str = Field(default="", repr=False)
    from_address: str = Field(default="", description="Envelope/From address")
    security: Literal["starttls", "ssl", "none"] = Field(default="starttls")
    timeout_seconds: float = Field(default=10.0, gt=0)

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_address)


class CycleSettings(BaseModel):
    """Tuning for a single monitoring pass."""
    batch_size: int = Field(default=20, ge=1)
    batch_delay_ms: int = Field(default=500, ge=0)
    probe_timeout_ms: int = Field(default=15000, ge=1)
    failure_threshold: int = Field(default=3, ge=1)


class MonitorSettings(BaseModel):
    log_level: str = Field(default="INFO")
    store: StoreSettings = Field(default_factory=StoreSettings)
    mail: MailSettings = Field(default_factory=MailSettings)
    cycle: CycleSettings = Field(default_factory=CycleSettings)


def sqlite_path_from_url(url: str) -> str:
    """
    Accepts ``sqlite:///relative.db``, ``sqlite:////abs/path.db`` or a bare path.
    """
    s = (url or "").strip()
    if not s:
        raise ValueError("Missing store connection string")
    prefix = "sqlite:///"
    if s.startswith(prefix):
        path = s[len(prefix):]
        if not path:
            raise ValueError(f"Invalid sqlite URL: {url!r}")
    elif "://" in s:
        raise ValueError(f"Unsupported store URL scheme: {url!r}")
    else:
        path = s
    # Every store call opens its own connection, so an in-memory database would be empty each time.
    if path == ":memory:" or path.startswith("file::memory:"):
        raise ValueError(f"In-memory sqlite is not supported as a store: {url!r}")
    return path


def load_settings(environ: Mapping[str, str] | None = None) -> MonitorSettings:
    """Build settings from environment variables (``os.environ`` by default)."""
    env = os.environ if environ is None else environ
    defaults_store = StoreSettings()
    defaults_mail = MailSettings()
    defaults_cycle = CycleSettings()

    return MonitorSettings(
        log_level=_env_str(env, "LOG_LEVEL", "INFO").upper(),
        store=StoreSettings(
            url=_env_str(env, "DATABASE_URL", defaults_store.url),
            timeout_seconds=_env_float(env, "DATABASE_TIMEOUT_SECONDS", defaults_store.timeout_seconds),
        ),
        mail=MailSettings(
            host=_env_str(env, "SMTP_HOST", ""),
            port=_env_int(env, "SMTP_PORT", defaults_mail.port),
            username=_env_str(env, "SMTP_USERNAME", ""),
            password=str(env.get("SMTP_PASSWORD") or ""),
            from_address=_env_str(env, "SMTP_FROM", ""),
            security=_env_str(env, "SMTP_SECURITY", defaults_mail.security).lower(),
            timeout_seconds=_env_float(env, "SMTP_TIMEOUT_SECONDS", defaults_mail.timeout_seconds),
        ),
        cycle=CycleSettings(
            batch_size=_env_int(env, "MONITOR_BATCH_SIZE", defaults_cycle.batch_size),
            batch_delay_ms=_env_int(env, "MONITOR_BATCH_DELAY_MS", defaults_cycle.batch_delay_ms),
            probe_timeout_ms=_env_int(env, "MONITOR_PROBE_TIMEOUT_MS", defaults_cycle.probe_timeout_ms),
            failure_threshold=_env_int(env, "MONITOR_FAILURE_THRESHOLD", defaults_cycle.failure_threshold),
        ),
    )
