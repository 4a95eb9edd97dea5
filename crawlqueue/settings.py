"""Runtime configuration assembled once at process start."""
from __future__ import annotations

import os
import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")


class CrawlerSettings(BaseModel):
    """Validated crawler settings.

    Every field can be overridden by an environment variable named after the
    upper-cased field, e.g. ``HTTP_MAX_RETRIES=5``.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    database_url: str = "sqlite+aiosqlite:///data/crawlqueue.db"
    user_agent: str = "crawlqueue/0.1"
    api_base_url: str = "https://www.reddit.com/r"

    http_max_retries: int = Field(default=3, ge=0)
    http_retry_base_ms: int = Field(default=300, ge=0)
    http_retry_jitter_ms: int = Field(default=200, ge=0)
    http_timeout_ms: int = Field(default=15000, gt=0)
    log_http_retries: bool = False

    crawler_rps: float = Field(default=1.0, gt=0)
    crawler_burst_size: int = Field(default=1, ge=1)

    job_max_retries: int = Field(default=5, ge=1)
    stale_days: int = Field(default=30, ge=1)
    reset_incomplete_after_minutes: int = Field(default=15, ge=1)
    starvation_minutes: int = Field(default=60, ge=1)
    starvation_boost: int = Field(default=5, ge=0)

    scheduler_interval_seconds: float = Field(default=60.0, gt=0)
    maintenance_interval_seconds: float = Field(default=3600.0, gt=0)

    worker_concurrency: int = Field(default=2, ge=1)
    worker_batch_size: int = Field(default=1, ge=1)
    worker_poll_interval_seconds: float = Field(default=1.0, gt=0)

    @property
    def http_retry_base(self) -> timedelta:
        return timedelta(milliseconds=self.http_retry_base_ms)

    @property
    def http_timeout_seconds(self) -> float:
        return self.http_timeout_ms / 1000

    @property
    def stale_after(self) -> timedelta:
        return timedelta(days=self.stale_days)

    @property
    def reset_incomplete_after(self) -> timedelta:
        return timedelta(minutes=self.reset_incomplete_after_minutes)

    @property
    def starvation_after(self) -> timedelta:
        return timedelta(minutes=self.starvation_minutes)


def _read_toml(path: Path) -> Dict[str, Any]:
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    section = payload.get("crawler", payload)
    return {key: value for key, value in section.items() if not isinstance(value, dict)}


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for name in CrawlerSettings.model_fields:
        value = environ.get(name.upper())
        if value is not None and value != "":
            overrides[name] = value
    return overrides


def load_settings(
    path: Optional[Path] = DEFAULT_SETTINGS_PATH,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> CrawlerSettings:
    """Merge defaults, the TOML file (when present) and environment overrides."""
    values: Dict[str, Any] = {}
    if path is not None and path.exists():
        values.update(_read_toml(path))
    values.update(_env_overrides(os.environ if environ is None else environ))
    try:
        return CrawlerSettings(**values)
    except ValidationError as exc:
        raise ValueError(f"Invalid crawler settings: {exc}") from exc
