from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_flag(name: str) -> bool:
    return _env(name).lower() in ("1", "true", "yes", "on")


def _resolve_home() -> Path:
    override = _env("DEALSCOUT_HOME")
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _default_database_url() -> str:
    override = _env("DEALSCOUT_DATABASE_URL")
    if override:
        return override
    return f"sqlite:///{_resolve_home() / 'data' / 'dealscout.db'}"


def _default_profiles_file() -> Path | None:
    override = _env("DEALSCOUT_SOURCE_PROFILES")
    return Path(override).expanduser() if override else None


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    database_url: str = Field(default_factory=_default_database_url)
    exports_dir: Path = Field(default_factory=lambda: _resolve_home() / "data" / "exports")

    default_investment: float = Field(
        default_factory=lambda: float(_env("DEALSCOUT_DEFAULT_INVESTMENT") or 500_000)
    )
    # Reject the whole record, not just the field, when a financial figure is malformed.
    strict_financials: bool = Field(default_factory=lambda: _env_flag("DEALSCOUT_STRICT_FINANCIALS"))

    user_agent: str = Field(
        default_factory=lambda: _env("DEALSCOUT_USER_AGENT") or "DealScoutBot/1.0 (+https://dealscout.local)"
    )
    request_timeout_seconds: float = Field(
        default_factory=lambda: float(_env("DEALSCOUT_HTTP_TIMEOUT") or 15.0)
    )
    max_retries: int = 3
    request_backoff_seconds: float = 1.0

    source_profiles_file: Path | None = Field(default_factory=_default_profiles_file)

    def ensure_directories(self) -> None:
        self.exports_dir.mkdir(parents=True, exist_ok=True)
        if self.database_url.startswith("sqlite:///") and ":memory:" not in self.database_url:
            Path(self.database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_source_profile_overrides(self) -> dict[str, dict[str, Any]]:
        if self.source_profiles_file is None:
            return {}
        raw = self.load_yaml(self.source_profiles_file)
        payload = raw.get("sources", {})
        if not isinstance(payload, dict):
            return {}
        return {str(k).casefold(): v for k, v in payload.items() if isinstance(v, dict)}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
