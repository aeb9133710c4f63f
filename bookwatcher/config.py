"""Environment-driven configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///data/apartments.db"


def parse_chat_ids(value: str | None) -> List[str]:
    """Accept either ``id1,id2`` or a JSON array such as ``["id1","id2"]``."""
    if not value:
        return []
    value = value.strip()
    if value.startswith("["):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass(frozen=True)
class ProxySettings:
    enabled: bool = False
    url: str = ""
    username: str = ""
    password: str = ""


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from the process environment."""

    telegram_bot_token: str = ""
    operator_chat_ids: List[str] = field(default_factory=list)
    database_url: str = DEFAULT_DATABASE_URL
    check_interval_minutes: int = 2
    random_delay_min_seconds: int = 0
    random_delay_max_seconds: int = 60
    scan_timeout_seconds: int = 180
    headless: bool = True
    slow_mo: int = 0
    proxy: ProxySettings = field(default_factory=ProxySettings)
    data_dir: Path = Path("data")
    log_level: str = "INFO"
    problems: List[str] = field(default_factory=list)

    @property
    def browser_state_path(self) -> Path:
        return self.data_dir / "browser-state.json"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        problems: List[str] = []

        def read_int(name: str, default: int) -> int:
            raw = (env.get(name) or "").strip()
            if not raw:
                return default
            try:
                return int(raw)
            except ValueError:
                problems.append(f"{name} must be an integer, got {raw!r}")
                return default

        chat_source = env.get("TELEGRAM_CHAT_IDS") or env.get("TELEGRAM_CHAT_ID") or ""
        proxy = ProxySettings(
            enabled=(env.get("USE_PROXY") or "").strip().lower() == "true",
            url=(env.get("PROXY_URL") or "").strip(),
            username=(env.get("PROXY_USER") or "").strip(),
            password=env.get("PROXY_PASS") or "",
        )
        return cls(
            telegram_bot_token=(env.get("TELEGRAM_BOT_TOKEN") or "").strip(),
            operator_chat_ids=parse_chat_ids(chat_source),
            database_url=(env.get("DATABASE_URL") or DEFAULT_DATABASE_URL).strip(),
            check_interval_minutes=read_int("CHECK_INTERVAL_MINUTES", 2),
            random_delay_min_seconds=read_int("RANDOM_DELAY_MIN_SECONDS", 0),
            random_delay_max_seconds=read_int("RANDOM_DELAY_MAX_SECONDS", 60),
            scan_timeout_seconds=read_int("SCAN_TIMEOUT_SECONDS", 180),
            headless=(env.get("HEADLESS") or "").strip().lower() != "false",
            slow_mo=read_int("SLOW_MO", 0),
            proxy=proxy,
            data_dir=Path((env.get("DATA_DIR") or "data").strip()),
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
            problems=problems,
        )

    def validate(self) -> None:
        """Raise ConfigurationError listing every problem found."""
        errors = list(self.problems)
        if not self.telegram_bot_token:
            errors.append("TELEGRAM_BOT_TOKEN is required")
        if self.check_interval_minutes <= 0:
            errors.append("CHECK_INTERVAL_MINUTES must be positive")
        if self.random_delay_min_seconds < 0:
            errors.append("RANDOM_DELAY_MIN_SECONDS must not be negative")
        if self.random_delay_max_seconds < self.random_delay_min_seconds:
            errors.append(
                "RANDOM_DELAY_MAX_SECONDS must be >= RANDOM_DELAY_MIN_SECONDS"
            )
        if self.scan_timeout_seconds <= 0:
            errors.append("SCAN_TIMEOUT_SECONDS must be positive")
        if self.proxy.enabled and not self.proxy.url:
            errors.append("PROXY_URL is required when USE_PROXY=true")
        if errors:
            raise ConfigurationError(
                "Configuration errors:\n" + "\n".join(errors)
            )


def load_settings(dotenv_path: Optional[Path] = None) -> Settings:
    """Load ``.env`` (if present) and build settings from the environment."""
    load_dotenv(dotenv_path)
    return Settings.from_env()
