"""Application configuration helpers."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


DEFAULT_ADMIN_EMAILS = (
    "admin@kobber.com.br",
    "diretoria@kobber.com.br",
    "ti@kobber.com.br",
)


@dataclass(frozen=True)
class AppConfig:
    """Hold runtime configuration options for the application."""

    data_dir: Path
    db_url: str
    admin_emails: tuple[str, ...]
    login_max_attempts: int
    login_lockout_minutes: int
    recent_limit: int = 5
    lookup_min_digits: int = 8
    lookup_debounce_ms: int = 800
    live_refresh_seconds: int = 15
    log_level: str = "INFO"

    @property
    def db_is_sqlite(self) -> bool:
        return self.db_url.startswith("sqlite:")

    @property
    def rules_path(self) -> Path:
        return self.data_dir / "classification_rules.json"

    def is_admin_email(self, email: Optional[str]) -> bool:
        if not email:
            return False
        return email.strip().lower() in self.admin_emails


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(os.getenv(name, ""))
    except ValueError:
        return default
    return max(value, minimum)


def _parse_emails(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return DEFAULT_ADMIN_EMAILS
    emails = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    return emails or DEFAULT_ADMIN_EMAILS


def load_config() -> AppConfig:
    """Load settings from ``.env`` and environment variables with sane defaults."""

    load_dotenv()
    data_dir = _default_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    db_url = os.getenv("KOBBER_DB_URL")
    if not db_url:
        db_path = data_dir / "kobber_crm.db"
        db_url = f"sqlite:///{db_path}" if os.name != "nt" else f"sqlite:///{db_path.as_posix()}"

    return AppConfig(
        data_dir=data_dir,
        db_url=db_url,
        admin_emails=_parse_emails(os.getenv("KOBBER_ADMIN_EMAILS")),
        login_max_attempts=_int_env("KOBBER_LOGIN_MAX_ATTEMPTS", 5, minimum=1),
        login_lockout_minutes=_int_env("KOBBER_LOGIN_LOCKOUT_MINUTES", 15, minimum=1),
        recent_limit=_int_env("KOBBER_RECENT_LIMIT", 5, minimum=1),
        lookup_min_digits=_int_env("KOBBER_LOOKUP_MIN_DIGITS", 8, minimum=1),
        lookup_debounce_ms=_int_env("KOBBER_LOOKUP_DEBOUNCE_MS", 800),
        live_refresh_seconds=_int_env("KOBBER_LIVE_REFRESH_SECONDS", 15),
        log_level=os.getenv("KOBBER_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the Streamlit process."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _default_data_dir() -> Path:
    """Return a writable data directory.

    Developer machines use ``~/.kobber_crm``. Containerised platforms can
    override this via ``KOBBER_DATA_DIR``; if the home directory is not
    writable we fall back to ``.kobber_crm`` inside the working directory.
    """

    override = os.getenv("KOBBER_DATA_DIR")
    if override:
        return Path(override).expanduser()

    home_candidate = Path.home() / ".kobber_crm"
    try:
        home_candidate.mkdir(parents=True, exist_ok=True)
        return home_candidate
    except OSError:
        fallback = Path.cwd() / ".kobber_crm"
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback
