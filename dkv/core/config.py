"""
Configuration management for dkv.

Values come from the environment (optionally a ``.env`` file). ``load_settings``
reads them at call time so tests and scripts can override variables before
building an application.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

# Version string
VERSION = "0.3.0"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str = "") -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Application configuration from environment variables."""

    backend: str = "sqlite"  # sqlite|memory
    db_path: str = "./data/dkv.db"

    # Key-space roots
    data_root: str = "data"
    deadman_root: str = "deadman"
    tokens_root: str = "tokens"
    locks_root: str = "locks"

    # Bounds for optimistic retry loops
    cas_max_attempts: int = 16
    cas_deadline_sec: float = 5.0

    # Dead-man switch
    deadman_enabled: bool = False
    deadman_sweep_interval_sec: int = 60
    deadman_lease_sec: int = 300

    # Outbound notifications
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    notify_timeout_sec: float = 10.0

    cors_origins: List[str] = field(default_factory=list)
    debug: bool = False


def load_settings() -> Settings:
    return Settings(
        backend=os.getenv("DKV_BACKEND", "sqlite"),
        db_path=os.getenv("DB_PATH", "./data/dkv.db"),
        data_root=os.getenv("DATA_ROOT", "data"),
        deadman_root=os.getenv("DEADMAN_ROOT", "deadman"),
        tokens_root=os.getenv("TOKENS_ROOT", "tokens"),
        locks_root=os.getenv("LOCKS_ROOT", "locks"),
        cas_max_attempts=int(os.getenv("CAS_MAX_ATTEMPTS", "16")),
        cas_deadline_sec=float(os.getenv("CAS_DEADLINE_SEC", "5")),
        deadman_enabled=_env_bool("DEADMAN_ENABLED"),
        deadman_sweep_interval_sec=int(os.getenv("DEADMAN_SWEEP_INTERVAL_SEC", "60")),
        deadman_lease_sec=int(os.getenv("DEADMAN_LEASE_SEC", "300")),
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
        telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID") or None,
        notify_timeout_sec=float(os.getenv("NOTIFY_TIMEOUT_SEC", "10")),
        cors_origins=_env_list("CORS_ORIGINS"),
        debug=_env_bool("DEBUG"),
    )


def validate_config(settings: Settings) -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    if settings.backend not in ["sqlite", "memory"]:
        issues.append(f"Invalid DKV_BACKEND: {settings.backend}")

    roots = [settings.data_root, settings.deadman_root, settings.tokens_root, settings.locks_root]
    if len(set(roots)) != len(roots):
        issues.append(f"Key-space roots must be distinct: {roots}")
    if any(not root or "/" in root for root in roots):
        issues.append("Key-space roots must be non-empty and contain no '/'")

    if settings.cas_max_attempts < 1:
        issues.append("CAS_MAX_ATTEMPTS must be >= 1")

    if settings.cas_deadline_sec <= 0:
        issues.append("CAS_DEADLINE_SEC must be > 0")

    if settings.deadman_sweep_interval_sec < 1:
        issues.append("DEADMAN_SWEEP_INTERVAL_SEC must be >= 1")

    if settings.deadman_lease_sec < settings.deadman_sweep_interval_sec:
        issues.append("DEADMAN_LEASE_SEC must be >= DEADMAN_SWEEP_INTERVAL_SEC")

    if bool(settings.telegram_bot_token) != bool(settings.telegram_chat_id):
        issues.append("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set together")

    return issues


def get_backend(settings: Settings):
    """Get configured backend implementation."""
    if settings.backend == "memory":
        from .backend import MemoryBackend
        return MemoryBackend()

    from .backend import SQLiteBackend
    return SQLiteBackend(settings.db_path)


def get_notifier(settings: Settings):
    """Get configured notifier. Falls back to logging when no bot is configured."""
    if settings.telegram_bot_token and settings.telegram_chat_id:
        from .notify import TelegramNotifier
        return TelegramNotifier(
            settings.telegram_bot_token,
            settings.telegram_chat_id,
            timeout=settings.notify_timeout_sec,
        )

    from .notify import LogNotifier
    return LogNotifier()
