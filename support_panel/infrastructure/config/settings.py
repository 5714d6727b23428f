"""
Settings Module - Centralized Configuration Management
=======================================================

ARCHITECTURAL DECISION:
- All configuration is loaded from environment variables (no hardcoded secrets)
- Settings are immutable dataclasses for safety and clarity
- Single source of truth for all configurable values

The session manager, the reconnection scheduler and the web layer all read
from the same cached Settings object; tests build their own instances.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


@dataclass(frozen=True)
class SessionSettings:
    """Per-agent WhatsApp Web session settings."""

    # One Chrome profile per agent lives under this directory (user_<agentId>)
    sessions_dir: Path = field(
        default_factory=lambda: Path(os.getenv("SESSIONS_DIR", "sessions"))
    )

    # Browser settings - headless still renders the QR into the page
    headless: bool = field(default_factory=lambda: _env_bool("WHATSAPP_HEADLESS", True))

    # Instance auto-closes if the QR is not scanned within this window
    qr_timeout_seconds: float = field(
        default_factory=lambda: _env_float("WHATSAPP_QR_TIMEOUT", 300.0)
    )
    poll_interval_seconds: float = field(
        default_factory=lambda: _env_float("WHATSAPP_POLL_INTERVAL", 2.0)
    )

    max_reconnect_attempts: int = 3
    max_qr_regenerations: int = 10

    # Delay before a fresh QR is requested after logout
    logout_restart_delay_seconds: float = 2.0


@dataclass(frozen=True)
class ReconnectSettings:
    """Backoff and global throttling for instance starts."""

    base_delay_ms: int = 3000
    max_delay_ms: int = 60000

    # Random spread added on top of the backoff delay (0 disables)
    jitter_ratio: float = field(
        default_factory=lambda: _env_float("RECONNECT_JITTER", 0.1)
    )

    # SAFETY: global ceiling on instance starts across all agents
    window_seconds: float = 60.0
    max_starts_per_window: int = field(
        default_factory=lambda: _env_int("MAX_STARTS_PER_WINDOW", 10)
    )


@dataclass(frozen=True)
class RoutingSettings:
    """Inbound message routing settings."""

    # Group chats are ignored unless explicitly enabled
    allow_groups: bool = field(
        default_factory=lambda: _env_bool("ALLOW_GROUP_MESSAGES", False)
    )


@dataclass(frozen=True)
class WebSettings:
    """HTTP server settings."""

    host: str = field(default_factory=lambda: os.getenv("WEB_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _env_int("WEB_PORT", 8000))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "info"))
    restore_on_startup: bool = field(
        default_factory=lambda: _env_bool("RESTORE_INSTANCES", True)
    )


@dataclass(frozen=True)
class Settings:
    """
    Root settings container - Single source of truth for all configuration.

    Usage:
        from support_panel.infrastructure.config import get_settings
        settings = get_settings()
        print(settings.reconnect.max_starts_per_window)
    """

    session: SessionSettings = field(default_factory=SessionSettings)
    reconnect: ReconnectSettings = field(default_factory=ReconnectSettings)
    routing: RoutingSettings = field(default_factory=RoutingSettings)
    web: WebSettings = field(default_factory=WebSettings)

    database_file: Path = field(
        default_factory=lambda: Path(os.getenv("DATABASE_FILE", "support_panel.db"))
    )

    def validate(self) -> list[str]:
        """
        Validate settings and return list of warnings/errors.
        Returns empty list if all settings are valid.
        """
        issues = []

        if self.reconnect.base_delay_ms > self.reconnect.max_delay_ms:
            issues.append(
                "WARNING: reconnect base delay exceeds max delay. "
                "Every reconnection will wait the max delay."
            )

        if self.reconnect.max_starts_per_window < 1:
            issues.append(
                "ERROR: MAX_STARTS_PER_WINDOW must be at least 1. "
                "No instance would ever start."
            )

        if not 0 <= self.reconnect.jitter_ratio <= 1:
            issues.append(
                f"WARNING: RECONNECT_JITTER={self.reconnect.jitter_ratio} is outside [0, 1]."
            )

        if not self.session.sessions_dir.exists():
            issues.append(
                f"WARNING: Sessions directory not found: {self.session.sessions_dir}. "
                "It will be created on first start."
            )

        return issues


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get singleton Settings instance.
    Cached to ensure consistent settings throughout application lifecycle.
    """
    return Settings()
