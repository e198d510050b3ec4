"""YAML configuration loading and validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


@dataclass
class TelegramConfig:
    """Telegram bot connection and live-message settings."""

    bot_token: str = ""
    edit_rate_limit: int = 1
    window_size: int = 15


@dataclass
class ProbeConfig:
    """Ping invocation: executable, extra flags and the target host."""

    host: str
    command: str = "/sbin/ping"
    args: list[str] = field(default_factory=lambda: ["--apple-time"])

    def argv(self) -> list[str]:
        """Return the full argument vector passed to the probe process."""
        return [self.command, *self.args, self.host]


@dataclass
class SessionsConfig:
    """Per-session process supervision and lifetime settings."""

    grace_period_s: float = 2.0
    read_poll_s: float = 0.25
    max_duration_minutes: float = 0

    @property
    def max_duration_s(self) -> float | None:
        if self.max_duration_minutes <= 0:
            return None
        return self.max_duration_minutes * 60


@dataclass
class DebugConfig:
    """Debug mode settings."""

    enabled: bool = False
    trace: bool = False
    verbose: bool = False


@dataclass
class AppConfig:
    """Top-level application configuration aggregating all subsections."""

    telegram: TelegramConfig
    probe: ProbeConfig
    sessions: SessionsConfig
    debug: DebugConfig = field(default_factory=DebugConfig)


def _number(raw: dict, section: str, key: str, default, kind=float):
    """Read ``raw[key]`` as ``kind``, reporting bad values as ConfigError."""
    value = raw.get(key, default)
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(
            f"{section}.{key} must be a number, got {value!r}"
        ) from None


def load_config(path: str, require_token: bool = True) -> AppConfig:
    """Load and validate application configuration from a YAML file.

    Args:
        path: Filesystem path to the YAML configuration file.
        require_token: Whether ``telegram.bot_token`` must be set. The
            stdout runner does not talk to Telegram and passes False.

    Returns:
        A fully populated AppConfig instance.

    Raises:
        ConfigError: If the file does not exist, required fields
            (probe.host, telegram.bot_token) are missing, or numeric
            values are malformed or not positive.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    # `or {}` fallback handles YAML null values for optional sections
    telegram_raw = raw.get("telegram", {}) or {}
    probe_raw = raw.get("probe", {}) or {}
    sessions_raw = raw.get("sessions", {}) or {}
    debug_raw = raw.get("debug", {}) or {}

    if require_token and not telegram_raw.get("bot_token"):
        raise ConfigError("telegram.bot_token is required")
    if not probe_raw.get("host"):
        raise ConfigError("probe.host is required")

    sessions = SessionsConfig(
        grace_period_s=_number(sessions_raw, "sessions", "grace_period_s", 2.0),
        read_poll_s=_number(sessions_raw, "sessions", "read_poll_s", 0.25),
        max_duration_minutes=_number(
            sessions_raw, "sessions", "max_duration_minutes", 0
        ),
    )
    if sessions.grace_period_s <= 0:
        raise ConfigError("sessions.grace_period_s must be positive")
    if sessions.read_poll_s <= 0:
        raise ConfigError("sessions.read_poll_s must be positive")

    telegram = TelegramConfig(
        bot_token=telegram_raw.get("bot_token", ""),
        edit_rate_limit=_number(telegram_raw, "telegram", "edit_rate_limit", 1, int),
        window_size=_number(telegram_raw, "telegram", "window_size", 15, int),
    )
    if telegram.edit_rate_limit <= 0:
        raise ConfigError("telegram.edit_rate_limit must be positive")
    if telegram.window_size <= 0:
        raise ConfigError("telegram.window_size must be positive")

    probe = ProbeConfig(
        host=str(probe_raw["host"]),
        command=probe_raw.get("command", "/sbin/ping"),
        args=[str(a) for a in probe_raw.get("args", ["--apple-time"]) or []],
    )

    logger.debug("Loaded config from %s", path)
    logger.debug("Probe argv=%s", probe.argv())

    return AppConfig(
        telegram=telegram,
        probe=probe,
        sessions=sessions,
        debug=DebugConfig(
            enabled=bool(debug_raw.get("enabled", False)),
        ),
    )
