"""Configuration loaded from environment variables and YAML.

All settings have sensible defaults. Override via MCP_* env vars or a
``feedback:`` section in a YAML file; env vars win over the file.
"""
from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from .errors import ConfigurationError, InvalidTimeoutError

logger = logging.getLogger(__name__)

MIN_DIALOG_TIMEOUT = 10
MAX_DIALOG_TIMEOUT = 60000
MIN_FILE_SIZE = 1024
MAX_FILE_SIZE = 100 * 1024 * 1024
VALID_LOG_LEVELS = ("error", "warn", "info", "debug")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_LOGGING_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# (field name, env var) pairs read by from_env().
_ENV_VARS: tuple[tuple[str, str], ...] = (
    ("web_port", "MCP_WEB_PORT"),
    ("dialog_timeout", "MCP_DIALOG_TIMEOUT"),
    ("use_fixed_url", "MCP_USE_FIXED_URL"),
    ("force_port", "MCP_FORCE_PORT"),
    ("kill_process_on_port_conflict", "MCP_KILL_PORT_PROCESS"),
    ("cleanup_port_on_start", "MCP_CLEANUP_PORT_ON_START"),
    ("server_host", "MCP_SERVER_HOST"),
    ("server_base_url", "MCP_SERVER_BASE_URL"),
    ("bind_host", "MCP_BIND_HOST"),
    ("max_file_size", "MCP_MAX_FILE_SIZE"),
    ("log_level", "LOG_LEVEL"),
    ("port_range_start", "MCP_PORT_RANGE_START"),
    ("port_range_size", "MCP_PORT_RANGE_SIZE"),
    ("sweep_interval_seconds", "MCP_SWEEP_INTERVAL"),
    ("open_browser", "MCP_OPEN_BROWSER"),
)


@dataclass
class FeedbackConfig:
    """Feedback collector configuration."""

    # Respondent-facing server
    web_port: int = 5000
    bind_host: str = "127.0.0.1"
    # Host and base URL used when building the link shown to the human.
    server_host: str | None = None
    server_base_url: str | None = None
    # Fixed URL mode serves the newest session at the root path instead
    # of a per-session ?session= link.
    use_fixed_url: bool = True

    # Port negotiation
    force_port: bool = False
    kill_process_on_port_conflict: bool = False
    cleanup_port_on_start: bool = True
    port_range_start: int = 5000
    port_range_size: int = 20

    # Sessions
    dialog_timeout: int = 60000
    sweep_interval_seconds: float = 60.0

    # Payloads
    max_file_size: int = 10 * 1024 * 1024

    open_browser: bool = True
    log_level: str = "info"

    @property
    def port_range_end(self) -> int:
        return self.port_range_start + self.port_range_size - 1

    @property
    def public_host(self) -> str:
        return self.server_host or "localhost"

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS.get(self.log_level, logging.INFO)

    @classmethod
    def from_env(cls, base: FeedbackConfig | None = None) -> FeedbackConfig:
        """Load configuration from MCP_* environment variables.

        Values not present in the environment come from *base* (or the
        class defaults). Malformed values fall back with a warning.
        """
        config = base if base is not None else cls()
        overrides = {
            env: os.environ[env] for _, env in _ENV_VARS if env in os.environ
        }
        if overrides:
            logger.info(
                "FeedbackConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("FeedbackConfig.from_env: no env overrides, using defaults")

        for name, env in _ENV_VARS:
            raw = os.environ.get(env)
            if raw is None or raw == "":
                continue
            current = getattr(config, name)
            setattr(config, name, _coerce(raw, current, env))
        return config

    def validate(self) -> None:
        """Raise ConfigurationError on the first invalid setting."""
        if not 1024 <= self.web_port <= 65535:
            raise ConfigurationError(
                f"Invalid port number: {self.web_port}. "
                "Must be between 1024 and 65535."
            )
        if not MIN_DIALOG_TIMEOUT <= self.dialog_timeout <= MAX_DIALOG_TIMEOUT:
            raise InvalidTimeoutError(
                self.dialog_timeout, MIN_DIALOG_TIMEOUT, MAX_DIALOG_TIMEOUT,
            )
        if not MIN_FILE_SIZE <= self.max_file_size <= MAX_FILE_SIZE:
            raise ConfigurationError(
                f"Invalid max file size: {self.max_file_size}. "
                "Must be between 1KB and 100MB."
            )
        if self.port_range_size < 1:
            raise ConfigurationError(
                f"Invalid port range size: {self.port_range_size}. Must be at least 1."
            )
        if not 1024 <= self.port_range_start or self.port_range_end > 65535:
            raise ConfigurationError(
                f"Invalid port range: {self.port_range_start}-{self.port_range_end}. "
                "Must lie within 1024-65535."
            )
        if self.sweep_interval_seconds <= 0:
            raise ConfigurationError(
                f"Invalid sweep interval: {self.sweep_interval_seconds}. Must be positive."
            )
        if self.log_level not in VALID_LOG_LEVELS:
            raise ConfigurationError(
                f"Invalid log level: {self.log_level}. "
                f"Must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )
        if self.server_base_url:
            parsed = urlparse(self.server_base_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ConfigurationError(
                    f"Invalid server base URL: {self.server_base_url}"
                )

    def display(self) -> str:
        """Human-readable summary for the CLI."""
        lines = [
            "Feedback Collector Configuration:",
            f"  Web Port: {self.web_port}",
            f"  Bind Host: {self.bind_host}",
            f"  Dialog Timeout: {self.dialog_timeout}s",
            f"  Max File Size: {self.max_file_size / 1024 / 1024:.1f}MB",
            f"  Log Level: {self.log_level}",
            f"  Server Host: {self.server_host or 'auto-detect'}",
            f"  Server Base URL: {self.server_base_url or 'auto-generate'}",
            f"  Port Range: {self.port_range_start}-{self.port_range_end}",
            f"  Force Port: {_flag(self.force_port)}",
            f"  Kill Port Process: {_flag(self.kill_process_on_port_conflict)}",
            f"  Use Fixed URL: {_flag(self.use_fixed_url)}",
            f"  Cleanup Port On Start: {_flag(self.cleanup_port_on_start)}",
            f"  Open Browser: {_flag(self.open_browser)}",
        ]
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _flag(value: bool) -> str:
    return "enabled" if value else "disabled"


def _coerce(raw: Any, default: Any, source: str) -> Any:
    """Convert a raw env/YAML value to the type of *default*."""
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in _TRUE_VALUES
    if isinstance(default, int):
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid number for %s: %r, using default: %s", source, raw, default,
            )
            return default
    if isinstance(default, float):
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid number for %s: %r, using default: %s", source, raw, default,
            )
            return default
    if raw is None:
        return None
    return str(raw)


def load_yaml_config(path: str | Path) -> FeedbackConfig:
    """Load a YAML config file's ``feedback:`` section, then apply env overrides.

    Example YAML:
        feedback:
          web_port: 5050
          dialog_timeout: 600
          force_port: true
          kill_process_on_port_conflict: true
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s", path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    section = raw.get("feedback", {}) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"'feedback' section in {path} must be a mapping")

    config = FeedbackConfig()
    known = {f.name for f in fields(FeedbackConfig)}
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown key %r in %s", key, path)
            continue
        setattr(config, key, _coerce(value, getattr(config, key), f"{path.name}:{key}"))

    logger.info(
        "Config loaded from %s: %d keys (web_port=%s timeout=%ss)",
        path.name, len(section), config.web_port, config.dialog_timeout,
    )
    return FeedbackConfig.from_env(base=config)


def get_config(config_path: str | Path | None = None) -> FeedbackConfig:
    """Return a validated configuration from YAML (optional) and env."""
    if config_path:
        config = load_yaml_config(config_path)
    else:
        config = FeedbackConfig.from_env()
    config.validate()
    return config
