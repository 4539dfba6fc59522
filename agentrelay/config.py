"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. explicit path (--config CLI flag or AGENTRELAY_CONFIG)
2. ./agentrelay.yaml (working directory)
3. ~/.agentrelay/config.yaml (user home)

Environment variables override YAML: AGENTRELAY_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
With no config file, defaults apply (still subject to env overrides).
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class ServerConfig(BaseModel):
    """HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"
    app_url: str = "http://localhost:8000"

    @field_validator("app_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class EventsConfig(BaseModel):
    """Agent event lifetime."""

    ttl_hours: float = Field(24.0, gt=0)


class WebhookConfig(BaseModel):
    """Webhook push delivery settings.

    Backoff between attempts is backoff_base_seconds * 2**attempt
    (1s, 2s, 4s with the defaults).
    """

    timeout_seconds: float = Field(10.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    backoff_base_seconds: float = Field(1.0, ge=0)
    path: str = "/hooks/agent"


class AuthConfig(BaseModel):
    """Human-facing API key and auth failure rate limiting."""

    api_key: str = ""
    failure_max: int = 10
    failure_window_seconds: int = 300


class RelayConfig(BaseModel):
    """Top-level configuration for the agent relay service."""

    server: ServerConfig = ServerConfig()
    events: EventsConfig = EventsConfig()
    webhook: WebhookConfig = WebhookConfig()
    auth: AuthConfig = AuthConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    candidates = [
        Path.cwd() / "agentrelay.yaml",
        Path.cwd() / "agentrelay.yml",
        Path.home() / ".agentrelay" / "config.yaml",
        Path.home() / ".agentrelay" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply AGENTRELAY_<SECTION>_<KEY> env var overrides to config data.

    For example, ``AGENTRELAY_WEBHOOK_MAX_ATTEMPTS=5`` maps to section
    ``webhook``, field ``max_attempts``. Unknown sections are ignored.
    """
    prefix = "AGENTRELAY_"
    known_sections = sorted(RelayConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            # Pydantic coerces numeric strings; only booleans need help
            if value.lower() in ("true", "false"):
                data[matched_section][matched_field] = value.lower() == "true"
            else:
                data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> RelayConfig:
    """Load relay configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, uses
            AGENTRELAY_CONFIG or searches standard locations.

    Returns:
        Parsed and validated RelayConfig (defaults when no file exists).

    Raises:
        FileNotFoundError: If an explicit path does not exist.
    """
    explicit = config_path or os.environ.get("AGENTRELAY_CONFIG", "").strip() or None
    if explicit:
        path: Path | None = Path(explicit)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {explicit}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return RelayConfig(**data)
