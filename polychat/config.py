"""Configuration loading from YAML."""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


@dataclass
class LLMConfig:
    primary: str = "gemini-1.5-flash"
    fallback_enabled: bool = True
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout: float = 30.0


@dataclass
class GeminiConfig:
    api_key_env: str = "GOOGLE_API_KEY"
    model: str = "gemini-1.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"


@dataclass
class ClaudeConfig:
    api_key_env: str = "ANTHROPIC_API_KEY"
    model: str = "claude-3-haiku-20240307"
    base_url: str = "https://api.anthropic.com/v1"
    api_version: str = "2023-06-01"


@dataclass
class GLMConfig:
    api_key_env: str = "GLM_API_KEY"
    model: str = "glm-4.5-flash"
    base_url: str = "https://open.bigmodel.cn/api/paas/v4"


@dataclass
class StorageConfig:
    backend: str = "memory"  # "memory" | "sql"
    url: str | None = None  # sqlite+aiosqlite:///./data/polychat.db


@dataclass
class APIConfig:
    host: str = "127.0.0.1"
    port: int = 5000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class AppConfig:
    llm: LLMConfig = field(default_factory=LLMConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    glm: GLMConfig = field(default_factory=GLMConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: APIConfig = field(default_factory=APIConfig)


_SECTIONS = ("llm", "gemini", "claude", "glm", "storage", "api")


def _apply_dict(target: Any, data: dict[str, Any]) -> None:
    """Apply dictionary values onto a dataclass instance."""
    for key, value in data.items():
        if hasattr(target, key):
            current = getattr(target, key)
            if current is not None and value is not None:
                expected_type = type(current)
                actual_type = type(value)
                # Allow int → float coercion
                if expected_type is float and actual_type is int:
                    value = float(value)
                # Guard against bool being subclass of int
                elif expected_type is int and actual_type is bool:
                    logger.warning(
                        "Config type mismatch for '%s': expected %s, got %s, skipping.",
                        key, expected_type.__name__, actual_type.__name__,
                    )
                    continue
                elif not isinstance(value, expected_type):
                    logger.warning(
                        "Config type mismatch for '%s': expected %s, got %s, skipping.",
                        key, expected_type.__name__, actual_type.__name__,
                    )
                    continue
            setattr(target, key, value)
        else:
            logger.debug("Ignoring unknown config key '%s'", key)


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from YAML file, falling back to defaults."""
    cfg = AppConfig()

    if config_path is None:
        config_path = Path("config.yaml")

    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

        for section in _SECTIONS:
            if isinstance(raw.get(section), dict):
                _apply_dict(getattr(cfg, section), raw[section])
        logger.info("Loaded config from %s", config_path)

    return cfg


def resolve_api_key(env_name: str) -> str | None:
    """Read an API key from the environment.  Keys never live in config.yaml."""
    value = os.environ.get(env_name, "").strip()
    return value or None


def resolve_storage_url(cfg: AppConfig) -> str:
    """Resolve the SQL store URL: env var > config > local SQLite file."""
    url = os.environ.get("POLYCHAT_DATABASE_URL") or cfg.storage.url
    if not url:
        return "sqlite+aiosqlite:///./data/polychat.db"
    # Ensure async driver prefixes
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite:///"):
        url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def config_to_dict(cfg: AppConfig) -> dict[str, Any]:
    """Convert an AppConfig to a plain dict, redacting secrets.

    The ``api_key_env`` names are replaced with ``"***"`` and the storage
    URL (which may embed a password) is dropped.
    """
    result: dict[str, Any] = {}
    for f in dataclasses.fields(cfg):
        result[f.name] = dataclasses.asdict(getattr(cfg, f.name))

    for provider in ("gemini", "claude", "glm"):
        result[provider]["api_key_env"] = "***"
    if result["storage"].get("url"):
        result["storage"]["url"] = "***"

    return result
