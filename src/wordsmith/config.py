import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_SAVE_DEBOUNCE_MS = 800
DEFAULT_MAX_MATCHES = 500
DEFAULT_MAX_CHUNKS = 80
DEFAULT_LIST_LIMIT = 200


class ConfigError(Exception):
    pass


def get_required_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigError(f"Required environment variable {name} is not set")
    return value


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _env_int(name: str, default: int) -> int:
    raw = get_optional_env(name, str(default))
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = get_optional_env(name, str(default))
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class WritingConfig:
    server_url: str = field(default_factory=lambda: get_required_env("WRITING_SERVER_URL"))
    api_key: str | None = field(default_factory=lambda: os.environ.get("WRITING_API_KEY") or None)
    model: str | None = field(default_factory=lambda: os.environ.get("WRITING_MODEL") or None)
    save_debounce_ms: int = field(
        default_factory=lambda: _env_int("WRITING_SAVE_DEBOUNCE_MS", DEFAULT_SAVE_DEBOUNCE_MS)
    )
    timeout_s: float = field(default_factory=lambda: _env_float("WRITING_TIMEOUT_S", 30.0))
    data_dir: str = field(default_factory=lambda: get_optional_env("WRITING_DATA_DIR", ".wordsmith"))
    max_matches: int = DEFAULT_MAX_MATCHES
    max_chunks: int = DEFAULT_MAX_CHUNKS
    list_limit: int = DEFAULT_LIST_LIMIT
    schema_version: int = 1

    @classmethod
    def from_env(cls) -> "WritingConfig":
        return cls()

    @property
    def save_debounce_s(self) -> float:
        return self.save_debounce_ms / 1000.0

    @property
    def usage_path(self) -> Path:
        return Path(self.data_dir) / "usage.json"

    def validate(self) -> None:
        if not self.server_url.startswith(("http://", "https://")):
            raise ConfigError("server_url must start with http:// or https://")
        if self.save_debounce_ms < 0:
            raise ConfigError("save_debounce_ms must be >= 0")
        if self.timeout_s <= 0:
            raise ConfigError("timeout_s must be > 0")
        if self.max_matches < 1:
            raise ConfigError("max_matches must be at least 1")
        if self.max_chunks < 1:
            raise ConfigError("max_chunks must be at least 1")
        if self.list_limit < 1:
            raise ConfigError("list_limit must be at least 1")
        logger.info("Configuration validated successfully")
