import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

WIRE_FORMATS = ("structured", "legacy")

PENDING_FLAG_TTL_SECONDS = 5.0
STALE_COMMAND_SECONDS = 30.0
DRAFT_DEBOUNCE_SECONDS = 2.0
SURFACE_LIVENESS_SECONDS = 2.0


class ConfigError(Exception):
    pass


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class CompletionConfig:
    api_key: str | None = field(default_factory=lambda: os.environ.get("OPENAI_API_KEY") or None)
    base_url: str = field(
        default_factory=lambda: get_optional_env("PAGECHAT_BASE_URL", "https://api.openai.com/v1")
    )
    wire_format: str = field(
        default_factory=lambda: get_optional_env("PAGECHAT_WIRE_FORMAT", "structured")
    )
    model: str = field(default_factory=lambda: get_optional_env("PAGECHAT_MODEL", "gpt-4.1-nano"))
    temperature: float = 0.5
    max_tokens: int = 4096
    follow_up_max_tokens: int = 1000
    timeout_seconds: float = field(default_factory=lambda: _env_float("PAGECHAT_TIMEOUT", 60.0))
    max_page_content_chars: int = 20000


@dataclass
class TriggerConfig:
    pending_ttl_seconds: float = PENDING_FLAG_TTL_SECONDS
    stale_after_seconds: float = STALE_COMMAND_SECONDS
    fusion_wait_seconds: float = 0.3
    dispatch_delay_seconds: float = 0.0


@dataclass
class StoreConfig:
    data_dir: str = field(
        default_factory=lambda: get_optional_env("PAGECHAT_DATA_DIR", ".pagechat/store")
    )
    draft_debounce_seconds: float = DRAFT_DEBOUNCE_SECONDS
    liveness_interval_seconds: float = SURFACE_LIVENESS_SECONDS


@dataclass
class ChatConfig:
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    @classmethod
    def from_env(cls) -> "ChatConfig":
        return cls()

    @classmethod
    def from_file(cls, path: str | Path) -> "ChatConfig":
        """Env defaults overridden by the `completion`, `trigger` and `store` sections of a YAML file."""
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")

        config = cls.from_env()
        for section in ("completion", "trigger", "store"):
            overrides = data.get(section) or {}
            if not isinstance(overrides, dict):
                raise ConfigError(f"Section '{section}' must be a mapping")
            current = getattr(config, section)
            known = {f.name for f in fields(current)}
            unknown = set(overrides) - known
            if unknown:
                raise ConfigError(f"Unknown keys in '{section}': {', '.join(sorted(unknown))}")
            setattr(config, section, replace(current, **overrides))
        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self) -> None:
        c = self.completion
        if c.wire_format not in WIRE_FORMATS:
            raise ConfigError(f"wire_format must be one of {', '.join(WIRE_FORMATS)}")
        if not c.base_url.startswith(("http://", "https://")):
            raise ConfigError("base_url must be an http(s) URL")
        if not 0.0 <= c.temperature <= 2.0:
            raise ConfigError("temperature must be between 0 and 2")
        if c.max_tokens < 1 or c.follow_up_max_tokens < 1:
            raise ConfigError("max_tokens must be at least 1")
        if c.timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be > 0")
        if c.max_page_content_chars < 0:
            raise ConfigError("max_page_content_chars must be >= 0")
        t = self.trigger
        if t.pending_ttl_seconds <= 0:
            raise ConfigError("pending_ttl_seconds must be > 0")
        if t.stale_after_seconds <= 0:
            raise ConfigError("stale_after_seconds must be > 0")
        if t.fusion_wait_seconds < 0 or t.dispatch_delay_seconds < 0:
            raise ConfigError("trigger delays must be >= 0")
        s = self.store
        if s.draft_debounce_seconds < 0:
            raise ConfigError("draft_debounce_seconds must be >= 0")
        if s.liveness_interval_seconds <= 0:
            raise ConfigError("liveness_interval_seconds must be > 0")
        logger.info("Configuration validated successfully")
