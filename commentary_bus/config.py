import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    APP_NAME: str = "Commentary Bus"
    DEBUG: bool = False
    HOST: str = "127.0.0.1"
    PORT: int = 5055

    # Shared secret for POST /ingest; empty disables the check
    CBUS_TOKEN: str = ""

    SESSION_DIR: str = ""
    SESSION_ROOT: str = str(Path.home() / ".claude" / "projects")
    CONFIG_FILE: str = "./filters.yaml"

    ASSISTANT_NAME: str = "Claude"
    REPLAY_BUFFER_SIZE: int = 50
    SUBSCRIBER_QUEUE_SIZE: int = 1000
    HEARTBEAT_INTERVAL_SECONDS: int = 5

    WATCH_DEBOUNCE_MS: int = 300
    TAIL_POLL_INTERVAL_MS: int = 250
    TAIL_RETRY_TIMEOUT_S: float = 5.0
    DEDUP_MAX_ENTRIES: int = 10000


settings = Settings()


# ── Pipeline config (filters.yaml) ────────────────────────────────────────────

class FilterConfig(BaseModel):
    include_types: list[str] = Field(
        default_factory=lambda: [
            "assistant", "user", "tool_call", "git_action", "file_operation",
            "session_start", "session_end", "error",
        ]
    )
    exclude_types: list[str] = Field(default_factory=list)
    include_subtypes: list[str] = Field(default_factory=list)
    exclude_subtypes: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=lambda: [".*heartbeat.*", ".*ping.*"])
    min_message_length: int = 10


class OrderingConfig(BaseModel):
    stabilization_ms: int = 150


class RateLimitConfig(BaseModel):
    burst: int = 20
    per_minute: float = 10


class DedupConfig(BaseModel):
    prefix_length: int = 100


class TruncationConfig(BaseModel):
    indicator: str = "…"
    limits: dict[str, int] = Field(
        default_factory=lambda: {
            "assistant_text": 2500,
            "assistant_tool_use": 2000,
            "user_text": 2500,
            "user_tool_result": 500,
            "user_interrupt": 200,
            "session_start": 200,
            "session_end": 200,
            "error": 500,
            "unknown": 300,
        }
    )


class PipelineConfig(BaseModel):
    enabled: bool = True
    channels: dict[str, str] = Field(default_factory=lambda: {"default": "default"})
    filters: FilterConfig = Field(default_factory=FilterConfig)
    ordering: OrderingConfig = Field(default_factory=OrderingConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    truncation: TruncationConfig = Field(default_factory=TruncationConfig)


def load_pipeline_config(path: str) -> PipelineConfig:
    """
    Load filters.yaml on top of the built-in defaults.
    A missing or broken file is logged and the defaults are used.
    """
    config_path = Path(path)
    if not config_path.is_file():
        logger.info("No pipeline config at %s, using defaults", path)
        return PipelineConfig()
    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        config = PipelineConfig.model_validate(loaded)
    except (OSError, yaml.YAMLError, ValidationError) as exc:
        logger.error("Failed to load pipeline config %s: %s", path, exc)
        return PipelineConfig()
    logger.info("Loaded pipeline config from %s", path)
    return config
