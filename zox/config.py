"""Settings via pydantic-settings with ZOX_ env prefix.

Cloud API keys use validation_alias to read the unprefixed, comma-separated
GEMINI_API_KEYS variable, so the same .env file can be shared with other
tooling that already knows that name.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ZOX_", env_file=".env", extra="ignore")

    # Cloud credentials: unprefixed alias, comma-separated for rotation
    gemini_api_keys: str = Field("", validation_alias="GEMINI_API_KEYS")

    # Cloud tiers
    cloud_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    router_model: str = "gemma-3-1b-it"
    basic_model: str = "gemma-3-4b-it"
    advanced_model: str = "gemma-3-12b-it"
    agent_model: str = "gemma-3-27b-it"
    summarizer_model: str = "gemma-3-4b-it"
    embedding_model: str = "text-embedding-004"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Local runtime (Ollama-compatible, serves a quantized GGUF model)
    local_base_url: str = "http://127.0.0.1:11434"
    local_model: str = "gemma3:4b"
    local_embedding_model: str = "all-minilm"
    local_context_tokens: int = 4096
    local_keep_alive: str = "30m"
    start_offline: bool = False

    # Orchestration loop
    max_steps: int = 15  # Thinking entries per task
    context_window_tokens: int = 28000
    command_queue_size: int = 32
    tool_timeout: float = 30.0  # seconds
    stream_chunk_chars: int = 100
    approval_timeout: float | None = None  # None = wait until answered or cancelled

    # Context compression
    compress_after_turns: int = 12
    recent_turns_kept: int = 8
    retrieval_k: int = 5

    # Storage
    workspace_dir: str = "/tmp/zox-workspace"
    history_dir: str = "/tmp/zox-history"
    embedding_backend: Literal["cloud", "local"] = "cloud"

    # Server
    host: str = "127.0.0.1"
    port: int = 8765
    log_level: str = "info"
    event_queue_size: int = 1000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if self.recent_turns_kept >= self.compress_after_turns:
            raise ValueError(
                f"recent_turns_kept ({self.recent_turns_kept}) must be < "
                f"compress_after_turns ({self.compress_after_turns})"
            )
        return self

    @property
    def api_keys(self) -> list[str]:
        return [k.strip() for k in self.gemini_api_keys.split(",") if k.strip()]
