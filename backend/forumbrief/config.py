from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from functools import lru_cache
from pathlib import Path

# Get the project root (forumbrief/)
PROJECT_ROOT = Path(__file__).parent.parent.parent


class Settings(BaseSettings):

    # Application
    app_env: str = "development"
    app_debug: bool = False

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    frontend_url: str = "http://localhost:3000"

    # Prometheus /metrics endpoint
    prometheus_enabled: bool = True

    # Structured-output generation
    summary_provider: str = "openai"  # Options: openai, gemini
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    summary_temperature: float = 0.3
    summary_max_tokens: int = 1500
    summary_generation_timeout_seconds: float = 30.0
    summary_min_content_length: int = 50  # Below this, skip generation entirely
    summary_max_posts_for_prompt: int = 20  # Larger threads are sampled

    # Retry policy
    summary_max_attempts: int = 3
    summary_retry_max_delay_seconds: float = 60.0
    summary_request_timeout_seconds: float = 30.0

    # Summary cache (process memory only)
    summary_cache_ttl_seconds: int = 86400  # 24 hours
    summary_cache_max_entries: int = 1000
    summary_cache_cleanup_interval_seconds: int = 3600  # 1 hour

    # Performance monitoring
    performance_history_size: int = 1000

    # Forum API (thread/post lookup)
    forums_api_url: str = "https://api.foru.ms"
    forums_api_key: str = ""
    forums_thread_timeout_seconds: float = 10.0
    forums_posts_timeout_seconds: float = 15.0  # Post lists can be large

    @field_validator("summary_provider", mode="before")
    @classmethod
    def normalize_provider(cls, v):
        if v is None or v == "":
            return "openai"
        return str(v).strip().lower()

    @field_validator("summary_max_attempts")
    @classmethod
    def at_least_one_attempt(cls, v):
        if v < 1:
            raise ValueError("summary_max_attempts must be >= 1")
        return v

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
