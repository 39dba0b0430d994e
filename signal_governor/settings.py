from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env eagerly so gunicorn and the CLI pick up values.
load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    database_url: Optional[str] = Field(None, alias="DATABASE_URL")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    admin_api_key: Optional[SecretStr] = Field(None, alias="ADMIN_API_KEY")
    port: int = Field(8081, alias="PORT")

    discord_bot_token: Optional[SecretStr] = Field(None, alias="DISCORD_BOT_TOKEN")
    discord_api_base_url: AnyHttpUrl = Field("https://discord.com/api/v10", alias="DISCORD_API_BASE_URL")
    http_timeout_seconds: float = Field(30.0, alias="HTTP_TIMEOUT_SECONDS")

    openrouter_api_key: Optional[SecretStr] = Field(None, alias="OPENROUTER_API_KEY")
    openrouter_model: Optional[str] = Field(None, alias="OPENROUTER_MODEL")
    openrouter_base_url: AnyHttpUrl = Field("https://openrouter.ai/api/v1", alias="OPENROUTER_BASE_URL")
    llm_concurrency: int = Field(4, alias="LLM_CONCURRENCY")

    # Queue policy overrides; unset values fall back to the adapter's defaults.
    governor_max_concurrent: Optional[int] = Field(None, alias="GOVERNOR_MAX_CONCURRENT")
    governor_timeout_seconds: Optional[int] = Field(None, alias="GOVERNOR_TIMEOUT_SECONDS")
    governor_max_attempts: Optional[int] = Field(None, alias="GOVERNOR_MAX_ATTEMPTS")
    governor_page_size: Optional[int] = Field(None, alias="GOVERNOR_PAGE_SIZE")
    governor_max_pages: Optional[int] = Field(None, alias="GOVERNOR_MAX_PAGES")
    governor_head_gap_minutes: Optional[int] = Field(None, alias="GOVERNOR_HEAD_GAP_MINUTES")
    governor_min_content_chars: Optional[int] = Field(None, alias="GOVERNOR_MIN_CONTENT_CHARS")
    governor_loop_interval_seconds: int = Field(60, alias="GOVERNOR_LOOP_INTERVAL_SECONDS")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
