from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    fal_api_key: Optional[str] = None
    replicate_api_token: Optional[str] = None

    fal_use_queue: bool = True
    webhook_url: str = ""
    fal_model_text2video: Optional[str] = None
    fal_model_image2video: Optional[str] = None

    text_model_key: str = "fal-text"
    image_model_key: str = "fal-image"
    model_profiles_path: Optional[str] = None

    public_base_url: str = ""
    prompt_char_limit: int = 4000

    upstream_timeout_seconds: float = 30.0
    upstream_max_attempts: int = Field(3, ge=1)
    retry_backoff_seconds: float = 0.5
    max_follow_up_links: int = Field(8, ge=0)

    moderation_mode: str = "off"
    openai_api_key: Optional[str] = None
    moderation_url: str = "https://api.openai.com/v1/moderations"
    moderation_timeout_seconds: float = 10.0

    blob_store_bucket: Optional[str] = None
    blob_store_prefix: str = "videos"
    blob_store_endpoint_url: Optional[str] = None
    blob_store_region: str = "auto"
    blob_store_access_key_id: Optional[str] = None
    blob_store_secret_access_key: Optional[str] = None
    blob_store_public_base_url: str = ""
    blob_store_url_expiry_seconds: int = 7 * 24 * 3600

    log_level: str = "INFO"
    app_host: str = "0.0.0.0"
    app_port: int = 10000

    @field_validator("blob_store_prefix", mode="before")
    @classmethod
    def normalize_prefix(cls, value: Optional[str]) -> str:
        value = value or ""
        return value.strip("/")

    @field_validator("webhook_url", "public_base_url", "blob_store_public_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, value: Optional[str]) -> str:
        return (value or "").rstrip("/")

    @field_validator("moderation_mode", mode="before")
    @classmethod
    def normalize_moderation_mode(cls, value: Optional[str]) -> str:
        mode = (value or "off").strip().lower().replace("-", "_")
        if mode not in {"off", "fail_open", "fail_closed"}:
            raise ValueError(f"MODERATION_MODE must be off, fail_open or fail_closed, got {value!r}")
        return mode

    @property
    def blob_store_enabled(self) -> bool:
        return bool(self.blob_store_bucket)


@lru_cache()
def get_settings() -> Settings:
    try:
        return Settings()
    except Exception as exc:
        raise RuntimeError("Failed to load application settings. Check your environment and .env file.") from exc


settings = get_settings()
