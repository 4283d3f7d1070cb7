"""Configuration loaded from environment (pydantic Settings)."""

from typing import Annotated, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_SUPPORTED_PLATFORMS = ("facebook", "instagram", "linkedin", "tiktok", "twitter")
# What the "both" shortcut expands to
DEFAULT_BOTH_PLATFORMS = ("facebook", "instagram")


class Settings(BaseSettings):
    """Postflow service settings. All secrets from env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str
    HTTP_PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    # Platforms a post can target; "both" expands to BOTH_PLATFORMS
    SUPPORTED_PLATFORMS: Annotated[list[str], NoDecode] = list(DEFAULT_SUPPORTED_PLATFORMS)
    BOTH_PLATFORMS: Annotated[list[str], NoDecode] = list(DEFAULT_BOTH_PLATFORMS)
    DEFAULT_TIMEZONE: str = "Pacific/Auckland"

    # External publishing service (LATE)
    LATE_API_URL: str = "https://getlate.dev/api/v1"
    LATE_API_KEY: Optional[str] = None

    # External identity provider: resolves agency bearer tokens to a user id
    AUTH_VERIFY_URL: Optional[str] = None
    AUTH_VERIFY_TOKEN: Optional[str] = None

    # Public portal origin used to build approval session share links
    PORTAL_BASE_URL: Optional[str] = None

    CALENDAR_CACHE_TTL_SEC: float = 30.0
    BATCH_APPROVAL_CONCURRENCY: int = 10
    RECONCILER_INTERVAL_SEC: int = 30

    @field_validator("SUPPORTED_PLATFORMS", "BOTH_PLATFORMS", mode="before")
    @classmethod
    def split_platform_list(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, list):
            cleaned = [str(p).strip().lower() for p in v if str(p).strip()]
            if not cleaned:
                raise ValueError("platform list must not be empty")
            return cleaned
        return v

    @field_validator("BATCH_APPROVAL_CONCURRENCY")
    @classmethod
    def concurrency_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("BATCH_APPROVAL_CONCURRENCY must be >= 1")
        return v
