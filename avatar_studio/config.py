# avatar_studio/config.py
"""
Configuration for the ingest server (environment driven) and the capture
client (plain validated model passed in by the caller).
"""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from avatar_studio.signatures import ALLOWED_MIME_TYPES

KIB = 1024
MIB = 1024 * 1024


class Settings(BaseSettings):
    """Server settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    upload_dir: Path = Path("uploads")
    public_prefix: str = "/uploads"
    max_upload_bytes: int = 15 * MIB
    allowed_mime_types: List[str] = list(ALLOWED_MIME_TYPES)

    # Extra post-write hook: fully decode the stored file with Pillow
    verify_image_decode: bool = False

    # Session store: "memory" or "postgres"
    session_backend: str = "memory"
    db_host: str = "postgres"
    db_port: int = 5432
    db_name: str = "avatar_sessions"
    db_user: str = "postgres"
    db_password: str = "postgres"

    # Demo account used by /auth/login
    demo_user_id: str = "1"
    demo_username: str = "admin"
    demo_password: str = "password"
    default_avatar: str = "/uploads/default-avatar.png"

    @property
    def normalized_prefix(self) -> str:
        return "/" + self.public_prefix.strip("/")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class StudioConfig(BaseModel):
    """
    Capture client geometry and budgets.

    min_zoom below 1.0 is rejected: at scale < 1 the image's shorter side no
    longer fills the stage and no offset can keep it covered.
    """

    stage_size: float = Field(420.0, gt=0)
    output_size: int = Field(512, gt=0)
    min_zoom: float = Field(1.0, ge=1.0)
    max_zoom: float = 3.0
    zoom_step: float = Field(0.05, gt=0)

    default_quality: float = Field(0.85, gt=0, le=1)
    min_quality: float = Field(0.4, gt=0, le=1)
    quality_step: float = Field(0.05, gt=0)

    byte_budget: int = Field(200 * KIB, gt=0)
    max_source_bytes: int = Field(15 * MIB, gt=0)
    allowed_mime_types: List[str] = list(ALLOWED_MIME_TYPES)

    upload_timeout: float = Field(30.0, gt=0)
    upload_filename: str = "avatar.jpg"
    upload_field: str = "avatar"

    @model_validator(mode="after")
    def _check_ranges(self):
        if self.max_zoom < self.min_zoom:
            raise ValueError("max_zoom must be >= min_zoom")
        if self.default_quality < self.min_quality:
            raise ValueError("default_quality must be >= min_quality")
        return self
