# bulbul/config.py
import os
from pathlib import Path
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "BULBUL_"


class Settings(BaseModel):
    """Runtime configuration for the live posts server."""

    uploads_dir: Path = Field(default=Path("uploads"), description="Directory holding uploaded images.")
    upload_url_prefix: str = Field(default="/uploads", description="Public path the uploads are served under.")
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    allowed_image_types: List[str] = Field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/webp"],
    )
    stream_queue_size: int = Field(
        default=100,
        ge=1,
        description="Messages an observer may have outstanding before it is dropped as too slow.",
    )
    heartbeat_seconds: float = Field(default=15.0, gt=0)
    broadcast_views: bool = Field(
        default=False,
        description="Publish post_updated for view increments (off by default to save traffic).",
    )
    log_level: str = Field(default="INFO")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @field_validator("allowed_image_types", "cors_origins", mode="before")
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("log_level")
    def _upper(cls, value: str) -> str:
        return value.upper()


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from ``BULBUL_*`` environment variables."""
    environ = os.environ if environ is None else environ
    values = {}
    for name in Settings.model_fields:
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is not None:
            values[name] = raw
    return Settings(**values)
