"""Application configuration using pydantic-settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Staleness threshold as a multiple of the sweep interval when not set explicitly.
STALE_LOCK_SWEEP_MULTIPLIER = 20


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STAYMERGE_",
        extra="ignore",
    )

    # Storage roots
    downloads_dir: str = Field(
        default="downloads",
        description="Root directory holding one folder per listing",
    )
    public_dir: str = Field(
        default="public",
        description="Static-assets root for image paths outside /downloads",
    )

    # Per-listing locking
    lock_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="How long a mutating request waits for a listing lock",
    )
    lock_poll_interval_seconds: float = Field(default=0.05, gt=0)
    lock_sweep_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Interval of the background sweep that reclaims stale locks",
    )
    lock_stale_after_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Age after which a held lock is reclaimed (default: 20x sweep interval)",
    )

    # Image similarity
    hash_distance_threshold: int = Field(
        default=5,
        ge=0,
        le=64,
        description="Max Hamming distance between pHashes to call two images duplicates",
    )
    enable_embeddings: bool = Field(
        default=False,
        description="Enable the embedding-model similarity strategy (needs torch)",
    )
    embedding_similarity_threshold: float = Field(default=0.92, ge=-1.0, le=1.0)
    embedding_max_images: int = Field(
        default=100,
        ge=1,
        description="Maximum images examined per embedding analyze/dedupe call",
    )
    embedding_model_path: str = Field(default="data/models/sscd_disc_mixup.torchscript.pt")

    # Image import
    image_download_concurrency: int = Field(default=5, ge=1)
    image_download_timeout: float = Field(default=30.0, gt=0)

    # Web server
    web_port: int = Field(default=30002, description="Web server port")
    web_host: str = Field(default="127.0.0.1", description="Web server host")

    @property
    def downloads_path(self) -> Path:
        return Path(self.downloads_dir)

    @property
    def public_path(self) -> Path:
        return Path(self.public_dir)

    @property
    def stale_lock_after(self) -> float:
        """Lock age in seconds after which the sweep reclaims it."""
        if self.lock_stale_after_seconds is not None:
            return self.lock_stale_after_seconds
        return self.lock_sweep_interval_seconds * STALE_LOCK_SWEEP_MULTIPLIER
