"""Shared pytest fixtures."""

import io
import logging
import os
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import numpy as np
import pytest
import structlog
from hypothesis import HealthCheck, settings
from PIL import Image

from staymerge.config import Settings
from staymerge.models import ListingImage, Platform, ScrapedListing, StoredListing


def pytest_configure(config: pytest.Config) -> None:
    """Force line-buffered stdout when piped."""
    if hasattr(sys.stdout, "reconfigure") and not sys.stdout.isatty():
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure") and not sys.stderr.isatty():
        sys.stderr.reconfigure(line_buffering=True)


# Hypothesis settings profiles for different environments
settings.register_profile("fast", max_examples=10)
settings.register_profile(
    "ci",
    max_examples=200,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


def _configure_test_logging(**_: Any) -> None:
    """Route structlog through stdlib logging so pytest's log capture owns the stream."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


_configure_test_logging()


@pytest.fixture(autouse=True)
def _keep_test_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Entry points must not rebind logging to a per-test capture stream."""
    monkeypatch.setattr("staymerge.main.configure_logging", _configure_test_logging)
    monkeypatch.setattr("staymerge.web.app.configure_logging", _configure_test_logging)


@pytest.fixture(autouse=True)
def _isolate_settings_from_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent the local .env file from leaking into test Settings instances."""
    monkeypatch.setattr(
        Settings,
        "model_config",
        {**Settings.model_config, "env_file": None},
    )


@pytest.fixture
def downloads_dir(tmp_path: Path) -> Path:
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def public_dir(tmp_path: Path) -> Path:
    path = tmp_path / "public"
    path.mkdir()
    return path


@pytest.fixture
def app_settings(downloads_dir: Path, public_dir: Path) -> Settings:
    return Settings(
        downloads_dir=str(downloads_dir),
        public_dir=str(public_dir),
        lock_timeout_seconds=0.5,
        lock_poll_interval_seconds=0.01,
    )


def image_bytes(seed: int, fmt: str = "PNG") -> bytes:
    """A blocky random image; different seeds give unrelated perceptual hashes."""
    rng = np.random.default_rng(seed)
    blocks = rng.integers(0, 256, size=(8, 8, 3), dtype=np.uint8)
    img = Image.fromarray(blocks).resize((256, 256), Image.Resampling.NEAREST)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def write_image() -> Callable[[Path, int], Path]:
    """Write a seeded test image to ``path`` (parents created)."""

    def _write(path: Path, seed: int) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image_bytes(seed))
        return path

    return _write


@pytest.fixture
def make_stored() -> Callable[..., StoredListing]:
    """Factory for stored listings with sensible defaults."""

    def _make(**overrides: Any) -> StoredListing:
        data: dict[str, Any] = {
            "id": "airbnb_123",
            "folder": "airbnb_123",
            "platform": Platform.AIRBNB,
            "platforms": [Platform.AIRBNB],
            "title": "Sea View Apartment",
            "description": "Bright flat by the beach.",
            "source_url": "https://www.airbnb.com/rooms/123",
            "amenities": ["WiFi", "Kitchen"],
            "images": [
                ListingImage(
                    original="https://a0.muscache.com/im/pictures/1.jpg",
                    local="/downloads/airbnb_123/images/image_000_aaaaaaaa.jpg",
                )
            ],
            "scraped_at": datetime(2025, 1, 1, tzinfo=UTC),
        }
        data.update(overrides)
        return StoredListing.model_validate(data)

    return _make


@pytest.fixture
def make_scraped() -> Callable[..., ScrapedListing]:
    """Factory for scraper output with sensible defaults."""

    def _make(**overrides: Any) -> ScrapedListing:
        data: dict[str, Any] = {
            "platform": Platform.AIRBNB,
            "id": "123",
            "source_url": "https://www.airbnb.com/rooms/123?check_in=2025-07-01",
            "title": "Sea View Apartment",
            "amenities": ["WiFi", "Kitchen"],
        }
        data.update(overrides)
        return ScrapedListing.model_validate(data)

    return _make


@pytest.fixture
def make_image_bytes() -> Callable[..., bytes]:
    """Encoded test image bytes, e.g. for mocked downloads."""
    return image_bytes
