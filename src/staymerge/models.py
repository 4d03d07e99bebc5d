"""Pydantic models for stored and scraped listings and similarity results.

On disk every record is camelCase JSON (``houseRules``, ``sourceUrl``...), the
format the per-listing folders have always used; Python code works with the
snake_case attribute names.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Final, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from staymerge.errors import InvalidInput


class Platform(StrEnum):
    """Supported listing platforms, plus the synthetic unified platform."""

    AIRBNB = "airbnb"
    BOOKING = "booking"
    VRBO = "vrbo"
    UNIFIED = "unified"

    @property
    def display_name(self) -> str:
        """Human-readable display name for this platform."""
        return _PLATFORM_NAMES[self.value]


_PLATFORM_NAMES: Final[dict[str, str]] = {
    "airbnb": "Airbnb",
    "booking": "Booking.com",
    "vrbo": "VRBO",
    "unified": "Unified",
}

class SimilarityStrategy(StrEnum):
    """Image fingerprint backends available to the dedup engine."""

    HASH = "hash"
    EMBEDDING = "embedding"


def utc_now() -> datetime:
    return datetime.now(UTC)


def _dedupe_strings(values: list[str] | None) -> list[str]:
    if not values:
        return []
    return list(dict.fromkeys(v for v in values if v is not None))


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class ListingImage(_CamelModel):
    """An image reference: source URL and path of the local copy."""

    model_config = ConfigDict(extra="allow")

    original: str | None = None
    local: str | None = None

    @property
    def key(self) -> str | None:
        """Merge/dedup key: the source URL, falling back to the local path."""
        return self.original or self.local


class Location(_CamelModel):
    """Where a listing is. Coordinates are optional but range-checked."""

    address: str = ""
    city: str = ""
    country: str = ""
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)

    @field_validator("address", "city", "country", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class SourceRef(_CamelModel):
    """Provenance of one platform contribution to a unified listing."""

    id: str
    url: str = ""
    title: str = ""


class UpdateEntry(_CamelModel):
    """One completed additive merge."""

    date: datetime


class StoredListing(_CamelModel):
    """A listing as persisted in ``<downloads>/<folder>/metadata.json``."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    folder: str = ""
    platform: Platform
    platforms: list[Platform] = Field(default_factory=list)

    title: str = ""
    description: str = ""
    property_type: str = ""
    location: Location = Field(default_factory=Location)
    host: dict[str, Any] = Field(default_factory=dict)

    amenities: list[str] = Field(default_factory=list)
    house_rules: list[str] = Field(default_factory=list)
    highlights: list[str] = Field(default_factory=list)
    safety_items: list[str] = Field(default_factory=list)

    images: list[ListingImage] = Field(default_factory=list)
    sources: dict[str, SourceRef] = Field(default_factory=dict)
    pricing: dict[str, Any] = Field(default_factory=dict)
    source_url: str = ""

    rating: float | None = None
    review_count: int | None = None
    bedrooms: float | None = None
    beds: float | None = None
    bathrooms: float | None = None
    guests: int | None = None
    check_in: str | None = None
    check_out: str | None = None
    cancellation_policy: str | None = None

    scraped_at: datetime | None = None
    first_scraped_at: datetime | None = None
    last_updated_at: datetime | None = None
    edited_at: datetime | None = None
    merged_at: datetime | None = None

    update_count: int = Field(default=0, ge=0)
    update_history: list[UpdateEntry] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def default_folder(cls, data: Any) -> Any:
        """Older records have no ``folder`` key; the folder was named after the id."""
        if isinstance(data, dict) and not data.get("folder") and data.get("id"):
            return {**data, "folder": data["id"]}
        return data

    @field_validator("title", "description", "property_type", "source_url", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("amenities", "house_rules", "highlights", "safety_items", mode="before")
    @classmethod
    def unique_strings(cls, v: list[str] | None) -> list[str]:
        return _dedupe_strings(v)

    @field_validator("host", "pricing", "location", mode="before")
    @classmethod
    def none_to_default(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def is_unified(self) -> bool:
        return self.platform == Platform.UNIFIED

    @property
    def contributing_platforms(self) -> list[Platform]:
        """Platforms this record draws on (``platforms`` only matters when unified)."""
        if self.is_unified:
            # Unified records written before ``platforms`` existed merged these two.
            return list(self.platforms) or [Platform.AIRBNB, Platform.BOOKING]
        return [self.platform]

    def to_metadata(self) -> dict[str, Any]:
        """JSON-ready dict in the on-disk camelCase format."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ScrapedListing(_CamelModel):
    """Output of a platform scraper. Untrusted and partial: every field is optional."""

    model_config = ConfigDict(extra="allow")

    platform: Platform | None = None
    id: str | None = None
    source_url: str | None = None

    title: str | None = None
    description: str | None = None
    property_type: str | None = None
    location: Location | None = None
    host: dict[str, Any] | None = None

    amenities: list[str] = Field(default_factory=list)
    house_rules: list[str] = Field(default_factory=list)
    highlights: list[str] = Field(default_factory=list)
    safety_items: list[str] = Field(default_factory=list)
    images: list[ListingImage] = Field(default_factory=list)

    pricing: dict[str, Any] | None = None

    rating: float | None = None
    review_count: int | None = None
    bedrooms: float | None = None
    beds: float | None = None
    bathrooms: float | None = None
    guests: int | None = None
    check_in: str | None = None
    check_out: str | None = None
    cancellation_policy: str | None = None

    scraped_at: datetime | None = None

    @field_validator("amenities", "house_rules", "highlights", "safety_items", mode="before")
    @classmethod
    def unique_strings(cls, v: list[str] | None) -> list[str]:
        return _dedupe_strings(v)

    @field_validator("images", mode="before")
    @classmethod
    def wrap_bare_urls(cls, v: Any) -> Any:
        """Scrapers sometimes return plain URL strings instead of image objects."""
        if v is None:
            return []
        if isinstance(v, list):
            return [{"original": item} if isinstance(item, str) else item for item in v]
        return v

    @classmethod
    def parse(cls, payload: Any) -> Self:
        """Validate an untrusted payload, raising InvalidInput on a bad shape."""
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InvalidInput(f"Invalid scraped listing: {e}") from e


class ListingEdits(_CamelModel):
    """Fields a user may edit directly. None means "leave unchanged"."""

    title: str | None = None
    description: str | None = None
    amenities: list[str] | None = None
    images: list[ListingImage] | None = None


class UnifyEdits(_CamelModel):
    """Caller-supplied, post-edit content for a unified listing."""

    title: str | None = None
    description: str | None = None
    amenities: list[str] | None = None
    house_rules: list[str] | None = None
    highlights: list[str] | None = None
    safety_items: list[str] | None = None
    images: list[ListingImage] = Field(default_factory=list)


class AnalyzedImage(_CamelModel):
    """One image annotated by the similarity analysis."""

    image: ListingImage
    original_index: int
    group: int
    is_duplicate: bool = False
    distance: int | None = None  # hash strategy: Hamming distance to canonical
    similarity: float | None = None  # embedding strategy: cosine to canonical


class SimilarityReport(_CamelModel):
    """Result of analyzing a set of images for near-duplicates."""

    strategy: SimilarityStrategy
    threshold: float
    images: list[AnalyzedImage]
    groups: int
    duplicates: int
    truncated: int = 0


class DedupeResult(_CamelModel):
    """Result of removing near-duplicates: canonical images and what was dropped."""

    strategy: SimilarityStrategy
    threshold: float
    unique: list[ListingImage]
    removed: list[ListingImage]
    truncated: int = 0

    @property
    def removed_count(self) -> int:
        return len(self.removed)
