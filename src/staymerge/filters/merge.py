"""Additive merge of a fresh scrape into a stored listing.

Scalars are first-write-wins: a value already present on the stored listing
is never replaced. Collections only grow. The tables below are the complete
list of fields the merge touches; anything else on the stored record
(identity, provenance, bookkeeping written by other flows) is carried over
unchanged.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Final

from pydantic.alias_generators import to_camel

from staymerge.logging import get_logger
from staymerge.models import (
    ListingImage,
    Platform,
    ScrapedListing,
    StoredListing,
    utc_now,
)
from staymerge.utils.url import detect_platform

logger = get_logger(__name__)

# Scalars copied from a scrape only while the stored value is empty.
PROTECTED_FIELDS: Final[tuple[str, ...]] = (
    "title",
    "description",
    "property_type",
    "source_url",
    "rating",
    "review_count",
    "bedrooms",
    "beds",
    "bathrooms",
    "guests",
    "check_in",
    "check_out",
    "cancellation_policy",
)

# Mapping fields filled key-by-key. None means every key of the (opaque) mapping.
PROTECTED_NESTED_FIELDS: Final[dict[str, tuple[str, ...] | None]] = {
    "location": ("address", "city", "country", "lat", "lng"),
    "host": None,
}

# String lists merged as an order-preserving union.
COLLECTION_FIELDS: Final[tuple[str, ...]] = (
    "amenities",
    "house_rules",
    "highlights",
    "safety_items",
)

# Keys an unknown scraper field may never use: every stored field, by name or alias.
STORED_FIELD_KEYS: Final[frozenset[str]] = frozenset(
    key
    for name, field in StoredListing.model_fields.items()
    for key in (name, field.alias or to_camel(name))
)


def is_empty(value: Any) -> bool:
    """Null and the empty string count as "not yet known"."""
    return value is None or value == ""


def fill_mapping(
    existing: dict[str, Any],
    incoming: dict[str, Any] | None,
    keys: Iterable[str] | None = None,
) -> dict[str, Any]:
    """Copy ``incoming`` values into a copy of ``existing`` where it is empty."""
    result = dict(existing)
    if not incoming:
        return result
    for key in keys if keys is not None else incoming:
        value = incoming.get(key)
        if is_empty(result.get(key)) and not is_empty(value):
            result[key] = value
    return result


def union_strings(existing: Iterable[str], incoming: Iterable[str]) -> list[str]:
    """Existing entries first, then unseen incoming entries in incoming order."""
    return list(dict.fromkeys([*existing, *incoming]))


def new_images(
    existing: Iterable[ListingImage], incoming: Iterable[ListingImage]
) -> list[ListingImage]:
    """Incoming images whose key is not present yet, first occurrence only."""
    seen = {img.key for img in existing if img.key}
    fresh: list[ListingImage] = []
    for img in incoming:
        key = img.key
        if key and key not in seen:
            seen.add(key)
            fresh.append(img)
    return fresh


def union_images(
    existing: list[ListingImage], incoming: Iterable[ListingImage]
) -> list[ListingImage]:
    """Union keyed by ``original`` (fallback ``local``); existing entries win."""
    return [*existing, *new_images(existing, incoming)]


def _pricing_platform(existing: StoredListing, incoming: ScrapedListing) -> str | None:
    if incoming.platform and incoming.platform != Platform.UNIFIED:
        return incoming.platform.value
    if not existing.is_unified:
        return existing.platform.value
    detected = detect_platform(incoming.source_url)
    return detected.value if detected else None


def merge_additive(
    existing: StoredListing,
    incoming: ScrapedListing,
    *,
    now: datetime | None = None,
) -> StoredListing:
    """Fold a scrape into a stored listing without losing anything.

    Args:
        existing: The listing as currently stored.
        incoming: The fresh scrape. Its images must already reference files
            in the listing's own folder (or only carry a source URL).
        now: Merge timestamp, injectable for tests.

    Returns:
        A new StoredListing; ``existing`` is not modified.
    """
    now = now or utc_now()
    data = existing.model_dump()

    for name in PROTECTED_FIELDS:
        value = getattr(incoming, name)
        if is_empty(data.get(name)) and not is_empty(value):
            data[name] = value

    for name, keys in PROTECTED_NESTED_FIELDS.items():
        source = getattr(incoming, name)
        if hasattr(source, "model_dump"):
            source = source.model_dump()
        data[name] = fill_mapping(data.get(name) or {}, source, keys)

    for name in COLLECTION_FIELDS:
        data[name] = union_strings(data.get(name) or [], getattr(incoming, name))

    data["images"] = union_images(list(existing.images), incoming.images)

    if incoming.pricing:
        platform = _pricing_platform(existing, incoming)
        if platform:
            pricing = dict(data.get("pricing") or {})
            pricing[platform] = fill_mapping(pricing.get(platform) or {}, incoming.pricing)
            data["pricing"] = pricing

    # Unknown scraper keys are kept too, under the same fill-only rule.
    for key, value in (incoming.model_extra or {}).items():
        if key not in STORED_FIELD_KEYS and is_empty(data.get(key)) and not is_empty(value):
            data[key] = value

    data["first_scraped_at"] = existing.first_scraped_at or existing.scraped_at or now
    data["scraped_at"] = now
    data["last_updated_at"] = now
    data["update_count"] = existing.update_count + 1
    data["update_history"] = [*data.get("update_history", []), {"date": now}]

    merged = StoredListing.model_validate(data)
    logger.debug(
        "listing_merged",
        listing_id=merged.id,
        new_images=len(merged.images) - len(existing.images),
        new_amenities=len(merged.amenities) - len(existing.amenities),
        update_count=merged.update_count,
    )
    return merged


def listing_from_scrape(
    scraped: ScrapedListing,
    *,
    listing_id: str,
    folder: str,
    now: datetime | None = None,
) -> StoredListing:
    """Build the first stored version of a single-platform listing."""
    now = now or utc_now()
    platform = scraped.platform or detect_platform(scraped.source_url) or Platform.AIRBNB

    data = scraped.model_dump(exclude={"platform", "id", "pricing"}, exclude_none=True)
    for key in STORED_FIELD_KEYS.intersection(scraped.model_extra or {}):
        data.pop(key, None)
    data.update(
        id=listing_id,
        folder=folder,
        platform=platform,
        platforms=[platform],
        scraped_at=scraped.scraped_at or now,
        first_scraped_at=scraped.scraped_at or now,
        update_count=0,
        update_history=[],
    )
    if scraped.pricing:
        data["pricing"] = {Platform(platform).value: dict(scraped.pricing)}
    return StoredListing.model_validate(data)
