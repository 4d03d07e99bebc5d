"""Cross-platform unification of two stored listings into one ``unified`` listing."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any

from staymerge.errors import InvalidInput, PartialIO
from staymerge.filters.merge import PROTECTED_FIELDS, fill_mapping, is_empty, union_strings
from staymerge.filters.similarity import ImageSimilarityEngine
from staymerge.logging import get_logger
from staymerge.models import (
    ListingImage,
    Platform,
    SimilarityStrategy,
    SourceRef,
    StoredListing,
    UnifyEdits,
    utc_now,
)
from staymerge.utils.image_files import (
    DOWNLOADS_URL_PREFIX,
    ImagePathResolver,
    copy_image,
    listing_image_local,
)

logger = get_logger(__name__)

DEFAULT_UNIFIED_TITLE = "Merged Listing"


def _source_ref(listing: StoredListing) -> SourceRef:
    return SourceRef(id=listing.id, url=listing.source_url, title=listing.title)


def merge_sources(left: StoredListing, right: StoredListing) -> dict[str, SourceRef]:
    """Provenance of a unification: every single-platform contributor, by platform.

    Sources already recorded on a unified side are kept; a later contribution
    for the same platform replaces an earlier one.
    """
    sources = dict(left.sources)
    if not left.is_unified:
        sources[left.platform.value] = _source_ref(left)
    if right.is_unified:
        sources.update(right.sources)
    else:
        sources[right.platform.value] = _source_ref(right)
    return sources


def merge_pricing(*listings: StoredListing) -> dict[str, Any]:
    """Platform-keyed pricing; the first listing to supply a platform wins."""
    pricing: dict[str, Any] = {}
    for listing in listings:
        for platform, value in listing.pricing.items():
            pricing.setdefault(platform, value)
    return pricing


def _earliest(*values: datetime | None) -> datetime | None:
    present = [v for v in values if v is not None]
    return min(present) if present else None


def _folder_of(local: str) -> str | None:
    """Listing folder of a ``/downloads/{folder}/...`` path."""
    if not local.startswith(DOWNLOADS_URL_PREFIX):
        return None
    parts = PurePosixPath(local.removeprefix(DOWNLOADS_URL_PREFIX)).parts
    return parts[0] if parts else None


class Unifier:
    """Build unified listings from pairs of stored listings.

    The unifier copies image files into the unified listing's folder but does
    not persist the record and never deletes the source listings.
    """

    def __init__(
        self,
        engine: ImageSimilarityEngine,
        resolver: ImagePathResolver,
        allocate_id: Callable[[], Awaitable[str]],
    ) -> None:
        self.engine = engine
        self.resolver = resolver
        self.allocate_id = allocate_id

    async def unify(
        self,
        left: StoredListing,
        right: StoredListing,
        edits: UnifyEdits,
        *,
        now: datetime | None = None,
    ) -> StoredListing:
        """Combine ``left`` and ``right`` into a unified listing.

        When ``left`` is already unified it is updated in place (same id and
        folder, history kept); otherwise a new ``unified_*`` listing is made.

        Args:
            left: Primary listing; its values win where both sides have one.
            right: Listing being absorbed.
            edits: Caller-reviewed content. ``images`` is the full image list
                for the result; list fields left as None fall back to the
                union of both sides.
            now: Timestamp, injectable for tests.

        Returns:
            The unified record, not yet saved.
        """
        now = now or utc_now()
        updating = left.is_unified

        if updating:
            data = left.model_dump()
            listing_id, folder = left.id, left.folder
        else:
            listing_id = await self.allocate_id()
            folder = listing_id
            data = {}

        platforms = list(
            dict.fromkeys([*left.contributing_platforms, *right.contributing_platforms])
        )

        for name in PROTECTED_FIELDS:
            left_value, right_value = getattr(left, name), getattr(right, name)
            data[name] = right_value if is_empty(left_value) else left_value

        data["title"] = edits.title or left.title or right.title or DEFAULT_UNIFIED_TITLE
        data["description"] = (
            edits.description
            if edits.description is not None
            else left.description or right.description
        )

        for name in ("amenities", "house_rules", "highlights", "safety_items"):
            supplied = getattr(edits, name)
            data[name] = (
                supplied
                if supplied is not None
                else union_strings(getattr(left, name), getattr(right, name))
            )

        data["location"] = fill_mapping(left.location.model_dump(), right.location.model_dump())
        data["host"] = fill_mapping(left.host, right.host)
        data["pricing"] = merge_pricing(left, right)
        data["sources"] = merge_sources(left, right)
        data["images"] = await self._collect_images(folder, edits.images)

        data.update(
            id=listing_id,
            folder=folder,
            platform=Platform.UNIFIED,
            platforms=platforms,
            merged_at=now,
        )
        if updating:
            data["first_scraped_at"] = left.first_scraped_at or left.scraped_at
            data["scraped_at"] = left.scraped_at or now
            data["last_updated_at"] = now
        else:
            data["first_scraped_at"] = (
                _earliest(
                    left.first_scraped_at or left.scraped_at,
                    right.first_scraped_at or right.scraped_at,
                )
                or now
            )
            data["scraped_at"] = now

        unified = StoredListing.model_validate(data)
        logger.info(
            "listings_unified",
            listing_id=unified.id,
            left=left.id,
            right=right.id,
            updated=updating,
            platforms=[p.value for p in unified.platforms],
            images=len(unified.images),
        )
        return unified

    async def _collect_images(self, folder: str, images: list[ListingImage]) -> list[ListingImage]:
        """Dedupe the chosen images, then copy each into the unified folder."""
        if not images:
            return []
        result = await self.engine.dedupe(images, strategy=SimilarityStrategy.HASH)
        if result.removed:
            logger.info(
                "unify_images_deduplicated",
                folder=folder,
                kept=len(result.unique),
                removed=len(result.removed),
            )

        collected: list[ListingImage] = []
        for image in result.unique:
            if not image.local:
                logger.debug("unify_image_without_local_skipped", original=image.original)
                continue
            try:
                collected.append(await self._copy_into(folder, image))
            except (PartialIO, InvalidInput) as e:
                logger.warning(
                    "image_copy_failed",
                    folder=folder,
                    local=image.local,
                    error=str(e),
                )
        return collected

    async def _copy_into(self, folder: str, image: ListingImage) -> ListingImage:
        local = image.local or ""
        source_folder = _folder_of(local)
        if source_folder == folder:
            return image

        basename = PurePosixPath(local).name
        filename = f"{source_folder}_{basename}" if source_folder else basename
        source = self.resolver.resolve(local)
        dest = self.resolver.images_dir(folder) / filename
        await asyncio.to_thread(copy_image, source, dest)
        return image.model_copy(update={"local": listing_image_local(folder, filename)})
