"""Listing service: every store mutation, each under the listing's lock."""

from __future__ import annotations

import functools
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from staymerge.config import Settings
from staymerge.db import ListingRepository, ListingStore
from staymerge.errors import CapabilityUnavailable, InvalidInput
from staymerge.filters import (
    ImageSimilarityEngine,
    Unifier,
    listing_from_scrape,
    merge_additive,
    new_images,
)
from staymerge.logging import get_logger
from staymerge.models import (
    DedupeResult,
    ListingEdits,
    ListingImage,
    Platform,
    ScrapedListing,
    SimilarityReport,
    SimilarityStrategy,
    StoredListing,
    UnifyEdits,
    utc_now,
)
from staymerge.scrapers import BaseScraper
from staymerge.utils.embeddings import EmbeddingBackend, default_loader
from staymerge.utils.image_files import ImageImporter, ImagePathResolver, listing_image_local
from staymerge.utils.image_hash import HashBackend
from staymerge.utils.locks import ListingLockManager
from staymerge.utils.url import detect_platform, is_valid_listing_url, normalize_url

logger = get_logger(__name__)

# Prefix separating identity-key locks from listing-id locks.
URL_LOCK_PREFIX = "url:"


@dataclass(frozen=True)
class IngestResult:
    """Outcome of folding one scrape into the store."""

    listing: StoredListing
    created: bool
    new_images: int


class ListingService:
    """Coordinates the store, the lock manager and the merge engines.

    The store does no locking; every method here that mutates a listing holds
    that listing's lock for the whole read-modify-write.
    """

    def __init__(
        self,
        store: ListingRepository,
        locks: ListingLockManager,
        engine: ImageSimilarityEngine,
        importer: ImageImporter,
        resolver: ImagePathResolver,
        *,
        scrapers: Mapping[Platform, BaseScraper] | None = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.engine = engine
        self.importer = importer
        self.resolver = resolver
        self.scrapers = dict(scrapers or {})
        self.unifier = Unifier(
            engine, resolver, functools.partial(store.allocate, Platform.UNIFIED)
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        scrapers: Mapping[Platform, BaseScraper] | None = None,
        store: ListingRepository | None = None,
    ) -> ListingService:
        """Wire up the filesystem store and engines from settings."""
        resolver = ImagePathResolver(settings.downloads_path, settings.public_path)
        loader = (
            default_loader(settings.embedding_model_path) if settings.enable_embeddings else None
        )
        engine = ImageSimilarityEngine(
            resolver,
            {
                SimilarityStrategy.HASH: HashBackend(threshold=settings.hash_distance_threshold),
                SimilarityStrategy.EMBEDDING: EmbeddingBackend(
                    loader,
                    enabled=settings.enable_embeddings,
                    threshold=settings.embedding_similarity_threshold,
                    max_images=settings.embedding_max_images,
                ),
            },
        )
        locks = ListingLockManager(
            timeout=settings.lock_timeout_seconds,
            poll_interval=settings.lock_poll_interval_seconds,
            sweep_interval=settings.lock_sweep_interval_seconds,
            stale_after=settings.stale_lock_after,
        )
        importer = ImageImporter(
            resolver,
            concurrency=settings.image_download_concurrency,
            timeout=settings.image_download_timeout,
        )
        return cls(
            store or ListingStore(settings.downloads_path),
            locks,
            engine,
            importer,
            resolver,
            scrapers=scrapers,
        )

    def start(self) -> None:
        self.locks.start()

    async def close(self) -> None:
        await self.locks.stop()
        for scraper in self.scrapers.values():
            await scraper.close()

    # -- reads ---------------------------------------------------------------

    async def find_by_id(self, listing_id: str) -> StoredListing | None:
        return await self.store.find_by_id(listing_id)

    async def get(self, listing_id: str) -> StoredListing:
        """Load a listing, raising ListingNotFound if it does not exist."""
        return await self.store.load(listing_id)

    async def list_listings(self) -> list[StoredListing]:
        return await self.store.list_all()

    # -- ingest / refresh ----------------------------------------------------

    async def ingest(
        self, scraped: ScrapedListing, *, dedupe_images: bool = False
    ) -> IngestResult:
        """Store a scrape: merge into the listing scraped from the same URL, or create one.

        The normalized source URL is locked for the whole operation so two
        concurrent scrapes of the same page cannot both create a listing.

        Args:
            scraped: Scraper output.
            dedupe_images: Drop newly added images that are perceptual
                duplicates of images the listing already has.

        Raises:
            InvalidInput: If the scrape has no usable source URL or platform.
            LockTimeout: If the listing is busy.
        """
        if not is_valid_listing_url(scraped.source_url):
            raise InvalidInput(f"Invalid listing URL: {scraped.source_url!r}")
        url = scraped.source_url or ""
        platform = scraped.platform or detect_platform(url)
        if platform is None or platform == Platform.UNIFIED:
            raise InvalidInput(f"Cannot tell which platform {url!r} belongs to")
        scraped = scraped.model_copy(update={"platform": platform})

        key = normalize_url(url)
        async with self.locks.hold(URL_LOCK_PREFIX + key):
            existing = await self.store.find_by_source_url(key)
            if existing is None:
                return await self._create(scraped, platform)
            async with self.locks.hold(existing.id):
                # Re-read under the id lock; an edit may have landed since the lookup.
                current = await self.store.load(existing.id)
                return await self._merge_into(current, scraped, dedupe_images=dedupe_images)

    async def _create(self, scraped: ScrapedListing, platform: Platform) -> IngestResult:
        listing_id = await self.store.allocate(platform, scraped.id)
        async with self.locks.hold(listing_id):
            images = await self.importer.import_images(
                listing_id, new_images([], scraped.images)
            )
            listing = listing_from_scrape(
                scraped.model_copy(update={"images": images}),
                listing_id=listing_id,
                folder=listing_id,
            )
            await self.store.save(listing)
        logger.info(
            "listing_created",
            listing_id=listing.id,
            platform=platform.value,
            images=len(listing.images),
        )
        return IngestResult(listing=listing, created=True, new_images=len(listing.images))

    async def _merge_into(
        self, existing: StoredListing, scraped: ScrapedListing, *, dedupe_images: bool
    ) -> IngestResult:
        fresh = new_images(existing.images, scraped.images)
        imported = await self.importer.import_images(
            existing.folder, fresh, start_index=len(existing.images)
        )
        if dedupe_images and imported:
            imported = await self._drop_duplicate_images(existing, imported)

        merged = merge_additive(existing, scraped.model_copy(update={"images": imported}))
        await self.store.save(merged)

        added = len(merged.images) - len(existing.images)
        logger.info(
            "listing_merged",
            listing_id=merged.id,
            new_images=added,
            total_images=len(merged.images),
            update_count=merged.update_count,
        )
        return IngestResult(listing=merged, created=False, new_images=added)

    async def _drop_duplicate_images(
        self, existing: StoredListing, imported: list[ListingImage]
    ) -> list[ListingImage]:
        """Remove imported images that look like ones the listing already has."""
        result = await self.engine.dedupe(
            [*existing.images, *imported], strategy=SimilarityStrategy.HASH
        )
        removed_keys = {img.key for img in result.removed}
        kept = [img for img in imported if img.key not in removed_keys]
        for img in imported:
            if img.key in removed_keys:
                self._delete_own_image(existing, img)
        if len(kept) < len(imported):
            logger.info(
                "duplicate_new_images_dropped",
                listing_id=existing.id,
                dropped=len(imported) - len(kept),
            )
        return kept

    async def refresh(self, listing_id: str) -> IngestResult:
        """Re-scrape a listing from its source URL and merge the result in.

        The stored metadata is backed up first and put back if anything
        fails, so a failed refresh leaves the listing as it was.

        Raises:
            ListingNotFound: If the listing does not exist.
            InvalidInput: If the listing is unified or has no source URL.
            CapabilityUnavailable: If no scraper handles its platform.
            LockTimeout: If the listing is busy.
        """
        async with self.locks.hold(listing_id):
            existing = await self.store.load(listing_id)
            if existing.is_unified:
                raise InvalidInput("Unified listings cannot be re-scraped directly")
            if not existing.source_url:
                raise InvalidInput(f"Listing {listing_id} has no source URL")
            scraper = self.scrapers.get(existing.platform)
            if scraper is None:
                raise CapabilityUnavailable(
                    f"No scraper registered for {existing.platform.display_name}"
                )

            logger.info("listing_refresh_started", listing_id=listing_id, url=existing.source_url)
            await self.store.backup(existing)
            try:
                scraped = await scraper.scrape(existing.source_url)
                if scraped.platform is None:
                    scraped = scraped.model_copy(update={"platform": existing.platform})
                result = await self._merge_into(existing, scraped, dedupe_images=False)
            except Exception:
                logger.error("listing_refresh_failed", listing_id=listing_id, exc_info=True)
                await self.store.restore(existing)
                raise
            await self.store.discard_backup(existing)
        return result

    # -- edits ---------------------------------------------------------------

    def _delete_own_image(self, listing: StoredListing, image: ListingImage) -> None:
        """Delete an image file, but only from the listing's own folder."""
        if not image.local or not image.local.startswith(listing_image_local(listing.folder, "")):
            return
        try:
            self.resolver.delete(image.local)
        except (InvalidInput, OSError) as e:
            logger.warning("image_delete_failed", local=image.local, error=str(e))

    async def edit(self, listing_id: str, edits: ListingEdits) -> StoredListing:
        """Apply a direct user edit. Images dropped from the list are deleted from disk."""
        async with self.locks.hold(listing_id):
            existing = await self.store.load(listing_id)
            data = existing.model_dump()
            updates = edits.model_dump(exclude_none=True)
            data.update(updates)

            removed: list[ListingImage] = []
            if edits.images is not None:
                kept_locals = {img.local for img in edits.images}
                removed = [img for img in existing.images if img.local not in kept_locals]

            data["edited_at"] = utc_now()
            updated = StoredListing.model_validate(data)
            await self.store.save(updated)

            for img in removed:
                self._delete_own_image(updated, img)

        logger.info(
            "listing_edited",
            listing_id=listing_id,
            fields=sorted(updates),
            images_removed=len(removed),
        )
        return updated

    async def delete(self, listing_id: str) -> None:
        async with self.locks.hold(listing_id):
            listing = await self.store.load(listing_id)
            await self.store.delete(listing)

    async def unify(
        self,
        left_id: str,
        right_id: str,
        edits: UnifyEdits,
        *,
        remove_sources: bool = False,
    ) -> StoredListing:
        """Unify two listings; both are locked for the duration.

        Args:
            left_id: Primary listing (updated in place if already unified).
            right_id: Listing being absorbed.
            edits: Caller-reviewed content for the result.
            remove_sources: Delete the absorbed single-platform listings once
                the unified record is saved.

        Raises:
            InvalidInput: If both ids are the same.
            ListingNotFound: If either listing does not exist.
        """
        if left_id == right_id:
            raise InvalidInput("Cannot unify a listing with itself")

        async with self.locks.hold(left_id, right_id):
            left = await self.store.load(left_id)
            right = await self.store.load(right_id)
            unified = await self.unifier.unify(left, right, edits)
            await self.store.save(unified)

            if remove_sources:
                for source in (left, right):
                    if source.id != unified.id and not source.is_unified:
                        await self.store.delete(source)
                        logger.info(
                            "unified_source_removed", listing_id=source.id, into=unified.id
                        )
        return unified

    # -- image similarity ----------------------------------------------------

    async def analyze_similarity(
        self,
        images: Sequence[ListingImage | str],
        threshold: float | None = None,
        strategy: SimilarityStrategy = SimilarityStrategy.HASH,
    ) -> SimilarityReport:
        return await self.engine.analyze(images, threshold, strategy)

    async def dedupe(
        self,
        images: Sequence[ListingImage | str],
        threshold: float | None = None,
        strategy: SimilarityStrategy = SimilarityStrategy.HASH,
    ) -> DedupeResult:
        return await self.engine.dedupe(images, threshold, strategy)

    async def analyze_listing(
        self,
        listing_id: str,
        threshold: float | None = None,
        strategy: SimilarityStrategy = SimilarityStrategy.HASH,
    ) -> SimilarityReport:
        listing = await self.store.load(listing_id)
        return await self.engine.analyze(listing.images, threshold, strategy)

    async def dedupe_listing(
        self,
        listing_id: str,
        threshold: float | None = None,
        strategy: SimilarityStrategy = SimilarityStrategy.HASH,
        *,
        apply: bool = False,
    ) -> DedupeResult:
        """Find duplicate images of a stored listing, optionally removing them.

        With ``apply`` the listing is saved with only the unique images and
        the removed files are deleted from its folder.
        """
        if not apply:
            listing = await self.store.load(listing_id)
            return await self.engine.dedupe(listing.images, threshold, strategy)

        async with self.locks.hold(listing_id):
            listing = await self.store.load(listing_id)
            result = await self.engine.dedupe(listing.images, threshold, strategy)
            if result.removed:
                data = listing.model_dump()
                data["images"] = [img.model_dump() for img in result.unique]
                data["edited_at"] = utc_now()
                updated = StoredListing.model_validate(data)
                await self.store.save(updated)
                for img in result.removed:
                    self._delete_own_image(updated, img)
                logger.info(
                    "listing_images_deduplicated",
                    listing_id=listing_id,
                    removed=result.removed_count,
                    remaining=len(result.unique),
                )
        return result
