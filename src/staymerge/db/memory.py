"""In-memory listing repository for exercising the service without a disk."""

import uuid

from staymerge.db.storage import newest_first_key
from staymerge.errors import ListingNotFound
from staymerge.models import Platform, StoredListing
from staymerge.utils.url import normalize_url


class InMemoryListingStore:
    """Dict-backed ListingRepository. Listings are immutable, so no copying is needed."""

    def __init__(self, listings: list[StoredListing] | None = None) -> None:
        self.listings: dict[str, StoredListing] = {}
        self.backups: dict[str, StoredListing] = {}
        self.reserved: set[str] = set()
        self.save_calls = 0
        for listing in listings or []:
            self.listings[listing.id] = listing

    async def load(self, listing_id: str) -> StoredListing:
        listing = self.listings.get(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        return listing

    async def find_by_id(self, listing_id: str) -> StoredListing | None:
        return self.listings.get(listing_id)

    async def find_by_source_url(self, key: str) -> StoredListing | None:
        listings = list(self.listings.values())
        for listing in listings:
            if not listing.is_unified and normalize_url(listing.source_url) == key:
                return listing
        for listing in listings:
            urls = [listing.source_url, *(s.url for s in listing.sources.values())]
            if listing.is_unified and any(url and normalize_url(url) == key for url in urls):
                return listing
        return None

    async def list_all(self) -> list[StoredListing]:
        return sorted(
            self.listings.values(),
            key=newest_first_key,
            reverse=True,
        )

    async def save(self, listing: StoredListing) -> None:
        self.save_calls += 1
        self.listings[listing.id] = listing

    async def delete(self, listing: StoredListing) -> None:
        self.listings.pop(listing.id, None)
        self.reserved.discard(listing.id)
        self.backups.pop(listing.id, None)

    async def backup(self, listing: StoredListing) -> bool:
        current = self.listings.get(listing.id)
        if current is None:
            return False
        self.backups[listing.id] = current
        return True

    async def restore(self, listing: StoredListing) -> bool:
        backup = self.backups.pop(listing.id, None)
        if backup is None:
            return False
        self.listings[listing.id] = backup
        return True

    async def discard_backup(self, listing: StoredListing) -> None:
        self.backups.pop(listing.id, None)

    def _reserve(self, candidate: str) -> bool:
        if candidate in self.listings or candidate in self.reserved:
            return False
        self.reserved.add(candidate)
        return True

    async def allocate(self, platform: Platform, external_id: str | None = None) -> str:
        if external_id and platform != Platform.UNIFIED:
            candidate = f"{platform.value}_{external_id}"
            if self._reserve(candidate):
                return candidate
        while True:
            candidate = f"{platform.value}_{uuid.uuid4().hex[:8]}"
            if self._reserve(candidate):
                return candidate
