"""Listing repository interface shared by the filesystem and in-memory stores."""

from typing import Protocol

from staymerge.models import Platform, StoredListing


class ListingRepository(Protocol):
    """Persistence operations the listing service depends on.

    None of these take listing locks; callers hold the lock for every
    listing they mutate.
    """

    async def load(self, listing_id: str) -> StoredListing: ...

    async def find_by_id(self, listing_id: str) -> StoredListing | None: ...

    async def find_by_source_url(self, key: str) -> StoredListing | None: ...

    async def list_all(self) -> list[StoredListing]: ...

    async def save(self, listing: StoredListing) -> None: ...

    async def delete(self, listing: StoredListing) -> None: ...

    async def backup(self, listing: StoredListing) -> bool: ...

    async def restore(self, listing: StoredListing) -> bool: ...

    async def discard_backup(self, listing: StoredListing) -> None: ...

    async def allocate(self, platform: Platform, external_id: str | None = None) -> str: ...
