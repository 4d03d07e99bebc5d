"""Listing persistence: folder-per-listing store and its in-memory twin."""

from staymerge.db.memory import InMemoryListingStore
from staymerge.db.repository import ListingRepository
from staymerge.db.storage import ListingStore

__all__ = ["InMemoryListingStore", "ListingRepository", "ListingStore"]
