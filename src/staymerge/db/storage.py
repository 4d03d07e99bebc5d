"""Filesystem storage: one folder per listing under the downloads root.

Layout::

    <downloads>/<folder>/metadata.json      camelCase listing record
    <downloads>/<folder>/metadata.json.bak  pre-refresh backup (transient)
    <downloads>/<folder>/description.txt    plain-text description
    <downloads>/<folder>/images/            image files
"""

import asyncio
import json
import os
import re
import shutil
import uuid
from pathlib import Path
from typing import Final

from pydantic import ValidationError

from staymerge.errors import InvalidInput, ListingNotFound, PersistenceFailure
from staymerge.logging import get_logger
from staymerge.models import Platform, StoredListing
from staymerge.utils.image_files import IMAGES_SUBDIR
from staymerge.utils.url import normalize_url

logger = get_logger(__name__)

METADATA_FILE: Final = "metadata.json"
BACKUP_FILE: Final = "metadata.json.bak"
DESCRIPTION_FILE: Final = "description.txt"


def safe_dir_name(value: str) -> str:
    """Convert an id to a filesystem-safe directory name.

    E.g. "airbnb:12345" -> "airbnb_12345"
    """
    return re.sub(r"[^a-zA-Z0-9_-]", "_", value)


def newest_first_key(listing: StoredListing) -> float:
    return listing.scraped_at.timestamp() if listing.scraped_at else float("-inf")


class ListingStore:
    """Folder-per-listing repository.

    Every filesystem call runs in a worker thread. The store does no locking
    of its own; the listing service serializes mutations per listing.
    """

    def __init__(self, downloads_root: Path | str) -> None:
        """Initialize storage.

        Args:
            downloads_root: Directory holding the listing folders. Created if missing.
        """
        self.root = Path(downloads_root)
        self.root.mkdir(parents=True, exist_ok=True)

    # -- paths ---------------------------------------------------------------

    def folder_path(self, folder: str) -> Path:
        """Absolute path of a listing folder.

        Raises:
            InvalidInput: If ``folder`` is empty or resolves outside the root.
        """
        if not folder:
            raise InvalidInput("Empty listing folder")
        root = self.root.resolve()
        path = (root / folder).resolve()
        if path == root or path.parent != root:
            raise InvalidInput(f"Listing folder escapes the downloads root: {folder}")
        return path

    # -- reads ---------------------------------------------------------------

    def _read(self, folder_dir: Path) -> StoredListing | None:
        meta_path = folder_dir / METADATA_FILE
        if not meta_path.is_file():
            return None
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
            if isinstance(data, dict) and not data.get("folder"):
                data["folder"] = folder_dir.name
            return StoredListing.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(
                "listing_metadata_unreadable",
                folder=folder_dir.name,
                error=str(e).splitlines()[0] if str(e) else type(e).__name__,
            )
            return None

    def _scan(self) -> list[StoredListing]:
        if not self.root.is_dir():
            return []
        listings = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir():
                continue
            listing = self._read(entry)
            if listing is not None:
                listings.append(listing)
        return listings

    async def list_all(self) -> list[StoredListing]:
        """All readable listings, newest ``scraped_at`` first.

        Folders whose metadata cannot be parsed are logged and skipped.
        """
        listings = await asyncio.to_thread(self._scan)
        return sorted(listings, key=newest_first_key, reverse=True)

    def _find_by_id(self, listing_id: str) -> StoredListing | None:
        # Most folders are named after their id; try that before a full scan.
        try:
            direct = self._read(self.folder_path(safe_dir_name(listing_id)))
        except InvalidInput:
            direct = None
        if direct is not None and direct.id == listing_id:
            return direct
        for listing in self._scan():
            if listing.id == listing_id:
                return listing
        return None

    async def find_by_id(self, listing_id: str) -> StoredListing | None:
        if not listing_id:
            return None
        return await asyncio.to_thread(self._find_by_id, listing_id)

    async def load(self, listing_id: str) -> StoredListing:
        """Load a listing by id.

        Raises:
            ListingNotFound: If no readable record has this id.
        """
        listing = await self.find_by_id(listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        return listing

    async def find_by_source_url(self, key: str) -> StoredListing | None:
        """Find the listing whose normalized source URL is ``key``.

        A single-platform listing scraped from that URL wins over a unified
        listing that lists it among its sources.
        """
        listings = await asyncio.to_thread(self._scan)
        for listing in listings:
            if not listing.is_unified and normalize_url(listing.source_url) == key:
                return listing
        for listing in listings:
            if not listing.is_unified:
                continue
            urls = [listing.source_url, *(s.url for s in listing.sources.values())]
            if any(url and normalize_url(url) == key for url in urls):
                return listing
        return None

    # -- writes --------------------------------------------------------------

    def _write(self, listing: StoredListing) -> None:
        folder_dir = self.folder_path(listing.folder)
        (folder_dir / IMAGES_SUBDIR).mkdir(parents=True, exist_ok=True)

        meta_path = folder_dir / METADATA_FILE
        tmp_path = folder_dir / f".{METADATA_FILE}.tmp"
        payload = json.dumps(listing.to_metadata(), indent=2, ensure_ascii=False)
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, meta_path)

        (folder_dir / DESCRIPTION_FILE).write_text(listing.description, encoding="utf-8")

    async def save(self, listing: StoredListing) -> None:
        """Write ``metadata.json`` atomically, then ``description.txt``.

        Raises:
            PersistenceFailure: If the record cannot be written.
        """
        try:
            await asyncio.to_thread(self._write, listing)
        except OSError as e:
            logger.error("listing_save_failed", listing_id=listing.id, error=str(e))
            raise PersistenceFailure(f"Failed to save listing {listing.id}: {e}") from e
        logger.debug("listing_saved", listing_id=listing.id, folder=listing.folder)

    async def delete(self, listing: StoredListing) -> None:
        """Remove a listing's folder and everything in it."""
        folder_dir = self.folder_path(listing.folder)
        try:
            await asyncio.to_thread(shutil.rmtree, folder_dir)
        except FileNotFoundError:
            logger.debug("listing_folder_already_gone", folder=listing.folder)
        except OSError as e:
            raise PersistenceFailure(f"Failed to delete listing {listing.id}: {e}") from e
        logger.info("listing_deleted", listing_id=listing.id, folder=listing.folder)

    async def backup(self, listing: StoredListing) -> bool:
        """Copy ``metadata.json`` aside. Returns False if there was nothing to copy."""
        folder_dir = self.folder_path(listing.folder)
        meta_path = folder_dir / METADATA_FILE
        if not meta_path.is_file():
            return False
        try:
            await asyncio.to_thread(shutil.copy2, meta_path, folder_dir / BACKUP_FILE)
        except OSError as e:
            raise PersistenceFailure(f"Failed to back up listing {listing.id}: {e}") from e
        return True

    async def restore(self, listing: StoredListing) -> bool:
        """Put the backup back in place of ``metadata.json``. Returns True if restored."""
        folder_dir = self.folder_path(listing.folder)
        backup_path = folder_dir / BACKUP_FILE
        if not backup_path.is_file():
            return False
        try:
            await asyncio.to_thread(os.replace, backup_path, folder_dir / METADATA_FILE)
        except OSError as e:
            raise PersistenceFailure(f"Failed to restore listing {listing.id}: {e}") from e
        logger.warning("listing_backup_restored", listing_id=listing.id)
        return True

    async def discard_backup(self, listing: StoredListing) -> None:
        backup_path = self.folder_path(listing.folder) / BACKUP_FILE
        await asyncio.to_thread(backup_path.unlink, True)

    async def allocate(self, platform: Platform, external_id: str | None = None) -> str:
        """Reserve an id (also used as folder name) by creating its folder.

        Single-platform listings are named ``{platform}_{external_id}`` when
        the scraper reported an id; otherwise, and for unified listings, a
        random 8-hex-digit suffix is used. Creating the folder is the
        reservation, so two concurrent callers never get the same id.

        Raises:
            PersistenceFailure: If the downloads root is not writable.
        """

        def _reserve(candidate: str) -> bool:
            try:
                (self.root / candidate).mkdir()
            except FileExistsError:
                return False
            return True

        def _allocate() -> str:
            self.root.mkdir(parents=True, exist_ok=True)
            if external_id and platform != Platform.UNIFIED:
                candidate = safe_dir_name(f"{platform.value}_{external_id}")
                if _reserve(candidate):
                    return candidate
            while True:
                candidate = f"{platform.value}_{uuid.uuid4().hex[:8]}"
                if _reserve(candidate):
                    return candidate

        try:
            listing_id = await asyncio.to_thread(_allocate)
        except OSError as e:
            raise PersistenceFailure(
                f"Failed to reserve a {platform.value} listing folder: {e}"
            ) from e
        logger.debug("listing_id_reserved", listing_id=listing_id)
        return listing_id
