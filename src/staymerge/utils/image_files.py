"""Image file handling for listing folders.

Resolves the ``local`` paths stored in listing records to files on disk
(refusing anything that escapes its root), and imports images into a
listing's own ``images/`` directory by copying or downloading them.
"""

import asyncio
import hashlib
import shutil
from pathlib import Path
from typing import Final

import httpx

from staymerge.errors import InvalidInput, PartialIO
from staymerge.logging import get_logger
from staymerge.models import ListingImage

logger = get_logger(__name__)

DOWNLOADS_URL_PREFIX: Final = "/downloads/"
IMAGES_SUBDIR: Final = "images"

# Responses smaller than this are error pages or tracking pixels, not photos.
MIN_IMAGE_BYTES: Final = 1000

_REJECTED_EXTENSIONS: Final = (".pdf", ".svg", ".html", ".js", ".css", ".json", ".xml")
_KNOWN_EXTENSIONS: Final = (".png", ".webp", ".gif", ".jpeg", ".jpg")

_USER_AGENT: Final = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def is_valid_image_url(url: str) -> bool:
    """Reject known non-image extensions. Extension-less CDN URLs pass."""
    path = url.split("?")[0].lower()
    return not path.endswith(_REJECTED_EXTENSIONS)


def listing_image_local(folder: str, filename: str) -> str:
    """Public path under which a listing's image is served."""
    return f"{DOWNLOADS_URL_PREFIX}{folder}/{IMAGES_SUBDIR}/{filename}"


def image_filename(key: str, index: int, ext: str = "jpg") -> str:
    """Deterministic filename for an image, e.g. ``image_003_a1b2c3d4.jpg``."""
    key_hash = hashlib.md5(key.encode()).hexdigest()[:8]
    return f"image_{index:03d}_{key_hash}.{ext.lstrip('.') or 'jpg'}"


def guess_extension(name: str, content_type: str | None = None) -> str:
    """Guess a file extension from a content type or a path/URL."""
    if content_type:
        if "png" in content_type:
            return "png"
        if "webp" in content_type:
            return "webp"
        if "gif" in content_type:
            return "gif"
        return "jpg"
    path = name.split("?")[0].lower()
    for candidate in _KNOWN_EXTENSIONS:
        if path.endswith(candidate):
            return candidate.lstrip(".")
    return "jpg"


class ImagePathResolver:
    """Map stored ``local`` image paths to files under the allowed roots.

    Paths starting with ``/downloads/`` or ``downloads/`` live under the
    listing store root; every other path is relative to the static-assets
    root. A path that resolves outside its root is rejected.
    """

    def __init__(self, downloads_root: Path, public_root: Path) -> None:
        self.downloads_root = Path(downloads_root)
        self.public_root = Path(public_root)

    def resolve(self, local: str) -> Path:
        """Resolve a stored image path to an absolute filesystem path.

        Raises:
            InvalidInput: If the path is empty or escapes its root.
        """
        if not local:
            raise InvalidInput("Empty image path")

        if local.startswith(DOWNLOADS_URL_PREFIX) or local.startswith("downloads/"):
            root = self.downloads_root
            relative = local.lstrip("/").removeprefix("downloads/")
        else:
            root = self.public_root
            relative = local.lstrip("/")

        root_resolved = root.resolve()
        candidate = (root_resolved / relative).resolve()
        if candidate == root_resolved or not candidate.is_relative_to(root_resolved):
            raise InvalidInput(f"Image path escapes its root: {local}")
        return candidate

    def images_dir(self, folder: str) -> Path:
        """Directory holding a listing's image files."""
        return self.resolve(f"{DOWNLOADS_URL_PREFIX}{folder}/{IMAGES_SUBDIR}")

    def delete(self, local: str) -> bool:
        """Delete an image file referenced by a stored path. Returns True if removed."""
        path = self.resolve(local)
        if path.is_file():
            path.unlink()
            return True
        return False


def find_existing_image(images_dir: Path, key: str) -> Path | None:
    """Find a previously imported file for ``key`` regardless of its index."""
    if not images_dir.is_dir():
        return None
    key_hash = hashlib.md5(key.encode()).hexdigest()[:8]
    matches = sorted(images_dir.glob(f"image_*_{key_hash}.*"))
    return matches[0] if matches else None


def copy_image(source: Path, dest: Path) -> bool:
    """Copy ``source`` to ``dest`` unless ``dest`` already exists.

    Returns:
        True if a copy was made, False if the target already existed.

    Raises:
        PartialIO: If the source is missing or the copy fails.
    """
    if dest.exists():
        return False
    if not source.is_file():
        raise PartialIO(f"Source image not found: {source}")
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
    except OSError as e:
        raise PartialIO(f"Failed to copy {source} -> {dest}: {e}") from e
    return True


class ImageImporter:
    """Bring images referenced by a scrape into a listing's own folder."""

    def __init__(
        self,
        resolver: ImagePathResolver,
        *,
        concurrency: int = 5,
        timeout: float = 30.0,
    ) -> None:
        self.resolver = resolver
        self.concurrency = concurrency
        self.timeout = timeout

    async def import_images(
        self,
        folder: str,
        images: list[ListingImage],
        *,
        start_index: int = 0,
    ) -> list[ListingImage]:
        """Import images into ``<downloads>/<folder>/images/``.

        Images already inside the folder are kept as-is. Images with a local
        copy elsewhere are copied; images with only a source URL are
        downloaded. An image that cannot be imported is logged and left out,
        never failing the whole batch.

        Args:
            folder: Target listing folder name.
            images: Images in the order they should be referenced.
            start_index: Index of the first image, used in generated filenames.

        Returns:
            Successfully imported images, in input order.
        """
        if not images:
            return []

        images_dir = self.resolver.images_dir(folder)
        own_prefix = listing_image_local(folder, "")
        semaphore = asyncio.Semaphore(self.concurrency)

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        ) as client:

            async def import_one(index: int, image: ListingImage) -> ListingImage | None:
                async with semaphore:
                    try:
                        return await self._import_one(
                            client, folder, images_dir, own_prefix, index, image
                        )
                    except (PartialIO, InvalidInput, OSError, httpx.HTTPError) as e:
                        logger.warning(
                            "image_import_failed",
                            folder=folder,
                            original=image.original,
                            local=image.local,
                            error=str(e),
                        )
                        return None

            results = await asyncio.gather(
                *(import_one(start_index + i, img) for i, img in enumerate(images))
            )

        imported = [img for img in results if img is not None]
        logger.info(
            "images_imported",
            folder=folder,
            requested=len(images),
            imported=len(imported),
        )
        return imported

    async def _import_one(
        self,
        client: httpx.AsyncClient,
        folder: str,
        images_dir: Path,
        own_prefix: str,
        index: int,
        image: ListingImage,
    ) -> ListingImage:
        key = image.key
        if key is None:
            raise PartialIO("Image has neither an original URL nor a local path")

        if image.local and image.local.startswith(own_prefix):
            if self.resolver.resolve(image.local).is_file():
                return image
            raise PartialIO(f"Referenced image missing from listing folder: {image.local}")

        existing = await asyncio.to_thread(find_existing_image, images_dir, key)
        if existing is not None:
            return image.model_copy(update={"local": listing_image_local(folder, existing.name)})

        if image.local:
            source = self.resolver.resolve(image.local)
            filename = image_filename(key, index, guess_extension(source.name))
            await asyncio.to_thread(copy_image, source, images_dir / filename)
            return image.model_copy(update={"local": listing_image_local(folder, filename)})

        url = image.original or ""
        if url.startswith("//"):
            url = "https:" + url
        if not url.startswith(("http://", "https://")) or not is_valid_image_url(url):
            raise PartialIO(f"Not a downloadable image URL: {image.original}")

        response = await client.get(url)
        response.raise_for_status()
        data = response.content
        if len(data) < MIN_IMAGE_BYTES:
            raise PartialIO(f"Image too small ({len(data)} bytes): {url}")

        ext = guess_extension(url, response.headers.get("content-type"))
        filename = image_filename(key, index, ext)
        dest = images_dir / filename

        def _write() -> None:
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(data)

        await asyncio.to_thread(_write)
        return image.model_copy(update={"local": listing_image_local(folder, filename)})
