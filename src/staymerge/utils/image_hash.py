"""Image fingerprint backends and perceptual hashing.

A backend turns an image file into a fingerprint and says how close two
fingerprints are. The perceptual-hash backend here is always available;
the embedding backend lives in ``staymerge.utils.embeddings``.
"""

import asyncio
import io
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, ClassVar, Final, TypeAlias

import imagehash
from PIL import Image

from staymerge.logging import get_logger
from staymerge.models import SimilarityStrategy

logger = get_logger(__name__)

# Limit decompression bomb threshold for untrusted image bytes.
# Default Pillow limit is ~178M pixels; 50M is generous for listing photos.
Image.MAX_IMAGE_PIXELS = 50_000_000

# Hamming distance threshold for considering two 64-bit pHashes the same photo.
HASH_DISTANCE_THRESHOLD: Final = 5

# pHash side length; 8 gives a 64-bit hash (16 hex chars).
HASH_SIZE: Final = 8

# File prefixes/content markers for SVGs (can't be perceptually hashed)
_SVG_EXTENSIONS = (".svg",)
_SVG_CONTENT_PREFIXES = (b"<?xml", b"<svg")

# A hex hash string (hash strategy) or a numpy vector (embedding strategy).
Fingerprint: TypeAlias = Any


class FingerprintBackend(ABC):
    """Computes image fingerprints and scores pairs of them."""

    strategy: ClassVar[SimilarityStrategy]
    # True when a larger score means "more alike" (similarity, not distance).
    higher_is_closer: ClassVar[bool]

    default_threshold: float
    max_images: int | None = None

    async def ensure_ready(self) -> None:
        """Raise CapabilityUnavailable if the backend cannot fingerprint."""
        return None

    @abstractmethod
    async def fingerprint(self, path: Path) -> Fingerprint | None:
        """Fingerprint an image file, or None if it cannot be read. Never raises."""

    @abstractmethod
    def score(self, a: Fingerprint, b: Fingerprint) -> float:
        """Distance or similarity between two fingerprints."""

    def is_match(self, score: float, threshold: float) -> bool:
        """Whether a score crosses the duplicate threshold."""
        if self.higher_is_closer:
            return score >= threshold
        return score <= threshold


def hamming_distance(hash1: str | None, hash2: str | None) -> int | None:
    """Number of differing bits between two hex hashes.

    Returns:
        The distance, or None if either hash is missing, malformed, or the
        two hashes have different lengths.
    """
    if not hash1 or not hash2 or len(hash1) != len(hash2):
        return None
    try:
        h1 = imagehash.hex_to_hash(hash1)
        h2 = imagehash.hex_to_hash(hash2)
        return int(h1 - h2)
    except (ValueError, TypeError):
        logger.debug("hash_comparison_failed", hash1=hash1, hash2=hash2, exc_info=True)
        return None


def hashes_match(
    hash1: str | None, hash2: str | None, threshold: int = HASH_DISTANCE_THRESHOLD
) -> bool:
    """Check if two image hashes are similar enough to be the same image."""
    distance = hamming_distance(hash1, hash2)
    return distance is not None and distance <= threshold


def hash_from_disk(path: Path, hash_size: int = HASH_SIZE) -> str | None:
    """Read an image file from disk and compute its perceptual hash.

    Skips SVGs (by extension and content prefix). Returns None on any error.

    Args:
        path: Path to the image file.
        hash_size: pHash side length.

    Returns:
        Hex string of perceptual hash, or None if failed/skipped.
    """
    try:
        if path.suffix.lower() in _SVG_EXTENSIONS:
            return None

        data = path.read_bytes()
        if not data:
            return None

        # Check for SVG content even if extension doesn't say so
        # Use 64 bytes to handle BOM (\xef\xbb\xbf) or leading whitespace
        content_start = data[:64].lstrip()
        if content_start.startswith(_SVG_CONTENT_PREFIXES):
            return None

        image = Image.open(io.BytesIO(data))
        return str(imagehash.phash(image, hash_size=hash_size))
    except Exception as e:
        logger.debug("hash_from_disk_failed", path=str(path), error=str(e))
        return None


class HashBackend(FingerprintBackend):
    """pHash fingerprints compared by Hamming distance."""

    strategy = SimilarityStrategy.HASH
    higher_is_closer = False

    def __init__(
        self, *, threshold: int = HASH_DISTANCE_THRESHOLD, hash_size: int = HASH_SIZE
    ) -> None:
        self.default_threshold = threshold
        self.hash_size = hash_size

    async def fingerprint(self, path: Path) -> str | None:
        return await asyncio.to_thread(hash_from_disk, path, self.hash_size)

    def score(self, a: str, b: str) -> float:
        distance = hamming_distance(a, b)
        return math.inf if distance is None else float(distance)
