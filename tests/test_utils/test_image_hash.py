"""Tests for perceptual hashing and the hash fingerprint backend."""

import math
from collections.abc import Callable
from pathlib import Path

import imagehash
import pytest

from staymerge.models import SimilarityStrategy
from staymerge.utils.image_hash import (
    HASH_DISTANCE_THRESHOLD,
    HashBackend,
    hamming_distance,
    hash_from_disk,
    hashes_match,
)


def _flip_bits(n: int) -> str:
    """64-bit hex hash with the lowest ``n`` bits set (distance ``n`` from zero)."""
    return f"{(1 << n) - 1:016x}"


ZERO = "0000000000000000"


class TestHammingDistance:
    def test_identical(self) -> None:
        assert hamming_distance(ZERO, ZERO) == 0

    def test_counts_differing_bits(self) -> None:
        assert hamming_distance(ZERO, _flip_bits(3)) == 3
        assert hamming_distance(ZERO, "ffffffffffffffff") == 64

    def test_missing_hash(self) -> None:
        assert hamming_distance(None, ZERO) is None
        assert hamming_distance(ZERO, "") is None

    def test_different_lengths_never_compare(self) -> None:
        assert hamming_distance(ZERO, "0" * 64) is None

    def test_malformed_hash(self) -> None:
        assert hamming_distance("zzzzzzzzzzzzzzzz", ZERO) is None


class TestHashesMatch:
    """Tests for hashes_match function."""

    def test_identical_hashes_match(self) -> None:
        h = str(imagehash.hex_to_hash("a" * 16))
        assert hashes_match(h, h)

    def test_none_inputs_do_not_match(self) -> None:
        assert not hashes_match(None, None)
        assert not hashes_match("a" * 16, None)

    def test_distance_3_matches_at_threshold_5(self) -> None:
        assert hashes_match(ZERO, _flip_bits(3), threshold=5)

    def test_distance_6_does_not_match_at_threshold_5(self) -> None:
        assert not hashes_match(ZERO, _flip_bits(6), threshold=5)

    def test_hashes_at_exact_threshold(self) -> None:
        assert hashes_match(ZERO, _flip_bits(HASH_DISTANCE_THRESHOLD))

    def test_hashes_one_beyond_threshold(self) -> None:
        assert not hashes_match(ZERO, _flip_bits(HASH_DISTANCE_THRESHOLD + 1))


class TestHashFromDisk:
    def test_hashes_image(self, tmp_path: Path, write_image: Callable[[Path, int], Path]) -> None:
        path = write_image(tmp_path / "a.png", 1)
        result = hash_from_disk(path)
        assert result is not None
        assert len(result) == 16

    def test_same_image_same_hash(
        self, tmp_path: Path, write_image: Callable[[Path, int], Path]
    ) -> None:
        a = write_image(tmp_path / "a.png", 7)
        b = write_image(tmp_path / "b.png", 7)
        assert hash_from_disk(a) == hash_from_disk(b)

    def test_unrelated_images_far_apart(
        self, tmp_path: Path, write_image: Callable[[Path, int], Path]
    ) -> None:
        a = hash_from_disk(write_image(tmp_path / "a.png", 1))
        b = hash_from_disk(write_image(tmp_path / "b.png", 2))
        distance = hamming_distance(a, b)
        assert distance is not None
        assert distance > HASH_DISTANCE_THRESHOLD

    def test_svg_skipped_by_extension(self, tmp_path: Path) -> None:
        path = tmp_path / "logo.svg"
        path.write_text("<svg></svg>")
        assert hash_from_disk(path) is None

    def test_svg_skipped_by_content(self, tmp_path: Path) -> None:
        path = tmp_path / "logo.jpg"
        path.write_bytes(b"\xef\xbb\xbf  <?xml version='1.0'?><svg></svg>")
        assert hash_from_disk(path) is None

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.jpg"
        path.write_bytes(b"")
        assert hash_from_disk(path) is None

    def test_missing_file(self, tmp_path: Path) -> None:
        assert hash_from_disk(tmp_path / "nope.jpg") is None

    def test_corrupt_file(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.jpg"
        path.write_bytes(b"not an image at all" * 100)
        assert hash_from_disk(path) is None


class TestHashBackend:
    def test_declares_distance_semantics(self) -> None:
        backend = HashBackend()
        assert backend.strategy is SimilarityStrategy.HASH
        assert backend.higher_is_closer is False
        assert backend.default_threshold == HASH_DISTANCE_THRESHOLD
        assert backend.max_images is None

    def test_score_and_match(self) -> None:
        backend = HashBackend()
        assert backend.score(ZERO, _flip_bits(4)) == 4.0
        assert backend.is_match(4.0, 5)
        assert not backend.is_match(6.0, 5)

    def test_incomparable_hashes_score_infinite(self) -> None:
        backend = HashBackend()
        assert math.isinf(backend.score(ZERO, "0" * 64))
        assert not backend.is_match(backend.score(ZERO, "0" * 64), 64)

    @pytest.mark.asyncio
    async def test_fingerprint(
        self, tmp_path: Path, write_image: Callable[[Path, int], Path]
    ) -> None:
        path = write_image(tmp_path / "a.png", 3)
        backend = HashBackend()
        await backend.ensure_ready()
        assert await backend.fingerprint(path) == hash_from_disk(path)

    @pytest.mark.asyncio
    async def test_fingerprint_unreadable_is_none(self, tmp_path: Path) -> None:
        assert await HashBackend().fingerprint(tmp_path / "missing.png") is None
