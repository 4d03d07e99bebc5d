"""Tests for near-duplicate grouping and the image similarity engine."""

from collections.abc import Callable
from pathlib import Path

import numpy as np
import pytest

from staymerge.errors import CapabilityUnavailable
from staymerge.filters.similarity import ImageSimilarityEngine, group_by_canonical
from staymerge.models import ListingImage, SimilarityStrategy
from staymerge.utils.embeddings import EmbeddingBackend, ModelLoader
from staymerge.utils.image_files import ImagePathResolver
from staymerge.utils.image_hash import HashBackend, hamming_distance


class TextHashBackend(HashBackend):
    """Hash backend whose "image" files contain the hex hash itself."""

    async def fingerprint(self, path: Path) -> str | None:
        text = path.read_text().strip()
        return text or None


class FakeModel:
    def encode_file(self, path: Path) -> np.ndarray:
        return np.array([float(v) for v in path.read_text().split(",")], dtype=np.float32)


def _bits(n: int) -> str:
    return f"{(1 << n) - 1:016x}"


@pytest.fixture
def resolver(downloads_dir: Path, public_dir: Path) -> ImagePathResolver:
    return ImagePathResolver(downloads_dir, public_dir)


@pytest.fixture
def put(downloads_dir: Path) -> Callable[[str, str], str]:
    """Write ``content`` as image ``name`` of listing ``l1``; return its local path."""

    def _put(name: str, content: str) -> str:
        path = downloads_dir / "l1" / "images" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return f"/downloads/l1/images/{name}"

    return _put


@pytest.fixture
def engine(resolver: ImagePathResolver) -> ImageSimilarityEngine:
    return ImageSimilarityEngine(resolver, {SimilarityStrategy.HASH: TextHashBackend()})


class TestGroupByCanonical:
    @staticmethod
    def _group(fps: list[str | None], threshold: int = 5) -> list[tuple[int, list[int]]]:
        def score(a: str, b: str) -> float:
            distance = hamming_distance(a, b)
            return float("inf") if distance is None else float(distance)

        groups = group_by_canonical(fps, score, lambda s: s <= threshold)
        return [(g.canonical, [i for i, _ in g.duplicates]) for g in groups]

    def test_distance_3_groups_distance_6_does_not(self) -> None:
        zero = "0" * 16
        assert self._group([zero, _bits(3), _bits(6)]) == [(0, [1]), (2, [])]

    def test_first_seen_is_canonical(self) -> None:
        assert self._group([_bits(2), "0" * 16])[0] == (0, [1])

    def test_not_transitive(self) -> None:
        # B is 4 from A and C is 4 from B but 8 from A: C gets its own group.
        a = "0000000000000000"
        b = "000000000000000f"
        c = "00000000000000ff"
        assert self._group([a, b, c]) == [(0, [1]), (2, [])]

    def test_missing_fingerprints_are_singletons(self) -> None:
        zero = "0" * 16
        assert self._group([None, zero, None, zero]) == [(0, []), (1, [3]), (2, [])]

    def test_empty(self) -> None:
        assert self._group([]) == []


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_reports_groups_and_distances(
        self, engine: ImageSimilarityEngine, put: Callable[[str, str], str]
    ) -> None:
        images = [
            put("a.jpg", "0" * 16),
            put("b.jpg", _bits(6)),
            put("c.jpg", _bits(3)),
            put("d.jpg", _bits(1)),
        ]

        report = await engine.analyze(images, threshold=5)

        assert report.strategy is SimilarityStrategy.HASH
        assert report.threshold == 5
        assert report.groups == 2
        assert report.duplicates == 2
        # Canonical first, then duplicates closest first.
        assert [(i.original_index, i.group, i.is_duplicate, i.distance) for i in report.images] == [
            (0, 0, False, None),
            (3, 0, True, 1),
            (2, 0, True, 3),
            (1, 1, False, None),
        ]

    @pytest.mark.asyncio
    async def test_default_threshold(
        self, engine: ImageSimilarityEngine, put: Callable[[str, str], str]
    ) -> None:
        report = await engine.analyze([put("a.jpg", "0" * 16), put("b.jpg", _bits(5))])
        assert report.threshold == 5
        assert report.duplicates == 1

    @pytest.mark.asyncio
    async def test_plain_strings_and_missing_files(
        self, engine: ImageSimilarityEngine, put: Callable[[str, str], str]
    ) -> None:
        images: list[ListingImage | str] = [
            put("a.jpg", "0" * 16),
            "/downloads/l1/images/missing.jpg",
            ListingImage(original="https://x/remote.jpg"),
            "/downloads/../../etc/passwd",
            put("b.jpg", "0" * 16),
        ]

        report = await engine.analyze(images)

        assert report.groups == 4
        assert report.duplicates == 1
        assert report.images[0].image.local == "/downloads/l1/images/a.jpg"
        assert report.images[1].original_index == 4

    @pytest.mark.asyncio
    async def test_unavailable_strategy_fails_before_work(
        self, engine: ImageSimilarityEngine
    ) -> None:
        with pytest.raises(CapabilityUnavailable):
            await engine.analyze(
                ["/downloads/l1/images/a.jpg"], strategy=SimilarityStrategy.EMBEDDING
            )

    @pytest.mark.asyncio
    async def test_real_images(
        self,
        resolver: ImagePathResolver,
        downloads_dir: Path,
        write_image: Callable[[Path, int], Path],
    ) -> None:
        engine = ImageSimilarityEngine(resolver, {SimilarityStrategy.HASH: HashBackend()})
        write_image(downloads_dir / "l1" / "images" / "a.png", 1)
        write_image(downloads_dir / "l1" / "images" / "a_copy.png", 1)
        write_image(downloads_dir / "l1" / "images" / "b.png", 2)

        report = await engine.analyze(
            [
                "/downloads/l1/images/a.png",
                "/downloads/l1/images/b.png",
                "/downloads/l1/images/a_copy.png",
            ]
        )

        assert report.groups == 2
        assert report.images[1].original_index == 2
        assert report.images[1].distance == 0


class TestDedupe:
    @pytest.mark.asyncio
    async def test_keeps_canonicals_in_order(
        self, engine: ImageSimilarityEngine, put: Callable[[str, str], str]
    ) -> None:
        a = put("a.jpg", "0" * 16)
        b = put("b.jpg", _bits(2))
        c = put("c.jpg", "ffffffffffffffff")
        d = put("d.jpg", _bits(1))

        result = await engine.dedupe([a, b, c, d])

        assert [img.local for img in result.unique] == [a, c]
        assert [img.local for img in result.removed] == [b, d]
        assert result.removed_count == 2
        assert result.truncated == 0

    @pytest.mark.asyncio
    async def test_threshold_zero_only_exact(
        self, engine: ImageSimilarityEngine, put: Callable[[str, str], str]
    ) -> None:
        images = [put("a.jpg", "0" * 16), put("b.jpg", "0" * 16), put("c.jpg", _bits(1))]
        result = await engine.dedupe(images, threshold=0)
        assert len(result.unique) == 2

    @pytest.mark.asyncio
    async def test_empty(self, engine: ImageSimilarityEngine) -> None:
        result = await engine.dedupe([])
        assert result.unique == []
        assert result.removed == []


class TestEmbeddingStrategy:
    @pytest.fixture
    def embedding_engine(self, resolver: ImagePathResolver) -> ImageSimilarityEngine:
        backend = EmbeddingBackend(ModelLoader(FakeModel))
        return ImageSimilarityEngine(resolver, {SimilarityStrategy.EMBEDDING: backend})

    @pytest.mark.asyncio
    async def test_similarity_reported(
        self, embedding_engine: ImageSimilarityEngine, put: Callable[[str, str], str]
    ) -> None:
        images = [put("a.txt", "1,0,0"), put("b.txt", "0,1,0"), put("c.txt", "0.99,0.05,0")]

        report = await embedding_engine.analyze(images, strategy=SimilarityStrategy.EMBEDDING)

        assert report.threshold == pytest.approx(0.92)
        assert report.groups == 2
        dup = report.images[1]
        assert dup.original_index == 2
        assert dup.distance is None
        assert dup.similarity is not None
        assert dup.similarity > 0.99

    @pytest.mark.asyncio
    async def test_input_capped(
        self, embedding_engine: ImageSimilarityEngine, put: Callable[[str, str], str]
    ) -> None:
        first = put("a.txt", "1,0")
        overflow = [f"/downloads/l1/images/extra_{i}.txt" for i in range(101)]

        result = await embedding_engine.dedupe(
            [first, *overflow], strategy=SimilarityStrategy.EMBEDDING
        )

        assert result.truncated == 2
        assert len(result.unique) == 102
        assert [img.local for img in result.unique[-2:]] == overflow[-2:]
