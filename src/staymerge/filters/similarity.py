"""Perceptual near-duplicate detection over listing images."""

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from staymerge.errors import CapabilityUnavailable, InvalidInput
from staymerge.logging import get_logger
from staymerge.models import (
    AnalyzedImage,
    DedupeResult,
    ListingImage,
    SimilarityReport,
    SimilarityStrategy,
)
from staymerge.utils.image_files import ImagePathResolver
from staymerge.utils.image_hash import Fingerprint, FingerprintBackend

logger = get_logger(__name__)


@dataclass
class DuplicateGroup:
    """A canonical image index plus the later indices judged its duplicates."""

    canonical: int
    # (index, score against the canonical)
    duplicates: list[tuple[int, float]] = field(default_factory=list)


def group_by_canonical(
    fingerprints: Sequence[Fingerprint | None],
    score: Callable[[Fingerprint, Fingerprint], float],
    is_match: Callable[[float], bool],
) -> list[DuplicateGroup]:
    """Greedy single-pass grouping.

    Images are visited in order. Each image not yet assigned opens a group as
    its canonical member and claims every later unassigned image whose score
    against the canonical crosses the threshold. Duplicates are compared to
    the canonical only, never to each other, so grouping is not transitive.
    Images without a fingerprint always form their own group.

    Args:
        fingerprints: One fingerprint (or None) per image, in input order.
        score: Distance/similarity between two fingerprints.
        is_match: Whether a score makes two images duplicates.

    Returns:
        Groups in first-seen order.
    """
    assigned = [False] * len(fingerprints)
    groups: list[DuplicateGroup] = []

    for i, fp_i in enumerate(fingerprints):
        if assigned[i]:
            continue
        assigned[i] = True
        group = DuplicateGroup(canonical=i)
        groups.append(group)
        if fp_i is None:
            continue

        for j in range(i + 1, len(fingerprints)):
            fp_j = fingerprints[j]
            if assigned[j] or fp_j is None:
                continue
            s = score(fp_i, fp_j)
            if is_match(s):
                group.duplicates.append((j, s))
                assigned[j] = True

    return groups


def _as_image(item: ListingImage | str) -> ListingImage:
    return ListingImage(local=item) if isinstance(item, str) else item


class ImageSimilarityEngine:
    """Analyze or dedupe image lists with a pluggable fingerprint backend."""

    def __init__(
        self,
        resolver: ImagePathResolver,
        backends: Mapping[SimilarityStrategy, FingerprintBackend],
    ) -> None:
        self.resolver = resolver
        self.backends = dict(backends)

    async def backend(self, strategy: SimilarityStrategy) -> FingerprintBackend:
        """Return a ready backend for ``strategy``.

        Raises:
            CapabilityUnavailable: If the backend is not configured or cannot load.
        """
        backend = self.backends.get(strategy)
        if backend is None:
            raise CapabilityUnavailable(f"Similarity strategy not available: {strategy}")
        await backend.ensure_ready()
        return backend

    async def _fingerprint(
        self, backend: FingerprintBackend, image: ListingImage
    ) -> Fingerprint | None:
        if not image.local:
            return None
        try:
            path = self.resolver.resolve(image.local)
        except InvalidInput as e:
            logger.warning("image_path_rejected", local=image.local, error=str(e))
            return None
        if not path.is_file():
            logger.debug("image_not_found", local=image.local)
            return None
        return await backend.fingerprint(path)

    async def _group(
        self,
        images: Sequence[ListingImage | str],
        threshold: float | None,
        strategy: SimilarityStrategy,
    ) -> tuple[
        FingerprintBackend, float, list[ListingImage], list[ListingImage], list[DuplicateGroup]
    ]:
        backend = await self.backend(strategy)
        limit = threshold if threshold is not None else backend.default_threshold

        items = [_as_image(img) for img in images]
        overflow: list[ListingImage] = []
        if backend.max_images is not None and len(items) > backend.max_images:
            overflow = items[backend.max_images :]
            items = items[: backend.max_images]
            logger.warning(
                "similarity_input_truncated",
                strategy=strategy.value,
                limit=backend.max_images,
                skipped=len(overflow),
            )

        fingerprints = await asyncio.gather(*(self._fingerprint(backend, img) for img in items))

        groups = group_by_canonical(
            fingerprints,
            backend.score,
            lambda s: backend.is_match(s, limit),
        )
        unresolved = sum(1 for fp in fingerprints if fp is None)
        if unresolved:
            logger.info("images_without_fingerprint", count=unresolved, total=len(items))
        return backend, limit, items, overflow, groups

    async def analyze(
        self,
        images: Sequence[ListingImage | str],
        threshold: float | None = None,
        strategy: SimilarityStrategy = SimilarityStrategy.HASH,
    ) -> SimilarityReport:
        """Annotate every image with its duplicate group.

        Output lists each group's canonical image first, followed by its
        duplicates, closest first. Groups appear in first-seen order.
        """
        backend, limit, items, overflow, groups = await self._group(images, threshold, strategy)

        analyzed: list[AnalyzedImage] = []
        for group_idx, group in enumerate(groups):
            analyzed.append(
                AnalyzedImage(
                    image=items[group.canonical],
                    original_index=group.canonical,
                    group=group_idx,
                    is_duplicate=False,
                )
            )
            ordered = sorted(
                group.duplicates,
                key=lambda d: -d[1] if backend.higher_is_closer else d[1],
            )
            for idx, s in ordered:
                analyzed.append(
                    AnalyzedImage(
                        image=items[idx],
                        original_index=idx,
                        group=group_idx,
                        is_duplicate=True,
                        distance=None if backend.higher_is_closer else int(s),
                        similarity=round(s, 4) if backend.higher_is_closer else None,
                    )
                )

        duplicates = sum(len(g.duplicates) for g in groups)
        logger.info(
            "image_similarity_analyzed",
            strategy=strategy.value,
            threshold=limit,
            images=len(items),
            groups=len(groups),
            duplicates=duplicates,
        )
        return SimilarityReport(
            strategy=strategy,
            threshold=limit,
            images=analyzed,
            groups=len(groups),
            duplicates=duplicates,
            truncated=len(overflow),
        )

    async def dedupe(
        self,
        images: Sequence[ListingImage | str],
        threshold: float | None = None,
        strategy: SimilarityStrategy = SimilarityStrategy.HASH,
    ) -> DedupeResult:
        """Keep one canonical image per duplicate group, in first-seen order.

        Images past the backend's per-call cap are not examined and are
        returned in ``unique`` untouched.
        """
        _, limit, items, overflow, groups = await self._group(images, threshold, strategy)

        unique = [items[g.canonical] for g in groups]
        removed_idx = sorted(idx for g in groups for idx, _ in g.duplicates)
        removed = [items[idx] for idx in removed_idx]

        logger.info(
            "images_deduplicated",
            strategy=strategy.value,
            threshold=limit,
            original=len(items) + len(overflow),
            unique=len(unique) + len(overflow),
            removed=len(removed),
        )
        return DedupeResult(
            strategy=strategy,
            threshold=limit,
            unique=unique + overflow,
            removed=removed,
            truncated=len(overflow),
        )
