"""Merge, unification and image-similarity engines for listings."""

import importlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from staymerge.filters.merge import (  # noqa: F401
        listing_from_scrape,
        merge_additive,
        new_images,
    )
    from staymerge.filters.similarity import ImageSimilarityEngine  # noqa: F401
    from staymerge.filters.unification import Unifier  # noqa: F401

__all__ = [
    "ImageSimilarityEngine",
    "listing_from_scrape",
    "merge_additive",
    "new_images",
    "Unifier",
]

# Similarity pulls in Pillow/imagehash; import engines only when first used.
_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "ImageSimilarityEngine": (".similarity", "ImageSimilarityEngine"),
    "listing_from_scrape": (".merge", "listing_from_scrape"),
    "merge_additive": (".merge", "merge_additive"),
    "new_images": (".merge", "new_images"),
    "Unifier": (".unification", "Unifier"),
}


def __getattr__(name: str) -> object:
    if name in _LAZY_IMPORTS:
        module_path, attr = _LAZY_IMPORTS[name]
        mod = importlib.import_module(module_path, __name__)
        val = getattr(mod, attr)
        globals()[name] = val  # Cache so __getattr__ is only called once
        return val
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
