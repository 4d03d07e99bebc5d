"""Embedding-vector image fingerprints (SSCD copy-detection model).

Uses Meta's SSCD model (ResNet50, trained with contrastive learning) to produce
512-dim L2-normalized embeddings that are robust to crops, overlays, compression,
and color jitter, which is what listing platforms do to the same photo.

The model is heavy (torch + ~100MB of weights), so it is loaded lazily, once
per process, and only when the embedding strategy is enabled. Install the
``embeddings`` extra for torch/torchvision.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path
from typing import Any, Final, Protocol

import httpx
import numpy as np
from PIL import Image

from staymerge.errors import CapabilityUnavailable
from staymerge.logging import get_logger
from staymerge.models import SimilarityStrategy
from staymerge.utils.image_hash import FingerprintBackend

logger = get_logger(__name__)

MODEL_URL: Final = (
    "https://dl.fbaipublicfiles.com/sscd-copy-detection/sscd_disc_mixup.torchscript.pt"
)

EMBEDDING_SIMILARITY_THRESHOLD: Final = 0.92
EMBEDDING_MAX_IMAGES: Final = 100

# SSCD input: 288x288 (as per the paper), ImageNet normalization
SSCD_INPUT_SIZE: Final = 288
IMAGENET_MEAN: Final = [0.485, 0.456, 0.406]
IMAGENET_STD: Final = [0.229, 0.224, 0.225]


class EmbeddingModel(Protocol):
    """Anything that maps an image file to a fixed-length vector."""

    def encode_file(self, path: Path) -> np.ndarray: ...


class ModelState(StrEnum):
    """Lifecycle of the lazily loaded model."""

    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class ModelLoader:
    """Single-flight lazy loader for an embedding model.

    The first caller starts the (blocking, threaded) load; callers arriving
    while it runs await the same task. A failed load is remembered and every
    later call fails immediately with CapabilityUnavailable, so an expensive
    failure (missing torch, bad weights) is never retried.
    """

    def __init__(self, load: Callable[[], EmbeddingModel]) -> None:
        self._load = load
        self._model: EmbeddingModel | None = None
        self._task: asyncio.Task[EmbeddingModel] | None = None
        self._error: str | None = None
        self.state = ModelState.UNINITIALIZED

    async def get(self) -> EmbeddingModel:
        """Return the loaded model, loading it on first use."""
        if self.state is ModelState.READY and self._model is not None:
            return self._model
        if self.state is ModelState.FAILED:
            raise CapabilityUnavailable(f"Embedding model unavailable: {self._error}")
        if self._task is None:
            self.state = ModelState.LOADING
            self._task = asyncio.create_task(self._run_load())
        # Shield so a cancelled caller does not cancel the load others wait on.
        return await asyncio.shield(self._task)

    async def _run_load(self) -> EmbeddingModel:
        logger.info("embedding_model_loading")
        try:
            model = await asyncio.to_thread(self._load)
        except Exception as e:
            self.state = ModelState.FAILED
            self._error = str(e) or type(e).__name__
            logger.error("embedding_model_load_failed", error=self._error)
            raise CapabilityUnavailable(f"Embedding model unavailable: {self._error}") from e
        self._model = model
        self.state = ModelState.READY
        logger.info("embedding_model_ready")
        return model


def _download_model(model_path: Path) -> Path:
    """Download SSCD weights if not already present."""
    if model_path.exists():
        return model_path

    model_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("downloading_sscd_model", url=MODEL_URL, dest=str(model_path))
    partial = model_path.with_suffix(model_path.suffix + ".part")
    with httpx.stream("GET", MODEL_URL, follow_redirects=True, timeout=300.0) as response:
        response.raise_for_status()
        with partial.open("wb") as f:
            for chunk in response.iter_bytes():
                f.write(chunk)
    partial.replace(model_path)
    logger.info("sscd_model_downloaded", size_mb=round(model_path.stat().st_size / 1e6, 1))
    return model_path


class SSCDEncoder:
    """SSCD copy-detection encoder producing 512-dim L2-normalized embeddings.

    Thread-safe for inference (model is loaded once, used read-only).
    """

    def __init__(self, model: Any, torch: Any, transforms: Any) -> None:
        self._model = model
        self._torch = torch
        self._transform = transforms.Compose(
            [
                transforms.Resize((SSCD_INPUT_SIZE, SSCD_INPUT_SIZE)),
                transforms.ToTensor(),
                transforms.Normalize(mean=IMAGENET_MEAN, std=IMAGENET_STD),
            ]
        )

    @classmethod
    def load(cls, model_path: Path) -> SSCDEncoder:
        """Import torch lazily, fetch weights if needed, and load the TorchScript model."""
        try:
            import torch
            import torchvision.transforms as transforms
        except ImportError as e:
            raise ImportError(
                "SSCD embeddings require torch and torchvision. "
                "Install with: pip install 'staymerge[embeddings]'"
            ) from e

        path = _download_model(model_path)
        logger.info("loading_sscd_model", path=str(path))
        model = torch.jit.load(str(path), map_location="cpu")
        model.eval()
        return cls(model, torch, transforms)

    def encode_file(self, path: Path) -> np.ndarray:
        """Encode an image file to a 512-dim embedding."""
        with Image.open(path) as image:
            rgb = image.convert("RGB")
        tensor = self._transform(rgb).unsqueeze(0)
        with self._torch.no_grad():
            embedding = self._model(tensor)
        embedding = self._torch.nn.functional.normalize(embedding, dim=1)
        return embedding.squeeze(0).numpy()


@functools.cache
def default_loader(model_path: str) -> ModelLoader:
    """Process-wide loader for the SSCD model at ``model_path``."""
    return ModelLoader(functools.partial(SSCDEncoder.load, Path(model_path)))


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity between two vectors (0.0 if either is all zeros)."""
    if a.shape != b.shape:
        return 0.0
    norm = float(np.linalg.norm(a) * np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    return float(np.dot(a, b) / norm)


class EmbeddingBackend(FingerprintBackend):
    """Embedding fingerprints compared by cosine similarity."""

    strategy = SimilarityStrategy.EMBEDDING
    higher_is_closer = True

    def __init__(
        self,
        loader: ModelLoader | None,
        *,
        enabled: bool = True,
        threshold: float = EMBEDDING_SIMILARITY_THRESHOLD,
        max_images: int = EMBEDDING_MAX_IMAGES,
    ) -> None:
        self.loader = loader
        self.enabled = enabled and loader is not None
        self.default_threshold = threshold
        self.max_images = max_images

    async def ensure_ready(self) -> None:
        if not self.enabled or self.loader is None:
            raise CapabilityUnavailable("Embedding similarity is disabled")
        await self.loader.get()

    async def fingerprint(self, path: Path) -> np.ndarray | None:
        if self.loader is None:
            return None
        try:
            model = await self.loader.get()
            vector = await asyncio.to_thread(model.encode_file, path)
        except Exception as e:
            logger.debug("embedding_failed", path=str(path), error=str(e))
            return None
        vector = np.asarray(vector, dtype=np.float32)
        if not np.any(vector):
            return None
        return vector

    def score(self, a: np.ndarray, b: np.ndarray) -> float:
        return cosine_similarity(a, b)
