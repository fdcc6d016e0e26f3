"""End-to-end retinopathy analysis: decode -> normalize -> encode -> infer -> interpret."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

from retinoscan.ml.classifier import ClassificationResult, interpret
from retinoscan.ml.inference import run_inference
from retinoscan.ml.preprocessing import (
    PixelGrid,
    decode_image,
    encode_tensor,
    normalize_geometry,
    probe_dimensions,
    validate_fundus_geometry,
)
from retinoscan.ml.sources import ImageSource, LocalFile, fetch_remote_image

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from retinoscan.config import Settings
    from retinoscan.ml.inference import InferencePool
    from retinoscan.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class RetinopathyAnalyzer:
    """Runs classification requests against the shared model.

    Stage functions are synchronous. :meth:`classify` chains them on the
    calling thread; :meth:`analyze` runs the same chain off the event loop,
    with decoding on the I/O executor and the numeric stages on the compute
    pool. A cancelled request stops at the next stage boundary.
    """

    def __init__(self, settings: Settings, model_manager: ModelManager, pool: InferencePool) -> None:
        self._settings = settings
        self._models = model_manager
        self._pool = pool

    @property
    def is_ready(self) -> bool:
        return self._models.is_ready

    def load_model(self, path: str | Path) -> bool:
        """Load a model file; raises ModelError on failure."""
        return self._models.load(path)

    # -- Stages ---------------------------------------------------------------

    def _decode(self, source: ImageSource) -> PixelGrid:
        if self._settings.validate_fundus:
            width, height = probe_dimensions(source)
            validate_fundus_geometry(
                width,
                height,
                min_side=self._settings.min_image_side,
                min_aspect_ratio=self._settings.min_aspect_ratio,
                max_aspect_ratio=self._settings.max_aspect_ratio,
            )
        size = self._settings.input_size
        return decode_image(source, size, size, max_image_pixels=self._settings.max_image_pixels)

    def _prepare_tensor(self, grid: PixelGrid) -> NDArray[np.float32]:
        size = self._settings.input_size
        resized = normalize_geometry(grid, size, size)
        del grid
        return encode_tensor(resized)

    def _finish(self, source: ImageSource, confidences: tuple[float, ...], started: float) -> ClassificationResult:
        result = interpret(confidences)
        logger.info(
            "Analyzed %s: %s (class=%d, confidence=%.4f) in %d ms",
            source.describe(),
            result.condition_label,
            result.top_index,
            result.top_confidence,
            int((time.perf_counter() - started) * 1000),
        )
        return result

    # -- Entry points ---------------------------------------------------------

    def classify(self, source: ImageSource) -> ClassificationResult:
        """Run the whole pipeline synchronously on the calling thread."""
        self._models.acquire()
        started = time.perf_counter()
        grid: PixelGrid | None = None
        tensor: NDArray[np.float32] | None = None
        try:
            grid = self._decode(source)
            tensor = self._prepare_tensor(grid)
            grid = None
            confidences = run_inference(self._models.acquire(), tensor)
        finally:
            grid = tensor = None
        return self._finish(source, confidences, started)

    async def analyze(self, source: ImageSource) -> ClassificationResult:
        """Classify an image source without blocking the event loop.

        Fails fast with ModelError(NOT_READY) before any decoding when no
        model is loaded. The handle used for inference is looked up again
        after preprocessing, so a model swapped in mid-request serves it.
        """
        self._models.acquire()
        started = time.perf_counter()
        grid: PixelGrid | None = None
        tensor: NDArray[np.float32] | None = None
        try:
            grid = await self._pool.run_io(self._decode, source)
            tensor = await self._pool.run(self._prepare_tensor, grid)
            grid = None
            confidences = await self._pool.run(run_inference, self._models.acquire(), tensor)
        finally:
            grid = tensor = None
        return self._finish(source, confidences, started)

    async def analyze_image(self, path: str) -> ClassificationResult:
        """Classify an image file given as a path or ``file://`` URI."""
        return await self.analyze(LocalFile.from_str(path))

    async def analyze_url(self, url: str) -> ClassificationResult:
        """Download an image and classify it."""
        self._models.acquire()
        source = await fetch_remote_image(
            url,
            timeout=self._settings.fetch_timeout,
            max_bytes=self._settings.max_file_size,
        )
        return await self.analyze(source)
