"""Inference execution and concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ModelHandle.lock -> ONNX run

Decoding runs on a separate I/O executor so slow disks or large files do not
hold a compute slot. Requests beyond the semaphore limit queue with a timeout,
then get 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from retinoscan.errors import ErrorKind, InferError, ModelError

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from retinoscan.config import Settings
    from retinoscan.ml.model_manager import ModelHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 30.0


def run_inference(handle: ModelHandle | None, tensor: NDArray[np.float32]) -> tuple[float, ...]:
    """Run one forward pass and return the raw confidence vector.

    The tensor is fed as a reshaped view and is neither modified nor kept.

    Raises:
        ModelError: ``NOT_READY`` if the handle is missing or already released.
        InferError: ``SHAPE_MISMATCH`` if the tensor length differs from the
            model's input size; ``EXECUTION_FAILED`` if the runtime raises or
            returns the wrong number of scores. The handle stays usable.
    """
    if handle is None or handle.closed:
        raise ModelError(ErrorKind.NOT_READY, "Model not loaded")
    if tensor.ndim != 1 or tensor.size != handle.input_size:
        raise InferError(
            ErrorKind.SHAPE_MISMATCH,
            f"Input tensor has {tensor.size} values, model expects {handle.input_size}",
        )

    batch = np.ascontiguousarray(tensor, dtype=np.float32).reshape(handle.input_shape)
    with handle.lock:
        session = handle.session
        if handle.closed or session is None:
            raise ModelError(ErrorKind.NOT_READY, "Model was released")
        try:
            outputs = session.run([handle.output_name], {handle.input_name: batch})
        except Exception as exc:
            logger.exception("Inference failed on model %s", handle.path)
            raise InferError(ErrorKind.EXECUTION_FAILED, "Inference failed", detail=str(exc)) from exc

    scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
    if scores.size != handle.output_size:
        raise InferError(
            ErrorKind.EXECUTION_FAILED,
            "Inference failed",
            detail=f"expected {handle.output_size} scores, got {scores.size}",
        )
    return tuple(float(s) for s in scores)


class InferencePool:
    """Manages the semaphore and thread pools for preprocessing and inference."""

    def __init__(self, settings: Settings, *, queue_timeout: float = SEMAPHORE_TIMEOUT_SECONDS) -> None:
        self._queue_timeout = queue_timeout
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="retinoscan-compute",
        )
        self._io_executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent * 2,
            thread_name_prefix="retinoscan-io",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous compute function to the inference thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor, then releases. If the awaiting task is cancelled the
        function still runs to completion in its thread; its result is
        discarded.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    async def run_io(self, func: Callable[..., T], *args: object) -> T:
        """Run a blocking I/O-bound function (file reads, decoding)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._io_executor, func, *args)

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down both executors, waiting for in-flight work."""
        self._io_executor.shutdown(wait=True)
        self._executor.shutdown(wait=True)
