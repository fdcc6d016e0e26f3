"""Model manager: download, load, validate, and release the ONNX classifier.

Exactly one model is active at a time. Loading a new model validates it
fully before the previous one is released and replaced, so a failed load
never leaves the service worse off than it was.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from retinoscan.errors import ErrorKind, ModelError

if TYPE_CHECKING:
    from retinoscan.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (what the analyzer depends on)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    @property
    def is_ready(self) -> bool:
        """Whether a model is loaded and accepting inference calls."""
        ...

    def load(self, path: str | Path) -> bool:
        """Load and validate a model file, replacing the active one."""
        ...

    def acquire(self) -> ModelHandle:
        """Return the active handle or raise ModelError(NOT_READY)."""
        ...

    def release(self) -> None:
        """Release the active model, if any."""
        ...

    def shutdown(self) -> None:
        """Release native resources on application teardown."""
        ...


# ---------------------------------------------------------------------------
# Loaded model
# ---------------------------------------------------------------------------


@dataclass
class ModelHandle:
    """A loaded InferenceSession plus the I/O contract it was validated against.

    ``lock`` serializes execution; sessions are never assumed to be safe for
    concurrent ``run`` calls.
    """

    session: InferenceSession | None
    path: Path
    input_name: str
    output_name: str
    input_shape: tuple[int, ...]
    output_size: int
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    closed: bool = False

    @property
    def input_size(self) -> int:
        return math.prod(self.input_shape)

    def close(self) -> None:
        """Drop the session. Waits for an in-flight run to finish first."""
        with self.lock:
            if self.closed:
                return
            self.closed = True
            self.session = None


@dataclass(frozen=True)
class ModelStatus:
    ready: bool
    path: str | None
    input_shape: tuple[int, ...] | None
    output_size: int | None
    providers: list[str]


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Owns the single active ONNX session and its lifecycle."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._handle: ModelHandle | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        with self._lock:
            return self._handle is not None

    @property
    def default_model_path(self) -> Path:
        """Configured model path, or the download location inside models_dir."""
        if self._settings.model_path:
            return Path(self._settings.model_path)
        return self._models_dir / self._settings.model_filename

    def ensure_downloaded(self) -> Path:
        """Download the model from the Hugging Face Hub if not present locally."""
        path = self.default_model_path
        if path.is_file():
            return path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise ModelError(ErrorKind.NOT_FOUND, f"Model file not found at {path}")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=repo_id,
                    filename=self._settings.model_filename,
                    local_dir=str(self._models_dir),
                )
            )
        except Exception as exc:
            raise ModelError(ErrorKind.NOT_FOUND, f"Model could not be downloaded from {repo_id}") from exc
        logger.info("Downloaded %s from %s to %s", self._settings.model_filename, repo_id, downloaded)
        return downloaded

    def load(self, path: str | Path) -> bool:
        """Load a model file and make it the active model.

        Raises:
            ModelError: ``NOT_FOUND`` if the file does not exist,
                ``LOAD_FAILED`` if it is empty, unreadable, not a valid
                model, or does not match the expected input/output shapes.
        """
        model_path = Path(path)
        if not model_path.is_file():
            raise ModelError(ErrorKind.NOT_FOUND, f"Model file not found at {model_path}")
        if model_path.stat().st_size == 0:
            raise ModelError(ErrorKind.LOAD_FAILED, f"Model file is empty: {model_path}")

        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            logger.warning("Failed to load model %s: %s", model_path, exc)
            raise ModelError(ErrorKind.LOAD_FAILED, f"Failed to load model: {model_path}") from exc

        handle = self._create_handle(session, model_path)

        with self._lock:
            previous = self._handle
            self._handle = handle
        # Outside the lock: close() waits for any in-flight run on the old handle.
        if previous is not None:
            previous.close()
            logger.info("Released model %s", previous.path)

        logger.info(
            "Loaded model %s (input=%s, outputs=%s)",
            model_path,
            handle.input_shape,
            handle.output_size,
        )
        return True

    def acquire(self) -> ModelHandle:
        """Return the active handle without blocking on a load."""
        with self._lock:
            if self._handle is None:
                raise ModelError(ErrorKind.NOT_READY, "Model not loaded")
            return self._handle

    def status(self) -> ModelStatus:
        with self._lock:
            handle = self._handle
        return ModelStatus(
            ready=handle is not None,
            path=str(handle.path) if handle else None,
            input_shape=handle.input_shape if handle else None,
            output_size=handle.output_size if handle else None,
            providers=[p if isinstance(p, str) else p[0] for p in self._providers],
        )

    def release(self) -> None:
        """Release the active model. A no-op when nothing is loaded."""
        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is not None:
            handle.close()
            logger.info("Released model %s", handle.path)

    def shutdown(self) -> None:
        """Release the active model on application teardown."""
        self.release()
        logger.info("Model manager shut down")

    # -- Internal -----------------------------------------------------------

    def _create_handle(self, session: InferenceSession, model_path: Path) -> ModelHandle:
        size = self._settings.input_size
        num_classes = self._settings.num_classes

        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if len(inputs) != 1 or not outputs:
            raise ModelError(
                ErrorKind.LOAD_FAILED,
                f"Model must have one input and at least one output (got {len(inputs)} and {len(outputs)})",
            )
        model_input = inputs[0]
        model_output = outputs[0]

        if model_input.type != "tensor(float)":
            raise ModelError(ErrorKind.LOAD_FAILED, f"Model input must be float32, got {model_input.type}")

        input_shape = _resolve_shape(model_input.shape, (1, size, size, 3))
        if input_shape is None:
            raise ModelError(
                ErrorKind.LOAD_FAILED,
                f"Model input shape {model_input.shape} does not match (N, {size}, {size}, 3)",
            )
        output_shape = _resolve_shape(model_output.shape, (1, num_classes))
        if output_shape is None:
            raise ModelError(
                ErrorKind.LOAD_FAILED,
                f"Model output shape {model_output.shape} does not match (N, {num_classes})",
            )

        return ModelHandle(
            session=session,
            path=model_path,
            input_name=model_input.name,
            output_name=model_output.name,
            input_shape=input_shape,
            output_size=math.prod(output_shape),
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [("CUDAExecutionProvider", {"device_id": 0}), "CPUExecutionProvider"]
        if device == "openvino":
            return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        return opts


def _resolve_shape(declared: list[int | str | None], expected: tuple[int, ...]) -> tuple[int, ...] | None:
    """Match a declared model shape against the expected one.

    Symbolic or unknown dimensions (e.g. a dynamic batch axis) accept the
    expected value. Returns the concrete shape, or None on mismatch.
    """
    if len(declared) != len(expected):
        return None
    for dim, want in zip(declared, expected, strict=True):
        if isinstance(dim, int) and dim > 0 and dim != want:
            return None
    return expected
