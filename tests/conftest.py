"""Shared fixtures: settings, a tiny ONNX classifier, and synthetic fundus images."""

from __future__ import annotations

import io
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper, numpy_helper
from PIL import Image

from retinoscan.config import Settings
from retinoscan.ml.inference import InferencePool
from retinoscan.ml.model_manager import OnnxModelManager
from retinoscan.ml.pipeline import RetinopathyAnalyzer

if TYPE_CHECKING:
    from collections.abc import Iterator

# Scores are the mean normalized channels projected onto five classes:
# [R, G, B, -R, -G]. Pure red -> class 0, pure green -> class 1, pure blue -> class 2.
TINY_MODEL_WEIGHTS = np.array(
    [
        [1.0, 0.0, 0.0, -1.0, 0.0],
        [0.0, 1.0, 0.0, 0.0, -1.0],
        [0.0, 0.0, 1.0, 0.0, 0.0],
    ],
    dtype=np.float32,
)

RED = (255, 0, 0)
GREEN = (0, 255, 0)
BLUE = (0, 0, 255)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/retinoscan_test_models",
        "intra_op_threads": 1,
        "inter_op_threads": 1,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def build_tiny_model(path: Path, input_size: int = 224, num_classes: int = 5) -> Path:
    """Write a minimal NHWC classifier: ReduceMean over H, W then MatMul."""
    weights = TINY_MODEL_WEIGHTS
    if num_classes != weights.shape[1]:
        weights = np.ones((3, num_classes), dtype=np.float32)

    graph = helper.make_graph(
        nodes=[
            helper.make_node("ReduceMean", ["input"], ["channel_means"], axes=[1, 2], keepdims=0),
            helper.make_node("MatMul", ["channel_means", "weights"], ["scores"]),
        ],
        name="tiny_dr",
        inputs=[helper.make_tensor_value_info("input", TensorProto.FLOAT, ["batch", input_size, input_size, 3])],
        outputs=[helper.make_tensor_value_info("scores", TensorProto.FLOAT, ["batch", num_classes])],
        initializer=[numpy_helper.from_array(weights, name="weights")],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    onnx.save(model, str(path))
    return path


def image_bytes(color: tuple[int, int, int], size: tuple[int, int] = (320, 320), fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def write_image(
    path: Path, color: tuple[int, int, int], size: tuple[int, int] = (320, 320), fmt: str = "PNG"
) -> Path:
    path.write_bytes(image_bytes(color, size, fmt))
    return path


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(models_dir=str(tmp_path / "models"))


@pytest.fixture()
def model_path(tmp_path: Path) -> Path:
    return build_tiny_model(tmp_path / "tiny_dr.onnx")


@pytest.fixture()
def model_manager(settings: Settings) -> Iterator[OnnxModelManager]:
    manager = OnnxModelManager(settings)
    yield manager
    manager.shutdown()


@pytest.fixture()
def loaded_manager(model_manager: OnnxModelManager, model_path: Path) -> OnnxModelManager:
    model_manager.load(model_path)
    return model_manager


@pytest.fixture()
def inference_pool(settings: Settings) -> Iterator[InferencePool]:
    pool = InferencePool(settings)
    yield pool
    pool.shutdown()


@pytest.fixture()
def analyzer(settings: Settings, model_manager: OnnxModelManager, inference_pool: InferencePool) -> RetinopathyAnalyzer:
    return RetinopathyAnalyzer(settings, model_manager, inference_pool)
