"""Shared fixtures: fabricated images and a classifier with canned output."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper
from PIL import Image

from plantid.config import Settings
from plantid.ml.image_classifier import Prediction, rank_predictions
from plantid.ml.inference import InferencePool
from plantid.ml.preprocessing import ImagePreprocessor
from plantid.pipeline import ClassificationPipeline

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from numpy.typing import NDArray

    from plantid.ml.image_classifier import ClassificationResult


class FakeClassifier:
    """Returns fixed (label, confidence) pairs for every image."""

    def __init__(self, pairs: list[tuple[str, float]], error: Exception | None = None) -> None:
        self._pairs = pairs
        self._error = error
        self.calls = 0

    @property
    def model_name(self) -> str:
        return "fake"

    def classify(self, image: NDArray[np.uint8]) -> ClassificationResult:
        self.calls += 1
        if self._error is not None:
            raise self._error
        return rank_predictions(Prediction(label=label, confidence=conf) for label, conf in self._pairs)


def make_image_bytes(
    width: int = 32,
    height: int = 24,
    fmt: str = "PNG",
    color: tuple[int, int, int] = (30, 160, 60),
) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def settings() -> Settings:
    return Settings(max_concurrent=2, queue_timeout=1.0, open_browser=False, preload_model=False)


@pytest.fixture()
def pool(settings: Settings) -> Iterator[InferencePool]:
    inference_pool = InferencePool(settings)
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def preprocessor(settings: Settings) -> ImagePreprocessor:
    return ImagePreprocessor(max_image_pixels=settings.max_image_pixels, max_file_size=settings.max_file_size)


@pytest.fixture()
def make_pipeline(
    pool: InferencePool, preprocessor: ImagePreprocessor
) -> Callable[..., ClassificationPipeline]:
    def _make(classifier: object, min_confidence: float = 0.0) -> ClassificationPipeline:
        return ClassificationPipeline(lambda: classifier, preprocessor, pool, min_confidence=min_confidence)  # type: ignore[arg-type, return-value]

    return _make


@pytest.fixture()
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture()
def int64_input_model(tmp_path: Path) -> Path:
    """A valid ONNX model whose input is int64, so float32 images are rejected at run time."""
    shape = [1, 3, 32, 32]
    graph = helper.make_graph(
        [helper.make_node("Identity", ["pixel_values"], ["logits"])],
        "int64_identity",
        [helper.make_tensor_value_info("pixel_values", TensorProto.INT64, shape)],
        [helper.make_tensor_value_info("logits", TensorProto.INT64, shape)],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    path = tmp_path / "int64_identity.onnx"
    onnx.save(model, str(path))
    return path
