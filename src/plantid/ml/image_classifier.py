"""Image classification on top of an ONNX Runtime session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from plantid.errors import InferenceError
from plantid.ml.model_manager import ORT_ERRORS
from plantid.ml.preprocessing import TensorLayout

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from plantid.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    label: str
    confidence: float


# Predictions ordered by confidence (descending), ties broken by label.
ClassificationResult = tuple[Prediction, ...]


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8]) -> ClassificationResult:
        """Classify an image and return ranked predictions.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            Predictions sorted by confidence (descending).
        """
        ...


def rank_predictions(predictions: Iterable[Prediction]) -> ClassificationResult:
    """Order predictions by confidence, highest first.

    Equal confidences are ordered by label so the top pick is reproducible.
    """
    return tuple(sorted(predictions, key=lambda p: (-p.confidence, p.label)))


def to_probabilities(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    """Return ``scores`` as a probability distribution.

    Outputs that already look like one (non-negative, summing to ~1) pass
    through; anything else is treated as logits.
    """
    scores = scores.astype(np.float32)
    if scores.size == 0:
        return scores
    if np.all(scores >= 0.0) and np.isclose(scores.sum(), 1.0, atol=1e-3):
        return scores
    exps = np.exp(scores - np.max(scores))
    return (exps / np.sum(exps)).astype(np.float32)


class OnnxImageClassifier:
    """Classifier that runs a single-input, single-output ONNX model."""

    def __init__(
        self,
        model_name: str,
        session: InferenceSession,
        labels: Sequence[str],
        preprocessor: ImagePreprocessor,
        default_size: int = 224,
    ) -> None:
        self._model_name = model_name
        self._session = session
        self._labels = list(labels)
        self._preprocessor = preprocessor

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._layout, self._size = self._input_geometry(list(model_input.shape), default_size)
        logger.info(
            "Classifier %s ready (input=%s %s %dx%d, labels=%d)",
            model_name,
            self._input_name,
            self._layout,
            self._size[0],
            self._size[1],
            len(self._labels),
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def labels(self) -> list[str]:
        return list(self._labels)

    def classify(self, image: NDArray[np.uint8]) -> ClassificationResult:
        tensor = self._preprocessor.preprocess_for_classification(image, self._size, self._layout)

        try:
            outputs = self._session.run(None, {self._input_name: tensor})
        except (*ORT_ERRORS, ValueError) as exc:
            raise InferenceError(f"{self._model_name} failed: {exc}") from exc

        if not outputs:
            return ()

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size == 0:
            return ()
        if scores.size != len(self._labels):
            raise InferenceError(
                f"{self._model_name} produced {scores.size} scores for {len(self._labels)} labels"
            )

        probs = to_probabilities(scores)
        return rank_predictions(
            Prediction(label=label, confidence=float(prob)) for label, prob in zip(self._labels, probs, strict=True)
        )

    @staticmethod
    def _input_geometry(shape: list[object], default_size: int) -> tuple[TensorLayout, tuple[int, int]]:
        """Infer the channel layout and (height, width) from an input shape.

        Dynamic dimensions (strings or None) fall back to ``default_size``.
        """

        def _dim(value: object) -> int:
            return value if isinstance(value, int) and value > 0 else default_size

        if len(shape) != 4:
            return TensorLayout.NCHW, (default_size, default_size)
        if shape[3] == 3 and shape[1] != 3:
            return TensorLayout.NHWC, (_dim(shape[1]), _dim(shape[2]))
        return TensorLayout.NCHW, (_dim(shape[2]), _dim(shape[3]))
