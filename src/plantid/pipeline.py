"""Classification pipeline: decode, infer off the event loop, rank, decide.

Every call ends in exactly one :class:`ClassificationOutcome`: a top
prediction, an "unknown" verdict, or a failure carrying a
:class:`~plantid.errors.PlantIdError`. Failures are never retried.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from plantid.errors import InferenceError, InferencePoolBusy, PlantIdError
from plantid.ml.image_classifier import OnnxImageClassifier, rank_predictions

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from plantid.config import Settings
    from plantid.ml.image_classifier import ClassificationResult, ImageClassifier, Prediction
    from plantid.ml.inference import InferencePool
    from plantid.ml.model_manager import ModelManager
    from plantid.ml.preprocessing import ImagePreprocessor

logger = logging.getLogger(__name__)


class OutcomeStatus(StrEnum):
    IDENTIFIED = "identified"
    UNKNOWN = "unknown"
    FAILED = "failed"


@dataclass(frozen=True)
class ClassificationOutcome:
    """Result of one classification request."""

    status: OutcomeStatus
    predictions: ClassificationResult = ()
    error: PlantIdError | None = None

    @property
    def prediction(self) -> Prediction | None:
        """The chosen prediction, set only for identified outcomes."""
        if self.status is OutcomeStatus.IDENTIFIED:
            return self.predictions[0]
        return None

    @classmethod
    def identified(cls, predictions: ClassificationResult) -> ClassificationOutcome:
        return cls(status=OutcomeStatus.IDENTIFIED, predictions=predictions)

    @classmethod
    def unknown(cls, predictions: ClassificationResult = ()) -> ClassificationOutcome:
        return cls(status=OutcomeStatus.UNKNOWN, predictions=predictions)

    @classmethod
    def failed(cls, error: PlantIdError) -> ClassificationOutcome:
        return cls(status=OutcomeStatus.FAILED, error=error)


class ClassificationPipeline:
    """Runs images through a lazily loaded, shared classifier."""

    def __init__(
        self,
        classifier_factory: Callable[[], ImageClassifier],
        preprocessor: ImagePreprocessor,
        pool: InferencePool,
        min_confidence: float = 0.0,
    ) -> None:
        self._classifier_factory = classifier_factory
        self._preprocessor = preprocessor
        self._pool = pool
        self._min_confidence = min_confidence

        self._classifier: ImageClassifier | None = None
        self._load_lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._classifier is not None

    def get_classifier(self) -> ImageClassifier:
        """Return the shared classifier, loading it on first use.

        Raises:
            ModelLoadError: If the model asset is missing or malformed.
        """
        if self._classifier is not None:
            return self._classifier
        with self._load_lock:
            if self._classifier is None:
                self._classifier = self._classifier_factory()
                logger.info("Classifier %s loaded", self._classifier.model_name)
            return self._classifier

    def warm_up(self) -> ImageClassifier:
        """Load the classifier eagerly so a broken asset fails at startup."""
        return self.get_classifier()

    def select(self, predictions: Iterable[Prediction]) -> ClassificationOutcome:
        """Pick the top prediction, or report unknown.

        Unknown covers an empty result set and a top confidence below
        ``min_confidence``.
        """
        ranked = rank_predictions(predictions)
        if not ranked:
            return ClassificationOutcome.unknown()
        if ranked[0].confidence < self._min_confidence:
            logger.info(
                "Top prediction %s (%.3f) below threshold %.3f",
                ranked[0].label,
                ranked[0].confidence,
                self._min_confidence,
            )
            return ClassificationOutcome.unknown(ranked)
        return ClassificationOutcome.identified(ranked)

    async def classify(self, data: bytes) -> ClassificationOutcome:
        """Classify encoded image bytes without blocking the event loop."""
        try:
            predictions = await self._pool.run(self._classify_sync, data)
        except TimeoutError:
            error = InferencePoolBusy("Inference pool busy")
            logger.warning("Classification rejected: %s", error)
            return ClassificationOutcome.failed(error)
        except PlantIdError as exc:
            logger.warning("Classification failed (%s): %s", type(exc).__name__, exc)
            return ClassificationOutcome.failed(exc)
        except Exception as exc:
            logger.exception("Unexpected classification failure")
            return ClassificationOutcome.failed(InferenceError(f"{type(exc).__name__}: {exc}"))

        outcome = self.select(predictions)
        if outcome.prediction is not None:
            logger.info(
                "Identified %s (confidence=%.3f)",
                outcome.prediction.label,
                outcome.prediction.confidence,
            )
        return outcome

    def submit(
        self,
        data: bytes,
        callback: Callable[[ClassificationOutcome], None],
    ) -> asyncio.Task[ClassificationOutcome]:
        """Start a classification and return immediately.

        ``callback`` runs exactly once on the event loop with the outcome,
        including when the task is cancelled or fails unexpectedly.
        """
        return asyncio.create_task(self._classify_and_notify(data, callback))

    async def _classify_and_notify(
        self,
        data: bytes,
        callback: Callable[[ClassificationOutcome], None],
    ) -> ClassificationOutcome:
        try:
            outcome = await self.classify(data)
        except asyncio.CancelledError:
            callback(ClassificationOutcome.failed(InferenceError("Classification cancelled")))
            raise
        except Exception as exc:
            logger.exception("Unexpected classification failure")
            outcome = ClassificationOutcome.failed(InferenceError(str(exc)))
        callback(outcome)
        return outcome

    def _classify_sync(self, data: bytes) -> ClassificationResult:
        classifier = self.get_classifier()
        image = self._preprocessor.decode_image(data)
        return classifier.classify(image)


def onnx_classifier_factory(
    settings: Settings,
    model_manager: ModelManager,
    preprocessor: ImagePreprocessor,
) -> Callable[[], ImageClassifier]:
    """Return a loader that builds the configured ONNX classifier."""

    def _load() -> ImageClassifier:
        name = settings.classifier_model
        session = model_manager.get_session(name)
        labels = model_manager.get_labels(name)
        return OnnxImageClassifier(
            model_name=name,
            session=session,
            labels=labels,
            preprocessor=preprocessor,
            default_size=settings.input_size,
        )

    return _load
