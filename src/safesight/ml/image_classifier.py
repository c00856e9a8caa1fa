"""Image classification backends and the local ONNX classifier.

Both backends (local model, remote HTTP service) implement the
``Classifier`` protocol; the service picks one by configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np

from safesight.ml.errors import InferenceError, ModelLoadError
from safesight.ml.preprocessing import preprocess

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from safesight.config import Settings
    from safesight.ml.inference import InferencePool
    from safesight.ml.model_manager import ModelProvider
    from safesight.ml.preprocessing import RawImage

logger = logging.getLogger(__name__)


class BackendKind(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class Prediction:
    """Score for one image plus the identifier of where it came from."""

    source_id: str
    score: float
    backend: BackendKind
    top_k: list[ClassificationResult] = field(default_factory=list)


class Classifier(Protocol):
    """Protocol for classification backends."""

    @property
    def kind(self) -> BackendKind:
        """Return which backend this is."""
        ...

    async def is_available(self) -> bool:
        """Return True if the backend can serve a request right now. Never raises."""
        ...

    async def analyze(self, image: RawImage) -> Prediction:
        """Classify one image.

        Args:
            image: Caller-owned raw pixel buffer.

        Returns:
            Prediction with the model score and ranked labels.
        """
        ...


def top_k_predictions(scores: NDArray[np.float32], k: int, labels: list[str]) -> list[ClassificationResult]:
    """Return the ``k`` highest scores in descending order; ties keep their original order."""
    order = np.argsort(-scores, kind="stable")[:k]
    return [
        ClassificationResult(
            label=labels[idx] if idx < len(labels) else f"class_{idx}",
            confidence=float(scores[idx]),
        )
        for idx in order
    ]


class LocalClassifier:
    """Runs the model held by the model manager in the inference pool.

    An in-flight call keeps using the model it started with, even if an
    update publishes a new one meanwhile.
    """

    def __init__(self, settings: Settings, models: ModelProvider, pool: InferencePool) -> None:
        self._settings = settings
        self._models = models
        self._pool = pool

    @property
    def kind(self) -> BackendKind:
        return BackendKind.LOCAL

    async def is_available(self) -> bool:
        return self._models.model is not None

    async def analyze(self, image: RawImage) -> Prediction:
        """Preprocess, run one forward pass, and extract the top-K predictions.

        Raises:
            ModelNotLoadedError: If no model has been loaded.
            InvalidImageError: If the pixel buffer is malformed.
            InferenceError: If the model fails during the forward pass.
        """
        model = self._models.get_model()
        tensor = preprocess(image, self._settings.image_size)
        try:
            outputs = await self._pool.infer(model.session, model.input_name, tensor)
        except TimeoutError:
            raise
        except Exception as exc:
            raise InferenceError(f"Inference failed for {image.source_id}: {exc}") from exc
        if not outputs:
            raise ModelLoadError(f"Model from {model.source} produced no outputs")

        scores = np.asarray(outputs[0], dtype=np.float32)
        scores = scores[0].ravel() if scores.ndim > 1 else scores.ravel()
        if scores.size == 0:
            raise ModelLoadError(f"Model from {model.source} produced an empty output")

        prediction = Prediction(
            source_id=image.source_id,
            score=float(scores[0]),
            backend=self.kind,
            top_k=top_k_predictions(scores, self._settings.top_k, self._settings.class_labels),
        )
        logger.debug("Local prediction for %s: %.4f", image.source_id, prediction.score)
        return prediction
