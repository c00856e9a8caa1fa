"""Caller-facing classification service.

Wires the model manager and both backends together, picks the backend from
configuration, and turns pipeline errors into "no prediction" / error
outcomes so callers never have to handle them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from safesight.ml.errors import (
    InferenceError,
    InvalidImageError,
    ModelLoadError,
    ModelNotLoadedError,
    RemoteClassificationError,
    RemoteUnavailableError,
    SafeSightError,
)
from safesight.ml.image_classifier import BackendKind
from safesight.ml.preprocessing import RawImage

if TYPE_CHECKING:
    from safesight.config import Settings
    from safesight.ml.availability import AvailabilityProbe
    from safesight.ml.image_classifier import Classifier, LocalClassifier, Prediction
    from safesight.ml.model_manager import LoaderStatus, OnnxModelManager, UpdateOutcome
    from safesight.ml.remote_classifier import RemoteClassifier

logger = logging.getLogger(__name__)

# Errors that mean "this backend can't answer, try the other one".
_RECOVERABLE_ERRORS = (
    InferenceError,
    ModelNotLoadedError,
    ModelLoadError,
    RemoteUnavailableError,
    RemoteClassificationError,
    TimeoutError,
)


class ClassificationService:
    def __init__(
        self,
        settings: Settings,
        models: OnnxModelManager,
        local: LocalClassifier,
        remote: RemoteClassifier,
        probe: AvailabilityProbe,
    ) -> None:
        self._settings = settings
        self._models = models
        self._probe = probe
        self._remote = remote
        self._backends: dict[BackendKind, Classifier] = {
            BackendKind.LOCAL: local,
            BackendKind.REMOTE: remote,
        }

    @property
    def models(self) -> OnnxModelManager:
        return self._models

    def backends(self) -> list[Classifier]:
        """Return the configured backend first, then the other one if fallback is enabled."""
        primary = BackendKind(self._settings.backend)
        ordered = [self._backends[primary]]
        if self._settings.fallback_enabled:
            ordered.extend(b for kind, b in self._backends.items() if kind is not primary)
        return ordered

    async def is_available(self) -> bool:
        for backend in self.backends():
            if await self._probe.is_available(backend):
                return True
        return False

    async def analyze(self, image: RawImage) -> Prediction:
        """Classify ``image`` with the first backend that can answer.

        Raises:
            InvalidImageError: Immediately, without trying another backend.
            SafeSightError: The last backend error if every backend failed.
        """
        last_error: Exception | None = None
        for backend in self.backends():
            try:
                return await backend.analyze(image)
            except InvalidImageError:
                raise
            except _RECOVERABLE_ERRORS as exc:
                logger.info("%s backend could not classify %s: %s", backend.kind, image.source_id, exc)
                last_error = exc

        if isinstance(last_error, SafeSightError):
            raise last_error
        raise ModelNotLoadedError("No classification backend available") from last_error

    async def analyze_image(
        self,
        pixels: bytes,
        width: int,
        height: int,
        source_id: str,
        channels: int = 4,
    ) -> Prediction | None:
        """Classify a raw pixel buffer; returns None when no prediction is possible."""
        image = RawImage(pixels=pixels, width=width, height=height, source_id=source_id, channels=channels)
        try:
            return await self.analyze(image)
        except InvalidImageError as exc:
            logger.error("Failed to get image %s: %s", source_id, exc)
        except (SafeSightError, TimeoutError) as exc:
            logger.warning("No prediction available for %s: %s", source_id, exc)
        return None

    async def load_model(self) -> bool:
        """Run the initial load protocol; returns False instead of raising."""
        try:
            await self._models.load_model()
        except ModelLoadError as exc:
            logger.error("Unable to load model: %s", exc)
            return False
        return True

    async def update_model(self, url: str) -> UpdateOutcome:
        return await self._models.update_model(url)

    def status(self) -> LoaderStatus:
        return self._models.status()

    async def aclose(self) -> None:
        await self._remote.aclose()
        self._models.shutdown()
