"""HTTP client for a remote classification service.

Health contract: ``GET <remote_url>/health``; any 2xx means available.
Prediction: ``POST <remote_url>/predict`` with a multipart ``file`` field
holding a JPEG, answered with JSON carrying a numeric score.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Any

import httpx
import numpy as np
from PIL import Image

from safesight.ml.errors import RemoteClassificationError, RemoteUnavailableError
from safesight.ml.image_classifier import BackendKind, ClassificationResult, Prediction
from safesight.ml.preprocessing import to_pixel_grid

if TYPE_CHECKING:
    from safesight.config import Settings
    from safesight.ml.preprocessing import RawImage

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
PREDICT_PATH = "/predict"
JPEG_QUALITY = 90


def encode_jpeg(image: RawImage) -> bytes:
    """Encode a RawImage as JPEG bytes for upload."""
    grid = to_pixel_grid(image)
    buffer = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(grid)).save(buffer, format="JPEG", quality=JPEG_QUALITY)
    return buffer.getvalue()


def parse_score(payload: Any) -> float:
    """Extract the numeric score from a /predict response body.

    Accepts a bare number, a non-empty list whose first item is a number, or
    an object with a ``prediction`` or ``score`` key holding either of those.
    """
    if isinstance(payload, dict):
        for key in ("prediction", "score"):
            if key in payload:
                return parse_score(payload[key])
        raise RemoteClassificationError(f"Response has no prediction field: {sorted(payload)}")
    if isinstance(payload, list) and payload:
        return parse_score(payload[0])
    if isinstance(payload, (int, float)) and not isinstance(payload, bool):
        return float(payload)
    raise RemoteClassificationError(f"Unexpected prediction payload: {payload!r}")


class RemoteClassifier:
    """Stateless backend that forwards images to a remote /predict endpoint."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._base_url = (settings.remote_url or "").rstrip("/")
        headers = {"Authorization": f"Bearer {settings.remote_api_key}"} if settings.remote_api_key else None
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=settings.request_timeout,
            headers=headers,
        )

    @property
    def kind(self) -> BackendKind:
        return BackendKind.REMOTE

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    async def probe(self) -> bool:
        """Return True if the remote health endpoint answers with 2xx. Never raises."""
        if not self.configured:
            return False
        try:
            response = await self._client.get(
                self._base_url + HEALTH_PATH,
                timeout=self._settings.probe_timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug("Remote classifier unreachable: %s", exc)
            return False
        return response.is_success

    async def is_available(self) -> bool:
        return await self.probe()

    async def analyze(self, image: RawImage) -> Prediction:
        """Upload the image and return the remote score.

        Raises:
            InvalidImageError: If the pixel buffer is malformed.
            RemoteUnavailableError: On DNS, connection or timeout failures.
            RemoteClassificationError: On a non-2xx status or an unusable body.
        """
        if not self.configured:
            raise RemoteUnavailableError("SAFESIGHT_REMOTE_URL is not configured")

        payload = encode_jpeg(image)
        files = {"file": ("image.jpg", payload, "image/jpeg")}
        try:
            response = await self._client.post(self._base_url + PREDICT_PATH, files=files)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise RemoteUnavailableError(f"Remote classifier request failed: {exc}") from exc

        if not response.is_success:
            raise RemoteClassificationError(
                f"Remote classifier returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteClassificationError(
                "Remote classifier returned invalid JSON", status_code=response.status_code
            ) from exc

        score = parse_score(body)
        logger.debug("Remote prediction for %s: %.4f", image.source_id, score)
        return Prediction(
            source_id=image.source_id,
            score=score,
            backend=self.kind,
            top_k=_parse_top_k(body),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_top_k(body: Any) -> list[ClassificationResult]:
    if not isinstance(body, dict) or not isinstance(body.get("top_k"), list):
        return []
    results: list[ClassificationResult] = []
    for entry in body["top_k"]:
        if isinstance(entry, dict) and "label" in entry and "confidence" in entry:
            results.append(ClassificationResult(label=str(entry["label"]), confidence=float(entry["confidence"])))
    return results
