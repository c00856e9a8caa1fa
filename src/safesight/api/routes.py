"""API route definitions."""

from __future__ import annotations

import base64
import binascii
import io
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from PIL import Image, UnidentifiedImageError

from safesight.api.middleware import enforce_upload_size, get_settings_from_request, verify_api_key
from safesight.api.schemas import (
    AnalyzeRequest,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelStatusResponse,
    PredictionResponse,
    UpdateModelRequest,
    UpdateModelResponse,
)
from safesight.ml.errors import InvalidImageError, SafeSightError
from safesight.ml.preprocessing import RawImage

if TYPE_CHECKING:
    from safesight.config import Settings
    from safesight.ml.image_classifier import Prediction
    from safesight.ml.inference import InferencePool
    from safesight.service import ClassificationService

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])
public_router = APIRouter(prefix="/api/v1")

_PIL_CHANNELS = {"L": 1, "RGB": 3, "RGBA": 4}


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_service(request: Request) -> ClassificationService:
    service: ClassificationService = request.app.state.service
    return service


def _decode_upload(data: bytes, filename: str, settings: Settings) -> RawImage:
    """Decode an uploaded image file into a RawImage with Pillow."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.width * img.height > settings.max_image_pixels:
                raise InvalidImageError(f"Image {filename} exceeds {settings.max_image_pixels} pixels")
            if img.mode not in _PIL_CHANNELS:
                img = img.convert("RGB")
            img.load()
            return RawImage(
                pixels=img.tobytes(),
                width=img.width,
                height=img.height,
                source_id=filename,
                channels=_PIL_CHANNELS[img.mode],
            )
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise InvalidImageError(f"Could not decode {filename}: {exc}") from exc


def _to_response(prediction: Prediction) -> PredictionResponse:
    return PredictionResponse(
        source_id=prediction.source_id,
        prediction=prediction.score,
        backend=prediction.backend.value,
        top_k=[ImageTag(label=r.label, confidence=r.confidence) for r in prediction.top_k],
    )


async def _classify(service: ClassificationService, image: RawImage) -> PredictionResponse:
    try:
        prediction = await service.analyze(image)
    except InvalidImageError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except (SafeSightError, TimeoutError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc) or "Classification backend unavailable",
        ) from exc
    return _to_response(prediction)


@router.post(
    "/predict",
    response_model=PredictionResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an uploaded image file",
)
async def predict(request: Request, file: UploadFile) -> PredictionResponse:
    """Decode an uploaded image and return its safety score."""
    settings = get_settings_from_request(request)
    enforce_upload_size(request, file.size)
    data = await file.read()
    enforce_upload_size(request, len(data))

    try:
        image = _decode_upload(data, file.filename or "upload", settings)
    except InvalidImageError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return await _classify(_get_service(request), image)


@router.post(
    "/analyze",
    response_model=PredictionResponse,
    responses={
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a raw pixel buffer",
)
async def analyze(request: Request, body: AnalyzeRequest) -> PredictionResponse:
    """Classify a base64 pixel buffer captured by the caller."""
    settings = get_settings_from_request(request)
    if body.width * body.height > settings.max_image_pixels:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Image {body.source_id} exceeds {settings.max_image_pixels} pixels",
        )
    try:
        pixels = base64.b64decode(body.pixels, validate=True)
    except binascii.Error as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid base64 pixels") from exc

    image = RawImage(
        pixels=pixels,
        width=body.width,
        height=body.height,
        source_id=body.source_id,
        channels=body.channels,
    )
    return await _classify(_get_service(request), image)


@router.get(
    "/models",
    response_model=ModelStatusResponse,
    summary="Model lifecycle status",
)
async def model_status(request: Request) -> ModelStatusResponse:
    """Return loader state and which storage slots hold a model."""
    settings = get_settings_from_request(request)
    current = _get_service(request).status()
    return ModelStatusResponse(
        state=current.state.value,
        source=current.source,
        loaded_at=current.loaded_at,
        active_stored=current.active_stored,
        backup_stored=current.backup_stored,
        model_url=settings.model_url,
    )


@router.post(
    "/models/update",
    response_model=UpdateModelResponse,
    summary="Replace the active model",
)
async def update_model(request: Request, body: UpdateModelRequest) -> UpdateModelResponse:
    """Fetch a new model; on failure the previous model (or its backup) keeps serving."""
    outcome = await _get_service(request).update_model(body.url)
    return UpdateModelResponse(
        type=outcome.type.value,
        message=outcome.message,
        restored_backup=outcome.restored_backup,
    )


@router.post(
    "/models/reload",
    response_model=ModelStatusResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Re-run the startup load",
)
async def reload_model(request: Request) -> ModelStatusResponse:
    """Load the stored active model, or fetch the configured one."""
    if not await _get_service(request).load_model():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to load model from storage or server",
        )
    return await model_status(request)


@public_router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings_from_request(request)
    pool = _get_inference_pool(request)
    models = _get_service(request).models
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_loaded=models.is_loaded,
        loader_state=models.state.value,
        backend=settings.backend,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
