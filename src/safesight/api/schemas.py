"""Pydantic request/response schemas for the SafeSight API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float


class PredictionResponse(BaseModel):
    """Response for the predict and analyze endpoints."""

    source_id: str
    prediction: float = Field(description="Model score for the first output class")
    backend: str = Field(description="Backend that produced the score: 'local' or 'remote'")
    top_k: list[ImageTag]


class AnalyzeRequest(BaseModel):
    """Raw pixel buffer, as captured by a browser canvas or a decoder."""

    pixels: str = Field(description="Base64-encoded pixel buffer, row-major")
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    channels: int = Field(default=4, description="1 (grayscale), 3 (RGB) or 4 (RGBA)")
    source_id: str = Field(description="Where the image came from, e.g. its URL")


class UpdateModelRequest(BaseModel):
    url: str = Field(description="HTTP(S) or hf://<owner>/<repo>/<file> location of the new model")


class UpdateModelResponse(BaseModel):
    type: str = Field(description="'success' or 'error'")
    message: str
    restored_backup: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_loaded: bool
    loader_state: str
    backend: str
    concurrent_requests: int
    queue_depth: int


class ModelStatusResponse(BaseModel):
    """Model lifecycle and storage status."""

    state: str = Field(description="Loader state: 'unloaded', 'loading', 'loaded', 'updating' or 'failed'")
    source: str | None
    loaded_at: float | None
    active_stored: bool
    backup_stored: bool
    model_url: str | None


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
