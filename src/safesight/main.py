"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

    from safesight.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from safesight.api.routes import public_router, router
from safesight.config import get_settings
from safesight.ml.availability import AvailabilityProbe
from safesight.ml.image_classifier import LocalClassifier
from safesight.ml.inference import InferencePool
from safesight.ml.model_manager import OnnxModelManager
from safesight.ml.model_store import ModelStore
from safesight.ml.remote_classifier import RemoteClassifier
from safesight.service import ClassificationService

logger = logging.getLogger(__name__)


def build_service(
    settings: Settings,
    pool: InferencePool,
    model_transport: httpx.AsyncBaseTransport | None = None,
    remote_transport: httpx.AsyncBaseTransport | None = None,
) -> ClassificationService:
    """Construct the model manager, both backends, and the service around them."""
    store = ModelStore(settings.models_dir)
    models = OnnxModelManager(settings, store, pool, transport=model_transport)
    return ClassificationService(
        settings,
        models=models,
        local=LocalClassifier(settings, models, pool),
        remote=RemoteClassifier(settings, transport=remote_transport),
        probe=AvailabilityProbe(settings.probe_timeout),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SafeSight (device=%s, max_concurrent=%s, backend=%s, models_dir=%s)",
        settings.device,
        settings.max_concurrent,
        settings.backend,
        settings.models_dir,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    service = build_service(settings, inference_pool)
    app.state.service = service

    if not await service.load_model():
        logger.warning("Starting without a local model; classification depends on the remote backend")

    logger.info("SafeSight ready")
    yield

    logger.info("Shutting down SafeSight")
    await service.aclose()
    inference_pool.shutdown()
    logger.info("SafeSight shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SafeSight",
        description="Image safety classification with a hot-swappable local model and a remote fallback",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(public_router)
    application.include_router(router)
    return application


app = create_app()
