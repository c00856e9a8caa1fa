"""Shared fixtures: settings, fake ONNX sessions, and a fake model server."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import patch

import httpx
import pytest

from safesight.config import Settings
from safesight.ml.inference import InferencePool
from safesight.ml.model_manager import OnnxModelManager
from safesight.ml.model_store import ModelStore

from helpers import FakeSessionFactory, make_settings, model_server_handler

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path / "models")


@pytest.fixture()
def fake_sessions() -> Iterator[FakeSessionFactory]:
    factory = FakeSessionFactory()
    with patch("safesight.ml.model_manager.InferenceSession", new=factory):
        yield factory


@pytest.fixture()
def model_transport() -> httpx.MockTransport:
    return httpx.MockTransport(model_server_handler)


@pytest.fixture()
def pool(settings: Settings) -> Iterator[InferencePool]:
    inference_pool = InferencePool(settings)
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def store(settings: Settings) -> ModelStore:
    return ModelStore(settings.models_dir)


@pytest.fixture()
def manager(
    settings: Settings,
    store: ModelStore,
    pool: InferencePool,
    model_transport: httpx.MockTransport,
    fake_sessions: FakeSessionFactory,
) -> OnnxModelManager:
    return OnnxModelManager(settings, store, pool, transport=model_transport)
