"""Tests for the SafeSight HTTP API."""

from __future__ import annotations

import base64
import io
import os
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from safesight.config import get_settings
from safesight.main import build_service, create_app
from safesight.ml.inference import InferencePool
from helpers import BROKEN_URL, MODEL_URL, TEST_IMAGE_SIZE, UPDATE_URL, FakeSessionFactory, model_server_handler


def _init_app_state(app: FastAPI, models_dir: Path, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env = {
        "SAFESIGHT_MODELS_DIR": str(models_dir),
        "SAFESIGHT_MODEL_URL": MODEL_URL,
        "SAFESIGHT_IMAGE_SIZE": str(TEST_IMAGE_SIZE),
        "SAFESIGHT_FALLBACK_ENABLED": "false",
        **env_overrides,
    }
    with patch.dict(os.environ, env):
        settings = get_settings()
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.service = build_service(
        settings,
        app.state.inference_pool,
        model_transport=httpx.MockTransport(model_server_handler),
    )


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    await app.state.service.aclose()
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png_bytes(mode: str = "RGB", size: tuple[int, int] = (20, 12)) -> bytes:
    color = 128 if mode == "L" else (200, 30, 30, 255)[: len(mode)]
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def app(tmp_path: Path, fake_sessions: FakeSessionFactory) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, tmp_path / "models")
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


@pytest.fixture()
async def loaded_client(app: FastAPI, client: httpx.AsyncClient) -> httpx.AsyncClient:
    assert await app.state.service.load_model()
    return client


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["model_loaded"] is False
        assert data["loader_state"] == "unloaded"
        assert data["backend"] == "local"
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_reports_loaded_model(self, loaded_client: httpx.AsyncClient) -> None:
        data = (await loaded_client.get("/api/v1/health")).json()
        assert data["model_loaded"] is True
        assert data["loader_state"] == "loaded"

    async def test_health_gpu_true_when_cuda(self, tmp_path: Path, fake_sessions: FakeSessionFactory) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, tmp_path / "models", SAFESIGHT_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestPredictEndpoint:
    async def test_predict_uploaded_png(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post(
            "/api/v1/predict",
            files={"file": ("cat.png", _png_bytes(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["source_id"] == "cat.png"
        assert data["backend"] == "local"
        assert 0.0 <= data["prediction"] <= 1.0
        assert len(data["top_k"]) == 2

    @pytest.mark.parametrize("mode", ["L", "RGBA", "P"])
    async def test_predict_other_modes(self, loaded_client: httpx.AsyncClient, mode: str) -> None:
        image = Image.new("RGB", (9, 9), (10, 20, 30)).convert(mode)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        response = await loaded_client.post(
            "/api/v1/predict",
            files={"file": ("img.png", buffer.getvalue(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK

    async def test_predict_rejects_undecodable_file(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post(
            "/api/v1/predict",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert "could not decode" in response.json()["detail"].lower()

    async def test_predict_without_model_is_503(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/predict",
            files={"file": ("cat.png", _png_bytes(), "image/png")},
        )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_predict_inference_failure_is_503(
        self, loaded_client: httpx.AsyncClient, fake_sessions: FakeSessionFactory
    ) -> None:
        fake_sessions.created[-1].run.side_effect = RuntimeError("INVALID_ARGUMENT")
        response = await loaded_client.post(
            "/api/v1/predict",
            files={"file": ("cat.png", _png_bytes(), "image/png")},
        )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_predict_rejects_large_upload(self, tmp_path: Path, fake_sessions: FakeSessionFactory) -> None:
        small_app = create_app()
        _init_app_state(small_app, tmp_path / "models", SAFESIGHT_MAX_FILE_SIZE="16")
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/predict",
                files={"file": ("cat.png", _png_bytes(), "image/png")},
            )
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class TestAnalyzeEndpoint:
    async def test_analyze_raw_pixels(self, loaded_client: httpx.AsyncClient) -> None:
        pixels = bytes(range(4 * 4 * 4))
        response = await loaded_client.post(
            "/api/v1/analyze",
            json={
                "pixels": base64.b64encode(pixels).decode(),
                "width": 4,
                "height": 4,
                "source_id": "https://example.com/a.png",
            },
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["source_id"] == "https://example.com/a.png"

    async def test_analyze_short_buffer_is_422(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post(
            "/api/v1/analyze",
            json={"pixels": base64.b64encode(b"\x00" * 10).decode(), "width": 4, "height": 4, "source_id": "x"},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    async def test_analyze_rejects_too_many_pixels(self, tmp_path: Path, fake_sessions: FakeSessionFactory) -> None:
        small_app = create_app()
        _init_app_state(small_app, tmp_path / "models", SAFESIGHT_MAX_IMAGE_PIXELS="16")
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/analyze",
                json={
                    "pixels": base64.b64encode(bytes(5 * 5 * 4)).decode(),
                    "width": 5,
                    "height": 5,
                    "source_id": "big",
                },
            )
            assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
            assert "exceeds 16 pixels" in response.json()["detail"]

    async def test_analyze_bad_base64_is_422(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post(
            "/api/v1/analyze",
            json={"pixels": "not base64!", "width": 1, "height": 1, "source_id": "x"},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestModelEndpoints:
    async def test_models_status_before_load(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "unloaded"
        assert data["active_stored"] is False
        assert data["backup_stored"] is False
        assert data["model_url"] == MODEL_URL

    async def test_update_success(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post("/api/v1/models/update", json={"url": UPDATE_URL})
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"type": "success", "message": "Model successfully updated", "restored_backup": False}

        models = (await loaded_client.get("/api/v1/models")).json()
        assert models["source"] == UPDATE_URL
        assert models["backup_stored"] is True

    async def test_update_failure_keeps_serving(self, loaded_client: httpx.AsyncClient) -> None:
        response = await loaded_client.post("/api/v1/models/update", json={"url": BROKEN_URL})
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["type"] == "error"
        assert data["restored_backup"] is True

        predict = await loaded_client.post(
            "/api/v1/predict",
            files={"file": ("cat.png", _png_bytes(), "image/png")},
        )
        assert predict.status_code == status.HTTP_200_OK

    async def test_reload(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/models/reload")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "loaded"

    async def test_reload_failure_is_503(self, tmp_path: Path, fake_sessions: FakeSessionFactory) -> None:
        broken_app = create_app()
        _init_app_state(broken_app, tmp_path / "models", SAFESIGHT_MODEL_URL=BROKEN_URL)
        async for ac in _make_client(broken_app):
            response = await ac.post("/api/v1/models/reload")
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path, fake_sessions: FakeSessionFactory) -> None:
        app = create_app()
        _init_app_state(app, tmp_path / "models", SAFESIGHT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_health_is_public(self, tmp_path: Path, fake_sessions: FakeSessionFactory) -> None:
        app = create_app()
        _init_app_state(app, tmp_path / "models", SAFESIGHT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_passes_with_correct_key(self, tmp_path: Path, fake_sessions: FakeSessionFactory) -> None:
        app = create_app()
        _init_app_state(app, tmp_path / "models", SAFESIGHT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/models",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, tmp_path: Path, fake_sessions: FakeSessionFactory) -> None:
        app = create_app()
        _init_app_state(app, tmp_path / "models", SAFESIGHT_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/models/update",
                json={"url": UPDATE_URL},
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
