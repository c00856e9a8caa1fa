"""Test helpers: settings builder, pixel buffers, a fake model server and fake ONNX sessions."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import numpy as np

from safesight.config import Settings

TEST_IMAGE_SIZE = 8

MODEL_URL = "http://models.test/v1.onnx"
UPDATE_URL = "http://models.test/v2.onnx"
CORRUPT_URL = "http://models.test/corrupt.onnx"
BROKEN_URL = "http://models.test/broken.onnx"
UNREACHABLE_URL = "http://unreachable.test/v1.onnx"

MODEL_ARTIFACTS: dict[str, bytes] = {
    "/v1.onnx": b"model-v1",
    "/v2.onnx": b"model-v2",
    "/corrupt.onnx": b"corrupt-model",
}


def make_settings(models_dir: Path | str, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": str(models_dir),
        "model_url": MODEL_URL,
        "image_size": TEST_IMAGE_SIZE,
        "top_k": 2,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "max_concurrent": 2,
        "remote_url": None,
        "probe_timeout": 1.0,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def rgba_pixels(width: int, height: int, seed: int = 0) -> bytes:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=width * height * 4, dtype=np.uint8).tobytes()


def model_server_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "unreachable.test":
        raise httpx.ConnectError("connection refused", request=request)
    artifact = MODEL_ARTIFACTS.get(request.url.path)
    if artifact is None:
        return httpx.Response(500, text="internal error")
    return httpx.Response(200, content=artifact)


class FakeSessionFactory:
    """Stands in for onnxruntime.InferenceSession; artifacts starting with b'corrupt' fail."""

    def __init__(self, scores: list[float] | None = None) -> None:
        self.scores = scores if scores is not None else [0.8, 0.2]
        self.created: list[MagicMock] = []

    def __call__(self, artifact: bytes, sess_options: object = None, providers: object = None) -> MagicMock:
        if artifact.startswith(b"corrupt"):
            raise RuntimeError("[ONNXRuntimeError] : 7 : INVALID_PROTOBUF : Load model from memory failed")
        session = MagicMock()
        session.artifact = artifact
        session.get_inputs.return_value = [SimpleNamespace(name="input_1", shape=[1, TEST_IMAGE_SIZE, TEST_IMAGE_SIZE, 3])]
        session.get_outputs.return_value = [SimpleNamespace(name="output")]
        session.run.return_value = [np.array([self.scores], dtype=np.float32)]
        self.created.append(session)
        return session
