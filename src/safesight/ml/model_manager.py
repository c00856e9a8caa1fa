"""Model manager: fetch, persist, load, and hot-swap the ONNX classifier.

Owns the single in-memory ``ModelState`` and the backup/rollback protocol
around it. Loads and updates are serialized by a write lock and tracked by
an explicit ``LoaderState`` with a table of allowed transitions. Readers
never take the lock: they grab the current ``ModelState`` reference, which
is immutable once published.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import httpx
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from safesight.ml.errors import (
    IllegalTransitionError,
    ModelLoadError,
    ModelNotFoundError,
    ModelNotLoadedError,
    UpdateFailedError,
)
from safesight.ml.model_store import ModelSlot
from safesight.ml.preprocessing import zeros_tensor

if TYPE_CHECKING:
    from safesight.config import Settings
    from safesight.ml.inference import InferencePool
    from safesight.ml.model_store import ModelStore

logger = logging.getLogger(__name__)

HF_SCHEME = "hf://"


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelProvider(Protocol):
    """What the local classifier needs from the model manager."""

    @property
    def model(self) -> ModelState | None:
        """Return the currently published model, if any."""
        ...

    def get_model(self) -> ModelState:
        """Return the current model or raise ModelNotLoadedError."""
        ...


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class LoaderState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    UPDATING = "updating"
    FAILED = "failed"


_TRANSITIONS: dict[LoaderState, frozenset[LoaderState]] = {
    LoaderState.UNLOADED: frozenset({LoaderState.LOADING, LoaderState.UPDATING}),
    LoaderState.LOADING: frozenset({LoaderState.LOADED, LoaderState.UNLOADED}),
    LoaderState.LOADED: frozenset({LoaderState.LOADING, LoaderState.UPDATING}),
    LoaderState.UPDATING: frozenset({LoaderState.LOADED, LoaderState.FAILED}),
    LoaderState.FAILED: frozenset({LoaderState.LOADING, LoaderState.UPDATING}),
}


@dataclass(frozen=True)
class ModelState:
    """A loaded, ready-to-run model. Replaced as a whole, never mutated."""

    session: InferenceSession
    input_name: str
    artifact: bytes
    source: str
    loaded_at: float


class OutcomeType(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class UpdateOutcome:
    """Result of an update attempt, reported to the caller instead of raising."""

    type: OutcomeType
    message: str
    restored_backup: bool = False
    error: UpdateFailedError | None = None

    @property
    def ok(self) -> bool:
        return self.type is OutcomeType.SUCCESS


@dataclass(frozen=True)
class LoaderStatus:
    state: LoaderState
    source: str | None
    loaded_at: float | None
    active_stored: bool
    backup_stored: bool


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Loads the classifier from storage or a remote URL and swaps it safely."""

    def __init__(
        self,
        settings: Settings,
        store: ModelStore,
        pool: InferencePool,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._pool = pool
        self._transport = transport

        self._write_lock = asyncio.Lock()
        self._status = LoaderState.UNLOADED
        self._model: ModelState | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> LoaderState:
        return self._status

    @property
    def model(self) -> ModelState | None:
        return self._model

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def get_model(self) -> ModelState:
        model = self._model
        if model is None:
            raise ModelNotLoadedError("No classification model is loaded")
        return model

    def status(self) -> LoaderStatus:
        model = self._model
        return LoaderStatus(
            state=self._status,
            source=model.source if model else None,
            loaded_at=model.loaded_at if model else None,
            active_stored=self._store.exists(ModelSlot.ACTIVE),
            backup_stored=self._store.exists(ModelSlot.BACKUP),
        )

    async def load_model(self) -> ModelState:
        """Load the active model from storage, falling back to the configured URL.

        Raises:
            ModelLoadError: If neither storage nor the remote URL yields a usable model.
        """
        async with self._write_lock:
            self._transition(LoaderState.LOADING)
            try:
                model = await self._load_stored_or_remote()
            except BaseException:
                self._transition(LoaderState.LOADED if self._model is not None else LoaderState.UNLOADED)
                raise
            self._publish(model)
            self._transition(LoaderState.LOADED)
            await self._warm_up(model)
            return model

    async def update_model(self, url: str) -> UpdateOutcome:
        """Replace the active model with the one at ``url``, rolling back on failure."""
        async with self._write_lock:
            self._transition(LoaderState.UPDATING)
            try:
                return await self._run_update(url)
            finally:
                if self._status is LoaderState.UPDATING:
                    self._transition(LoaderState.FAILED)

    def shutdown(self) -> None:
        """Drop the in-memory session."""
        self._model = None
        logger.info("Model session released")

    # -- Load / update protocol ---------------------------------------------

    async def _load_stored_or_remote(self) -> ModelState:
        try:
            artifact = await self._store.aload(ModelSlot.ACTIVE)
            model = await self._deserialize(artifact, source=f"store:{ModelSlot.ACTIVE.value}")
        except ModelNotFoundError:
            logger.debug("Model not found in storage, loading from server")
        except (ModelLoadError, OSError) as exc:
            logger.warning("Stored model is unusable (%s), loading from server", exc)
        else:
            logger.info("Model loaded from storage")
            return model

        url = self._settings.model_url
        if not url:
            raise ModelLoadError("No stored model and SAFESIGHT_MODEL_URL is not configured")

        try:
            artifact = await self._fetch_artifact(url)
            model = await self._deserialize(artifact, source=url)
        except ModelLoadError:
            logger.warning("Unable to load model from server %s", url)
            raise
        await self._persist(artifact)
        logger.info("Model loaded from server and saved to storage")
        return model

    async def _run_update(self, url: str) -> UpdateOutcome:
        await self._back_up_current()

        try:
            artifact = await self._fetch_artifact(url)
            model = await self._deserialize(artifact, source=url)
        except ModelLoadError as exc:
            error = UpdateFailedError(f"Update from {url} failed: {exc}")
            logger.warning("%s", error)
            return await self._restore_backup(error)

        await self._persist(artifact)
        self._publish(model)
        self._transition(LoaderState.LOADED)
        await self._warm_up(model)
        logger.info("Model successfully updated from %s", url)
        return UpdateOutcome(type=OutcomeType.SUCCESS, message="Model successfully updated")

    async def _back_up_current(self) -> None:
        current = self._model
        try:
            if current is not None:
                await self._store.asave(ModelSlot.BACKUP, current.artifact)
            elif await self._store.aexists(ModelSlot.ACTIVE):
                await asyncio.to_thread(self._store.copy, ModelSlot.ACTIVE, ModelSlot.BACKUP)
            else:
                logger.debug("No current model to back up")
        except (ModelNotFoundError, OSError) as exc:
            logger.warning("Could not back up the current model: %s", exc)

    async def _restore_backup(self, error: UpdateFailedError) -> UpdateOutcome:
        try:
            artifact = await self._store.aload(ModelSlot.BACKUP)
            model = await self._deserialize(artifact, source=f"store:{ModelSlot.BACKUP.value}")
        except (ModelLoadError, ModelNotFoundError, OSError) as exc:
            logger.error("Unable to load model from the server or backup: %s", exc)
            self._transition(LoaderState.FAILED)
            return UpdateOutcome(
                type=OutcomeType.ERROR,
                message="Unable to load model from the server or backup",
                error=error,
            )

        self._publish(model)
        self._transition(LoaderState.LOADED)
        await self._warm_up(model)
        logger.warning("Couldn't update the model. Backup loaded from storage")
        return UpdateOutcome(
            type=OutcomeType.ERROR,
            message="Couldn't update the model. Backup loaded",
            restored_backup=True,
            error=error,
        )

    # -- Internal -----------------------------------------------------------

    def _transition(self, target: LoaderState) -> None:
        if target not in _TRANSITIONS[self._status]:
            raise IllegalTransitionError(f"Cannot move model loader from {self._status} to {target}")
        logger.debug("Model loader %s -> %s", self._status, target)
        self._status = target

    def _publish(self, model: ModelState) -> None:
        self._model = model
        logger.info("Serving model from %s", model.source)

    async def _persist(self, artifact: bytes) -> None:
        try:
            await self._store.asave(ModelSlot.ACTIVE, artifact)
        except OSError as exc:
            # The model is valid and already in memory; only the restart path loses it.
            logger.error("Could not persist model to storage: %s", exc)

    async def _warm_up(self, model: ModelState) -> None:
        if not self._settings.warmup:
            return
        try:
            await self._pool.infer(model.session, model.input_name, zeros_tensor(self._settings.image_size))
        except Exception:
            logger.warning("Model warm-up failed", exc_info=True)
        else:
            logger.debug("Model warm-up complete")

    async def _fetch_artifact(self, url: str) -> bytes:
        if url.startswith(HF_SCHEME):
            return await self._fetch_from_hub(url)

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self._settings.request_timeout,
                follow_redirects=True,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ModelLoadError(f"Model download from {url} returned HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ModelLoadError(f"Model download from {url} failed: {exc}") from exc

        if not response.content:
            raise ModelLoadError(f"Model download from {url} returned an empty body")
        logger.info("Downloaded %d bytes from %s", len(response.content), url)
        return response.content

    async def _fetch_from_hub(self, url: str) -> bytes:
        repo_id, filename = _parse_hub_url(url)
        try:
            downloaded = await asyncio.to_thread(
                hf_hub_download,
                repo_id=repo_id,
                filename=filename,
                local_dir=str(self._store.root / "hub"),
            )
            artifact = await asyncio.to_thread(Path(downloaded).read_bytes)
        except Exception as exc:
            raise ModelLoadError(f"Model download from {url} failed: {exc}") from exc
        logger.info("Downloaded %s from %s", filename, repo_id)
        return artifact

    async def _deserialize(self, artifact: bytes, source: str) -> ModelState:
        return await asyncio.to_thread(self._build_model, artifact, source)

    def _build_model(self, artifact: bytes, source: str) -> ModelState:
        try:
            session = InferenceSession(
                artifact,
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:
            raise ModelLoadError(f"Model from {source} could not be deserialized: {exc}") from exc

        inputs = session.get_inputs()
        if not inputs or not session.get_outputs():
            raise ModelLoadError(f"Model from {source} has no inputs or outputs")

        return ModelState(
            session=session,
            input_name=inputs[0].name,
            artifact=artifact,
            source=source,
            loaded_at=time.time(),
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


def _parse_hub_url(url: str) -> tuple[str, str]:
    """Split ``hf://<owner>/<repo>/<path/to/file>`` into repo id and filename."""
    parts = url[len(HF_SCHEME) :].split("/", 2)
    if len(parts) != 3 or not all(parts):
        raise ModelLoadError(f"Invalid Hugging Face model URL: {url}")
    owner, repo, filename = parts
    return f"{owner}/{repo}", filename
