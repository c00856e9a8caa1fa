"""Persistent storage for the active and backup model artifacts.

Each slot is a single file under ``models_dir``. Writes land in a temporary
file first and are moved into place with ``os.replace``, so a reader sees
either the previous artifact or the new one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from enum import StrEnum
from pathlib import Path

from safesight.ml.errors import ModelNotFoundError

logger = logging.getLogger(__name__)

ARTIFACT_SUFFIX = ".onnx"


class ModelSlot(StrEnum):
    ACTIVE = "active-model"
    BACKUP = "backup-model"


class ModelStore:
    """File-backed key-value store with exactly two model slots."""

    def __init__(self, models_dir: str | Path) -> None:
        self._root = Path(models_dir)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, slot: ModelSlot) -> Path:
        return self._root / f"{slot.value}{ARTIFACT_SUFFIX}"

    # -- Synchronous API ----------------------------------------------------

    def save(self, slot: ModelSlot, artifact: bytes) -> None:
        """Replace the contents of ``slot`` with ``artifact``."""
        target = self.path_for(slot)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{slot.value}-", suffix=".tmp", dir=self._root)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(artifact)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Saved %d bytes to slot %s", len(artifact), slot.value)

    def load(self, slot: ModelSlot) -> bytes:
        """Return the artifact stored in ``slot``.

        Raises:
            ModelNotFoundError: If the slot is empty.
        """
        try:
            return self.path_for(slot).read_bytes()
        except FileNotFoundError:
            raise ModelNotFoundError(f"No model stored in slot '{slot.value}'") from None

    def exists(self, slot: ModelSlot) -> bool:
        return self.path_for(slot).is_file()

    def copy(self, source: ModelSlot, destination: ModelSlot) -> None:
        """Copy one slot onto another, e.g. active -> backup before an update."""
        self.save(destination, self.load(source))

    def delete(self, slot: ModelSlot) -> None:
        """Remove a slot. Only called explicitly; nothing deletes the backup implicitly."""
        self.path_for(slot).unlink(missing_ok=True)
        logger.info("Deleted slot %s", slot.value)

    # -- Async wrappers -----------------------------------------------------

    async def asave(self, slot: ModelSlot, artifact: bytes) -> None:
        await asyncio.to_thread(self.save, slot, artifact)

    async def aload(self, slot: ModelSlot) -> bytes:
        return await asyncio.to_thread(self.load, slot)

    async def aexists(self, slot: ModelSlot) -> bool:
        return await asyncio.to_thread(self.exists, slot)
