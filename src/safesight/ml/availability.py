"""Non-throwing, time-boxed availability checks for classification backends."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from safesight.ml.image_classifier import Classifier

logger = logging.getLogger(__name__)


class AvailabilityProbe:
    """Asks a backend whether it can serve right now; a timeout means no."""

    def __init__(self, timeout: float) -> None:
        self._timeout = timeout

    async def is_available(self, backend: Classifier) -> bool:
        try:
            return await asyncio.wait_for(backend.is_available(), timeout=self._timeout)
        except TimeoutError:
            logger.info("Availability check for %s backend timed out after %.1fs", backend.kind, self._timeout)
            return False
        except Exception:
            logger.warning("Availability check for %s backend failed", backend.kind, exc_info=True)
            return False
