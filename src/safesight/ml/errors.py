"""Exception types for the classification pipeline.

Service and API code catch these at component boundaries and translate them
into typed outcomes or HTTP responses.
"""

from __future__ import annotations


class SafeSightError(Exception):
    """Base class for all SafeSight errors."""


class ModelNotFoundError(SafeSightError):
    """Raised when a storage slot holds no model artifact."""


class ModelLoadError(SafeSightError):
    """Raised when a model artifact cannot be fetched or deserialized."""


class UpdateFailedError(ModelLoadError):
    """Raised when fetching or validating an updated model fails."""


class ModelNotLoadedError(SafeSightError):
    """Raised when local inference is requested before any model is loaded."""


class InvalidImageError(SafeSightError):
    """Raised for malformed image input (empty, undersized, bad dimensions)."""


class RemoteUnavailableError(SafeSightError):
    """Raised when the remote classification service cannot be reached."""


class RemoteClassificationError(SafeSightError):
    """Raised when the remote service answers with an error or unusable body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IllegalTransitionError(SafeSightError):
    """Raised when the model loader is asked for a state change it does not allow."""


class InferenceError(SafeSightError):
    """Raised when a loaded model fails during a forward pass."""
