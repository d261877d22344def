"""Errors raised by the upload pipeline."""

from __future__ import annotations


class UploadPipelineError(RuntimeError):
    """Base class for pipeline failures."""


class InputError(UploadPipelineError):
    """Raised when the caller misuses the pipeline; no request is sent."""


class AuthError(UploadPipelineError):
    """Raised when no user identity is available for the session."""


class AllUploadsFailedError(UploadPipelineError):
    """Raised when not a single image of the batch reached object storage."""

    def __init__(self, message: str, failures: list | None = None) -> None:
        self.failures = list(failures or [])
        super().__init__(message)


class ClassificationError(UploadPipelineError):
    """Raised when automatic classification returns an unexpected response."""


class ManualClassificationError(UploadPipelineError):
    """Raised when the manual category submission is not acknowledged."""


class InvalidTransitionError(UploadPipelineError):
    """Raised when a state change is not allowed from the current state."""
