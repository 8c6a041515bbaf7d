"""
Error Codes and Exception Hierarchy.

Every failure surfaced by voxflow is a VoxflowError carrying a stable
error code, a human-readable message and optional details. The CLI
prints to_dict() output; library callers can match on either the class
or the code.

Hierarchy:
    VoxflowError
        NotLoadedError        - component used before load()
        NotFoundError         - tokenizer/model file missing (also FileNotFoundError)
        InvalidArgumentError  - bad input shape or value (also ValueError)
            StepOutOfRangeError - Euler step index outside [0, N) (also IndexError)
        DisposedError         - component used after close()
        ModelInvocationError  - a ModelCollaborator evaluation failed
        CancelledError        - cancellation token observed mid-request

No component retries internally: collaborator failures propagate
unchanged (wrapped once, original chained as __cause__).
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    """Standardized error codes returned by VoxflowError.to_dict()."""
    NOT_LOADED = "NOT_LOADED"               # Tokenizer/component not loaded
    NOT_FOUND = "NOT_FOUND"                 # Required file missing
    INVALID_ARGUMENT = "INVALID_ARGUMENT"   # Bad input
    OUT_OF_RANGE = "OUT_OF_RANGE"           # Index outside valid range
    DISPOSED = "DISPOSED"                   # Component already closed
    MODEL_FAILED = "MODEL_FAILED"           # Collaborator evaluation error
    CANCELLED = "CANCELLED"                 # Request cancelled
    INTERNAL_ERROR = "INTERNAL_ERROR"       # Unexpected error


class VoxflowError(Exception):
    """
    Base exception for voxflow errors.

    Attributes:
        message: Human-readable error message.
        code: Error code from ErrorCode class.
        details: Optional dictionary with additional context.
    """
    def __init__(self, message: str, code: str = ErrorCode.INTERNAL_ERROR, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a standardized error dict."""
        result = {
            "ok": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class NotLoadedError(VoxflowError):
    """Raised when a component is used before its data has been loaded."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.NOT_LOADED, details)


class NotFoundError(VoxflowError, FileNotFoundError):
    """Raised when a required tokenizer or model file does not exist."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.NOT_FOUND, details)


class InvalidArgumentError(VoxflowError, ValueError):
    """Raised for empty inputs, size mismatches and out-of-bounds parameters."""
    def __init__(self, message: str, details: Optional[Dict] = None, code: str = ErrorCode.INVALID_ARGUMENT):
        super().__init__(message, code, details)


class StepOutOfRangeError(InvalidArgumentError, IndexError):
    """Raised when an integration step index is outside [0, N)."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, details, code=ErrorCode.OUT_OF_RANGE)


class DisposedError(VoxflowError):
    """Raised when a component is used after close()."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.DISPOSED, details)


class ModelInvocationError(VoxflowError):
    """
    Raised when a ModelCollaborator evaluation fails or returns an
    unusable result.

    Attributes:
        stage: Name of the collaborator stage that failed.
    """
    def __init__(self, message: str, stage: str = "", details: Optional[Dict] = None):
        self.stage = stage
        details = dict(details or {})
        if stage:
            details.setdefault("stage", stage)
        super().__init__(message, ErrorCode.MODEL_FAILED, details)


class CancelledError(VoxflowError):
    """Raised when a request observes its cancellation token."""
    def __init__(self, message: str = "request cancelled", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CANCELLED, details)
