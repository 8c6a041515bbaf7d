"""
Cooperative Cancellation.

A CancellationToken is handed to a synthesis call and polled at fixed
checkpoints: once per autoregressive decode iteration and once per
Euler step. Cancelling from another thread makes the next checkpoint
raise CancelledError; work already submitted to a collaborator is not
interrupted.

Example:
    >>> token = CancellationToken()
    >>> threading.Timer(2.0, token.cancel).start()
    >>> pipeline.synthesize(text, cancel=token)  # raises CancelledError after ~2s
"""
from __future__ import annotations

import threading
from typing import Optional

from voxflow.core.errors import CancelledError


class CancellationToken:
    """Thread-safe, one-shot cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str = "request cancelled"

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Idempotent."""
        if reason:
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        """Raise CancelledError if cancel() has been called."""
        if self._event.is_set():
            details = {"checkpoint": where} if where else None
            raise CancelledError(self._reason, details)


def check_cancelled(token: Optional[CancellationToken], where: str = "") -> None:
    """Checkpoint helper that tolerates a missing token."""
    if token is not None:
        token.raise_if_cancelled(where)
