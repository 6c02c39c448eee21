"""Cancellation signals and deadlines for long-running operations."""

from __future__ import annotations

import threading
import time
from typing import Optional


class CancellationToken:
    """Cooperative cancellation flag checked between bounded units of work."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


class Deadline:
    """Absolute point on the monotonic clock."""

    def __init__(self, expires_at: float) -> None:
        self._expires_at = expires_at

    @classmethod
    def after(cls, seconds: Optional[float]) -> Optional["Deadline"]:
        if seconds is None:
            return None
        return cls(time.monotonic() + max(0.0, float(seconds)))

    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining():.3f}s)"


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled


def is_expired(deadline: Optional[Deadline]) -> bool:
    return deadline is not None and deadline.expired()
