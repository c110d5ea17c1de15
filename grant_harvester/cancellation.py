"""Cooperative cancellation token passed through the scrape pipeline."""

from __future__ import annotations

from threading import Event

from .errors import JobCancelledError


class CancellationToken:
    """Thread-safe flag checked by the pipeline at its suspension points."""

    def __init__(self) -> None:
        self._event = Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


__all__ = ["CancellationToken"]
