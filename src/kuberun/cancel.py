"""Cancellation tokens passed explicitly to every long-running task.

A run has two tiers of cancellation: the caller's token (abort now, skip
drains) and a "job finished" token derived from it (wrap up gracefully).
Deriving is explicit via ``child()`` so nothing is cancelled by accident.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable


class OperationCancelled(Exception):
    """Raised when a token fires while an operation is waiting on it."""


class CancelToken:
    """One-shot cancellation signal backed by an ``asyncio.Event``."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Fire the token. Idempotent; callbacks run once, synchronously."""
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    async def wait(self) -> None:
        await self._event.wait()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run *callback* when the token fires (immediately if it already has).

        Returns an unregister function.
        """
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _unregister() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return _unregister

    def child(self, name: str = "") -> CancelToken:
        """Return a token that fires when this one does, or on its own."""
        token = CancelToken(name)
        unregister = self.on_cancel(token.cancel)
        token.on_cancel(unregister)
        return token

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds; raise OperationCancelled if the token fires first."""
        if self.cancelled:
            raise OperationCancelled(self.name)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        if self.cancelled:
            raise OperationCancelled(self.name)

    def __repr__(self) -> str:
        return f"CancelToken(name={self.name!r}, cancelled={self.cancelled})"
