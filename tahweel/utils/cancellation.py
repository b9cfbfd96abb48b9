"""Cooperative cancellation token shared by the splitter, orchestrator and controller."""

from __future__ import annotations

import threading

from tahweel.errors import ProcessingCancelled


class CancellationToken:
    """Flag that, once set, stays set for the lifetime of the token.

    A child token reports cancelled when either it or its parent is cancelled;
    cancelling the child never affects the parent.
    """

    def __init__(self, parent: "CancellationToken | None" = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self) -> None:
        self._event.set()

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ProcessingCancelled()


__all__ = ["CancellationToken"]
