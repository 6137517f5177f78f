"""Sync run exceptions shared by the engine, executor and reconciler."""

import threading
from typing import Optional


class SyncError(Exception):
    """Raised when a sync run cannot complete."""
    pass


class SyncInProgressError(SyncError):
    """Raised when a sync is requested while another run is active on the same engine."""
    pass


class SyncCancelledError(SyncError):
    """Raised when the caller's cancel event fires during a run."""
    pass


def raise_if_cancelled(cancel_event: Optional[threading.Event], stage: str):
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError(f"Sync cancelled during {stage}")
