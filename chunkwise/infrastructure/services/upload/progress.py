"""
Byte-accurate upload progress.
"""

import logging
import math
from typing import Callable, List

logger = logging.getLogger(__name__)

# Largest ratio reported before finalize succeeds; 1.0 is reserved for done.
MAX_PENDING_PROGRESS = math.nextafter(1.0, 0.0)

ProgressListener = Callable[[int, int, float], None]


class ProgressTracker:
    """
    Converts uploaded-byte totals into a completion ratio.

    Every chunk may be delivered while the server has not yet assembled the
    file, so ``update`` never reports exactly 1.0; only ``complete`` does.
    """

    def __init__(self, total_bytes: int = 0) -> None:
        self._total_bytes = 0
        self._uploaded_bytes = 0
        self._progress = 0.0
        self._listeners: List[ProgressListener] = []
        self.reset(total_bytes)

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    @property
    def uploaded_bytes(self) -> int:
        return self._uploaded_bytes

    @property
    def progress(self) -> float:
        return self._progress

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def reset(self, total_bytes: int = 0) -> None:
        if total_bytes < 0:
            raise ValueError(f"total_bytes cannot be negative, got {total_bytes}")
        self._total_bytes = total_bytes
        self._uploaded_bytes = 0
        self._progress = 0.0

    def update(self, uploaded_bytes: int) -> float:
        """Recompute progress from the number of bytes confirmed uploaded."""
        self._uploaded_bytes = max(0, min(uploaded_bytes, self._total_bytes))
        if self._total_bytes == 0:
            ratio = 0.0
        else:
            ratio = self._uploaded_bytes / self._total_bytes
        self._progress = min(ratio, MAX_PENDING_PROGRESS)
        self._notify()
        return self._progress

    def complete(self) -> float:
        """Mark the transfer as finalized; progress becomes exactly 1.0."""
        self._uploaded_bytes = self._total_bytes
        self._progress = 1.0
        self._notify()
        return self._progress

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._uploaded_bytes, self._total_bytes, self._progress)
            except Exception as e:
                logger.error(f"Progress listener error: {e}")
