# core/progress.py
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class OperationProgress:
    """
    Progress, pause and cancellation handle shared between a long running operation and its caller.

    The operation calls `reset()` when it starts a stage, `increment()` per processed item and
    `pause_if_requested()` / `is_cancellation_requested` at its checkpoints. The caller may set
    `is_paused` or call `cancel()` from any thread.
    """

    def __init__(self, on_change: Optional[Callable[["OperationProgress"], None]] = None):
        self.on_change = on_change
        self.item_name = ""
        self.item_count = 0
        self._processed_items = 0
        self._lock = threading.Lock()
        self._resume_event = threading.Event()
        self._resume_event.set()
        self._cancel_event = threading.Event()

    # --- Stage tracking ---

    def reset(self, item_name: str = "", item_count: int = 0, processed_items: int = 0) -> None:
        with self._lock:
            self.item_name = item_name
            self.item_count = item_count
            self._processed_items = processed_items
        logger.debug(f"Progress stage: {item_name} ({processed_items}/{item_count})")
        self._notify()

    def increment(self, count: int = 1) -> int:
        with self._lock:
            self._processed_items += count
            processed = self._processed_items
        self._notify()
        return processed

    @property
    def processed_items(self) -> int:
        return self._processed_items

    @property
    def progress_percent(self) -> float:
        if self.item_count <= 0:
            return 0.0
        return round(self._processed_items * 100.0 / self.item_count, 2)

    # --- Pause / cancellation ---

    @property
    def is_paused(self) -> bool:
        return not self._resume_event.is_set()

    @is_paused.setter
    def is_paused(self, value: bool) -> None:
        if value:
            self._resume_event.clear()
        else:
            self._resume_event.set()

    def pause_if_requested(self) -> None:
        """Blocks while paused. Cancelling also releases a paused operation."""
        while not self._resume_event.is_set() and not self._cancel_event.is_set():
            self._resume_event.wait(0.1)

    def cancel(self) -> None:
        logger.info("Cancellation requested.")
        self._cancel_event.set()

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancel_event.is_set()

    def checkpoint(self) -> bool:
        """Honors a pause request, then returns True if the operation should stop."""
        self.pause_if_requested()
        return self.is_cancellation_requested

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def __str__(self) -> str:
        width = len(str(self.item_count))
        text = f"{self._processed_items:0{width}d}/{self.item_count} {self.item_name}"
        if self.item_count > 0:
            text += f" | {self.progress_percent:.2f}%"
        return text
