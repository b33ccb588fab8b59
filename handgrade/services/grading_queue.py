"""
Process-wide admission queue for grading requests.

At most ``max_concurrency`` requests grade at once; up to
``max_queue_length`` more wait their turn in arrival order, and anything
beyond that is turned away with QueueFullError. A request that waits
longer than ``wait_timeout_seconds`` gives up its place the same way.
"""
import logging
import threading
import time
from collections import deque
from typing import Optional

from handgrade.errors import QueueFullError

logger = logging.getLogger(__name__)


class GradingQueue:

    def __init__(self, max_concurrency: int = 2, max_queue_length: int = 3,
                 wait_timeout_seconds: Optional[float] = None):
        self.max_concurrency = max(1, max_concurrency)
        self.max_queue_length = max(0, max_queue_length)
        self.wait_timeout_seconds = wait_timeout_seconds
        self._active = 0
        self._waiting = deque()
        self._cond = threading.Condition()

    @classmethod
    def from_config(cls, settings):
        return cls(settings.grading_queue_concurrency, settings.grading_queue_max_length,
                   wait_timeout_seconds=settings.grading_queue_wait_seconds)

    def run(self, fn, *args, **kwargs):
        """Run ``fn`` once a slot is free; raise QueueFullError if the line is full or the wait times out."""
        with self._cond:
            if self._active >= self.max_concurrency or self._waiting:
                self._wait_for_slot()
            self._active += 1

        try:
            return fn(*args, **kwargs)
        finally:
            with self._cond:
                self._active -= 1
                self._cond.notify_all()

    def _wait_for_slot(self):
        # Caller holds the condition
        if len(self._waiting) >= self.max_queue_length:
            logger.warning("Grading queue full (%d active, %d waiting)", self._active, len(self._waiting))
            raise QueueFullError("The grading server is busy. Please try again shortly.")

        ticket = object()
        self._waiting.append(ticket)
        logger.info("Grading request queued at position %d", len(self._waiting))
        deadline = None
        if self.wait_timeout_seconds is not None:
            deadline = time.monotonic() + self.wait_timeout_seconds
        try:
            while self._waiting[0] is not ticket or self._active >= self.max_concurrency:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Grading request gave up after waiting %gs in the queue",
                                   self.wait_timeout_seconds)
                    raise QueueFullError("The grading server is busy. Please try again shortly.")
                self._cond.wait(remaining)
        finally:
            self._waiting.remove(ticket)
            self._cond.notify_all()

    def state(self) -> dict:
        with self._cond:
            return {
                "activeCount": self._active,
                "queuedCount": len(self._waiting),
                "maxConcurrency": self.max_concurrency,
                "maxQueueLength": self.max_queue_length,
            }
