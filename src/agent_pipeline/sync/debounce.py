from __future__ import annotations

import threading
from collections.abc import Callable

from loguru import logger


class Debouncer:
    """Single-slot restartable timer.

    ``trigger`` cancels any pending timer and arms a new one, so a burst of
    triggers runs ``callback`` once, ``delay_seconds`` after the last one.
    """

    def __init__(
        self,
        delay_seconds: float,
        callback: Callable[[], None],
        *,
        name: str = "debounce",
    ) -> None:
        self.delay_seconds = delay_seconds
        self.callback = callback
        self.name = name
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def trigger(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            timer = threading.Timer(self.delay_seconds, self._fire, args=(generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                logger.debug(f"{self.name}: pending timer cancelled")
            self._timer = None
            self._generation += 1

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A timer that already started running may have been superseded.
            if generation != self._generation:
                return
            self._timer = None
        logger.debug(f"{self.name}: firing after {self.delay_seconds}s of quiet")
        self.callback()
