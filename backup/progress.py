"""Advisory progress reporting for long copies."""
from __future__ import annotations

import threading
from typing import Callable, Optional

from core.process import ProcessError

from .logs import BackupLogger


def _gb(value: int) -> float:
    return round(value / (1024 ** 3), 2)


class ProgressSampler:
    """Poll a size probe on a fixed interval while a copy runs.

    Use as a context manager around the copy. One sample is taken on entry;
    leaving the block stops the thread and no sample is reported after
    ``__exit__`` returns, even if a probe was in flight.
    """

    def __init__(
        self,
        measure: Callable[[], int],
        *,
        total_bytes: int,
        interval: float,
        logger: BackupLogger,
        label: str,
    ) -> None:
        self._measure = measure
        self._total = max(0, int(total_bytes))
        self._interval = max(0.05, float(interval))
        self._logger = logger
        self._label = label
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._thread: Optional[threading.Thread] = None
        self.samples = 0

    def percent(self, current: int) -> float:
        if self._total <= 0:
            return 0.0
        return round(min(current, self._total) * 100.0 / self._total, 1)

    def sample(self) -> None:
        try:
            current = int(self._measure())
        except (OSError, ProcessError, ValueError):
            return
        with self._lock:
            if self._closed:
                return
            self.samples += 1
            self._logger.info(
                "progress",
                label=self._label,
                percent=self.percent(current),
                copied_gb=_gb(current),
                total_gb=_gb(self._total),
            )

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.sample()

    def start(self) -> None:
        self.sample()
        self._thread = threading.Thread(target=self._loop, name=f"progress-{self._label}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            self._closed = True
        if self._thread is not None:
            self._thread.join(timeout=self._interval + 1.0)
            self._thread = None

    def __enter__(self) -> "ProgressSampler":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.stop()
        return False


__all__ = ["ProgressSampler"]
