"""Coalesced progress delivery through a bounded snapshot queue."""

from __future__ import annotations

import logging as py_logging
import queue
import threading
import time
from collections.abc import Callable

from serverdeck.download.models import ProgressSnapshot

logger = py_logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]

_STOP = object()


class ProgressReporter:
    """Feeds snapshots to ``callback`` from a dedicated reporting thread.

    ``offer`` is called from the transfer loop. Snapshots closer together than
    ``min_interval`` are coalesced; the latest one is kept and flushed on the
    next accepted offer or on ``finish``. Reported byte counts never go down,
    even when a transfer restarts from zero after a refused resume.
    """

    def __init__(
        self,
        callback: ProgressCallback | None,
        *,
        min_interval: float = 0.1,
        maxsize: int = 32,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self._min_interval = min_interval
        self._clock = clock
        self._queue: queue.Queue[object] = queue.Queue(maxsize=maxsize)
        self._last_sent_at: float | None = None
        self._high_water = 0
        self._pending: ProgressSnapshot | None = None
        self._finished = False
        self._thread: threading.Thread | None = None

    def __enter__(self) -> ProgressReporter:
        self.start()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def start(self) -> None:
        if self._callback is None or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="serverdeck-progress", daemon=True)
        self._thread.start()

    def offer(self, downloaded: int, total: int | None) -> None:
        if self._callback is None or self._finished:
            return
        self._high_water = max(self._high_water, downloaded)
        snapshot = ProgressSnapshot(downloaded=self._high_water, total=total)
        now = self._clock()
        if self._last_sent_at is not None and now - self._last_sent_at < self._min_interval:
            self._pending = snapshot
            return
        self._pending = None
        self._last_sent_at = now
        self._enqueue(snapshot, block=False)

    def finish(self, total: int | None) -> None:
        if self._callback is None or self._finished:
            return
        self._finished = True
        final_bytes = max(self._high_water, total or 0)
        self._pending = None
        self._enqueue(ProgressSnapshot(downloaded=final_bytes, total=total or final_bytes, done=True), block=True)

    def close(self) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=5)
        self._thread = None

    def _enqueue(self, snapshot: ProgressSnapshot, *, block: bool) -> None:
        try:
            self._queue.put(snapshot, block=block, timeout=5 if block else None)
        except queue.Full:
            # Consumer is behind; intermediate snapshots are disposable.
            self._pending = snapshot

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            assert isinstance(item, ProgressSnapshot)
            try:
                self._callback(item)  # type: ignore[misc]
            except Exception:
                logger.exception("Progress callback failed")
