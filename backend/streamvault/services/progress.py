"""
progress plumbing between the ffmpeg reader and the job record

ffmpeg reports progress many times per second; the reader publishes into a
bounded ProgressChannel and never blocks on it (the oldest report is dropped
when full). a ProgressUpdater drains the channel on its own thread and only
persists when progress moved by at least `step` percentage points.
"""
from streamvault.core.config import settings
from typing import Callable, Iterator
import logging
import queue
import threading

logger = logging.getLogger(__name__)

_CLOSED = object()


class ProgressChannel:
    def __init__(self, maxsize: int = settings.PROGRESS_CHANNEL_SIZE):
        self._queue = queue.Queue(maxsize=max(1, maxsize))
        self.dropped = 0
        self.closed = False

    def _put(self, item) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def publish(self, percent: float) -> None:
        if self.closed:
            return
        self._put(percent)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._put(_CLOSED)

    def __iter__(self) -> Iterator[float]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


class ProgressUpdater:
    def __init__(self, persist: Callable[[int], None], step: int = settings.PROGRESS_STEP_PERCENT):
        self.persist = persist
        self.step = step
        self.last_persisted = 0
        self.writes = 0

    def offer(self, percent: float) -> bool:
        percent = max(0, min(100, int(percent)))
        finished = percent == 100 and self.last_persisted < 100
        if percent < self.last_persisted + self.step and not finished:
            return False
        try:
            self.persist(percent)
        except Exception as e:
            # progress is cosmetic, a failed write must not kill the conversion
            logger.warning(f"could not persist progress {percent}%: {e}")
            return False
        self.last_persisted = percent
        self.writes += 1
        return True

    def drain(self, channel: ProgressChannel) -> None:
        for percent in channel:
            self.offer(percent)

    def start(self, channel: ProgressChannel) -> threading.Thread:
        thread = threading.Thread(target=self.drain, args=(channel,), name="progress-updater", daemon=True)
        thread.start()
        return thread
