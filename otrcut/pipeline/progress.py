from __future__ import annotations

import threading
from enum import Enum
from typing import Callable


class Stage(str, Enum):
    DECODE = "decode"
    ACQUIRE = "acquire"
    APPLY = "apply"


ProgressListener = Callable[[str, "Stage", int], None]

AUTO_INCREMENT_STEP = 5
AUTO_INCREMENT_INTERVAL_SECONDS = 0.5


class ProgressHandle:
    """Percent progress of one (video, stage) pair; only ever moves forward."""

    def __init__(self, key: str, stage: Stage, listener: ProgressListener | None = None) -> None:
        self.key = key
        self.stage = stage
        self.percent = 0
        self._listener = listener

    @property
    def done(self) -> bool:
        return self.percent >= 100

    def set(self, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        if percent <= self.percent:
            return
        self.percent = percent
        if self._listener is not None:
            self._listener(self.key, self.stage, percent)

    def advance(self, step: int) -> None:
        self.set(min(self.percent + step, 99))

    def complete(self) -> None:
        self.set(100)

    def ticking(self, interval_seconds: float = AUTO_INCREMENT_INTERVAL_SECONDS) -> "_Ticker":
        """Advance automatically while the block runs; complete on exit."""

        return _Ticker(self, interval_seconds)


class ProgressRegistry:
    """Maps (video key, stage) to its progress handle, creating handles lazily."""

    def __init__(self, listener: ProgressListener | None = None) -> None:
        self._listener = listener
        self._handles: dict[tuple[str, Stage], ProgressHandle] = {}
        self._lock = threading.Lock()

    def handle(self, key: str, stage: Stage) -> ProgressHandle:
        with self._lock:
            handle = self._handles.get((key, stage))
            if handle is None:
                handle = ProgressHandle(key, stage, self._listener)
                self._handles[(key, stage)] = handle
            return handle

    def snapshot(self) -> dict[tuple[str, Stage], int]:
        with self._lock:
            handles = list(self._handles.items())
        return {ident: handle.percent for ident, handle in handles}


class _Ticker:
    def __init__(self, handle: ProgressHandle, interval_seconds: float) -> None:
        self._handle = handle
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def __enter__(self) -> ProgressHandle:
        self._thread.start()
        return self._handle

    def __exit__(self, *exc_info: object) -> None:
        self._stop.set()
        self._thread.join()
        self._handle.complete()

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._handle.advance(AUTO_INCREMENT_STEP)
