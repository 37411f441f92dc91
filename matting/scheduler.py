from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .config import FALLBACK_MIN_INTERVAL_S, RECURRENT_MIN_INTERVAL_S
from .frames import Frame, LatestFrameInfo, RenderedFrame

logger = logging.getLogger(__name__)

RECURRENT_LANE = "recurrent"
FALLBACK_LANE = "fallback"

Renderer = Callable[[Frame], Optional[RenderedFrame]]


@dataclass
class ScheduleState:
    """Bookkeeping for one lane (one model)."""

    name: str
    min_interval_s: float
    last_processed: Optional[float] = None
    busy: bool = False
    in_flight: Optional[Future] = None
    frames: int = 0
    fps_frames: int = 0
    fps_window_start: Optional[float] = field(default=None, repr=False)


class FrameScheduler:
    """
    Non-blocking per-frame orchestration for the live view.

    submit() never waits for inference: it either starts one background render for
    the lane or returns the most recent composited frame (or the input when nothing
    is cached yet). Each lane has at most one render in flight; frames arriving while
    it is busy are dropped, not queued.
    """

    def __init__(
        self,
        intervals: Optional[Dict[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
        max_workers: Optional[int] = None,
    ):
        intervals = intervals or {
            RECURRENT_LANE: RECURRENT_MIN_INTERVAL_S,
            FALLBACK_LANE: FALLBACK_MIN_INTERVAL_S,
        }
        self._lanes: Dict[str, ScheduleState] = {name: ScheduleState(name, float(s)) for name, s in intervals.items()}
        self._clock = clock
        self._max_workers = max_workers or len(self._lanes)
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._latest: Optional[RenderedFrame] = None
        self._epoch = 0

    def lane(self, name: str) -> ScheduleState:
        return self._lanes[name]

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="matting-live")
        return self._executor

    def submit(self, lane: str, frame: Frame, render: Renderer) -> bytes:
        with self._lock:
            state = self._lanes[lane]
            fallback = self._latest.data if self._latest is not None else frame.data
            if state.busy:
                return fallback

            now = self._clock()
            if state.last_processed is not None and (now - state.last_processed) < state.min_interval_s:
                return fallback

            state.busy = True
            state.last_processed = now
            epoch = self._epoch
            state.in_flight = self._ensure_executor().submit(self._run, state, frame.copy(), render, epoch)
            return fallback

    def _run(self, state: ScheduleState, frame: Frame, render: Renderer, epoch: int) -> None:
        result: Optional[RenderedFrame] = None
        try:
            result = render(frame)
        except Exception:  # noqa: BLE001 - one bad frame must not kill the live view
            logger.exception("Live view %s render failed", state.name)
        finally:
            with self._lock:
                state.busy = False
                state.in_flight = None
                if result is not None and epoch == self._epoch:
                    self._latest = result
                    state.frames += 1
                    self._track_fps(state)

    def _track_fps(self, state: ScheduleState) -> None:
        now = self._clock()
        if state.fps_window_start is None:
            state.fps_window_start = now
            state.fps_frames = 0
        state.fps_frames += 1
        elapsed = now - state.fps_window_start
        if elapsed >= 1.0:
            logger.debug("Live view %s: %.1f fps (%d frames total)", state.name, state.fps_frames / elapsed, state.frames)
            state.fps_window_start = now
            state.fps_frames = 0

    def latest(self) -> Optional[RenderedFrame]:
        with self._lock:
            return self._latest

    def latest_frame_info(self) -> LatestFrameInfo:
        with self._lock:
            if self._latest is None:
                return LatestFrameInfo()
            return LatestFrameInfo(self._latest.width, self._latest.height, True)

    def busy_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._lanes.values() if s.busy)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every in-flight render finished. False on timeout."""
        with self._lock:
            pending = [s.in_flight for s in self._lanes.values() if s.in_flight is not None]
        if not pending:
            return True
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def reset(self) -> None:
        """
        Drop the cached output and lane timing. In-flight renders keep their busy flag
        until they finish, but their results are discarded.
        """
        with self._lock:
            self._epoch += 1
            self._latest = None
            for state in self._lanes.values():
                state.last_processed = None
                state.frames = 0
                state.fps_frames = 0
                state.fps_window_start = None

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait_for_tasks)
        self.reset()
