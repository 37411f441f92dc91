from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from .analysis import AlphaThresholds, ScaleBoost, analyze
from .composite import Compositor, apply_mask, compose_rgba, save_jpeg, save_mask_png, save_rgba_png
from .config import LIVE_BASE_MAX_DIM
from .contracts import (
    LiveViewMode,
    MattingSettings,
    Quality,
    SettingsProvider,
    StageTimings,
    StillCaptureResult,
    load_settings,
)
from .downsample import live_output_size, still_processing_size
from .errors import MattingError
from .frames import Frame, LatestFrameInfo, RenderedFrame, decode_frame, encode_frame
from .inference import MatteInferenceEngine
from .postprocess import TemporalAlphaFilter, refine_fallback_alpha, refine_live_alpha, refine_still_alpha
from .preprocess import load_image, resize_rgb
from .recurrent import RecurrentStateStore
from .registry import ModelRegistry, SessionPurpose
from .scheduler import FALLBACK_LANE, RECURRENT_LANE, FrameScheduler
from .sessions import InferenceSessionPool

logger = logging.getLogger(__name__)

RESULT_DIR_NAME = "BackgroundRemoved"


class PipelineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class MattingPipeline:
    """
    Composition root for live-view matting and still capture.

    Lifecycle: UNINITIALIZED -> INITIALIZING -> READY | FAILED, guarded by one lock.
    A FAILED pipeline passes live frames through until initialize() is called again.
    Settings are polled from the provider on every request.
    """

    def __init__(
        self,
        settings_provider: SettingsProvider = load_settings,
        registry: Optional[ModelRegistry] = None,
        pool: Optional[InferenceSessionPool] = None,
        scheduler: Optional[FrameScheduler] = None,
        compositor: Optional[Compositor] = None,
        engine: Optional[MatteInferenceEngine] = None,
        thresholds: AlphaThresholds = AlphaThresholds(),
    ):
        self._settings = settings_provider
        self.registry = registry or ModelRegistry()
        self.pool = pool or InferenceSessionPool(self.registry)
        self.scheduler = scheduler or FrameScheduler()
        self.compositor = compositor or Compositor()
        self.engine = engine or MatteInferenceEngine()
        self.thresholds = thresholds
        self.states = RecurrentStateStore()
        self.boost = ScaleBoost()
        self.temporal = TemporalAlphaFilter()

        self._lock = threading.Lock()
        self._mode_lock = threading.Lock()
        self._state = PipelineState.UNINITIALIZED
        self._ready = threading.Event()
        self._init_executor: Optional[ThreadPoolExecutor] = None
        self._init_future: Optional[Future] = None
        self._use_recurrent: Optional[bool] = None
        self._recurrent_unavailable = False

    # ------------------------------------------------------------------ lifecycle

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    def initialize(self) -> bool:
        """
        Load the sessions the current settings need. Blocking.
        Returns False when disabled (state stays UNINITIALIZED) or when no still model loads.
        """
        settings = self._settings()
        if not settings.enabled:
            logger.info("Background removal disabled in settings")
            return False

        with self._lock:
            if self._state is PipelineState.READY:
                # an explicit initialize() retries a recurrent model that failed to load
                self._recurrent_unavailable = False
                return True
            waiting = self._state is PipelineState.INITIALIZING
            if not waiting:
                self._state = PipelineState.INITIALIZING
                self._ready.clear()

        if waiting:
            self._ready.wait()
            return self.state is PipelineState.READY

        ok = False
        try:
            ok = self._load_sessions(settings)
        finally:
            with self._lock:
                self._state = PipelineState.READY if ok else PipelineState.FAILED
                self._ready.set()
        logger.info("Background removal %s (%s)", "ready" if ok else "unavailable", self.pool.backend_status())
        return ok

    def _load_sessions(self, settings: MattingSettings) -> bool:
        still = self.pool.acquire(SessionPurpose.STILL, settings.use_gpu, settings.quality)
        if still is None:
            logger.warning("No still-capture model available under the models directory")
            return False
        self.pool.acquire(SessionPurpose.LIVE_FALLBACK, settings.use_gpu, settings.quality)

        self._recurrent_unavailable = False
        use_recurrent = False
        if self._wants_recurrent(settings):
            session = self.pool.acquire(SessionPurpose.RECURRENT, settings.use_gpu, settings.quality)
            if session is not None:
                self.states.reset(session.device)
                use_recurrent = True
            else:
                self._recurrent_unavailable = True
        self._use_recurrent = use_recurrent
        return True

    def initialize_async(self) -> Future:
        """Start initialize() on a background thread; concurrent callers share one Future."""
        with self._lock:
            if self._init_future is not None and not self._init_future.done():
                return self._init_future
            if self._init_executor is None:
                self._init_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="matting-init")
            self._init_future = self._init_executor.submit(self.initialize)
            return self._init_future

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout) and self.state is PipelineState.READY

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.pool.close_all()
        self.states.reset()
        self.boost.reset()
        self.temporal.reset()
        self.compositor.clear()
        with self._lock:
            executor = self._init_executor
            self._init_executor = None
            self._init_future = None
            self._state = PipelineState.UNINITIALIZED
            self._ready.clear()
            self._use_recurrent = None
            self._recurrent_unavailable = False
        if executor is not None:
            executor.shutdown(wait=False)
        logger.info("Background removal pipeline shut down")

    def backend_status(self) -> str:
        return self.pool.backend_status()

    # ------------------------------------------------------------------ live view

    def _wants_recurrent(self, settings: MattingSettings) -> bool:
        if settings.live_view_mode is LiveViewMode.RESPONSIVE or self._recurrent_unavailable:
            return False
        return self.registry.resolve(SessionPurpose.RECURRENT) is not None

    def _sync_live_mode(self, settings: MattingSettings) -> bool:
        """Acquire or release the recurrent session when the live view mode changed."""
        with self._mode_lock:
            return self._switch_live_mode(settings)

    def _switch_live_mode(self, settings: MattingSettings) -> bool:
        desired = self._wants_recurrent(settings)
        if desired == self._use_recurrent:
            return desired

        if desired:
            session = self.pool.acquire(SessionPurpose.RECURRENT, settings.use_gpu, settings.quality)
            if session is None:
                self._recurrent_unavailable = True
                desired = False
        else:
            self.pool.release(SessionPurpose.RECURRENT)

        if desired != self._use_recurrent:
            session = self.pool.get(SessionPurpose.RECURRENT)
            self.scheduler.reset()
            self.states.reset(session.device if session is not None else None)
            self.boost.reset()
            self.temporal.reset()
            logger.info("Live view mode: %s", "recurrent (smooth)" if desired else "single-frame (responsive)")
        self._use_recurrent = desired
        return desired

    def process_live_view_frame(self, data: bytes, width: int, height: int, encoding: str = "jpeg") -> bytes:
        """
        Returns composited bytes, the last cached frame, or the input unchanged.
        Never blocks on inference.
        """
        if not data:
            return data
        settings = self._settings()
        if not settings.enabled or not settings.live_view_enabled:
            return data

        state = self.state
        if state is PipelineState.UNINITIALIZED:
            self.initialize_async()
            return data
        if state is not PipelineState.READY:
            return data

        frame = Frame(bytes(data), int(width), int(height), encoding)
        if self._sync_live_mode(settings):
            return self.scheduler.submit(RECURRENT_LANE, frame, lambda f: self._guarded(self._render_recurrent, f, settings))
        if self.pool.get(SessionPurpose.LIVE_FALLBACK) is None:
            return data
        return self.scheduler.submit(FALLBACK_LANE, frame, lambda f: self._guarded(self._render_fallback, f, settings))

    def try_get_latest_frame_info(self) -> LatestFrameInfo:
        return self.scheduler.latest_frame_info()

    @staticmethod
    def _guarded(render, frame: Frame, settings: MattingSettings) -> Optional[RenderedFrame]:
        try:
            return render(frame, settings)
        except (MattingError, ValueError, cv2.error) as e:
            logger.warning("Live view frame skipped: %s", e)
            return None

    def _render_recurrent(self, frame: Frame, settings: MattingSettings) -> Optional[RenderedFrame]:
        session = self.pool.get(SessionPurpose.RECURRENT)
        rgb = decode_frame(frame)
        max_dimension = int(round(LIVE_BASE_MAX_DIM * self.boost.value))
        out = self.engine.run_streaming(rgb, session, self.states, max_dimension)

        decision = analyze(out.alpha, self.thresholds)
        stats = decision.stats
        logger.debug(
            "Alpha mean=%.3f max=%.3f center=%.3f border=%.3f invert=%s degenerate=%s ratio=%.3f",
            stats.mean,
            stats.max,
            stats.center_mean,
            stats.border_mean,
            decision.invert,
            decision.degenerate,
            out.ratio,
        )
        if decision.degenerate:
            boost = self.boost.bump()
            logger.debug("Degenerate alpha, scale boost %.2f; re-rendering with the fallback model", boost)
            return self._render_fallback(frame, settings, rgb)

        self.boost.relax()
        alpha = refine_live_alpha(out.alpha, invert=decision.invert, gpu=session.is_gpu, temporal=self.temporal)

        out_w, out_h = live_output_size(rgb.shape[1], rgb.shape[0])
        small = resize_rgb(rgb, (out_w, out_h))
        alpha = cv2.resize(alpha, (out_w, out_h), interpolation=cv2.INTER_LINEAR)
        rgba = compose_rgba(small, np.clip(alpha, 0.0, 1.0))
        return self._encode(rgba, frame, settings)

    def _render_fallback(
        self,
        frame: Frame,
        settings: MattingSettings,
        rgb: Optional[np.ndarray] = None,
    ) -> Optional[RenderedFrame]:
        session = self.pool.get(SessionPurpose.LIVE_FALLBACK)
        if session is None:
            return None
        if rgb is None:
            rgb = decode_frame(frame)

        small = resize_rgb(rgb, live_output_size(rgb.shape[1], rgb.shape[0]))
        alpha = self.engine.run_still(small, session)
        alpha = refine_fallback_alpha(alpha, settings.edge_refinement)
        return self._encode(apply_mask(small, alpha), frame, settings)

    def _encode(self, rgba: np.ndarray, frame: Frame, settings: MattingSettings) -> RenderedFrame:
        composed = self.compositor.composite(rgba, settings.background_path)
        h, w = composed.shape[:2]
        return RenderedFrame(encode_frame(composed, frame.encoding), w, h)

    # ------------------------------------------------------------------ still capture

    def remove_background(self, image_path: str, quality: Optional[Quality] = None) -> StillCaptureResult:
        """
        Still capture:
          1) Load image
          2) Resize to the quality tier
          3) Inference
          4) Resize mask back + refine
          5) Decontaminate + save RGBA / mask (/ composite)
        """
        t0 = time.perf_counter()
        settings = self._settings()
        quality = quality or settings.quality

        ready = self.state is PipelineState.READY or self.initialize()
        session = self.pool.get(SessionPurpose.STILL) if ready else None
        if session is None:
            logger.info("No matting model available, returning %s unchanged", image_path)
            return StillCaptureResult(
                success=True,
                processed_image_path=image_path,
                fallback_used=True,
                processing_time_s=time.perf_counter() - t0,
                error_message="Using fallback: no matting model available",
            )

        try:
            t_pre0 = time.perf_counter()
            rgb = load_image(image_path)
            h, w = rgb.shape[:2]
            small = resize_rgb(rgb, still_processing_size(w, h, quality))
            t_pre1 = time.perf_counter()

            t_inf0 = time.perf_counter()
            matte = self.engine.run_still(small, session)
            t_inf1 = time.perf_counter()

            t_post0 = time.perf_counter()
            if matte.shape != (h, w):
                matte = cv2.resize(matte, (w, h), interpolation=cv2.INTER_LANCZOS4)
            matte = refine_still_alpha(np.clip(matte, 0.0, 1.0), settings.edge_refinement)
            t_post1 = time.perf_counter()

            t_comp0 = time.perf_counter()
            rgba = apply_mask(rgb, matte)
            src = Path(image_path)
            out_dir = src.parent / RESULT_DIR_NAME
            out_dir.mkdir(parents=True, exist_ok=True)
            foreground_path = out_dir / f"{src.stem}_nobg.png"
            mask_path = out_dir / f"{src.stem}_mask.png"
            save_rgba_png(rgba, str(foreground_path))
            save_mask_png(matte, str(mask_path))

            composite_path = None
            if settings.background_path:
                composite_path = out_dir / f"{src.stem}_composite.jpg"
                save_jpeg(self.compositor.composite(rgba, settings.background_path), str(composite_path))
            t_comp1 = time.perf_counter()
        except (MattingError, OSError, ValueError, cv2.error) as e:
            logger.error("Background removal failed for %s: %s", image_path, e)
            return StillCaptureResult(
                success=False,
                error_message=str(e),
                processing_time_s=time.perf_counter() - t0,
            )

        t1 = time.perf_counter()
        timings = StageTimings(
            preprocess_s=t_pre1 - t_pre0,
            inference_s=t_inf1 - t_inf0,
            postprocess_s=t_post1 - t_post0,
            composite_s=t_comp1 - t_comp0,
            total_s=t1 - t0,
        )
        return StillCaptureResult(
            success=True,
            processed_image_path=str(foreground_path),
            mask_path=str(mask_path),
            composite_path=str(composite_path) if composite_path is not None else None,
            processing_time_s=timings.total_s,
            timings=timings,
        )
