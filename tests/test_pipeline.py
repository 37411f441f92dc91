from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from fakes import (
    FakeLoader,
    FakeRecurrentModel,
    FakeStillModel,
    SettingsBox,
    cpu_probe,
    jpeg_bytes,
    make_models_dir,
    write_image,
)
from matting.config import MODNET_FILE, PP_LITESEG_FILE, RVM_FILE
from matting.contracts import LiveViewMode, Quality
from matting.frames import Frame
from matting.inference import MatteInferenceEngine
from matting.pipeline import RESULT_DIR_NAME, MattingPipeline, PipelineState
from matting.registry import ModelRegistry, SessionPurpose, directory_locator
from matting.sessions import InferenceSessionPool


class RecordingEngine(MatteInferenceEngine):
    def __init__(self):
        super().__init__()
        self.still_inputs = []

    def run_still(self, image, session):
        self.still_inputs.append(image.shape)
        return super().run_still(image, session)


def _pipeline(models_dir: Path, loader: FakeLoader, settings: SettingsBox, engine=None) -> MattingPipeline:
    registry = ModelRegistry(directory_locator(models_dir))
    pool = InferenceSessionPool(registry, loader=loader, probe=cpu_probe)
    return MattingPipeline(settings, registry=registry, pool=pool, engine=engine)


@pytest.fixture
def pipeline(all_models_dir, loader):
    p = _pipeline(all_models_dir, loader, SettingsBox())
    yield p
    p.shutdown()


def test_missing_models_pass_everything_through(tmp_path: Path, loader: FakeLoader):
    p = _pipeline(make_models_dir(tmp_path), loader, SettingsBox())
    image = write_image(tmp_path / "photo.jpg", 120, 160)

    result = p.remove_background(str(image))
    assert result.success
    assert result.fallback_used
    assert result.processed_image_path == str(image)
    assert p.state is PipelineState.FAILED
    assert loader.loads == []

    frame = jpeg_bytes(48, 64)
    assert p.process_live_view_frame(frame, 64, 48) == frame
    assert not p.try_get_latest_frame_info().available
    p.shutdown()


def test_failed_state_sticks_until_initialize(tmp_path: Path, loader: FakeLoader):
    models_dir = make_models_dir(tmp_path)
    p = _pipeline(models_dir, loader, SettingsBox())
    assert p.initialize() is False
    assert p.state is PipelineState.FAILED

    make_models_dir(tmp_path, PP_LITESEG_FILE)
    frame = jpeg_bytes(48, 64)
    assert p.process_live_view_frame(frame, 64, 48) == frame
    assert p.state is PipelineState.FAILED

    assert p.initialize() is True
    assert p.state is PipelineState.READY
    p.shutdown()


def test_disabled_settings_do_not_initialize(all_models_dir, loader):
    p = _pipeline(all_models_dir, loader, SettingsBox(enabled=False))
    assert p.initialize() is False
    assert p.state is PipelineState.UNINITIALIZED

    frame = jpeg_bytes(48, 64)
    assert p.process_live_view_frame(frame, 64, 48) == frame
    assert p.state is PipelineState.UNINITIALIZED
    assert loader.loads == []


def test_first_live_frame_starts_async_initialization(pipeline):
    frame = jpeg_bytes(48, 64)
    assert pipeline.process_live_view_frame(frame, 64, 48) == frame
    assert pipeline.wait_until_ready(5.0)
    assert pipeline.state is PipelineState.READY


def test_still_capture_medium_quality(tmp_path: Path, all_models_dir, loader):
    engine = RecordingEngine()
    p = _pipeline(all_models_dir, loader, SettingsBox(quality=Quality.MEDIUM), engine=engine)
    image = write_image(tmp_path / "shots" / "IMG_0001.jpg", 1500, 1000)

    result = p.remove_background(str(image))

    assert result.success and not result.fallback_used
    # 1000x1500: longer side -> 400, short side clamped to 256, both rounded to 32
    assert engine.still_inputs == [(416, 256, 3)]
    out_dir = tmp_path / "shots" / RESULT_DIR_NAME
    assert result.processed_image_path == str(out_dir / "IMG_0001_nobg.png")
    assert result.mask_path == str(out_dir / "IMG_0001_mask.png")
    assert result.composite_path is None
    assert result.timings is not None
    assert result.timings.total_s >= result.timings.inference_s >= 0.0

    with Image.open(result.processed_image_path) as fg, Image.open(result.mask_path) as mask:
        assert fg.mode == "RGBA"
        assert fg.size == (1000, 1500)
        assert mask.size == (1000, 1500)
        m = np.asarray(mask)
    assert m[750, 500] > 200
    assert m[10, 10] < 50
    p.shutdown()


def test_still_capture_writes_composite_with_background(tmp_path: Path, all_models_dir, loader):
    background = write_image(tmp_path / "bg.png", 300, 400, color=(0, 255, 0))
    p = _pipeline(all_models_dir, loader, SettingsBox(background_path=str(background)))
    image = write_image(tmp_path / "IMG_0002.jpg", 200, 300)

    result = p.remove_background(str(image), quality=Quality.LOW)

    assert result.success
    assert result.composite_path is not None
    with Image.open(result.composite_path) as comp:
        assert comp.size == (300, 200)
    p.shutdown()


def test_still_capture_unreadable_image_fails(tmp_path: Path, pipeline):
    bad = tmp_path / "broken.jpg"
    bad.write_bytes(b"not a jpeg")
    result = pipeline.remove_background(str(bad))
    assert not result.success
    assert result.error_message


def test_live_recurrent_flow(pipeline, recurrent_model):
    assert pipeline.initialize()
    frame = jpeg_bytes(480, 640)

    assert pipeline.process_live_view_frame(frame, 640, 480) == frame
    assert pipeline.scheduler.wait_idle(5.0)

    info = pipeline.try_get_latest_frame_info()
    assert (info.width, info.height, info.available) == (640, 480, True)
    assert len(recurrent_model.calls) == 1
    assert recurrent_model.calls[0]["size"] == (256, 192)

    cached = pipeline.scheduler.latest().data
    out = pipeline.process_live_view_frame(frame, 640, 480)
    assert out == cached
    assert out != frame
    pipeline.scheduler.wait_idle(5.0)


def test_live_output_is_capped_at_640_wide(pipeline):
    pipeline.initialize()
    pipeline.process_live_view_frame(jpeg_bytes(720, 1280), 1280, 720)
    pipeline.scheduler.wait_idle(5.0)
    info = pipeline.try_get_latest_frame_info()
    assert (info.width, info.height) == (640, 360)


def test_live_raw_frames_keep_raw_encoding(pipeline):
    pipeline.initialize()
    raw = np.full((120, 160, 3), 90, dtype=np.uint8).tobytes()

    assert pipeline.process_live_view_frame(raw, 160, 120, encoding="bgr24") == raw
    pipeline.scheduler.wait_idle(5.0)
    assert len(pipeline.scheduler.latest().data) == 160 * 120 * 3


def test_degenerate_recurrent_output_uses_fallback(all_models_dir):
    still = FakeStillModel()
    loader = FakeLoader(
        {
            PP_LITESEG_FILE: still,
            MODNET_FILE: still,
            RVM_FILE: FakeRecurrentModel(degenerate=True),
        }
    )
    p = _pipeline(all_models_dir, loader, SettingsBox())
    p.initialize()
    calls_after_init = len(still.calls)

    p.process_live_view_frame(jpeg_bytes(240, 320), 320, 240)
    p.scheduler.wait_idle(5.0)

    assert len(still.calls) > calls_after_init
    assert p.boost.value > 1.0
    assert p.try_get_latest_frame_info().available
    p.shutdown()


def test_responsive_mode_never_loads_recurrent(all_models_dir, loader, still_model, recurrent_model):
    p = _pipeline(all_models_dir, loader, SettingsBox(live_view_mode=LiveViewMode.RESPONSIVE))
    assert p.initialize()

    p.process_live_view_frame(jpeg_bytes(240, 320), 320, 240)
    p.scheduler.wait_idle(5.0)

    assert RVM_FILE not in loader.loads
    assert recurrent_model.calls == []
    assert len(still_model.calls) == 1
    assert p.scheduler.lane("fallback").frames == 1
    p.shutdown()


def test_switching_to_responsive_releases_recurrent_session(pipeline, loader):
    settings = pipeline._settings
    assert pipeline.initialize()
    recurrent = pipeline.pool.get(SessionPurpose.RECURRENT)
    assert recurrent is not None

    settings.update(live_view_mode=LiveViewMode.RESPONSIVE)
    pipeline.process_live_view_frame(jpeg_bytes(240, 320), 320, 240)
    pipeline.scheduler.wait_idle(5.0)

    assert pipeline.pool.get(SessionPurpose.RECURRENT) is None
    assert not recurrent.ready
    assert pipeline.scheduler.lane("fallback").frames == 1

    settings.update(live_view_mode=LiveViewMode.SMOOTH)
    pipeline.process_live_view_frame(jpeg_bytes(240, 320), 320, 240)
    pipeline.scheduler.wait_idle(5.0)
    assert pipeline.pool.get(SessionPurpose.RECURRENT) is not None
    assert loader.loads.count(RVM_FILE) == 2


def test_shutdown_resets_pipeline(pipeline):
    assert pipeline.initialize()
    pipeline.process_live_view_frame(jpeg_bytes(240, 320), 320, 240)
    pipeline.scheduler.wait_idle(5.0)

    pipeline.shutdown()

    assert pipeline.state is PipelineState.UNINITIALIZED
    assert pipeline.pool.get(SessionPurpose.STILL) is None
    assert not pipeline.try_get_latest_frame_info().available
    assert "Not initialized" in pipeline.backend_status()


class FlakyRecurrentLoader(FakeLoader):
    """Fails the first recurrent model load, then behaves."""

    def __init__(self, models):
        super().__init__(models)
        self.failures_left = 1

    def __call__(self, path, device):
        if Path(path).name == RVM_FILE and self.failures_left:
            self.failures_left -= 1
            raise RuntimeError(f"Failed to load model {path}")
        return super().__call__(path, device)


def test_initialize_retries_recurrent_model_after_load_failure(all_models_dir):
    still = FakeStillModel()
    recurrent = FakeRecurrentModel()
    loader = FlakyRecurrentLoader({PP_LITESEG_FILE: still, MODNET_FILE: still, RVM_FILE: recurrent})
    p = _pipeline(all_models_dir, loader, SettingsBox())

    assert p.initialize()
    assert p.pool.get(SessionPurpose.RECURRENT) is None
    p.process_live_view_frame(jpeg_bytes(240, 320), 320, 240)
    p.scheduler.wait_idle(5.0)
    assert p.pool.get(SessionPurpose.RECURRENT) is None

    assert p.initialize()
    p.process_live_view_frame(jpeg_bytes(240, 320), 320, 240)
    p.scheduler.wait_idle(5.0)

    assert p.pool.get(SessionPurpose.RECURRENT) is not None
    assert len(recurrent.calls) == 1
    p.shutdown()


def test_render_on_closed_recurrent_session_is_skipped(pipeline):
    assert pipeline.initialize()
    session = pipeline.pool.get(SessionPurpose.RECURRENT)
    session.close()

    frame = Frame(jpeg_bytes(240, 320), 320, 240, "jpeg")
    rendered = pipeline._guarded(pipeline._render_recurrent, frame, pipeline._settings())
    assert rendered is None
