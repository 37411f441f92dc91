from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

import cv2
import numpy as np
from dotenv import load_dotenv
from tqdm import tqdm

from matting.contracts import LiveViewMode, Quality, load_settings
from matting.pipeline import RESULT_DIR_NAME, MattingPipeline
from matting.registry import ModelRegistry, directory_locator


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts and p.parent.name != RESULT_DIR_NAME:
            yield p


def _build_pipeline(args) -> MattingPipeline:
    overrides = {}
    if args.quality:
        overrides["quality"] = Quality(args.quality)
    if args.mode:
        overrides["live_view_mode"] = LiveViewMode(args.mode)
    if args.background:
        overrides["background_path"] = args.background
    if args.cpu:
        overrides["use_gpu"] = False

    def settings():
        return load_settings().model_copy(update=overrides)

    registry = ModelRegistry(directory_locator(args.models_dir)) if args.models_dir else None
    return MattingPipeline(settings_provider=settings, registry=registry)


def run_still(args) -> int:
    input_dir = Path(args.input)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    pipeline = _build_pipeline(args)
    pipeline.initialize()
    print(pipeline.backend_status())

    failures = 0
    total0 = time.perf_counter()
    for img_path in tqdm(images, desc="Processing", unit="img"):
        result = pipeline.remove_background(str(img_path))
        if not result.success:
            failures += 1
            print(f"{img_path.name}: FAILED ({result.error_message})")
            continue
        if result.fallback_used:
            print(f"{img_path.name}: fallback ({result.error_message})")
            continue

        # Simple per-image timing log (kept minimal and deterministic).
        t = result.timings
        print(
            f"{img_path.name}: total={t.total_s:.3f}s "
            f"(pre={t.preprocess_s:.3f}s inf={t.inference_s:.3f}s "
            f"post={t.postprocess_s:.3f}s comp={t.composite_s:.3f}s)"
        )

    total1 = time.perf_counter()
    pipeline.shutdown()
    print(f"Done. {len(images)} images in {total1-total0:.2f}s ({failures} failed)")
    return 1 if failures else 0


def run_live(args) -> int:
    source = int(args.video) if args.video.isdigit() else args.video
    cap = cv2.VideoCapture(source)
    if not cap.isOpened():
        raise FileNotFoundError(f"Could not open video source: {args.video}")

    output_dir = Path(args.output) if args.output else None
    if output_dir is not None:
        output_dir.mkdir(parents=True, exist_ok=True)

    pipeline = _build_pipeline(args)
    if not pipeline.initialize():
        print("Matting unavailable; frames will pass through unchanged.")
    print(pipeline.backend_status())

    written = 0
    composited = 0
    total0 = time.perf_counter()
    progress = tqdm(total=args.max_frames or None, desc="Live view", unit="frame")
    try:
        frame_index = 0
        while not args.max_frames or frame_index < args.max_frames:
            ok, bgr = cap.read()
            if not ok:
                break
            frame_index += 1
            data = np.ascontiguousarray(bgr).tobytes()
            h, w = bgr.shape[:2]
            out = pipeline.process_live_view_frame(data, w, h, encoding="bgr24")
            progress.update(1)
            if out is data:
                continue
            composited += 1

            info = pipeline.try_get_latest_frame_info()
            if output_dir is None or not info.available or len(out) != info.width * info.height * 3:
                continue
            if frame_index % args.every == 0:
                img = np.frombuffer(out, dtype=np.uint8).reshape(info.height, info.width, 3)
                cv2.imwrite(str(output_dir / f"frame_{frame_index:06d}.jpg"), img)
                written += 1
    finally:
        progress.close()
        cap.release()
        pipeline.shutdown()

    total1 = time.perf_counter()
    print(f"Done. {frame_index} frames in {total1-total0:.2f}s ({composited} composited, {written} written)")
    return 0


def main() -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    parser = argparse.ArgumentParser(description="Human matting for still captures and live view (float32, batch=1).")
    parser.add_argument("--models-dir", default=None, type=str, help="Directory holding TorchScript model files.")
    parser.add_argument("--quality", choices=[q.value for q in Quality], default=None)
    parser.add_argument("--mode", choices=[m.value for m in LiveViewMode], default=None, help="Live view mode.")
    parser.add_argument("--background", default=None, type=str, help="Background image to composite over.")
    parser.add_argument("--cpu", action="store_true", help="Disable GPU acceleration.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging (alpha statistics, FPS).")
    sub = parser.add_subparsers(dest="command", required=True)

    still = sub.add_parser("still", help="Remove backgrounds from every image under a directory.")
    still.add_argument("--input", required=True, type=str, help="Input directory containing images.")

    live = sub.add_parser("live", help="Feed a video file or camera index through the live view path.")
    live.add_argument("--video", required=True, type=str, help="Video path or camera index.")
    live.add_argument("--output", default=None, type=str, help="Directory for composited frames.")
    live.add_argument("--max-frames", default=0, type=int, help="Stop after this many frames (0 = all).")
    live.add_argument("--every", default=10, type=int, help="Write every Nth composited frame.")

    args = parser.parse_args()
    if args.verbose:
        logging.getLogger("matting").setLevel(logging.DEBUG)

    if args.command == "still":
        return run_still(args)
    return run_live(args)


if __name__ == "__main__":
    raise SystemExit(main())
