from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from .config import BACKGROUND_CACHE_TTL_S, DEFAULT_BACKGROUND_COLOR, JPEG_QUALITY, MID_GRAY, NO_BACKGROUND_COLOR
from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)


def to_alpha8(alpha: np.ndarray) -> np.ndarray:
    return (np.clip(alpha, 0.0, 1.0) * 255.0).astype(np.uint8)


def decontaminate(rgb: np.ndarray, alpha8: np.ndarray) -> np.ndarray:
    """
    Pull partially transparent pixels toward mid gray to remove background spill:
      pixel * r + 127.5 * (1 - r), r = alpha / 255, only where 0 < alpha < 255.
    """
    if rgb.shape[:2] != alpha8.shape[:2]:
        raise ValueError(f"Alpha shape {alpha8.shape} does not match RGB {rgb.shape[:2]}")
    ratio = alpha8.astype(np.float32)[..., None] / 255.0
    cleaned = rgb.astype(np.float32) * ratio + MID_GRAY * (1.0 - ratio)
    edge = ((alpha8 > 0) & (alpha8 < 255))[..., None]
    return np.where(edge, cleaned.astype(np.uint8), rgb).astype(np.uint8)


def compose_rgba(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """RGB uint8 + float alpha in [0,1] -> RGBA uint8, no colour changes."""
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
    if alpha.shape[:2] != rgb.shape[:2]:
        raise ValueError(f"Alpha shape {alpha.shape} does not match RGB {rgb.shape[:2]}")
    return np.dstack([rgb, to_alpha8(alpha)])


def apply_mask(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """
    Attach alpha to an RGB image with colour decontamination on edge pixels.

    A mask of the wrong size is Lanczos-resized once; if the sizes still differ,
    DimensionMismatchError is raised.
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
    if alpha.ndim != 2:
        raise ValueError(f"Expected 2D alpha, got shape={alpha.shape}")

    h, w = rgb.shape[:2]
    if alpha.shape != (h, w):
        logger.warning("Mask %s does not match image %s, resizing mask", alpha.shape, (h, w))
        alpha = cv2.resize(alpha.astype(np.float32, copy=False), (w, h), interpolation=cv2.INTER_LANCZOS4)
        if alpha.shape != (h, w):
            raise DimensionMismatchError(f"Image ({w}x{h}) and mask ({alpha.shape[1]}x{alpha.shape[0]}) dimensions must match")

    a8 = to_alpha8(alpha)
    return np.dstack([decontaminate(rgb, a8), a8])


def solid_background(width: int, height: int, color: Tuple[int, int, int] = DEFAULT_BACKGROUND_COLOR) -> np.ndarray:
    return np.full((max(1, height), max(1, width), 3), color, dtype=np.uint8)


def load_background_cover(path: str, width: int, height: int) -> np.ndarray:
    """
    Load a background and fit it to (width, height) like CSS `cover`:
      1) scale by max(w / bw, h / bh) with Lanczos
      2) center crop
      3) edge-replicate pad if rounding left it short
    """
    bgr = cv2.imread(path, cv2.IMREAD_COLOR)
    if bgr is None:
        raise OSError(f"Could not read background: {path}")
    bg = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)

    bh, bw = bg.shape[:2]
    scale = max(width / float(bw), height / float(bh))
    new_w = max(1, int(round(bw * scale)))
    new_h = max(1, int(round(bh * scale)))
    if (new_w, new_h) != (bw, bh):
        bg = cv2.resize(bg, (new_w, new_h), interpolation=cv2.INTER_LANCZOS4)

    x0 = max(0, (new_w - width) // 2)
    y0 = max(0, (new_h - height) // 2)
    bg = bg[y0 : y0 + height, x0 : x0 + width]

    pad_h = height - bg.shape[0]
    pad_w = width - bg.shape[1]
    if pad_h > 0 or pad_w > 0:
        bg = cv2.copyMakeBorder(
            bg,
            pad_h // 2,
            pad_h - pad_h // 2,
            pad_w // 2,
            pad_w - pad_w // 2,
            cv2.BORDER_REPLICATE,
        )
    return np.ascontiguousarray(bg)


class BackgroundCache:
    """
    One decoded background keyed by (path, width, height).

    Reloaded when the key changes or the entry is older than the TTL.
    Every caller gets its own copy.
    """

    def __init__(self, ttl_s: float = BACKGROUND_CACHE_TTL_S, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._key: Optional[Tuple[str, int, int]] = None
        self._image: Optional[np.ndarray] = None
        self._loaded_at = 0.0
        self.loads = 0

    def get(self, path: str, width: int, height: int) -> np.ndarray:
        if not path or not os.path.isfile(path):
            return solid_background(width, height)

        key = (path, int(width), int(height))
        with self._lock:
            now = self._clock()
            stale = self._image is None or self._key != key or (now - self._loaded_at) > self.ttl_s
            if stale:
                try:
                    image = load_background_cover(path, width, height)
                except (OSError, cv2.error) as e:
                    logger.warning("Background %s unavailable: %s", path, e)
                    return solid_background(width, height)
                self._key = key
                self._image = image
                self._loaded_at = now
                self.loads += 1
            return self._image.copy()

    def clear(self) -> None:
        with self._lock:
            self._key = None
            self._image = None
            self._loaded_at = 0.0


class Compositor:
    """Flattens RGBA foregrounds over the selected background."""

    def __init__(self, cache: Optional[BackgroundCache] = None):
        self.cache = cache or BackgroundCache()

    def background_for(self, background_path: Optional[str], width: int, height: int) -> np.ndarray:
        if not background_path:
            return solid_background(width, height, NO_BACKGROUND_COLOR)
        return self.cache.get(background_path, width, height)

    def composite(self, rgba: np.ndarray, background_path: Optional[str]) -> np.ndarray:
        """RGBA uint8 foreground -> RGB uint8 frame of the same size."""
        if rgba.ndim != 3 or rgba.shape[2] != 4:
            raise ValueError(f"Expected RGBA image (H,W,4), got {rgba.shape}")
        h, w = rgba.shape[:2]
        bg = self.background_for(background_path, w, h)
        if bg.shape[:2] != (h, w):
            raise DimensionMismatchError(f"Background {bg.shape[:2]} does not match foreground {(h, w)}")

        a = rgba[..., 3:4].astype(np.float32) / 255.0
        fg = rgba[..., :3].astype(np.float32)
        out = fg * a + bg.astype(np.float32) * (1.0 - a)
        return np.clip(out + 0.5, 0, 255).astype(np.uint8)

    def clear(self) -> None:
        self.cache.clear()


def save_rgba_png(rgba: np.ndarray, out_path: str) -> None:
    """
    Save as lossless RGBA PNG.
    """
    img = Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8))
    img.save(out_path, format="PNG", optimize=False)


def save_mask_png(alpha: np.ndarray, out_path: str) -> None:
    Image.fromarray(to_alpha8(alpha)).save(out_path, format="PNG")


def save_jpeg(rgb: np.ndarray, out_path: str, quality: int = JPEG_QUALITY) -> None:
    Image.fromarray(np.ascontiguousarray(rgb, dtype=np.uint8)).save(out_path, format="JPEG", quality=quality)
