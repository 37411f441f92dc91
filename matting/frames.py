from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .config import JPEG_QUALITY

COMPRESSED_ENCODINGS = ("jpeg", "png")
RAW_ENCODINGS = ("rgb24", "bgr24")


@dataclass(frozen=True)
class Frame:
    """One live-view frame as handed over by the capture side."""

    data: bytes
    width: int
    height: int
    encoding: str = "jpeg"

    @property
    def is_raw(self) -> bool:
        return self.encoding in RAW_ENCODINGS

    def copy(self) -> "Frame":
        return Frame(bytes(self.data), self.width, self.height, self.encoding)


@dataclass(frozen=True)
class RenderedFrame:
    data: bytes
    width: int
    height: int


@dataclass(frozen=True)
class LatestFrameInfo:
    width: int = 0
    height: int = 0
    available: bool = False


def decode_frame(frame: Frame) -> np.ndarray:
    """
    Decode a frame into an RGB uint8 ndarray of shape (H, W, 3).
    """
    if frame.encoding in RAW_ENCODINGS:
        expected = frame.width * frame.height * 3
        if len(frame.data) != expected:
            raise ValueError(
                f"Raw {frame.encoding} buffer has {len(frame.data)} bytes, expected {expected} "
                f"for {frame.width}x{frame.height}"
            )
        img = np.frombuffer(frame.data, dtype=np.uint8).reshape(frame.height, frame.width, 3)
        if frame.encoding == "bgr24":
            return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
        return img.copy()

    if frame.encoding not in COMPRESSED_ENCODINGS:
        raise ValueError(f"Unsupported frame encoding: {frame.encoding}")

    buf = np.frombuffer(frame.data, dtype=np.uint8)
    bgr = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if bgr is None:
        raise ValueError(f"Could not decode {frame.encoding} frame ({len(frame.data)} bytes)")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def encode_frame(rgb: np.ndarray, encoding: str) -> bytes:
    """
    Encode an RGB image in the family of the input: JPEG (q90) for compressed input,
    packed bytes in the same channel order for raw input.
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got {rgb.shape}")
    if encoding == "rgb24":
        return np.ascontiguousarray(rgb, dtype=np.uint8).tobytes()
    if encoding == "bgr24":
        return np.ascontiguousarray(cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)).tobytes()

    bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
    ok, buf = cv2.imencode(".jpg", bgr, [int(cv2.IMWRITE_JPEG_QUALITY), JPEG_QUALITY])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()
