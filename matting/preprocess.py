from __future__ import annotations

from typing import Sequence, Tuple

import cv2
import numpy as np
import torch


def load_image(path: str) -> np.ndarray:
    """
    Load an image as RGB uint8 ndarray of shape (H, W, 3).
    """
    bgr = cv2.imread(path, cv2.IMREAD_COLOR)
    if bgr is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
    if rgb.dtype != np.uint8:
        rgb = rgb.astype(np.uint8, copy=False)
    return rgb


def resize_rgb(img: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
    """Resize to (width, height); area interpolation when shrinking, cubic otherwise."""
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got shape={img.shape}")
    w, h = int(size[0]), int(size[1])
    if (img.shape[1], img.shape[0]) == (w, h):
        return img
    shrinking = w * h < img.shape[0] * img.shape[1]
    return cv2.resize(img, (w, h), interpolation=cv2.INTER_AREA if shrinking else cv2.INTER_CUBIC)


def normalize(img: np.ndarray, mean: Sequence[float], std: Sequence[float]) -> torch.Tensor:
    """
    Normalize uint8 RGB image to float32 torch tensor: (1,3,H,W).
    """
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got shape={img.shape}")
    x = img.astype(np.float32) / 255.0
    m = np.array(mean, dtype=np.float32).reshape(1, 1, 3)
    s = np.array(std, dtype=np.float32).reshape(1, 1, 3)
    x = (x - m) / s
    x = np.transpose(x, (2, 0, 1))  # CHW
    t = torch.from_numpy(np.ascontiguousarray(x)).unsqueeze(0).contiguous()  # NCHW
    if t.dtype != torch.float32:
        t = t.float()
    return t


def tensor_to_rgb(t: torch.Tensor) -> np.ndarray:
    """(1,3,H,W) float tensor in [0,1] -> RGB uint8 (H,W,3)."""
    if t.ndim != 4 or t.shape[0] != 1 or t.shape[1] != 3:
        raise ValueError(f"Expected tensor (1,3,H,W), got {tuple(t.shape)}")
    x = t[0].detach().to("cpu").float().clamp(0.0, 1.0).numpy()
    return (np.transpose(x, (1, 2, 0)) * 255.0 + 0.5).astype(np.uint8)
