from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np
import torch

from .config import LIVE_MIN_RATIO, LIVE_TARGET_AREA, STILL_ALIGN
from .downsample import align_to_multiple, compute_ratio, working_size
from .errors import EngineNotReady, InferenceContractError
from .preprocess import normalize, resize_rgb, tensor_to_rgb
from .recurrent import RecurrentStateStore
from .sessions import InferenceSession

logger = logging.getLogger(__name__)

_ALPHA_KEYS = ("alpha", "pha", "mask", "output", "logits")
_STATE_KEYS = ("r1o", "r2o", "r3o", "r4o")


@dataclass(frozen=True)
class StreamingOutput:
    """Result of one recurrent inference, at the working resolution."""

    alpha: np.ndarray  # float32 (h, w) in [0,1]
    foreground: Optional[np.ndarray]  # uint8 (h, w, 3) or None
    working_size: Tuple[int, int]  # (w, h)
    ratio: float
    state_reset: bool = False


def _extract_primary_output(y):
    """
    Single-image matting models may return:
      - a single tensor
      - (tensor, ...) tuple/list
      - dict with alpha-like keys

    For tuple/list outputs the first single-channel tensor wins, then the last tensor.
    """
    if isinstance(y, torch.Tensor):
        return y
    if isinstance(y, (list, tuple)) and len(y) > 0:
        for item in y:
            if isinstance(item, torch.Tensor) and item.ndim == 4 and item.shape[1] == 1:
                return item
        for item in reversed(y):
            if isinstance(item, torch.Tensor):
                return item
        return y[-1]
    if isinstance(y, dict):
        for k in _ALPHA_KEYS:
            v = y.get(k, None)
            if isinstance(v, torch.Tensor):
                return v
        for v in y.values():
            if isinstance(v, torch.Tensor):
                return v
        return None
    return y


def _to_matte(y: torch.Tensor, activation: str) -> np.ndarray:
    """Squeeze an alpha tensor to a (H, W) float32 matte in [0,1]."""
    # Expect either (1,1,H,W) or (1,H,W) or (H,W)
    if y.ndim == 4:
        if y.shape[0] != 1:
            raise InferenceContractError(f"Expected batch size 1, got {tuple(y.shape)}")
        y = y[0, 0]
    elif y.ndim == 3:
        y = y[0]
    elif y.ndim != 2:
        raise InferenceContractError(f"Unexpected output tensor shape: {tuple(y.shape)}")

    y = y.float()
    if activation == "sigmoid":
        y = torch.sigmoid(y)

    if torch.isnan(y).any():
        raise InferenceContractError("NaNs detected in predicted matte.")

    matte = y.detach().to("cpu").numpy().astype(np.float32, copy=False)
    return np.clip(matte, 0.0, 1.0)


class MatteInferenceEngine:
    """
    Turns RGB images into alpha mattes through an InferenceSession.

    run_still: one image through a single-image model.
    run_streaming: one frame through the recurrent model, carrying hidden state.
    """

    @staticmethod
    def _require(session: Optional[InferenceSession]) -> InferenceSession:
        if session is None or not session.ready:
            raise EngineNotReady("No inference session is loaded")
        return session

    def run_still(self, image: np.ndarray, session: Optional[InferenceSession]) -> np.ndarray:
        """
        Returns a float32 matte of shape image.shape[:2], values in [0,1].
        """
        session = self._require(session)
        descriptor = session.descriptor
        if descriptor.recurrent:
            raise EngineNotReady(f"{descriptor.model_id} is recurrent; use run_streaming")
        if image.ndim != 3 or image.shape[2] != 3:
            raise ValueError(f"Expected RGB image (H,W,3), got shape={image.shape}")

        h, w = image.shape[:2]
        if descriptor.input_size is not None:
            model_size = descriptor.input_size
        else:
            model_size = (align_to_multiple(w, STILL_ALIGN), align_to_multiple(h, STILL_ALIGN))

        x = normalize(resize_rgb(image, model_size), descriptor.mean, descriptor.std).to(session.device)
        y = _extract_primary_output(session.run(x))
        if not isinstance(y, torch.Tensor):
            raise InferenceContractError(f"{descriptor.model_id} output is not a tensor: {type(y)}")

        matte = _to_matte(y, descriptor.output_activation)
        if matte.shape != (h, w):
            matte = cv2.resize(matte, (w, h), interpolation=cv2.INTER_LANCZOS4)
            matte = np.clip(matte, 0.0, 1.0).astype(np.float32, copy=False)
        return matte

    def run_streaming(
        self,
        image: np.ndarray,
        session: Optional[InferenceSession],
        states: RecurrentStateStore,
        max_dimension: int,
    ) -> StreamingOutput:
        session = self._require(session)
        descriptor = session.descriptor
        if not descriptor.recurrent:
            raise EngineNotReady(f"{descriptor.model_id} is not a recurrent model")
        if image.ndim != 3 or image.shape[2] != 3:
            raise ValueError(f"Expected RGB image (H,W,3), got shape={image.shape}")

        h, w = image.shape[:2]
        ratio = compute_ratio(w, h, LIVE_TARGET_AREA, max_dimension, LIVE_MIN_RATIO)
        size = working_size(w, h, ratio)
        state_reset = states.bind(size)
        if states.device != session.device:
            states.reset(session.device)
            states.bind(size)

        src = normalize(resize_rgb(image, size), descriptor.mean, descriptor.std).to(session.device)
        r1, r2, r3, r4 = states.tensors()
        # The frame is already at the working size; the ratio is still forwarded as the model's own hint.
        out = session.run(src, r1, r2, r3, r4, float(ratio))

        fgr, pha, new_states = self._split_streaming_output(out)
        states.replace(new_states)

        alpha = _to_matte(pha, descriptor.output_activation)
        if alpha.shape != (size[1], size[0]):
            alpha = cv2.resize(alpha, size, interpolation=cv2.INTER_LINEAR)
            alpha = np.clip(alpha, 0.0, 1.0).astype(np.float32, copy=False)

        foreground = None
        if isinstance(fgr, torch.Tensor) and fgr.ndim == 4 and fgr.shape[0] == 1 and fgr.shape[1] == 3:
            foreground = tensor_to_rgb(fgr)

        return StreamingOutput(
            alpha=alpha,
            foreground=foreground,
            working_size=size,
            ratio=ratio,
            state_reset=state_reset,
        )

    @staticmethod
    def _split_streaming_output(out):
        if isinstance(out, dict):
            pha = out.get("pha", None)
            if pha is None:
                pha = out.get("alpha", None)
            fgr = out.get("fgr", None)
            new_states = [out.get(k, None) for k in _STATE_KEYS]
        elif isinstance(out, (list, tuple)):
            if len(out) < 6:
                raise InferenceContractError(f"Recurrent model returned {len(out)} outputs, expected 6")
            fgr, pha = out[0], out[1]
            new_states = list(out[2:6])
        else:
            raise InferenceContractError(f"Unexpected recurrent model output: {type(out)}")

        if not isinstance(pha, torch.Tensor):
            raise InferenceContractError("Recurrent model output is missing the alpha tensor")
        if any(s is None for s in new_states):
            raise InferenceContractError("Recurrent model output is missing updated states")
        return fgr, pha, new_states
