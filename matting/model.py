from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import torch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendProbe:
    """Result of a one-shot GPU capability check: Available(device) or Unavailable(reason)."""

    available: bool
    device: torch.device
    reason: str = ""

    @property
    def is_gpu(self) -> bool:
        return self.device.type != "cpu"


def probe_gpu_backend() -> BackendProbe:
    """
    Pick MPS, then CUDA. A tiny allocation confirms the device is usable;
    failures are reported in the result instead of raised.
    """
    candidates = []
    if torch.backends.mps.is_available():
        candidates.append(torch.device("mps"))
    if torch.cuda.is_available():
        candidates.append(torch.device("cuda"))
    if not candidates:
        return BackendProbe(False, torch.device("cpu"), "no CUDA or MPS device present")

    reasons = []
    for device in candidates:
        try:
            torch.zeros(1, device=device)
        except RuntimeError as e:
            reasons.append(f"{device.type}: {e}")
            continue
        return BackendProbe(True, device)
    return BackendProbe(False, torch.device("cpu"), "; ".join(reasons))


def cpu_thread_count() -> int:
    return max(2, (os.cpu_count() or 2) // 2)


def load_torchscript_matting_model(model_path: str, device: torch.device) -> torch.nn.Module:
    """
    Load a TorchScript matting model for local inference.

    Implementation note:
    - This loader expects a module saved via torch.jit.save (see get_model.py).
    - Pure state_dict checkpoints require the original model code and are not supported.
    """
    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    try:
        # Register torchvision custom TorchScript ops before loading.
        import torchvision  # noqa: F401

        # Load on CPU first, then explicitly cast to float32.
        model = torch.jit.load(model_path, map_location="cpu")
    except Exception as e:  # noqa: BLE001 - surface a helpful error
        raise RuntimeError(
            f"Failed to load model {model_path}. Expected a TorchScript archive saved with torch.jit.save()."
        ) from e

    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)

    model = model.to(dtype=torch.float32)
    model.to(device)
    return model


def forward_model(model: torch.nn.Module, *inputs: Any) -> Any:
    """
    Run forward pass (kept separate so inference.py can remain simple).
    """
    with torch.inference_mode():
        return model(*inputs)
