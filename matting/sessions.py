from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

import torch

from .contracts import Quality
from .errors import EngineNotReady
from .model import BackendProbe, cpu_thread_count, forward_model, load_torchscript_matting_model, probe_gpu_backend
from .registry import ModelDescriptor, ModelRegistry, SessionPurpose

logger = logging.getLogger(__name__)

ModelLoader = Callable[[str, torch.device], torch.nn.Module]


class InferenceSession:
    """One loaded model bound to one descriptor and one device."""

    def __init__(self, descriptor: ModelDescriptor, module: torch.nn.Module, device: torch.device):
        self.descriptor = descriptor
        self.device = device
        self._module: Optional[torch.nn.Module] = module

    @property
    def is_gpu(self) -> bool:
        return self.device.type != "cpu"

    @property
    def ready(self) -> bool:
        return self._module is not None

    def run(self, *inputs):
        if self._module is None:
            raise EngineNotReady(f"Session for {self.descriptor.model_id} is closed")
        return forward_model(self._module, *inputs)

    def close(self) -> None:
        self._module = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()


class InferenceSessionPool:
    """
    Owns the still-capture, live fallback and recurrent sessions.

    acquire() is idempotent and serialized by a single lock so concurrent first use
    never constructs a session twice. GPU selection is a soft preference: an
    unavailable GPU falls back to CPU and is only logged.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        loader: ModelLoader = load_torchscript_matting_model,
        probe: Callable[[], BackendProbe] = probe_gpu_backend,
    ):
        self._registry = registry
        self._loader = loader
        self._probe = probe
        self._sessions: Dict[SessionPurpose, InferenceSession] = {}
        self._lock = threading.RLock()
        self._gpu_status = "Not initialized"

    def _select_device(self, prefer_gpu: bool) -> torch.device:
        if not prefer_gpu:
            self._gpu_status = "GPU disabled in settings"
            torch.set_num_threads(cpu_thread_count())
            return torch.device("cpu")

        probe = self._probe()
        if probe.available:
            self._gpu_status = f"{probe.device.type} acceleration active"
            logger.info("GPU acceleration enabled (%s)", probe.device.type)
            return probe.device

        self._gpu_status = f"GPU unavailable: {probe.reason}"
        logger.info("GPU acceleration not available, using CPU (%s)", probe.reason)
        torch.set_num_threads(cpu_thread_count())
        return torch.device("cpu")

    def acquire(
        self,
        purpose: SessionPurpose,
        prefer_gpu: bool = True,
        quality: Quality = Quality.MEDIUM,
    ) -> Optional[InferenceSession]:
        """Return the session for purpose, creating it on first use. None when no model can be loaded."""
        with self._lock:
            existing = self._sessions.get(purpose)
            if existing is not None:
                return existing

            descriptor = self._registry.resolve(purpose, quality)
            if descriptor is None:
                return None
            path: Optional[Path] = self._registry.locate(descriptor)
            if path is None:
                return None

            device = self._select_device(prefer_gpu)
            try:
                module = self._loader(str(path), device)
            except (OSError, RuntimeError) as e:
                logger.error("Failed to load %s model from %s: %s", descriptor.model_id, path, e)
                return None

            session = InferenceSession(descriptor, module, device)
            self._sessions[purpose] = session
            logger.info(
                "Loaded %s for %s on %s (tier=%s)",
                descriptor.model_id,
                purpose.value,
                device.type,
                descriptor.cost_tier,
            )
            return session

    def get(self, purpose: SessionPurpose) -> Optional[InferenceSession]:
        with self._lock:
            return self._sessions.get(purpose)

    def release(self, purpose: SessionPurpose) -> None:
        with self._lock:
            session = self._sessions.pop(purpose, None)
        if session is not None:
            session.close()
            logger.debug("Released %s session (%s)", purpose.value, session.descriptor.model_id)

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._gpu_status = "Not initialized"
        for session in sessions:
            session.close()

    def backend_status(self) -> str:
        with self._lock:
            gpu = any(s.is_gpu for s in self._sessions.values())
            return f"GPU Enabled: {gpu} | Status: {self._gpu_status}"
