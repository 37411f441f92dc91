from __future__ import annotations

import threading
from typing import Optional, Sequence, Tuple

import torch

from .config import RVM_STATE_CHANNELS
from .errors import InferenceContractError

RecurrentTensors = Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]


class RecurrentStateStore:
    """
    Hidden state r1..r4 carried between frames of the recurrent matting model.

    The four tensors are always swapped as one tuple, so a reader never sees a mix
    of old and new states. Batch size stays 1 and channel counts never change.
    """

    def __init__(self, channels: Sequence[int] = RVM_STATE_CHANNELS, device: Optional[torch.device] = None):
        if len(channels) != 4:
            raise ValueError(f"Expected 4 state channel counts, got {tuple(channels)}")
        self.channels: Tuple[int, ...] = tuple(int(c) for c in channels)
        self._device = device or torch.device("cpu")
        self._lock = threading.Lock()
        self._working_size: Optional[Tuple[int, int]] = None
        self._states: RecurrentTensors = self._zeros()

    def _zeros(self) -> RecurrentTensors:
        r1, r2, r3, r4 = (torch.zeros((1, c, 1, 1), dtype=torch.float32, device=self._device) for c in self.channels)
        return r1, r2, r3, r4

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def working_size(self) -> Optional[Tuple[int, int]]:
        return self._working_size

    def tensors(self) -> RecurrentTensors:
        with self._lock:
            return self._states

    def replace(self, states: Sequence[torch.Tensor]) -> None:
        """Swap in the updated states from one streaming inference."""
        if len(states) != 4:
            raise InferenceContractError(f"Expected 4 recurrent states, got {len(states)}")
        checked = []
        for i, (t, c) in enumerate(zip(states, self.channels)):
            if not isinstance(t, torch.Tensor):
                raise InferenceContractError(f"Recurrent state r{i + 1} is not a tensor: {type(t)}")
            if t.ndim != 4 or t.shape[0] != 1 or t.shape[1] != c:
                raise InferenceContractError(
                    f"Recurrent state r{i + 1} has shape {tuple(t.shape)}, expected (1,{c},H,W)"
                )
            checked.append(t.detach())
        with self._lock:
            self._states = (checked[0], checked[1], checked[2], checked[3])

    def reset(self, device: Optional[torch.device] = None) -> None:
        with self._lock:
            if device is not None:
                self._device = device
            self._working_size = None
            self._states = self._zeros()

    def bind(self, working_size: Tuple[int, int]) -> bool:
        """
        Record the working resolution for the next inference.
        Returns True when it changed and the states were reset to zero.
        """
        size = (int(working_size[0]), int(working_size[1]))
        with self._lock:
            if self._working_size == size:
                return False
            changed = self._working_size is not None
            self._working_size = size
            if changed:
                self._states = self._zeros()
            return changed
