from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .config import (
    HALF_MEAN,
    HALF_STD,
    MODELS_DIR,
    MODNET_FILE,
    PP_LITESEG_FILE,
    RVM_FILE,
    RVM_STATE_CHANNELS,
)
from .contracts import Quality

logger = logging.getLogger(__name__)


class SessionPurpose(str, Enum):
    STILL = "still"
    LIVE_FALLBACK = "live_fallback"
    RECURRENT = "recurrent"


@dataclass(frozen=True)
class ModelDescriptor:
    """Static facts about one model file; never mutated after construction."""

    model_id: str
    file_name: str
    input_size: Optional[Tuple[int, int]]  # (width, height); None = dynamic
    mean: Tuple[float, float, float]
    std: Tuple[float, float, float]
    cost_tier: str
    recurrent: bool = False
    state_channels: Tuple[int, ...] = ()
    output_activation: str = "none"  # "none" | "sigmoid"


PP_LITESEG = ModelDescriptor(
    model_id="pp_liteseg",
    file_name=PP_LITESEG_FILE,
    input_size=(512, 512),
    mean=HALF_MEAN,
    std=HALF_STD,
    cost_tier="fast",
)

MODNET = ModelDescriptor(
    model_id="modnet",
    file_name=MODNET_FILE,
    input_size=(320, 320),
    mean=HALF_MEAN,
    std=HALF_STD,
    cost_tier="balanced",
)

RVM_MOBILENETV3 = ModelDescriptor(
    model_id="rvm_mobilenetv3",
    file_name=RVM_FILE,
    input_size=None,
    mean=(0.0, 0.0, 0.0),
    std=(1.0, 1.0, 1.0),
    cost_tier="streaming",
    recurrent=True,
    state_channels=RVM_STATE_CHANNELS,
)

DEFAULT_DESCRIPTORS: Tuple[ModelDescriptor, ...] = (PP_LITESEG, MODNET, RVM_MOBILENETV3)

ModelLocator = Callable[[ModelDescriptor], Optional[Path]]


def directory_locator(models_dir: str | os.PathLike = MODELS_DIR) -> ModelLocator:
    """Locate weights as <models_dir>/<file_name>; read-only existence check."""
    root = Path(models_dir)

    def _locate(descriptor: ModelDescriptor) -> Optional[Path]:
        path = root / descriptor.file_name
        return path if path.is_file() else None

    return _locate


class ModelRegistry:
    """
    Resolves which model serves a purpose, based on which weight files the locator can find.

    Preference order:
      - still, High quality: higher fidelity first (modnet, pp_liteseg)
      - still Low/Medium and live fallback: lighter first (pp_liteseg, modnet)
      - recurrent: recurrent descriptors only
    """

    def __init__(
        self,
        locator: Optional[ModelLocator] = None,
        descriptors: Tuple[ModelDescriptor, ...] = DEFAULT_DESCRIPTORS,
    ):
        self._locator = locator or directory_locator()
        self._descriptors: Dict[str, ModelDescriptor] = {d.model_id: d for d in descriptors}

    def descriptor(self, model_id: str) -> Optional[ModelDescriptor]:
        return self._descriptors.get(model_id)

    def locate(self, descriptor: ModelDescriptor) -> Optional[Path]:
        return self._locator(descriptor)

    def is_available(self, descriptor: ModelDescriptor) -> bool:
        return self.locate(descriptor) is not None

    def available(self) -> List[ModelDescriptor]:
        return [d for d in self._descriptors.values() if self.is_available(d)]

    def _candidates(self, purpose: SessionPurpose, quality: Quality) -> List[ModelDescriptor]:
        if purpose is SessionPurpose.RECURRENT:
            return [d for d in self._descriptors.values() if d.recurrent]

        single = [d for d in self._descriptors.values() if not d.recurrent]
        tier_rank = {"fast": 0, "balanced": 1}
        lighter_first = sorted(single, key=lambda d: tier_rank.get(d.cost_tier, 2))
        if purpose is SessionPurpose.STILL and quality is Quality.HIGH:
            return list(reversed(lighter_first))
        return lighter_first

    def resolve(self, purpose: SessionPurpose, quality: Quality = Quality.MEDIUM) -> Optional[ModelDescriptor]:
        """Best available descriptor for the purpose, or None when nothing is on disk."""
        for descriptor in self._candidates(purpose, quality):
            if self.is_available(descriptor):
                return descriptor
        logger.debug("No model available for purpose=%s quality=%s", purpose.value, quality.value)
        return None
