from __future__ import annotations

import os
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field

from .config import DEFAULT_EDGE_REFINEMENT


class Quality(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class LiveViewMode(str, Enum):
    AUTO = "Auto"
    SMOOTH = "Smooth"
    RESPONSIVE = "Responsive"


class MattingSettings(BaseModel):
    """Read-only settings snapshot, polled on every request."""

    enabled: bool = True
    live_view_enabled: bool = True
    quality: Quality = Quality.MEDIUM
    use_gpu: bool = True
    edge_refinement: int = Field(default=DEFAULT_EDGE_REFINEMENT, ge=0, le=100)
    live_view_mode: LiveViewMode = LiveViewMode.AUTO
    background_path: Optional[str] = None


SettingsProvider = Callable[[], MattingSettings]


class StageTimings(BaseModel):
    preprocess_s: float = 0.0
    inference_s: float = 0.0
    postprocess_s: float = 0.0
    composite_s: float = 0.0
    total_s: float = 0.0


class StillCaptureResult(BaseModel):
    success: bool
    processed_image_path: Optional[str] = None
    mask_path: Optional[str] = None
    composite_path: Optional[str] = None
    processing_time_s: float = 0.0
    timings: Optional[StageTimings] = None
    fallback_used: bool = False
    error_message: Optional[str] = None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_enum(name: str, enum_cls, default):
    try:
        return enum_cls(os.getenv(name, default.value))
    except ValueError:
        return default


def load_settings() -> MattingSettings:
    """
    Build settings from MATTING_* environment variables (call load_dotenv() first for .env support).
    """
    try:
        edge = int(os.getenv("MATTING_EDGE_REFINEMENT", str(DEFAULT_EDGE_REFINEMENT)))
    except ValueError:
        edge = DEFAULT_EDGE_REFINEMENT
    return MattingSettings(
        enabled=_env_bool("MATTING_ENABLED", True),
        live_view_enabled=_env_bool("MATTING_LIVE_VIEW_ENABLED", True),
        quality=_env_enum("MATTING_QUALITY", Quality, Quality.MEDIUM),
        use_gpu=_env_bool("MATTING_USE_GPU", True),
        edge_refinement=max(0, min(100, edge)),
        live_view_mode=_env_enum("MATTING_LIVE_VIEW_MODE", LiveViewMode, LiveViewMode.AUTO),
        background_path=os.getenv("MATTING_BACKGROUND") or None,
    )
