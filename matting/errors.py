from __future__ import annotations


class MattingError(RuntimeError):
    """Base class for failures raised by the matting pipeline."""


class EngineNotReady(MattingError):
    """No inference session is loaded for the requested purpose."""


class InferenceContractError(MattingError):
    """A model returned outputs that do not match its tensor contract."""


class DimensionMismatchError(MattingError, ValueError):
    """Mask and image sizes still differ after the recovery resize."""
