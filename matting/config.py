"""
Centralized configuration constants for the live matting pipeline.

Ground rules:
- float32 tensors, batch size 1
- every threshold below is an empirically tuned knob; change it here, not inline
"""

import os
from pathlib import Path

MODELS_DIR = os.getenv("MATTING_MODELS_DIR", str(Path.cwd() / "models"))

# Model weight files (TorchScript archives, see get_model.py).
PP_LITESEG_FILE = "pp_liteseg.torchscript"
MODNET_FILE = "modnet.torchscript"
RVM_FILE = "rvm_mobilenetv3_fp32.torchscript"

# Recurrent video-matting hidden state channels (r1..r4).
RVM_STATE_CHANNELS = (16, 20, 40, 64)

HALF_MEAN = (0.5, 0.5, 0.5)
HALF_STD = (0.5, 0.5, 0.5)

# Still capture: longer side per quality tier, then clamp + round.
STILL_SIZE_LOW = 320
STILL_SIZE_MEDIUM = 400
STILL_SIZE_HIGH = 512
STILL_MIN_SIZE = 256
STILL_ALIGN = 32

# Streaming working resolution.
LIVE_TARGET_AREA = 256.0 * 256.0
LIVE_BASE_MAX_DIM = 256
LIVE_MIN_RATIO = 0.25
LIVE_ALIGN = 16
LIVE_MIN_DIM = 64
LIVE_MAX_OUTPUT_WIDTH = 640

# Minimum interval between processed frames per scheduler lane.
RECURRENT_MIN_INTERVAL_S = 0.030
FALLBACK_MIN_INTERVAL_S = 0.045

# Alpha statistics (inversion / degeneracy).
ANALYSIS_GRID = 32
INVERT_CENTER_MAX = 0.15
INVERT_BORDER_FACTOR = 1.5
AUTO_INVERT_MEAN_MAX = 0.15
AUTO_INVERT_PEAK_MIN = 0.5
DEGENERATE_PEAK_MAX = 0.02
DEGENERATE_MEAN_MAX = 0.05
DEGENERATE_CENTER_MAX = 0.05

# Scale boost hysteresis after degenerate output.
SCALE_BOOST_MAX = 2.0
SCALE_BOOST_STEP = 1.25
SCALE_BOOST_DECAY = 0.95
SCALE_BOOST_HOLD_FRAMES = 30

# Alpha remapping knees.
ALPHA_OFFSET = 0.00
ALPHA_GAIN = 2.5
ALPHA_GAMMA = 0.5
ALPHA_KNEE_LOW = 0.02
ALPHA_KNEE_HIGH = 0.20

# Only pixels strictly inside this band are treated as edge pixels when smoothing.
EDGE_BAND_LOW = 0.05
EDGE_BAND_HIGH = 0.95
FEATHER_EDGE_STRENGTH = 0.2

# Colour decontamination target and compositing.
MID_GRAY = 127.5
DEFAULT_BACKGROUND_COLOR = (30, 30, 30)
NO_BACKGROUND_COLOR = (255, 255, 255)
BACKGROUND_CACHE_TTL_S = 60.0
JPEG_QUALITY = 90

DEFAULT_EDGE_REFINEMENT = 50
