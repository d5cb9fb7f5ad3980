"""Shared constants and paths for VisemeForge."""

from pathlib import Path

# Package paths
PACKAGE_DIR = Path(__file__).parent
ASSETS_DIR = PACKAGE_DIR / "assets"
CONFIG_DIR = ASSETS_DIR / "config"

# Face mesh constants
FACE_VERT_COUNT = 468  # MediaPipe face landmarks

# ── Mouth landmark index tables (MediaPipe face mesh) ────────────────

# Outer lip contour, clockwise from the left corner
MOUTH_OUTER = [61, 146, 91, 181, 84, 17, 314, 405, 321, 375,
               291, 409, 270, 269, 267, 0, 37, 39, 40, 185]
# Inner lip contour, clockwise from the left inner corner
MOUTH_INNER = [78, 95, 88, 178, 87, 14, 317, 402, 318, 324,
               308, 415, 310, 311, 312, 13, 82, 81, 80, 191]
# Inner upper/lower lip points, paired column by column across the lip line
UPPER_LIP = [82, 81, 80, 13, 312, 311, 310]
LOWER_LIP = [87, 178, 88, 14, 317, 402, 318]

MOUTH_LEFT_CORNER = 61
MOUTH_RIGHT_CORNER = 291
MOUTH_TOP_CENTER = 13
MOUTH_BOTTOM_CENTER = 14

# ── Constraint landmarks ─────────────────────────────────────────────

UPPER_LIP_OUTER_CENTER = 0
NOSE_BASE = 2
NOSE_TIP = 1
LEFT_INNER_LIP_CORNER = 78
RIGHT_INNER_LIP_CORNER = 308
LEFT_JAW = 172
RIGHT_JAW = 397
RIGHT_EYE_OUTER = 33
LEFT_EYE_OUTER = 263

# Natural proportions in normalized image units.  Empirical, tunable.
NATURAL_PHILTRUM_LENGTH = 0.03
NATURAL_FACE_WIDTH = 0.4
NATURAL_NOSE_OFFSET = 0.02

MAX_PHILTRUM_STRETCH = 0.15
MAX_LIP_ASYMMETRY = 0.10
MAX_FACE_WIDTH_DISTORTION = 0.12
MAX_EYE_NOSE_DISTORTION = 0.08

# ── Classifier defaults ──────────────────────────────────────────────

DEFAULT_SMOOTHING_FACTOR = 0.3
DEFAULT_TARGET_FPS = 30
SMOOTHING_WINDOW = 3           # frames considered when picking the smoothed label
CONFIDENCE_HISTORY_WINDOW = 5  # frames averaged into the confidence blend
CONFIDENCE_HISTORY_SIZE = 10
MIN_MOUTH_SIZE = 0.1           # width + height below which confidence is scaled down

# ── Optimizer defaults ───────────────────────────────────────────────

DEFAULT_MAX_ITERATIONS = 8
DEFAULT_LEARNING_RATE = 0.15
DEFAULT_CONVERGENCE_THRESHOLD = 0.02
DEFAULT_CONSTRAINT_WEIGHT = 0.3
DEFAULT_MAX_OPTIMIZATION_TIME = 30000.0  # ms

DEVIATION_THRESHOLD = 0.05     # smaller metric deviations are ignored
MIN_ADJUSTMENT = 0.02          # smaller morph adjustments are dropped
SAFETY_SCALE = 0.3             # adjustment kept when a related constraint is violated
CONFLICT_SCALE = 0.5           # adjustment kept when a conflicting morph was accepted
MAX_CONSTRAINT_PENALTY = 0.8
MULTI_VIOLATION_BASE = 1.2
MORPH_PENALTY_PER_SEVERITY = 0.2

# ── Learning defaults ────────────────────────────────────────────────

LEARNING_DATA_VERSION = "1.0"
DEFAULT_EFFECTIVENESS = 0.5
EFFECTIVENESS_MIN = 0.1
EFFECTIVENESS_MAX = 2.0
EFFECTIVENESS_DECAY = 0.8      # weight of the previous score in the moving average
MAX_SUCCESSFUL_CONFIGURATIONS = 10
MAX_PRIOR_BLEND = 0.7
LEARNING_RATE_MULTIPLIER_MIN = 0.5
LEARNING_RATE_MULTIPLIER_MAX = 1.5
SUCCESS_SCORE = 85.0
HIGH_SCORE = 90.0
LOW_SCORE = 60.0
PROGRESS_INTERVAL = 0.5        # seconds
