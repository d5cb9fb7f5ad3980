"""Mouth landmark extraction and geometric feature computation.

Features are raw measurements in normalized image units.  The rule-based
classifier works on ``normalize_features`` output, which maps each raw
feature onto [0, 1] using the expected ranges below.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Optional

from visemeforge.constants import (
    LOWER_LIP, MOUTH_BOTTOM_CENTER, MOUTH_INNER, MOUTH_LEFT_CORNER,
    MOUTH_OUTER, MOUTH_RIGHT_CORNER, MOUTH_TOP_CENTER, UPPER_LIP,
)
from visemeforge.core import math_utils as mu
from visemeforge.core.math_utils import LandmarkSet, Vec3

# Expected raw ranges used for normalization: feature -> (min, max)
FEATURE_RANGES: dict[str, tuple[float, float]] = {
    "mouth_width": (0.0, 0.15),
    "mouth_height": (0.0, 0.12),
    "mouth_area": (0.0, 0.01),
    "aspect_ratio": (0.0, 5.0),
    "lip_separation": (0.0, 0.1),
    "curvature": (-0.05, 0.05),
    "roundness": (0.0, 1.0),
    "jaw_opening": (0.0, 0.15),
}

# Below this mouth height the width/height ratio is undefined
_MIN_HEIGHT_FOR_ASPECT = 1e-6


@dataclass
class MouthLandmarks:
    """Named mouth landmark subsets of a single frame."""
    outer: list[Vec3] = field(default_factory=list)
    inner: list[Vec3] = field(default_factory=list)
    upper_lip: list[Vec3] = field(default_factory=list)
    lower_lip: list[Vec3] = field(default_factory=list)
    left_corner: Optional[Vec3] = None
    right_corner: Optional[Vec3] = None
    top_center: Optional[Vec3] = None
    bottom_center: Optional[Vec3] = None


@dataclass
class GeometricFeatures:
    """Scalar mouth measurements derived from one landmark set.

    Any feature whose landmarks were unavailable stays ``None``.
    """
    mouth_width: Optional[float] = None
    mouth_height: Optional[float] = None
    mouth_area: Optional[float] = None
    lip_separation: Optional[float] = None
    aspect_ratio: Optional[float] = None
    curvature: Optional[float] = None
    roundness: Optional[float] = None
    jaw_opening: Optional[float] = None

    def to_dict(self) -> dict[str, float]:
        """Return the available features, omitting missing ones."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.to_dict()


def extract_mouth_landmarks(landmarks: LandmarkSet) -> MouthLandmarks:
    """Pick the named mouth subsets out of a full landmark set."""
    upper, lower = [], []
    # Keep upper/lower rows paired: drop a column if either side is missing
    for u_idx, l_idx in zip(UPPER_LIP, LOWER_LIP):
        u = mu.get_point(landmarks, u_idx)
        lo = mu.get_point(landmarks, l_idx)
        if u is not None and lo is not None:
            upper.append(u)
            lower.append(lo)

    return MouthLandmarks(
        outer=mu.get_points(landmarks, MOUTH_OUTER),
        inner=mu.get_points(landmarks, MOUTH_INNER),
        upper_lip=upper,
        lower_lip=lower,
        left_corner=mu.get_point(landmarks, MOUTH_LEFT_CORNER),
        right_corner=mu.get_point(landmarks, MOUTH_RIGHT_CORNER),
        top_center=mu.get_point(landmarks, MOUTH_TOP_CENTER),
        bottom_center=mu.get_point(landmarks, MOUTH_BOTTOM_CENTER),
    )


def compute_features(mouth: MouthLandmarks) -> GeometricFeatures:
    """Compute GeometricFeatures from extracted mouth landmarks."""
    feats = GeometricFeatures()

    if mouth.left_corner is not None and mouth.right_corner is not None:
        feats.mouth_width = mu.distance(mouth.left_corner, mouth.right_corner)

    if mouth.top_center is not None and mouth.bottom_center is not None:
        feats.mouth_height = mu.distance(mouth.top_center, mouth.bottom_center)
        feats.jaw_opening = mu.jaw_opening(mouth.top_center, mouth.bottom_center)

    if mouth.outer:
        feats.mouth_area = mu.polygon_area(mouth.outer)
        feats.roundness = mu.roundness(mouth.outer)

    if mouth.upper_lip and mouth.lower_lip:
        feats.lip_separation = mu.mean_pairwise_distance(mouth.upper_lip, mouth.lower_lip)

    if (feats.mouth_width is not None and feats.mouth_height is not None
            and feats.mouth_height > _MIN_HEIGHT_FOR_ASPECT):
        feats.aspect_ratio = feats.mouth_width / feats.mouth_height

    if (mouth.left_corner is not None and mouth.right_corner is not None
            and mouth.top_center is not None):
        feats.curvature = mu.curvature(mouth.left_corner, mouth.right_corner, mouth.top_center)

    return feats


def extract_features(landmarks: LandmarkSet) -> GeometricFeatures:
    """Full pipeline: landmark set → mouth subsets → features."""
    return compute_features(extract_mouth_landmarks(landmarks))


def normalize_features(features: GeometricFeatures) -> dict[str, float]:
    """Map each available raw feature onto [0, 1] using FEATURE_RANGES."""
    normalized = {}
    for name, value in features.to_dict().items():
        lo, hi = FEATURE_RANGES[name]
        normalized[name] = mu.clamp01((value - lo) / (hi - lo))
    return normalized
