"""Anatomical distortion constraints measured on facial landmarks.

Each constraint compares one derived measurement with its natural value
and flags it when the relative distortion exceeds a maximum.  The natural
lengths and maxima are empirical and tunable, not physically derived.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence

from visemeforge.constants import (
    LEFT_EYE_OUTER, LEFT_INNER_LIP_CORNER, LEFT_JAW, MAX_CONSTRAINT_PENALTY,
    MAX_EYE_NOSE_DISTORTION, MAX_FACE_WIDTH_DISTORTION, MAX_LIP_ASYMMETRY,
    MAX_PHILTRUM_STRETCH, MOUTH_LEFT_CORNER, MOUTH_RIGHT_CORNER,
    MULTI_VIOLATION_BASE, NATURAL_FACE_WIDTH, NATURAL_NOSE_OFFSET,
    NATURAL_PHILTRUM_LENGTH, NOSE_BASE, NOSE_TIP, RIGHT_EYE_OUTER,
    RIGHT_INNER_LIP_CORNER, RIGHT_JAW, UPPER_LIP_OUTER_CENTER,
)
from visemeforge.core import math_utils as mu
from visemeforge.core.math_utils import LandmarkSet, Vec3

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConstraintResult:
    """Outcome of one constraint on one landmark set."""
    value: float
    max_allowed: float
    violated: bool
    severity: float  # 0 within bound, grows with the excess

    @classmethod
    def from_measurement(cls, value: float, max_allowed: float) -> "ConstraintResult":
        return cls(
            value=value,
            max_allowed=max_allowed,
            violated=value > max_allowed,
            severity=max(0.0, value - max_allowed) / max_allowed,
        )


@dataclass(frozen=True)
class FacialConstraint:
    """A named measurement over a fixed landmark subset with an upper bound."""
    name: str
    landmarks: tuple[int, ...]
    measure: Callable[[Sequence[Vec3]], float]
    max_allowed: float

    def __post_init__(self):
        if self.max_allowed <= 0:
            raise ValueError(f"Constraint {self.name!r} needs a positive max_allowed")


# ── Measurements ──────────────────────────────────────────────────────

def measure_philtrum_stretch(points: Sequence[Vec3]) -> float:
    """Relative stretch of the lip-to-nose vertical distance."""
    upper_lip, nose = points
    length = abs(upper_lip[1] - nose[1])
    return max(0.0, (length - NATURAL_PHILTRUM_LENGTH) / NATURAL_PHILTRUM_LENGTH)


def measure_lip_asymmetry(points: Sequence[Vec3]) -> float:
    """Relative difference between the left and right corner-to-lip distances."""
    left_corner, right_corner, left_lip, right_lip = points
    left = mu.distance_2d(left_corner, left_lip)
    right = mu.distance_2d(right_corner, right_lip)
    longest = max(left, right)
    if longest <= 0.0:
        return 0.0
    return abs(left - right) / longest


def measure_face_width_distortion(points: Sequence[Vec3]) -> float:
    """Relative deviation of the jaw width from its natural value."""
    left_jaw, right_jaw = points
    width = abs(left_jaw[0] - right_jaw[0])
    return abs(width - NATURAL_FACE_WIDTH) / NATURAL_FACE_WIDTH


def measure_eye_nose_distortion(points: Sequence[Vec3]) -> float:
    """Excess horizontal offset of the nose tip from the eye midpoint."""
    nose_tip, right_eye, left_eye = points
    mid_x = (right_eye[0] + left_eye[0]) / 2.0
    offset = abs(nose_tip[0] - mid_x)
    return max(0.0, (offset - NATURAL_NOSE_OFFSET) / NATURAL_NOSE_OFFSET)


DEFAULT_CONSTRAINTS: tuple[FacialConstraint, ...] = (
    FacialConstraint("philtrum", (UPPER_LIP_OUTER_CENTER, NOSE_BASE),
                     measure_philtrum_stretch, MAX_PHILTRUM_STRETCH),
    FacialConstraint("lipSymmetry", (MOUTH_LEFT_CORNER, MOUTH_RIGHT_CORNER,
                                     LEFT_INNER_LIP_CORNER, RIGHT_INNER_LIP_CORNER),
                     measure_lip_asymmetry, MAX_LIP_ASYMMETRY),
    FacialConstraint("faceWidth", (LEFT_JAW, RIGHT_JAW),
                     measure_face_width_distortion, MAX_FACE_WIDTH_DISTORTION),
    FacialConstraint("eyeNoseRelation", (NOSE_TIP, RIGHT_EYE_OUTER, LEFT_EYE_OUTER),
                     measure_eye_nose_distortion, MAX_EYE_NOSE_DISTORTION),
)


# ── Evaluation ────────────────────────────────────────────────────────

class ConstraintEvaluator:
    """Evaluates a set of facial constraints on landmark sets.

    A constraint whose landmarks are missing, or whose measurement fails,
    is left out of the result instead of being reported as violated.
    """

    def __init__(self, constraints: Optional[Sequence[FacialConstraint]] = None):
        self._constraints: dict[str, FacialConstraint] = {
            c.name: c for c in (constraints if constraints is not None else DEFAULT_CONSTRAINTS)
        }

    @property
    def names(self) -> list[str]:
        return list(self._constraints)

    def register(self, constraint: FacialConstraint) -> None:
        """Add or replace a constraint."""
        self._constraints[constraint.name] = constraint

    def evaluate(self, landmarks: LandmarkSet) -> dict[str, ConstraintResult]:
        results = {}
        for name, constraint in self._constraints.items():
            points = [mu.get_point(landmarks, idx) for idx in constraint.landmarks]
            if any(p is None for p in points):
                logger.debug("Skipping constraint %s: landmarks missing", name)
                continue
            try:
                value = float(constraint.measure(points))
            except Exception:
                logger.warning("Failed to evaluate constraint %s", name, exc_info=True)
                continue
            results[name] = ConstraintResult.from_measurement(value, constraint.max_allowed)
        return results


def violated_names(results: Mapping[str, ConstraintResult]) -> list[str]:
    return [name for name, r in results.items() if r.violated]


def are_constraints_satisfied(results: Mapping[str, ConstraintResult]) -> bool:
    return not any(r.violated for r in results.values())


def constraint_penalty(results: Mapping[str, ConstraintResult], weight: float) -> float:
    """Overall score penalty in [0, MAX_CONSTRAINT_PENALTY].

    Sum of ``severity * weight`` over violated constraints, compounded by
    ``1.2 ** (n - 1)`` when ``n > 1`` constraints are violated together.
    """
    total = 0.0
    count = 0
    for r in results.values():
        if r.violated:
            total += r.severity * weight
            count += 1
    if count > 1:
        total *= MULTI_VIOLATION_BASE ** (count - 1)
    return min(MAX_CONSTRAINT_PENALTY, total)
