"""Synthetic 468-point face meshes for classifier and constraint tests.

All coordinates are normalized image space with y growing downward.  The
default face has a closed, level mouth and natural proportions, so every
anatomical constraint is satisfied.
"""

import numpy as np

from visemeforge.constants import (
    FACE_VERT_COUNT, LEFT_EYE_OUTER, LEFT_INNER_LIP_CORNER, LEFT_JAW,
    LOWER_LIP, MOUTH_BOTTOM_CENTER, MOUTH_LEFT_CORNER, MOUTH_OUTER,
    MOUTH_RIGHT_CORNER, MOUTH_TOP_CENTER, NOSE_BASE, NOSE_TIP,
    RIGHT_EYE_OUTER, RIGHT_INNER_LIP_CORNER, RIGHT_JAW, UPPER_LIP,
    UPPER_LIP_OUTER_CENTER,
)

MOUTH_CENTER_X = 0.5
MOUTH_CENTER_Y = 0.65
LIP_THICKNESS = 0.012


def make_face(mouth_open: float = 0.0,
              mouth_width: float = 0.12,
              philtrum: float = 0.03,
              jaw_width: float = 0.4,
              nose_offset: float = 0.0,
              corner_shift: float = 0.0) -> np.ndarray:
    """Build a (468, 3) landmark array.

    Parameters
    ----------
    mouth_open : float
        Vertical gap between the inner upper and lower lip.
    mouth_width : float
        Corner-to-corner distance.
    philtrum : float
        Vertical distance from the outer upper lip center to the nose base.
    jaw_width : float
        Horizontal distance between the jaw landmarks.
    nose_offset : float
        Horizontal offset of the nose tip from the eye midpoint.
    corner_shift : float
        Moves the left mouth corner outward only, making the lips asymmetric.
    """
    lm = np.zeros((FACE_VERT_COUNT, 3))
    cx, cy = MOUTH_CENTER_X, MOUTH_CENTER_Y
    half = mouth_width / 2.0

    # Outer lip ellipse, starting at the left corner and running along
    # the lower lip, so index 5 is the lower center and 15 the upper center
    a = half
    b = LIP_THICKNESS + mouth_open / 2.0
    for i, idx in enumerate(MOUTH_OUTER):
        theta = np.pi - i * np.pi / 10.0
        lm[idx] = [cx + a * np.cos(theta), cy + b * np.sin(theta), 0.0]

    # Paired inner lip rows share x so their separation equals the gap
    offsets = np.linspace(-0.75, 0.75, len(UPPER_LIP)) * half
    for dx, u_idx, l_idx in zip(offsets, UPPER_LIP, LOWER_LIP):
        lm[u_idx] = [cx + dx, cy - mouth_open / 2.0, 0.0]
        lm[l_idx] = [cx + dx, cy + mouth_open / 2.0, 0.0]

    lm[MOUTH_LEFT_CORNER] = [cx - half - corner_shift, cy, 0.0]
    lm[MOUTH_RIGHT_CORNER] = [cx + half, cy, 0.0]
    lm[MOUTH_TOP_CENTER] = [cx, cy - mouth_open / 2.0, 0.0]
    lm[MOUTH_BOTTOM_CENTER] = [cx, cy + mouth_open / 2.0, 0.0]
    lm[LEFT_INNER_LIP_CORNER] = [cx - half + 0.01, cy, 0.0]
    lm[RIGHT_INNER_LIP_CORNER] = [cx + half - 0.01, cy, 0.0]

    lm[NOSE_BASE] = [cx, lm[UPPER_LIP_OUTER_CENTER][1] - philtrum, 0.0]
    lm[NOSE_TIP] = [cx + nose_offset, 0.5, -0.05]
    lm[RIGHT_EYE_OUTER] = [cx - 0.1, 0.4, 0.0]
    lm[LEFT_EYE_OUTER] = [cx + 0.1, 0.4, 0.0]
    lm[LEFT_JAW] = [cx - jaw_width / 2.0, 0.7, 0.0]
    lm[RIGHT_JAW] = [cx + jaw_width / 2.0, 0.7, 0.0]
    return lm


def make_closed_mouth() -> np.ndarray:
    """Neutral face with lips pressed together."""
    return make_face()


def make_open_mouth(gap: float = 0.1) -> np.ndarray:
    """Face with a wide vertical lip opening."""
    return make_face(mouth_open=gap)


def with_missing(landmarks: np.ndarray, *indices: int) -> list:
    """Copy *landmarks* as a list with the given entries set to None."""
    out = [row.copy() for row in landmarks]
    for idx in indices:
        out[idx] = None
    return out
