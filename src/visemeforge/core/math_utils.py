"""NumPy-backed geometry utilities over facial landmark points.

Points are plain numpy arrays of shape (3,) in normalized image space
(x, y in [0, 1], z relative depth).  A landmark set is any indexable
sequence of points -- a (468, 3) array, or a list whose entries may be
``None`` for landmarks the tracker did not deliver.
"""

from typing import Any, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

# Type aliases
Vec3 = NDArray[np.float64]
LandmarkSet = Sequence[Any]


def vec3(x: float = 0.0, y: float = 0.0, z: float = 0.0) -> Vec3:
    return np.array([x, y, z], dtype=np.float64)


def as_point(value: Any) -> Optional[Vec3]:
    """Coerce a landmark entry to a (3,) array.

    Accepts sequences of 2 or 3 numbers and objects with ``x``/``y``/``z``
    attributes (MediaPipe ``NormalizedLandmark``).  Returns ``None`` for
    missing or non-finite entries.
    """
    if value is None:
        return None
    if hasattr(value, "x") and hasattr(value, "y"):
        coords = [value.x, value.y, getattr(value, "z", 0.0) or 0.0]
    else:
        coords = list(value)
        if len(coords) == 2:
            coords.append(0.0)
        if len(coords) != 3:
            return None
    p = np.asarray(coords, dtype=np.float64)
    if not np.all(np.isfinite(p)):
        return None
    return p


def get_point(landmarks: LandmarkSet, index: int) -> Optional[Vec3]:
    """Return landmark *index* as a point, or ``None`` if it is missing."""
    if landmarks is None or index < 0 or index >= len(landmarks):
        return None
    return as_point(landmarks[index])


def get_points(landmarks: LandmarkSet, indices: Sequence[int]) -> list[Vec3]:
    """Return the available points for *indices*, skipping missing ones."""
    points = []
    for idx in indices:
        p = get_point(landmarks, idx)
        if p is not None:
            points.append(p)
    return points


def distance(a: Vec3, b: Vec3) -> float:
    """Euclidean distance between two 3D points."""
    return float(np.linalg.norm(a - b))


def distance_2d(a: Vec3, b: Vec3) -> float:
    """Distance in the image plane, ignoring depth."""
    return float(np.hypot(a[0] - b[0], a[1] - b[1]))


def polygon_area(points: Sequence[Vec3]) -> float:
    """Shoelace area of the polygon traced by *points* in the x/y plane."""
    if len(points) < 3:
        return 0.0
    pts = np.asarray(points, dtype=np.float64)
    x, y = pts[:, 0], pts[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y)) / 2.0)


def mean_pairwise_distance(upper: Sequence[Vec3], lower: Sequence[Vec3]) -> float:
    """Average distance between corresponding points of two equal-length rows.

    Rows of different length are truncated to the shorter one.
    """
    n = min(len(upper), len(lower))
    if n == 0:
        return 0.0
    a = np.asarray(upper[:n], dtype=np.float64)
    b = np.asarray(lower[:n], dtype=np.float64)
    return float(np.mean(np.linalg.norm(a - b, axis=1)))


def curvature(left_corner: Vec3, right_corner: Vec3, top_center: Vec3) -> float:
    """Signed corner-vs-center height difference.

    Image y grows downward, so corners raised above the lip center (smile)
    give a positive value and dropped corners (frown) a negative one.
    """
    avg_corner_y = (left_corner[1] + right_corner[1]) / 2.0
    return float(top_center[1] - avg_corner_y)


def roundness(points: Sequence[Vec3]) -> float:
    """Circularity score in [0, 1] from the variance of centroid distances.

    1.0 means every point is equidistant from the centroid.
    """
    if len(points) < 4:
        return 0.0
    pts = np.asarray(points, dtype=np.float64)[:, :2]
    centroid = pts.mean(axis=0)
    dists = np.linalg.norm(pts - centroid, axis=1)
    avg = dists.mean()
    if avg < 1e-12:
        return 0.0
    variance = np.mean((dists - avg) ** 2)
    return float(max(0.0, 1.0 - variance / (avg * avg)))


def jaw_opening(top_center: Vec3, bottom_center: Vec3) -> float:
    """Combined vertical and depth separation of the lip centers."""
    vertical = abs(top_center[1] - bottom_center[1])
    depth = abs(top_center[2] - bottom_center[2])
    return float(np.hypot(vertical, depth))


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))
