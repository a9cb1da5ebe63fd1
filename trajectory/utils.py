from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np


def transform_to_vehicle_frame(
    ptsx: Sequence[float],
    ptsy: Sequence[float],
    px: float,
    py: float,
    psi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Express global waypoints in the vehicle frame.

    The vehicle ends up at the origin with its heading along +x. Fitting in
    this frame keeps the polynomial coefficients small; in map coordinates the
    large offsets swamp them and the optimization becomes ill-conditioned.

    Args:
        ptsx: Waypoint x coordinates (global frame)
        ptsy: Waypoint y coordinates (global frame), paired with ptsx by index
        px: Vehicle global x
        py: Vehicle global y
        psi: Vehicle heading (radians)

    Returns:
        (xs, ys) arrays in the vehicle frame
    """
    dx = np.asarray(ptsx, dtype=np.float64) - float(px)
    dy = np.asarray(ptsy, dtype=np.float64) - float(py)
    cos_psi = math.cos(-psi)
    sin_psi = math.sin(-psi)
    xs = dx * cos_psi - dy * sin_psi
    ys = dx * sin_psi + dy * cos_psi
    return xs, ys


def all_finite(*values) -> bool:
    """Return True when every scalar / array argument is free of NaN and inf."""
    for value in values:
        if not np.all(np.isfinite(np.asarray(value, dtype=np.float64))):
            return False
    return True
