from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np

from trajectory.reference_curve import InsufficientWaypointsError, WaypointMismatchError


def validate_waypoints(
    xs: Sequence[float],
    ys: Sequence[float],
    min_points: int,
) -> None:
    """Check waypoint sequences before transforming them. Never truncates."""
    if len(xs) != len(ys):
        raise WaypointMismatchError(len(xs), len(ys))
    if len(xs) < min_points:
        raise InsufficientWaypointsError(len(xs), min_points)


def world_to_vehicle(
    xs: Sequence[float],
    ys: Sequence[float],
    origin_x: float,
    origin_y: float,
    heading: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Express world-frame points in the vehicle frame.

    The vehicle frame has its origin at (origin_x, origin_y) and its +x axis
    along `heading`: translate by -origin, then rotate by -heading.
    """
    dx = np.asarray(xs, dtype=float) - float(origin_x)
    dy = np.asarray(ys, dtype=float) - float(origin_y)
    cos_h = math.cos(-heading)
    sin_h = math.sin(-heading)
    local_x = dx * cos_h - dy * sin_h
    local_y = dx * sin_h + dy * cos_h
    return local_x, local_y


def vehicle_to_world(
    xs: Sequence[float],
    ys: Sequence[float],
    origin_x: float,
    origin_y: float,
    heading: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse of world_to_vehicle for the same origin and heading."""
    local_x = np.asarray(xs, dtype=float)
    local_y = np.asarray(ys, dtype=float)
    cos_h = math.cos(heading)
    sin_h = math.sin(heading)
    world_x = local_x * cos_h - local_y * sin_h + float(origin_x)
    world_y = local_x * sin_h + local_y * cos_h + float(origin_y)
    return world_x, world_y
