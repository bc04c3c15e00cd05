"""
Actuation encoding.
Turns raw optimizer commands into normalized actuator values and builds the
visualization polylines sent back with each command.
"""

import logging
from typing import Sequence

import numpy as np

from data.formats.data_format import (
    ActuationOutput, ControlCommand, PredictedTrajectory, ReferencePolyline,
)
from trajectory.reference_curve import polyeval

logger = logging.getLogger(__name__)


def decode_trajectory(values: Sequence[float]) -> PredictedTrajectory:
    """Split an interleaved [x1, y1, x2, y2, ...] sequence into x and y."""
    flat = np.asarray(values, dtype=float).ravel()
    if flat.size % 2 != 0:
        raise ValueError(f"interleaved trajectory needs an even length, got {flat.size}")
    return PredictedTrajectory(
        xs=tuple(float(v) for v in flat[0::2]),
        ys=tuple(float(v) for v in flat[1::2]),
    )


class ActuationEncoder:
    """Normalizes commands to the actuator range and samples the reference curve."""

    def __init__(self, max_steering: float, lf: float, polyline_samples: int = 25,
                 polyline_spacing: float = 2.5):
        """
        Args:
            max_steering: Maximum steering angle (radians)
            lf: Distance from front axle to center of gravity
            polyline_samples: Number of reference curve samples
            polyline_spacing: Distance between samples along local x
        """
        self.normalization = float(max_steering) * float(lf)
        if self.normalization <= 0.0:
            raise ValueError("steering normalization constant must be positive")
        self.polyline_samples = int(polyline_samples)
        self.polyline_spacing = float(polyline_spacing)

    def normalize_steering(self, raw_steering: float) -> float:
        """Map raw steering to [-1, 1]; out-of-range values are clamped."""
        normalized = float(raw_steering) / self.normalization
        if abs(normalized) > 1.0:
            logger.warning(
                "[STEERING_CLAMP] raw=%.4f normalized=%.4f exceeds actuator range",
                raw_steering,
                normalized,
            )
        return float(np.clip(normalized, -1.0, 1.0))

    def reference_polyline(self, coeffs: Sequence[float]) -> ReferencePolyline:
        """Sample the fitted curve ahead of the vehicle, starting one spacing out."""
        xs = self.polyline_spacing * np.arange(1, self.polyline_samples + 1)
        ys = polyeval(coeffs, xs)
        return ReferencePolyline(
            xs=tuple(float(v) for v in xs),
            ys=tuple(float(v) for v in np.atleast_1d(ys)),
        )

    def encode(self, command: ControlCommand, coeffs=None,
               trajectory: PredictedTrajectory = None) -> ActuationOutput:
        """
        Build the outbound actuation.

        Args:
            command: Raw command (physical steering, throttle)
            coeffs: Reference curve coefficients, if a fit is available
            trajectory: Decoded predicted trajectory, if the optimizer produced one
        """
        reference = self.reference_polyline(coeffs) if coeffs is not None else ReferencePolyline()
        return ActuationOutput(
            steering=self.normalize_steering(command.steering),
            throttle=float(np.clip(command.throttle, -1.0, 1.0)),
            trajectory=trajectory if trajectory is not None else PredictedTrajectory(),
            reference=reference,
        )
