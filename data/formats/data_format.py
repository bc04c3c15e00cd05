"""
Data format definitions for the MPC tracking stack.
All entities live for a single tick; none persist across ticks.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple
import numpy as np


@dataclass(frozen=True)
class TelemetryFrame:
    """Raw telemetry for one tick (world frame)."""
    ptsx: Tuple[float, ...]  # Reference point x coordinates
    ptsy: Tuple[float, ...]  # Reference point y coordinates (same length as ptsx)
    x: float
    y: float
    psi: float  # Heading (radians)
    speed: float
    steering_angle: float  # Last applied steering angle
    throttle: float  # Last applied throttle
    timestamp: float = 0.0

    @property
    def num_waypoints(self) -> int:
        return len(self.ptsx)


@dataclass
class PredictedPose:
    """Vehicle pose/speed forward-predicted over the actuation delay."""
    x: float
    y: float
    psi: float
    speed: float


@dataclass
class VehicleState:
    """
    Optimizer state in the vehicle frame.

    x, y and psi are zero by construction after the frame transform; they are
    kept so the state vector layout matches the optimizer contract.
    """
    speed: float
    cte: float
    epsi: float
    x: float = 0.0
    y: float = 0.0
    psi: float = 0.0

    def as_array(self) -> np.ndarray:
        """Return the 6-vector [x, y, psi, v, cte, epsi]."""
        return np.array([self.x, self.y, self.psi, self.speed, self.cte, self.epsi], dtype=float)


@dataclass(frozen=True)
class ControlCommand:
    """Control command for the next tick."""
    steering: float  # Physical units (Lf-scaled radians), before normalization
    throttle: float  # Signed, unitless

    @classmethod
    def neutral(cls) -> "ControlCommand":
        return cls(steering=0.0, throttle=0.0)

    def is_finite(self) -> bool:
        return bool(np.isfinite(self.steering) and np.isfinite(self.throttle))


@dataclass(frozen=True)
class PredictedTrajectory:
    """Optimizer's planned path in the vehicle frame (visualization only)."""
    xs: Tuple[float, ...] = ()
    ys: Tuple[float, ...] = ()


@dataclass(frozen=True)
class ReferencePolyline:
    """Samples of the fitted reference curve in the vehicle frame (visualization only)."""
    xs: Tuple[float, ...] = ()
    ys: Tuple[float, ...] = ()


@dataclass(frozen=True)
class ActuationOutput:
    """Encoded actuation plus visualization polylines."""
    steering: float  # Normalized, -1.0 to 1.0
    throttle: float
    trajectory: PredictedTrajectory = field(default_factory=PredictedTrajectory)
    reference: ReferencePolyline = field(default_factory=ReferencePolyline)

    def to_payload(self) -> Dict[str, Any]:
        """Outbound message fields."""
        return {
            "steering_angle": float(self.steering),
            "throttle": float(self.throttle),
            "mpc_x": [float(v) for v in self.trajectory.xs],
            "mpc_y": [float(v) for v in self.trajectory.ys],
            "next_x": [float(v) for v in self.reference.xs],
            "next_y": [float(v) for v in self.reference.ys],
        }


@dataclass
class TickResult:
    """Pipeline output for one tick."""
    output: ActuationOutput
    command: ControlCommand  # Raw command actually applied (may be a fallback)
    status: str = "ok"  # "ok", "fit_failure", "solver_failure" or "solver_timeout"
    predicted_pose: Optional[PredictedPose] = None
    coefficients: Optional[np.ndarray] = None
    cte: Optional[float] = None
    epsi: Optional[float] = None
    solve_time: Optional[float] = None
    fallback_reason: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.status != "ok"


@dataclass
class TickRecord:
    """Flattened tick for HDF5 recording."""
    timestamp: float
    tick_id: int
    telemetry: TelemetryFrame
    result: TickResult
    metadata: Optional[Dict[str, Any]] = None
