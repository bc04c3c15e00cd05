"""
Main MPC tracking stack integration script.
Connects latency compensation, reference fitting, the trajectory optimizer
and actuation encoding into the per-tick pipeline, and starts the bridge.
"""

import sys
import math
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np
import yaml

# Add paths
sys.path.insert(0, str(Path(__file__).parent))

from control.vehicle_model import LatencyCompensator
from control.mpc_controller import (
    DEFAULT_WEIGHTS, FallbackPolicy, KinematicMPCSolver, MPCController, OptimizerFailure,
    SolverTimeout, TrajectoryOptimizer,
)
from control.actuation import ActuationEncoder, decode_trajectory
from trajectory.utils import validate_waypoints, world_to_vehicle
from trajectory.reference_curve import FitError, compute_tracking_errors, fit_polynomial
from data.formats.data_format import (
    ControlCommand, PredictedTrajectory, TelemetryFrame, TickResult, VehicleState,
)

# Configure logging
# Ensure tmp/logs directory exists
log_dir = Path(__file__).parent / 'tmp' / 'logs'
log_dir.mkdir(parents=True, exist_ok=True)
log_file = log_dir / 'mpc_stack.log'

logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(str(log_file))
    ]
)
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "mpc_stack_config.yaml"


class ConfigError(ValueError):
    """Invalid configuration. Fatal: raised before the control loop starts."""


@dataclass
class VehicleConfig:
    """Vehicle parameters."""
    lf: float = 2.67  # Front axle to center of gravity (meters)
    max_steering_deg: float = 25.0

    @property
    def max_steering_rad(self) -> float:
        return math.radians(self.max_steering_deg)


@dataclass
class TimingConfig:
    """
    Actuation delay. The same value drives latency compensation and the
    delayed emission of each command; they are not configurable apart.
    """
    latency_s: float = 0.1


@dataclass
class ReferenceConfig:
    """Reference curve fitting and visualization parameters."""
    polynomial_degree: int = 3
    min_waypoints: Optional[int] = None  # Defaults to polynomial_degree + 1
    polyline_samples: int = 25
    polyline_spacing: float = 2.5

    @property
    def min_points(self) -> int:
        if self.min_waypoints is None:
            return self.polynomial_degree + 1
        return self.min_waypoints


@dataclass
class OptimizerConfig:
    """Default MPC oracle parameters."""
    horizon_steps: int = 10
    dt: float = 0.1
    reference_speed: float = 40.0
    max_throttle: float = 1.0
    time_budget_s: float = 0.1  # 0 disables the budget check
    max_iterations: int = 100
    tolerance: float = 1e-6
    weights: Dict[str, float] = field(default_factory=dict)


@dataclass
class FallbackConfig:
    """Policy for ticks without a validated command."""
    policy: str = FallbackPolicy.HOLD_PREVIOUS
    brake_throttle: float = -0.5


@dataclass
class ServerConfig:
    """Bridge server parameters."""
    host: str = "0.0.0.0"
    port: int = 4567


@dataclass
class RecordingConfig:
    """Per-connection HDF5 tick recording."""
    enabled: bool = False
    directory: str = "data/recordings"


@dataclass
class StackConfig:
    """Complete stack configuration, fixed at startup."""
    vehicle: VehicleConfig = field(default_factory=VehicleConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)

    def validate(self) -> "StackConfig":
        """Raise ConfigError on invalid constants, including values of the wrong type."""
        try:
            self._check_values()
        except TypeError as e:
            raise ConfigError(f"Invalid config value type: {e}") from e
        return self

    def _check_values(self) -> None:
        if not self.vehicle.lf > 0.0:
            raise ConfigError(f"vehicle.lf must be positive, got {self.vehicle.lf}")
        if not 0.0 < self.vehicle.max_steering_deg < 90.0:
            raise ConfigError(
                f"vehicle.max_steering_deg must be in (0, 90), got {self.vehicle.max_steering_deg}"
            )
        if not self.timing.latency_s >= 0.0:
            raise ConfigError(f"timing.latency_s must be >= 0, got {self.timing.latency_s}")
        ref = self.reference
        if ref.polynomial_degree < 1:
            raise ConfigError(f"reference.polynomial_degree must be >= 1, got {ref.polynomial_degree}")
        if ref.min_points < ref.polynomial_degree + 1:
            raise ConfigError(
                f"reference.min_waypoints ({ref.min_points}) must be >= polynomial_degree + 1 "
                f"({ref.polynomial_degree + 1})"
            )
        if ref.polyline_samples < 1 or not ref.polyline_spacing > 0.0:
            raise ConfigError("reference.polyline_samples must be >= 1 and polyline_spacing > 0")
        opt = self.optimizer
        if opt.horizon_steps < 2 or not opt.dt > 0.0:
            raise ConfigError("optimizer.horizon_steps must be >= 2 and optimizer.dt > 0")
        if not 0.0 < opt.max_throttle <= 1.0:
            raise ConfigError(f"optimizer.max_throttle must be in (0, 1], got {opt.max_throttle}")
        if opt.time_budget_s < 0.0:
            raise ConfigError(f"optimizer.time_budget_s must be >= 0, got {opt.time_budget_s}")
        if not isinstance(opt.weights, dict):
            raise ConfigError("optimizer.weights must be a mapping")
        unknown_weights = sorted(set(opt.weights) - set(DEFAULT_WEIGHTS))
        if unknown_weights:
            raise ConfigError(f"Unknown optimizer.weights keys: {', '.join(unknown_weights)}")
        for key, value in opt.weights.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ConfigError(f"optimizer.weights.{key} must be a non-negative number, got {value!r}")
        if self.timing.latency_s > 0.0 and opt.time_budget_s > self.timing.latency_s:
            raise ConfigError(
                f"optimizer.time_budget_s ({opt.time_budget_s}) exceeds the actuation delay "
                f"({self.timing.latency_s})"
            )
        if self.fallback.policy not in FallbackPolicy.MODES:
            raise ConfigError(
                f"fallback.policy must be one of {FallbackPolicy.MODES}, got {self.fallback.policy!r}"
            )
        if not -1.0 <= self.fallback.brake_throttle <= 0.0:
            raise ConfigError(
                f"fallback.brake_throttle must be in [-1, 0], got {self.fallback.brake_throttle}"
            )
        if not 0 < self.server.port < 65536:
            raise ConfigError(f"server.port out of range: {self.server.port}")


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file or use defaults."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        if not config_path.exists():
            logger.warning(f"Config file not found at {config_path}, using defaults")
            return {}
    else:
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"Config root must be a mapping in {config_path}")
    logger.info(f"Loaded configuration from {config_path}")
    return config


def _build_section(cls, name: str, raw: Any):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in config section '{name}': {', '.join(unknown)}")
    try:
        return cls(**raw)
    except TypeError as e:
        raise ConfigError(f"Invalid config section '{name}': {e}") from e


def build_stack_config(raw: Optional[dict] = None) -> StackConfig:
    """Map a raw config dict onto StackConfig and validate it."""
    raw = raw or {}
    sections = {f.name: f.type for f in fields(StackConfig)}
    unknown = sorted(set(raw) - set(sections))
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(unknown)}")
    config = StackConfig(
        vehicle=_build_section(VehicleConfig, "vehicle", raw.get("vehicle")),
        timing=_build_section(TimingConfig, "timing", raw.get("timing")),
        reference=_build_section(ReferenceConfig, "reference", raw.get("reference")),
        optimizer=_build_section(OptimizerConfig, "optimizer", raw.get("optimizer")),
        fallback=_build_section(FallbackConfig, "fallback", raw.get("fallback")),
        server=_build_section(ServerConfig, "server", raw.get("server")),
        recording=_build_section(RecordingConfig, "recording", raw.get("recording")),
    )
    return config.validate()


def load_stack_config(config_path: Optional[str] = None) -> StackConfig:
    """Load and validate configuration. Raises ConfigError."""
    return build_stack_config(load_config(config_path))


def build_optimizer(config: StackConfig) -> KinematicMPCSolver:
    """Default optimizer for one session."""
    opt = config.optimizer
    return KinematicMPCSolver(
        lf=config.vehicle.lf,
        horizon_steps=opt.horizon_steps,
        dt=opt.dt,
        reference_speed=opt.reference_speed,
        max_steering=config.vehicle.max_steering_rad,
        max_throttle=opt.max_throttle,
        weights=opt.weights,
        max_iterations=opt.max_iterations,
        tolerance=opt.tolerance,
    )


class TrackingPipeline:
    """
    Per-tick pipeline:
    compensate -> transform -> fit -> evaluate -> optimize -> encode.

    Holds no state between ticks besides what the optimizer keeps internally;
    the caller passes in the previous command for the fallback policy.
    """

    def __init__(self, config: StackConfig, optimizer: Optional[TrajectoryOptimizer] = None):
        self.config = config
        self.compensator = LatencyCompensator(latency=config.timing.latency_s, lf=config.vehicle.lf)
        self.controller = MPCController(
            optimizer if optimizer is not None else build_optimizer(config),
            time_budget=config.optimizer.time_budget_s,
        )
        self.encoder = ActuationEncoder(
            max_steering=config.vehicle.max_steering_rad,
            lf=config.vehicle.lf,
            polyline_samples=config.reference.polyline_samples,
            polyline_spacing=config.reference.polyline_spacing,
        )
        self.fallback = FallbackPolicy(
            mode=config.fallback.policy,
            brake_throttle=config.fallback.brake_throttle,
        )
        self.degree = config.reference.polynomial_degree
        self.min_waypoints = config.reference.min_points

    def process(self, frame: TelemetryFrame,
                previous_command: Optional[ControlCommand] = None) -> TickResult:
        """
        Run one tick.

        Args:
            frame: Parsed telemetry
            previous_command: Last command actually applied (None on the first tick)

        Returns:
            TickResult; status is "ok" or names the failure that triggered the fallback
        """
        pose = self.compensator.predict(
            frame.x, frame.y, frame.psi, frame.speed, frame.steering_angle, frame.throttle
        )

        try:
            validate_waypoints(frame.ptsx, frame.ptsy, self.min_waypoints)
            local_x, local_y = world_to_vehicle(frame.ptsx, frame.ptsy, pose.x, pose.y, pose.psi)
            coeffs = fit_polynomial(local_x, local_y, self.degree)
        except FitError as e:
            logger.warning("[FIT_FAILURE] waypoints=%d reason=%s", frame.num_waypoints, e)
            return self._fallback(previous_command, "fit_failure", str(e), pose=pose)

        cte, epsi = compute_tracking_errors(coeffs)
        state = VehicleState(speed=pose.speed, cte=cte, epsi=epsi)

        try:
            result = self.controller.compute_control(state, coeffs)
        except SolverTimeout as e:
            logger.warning("[SOLVER_TIMEOUT] %s", e)
            return self._fallback(previous_command, "solver_timeout", str(e), pose=pose,
                                  coeffs=coeffs, cte=cte, epsi=epsi, solve_time=e.elapsed)
        except OptimizerFailure as e:
            logger.warning("[SOLVER_FAILURE] %s", e)
            return self._fallback(previous_command, "solver_failure", str(e), pose=pose,
                                  coeffs=coeffs, cte=cte, epsi=epsi)

        trajectory = decode_trajectory(result.trajectory_values)
        output = self.encoder.encode(result.command, coeffs, trajectory)
        return TickResult(
            output=output,
            command=result.command,
            status="ok",
            predicted_pose=pose,
            coefficients=coeffs,
            cte=cte,
            epsi=epsi,
            solve_time=result.solve_time,
        )

    def _fallback(self, previous_command: Optional[ControlCommand], status: str, reason: str,
                  pose=None, coeffs: Optional[np.ndarray] = None, cte: Optional[float] = None,
                  epsi: Optional[float] = None, solve_time: Optional[float] = None) -> TickResult:
        command = self.fallback.command(previous_command)
        output = self.encoder.encode(command, coeffs, PredictedTrajectory())
        return TickResult(
            output=output,
            command=command,
            status=status,
            predicted_pose=pose,
            coefficients=coeffs,
            cte=cte,
            epsi=epsi,
            solve_time=solve_time,
            fallback_reason=reason,
        )


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run MPC tracking stack')
    parser.add_argument('--config', type=str, default=None,
                       help='Path to configuration YAML file (default: config/mpc_stack_config.yaml)')
    parser.add_argument('--host', type=str, default=None,
                       help='Bind address (overrides server.host)')
    parser.add_argument('--port', type=int, default=None,
                       help='Listen port (overrides server.port)')
    parser.add_argument('--record', dest='record', action='store_true', default=None,
                       help='Record ticks to HDF5 (overrides recording.enabled)')
    parser.add_argument('--no-record', dest='record', action='store_false',
                       help='Disable tick recording')
    parser.add_argument('--recording_dir', type=str, default=None,
                       help='Directory for recordings')
    parser.add_argument('--log-level', type=str, default='INFO',
                       choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                       help='Root log level')

    args = parser.parse_args()
    logging.getLogger().setLevel(args.log_level)

    try:
        config = load_stack_config(args.config)
        if args.host is not None:
            config.server.host = args.host
        if args.port is not None:
            config.server.port = args.port
        if args.record is not None:
            config.recording.enabled = args.record
        if args.recording_dir is not None:
            config.recording.directory = args.recording_dir
        config.validate()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    from bridge.server import run_server
    run_server(config)


if __name__ == "__main__":
    main()
