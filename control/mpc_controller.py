"""
MPC (Model Predictive Control) controller.

MPCController is the adapter between the tracking pipeline and a trajectory
optimizer. The optimizer is treated as an oracle: given the vehicle-frame
state and the reference curve coefficients it returns a flat solution
vector [steering, throttle, x1, y1, x2, y2, ...]. KinematicMPCSolver is the
default oracle; anything with a matching solve() can replace it.
"""

import time
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from control.vehicle_model import BicycleModel
from data.formats.data_format import ControlCommand, VehicleState
from trajectory.reference_curve import TrackingError, polyeval, polyderiv

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "cte": 100.0,
    "epsi": 100.0,
    "speed": 1.0,
    "steering": 10.0,
    "throttle": 10.0,
    "steering_rate": 500.0,
    "throttle_rate": 10.0,
}

# Relative step for the central-difference cost gradient.
GRADIENT_STEP = 1e-6


class OptimizerFailure(TrackingError):
    """The optimizer did not produce a usable command for this tick."""


class SolverError(OptimizerFailure):
    """Non-convergence or an invalid solution vector."""


class SolverTimeout(OptimizerFailure):
    """The optimizer returned after the tick's time budget."""

    def __init__(self, elapsed: float, budget: float) -> None:
        super().__init__(f"solve took {elapsed * 1000.0:.1f}ms (budget {budget * 1000.0:.1f}ms)")
        self.elapsed = elapsed
        self.budget = budget


class TrajectoryOptimizer(Protocol):
    """Optimizer contract used by MPCController."""

    def solve(self, state: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        """
        Args:
            state: [x, y, psi, v, cte, epsi] in the vehicle frame
            coeffs: Reference curve coefficients, lowest order first

        Returns:
            [steering, throttle, x1, y1, ..., xn, yn]

        Raises:
            SolverError: when no converged solution is available
        """
        ...


@dataclass
class OptimizerResult:
    """Unpacked optimizer output."""
    command: ControlCommand
    trajectory_values: np.ndarray  # Interleaved x/y pairs of the planned path
    solve_time: float


class KinematicMPCSolver:
    """
    Finite-horizon MPC over a kinematic bicycle model.

    Only the actuations are decision variables; states are obtained by
    rolling the model forward (single shooting) and the problem is solved
    with SLSQP under box bounds on steering and throttle.
    """

    def __init__(self, lf: float = 2.67, horizon_steps: int = 10, dt: float = 0.1,
                 reference_speed: float = 40.0, max_steering: float = np.deg2rad(25.0),
                 max_throttle: float = 1.0, weights: Optional[Dict[str, float]] = None,
                 max_iterations: int = 100, tolerance: float = 1e-6):
        """
        Initialize the solver.

        Args:
            lf: Distance from front axle to center of gravity
            horizon_steps: Number of states in the horizon (actuations = steps - 1)
            dt: Time between horizon steps (seconds)
            reference_speed: Speed the cost pulls toward
            max_steering: Maximum steering angle (radians); the decision
                variable is bounded by max_steering * lf
            max_throttle: Throttle bound (symmetric)
            weights: Cost weights, see DEFAULT_WEIGHTS
            max_iterations: SLSQP iteration cap
            tolerance: SLSQP ftol
        """
        if horizon_steps < 2:
            raise ValueError(f"horizon_steps must be >= 2, got {horizon_steps}")
        self.model = BicycleModel(lf=lf)
        self.horizon_steps = int(horizon_steps)
        self.dt = float(dt)
        self.reference_speed = float(reference_speed)
        self.steering_bound = float(max_steering) * lf
        self.max_throttle = float(max_throttle)
        self.weights = dict(DEFAULT_WEIGHTS)
        if weights:
            self.weights.update({k: float(v) for k, v in weights.items()})
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)

        n_act = self.horizon_steps - 1
        self.bounds = ([(-self.steering_bound, self.steering_bound)] * n_act
                       + [(-self.max_throttle, self.max_throttle)] * n_act)
        self._warm_start: Optional[np.ndarray] = None

    @property
    def num_actuations(self) -> int:
        return self.horizon_steps - 1

    def reset(self) -> None:
        """Drop the warm start."""
        self._warm_start = None

    def rollout_batch(self, state: np.ndarray, coeffs: np.ndarray,
                      u_batch: np.ndarray) -> np.ndarray:
        """
        Roll the model forward under several actuation vectors at once.

        Args:
            state: Initial state [x, y, psi, v, cte, epsi]
            coeffs: Reference curve coefficients
            u_batch: [m, 2 * num_actuations] steering then throttle per row

        Returns:
            [m, horizon_steps, 6] array of states
        """
        n_act = self.num_actuations
        m = u_batch.shape[0]
        steering = u_batch[:, :n_act]
        throttle = u_batch[:, n_act:]
        states = np.empty((m, self.horizon_steps, 6), dtype=float)
        states[:, 0, :] = state
        x, y, psi, v, cte, epsi = (np.full(m, float(s)) for s in state)
        lf = self.model.lf
        dt = self.dt
        for t in range(n_act):
            f0 = polyeval(coeffs, x)
            psi_des = np.arctan(polyderiv(coeffs, x))
            delta = steering[:, t]
            next_x, next_y, next_psi, next_v = self.model.propagate(
                x, y, psi, v, delta, throttle[:, t], dt
            )
            cte = (f0 - y) + v * np.sin(epsi) * dt
            epsi = (psi - psi_des) - v * delta / lf * dt
            x, y, psi, v = next_x, next_y, next_psi, next_v
            states[:, t + 1, :] = np.stack((x, y, psi, v, cte, epsi), axis=1)
        return states

    def rollout(self, state: np.ndarray, coeffs: np.ndarray, u: np.ndarray) -> np.ndarray:
        """
        Roll the model forward under actuations u.

        Returns:
            [horizon_steps, 6] array of states (x, y, psi, v, cte, epsi)
        """
        return self.rollout_batch(state, coeffs, np.asarray(u, dtype=float)[None, :])[0]

    def batch_cost(self, u_batch: np.ndarray, state: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        """Cost of each row of u_batch."""
        w = self.weights
        n_act = self.num_actuations
        steering = u_batch[:, :n_act]
        throttle = u_batch[:, n_act:]
        states = self.rollout_batch(state, coeffs, u_batch)
        total = (w["cte"] * np.sum(states[:, :, 4] ** 2, axis=1)
                 + w["epsi"] * np.sum(states[:, :, 5] ** 2, axis=1)
                 + w["speed"] * np.sum((states[:, :, 3] - self.reference_speed) ** 2, axis=1))
        total += (w["steering"] * np.sum(steering ** 2, axis=1)
                  + w["throttle"] * np.sum(throttle ** 2, axis=1))
        total += (w["steering_rate"] * np.sum(np.diff(steering, axis=1) ** 2, axis=1)
                  + w["throttle_rate"] * np.sum(np.diff(throttle, axis=1) ** 2, axis=1))
        return total

    def cost(self, u: np.ndarray, state: np.ndarray, coeffs: np.ndarray) -> float:
        return float(self.batch_cost(np.asarray(u, dtype=float)[None, :], state, coeffs)[0])

    def cost_and_gradient(self, u: np.ndarray, state: np.ndarray,
                          coeffs: np.ndarray) -> Tuple[float, np.ndarray]:
        """
        Cost and central-difference gradient from a single batched rollout
        (the base point plus +/- steps along every decision variable).
        """
        n = u.size
        step = GRADIENT_STEP * np.maximum(1.0, np.abs(u))
        perturb = np.diag(step)
        batch = np.vstack((u[None, :], u + perturb, u - perturb))
        costs = self.batch_cost(batch, state, coeffs)
        gradient = (costs[1:n + 1] - costs[n + 1:]) / (2.0 * step)
        return float(costs[0]), gradient

    def _initial_guess(self) -> np.ndarray:
        n_act = self.num_actuations
        if self._warm_start is None:
            return np.zeros(2 * n_act)
        # Shift the previous plan one step forward and repeat the last actuation.
        prev = self._warm_start
        steering = np.append(prev[1:n_act], prev[n_act - 1])
        throttle = np.append(prev[n_act + 1:], prev[-1])
        guess = np.concatenate([steering, throttle])
        lower = np.array([b[0] for b in self.bounds])
        upper = np.array([b[1] for b in self.bounds])
        return np.clip(guess, lower, upper)

    def solve(self, state: np.ndarray, coeffs: np.ndarray) -> np.ndarray:
        state = np.asarray(state, dtype=float)
        coeffs = np.asarray(coeffs, dtype=float)
        if state.shape != (6,):
            raise SolverError(f"state must have 6 components, got shape {state.shape}")

        result = minimize(
            self.cost_and_gradient,
            self._initial_guess(),
            args=(state, coeffs),
            jac=True,
            method="SLSQP",
            bounds=self.bounds,
            options={"maxiter": self.max_iterations, "ftol": self.tolerance},
        )
        if not result.success or not np.all(np.isfinite(result.x)):
            self.reset()
            raise SolverError(f"SLSQP did not converge: {result.message}")

        u = result.x
        self._warm_start = u.copy()
        states = self.rollout(state, coeffs, u)
        n_act = self.num_actuations
        solution = [u[0], u[n_act]]
        for t in range(1, self.horizon_steps):
            solution.extend((states[t, 0], states[t, 1]))
        return np.asarray(solution, dtype=float)


class FallbackPolicy:
    """Command applied when a tick cannot produce a validated command."""

    HOLD_PREVIOUS = "hold_previous"
    BRAKE = "brake"
    MODES = (HOLD_PREVIOUS, BRAKE)

    def __init__(self, mode: str = HOLD_PREVIOUS, brake_throttle: float = -0.5):
        """
        Args:
            mode: "hold_previous" reuses the last valid command (neutral on
                the first tick); "brake" keeps the last steering and applies
                brake_throttle
            brake_throttle: Throttle used by the brake mode, in [-1, 0]
        """
        if mode not in self.MODES:
            raise ValueError(f"unknown fallback mode {mode!r}, expected one of {self.MODES}")
        if not -1.0 <= brake_throttle <= 0.0:
            raise ValueError(f"brake_throttle must be in [-1, 0], got {brake_throttle}")
        self.mode = mode
        self.brake_throttle = float(brake_throttle)

    def command(self, previous: Optional[ControlCommand]) -> ControlCommand:
        if previous is None or not previous.is_finite():
            previous = ControlCommand.neutral()
        if self.mode == self.BRAKE:
            return ControlCommand(steering=previous.steering, throttle=self.brake_throttle)
        return previous


class MPCController:
    """
    Adapter around a TrajectoryOptimizer.
    Validates and unpacks the solution and enforces the per-tick time budget.
    """

    def __init__(self, optimizer: TrajectoryOptimizer, time_budget: float = 0.1):
        """
        Args:
            optimizer: Oracle implementing solve(state, coeffs)
            time_budget: Maximum solve time in seconds (0 disables the check)
        """
        self.optimizer = optimizer
        self.time_budget = time_budget

    def compute_control(self, state: VehicleState, coeffs: Sequence[float]) -> OptimizerResult:
        """
        Run the optimizer for one tick.

        Raises:
            SolverError: non-convergence or malformed solution
            SolverTimeout: solve exceeded the time budget
        """
        coeffs_arr = np.asarray(coeffs, dtype=float)
        start_time = time.perf_counter()
        solution = self.optimizer.solve(state.as_array(), coeffs_arr)
        solve_time = time.perf_counter() - start_time

        if self.time_budget and solve_time > self.time_budget:
            raise SolverTimeout(solve_time, self.time_budget)

        solution = np.asarray(solution, dtype=float).ravel()
        if solution.size < 2 or solution.size % 2 != 0:
            raise SolverError(f"solution vector has invalid length {solution.size}")
        if not np.all(np.isfinite(solution)):
            raise SolverError("solution vector contains non-finite values")

        command = ControlCommand(steering=float(solution[0]), throttle=float(solution[1]))
        return OptimizerResult(
            command=command,
            trajectory_values=solution[2:],
            solve_time=solve_time,
        )
