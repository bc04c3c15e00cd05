"""
End-to-end tests for TrackingPipeline: telemetry in, encoded actuation out.
"""

import math
import time

import numpy as np
import pytest

from control.mpc_controller import SolverError
from data.formats.data_format import ControlCommand, TelemetryFrame
from mpc_stack import TrackingPipeline, build_stack_config


class RecordingOptimizer:
    """Fake oracle that records its inputs and returns a fixed solution."""

    def __init__(self, steering=0.1, throttle=0.5, trajectory=(1.0, 0.0, 2.0, 0.0)):
        self.solution = np.array([steering, throttle, *trajectory], dtype=float)
        self.states = []
        self.coeffs = []

    def solve(self, state, coeffs):
        self.states.append(np.array(state))
        self.coeffs.append(np.array(coeffs))
        return self.solution


class FailingOptimizer:
    def solve(self, state, coeffs):
        raise SolverError("did not converge")


class SlowOptimizer(RecordingOptimizer):
    def solve(self, state, coeffs):
        time.sleep(0.05)
        return super().solve(state, coeffs)


def _config(**sections):
    raw = {"optimizer": {"time_budget_s": 0.0}}
    raw.update(sections)
    return build_stack_config(raw)


def _frame(ptsx, ptsy, x=0.0, y=0.0, psi=0.0, speed=0.0, steering=0.0, throttle=0.0):
    return TelemetryFrame(
        ptsx=tuple(ptsx), ptsy=tuple(ptsy), x=x, y=y, psi=psi, speed=speed,
        steering_angle=steering, throttle=throttle, timestamp=0.0,
    )


STRAIGHT_X = [5.0, 10.0, 20.0, 30.0, 40.0, 50.0]
STRAIGHT_Y = [0.0] * 6


class TestNominalTick:
    def test_straight_road_with_default_solver(self):
        pipeline = TrackingPipeline(_config())
        result = pipeline.process(_frame(STRAIGHT_X, STRAIGHT_Y))
        assert result.status == "ok"
        assert not result.used_fallback
        assert result.cte == pytest.approx(0.0, abs=1e-9)
        assert result.epsi == pytest.approx(0.0, abs=1e-9)
        payload = result.output.to_payload()
        assert payload["steering_angle"] == pytest.approx(0.0, abs=1e-3)
        assert payload["throttle"] > 0.0
        assert len(payload["next_x"]) == 25
        assert len(payload["mpc_x"]) == len(payload["mpc_y"]) == 9

    def test_latency_compensation_shifts_the_fit(self):
        """Waypoints on y = 0.1x + 0.5; the vehicle will be at x = 1 after 0.1s at 10 m/s."""
        optimizer = RecordingOptimizer()
        pipeline = TrackingPipeline(_config(), optimizer=optimizer)
        xs = [5.0, 10.0, 15.0, 20.0, 25.0]
        ys = [0.1 * x + 0.5 for x in xs]
        result = pipeline.process(_frame(xs, ys, speed=10.0))
        assert result.predicted_pose.x == pytest.approx(1.0)
        assert result.cte == pytest.approx(0.6)
        assert result.epsi == pytest.approx(-math.atan(0.1))
        np.testing.assert_allclose(optimizer.states[0], [0.0, 0.0, 0.0, 10.0, 0.6, -math.atan(0.1)])

    def test_rotated_vehicle_frame(self):
        """Heading pi/2 with waypoints straight ahead along +y: no tracking error."""
        optimizer = RecordingOptimizer()
        pipeline = TrackingPipeline(_config(timing={"latency_s": 0.0}), optimizer=optimizer)
        ys = [5.0, 10.0, 15.0, 20.0]
        result = pipeline.process(_frame([3.0] * 4, ys, x=3.0, psi=math.pi / 2))
        assert result.status == "ok"
        assert result.cte == pytest.approx(0.0, abs=1e-9)
        assert result.epsi == pytest.approx(0.0, abs=1e-9)

    def test_command_is_normalized(self):
        config = _config()
        raw = 0.5 * config.vehicle.max_steering_rad * config.vehicle.lf
        pipeline = TrackingPipeline(config, optimizer=RecordingOptimizer(steering=raw))
        result = pipeline.process(_frame(STRAIGHT_X, STRAIGHT_Y))
        assert result.command.steering == pytest.approx(raw)
        assert result.output.steering == pytest.approx(0.5)
        assert result.output.trajectory.xs == (1.0, 2.0)


class TestFallback:
    def test_too_few_waypoints_first_tick_is_neutral(self):
        optimizer = RecordingOptimizer()
        pipeline = TrackingPipeline(_config(), optimizer=optimizer)
        result = pipeline.process(_frame([1.0, 2.0, 3.0], [0.0, 0.0, 0.0]))
        assert result.status == "fit_failure"
        assert result.command == ControlCommand.neutral()
        assert result.output.to_payload()["next_x"] == []
        assert optimizer.states == []

    def test_too_few_waypoints_holds_previous(self):
        pipeline = TrackingPipeline(_config(), optimizer=RecordingOptimizer())
        previous = ControlCommand(steering=0.2, throttle=0.3)
        result = pipeline.process(_frame([1.0, 2.0], [0.0, 0.0]), previous)
        assert result.used_fallback
        assert result.command == previous

    def test_duplicate_x_is_fit_failure(self):
        pipeline = TrackingPipeline(_config(), optimizer=RecordingOptimizer())
        result = pipeline.process(_frame([5.0] * 4, [0.0, 1.0, 2.0, 3.0]))
        assert result.status == "fit_failure"

    def test_solver_failure_holds_previous_and_keeps_reference(self):
        pipeline = TrackingPipeline(_config(), optimizer=FailingOptimizer())
        previous = ControlCommand(steering=-0.1, throttle=0.4)
        result = pipeline.process(_frame(STRAIGHT_X, STRAIGHT_Y), previous)
        assert result.status == "solver_failure"
        assert result.command == previous
        payload = result.output.to_payload()
        assert payload["mpc_x"] == []
        assert len(payload["next_x"]) == 25
        assert result.cte == pytest.approx(0.0, abs=1e-9)

    def test_solver_timeout(self):
        config = _config(optimizer={"time_budget_s": 0.01})
        pipeline = TrackingPipeline(config, optimizer=SlowOptimizer())
        result = pipeline.process(_frame(STRAIGHT_X, STRAIGHT_Y))
        assert result.status == "solver_timeout"
        assert result.command == ControlCommand.neutral()
        assert result.solve_time > 0.01

    def test_brake_policy(self):
        config = _config(fallback={"policy": "brake", "brake_throttle": -0.7})
        pipeline = TrackingPipeline(config, optimizer=FailingOptimizer())
        result = pipeline.process(
            _frame(STRAIGHT_X, STRAIGHT_Y), ControlCommand(steering=0.05, throttle=0.5)
        )
        assert result.command == ControlCommand(steering=0.05, throttle=-0.7)
        assert result.output.throttle == pytest.approx(-0.7)

    def test_mismatched_waypoint_lengths_is_fit_failure(self):
        pipeline = TrackingPipeline(_config(), optimizer=RecordingOptimizer())
        previous = ControlCommand(steering=0.1, throttle=0.2)
        result = pipeline.process(_frame(STRAIGHT_X, STRAIGHT_Y[:-1]), previous)
        assert result.status == "fit_failure"
        assert "mismatch" in result.fallback_reason
        assert result.command == previous


class TestDefaultSolverBudget:
    def test_curved_ticks_solve_within_default_budget(self):
        """Default optimizer and 100 ms budget over a gentle curve at typical speeds."""
        config = build_stack_config()
        assert config.optimizer.time_budget_s == pytest.approx(0.1)
        pipeline = TrackingPipeline(config)
        xs = [x - 10.0 for x in range(0, 70, 10)]
        previous = None
        statuses = []
        for tick in range(10):
            ptsx = [x + 2.0 * tick for x in xs]
            ptsy = [0.002 * x * x + 0.5 for x in ptsx]
            frame = _frame(ptsx, ptsy, x=2.0 * tick, y=0.002 * (2.0 * tick) ** 2,
                           psi=math.atan(0.004 * 2.0 * tick), speed=10.0 + tick,
                           steering=previous.steering if previous else 0.0,
                           throttle=previous.throttle if previous else 0.0)
            result = pipeline.process(frame, previous)
            statuses.append(result.status)
            previous = result.command
        assert statuses == ["ok"] * 10
