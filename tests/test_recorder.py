"""
Tests for HDF5 tick recording and replay.
"""

import numpy as np
import pytest

from data.formats.data_format import ControlCommand, TelemetryFrame, TickRecord
from data.recorder import TickRecorder
from data.replay import TickReplay
from mpc_stack import TrackingPipeline, build_stack_config
from tools.analyze_recording import summarize_recording
from tools.replay_recording import compare_commands, replay_locally


class ConstantOptimizer:
    def solve(self, state, coeffs):
        return np.array([0.05, 0.3, 1.0, 0.0, 2.0, 0.01])


def _frames():
    straight = TelemetryFrame(
        ptsx=(5.0, 10.0, 20.0, 30.0), ptsy=(0.5, 0.5, 0.5, 0.5),
        x=0.0, y=0.0, psi=0.0, speed=5.0, steering_angle=0.0, throttle=0.0, timestamp=100.0,
    )
    short = TelemetryFrame(
        ptsx=(5.0, 10.0), ptsy=(0.5, 0.5),
        x=0.5, y=0.0, psi=0.0, speed=5.0, steering_angle=0.0, throttle=0.3, timestamp=100.1,
    )
    return [straight, short]


def _record(tmp_path, flush_every=30):
    config = build_stack_config({"optimizer": {"time_budget_s": 0.0}})
    pipeline = TrackingPipeline(config, optimizer=ConstantOptimizer())
    previous = None
    with TickRecorder(str(tmp_path), recording_name="test", flush_every=flush_every,
                      metadata={"session_id": "abc"}) as recorder:
        for i, frame in enumerate(_frames(), start=1):
            result = pipeline.process(frame, previous)
            previous = result.command
            recorder.record_tick(TickRecord(timestamp=frame.timestamp, tick_id=i,
                                            telemetry=frame, result=result))
    return tmp_path / "test.h5"


def test_round_trip(tmp_path):
    path = _record(tmp_path)
    with TickReplay(str(path)) as replay:
        assert len(replay) == 2
        assert replay.metadata["session_id"] == "abc"
        assert replay.metadata["total_ticks"] == 2

        frames = list(replay.get_telemetry_frames())
        assert frames == _frames()

        ok, fallback = list(replay.get_ticks())
        assert ok["status"] == "ok"
        assert ok["fallback_reason"] is None
        assert ok["cte"] == pytest.approx(0.5)
        np.testing.assert_allclose(ok["coefficients"], [0.5, 0.0, 0.0, 0.0], atol=1e-9)
        assert ok["steering_raw"] == pytest.approx(0.05)
        np.testing.assert_allclose(ok["mpc_x"], [1.0, 2.0])
        assert len(ok["next_x"]) == 25

        assert fallback["status"] == "fit_failure"
        assert fallback["fallback_reason"]
        assert fallback["coefficients"] is None
        assert np.isnan(fallback["cte"])
        assert fallback["steering_raw"] == pytest.approx(0.05)
        assert fallback["mpc_x"].size == 0


def test_small_flush_batches(tmp_path):
    path = _record(tmp_path, flush_every=1)
    with TickReplay(str(path)) as replay:
        np.testing.assert_allclose(replay.get_series("ticks/tick_ids"), [1, 2])


def test_record_after_close(tmp_path):
    recorder = TickRecorder(str(tmp_path), recording_name="closed")
    recorder.close()
    frame = _frames()[0]
    config = build_stack_config({"optimizer": {"time_budget_s": 0.0}})
    result = TrackingPipeline(config, optimizer=ConstantOptimizer()).process(frame)
    with pytest.raises(RuntimeError):
        recorder.record_tick(TickRecord(timestamp=0.0, tick_id=1, telemetry=frame, result=result))


def test_missing_recording(tmp_path):
    with pytest.raises(FileNotFoundError):
        TickReplay(str(tmp_path / "nope.h5"))


def test_replay_tool_reproduces_commands(tmp_path):
    path = _record(tmp_path)
    config = build_stack_config({"optimizer": {"time_budget_s": 0.0}})
    with TickReplay(str(path)) as replay:
        recorded = list(replay.get_ticks())
        pipeline_results = []
        pipeline = TrackingPipeline(config, optimizer=ConstantOptimizer())
        previous = None
        for frame in replay.get_telemetry_frames():
            result = pipeline.process(frame, previous)
            previous = result.command
            pipeline_results.append({
                "status": result.status,
                "steering": result.output.steering,
                "throttle": result.output.throttle,
            })
    summary = compare_commands(recorded, pipeline_results)
    assert summary["ticks"] == 2
    assert summary["steering_max_diff"] == pytest.approx(0.0)
    assert summary["status_changes"] == 0


def test_replay_locally_runs_default_solver(tmp_path):
    path = _record(tmp_path)
    config = build_stack_config({"optimizer": {"time_budget_s": 0.0}})
    with TickReplay(str(path)) as replay:
        results = replay_locally(replay, config)
    assert [r["status"] for r in results] == ["ok", "fit_failure"]
    assert results[1]["steering"] == pytest.approx(results[0]["steering"])


def test_summary(tmp_path):
    path = _record(tmp_path)
    with TickReplay(str(path)) as replay:
        summary = summarize_recording(replay)
    assert summary["ticks"] == 2
    assert summary["status_counts"] == {"ok": 1, "fit_failure": 1}
    assert summary["fallback_rate"] == pytest.approx(0.5)
    assert summary["cte"]["mean"] == pytest.approx(0.5)
