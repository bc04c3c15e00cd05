#!/usr/bin/env python3
"""
Replay a tick recording through the current pipeline.

Loads the telemetry of every recorded tick, runs it through TrackingPipeline
(or a running bridge server with --bridge_url) and compares the new commands
against the recorded ones. Useful for checking controller changes offline,
without the simulator.

Usage:
    python tools/replay_recording.py data/recordings/session_x.h5
    python tools/replay_recording.py --latest --config config/mpc_stack_config.yaml
    python tools/replay_recording.py --latest --bridge_url http://localhost:4567
"""

import sys
import argparse
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from mpc_stack import ConfigError, StackConfig, TrackingPipeline, load_stack_config
from bridge.client import TrackingBridgeClient
from data.replay import TickReplay
from data.formats.data_format import ControlCommand


def find_latest_recording(recordings_dir: str = "data/recordings") -> Optional[Path]:
    recordings = sorted(Path(recordings_dir).glob("*.h5"), key=lambda p: p.stat().st_mtime)
    return recordings[-1] if recordings else None


def replay_locally(replay: TickReplay, config: StackConfig) -> List[Dict]:
    """
    Re-run recorded telemetry through a fresh pipeline.
    The previous command is threaded through exactly as a live session does.
    """
    pipeline = TrackingPipeline(config)
    previous: Optional[ControlCommand] = None
    results = []
    for frame in replay.get_telemetry_frames():
        result = pipeline.process(frame, previous)
        previous = result.command
        payload = result.output.to_payload()
        results.append({
            "status": result.status,
            "steering": payload["steering_angle"],
            "throttle": payload["throttle"],
            "cte": result.cte,
            "epsi": result.epsi,
        })
    return results


def replay_via_bridge(replay: TickReplay, client: TrackingBridgeClient) -> List[Dict]:
    """Send recorded telemetry to a running server, one stateless tick each."""
    results = []
    for frame in replay.get_telemetry_frames():
        response = client.send_telemetry(frame)
        if response is None:
            results.append({"status": "request_failed", "steering": np.nan, "throttle": np.nan,
                            "cte": None, "epsi": None})
            continue
        results.append({
            "status": response["status"],
            "steering": response["steer"]["steering_angle"],
            "throttle": response["steer"]["throttle"],
            "cte": response.get("cte"),
            "epsi": response.get("epsi"),
        })
    return results


def compare_commands(recorded: List[Dict], replayed: List[Dict]) -> Dict:
    """Differences between recorded and replayed steering/throttle."""
    n = min(len(recorded), len(replayed))
    if n == 0:
        return {"ticks": 0}
    rec_steer = np.array([r["steering"] for r in recorded[:n]], dtype=float)
    new_steer = np.array([r["steering"] for r in replayed[:n]], dtype=float)
    rec_throttle = np.array([r["throttle"] for r in recorded[:n]], dtype=float)
    new_throttle = np.array([r["throttle"] for r in replayed[:n]], dtype=float)
    steer_diff = np.abs(rec_steer - new_steer)
    throttle_diff = np.abs(rec_throttle - new_throttle)
    status_changes = sum(
        1 for a, b in zip(recorded[:n], replayed[:n]) if a["status"] != b["status"]
    )
    return {
        "ticks": n,
        "steering_max_diff": float(np.nanmax(steer_diff)),
        "steering_mean_diff": float(np.nanmean(steer_diff)),
        "throttle_max_diff": float(np.nanmax(throttle_diff)),
        "throttle_mean_diff": float(np.nanmean(throttle_diff)),
        "status_changes": status_changes,
    }


def main():
    parser = argparse.ArgumentParser(description="Replay a tick recording through the pipeline")
    parser.add_argument("recording", nargs="?", help="Path to HDF5 recording")
    parser.add_argument("--latest", action="store_true", help="Use the most recent recording")
    parser.add_argument("--recordings_dir", type=str, default="data/recordings",
                        help="Directory searched by --latest")
    parser.add_argument("--config", type=str, default=None, help="Configuration YAML file")
    parser.add_argument("--bridge_url", type=str, default=None,
                        help="Replay through a running server instead of locally")
    parser.add_argument("--tolerance", type=float, default=1e-3,
                        help="Steering difference reported as a mismatch")
    args = parser.parse_args()

    if args.latest:
        recording = find_latest_recording(args.recordings_dir)
        if recording is None:
            print(f"No recordings found in {args.recordings_dir}")
            sys.exit(1)
    elif args.recording:
        recording = Path(args.recording)
    else:
        parser.error("pass a recording path or --latest")

    print(f"Replaying: {recording}")
    with TickReplay(str(recording)) as replay:
        recorded = list(replay.get_ticks())
        if args.bridge_url:
            client = TrackingBridgeClient(args.bridge_url)
            if not client.health_check():
                print(f"Bridge server not reachable at {args.bridge_url}")
                sys.exit(1)
            replayed = replay_via_bridge(replay, client)
            client.close()
        else:
            try:
                config = load_stack_config(args.config)
            except ConfigError as e:
                print(f"Invalid configuration: {e}")
                sys.exit(1)
            replayed = replay_locally(replay, config)

    summary = compare_commands(recorded, replayed)
    print("=" * 60)
    print(f"Ticks compared:        {summary['ticks']}")
    if summary["ticks"]:
        print(f"Steering max diff:     {summary['steering_max_diff']:.5f}")
        print(f"Steering mean diff:    {summary['steering_mean_diff']:.5f}")
        print(f"Throttle max diff:     {summary['throttle_max_diff']:.5f}")
        print(f"Throttle mean diff:    {summary['throttle_mean_diff']:.5f}")
        print(f"Status changes:        {summary['status_changes']}")
        if summary["steering_max_diff"] > args.tolerance:
            print(f"⚠️  Steering differs by more than {args.tolerance}")
        else:
            print("✓ Replayed steering matches the recording")


if __name__ == "__main__":
    main()
