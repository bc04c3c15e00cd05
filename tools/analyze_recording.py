#!/usr/bin/env python3
"""
Summarize and plot a tick recording.

Usage:
    python tools/analyze_recording.py data/recordings/session_x.h5
    python tools/analyze_recording.py --latest --plot tmp/analysis.png
"""

import sys
import argparse
from collections import Counter
from pathlib import Path
from typing import Dict

import numpy as np

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from data.replay import TickReplay
from tools.replay_recording import find_latest_recording


def _stats(values: np.ndarray) -> Dict[str, float]:
    values = values[np.isfinite(values)]
    if values.size == 0:
        return {"mean": float("nan"), "rms": float("nan"), "max_abs": float("nan")}
    return {
        "mean": float(np.mean(values)),
        "rms": float(np.sqrt(np.mean(values ** 2))),
        "max_abs": float(np.max(np.abs(values))),
    }


def summarize_recording(replay: TickReplay) -> Dict:
    """Tracking error, actuation and fallback statistics for one recording."""
    total = len(replay)
    if total == 0:
        return {"ticks": 0}
    statuses = [s.decode("utf-8") if isinstance(s, bytes) else str(s)
                for s in replay.get_series("ticks/status")]
    counts = Counter(statuses)
    timestamps = replay.get_series("ticks/timestamps")
    solve_times = replay.get_series("control/solve_time")
    finite_solve = solve_times[np.isfinite(solve_times)]
    steering = replay.get_series("control/steering")
    return {
        "ticks": total,
        "duration_s": float(timestamps[-1] - timestamps[0]) if total > 1 else 0.0,
        "status_counts": dict(counts),
        "fallback_rate": 1.0 - counts.get("ok", 0) / total,
        "cte": _stats(replay.get_series("state/cte")),
        "epsi": _stats(replay.get_series("state/epsi")),
        "steering": _stats(steering),
        "saturated_ticks": int(np.sum(np.abs(steering) >= 1.0)),
        "solve_time_mean": float(np.mean(finite_solve)) if finite_solve.size else float("nan"),
        "solve_time_max": float(np.max(finite_solve)) if finite_solve.size else float("nan"),
    }


def plot_recording(replay: TickReplay, output_path: str):
    """Plot cte, epsi, steering and throttle over time."""
    import matplotlib
    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    t = replay.get_series("ticks/timestamps")
    if t.size:
        t = t - t[0]
    fig, axes = plt.subplots(4, 1, figsize=(12, 10), sharex=True)
    series = [
        ("state/cte", "CTE (m)"),
        ("state/epsi", "Heading error (rad)"),
        ("control/steering", "Steering (normalized)"),
        ("control/throttle", "Throttle"),
    ]
    for ax, (name, label) in zip(axes, series):
        ax.plot(t, replay.get_series(name), linewidth=1.0)
        ax.set_ylabel(label)
        ax.grid(True, alpha=0.3)
    axes[-1].set_xlabel("Time (s)")
    fig.suptitle(replay.recording_file.name)
    fig.tight_layout()
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=120)
    plt.close(fig)


def print_summary(summary: Dict):
    print("=" * 60)
    print(f"Ticks:            {summary['ticks']}")
    if not summary["ticks"]:
        return
    print(f"Duration:         {summary['duration_s']:.1f}s")
    print(f"Fallback rate:    {summary['fallback_rate'] * 100:.1f}%")
    for status, count in sorted(summary["status_counts"].items()):
        print(f"  {status:<20} {count}")
    for key in ("cte", "epsi", "steering"):
        s = summary[key]
        print(f"{key.upper():<8} mean={s['mean']:.4f} rms={s['rms']:.4f} max|x|={s['max_abs']:.4f}")
    print(f"Saturated ticks:  {summary['saturated_ticks']}")
    print(f"Solve time:       mean={summary['solve_time_mean'] * 1000:.1f}ms "
          f"max={summary['solve_time_max'] * 1000:.1f}ms")


def main():
    parser = argparse.ArgumentParser(description="Summarize a tick recording")
    parser.add_argument("recording", nargs="?", help="Path to HDF5 recording")
    parser.add_argument("--latest", action="store_true", help="Use the most recent recording")
    parser.add_argument("--recordings_dir", type=str, default="data/recordings")
    parser.add_argument("--plot", type=str, default=None, help="Write a PNG plot to this path")
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

    with TickReplay(str(recording)) as replay:
        print(f"Recording: {recording}")
        if replay.metadata:
            print(f"Started:   {replay.metadata.get('recording_start_time', 'unknown')}")
        print_summary(summarize_recording(replay))
        if args.plot:
            plot_recording(replay, args.plot)
            print(f"Plot saved to {args.plot}")


if __name__ == "__main__":
    main()
