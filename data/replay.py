"""
Replay utility for tick recordings.
Allows re-running recorded telemetry through the pipeline and inspecting results.
"""

import json
import h5py
import numpy as np
from pathlib import Path
from typing import Iterator

from .formats.data_format import TelemetryFrame


class TickReplay:
    """Replay recorded ticks."""

    def __init__(self, recording_file: str):
        """
        Initialize tick replay.

        Args:
            recording_file: Path to HDF5 recording file
        """
        self.recording_file = Path(recording_file)
        if not self.recording_file.exists():
            raise FileNotFoundError(f"Recording file not found: {recording_file}")

        self.h5_file = h5py.File(self.recording_file, 'r')
        self._load_metadata()

    def _load_metadata(self):
        """Load recording metadata."""
        if "metadata" in self.h5_file.attrs:
            self.metadata = json.loads(self.h5_file.attrs["metadata"])
        else:
            self.metadata = {}

    def __len__(self) -> int:
        if "ticks/timestamps" not in self.h5_file:
            return 0
        return int(self.h5_file["ticks/timestamps"].shape[0])

    def _decode_str(self, value) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def get_telemetry_frames(self) -> Iterator[TelemetryFrame]:
        """
        Get telemetry iterator.

        Yields:
            TelemetryFrame per recorded tick
        """
        f = self.h5_file
        for i in range(len(self)):
            yield TelemetryFrame(
                ptsx=tuple(float(v) for v in f["telemetry/ptsx"][i]),
                ptsy=tuple(float(v) for v in f["telemetry/ptsy"][i]),
                x=float(f["telemetry/x"][i]),
                y=float(f["telemetry/y"][i]),
                psi=float(f["telemetry/psi"][i]),
                speed=float(f["telemetry/speed"][i]),
                steering_angle=float(f["telemetry/steering_angle"][i]),
                throttle=float(f["telemetry/throttle"][i]),
                timestamp=float(f["ticks/timestamps"][i]),
            )

    def get_ticks(self) -> Iterator[dict]:
        """
        Get recorded pipeline outputs.

        Yields:
            Dictionary with tick id, status, errors, coefficients and emitted command
        """
        f = self.h5_file
        for i in range(len(self)):
            coeffs = np.asarray(f["fit/coefficients"][i])
            yield {
                "timestamp": float(f["ticks/timestamps"][i]),
                "tick_id": int(f["ticks/tick_ids"][i]),
                "status": self._decode_str(f["ticks/status"][i]),
                "fallback_reason": self._decode_str(f["ticks/fallback_reason"][i]) or None,
                "cte": float(f["state/cte"][i]),
                "epsi": float(f["state/epsi"][i]),
                "coefficients": None if np.all(np.isnan(coeffs)) else coeffs,
                "steering_raw": float(f["control/steering_raw"][i]),
                "throttle_raw": float(f["control/throttle_raw"][i]),
                "steering": float(f["control/steering"][i]),
                "throttle": float(f["control/throttle"][i]),
                "solve_time": float(f["control/solve_time"][i]),
                "mpc_x": np.asarray(f["visualization/mpc_x"][i]),
                "mpc_y": np.asarray(f["visualization/mpc_y"][i]),
                "next_x": np.asarray(f["visualization/next_x"][i]),
                "next_y": np.asarray(f["visualization/next_y"][i]),
            }

    def get_series(self, name: str) -> np.ndarray:
        """Full scalar dataset, e.g. "state/cte"."""
        if name not in self.h5_file:
            raise KeyError(f"Dataset not found: {name}")
        return np.asarray(self.h5_file[name][:])

    def close(self):
        """Close recording file."""
        self.h5_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
