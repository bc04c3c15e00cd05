"""
Tick recorder for the MPC tracking stack.
Records telemetry, fit results, optimizer output and the emitted command
for every tick of one connection to an HDF5 file.
"""

import h5py
import numpy as np
import json
import time
import threading
import queue
import logging
from pathlib import Path
from typing import Optional, Dict, List
from datetime import datetime

from .formats.data_format import TickRecord

logger = logging.getLogger(__name__)

TICK_GAP_WARN_SECONDS = 0.5

SCALAR_DATASETS = {
    "ticks/timestamps": np.float64,
    "ticks/tick_ids": np.int64,
    "telemetry/x": np.float64,
    "telemetry/y": np.float64,
    "telemetry/psi": np.float64,
    "telemetry/speed": np.float64,
    "telemetry/steering_angle": np.float64,
    "telemetry/throttle": np.float64,
    "state/predicted_x": np.float64,
    "state/predicted_y": np.float64,
    "state/predicted_psi": np.float64,
    "state/predicted_speed": np.float64,
    "state/cte": np.float64,
    "state/epsi": np.float64,
    "control/steering_raw": np.float64,
    "control/throttle_raw": np.float64,
    "control/steering": np.float64,
    "control/throttle": np.float64,
    "control/solve_time": np.float64,
}

VLEN_DATASETS = (
    "telemetry/ptsx",
    "telemetry/ptsy",
    "visualization/mpc_x",
    "visualization/mpc_y",
    "visualization/next_x",
    "visualization/next_y",
)

STRING_DATASETS = (
    "ticks/status",
    "ticks/fallback_reason",
)


def _nan_if_none(value: Optional[float]) -> float:
    return float("nan") if value is None else float(value)


class TickRecorder:
    """Records ticks to HDF5 format."""

    def __init__(self, output_dir: str, recording_name: Optional[str] = None,
                 polynomial_degree: int = 3, flush_every: int = 30,
                 metadata: Optional[Dict] = None):
        """
        Initialize tick recorder.

        Args:
            output_dir: Directory to save recordings
            recording_name: Name for this recording (default: timestamp)
            polynomial_degree: Degree of the fitted reference curve
            flush_every: Buffered ticks before a background flush
            metadata: Extra metadata stored with the recording
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if recording_name is None:
            recording_name = f"recording_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        self.recording_name = recording_name
        self.output_file = self.output_dir / f"{recording_name}.h5"
        self.polynomial_degree = polynomial_degree

        self.h5_file = h5py.File(self.output_file, 'w')
        self.h5_lock = threading.Lock()
        self._create_datasets()

        self.tick_buffer: List[TickRecord] = []
        self.tick_buffer_lock = threading.Lock()
        self.flush_queue: "queue.Queue[List[TickRecord]]" = queue.Queue()
        self.flush_stop_event = threading.Event()
        self.tick_count = 0
        self.last_record_time: Optional[float] = None
        self.flush_every = flush_every
        self.flush_thread = threading.Thread(
            target=self._flush_worker,
            name="TickRecorderFlushWorker",
            daemon=True,
        )
        self.closed = False
        self.flush_thread.start()

        self.metadata = {
            "recording_start_time": datetime.now().isoformat(),
            "recording_name": recording_name,
            "polynomial_degree": polynomial_degree,
        }
        if metadata:
            self.metadata.update(metadata)

    def _create_datasets(self):
        """Create extensible HDF5 datasets."""
        max_shape = (None,)
        for name, dtype in SCALAR_DATASETS.items():
            self.h5_file.create_dataset(name, shape=(0,), maxshape=max_shape, dtype=dtype)
        for name in VLEN_DATASETS:
            self.h5_file.create_dataset(
                name, shape=(0,), maxshape=max_shape,
                dtype=h5py.vlen_dtype(np.float64)
            )
        for name in STRING_DATASETS:
            self.h5_file.create_dataset(
                name, shape=(0,), maxshape=max_shape,
                dtype=h5py.string_dtype()
            )
        n_coeffs = self.polynomial_degree + 1
        self.h5_file.create_dataset(
            "fit/coefficients",
            shape=(0, n_coeffs),
            maxshape=(None, n_coeffs),
            dtype=np.float64
        )

    def record_tick(self, record: TickRecord):
        """
        Record one tick.

        Args:
            record: TickRecord with telemetry and pipeline result
        """
        if self.closed:
            raise RuntimeError(f"Recorder {self.recording_name} is closed")
        now = time.time()
        if self.last_record_time is not None:
            gap = now - self.last_record_time
            if gap > TICK_GAP_WARN_SECONDS:
                logger.warning(
                    "[RECORDER_TICK_GAP] gap=%.3fs tick_id=%s recording=%s",
                    gap,
                    record.tick_id,
                    self.recording_name,
                )
        self.last_record_time = now

        with self.tick_buffer_lock:
            self.tick_buffer.append(record)
            self.tick_count += 1
            if len(self.tick_buffer) >= self.flush_every:
                ticks = self.tick_buffer
                self.tick_buffer = []
                self.flush_queue.put(ticks)

    def flush(self):
        """Queue buffered ticks for writing."""
        with self.tick_buffer_lock:
            if not self.tick_buffer:
                return
            ticks = self.tick_buffer
            self.tick_buffer = []
        self.flush_queue.put(ticks)

    def _flush_worker(self):
        while not self.flush_stop_event.is_set() or not self.flush_queue.empty():
            try:
                ticks = self.flush_queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._write_ticks(ticks)
            except Exception as e:
                logger.error(f"[RECORDER] Failed to write {len(ticks)} ticks: {e}", exc_info=True)
            finally:
                self.flush_queue.task_done()

    def _append(self, name: str, values) -> None:
        dataset = self.h5_file[name]
        start = dataset.shape[0]
        dataset.resize(start + len(values), axis=0)
        dataset[start:] = values

    def _append_each(self, name: str, values) -> None:
        # Variable-length rows are written one at a time.
        dataset = self.h5_file[name]
        start = dataset.shape[0]
        dataset.resize(start + len(values), axis=0)
        for i, value in enumerate(values):
            dataset[start + i] = value

    def _write_ticks(self, ticks: List[TickRecord]):
        """Write a batch of ticks to HDF5."""
        if not ticks:
            return
        columns: Dict[str, list] = {name: [] for name in SCALAR_DATASETS}
        vlen: Dict[str, list] = {name: [] for name in VLEN_DATASETS}
        strings: Dict[str, list] = {name: [] for name in STRING_DATASETS}
        coefficients = []
        n_coeffs = self.polynomial_degree + 1

        for tick in ticks:
            frame = tick.telemetry
            result = tick.result
            pose = result.predicted_pose
            payload = result.output.to_payload()

            columns["ticks/timestamps"].append(tick.timestamp)
            columns["ticks/tick_ids"].append(tick.tick_id)
            columns["telemetry/x"].append(frame.x)
            columns["telemetry/y"].append(frame.y)
            columns["telemetry/psi"].append(frame.psi)
            columns["telemetry/speed"].append(frame.speed)
            columns["telemetry/steering_angle"].append(frame.steering_angle)
            columns["telemetry/throttle"].append(frame.throttle)
            columns["state/predicted_x"].append(_nan_if_none(pose.x if pose else None))
            columns["state/predicted_y"].append(_nan_if_none(pose.y if pose else None))
            columns["state/predicted_psi"].append(_nan_if_none(pose.psi if pose else None))
            columns["state/predicted_speed"].append(_nan_if_none(pose.speed if pose else None))
            columns["state/cte"].append(_nan_if_none(result.cte))
            columns["state/epsi"].append(_nan_if_none(result.epsi))
            columns["control/steering_raw"].append(result.command.steering)
            columns["control/throttle_raw"].append(result.command.throttle)
            columns["control/steering"].append(payload["steering_angle"])
            columns["control/throttle"].append(payload["throttle"])
            columns["control/solve_time"].append(_nan_if_none(result.solve_time))

            vlen["telemetry/ptsx"].append(np.asarray(frame.ptsx, dtype=np.float64))
            vlen["telemetry/ptsy"].append(np.asarray(frame.ptsy, dtype=np.float64))
            vlen["visualization/mpc_x"].append(np.asarray(payload["mpc_x"], dtype=np.float64))
            vlen["visualization/mpc_y"].append(np.asarray(payload["mpc_y"], dtype=np.float64))
            vlen["visualization/next_x"].append(np.asarray(payload["next_x"], dtype=np.float64))
            vlen["visualization/next_y"].append(np.asarray(payload["next_y"], dtype=np.float64))

            strings["ticks/status"].append(result.status)
            strings["ticks/fallback_reason"].append(result.fallback_reason or "")

            if result.coefficients is not None and len(result.coefficients) == n_coeffs:
                coefficients.append(np.asarray(result.coefficients, dtype=np.float64))
            else:
                coefficients.append(np.full(n_coeffs, np.nan))

        with self.h5_lock:
            for name, dtype in SCALAR_DATASETS.items():
                self._append(name, np.asarray(columns[name], dtype=dtype))
            for name in VLEN_DATASETS:
                self._append_each(name, vlen[name])
            for name in STRING_DATASETS:
                self._append_each(name, strings[name])
            self._append("fit/coefficients", np.vstack(coefficients))

    def close(self):
        """Close the recording file."""
        if self.closed:
            return
        self.closed = True
        try:
            self.flush()
            self.flush_stop_event.set()
            self.flush_thread.join(timeout=5.0)
        except Exception as e:
            logger.error(f"Error during final flush: {e}", exc_info=True)

        self.metadata["recording_end_time"] = datetime.now().isoformat()
        self.metadata["total_ticks"] = self.tick_count

        with self.h5_lock:
            try:
                self.h5_file.attrs["metadata"] = json.dumps(self.metadata, indent=2)
            except Exception as e:
                logger.warning(f"Failed to save metadata: {e}")
            self.h5_file.close()
        logger.info(f"Recording saved to: {self.output_file}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
