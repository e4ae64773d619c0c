"""
Data recorder for the MPC stack.
Records per-cycle commands, status and trajectories to HDF5.
"""

import h5py
import numpy as np
import json
import threading
import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple
from datetime import datetime

from data.formats.data_format import ControlOutput

logger = logging.getLogger(__name__)

MAX_REFERENCE_POINTS = 16


def _padded(points: Sequence[Tuple[float, float]], width: int) -> Tuple[np.ndarray, np.ndarray]:
    xs = np.full(width, np.nan, dtype=np.float64)
    ys = np.full(width, np.nan, dtype=np.float64)
    for i, (px, py) in enumerate(points[:width]):
        xs[i] = px
        ys[i] = py
    return xs, ys


class CycleRecorder:
    """Records MPC control cycles to HDF5 format."""

    def __init__(self, output_dir: str, recording_name: Optional[str] = None,
                 horizon_steps: int = 10, max_reference_points: int = MAX_REFERENCE_POINTS):
        """
        Initialize cycle recorder.

        Args:
            output_dir: Directory to save recordings
            recording_name: Name for this recording (default: timestamp)
            horizon_steps: Width of the predicted trajectory datasets
            max_reference_points: Width of the reference trajectory datasets
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if recording_name is None:
            recording_name = f"mpc_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        self.recording_name = recording_name
        self.output_file = self.output_dir / f"{recording_name}.h5"
        self.horizon_steps = int(horizon_steps)
        self.max_reference_points = int(max_reference_points)

        self.h5_file = h5py.File(self.output_file, 'w')
        self._create_datasets()

        self._lock = threading.Lock()
        self.cycle_count = 0
        self.metadata = {
            "recording_name": recording_name,
            "recording_start_time": datetime.now().isoformat(),
            "horizon_steps": self.horizon_steps,
        }
        self._closed = False

    def _create_datasets(self):
        """Create extensible HDF5 datasets."""
        max_shape = (None,)
        text = h5py.string_dtype(encoding="utf-8")

        for name, dtype in (
            ("cycles/timestamps", np.float64),
            ("cycles/steering", np.float64),
            ("cycles/throttle", np.float64),
            ("cycles/solve_time", np.float64),
        ):
            self.h5_file.create_dataset(name, shape=(0,), maxshape=max_shape, dtype=dtype)
        for name in ("cycles/session_ids", "cycles/status", "cycles/failure_reason"):
            self.h5_file.create_dataset(name, shape=(0,), maxshape=max_shape, dtype=text)

        for name, width in (
            ("trajectory/predicted_x", self.horizon_steps),
            ("trajectory/predicted_y", self.horizon_steps),
            ("trajectory/reference_x", self.max_reference_points),
            ("trajectory/reference_y", self.max_reference_points),
        ):
            self.h5_file.create_dataset(
                name,
                shape=(0, width),
                maxshape=(None, width),
                dtype=np.float64,
                fillvalue=np.nan,
            )

    def record_cycle(self, session_id: str, output: ControlOutput, timestamp: float):
        """Append one cycle."""
        pred_x, pred_y = _padded(output.predicted_trajectory, self.horizon_steps)
        ref_x, ref_y = _padded(output.reference_trajectory, self.max_reference_points)
        solve_time = np.nan if output.solve_time is None else float(output.solve_time)

        with self._lock:
            if self._closed:
                logger.warning("record_cycle called on closed recorder %s", self.output_file)
                return
            idx = self.cycle_count
            new_size = idx + 1
            for name, value in (
                ("cycles/timestamps", float(timestamp)),
                ("cycles/steering", float(output.steering_command)),
                ("cycles/throttle", float(output.throttle_command)),
                ("cycles/solve_time", solve_time),
                ("cycles/session_ids", str(session_id)),
                ("cycles/status", output.status),
                ("cycles/failure_reason", output.failure_reason or ""),
            ):
                dataset = self.h5_file[name]
                dataset.resize((new_size,))
                dataset[idx] = value
            for name, row in (
                ("trajectory/predicted_x", pred_x),
                ("trajectory/predicted_y", pred_y),
                ("trajectory/reference_x", ref_x),
                ("trajectory/reference_y", ref_y),
            ):
                dataset = self.h5_file[name]
                dataset.resize((new_size, dataset.shape[1]))
                dataset[idx] = row
            self.cycle_count = new_size

    def flush(self):
        with self._lock:
            if not self._closed:
                self.h5_file.flush()

    def close(self):
        """Close the recording file."""
        with self._lock:
            if self._closed:
                return
            self.metadata["recording_end_time"] = datetime.now().isoformat()
            self.metadata["total_cycles"] = self.cycle_count
            try:
                self.h5_file.attrs["metadata"] = json.dumps(self.metadata, indent=2)
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to save metadata: {e}")
            self.h5_file.close()
            self._closed = True
        logger.info(f"Recording saved to: {self.output_file}")
