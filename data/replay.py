"""
Replay utility for MPC cycle recordings.
Reads back what CycleRecorder wrote, for debugging and plotting.
"""

import json
import h5py
import numpy as np
from pathlib import Path
from typing import Iterator, List, Tuple


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _points(xs: np.ndarray, ys: np.ndarray) -> List[Tuple[float, float]]:
    mask = np.isfinite(xs) & np.isfinite(ys)
    return [(float(x), float(y)) for x, y in zip(xs[mask], ys[mask])]


class CycleReplay:
    """Replay recorded MPC cycles."""

    def __init__(self, recording_file: str):
        """
        Initialize cycle replay.

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
        if "cycles/timestamps" not in self.h5_file:
            return 0
        return len(self.h5_file["cycles/timestamps"])

    def get_cycles(self) -> Iterator[dict]:
        """
        Get recorded cycles iterator.

        Yields:
            Dictionary with one cycle's commands, status and trajectories
        """
        if "cycles/timestamps" not in self.h5_file:
            return

        cycles = self.h5_file["cycles"]
        trajectory = self.h5_file["trajectory"]
        for i in range(len(self)):
            solve_time = float(cycles["solve_time"][i])
            reason = _decode(cycles["failure_reason"][i])
            yield {
                "timestamp": float(cycles["timestamps"][i]),
                "session_id": _decode(cycles["session_ids"][i]),
                "steering": float(cycles["steering"][i]),
                "throttle": float(cycles["throttle"][i]),
                "status": _decode(cycles["status"][i]),
                "failure_reason": reason or None,
                "solve_time": solve_time if np.isfinite(solve_time) else None,
                "predicted": _points(trajectory["predicted_x"][i], trajectory["predicted_y"][i]),
                "reference": _points(trajectory["reference_x"][i], trajectory["reference_y"][i]),
            }

    def get_statistics(self) -> dict:
        """Get statistics about the recording."""
        stats = {
            "file": str(self.recording_file),
            "metadata": self.metadata,
            "cycles": len(self),
        }
        if len(self):
            status = [_decode(s) for s in self.h5_file["cycles/status"][:]]
            solve_times = np.asarray(self.h5_file["cycles/solve_time"][:], dtype=float)
            solve_times = solve_times[np.isfinite(solve_times)]
            stats["fallbacks"] = sum(1 for s in status if s != "ok")
            if solve_times.size:
                stats["mean_solve_time"] = float(np.mean(solve_times))
                stats["max_solve_time"] = float(np.max(solve_times))
        return stats

    def close(self):
        """Close the replay file."""
        self.h5_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m data.replay <recording_file.h5>")
        sys.exit(1)

    with CycleReplay(sys.argv[1]) as replay:
        print("Recording Statistics:")
        for key, value in replay.get_statistics().items():
            print(f"  {key}: {value}")
