import logging
import os
import tempfile
from pathlib import Path

import numpy as np
import psutil

logger = logging.getLogger(__name__)

# Use at most this fraction of AVAILABLE RAM for the accumulator
MEMORY_THRESHOLD = 0.8

BACKINGS = ("ram", "memmap", "auto")


class ScratchBuffer:
    """A zero-filled disk-backed array living in a temporary file."""

    def __init__(self, data: np.memmap, temp_file_path: str):
        self.data = data
        self.temp_file_path = temp_file_path

    def flush(self):
        self.data.flush()

    def cleanup(self):
        """Drop the mapping and delete the temporary file."""
        # np.memmap has no close(); the mapping goes with its last reference
        self.data = None

        if os.path.exists(self.temp_file_path):
            try:
                os.remove(self.temp_file_path)
            except OSError as e:
                logger.warning(f"Failed to delete scratch file {self.temp_file_path}: {e}")


def get_available_memory_mb() -> float:
    return psutil.virtual_memory().available / (1024 * 1024)


def estimate_accumulator_mb(width: int, height: int, dtype="float64") -> float:
    """Footprint of count (int32) + mean + m2 for a width x height grid."""
    pixels = width * height
    float_bytes = np.dtype(dtype).itemsize
    return pixels * (np.dtype(np.int32).itemsize + 2 * float_bytes) / (1024 * 1024)


def choose_backing(required_mb: float, backing: str = "auto") -> str:
    """
    Resolve ``backing`` to either 'ram' or 'memmap'.

    'auto' keeps the buffers in RAM when they fit under the memory threshold
    and moves them to disk otherwise. 'ram' and 'memmap' are returned as is;
    the caller decides whether a RAM shortfall is fatal.
    """
    if backing not in BACKINGS:
        raise ValueError(f"Unknown backing '{backing}'. Must be one of: {BACKINGS}")
    if backing != "auto":
        return backing

    available_mb = get_available_memory_mb()
    threshold_mb = available_mb * MEMORY_THRESHOLD
    logger.info(
        f"Accumulator needs ~{required_mb:.2f} MB, available RAM {available_mb:.2f} MB "
        f"(threshold {threshold_mb:.2f} MB)"
    )
    if required_mb > threshold_mb:
        logger.warning("Accumulator too large for RAM, switching to disk-backed memory maps")
        return "memmap"
    return "ram"


def create_scratch_memmap(
    shape, dtype, scratch_dir: str | Path | None = None, prefix: str = "precipstats_"
) -> ScratchBuffer:
    """Create a zero-filled memmap in a fresh temporary file under ``scratch_dir``."""
    if scratch_dir is not None:
        Path(scratch_dir).mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=prefix, suffix=".dat", dir=scratch_dir)
    os.close(fd)

    try:
        # w+ on a fresh file is zero-filled
        fp = np.memmap(temp_path, dtype=dtype, mode="w+", shape=shape)
    except (OSError, ValueError):
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise

    return ScratchBuffer(fp, temp_path)
