import logging
from pathlib import Path

import numpy as np

from .errors import AllocationError, DimensionMismatchError
from .io_utils import (
    choose_backing,
    create_scratch_memmap,
    estimate_accumulator_mb,
    get_available_memory_mb,
)
from .numba_utils import coefficient_of_variation_row, welford_update_row

logger = logging.getLogger(__name__)

SAMPLE_DTYPE = np.int16
COUNT_DTYPE = np.int32
FLOAT_DTYPES = ("float64", "float32")


class AccumulatorGrid:
    """
    Per-pixel running count, mean and sum of squared deviations (Welford).

    Each statistic is a single flat buffer of ``width * height`` entries,
    indexed by ``y * width + x``. Buffers live in RAM or, for grids larger
    than the node's memory, in disk-backed memory maps.
    """

    def __init__(
        self,
        width: int,
        height: int,
        dtype: str = "float64",
        backing: str = "ram",
        scratch_dir: str | Path | None = None,
    ):
        """
        Allocate zeroed accumulator buffers.

        Args:
            width: Pixels per row
            height: Number of rows
            dtype: Float type for mean and m2 ('float64' or 'float32')
            backing: 'ram', 'memmap' or 'auto'
            scratch_dir: Directory for memmap scratch files (system temp if None)

        Raises:
            AllocationError: If the buffers cannot be obtained
        """
        if width < 1 or height < 1:
            raise ValueError(f"Grid dimensions must be positive, got {width}x{height}")
        if dtype not in FLOAT_DTYPES:
            raise ValueError(f"dtype must be one of {FLOAT_DTYPES}, got '{dtype}'")

        self.width = width
        self.height = height
        self.dtype = np.dtype(dtype)
        self._scratch = []

        required_mb = estimate_accumulator_mb(width, height, dtype)
        self.backing = choose_backing(required_mb, backing)

        if self.backing == "ram":
            self._allocate_ram(required_mb)
        else:
            self._allocate_memmap(required_mb, scratch_dir)

        logger.info(
            f"Allocated {width}x{height} accumulator ({self.dtype.name}, "
            f"{self.backing}, ~{required_mb:.2f} MB)"
        )

    def _allocate_ram(self, required_mb: float):
        available_mb = get_available_memory_mb()
        if required_mb > available_mb:
            raise AllocationError(
                f"Accumulator needs ~{required_mb:.2f} MB but only "
                f"{available_mb:.2f} MB of RAM is available",
                required_mb=required_mb,
            )
        size = self.width * self.height
        try:
            self._count = np.zeros(size, dtype=COUNT_DTYPE)
            self._mean = np.zeros(size, dtype=self.dtype)
            self._m2 = np.zeros(size, dtype=self.dtype)
        except MemoryError as e:
            raise AllocationError(
                f"Out of memory allocating {self.width}x{self.height} accumulator",
                required_mb=required_mb,
            ) from e

    def _allocate_memmap(self, required_mb: float, scratch_dir):
        size = self.width * self.height
        try:
            for dtype in (COUNT_DTYPE, self.dtype, self.dtype):
                self._scratch.append(create_scratch_memmap((size,), dtype, scratch_dir))
        except (OSError, ValueError) as e:
            self.close()
            raise AllocationError(
                f"Could not create disk-backed accumulator in {scratch_dir or 'temp dir'}: {e}",
                required_mb=required_mb,
            ) from e
        # Plain ndarray views so the compiled kernels see regular arrays
        self._count, self._mean, self._m2 = (np.asarray(s.data) for s in self._scratch)

    # --- Indexing ---

    @property
    def shape(self) -> tuple[int, int]:
        """(height, width)"""
        return self.height, self.width

    def _index(self, x: int, y: int) -> int:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(
                f"Pixel ({x}, {y}) outside {self.width}x{self.height} grid"
            )
        return y * self.width + x

    def _row_slice(self, y: int) -> slice:
        if not 0 <= y < self.height:
            raise IndexError(f"Row {y} outside grid of height {self.height}")
        start = y * self.width
        return slice(start, start + self.width)

    # --- Updates ---

    def update(self, x: int, y: int, value: int):
        """Apply one sample to pixel (x, y). Negative samples are ignored."""
        index = self._index(x, y)
        sample = _as_samples([value])
        welford_update_row(self._count, self._mean, self._m2, index, sample)

    def update_row(self, y: int, samples) -> int:
        """
        Apply a full row of samples, left to right.

        Args:
            y: Row index
            samples: Sequence of ``width`` signed integer samples

        Returns:
            Number of valid (non-negative) samples applied
        """
        row = self._row_slice(y)
        samples = _as_samples(samples)
        if samples.shape[0] != self.width:
            raise DimensionMismatchError(
                (self.width, self.height), (samples.shape[0], self.height)
            )
        return welford_update_row(self._count, self._mean, self._m2, row.start, samples)

    # --- Reads ---

    def cell(self, x: int, y: int) -> tuple[int, float, float]:
        """(count, mean, m2) for pixel (x, y)."""
        index = self._index(x, y)
        return int(self._count[index]), float(self._mean[index]), float(self._m2[index])

    def finalize_row(self, y: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Final statistics for one row.

        Returns:
            (mean, coefficient_of_variation, count) with mean and CV as float32.
            CV is NaN where count <= 1 or mean == 0.
        """
        row = self._row_slice(y)
        count = self._count[row]
        mean = self._mean[row]
        cv = np.empty(self.width, dtype=np.float64)
        coefficient_of_variation_row(count, mean, self._m2[row], cv)
        return mean.astype(np.float32), cv.astype(np.float32), count.copy()

    def max_count(self) -> int:
        return int(self._count.max())

    def as_arrays(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Read-only (height, width) views of count, mean and m2."""
        views = []
        for buf in (self._count, self._mean, self._m2):
            view = buf.reshape(self.height, self.width).view()
            view.flags.writeable = False
            views.append(view)
        return tuple(views)

    # --- Lifecycle ---

    def close(self):
        """Release disk-backed buffers. RAM buffers are left to the GC."""
        if self._scratch:
            self._count = self._mean = self._m2 = None
        for scratch in self._scratch:
            scratch.cleanup()
        self._scratch = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def __repr__(self):
        return (
            f"AccumulatorGrid({self.width}x{self.height}, dtype={self.dtype.name}, "
            f"backing={self.backing})"
        )


def _as_samples(values) -> np.ndarray:
    """Coerce a row of samples to contiguous int16."""
    samples = np.asarray(values)
    if samples.ndim != 1:
        raise ValueError(f"Samples must be one-dimensional, got shape {samples.shape}")
    if samples.dtype == SAMPLE_DTYPE:
        return np.ascontiguousarray(samples)
    if samples.dtype.kind not in "iu":
        raise ValueError(f"Samples must be integers, got {samples.dtype}")
    info = np.iinfo(SAMPLE_DTYPE)
    if samples.size and (samples.min() < info.min or samples.max() > info.max):
        raise ValueError("Sample values out of 16-bit signed range")
    return samples.astype(SAMPLE_DTYPE)
