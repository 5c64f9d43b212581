"""
Writes the finalized accumulator as three flat binary streams.

Streams are row-major, top row first, with no header: mean and coefficient
of variation as little-endian float32 and the observation count as a
little-endian signed integer. Each stream goes to ``<name>.part`` first and
all three are renamed into place only once every row has been written.
"""

import contextlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .accumulator import AccumulatorGrid
from .errors import OutputWriteError

logger = logging.getLogger(__name__)

FLOAT_OUT = np.dtype("<f4")
COUNT_DTYPES = ("int16", "int32")
PART_SUFFIX = ".part"


@dataclass
class OutputPaths:
    mean: Path
    cv: Path
    count: Path

    @classmethod
    def in_directory(cls, directory: str | Path, prefix: str = "Chelsa20C") -> "OutputPaths":
        directory = Path(directory)
        return cls(
            mean=directory / f"{prefix}mean.flt",
            cv=directory / f"{prefix}cv.flt",
            count=directory / f"{prefix}count.bil",
        )

    def items(self) -> list[tuple[str, Path]]:
        return [("mean", Path(self.mean)), ("cv", Path(self.cv)), ("count", Path(self.count))]

    def exist(self) -> bool:
        return all(path.exists() for _, path in self.items())


class OutputEncoder:
    """Serializes an AccumulatorGrid to mean / CV / count streams."""

    def __init__(self, count_dtype: str = "int32", write_headers: bool = False):
        if count_dtype not in COUNT_DTYPES:
            raise ValueError(f"count_dtype must be one of {COUNT_DTYPES}, got '{count_dtype}'")
        self.count_dtype = np.dtype(count_dtype).newbyteorder("<")
        self.write_headers = write_headers

    def write_all(self, grid: AccumulatorGrid, destinations: OutputPaths) -> OutputPaths:
        """
        Write all three streams for ``grid``.

        Raises:
            ValueError: If the largest count does not fit ``count_dtype``
            OutputWriteError: On any I/O failure (no final files are left behind)
        """
        self._check_count_range(grid)

        targets = destinations.items()
        by_name = dict(targets)
        parts = {name: _part_path(path) for name, path in targets}
        # (part, final) pairs renamed only once every part is complete
        staged = [(parts[name], path) for name, path in targets]
        renamed = []
        current = targets[0][1]

        try:
            with contextlib.ExitStack() as stack:
                files = {}
                for name, path in targets:
                    current = path
                    path.parent.mkdir(parents=True, exist_ok=True)
                    files[name] = stack.enter_context(open(parts[name], "wb"))

                for y in range(grid.height):
                    mean, cv, count = grid.finalize_row(y)
                    for name, values in (
                        ("mean", mean.astype(FLOAT_OUT)),
                        ("cv", cv.astype(FLOAT_OUT)),
                        ("count", count.astype(self.count_dtype)),
                    ):
                        current = by_name[name]
                        files[name].write(values.tobytes())

            if self.write_headers:
                for name, path in targets:
                    header = path.with_suffix(".hdr")
                    current = header
                    staged.append((_part_path(header), header))
                    self._write_header(grid, name, _part_path(header))

            for part, final in staged:
                current = final
                os.replace(part, final)
                renamed.append(final)
        except OSError as e:
            _remove_quietly([part for part, _ in staged])
            _remove_quietly(renamed)
            raise OutputWriteError(current, str(e)) from e

        logger.info(
            f"Wrote {grid.width}x{grid.height} statistics: "
            + ", ".join(str(path) for _, path in targets)
        )
        return destinations

    def _check_count_range(self, grid: AccumulatorGrid):
        max_count = grid.max_count()
        limit = np.iinfo(self.count_dtype).max
        if max_count > limit:
            raise ValueError(
                f"Maximum count {max_count} does not fit {self.count_dtype.name} "
                f"(max {limit}); use a wider count_dtype"
            )

    def _write_header(self, grid: AccumulatorGrid, name: str, dest: Path):
        """ESRI .hdr sidecar so GIS tools can open the raw stream."""
        if name == "count":
            nbits = self.count_dtype.itemsize * 8
            pixeltype = "SIGNEDINT"
        else:
            nbits = 32
            pixeltype = "FLOAT"
        lines = [
            "BYTEORDER      I",
            "LAYOUT         BIL",
            f"NROWS          {grid.height}",
            f"NCOLS          {grid.width}",
            "NBANDS         1",
            f"NBITS          {nbits}",
            f"PIXELTYPE      {pixeltype}",
        ]
        dest.write_text("\n".join(lines) + "\n")


def remove_outputs(destinations: OutputPaths):
    """Delete final and partial outputs, e.g. before rerunning a failed job."""
    paths = []
    for _, path in destinations.items():
        header = path.with_suffix(".hdr")
        paths.extend([path, _part_path(path), header, _part_path(header)])
    _remove_quietly(paths)


def _part_path(path: Path) -> Path:
    return path.with_name(path.name + PART_SUFFIX)


def _remove_quietly(paths):
    for path in paths:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete {path}: {e}")
