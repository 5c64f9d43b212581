#!/usr/bin/env python3
"""
precipstats pipeline

Allocate accumulator -> drive every time step through it -> encode outputs.
Outputs are written only after the last step succeeded; a failed or
cancelled run leaves nothing behind at the destinations.
"""

import logging
import threading
import time
from collections.abc import Sequence
from typing import Any

from .accumulator import AccumulatorGrid
from .config import RunConfig
from .driver import DriverState, StatisticsDriver
from .encoder import OutputEncoder, OutputPaths, remove_outputs
from .sources import (
    FlatBinaryRasterSource,
    GeoTiffRasterSource,
    RasterSource,
    RemoteRasterSource,
)
from .timesteps import TimeStep

logger = logging.getLogger(__name__)


class PipelineResult:
    """Summary of a completed run."""

    def __init__(
        self,
        destinations: OutputPaths,
        grid_shape: tuple[int, int],
        steps_completed: int,
        samples_applied: int,
        max_count: int,
        elapsed_seconds: float,
        backing: str,
    ):
        self.destinations = destinations
        self.grid_shape = grid_shape
        self.steps_completed = steps_completed
        self.samples_applied = samples_applied
        self.max_count = max_count
        self.elapsed_seconds = elapsed_seconds
        self.backing = backing

    def get_summary(self) -> dict[str, Any]:
        height, width = self.grid_shape
        return {
            "width": width,
            "height": height,
            "steps_completed": self.steps_completed,
            "samples_applied": self.samples_applied,
            "max_count": self.max_count,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "backing": self.backing,
            "outputs": {name: str(path) for name, path in self.destinations.items()},
        }

    def __repr__(self):
        return f"PipelineResult({self.steps_completed} steps, shape={self.grid_shape})"


class StatisticsPipeline:
    """
    Runs the whole job.

    Pipeline Order:
    1. Allocate the accumulator (fatal if memory cannot be obtained)
    2. Apply every time step in order
    3. Encode mean / CV / count streams
    """

    def __init__(
        self,
        driver: StatisticsDriver | None = None,
        encoder: OutputEncoder | None = None,
    ):
        self.driver = driver or StatisticsDriver()
        self.encoder = encoder or OutputEncoder()

    def run(
        self,
        steps: Sequence[TimeStep],
        source: RasterSource,
        width: int,
        height: int,
        destinations: OutputPaths,
        dtype: str = "float64",
        backing: str = "ram",
        scratch_dir=None,
    ) -> PipelineResult:
        """
        Process ``steps`` from ``source`` and write the three output streams.

        Raises:
            AllocationError, RasterUnavailableError, RasterReadError,
            DimensionMismatchError, RunCancelledError, OutputWriteError
        """
        t0 = time.perf_counter()
        # Stale outputs from an earlier run must not survive a failure of this one
        remove_outputs(destinations)

        logger.info(f"Processing {len(steps)} steps into a {width}x{height} grid")
        with AccumulatorGrid(width, height, dtype, backing, scratch_dir) as grid:
            self.driver.run(steps, source, grid)
            self.encoder.write_all(grid, destinations)

            return PipelineResult(
                destinations=destinations,
                grid_shape=grid.shape,
                steps_completed=self.driver.steps_completed,
                samples_applied=self.driver.samples_applied,
                max_count=grid.max_count(),
                elapsed_seconds=time.perf_counter() - t0,
                backing=grid.backing,
            )

    @property
    def state(self) -> DriverState:
        return self.driver.state


def build_source(config: RunConfig) -> RasterSource:
    """Create the RasterSource described by ``config``."""
    if config.source == "geotiff":
        return GeoTiffRasterSource(config.input_dir, config.filename_template)
    if config.source == "flat":
        return FlatBinaryRasterSource(
            config.input_dir, config.filename_template, config.width, config.height
        )
    if config.source == "remote":
        return RemoteRasterSource(
            config.url_template,
            config.width,
            config.height,
            config.workdir,
            converter=config.converter or None,
        )
    raise ValueError(f"Unknown source type: {config.source}")


def run_from_config(
    config: RunConfig,
    source: RasterSource | None = None,
    cancel_event: threading.Event | None = None,
) -> PipelineResult:
    """Validate ``config`` and run the job it describes."""
    config.validate()
    pipeline = StatisticsPipeline(
        driver=StatisticsDriver(
            progress_every=config.progress_every,
            progress_offset=config.progress_offset,
            cancel_event=cancel_event,
        ),
        encoder=OutputEncoder(config.count_dtype, config.write_headers),
    )
    return pipeline.run(
        config.time_steps(),
        source or build_source(config),
        config.width,
        config.height,
        config.output_paths(),
        dtype=config.dtype,
        backing=config.backing,
        scratch_dir=config.scratch_dir,
    )
