"""
Drives the accumulation over the time series.

Steps are applied in the order given. For each step the raster is opened,
checked against the grid shape, fed row by row into the accumulator and
closed before the next step starts. The first failure ends the run.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable
from enum import Enum

from .accumulator import AccumulatorGrid
from .errors import (
    DimensionMismatchError,
    PrecipStatsError,
    RunCancelledError,
)
from .sources import RasterSource
from .timesteps import TimeStep

logger = logging.getLogger(__name__)


class DriverState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StatisticsDriver:
    """
    Feeds every time step of a RasterSource into an AccumulatorGrid.

    Progress is logged on steps where ``index % progress_every == progress_offset``
    (every 40th month, starting at the 20th, by default).
    """

    def __init__(
        self,
        progress_every: int = 40,
        progress_offset: int = 20,
        progress_callback: Callable[[TimeStep, float], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        if progress_every < 1:
            raise ValueError(f"progress_every must be >= 1, got {progress_every}")
        self.progress_every = progress_every
        self.progress_offset = progress_offset % progress_every
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event

        self.state = DriverState.IDLE
        self.current_step: TimeStep | None = None
        self.steps_completed = 0
        self.samples_applied = 0
        self.error: Exception | None = None

    def run(
        self,
        steps: Iterable[TimeStep],
        source: RasterSource,
        grid: AccumulatorGrid,
    ) -> AccumulatorGrid:
        """
        Apply all steps to ``grid``.

        Returns:
            The same grid, now final

        Raises:
            RasterUnavailableError, RasterReadError, DimensionMismatchError,
            RunCancelledError
        """
        if self.state == DriverState.RUNNING:
            raise RuntimeError("Driver is already running")

        self.state = DriverState.RUNNING
        self.steps_completed = 0
        self.samples_applied = 0
        self.error = None
        t0 = time.perf_counter()

        try:
            for step in steps:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    raise RunCancelledError(step)
                self.current_step = step
                self.samples_applied += self._apply_step(step, source, grid)
                self.steps_completed += 1
                self._report_progress(step, time.perf_counter() - t0)
        except RunCancelledError as e:
            self.state = DriverState.CANCELLED
            self.error = e
            logger.warning(str(e))
            raise
        except PrecipStatsError as e:
            self.state = DriverState.FAILED
            self.error = e
            logger.error(str(e))
            raise
        except Exception as e:
            self.state = DriverState.FAILED
            self.error = e
            logger.error(f"Unexpected failure at step {self.current_step}: {e}")
            raise

        self.state = DriverState.COMPLETED
        self.current_step = None
        logger.info(
            f"File loading and statistics done: {self.steps_completed} steps, "
            f"{self.samples_applied} valid samples in {time.perf_counter() - t0:.0f}s"
        )
        return grid

    def _apply_step(self, step: TimeStep, source: RasterSource, grid: AccumulatorGrid) -> int:
        applied = 0
        with source.open(step) as raster:
            if (raster.width, raster.height) != (grid.width, grid.height):
                raise DimensionMismatchError(
                    (grid.width, grid.height), (raster.width, raster.height), step
                )
            for y in range(grid.height):
                row = raster.read_row(y)
                if len(row) != grid.width:
                    raise DimensionMismatchError(
                        (grid.width, grid.height), (len(row), raster.height), step
                    )
                applied += grid.update_row(y, row)
        return applied

    def _report_progress(self, step: TimeStep, elapsed: float):
        if step.index % self.progress_every == self.progress_offset:
            logger.info(
                f"Iteration: {step.index}   Month: {step.month}   Year: {step.year}   "
                f"({elapsed:.0f}s elapsed)"
            )
        if self.progress_callback is not None:
            self.progress_callback(step, elapsed)
