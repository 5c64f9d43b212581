"""
Error types raised by precipstats.

Every error here is fatal for a run: the driver and encoder raise them at the
point of detection and nothing downstream tries to recover. Callers (the CLI,
or a batch script that wants to resubmit a job) decide what to do next.
"""


class PrecipStatsError(Exception):
    """Base class for all precipstats failures."""


class AllocationError(PrecipStatsError):
    """The accumulator buffers could not be allocated at the requested size."""

    def __init__(self, message: str, required_mb: float | None = None):
        super().__init__(message)
        self.required_mb = required_mb


class RasterUnavailableError(PrecipStatsError):
    """A raster source could not produce the grid for a time step."""

    def __init__(self, step, reason: str = "unavailable"):
        self.step = step
        self.reason = reason
        super().__init__(f"Raster for step {_step_label(step)} unavailable: {reason}")


class RasterReadError(PrecipStatsError):
    """A row could not be read from an opened raster."""

    def __init__(self, step, row: int, reason: str = "read failure"):
        self.step = step
        self.row = row
        self.reason = reason
        super().__init__(
            f"Failed to read row {row} of step {_step_label(step)}: {reason}"
        )


class DimensionMismatchError(PrecipStatsError):
    """A raster (or a row of it) does not match the configured grid shape."""

    def __init__(
        self,
        expected: tuple[int, int],
        actual: tuple[int, int] | None,
        step=None,
        reason: str | None = None,
    ):
        self.expected = expected
        self.actual = actual
        self.step = step
        self.reason = reason
        where = f" at step {_step_label(step)}" if step is not None else ""
        got = f"got {actual[0]}x{actual[1]}" if actual is not None else "got a different size"
        message = f"Grid dimension mismatch{where}: expected {expected[0]}x{expected[1]}, {got}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class OutputWriteError(PrecipStatsError):
    """A finalized output stream could not be written."""

    def __init__(self, destination, reason: str = "write failure"):
        self.destination = destination
        self.reason = reason
        super().__init__(f"Failed to write output '{destination}': {reason}")


class RunCancelledError(PrecipStatsError):
    """The run was cancelled between two time steps."""

    def __init__(self, step):
        self.step = step
        super().__init__(f"Run cancelled before step {_step_label(step)}")


def _step_label(step) -> str:
    index = getattr(step, "index", None)
    return str(index) if index is not None else str(step)
