"""
precipstats - per-pixel running statistics for long precipitation raster series

Single-pass (Welford) count, mean and coefficient of variation for every
pixel of a large grid across a monthly time series, without holding the
series in memory.
"""

__version__ = "0.1.0"

# Core
from .accumulator import AccumulatorGrid as AccumulatorGrid
from .config import RunConfig as RunConfig
from .config import load_config as load_config
from .driver import DriverState as DriverState
from .driver import StatisticsDriver as StatisticsDriver
from .encoder import OutputEncoder as OutputEncoder
from .encoder import OutputPaths as OutputPaths

# Errors
from .errors import AllocationError as AllocationError
from .errors import DimensionMismatchError as DimensionMismatchError
from .errors import OutputWriteError as OutputWriteError
from .errors import PrecipStatsError as PrecipStatsError
from .errors import RasterReadError as RasterReadError
from .errors import RasterUnavailableError as RasterUnavailableError
from .errors import RunCancelledError as RunCancelledError

# Pipeline
from .pipeline import PipelineResult as PipelineResult
from .pipeline import StatisticsPipeline as StatisticsPipeline
from .pipeline import build_source as build_source
from .pipeline import run_from_config as run_from_config

# Sources
from .sources import ArrayRasterSource as ArrayRasterSource
from .sources import FlatBinaryRasterSource as FlatBinaryRasterSource
from .sources import GeoTiffRasterSource as GeoTiffRasterSource
from .sources import RasterHandle as RasterHandle
from .sources import RasterSource as RasterSource
from .sources import RemoteRasterSource as RemoteRasterSource
from .sources import inspect_raster as inspect_raster

# Time steps
from .timesteps import TimeStep as TimeStep
from .timesteps import monthly_time_steps as monthly_time_steps
from .timesteps import step_for_index as step_for_index


def compute_statistics(grids, destinations, **kwargs):
    """
    Quick run over in-memory grids.

    Args:
        grids: Sequence of 2D int16 arrays, one per monthly step
        destinations: OutputPaths or output directory
        **kwargs: Passed to StatisticsPipeline.run (dtype, backing, scratch_dir)

    Returns:
        PipelineResult
    """
    if not grids:
        raise ValueError("At least one grid is required")
    height, width = grids[0].shape
    if not isinstance(destinations, OutputPaths):
        destinations = OutputPaths.in_directory(destinations)

    pipeline = StatisticsPipeline()
    return pipeline.run(
        monthly_time_steps(len(grids)),
        ArrayRasterSource(grids),
        width,
        height,
        destinations,
        **kwargs,
    )


__all__ = [
    # Core classes
    "AccumulatorGrid",
    "StatisticsDriver",
    "DriverState",
    "OutputEncoder",
    "OutputPaths",
    "RunConfig",
    "load_config",
    # Errors
    "PrecipStatsError",
    "AllocationError",
    "RasterUnavailableError",
    "RasterReadError",
    "DimensionMismatchError",
    "OutputWriteError",
    "RunCancelledError",
    # Pipeline
    "StatisticsPipeline",
    "PipelineResult",
    "build_source",
    "run_from_config",
    "compute_statistics",
    # Sources
    "RasterSource",
    "RasterHandle",
    "GeoTiffRasterSource",
    "FlatBinaryRasterSource",
    "RemoteRasterSource",
    "ArrayRasterSource",
    "inspect_raster",
    # Time steps
    "TimeStep",
    "monthly_time_steps",
    "step_for_index",
]
