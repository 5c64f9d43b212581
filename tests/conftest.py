import numpy as np
import pytest


@pytest.fixture
def scenario_grids():
    """Two 3x2 monthly grids; negative samples are nodata."""
    step1 = np.array([[5, -1, 10], [0, 0, 0]], dtype=np.int16)
    step2 = np.array([[7, -1, 20], [0, 0, -1]], dtype=np.int16)
    return [step1, step2]


def write_flat(path, grid, byteorder="<"):
    """Write a grid as a headerless row-major int16 file."""
    np.asarray(grid, dtype=np.dtype("i2").newbyteorder(byteorder)).tofile(path)
    return path


def write_geotiff(path, grid, **extra):
    import rasterio

    height, width = grid.shape
    profile = {
        "driver": "GTiff",
        "width": width,
        "height": height,
        "count": 1,
        "dtype": "int16",
        "nodata": -32768,
    }
    profile.update(extra)
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(grid.astype(np.int16), 1)
    return path
