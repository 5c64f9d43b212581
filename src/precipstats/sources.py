"""
Raster sources: where the per-step sample grids come from.

A RasterSource resolves a TimeStep to a RasterHandle. A handle knows its
width and height, hands out rows of signed 16-bit samples and is closed
before the driver moves on to the next step.

Adapters:
- GeoTiffRasterSource: pre-staged GeoTIFF files read with rasterio
- FlatBinaryRasterSource: headerless row-major int16 files read sequentially
- RemoteRasterSource: download + external conversion to a flat file
- ArrayRasterSource: in-memory grids
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import numpy as np
import rasterio
import requests
from rasterio.errors import RasterioError
from rasterio.windows import Window

from .errors import DimensionMismatchError, RasterReadError, RasterUnavailableError
from .timesteps import CHELSA_FILENAME_TEMPLATE, TimeStep

logger = logging.getLogger(__name__)

SAMPLE_DTYPE = np.int16

DEFAULT_CONVERTER = [
    "gdal_translate",
    "-q",
    "-of",
    "ENVI",
    "-ot",
    "Int16",
    "{src}",
    "{dst}",
]


class RasterHandle(ABC):
    """An opened raster for one time step."""

    def __init__(self, step: TimeStep, width: int, height: int):
        self.step = step
        self.width = width
        self.height = height

    @abstractmethod
    def read_row(self, row: int) -> np.ndarray:
        """Return row ``row`` as ``width`` int16 samples or raise RasterReadError."""
        pass

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class RasterSource(ABC):
    """Resolves time steps to readable rasters."""

    @abstractmethod
    def open(self, step: TimeStep) -> RasterHandle:
        """Open the raster for ``step`` or raise RasterUnavailableError."""
        pass

    def describe(self, step: TimeStep) -> str:
        """Human readable location of the raster for ``step``."""
        return str(step)


# --- GeoTIFF (rasterio) ---


class GeoTiffRasterHandle(RasterHandle):
    """Reads band 1 of a rasterio dataset in blocks of rows."""

    def __init__(self, dataset, step: TimeStep, band: int = 1, block_rows: int = 256):
        super().__init__(step, dataset.width, dataset.height)
        self.dataset = dataset
        self.band = band
        self.block_rows = block_rows
        self._block = None
        self._block_start = -1

    def read_row(self, row: int) -> np.ndarray:
        if not 0 <= row < self.height:
            raise RasterReadError(self.step, row, "row outside raster")

        if self._block is None or not (
            self._block_start <= row < self._block_start + self._block.shape[0]
        ):
            self._load_block(row)
        return self._block[row - self._block_start]

    def _load_block(self, row: int):
        start = row - row % self.block_rows
        n_rows = min(self.block_rows, self.height - start)
        try:
            block = self.dataset.read(
                self.band, window=Window(0, start, self.width, n_rows), out_dtype=SAMPLE_DTYPE
            )
        except RasterioError as e:
            raise RasterReadError(self.step, row, str(e)) from e
        self._block = block
        self._block_start = start

    def close(self):
        self._block = None
        self.dataset.close()


class GeoTiffRasterSource(RasterSource):
    """Pre-staged GeoTIFF files, one per time step, in a single directory."""

    def __init__(
        self,
        directory: str | Path,
        template: str = CHELSA_FILENAME_TEMPLATE,
        band: int = 1,
        block_rows: int = 256,
    ):
        self.directory = Path(directory)
        self.template = template
        self.band = band
        self.block_rows = block_rows

    def path_for(self, step: TimeStep) -> Path:
        return self.directory / step.format(self.template)

    def describe(self, step: TimeStep) -> str:
        return str(self.path_for(step))

    def open(self, step: TimeStep) -> RasterHandle:
        path = self.path_for(step)
        try:
            dataset = rasterio.open(path)
        except (RasterioError, OSError) as e:
            raise RasterUnavailableError(step, f"cannot open {path}: {e}") from e

        if dataset.count < self.band:
            dataset.close()
            raise RasterUnavailableError(
                step, f"{path} has {dataset.count} band(s), band {self.band} requested"
            )
        return GeoTiffRasterHandle(dataset, step, self.band, self.block_rows)


# --- Flat binary ---


def read_header_shape(path: Path) -> tuple[int, int] | None:
    """
    (width, height) from an ENVI (``samples = N``) or ESRI (``NCOLS N``)
    header, or None when there is no readable header.
    """
    try:
        text = Path(path).read_text(errors="replace")
    except OSError:
        return None

    values = {}
    for line in text.splitlines():
        key, _, value = line.replace("=", " ").strip().partition(" ")
        values[key.lower()] = value.strip()

    for width_key, height_key in (("samples", "lines"), ("ncols", "nrows")):
        if width_key in values and height_key in values:
            try:
                return int(values[width_key]), int(values[height_key])
            except ValueError:
                return None
    return None


class FlatBinaryRasterHandle(RasterHandle):
    """
    Sequential row reader over a headerless row-major int16 file.

    The file must hold exactly ``width * height`` samples. When an ENVI or
    ESRI ``.hdr`` sidecar sits next to it, its dimensions must match too.
    Both are checked on open, before any row is handed out.
    """

    def __init__(
        self,
        path: Path,
        step: TimeStep,
        width: int,
        height: int,
        byteorder: str = "<",
        cleanup_paths: list[Path] | None = None,
    ):
        super().__init__(step, width, height)
        self.path = path
        self.dtype = np.dtype(SAMPLE_DTYPE).newbyteorder(byteorder)
        self.row_bytes = width * self.dtype.itemsize
        self.cleanup_paths = cleanup_paths or []
        self._next_row = 0
        self._file = open(path, "rb")
        try:
            self._check_size()
        except DimensionMismatchError:
            self._file.close()
            raise

    def _check_size(self):
        expected = (self.width, self.height)
        header_shape = read_header_shape(Path(self.path).with_suffix(".hdr"))
        if header_shape is not None and header_shape != expected:
            raise DimensionMismatchError(expected, header_shape, self.step)

        size = os.fstat(self._file.fileno()).st_size
        expected_bytes = self.row_bytes * self.height
        if size != expected_bytes:
            raise DimensionMismatchError(
                expected,
                header_shape,
                self.step,
                reason=f"{self.path} holds {size} bytes, expected {expected_bytes}",
            )

    def read_row(self, row: int) -> np.ndarray:
        if not 0 <= row < self.height:
            raise RasterReadError(self.step, row, "row outside raster")
        try:
            if row != self._next_row:
                self._file.seek(row * self.row_bytes)
            buf = self._file.read(self.row_bytes)
        except OSError as e:
            raise RasterReadError(self.step, row, str(e)) from e

        if len(buf) != self.row_bytes:
            raise RasterReadError(
                self.step, row, f"short read ({len(buf)} of {self.row_bytes} bytes)"
            )
        self._next_row = row + 1
        return np.frombuffer(buf, dtype=self.dtype).astype(SAMPLE_DTYPE)

    def close(self):
        self._file.close()
        for path in self.cleanup_paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to delete temporary file {path}: {e}")


class FlatBinaryRasterSource(RasterSource):
    """Flat int16 files (e.g. ``.bil``) of a known width and height."""

    def __init__(
        self,
        directory: str | Path,
        template: str,
        width: int,
        height: int,
        byteorder: str = "<",
    ):
        self.directory = Path(directory)
        self.template = template
        self.width = width
        self.height = height
        self.byteorder = byteorder

    def path_for(self, step: TimeStep) -> Path:
        return self.directory / step.format(self.template)

    def describe(self, step: TimeStep) -> str:
        return str(self.path_for(step))

    def open(self, step: TimeStep) -> RasterHandle:
        path = self.path_for(step)
        try:
            return FlatBinaryRasterHandle(
                path, step, self.width, self.height, self.byteorder
            )
        except OSError as e:
            raise RasterUnavailableError(step, f"cannot open {path}: {e}") from e


# --- Remote fetch + convert ---


class RemoteRasterSource(RasterSource):
    """
    Downloads each step's raster, converts it to a flat int16 file with an
    external utility and reads it sequentially. Both temporary files are
    deleted when the handle is closed.
    """

    def __init__(
        self,
        url_template: str,
        width: int,
        height: int,
        workdir: str | Path,
        converter: list[str] | None = None,
        session=None,
        timeout: float = 300.0,
        chunk_size: int = 1 << 20,
    ):
        self.url_template = url_template
        self.width = width
        self.height = height
        self.workdir = Path(workdir)
        self.converter = converter or DEFAULT_CONVERTER
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size

    def url_for(self, step: TimeStep) -> str:
        return step.format(self.url_template)

    def describe(self, step: TimeStep) -> str:
        return self.url_for(step)

    def open(self, step: TimeStep) -> RasterHandle:
        url = self.url_for(step)
        name = Path(urlparse(url).path).name or f"step_{step.index}"
        download_path = self.workdir / name
        flat_path = download_path.with_suffix(".bil")
        temp_paths = [
            download_path,
            flat_path,
            flat_path.with_suffix(".hdr"),
            Path(f"{flat_path}.aux.xml"),
        ]

        try:
            self.workdir.mkdir(parents=True, exist_ok=True)
            self._download(url, download_path)
            self._convert(download_path, flat_path)
            return FlatBinaryRasterHandle(
                flat_path, step, self.width, self.height, cleanup_paths=temp_paths
            )
        except DimensionMismatchError:
            _unlink_all(temp_paths)
            raise
        except (requests.RequestException, subprocess.CalledProcessError, OSError) as e:
            _unlink_all(temp_paths)
            raise RasterUnavailableError(step, f"{url}: {e}") from e

    def _download(self, url: str, dest: Path):
        logger.debug(f"Downloading {url} -> {dest}")
        with self.session.get(url, stream=True, timeout=self.timeout) as resp:
            resp.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=self.chunk_size):
                    f.write(chunk)

    def _convert(self, src: Path, dst: Path):
        cmd = [arg.format(src=src, dst=dst) for arg in self.converter]
        logger.debug(f"Converting: {' '.join(cmd)}")
        subprocess.run(cmd, check=True, capture_output=True)


def _unlink_all(paths):
    for path in paths:
        path.unlink(missing_ok=True)


# --- In memory ---


class ArrayRasterHandle(RasterHandle):
    def __init__(self, data: np.ndarray, step: TimeStep):
        height, width = data.shape
        super().__init__(step, width, height)
        self.data = data

    def read_row(self, row: int) -> np.ndarray:
        if not 0 <= row < self.height:
            raise RasterReadError(self.step, row, "row outside raster")
        return self.data[row]


class ArrayRasterSource(RasterSource):
    """Grids held in memory, keyed by time step index."""

    def __init__(self, grids):
        if isinstance(grids, dict):
            self.grids = dict(grids)
        else:
            self.grids = {k: g for k, g in enumerate(grids, start=1)}

    def open(self, step: TimeStep) -> RasterHandle:
        if step.index not in self.grids:
            raise RasterUnavailableError(step, "no grid for this step")
        data = np.asarray(self.grids[step.index])
        if data.ndim != 2:
            raise RasterUnavailableError(step, f"grid must be 2D, got shape {data.shape}")
        if data.dtype.kind not in "iu":
            raise RasterUnavailableError(step, f"grid must hold integers, got {data.dtype}")
        info = np.iinfo(SAMPLE_DTYPE)
        if data.size and (data.min() < info.min or data.max() > info.max):
            raise RasterUnavailableError(step, "grid values out of 16-bit signed range")
        return ArrayRasterHandle(data.astype(SAMPLE_DTYPE, copy=False), step)


# --- Inspection ---


@dataclass
class RasterInfo:
    path: str
    driver: str
    width: int
    height: int
    count: int
    dtype: str
    nodata: float | None
    crs: str | None
    origin: tuple[float, float]
    pixel_size: tuple[float, float]

    def to_lines(self) -> list[str]:
        return [
            f"Driver: {self.driver}",
            f"Size is {self.width}x{self.height}x{self.count}",
            f"Data type: {self.dtype}",
            f"NoData: {self.nodata}",
            f"Projection is `{self.crs}'",
            f"Origin = ({self.origin[0]:.6f},{self.origin[1]:.6f})",
            f"Pixel Size = ({self.pixel_size[0]:.6f},{self.pixel_size[1]:.6f})",
        ]


def inspect_raster(path: str | Path) -> RasterInfo:
    """Read the header of a raster file without loading its pixels."""
    try:
        with rasterio.open(path) as src:
            transform = src.transform
            return RasterInfo(
                path=str(path),
                driver=src.driver,
                width=src.width,
                height=src.height,
                count=src.count,
                dtype=src.dtypes[0],
                nodata=src.nodata,
                crs=src.crs.to_string() if src.crs else None,
                origin=(transform.c, transform.f),
                pixel_size=(transform.a, transform.e),
            )
    except (RasterioError, OSError) as e:
        raise RasterUnavailableError(str(path), str(e)) from e
